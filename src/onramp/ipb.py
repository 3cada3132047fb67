
from zope.interface import interface
from twisted.internet.defer import CancelledError
Interface = interface.Interface


class OnrampError(Exception):
    """Base class for every error raised by onramp."""

class PathError(OnrampError):
    """A keystore directory could not be resolved or created."""

class KeystoreError(OnrampError):
    """A key file could not be read, written, or removed."""

class IdentityError(OnrampError):
    """An identity could not be loaded or generated."""

class IdentityGenerationError(IdentityError):
    """The control channel could not produce a new identity."""

class SessionError(OnrampError):
    """A session could not be established. 'stage' names the step which
    failed: one of 'control', 'identity', 'session', 'listener', or 'close'.
    """
    def __init__(self, stage, reason=None):
        OnrampError.__init__(self, stage, reason)
        self.stage = stage
        self.reason = reason

    def __str__(self):
        if self.reason is None:
            return "session failed (while %s)" % self.stage
        return "session failed (while %s): %s" % (self.stage, self.reason)

SessionEstablishmentError = SessionError

class SessionClosedError(SessionError):
    def __init__(self, name=None):
        SessionError.__init__(self, "closed", "session %r is closed" % name)

class DialError(OnrampError):
    """The remote side could not be reached."""
    def __init__(self, addr, reason=None):
        OnrampError.__init__(self, addr, reason)
        self.addr = addr
        self.reason = reason

    def __str__(self):
        return "unable to dial %s: %s" % (self.addr, self.reason)

class TLSBootstrapError(OnrampError):
    """A certificate or key could not be generated, stored, or loaded."""

class RelayError(OnrampError):
    """One relayed connection failed. This never stops the accept loop."""


class add_context(object):
    """Report a status update, and convert any exception raised inside the
    block into 'errclass' (unless it already is one, or is a cancellation).
    The original exception is kept as __cause__."""

    def __init__(self, update_status, context, errclass=None, stage=None):
        self.update_status = update_status
        self.context = context
        self.errclass = errclass
        self.stage = stage

    def __enter__(self):
        if self.update_status is not None:
            self.update_status(self.context)

    def __exit__(self, type, value, traceback):
        if value is None or self.errclass is None:
            return False
        if isinstance(value, self.errclass):
            return False
        if isinstance(value, CancelledError):
            return False
        if self.stage is not None:
            new = self.errclass(self.stage, value)
        else:
            new = self.errclass("%s: %s" % (self.context, value))
        raise new from value


class IDialer(Interface):
    def dial(network, addr):
        """Return a Deferred that fires with a Connection to addr."""

    def dial_context(ctx, network, addr):
        """Like dial(), but observe the cancellation and deadline of the
        given onramp.context.Context ."""

class IListenerProvider(Interface):
    def listen(*hints):
        """Return a Deferred that fires with the (cached) Listener."""

    def listen_tls(*hints):
        """Return a Deferred that fires with a TLS-wrapped Listener, using
        a certificate bound to this session's own address."""

class IKeyProvider(Interface):
    def keys():
        """Return a Deferred that fires with the persisted identity bytes,
        generating and storing a new identity if none exists."""

    def delete_keys():
        """Remove the persisted identity. An open session is unaffected."""

class ICloser(Interface):
    def close():
        """Release the listener, session, and control channel. Closing a
        closed session does nothing."""


class ISAMClient(Interface):
    """The I2P SAM collaborator. Every method returns a Deferred (or an
    immediate value)."""

    def open_control(reactor):
        """Fire with an opaque control handle."""

    def generate_identity(control, name):
        """Fire with the bytes of a freshly generated private destination."""

    def open_session(control, name, identity_path, options, style):
        """Open a STREAM or DATAGRAM session using the identity stored at
        identity_path. Fire with an opaque session handle."""

    def listen(control, session, name, identity_path, options, factory):
        """Start accepting connections for the session's destination, and
        fire with an IListeningPort."""

    def dial(control, session, name, identity_path, options, host, port,
             factory):
        """Connect to host:port through the session and fire with the
        protocol built by factory."""

    def close_session(session):
        """Close a session handle."""

    def close_control(control):
        """Close a control handle."""

class ITorClient(Interface):
    """The Tor control-port collaborator."""

    def open_control(reactor):
        """Fire with an opaque controller handle."""

    def open_session(control, private_key_blob, port):
        """Fire with an IStreamServerEndpoint for an onion service that uses
        the given ED25519-V3 key blob and virtual port."""

    def listen(control, session, factory):
        """Publish the onion service and fire with an IListeningPort."""

    def dial(control, host, port, factory):
        """Connect through Tor (onion or clearnet) and fire with the
        protocol built by factory."""

    def close_control(control):
        """Release the controller."""
