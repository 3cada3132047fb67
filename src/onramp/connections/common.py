# -*- test-case-name: onramp.test.test_session -*-

import time
from zope.interface import implementer
from twisted.internet import defer, error
from twisted.internet.defer import inlineCallbacks
from twisted.python.failure import Failure

from onramp import crypto, info
from onramp.context import Context
from onramp.connection import connection_factory
from onramp.connections import tcp
from onramp.endpoints import SessionEndpoint
from onramp.observer import OneShotObserverList
from onramp.ipb import (IDialer, IListenerProvider, IKeyProvider, ICloser,
                        OnrampError, SessionError, SessionClosedError,
                        DialError, TLSBootstrapError, add_context)
from onramp.keystore import default_keystore
from onramp.logging import log
from onramp.logging.log import NOISY, OPERATIONAL, UNUSUAL

STREAM = "stream"
DATAGRAM = "datagram"

STREAM_HINTS = ("tcp", "tcp6", "st", "st6", "stream")
DATAGRAM_HINTS = ("udp", "udp6", "dg", "dg6", "datagram")

def style_for_hints(hints):
    """Only the first hint matters. Anything unrecognized means STREAM."""
    if hints and hints[0] in DATAGRAM_HINTS:
        return DATAGRAM
    return STREAM


class _Stage:
    """One step of session establishment. The step runs at most once at a
    time: callers who arrive while it is running wait for the same attempt.
    A success is remembered forever. A failure is delivered to everyone who
    was waiting, and the next caller starts a fresh attempt."""

    def __init__(self, name, run):
        self.name = name
        self._run = run
        self._done = False
        self._result = None
        self._attempt = None

    def __repr__(self):
        return "<_Stage %s done=%s>" % (self.name, self._done)

    def done(self):
        return self._done

    def result(self):
        assert self._done
        return self._result

    def __call__(self):
        if self._done:
            return defer.succeed(self._result)
        attempt = self._attempt
        if attempt is None:
            attempt = self._attempt = OneShotObserverList()
            d = defer.maybeDeferred(self._run)
            d.addBoth(self._finished, attempt)
        return attempt.whenFired()

    def _finished(self, res, attempt):
        if isinstance(res, Failure):
            self._attempt = None
        else:
            self._done = True
            self._result = res
        attempt.fire(res)


@implementer(IDialer, IListenerProvider, IKeyProvider, ICloser)
class TransportSession:
    """The shared lifecycle of a GarlicSession or an OnionSession.

    A session belongs to one logical name, and builds its layers lazily, in
    order: control channel, identity, session, listener. Each layer is built
    once and cached, so repeated listen() or dial() calls reuse them. If a
    layer fails, the layers below it are kept and the next call retries from
    the failed one. After close() the session is dead for good; build a new
    one instead.

    Subclasses provide the transport-specific hooks (_open_control,
    _generate_identity, _identity_address, _open_session, _start_listener,
    _dial, _close_session, _close_control, _tls_hostnames).
    """

    transport = None # "garlic" or "onion"
    keystore_kind = None # "i2p" or "onion"
    default_name = None
    facility = "onramp.session"

    def __init__(self, name=None, keystore=None, reactor=None):
        self.name = name or self.default_name
        self._keystore = keystore
        self._reactor = reactor
        self.info = info.SessionInfo()
        self._control = None
        self._identity = None
        self._address = None
        self._keys_attempt = None
        self._sessions = {}
        self._listeners = {}
        self._control_stage = _Stage("control", self._run_control)
        self._identity_stage = _Stage("identity", self._run_identity)
        self._session_stages = {
            STREAM: _Stage("session", lambda: self._run_session(STREAM)),
            DATAGRAM: _Stage("session", lambda: self._run_session(DATAGRAM)),
            }
        self._listener_stages = {
            STREAM: _Stage("listener", lambda: self._run_listener(STREAM)),
            DATAGRAM: _Stage("listener",
                             lambda: self._run_listener(DATAGRAM)),
            }

    def __repr__(self):
        return "<%s %r %s>" % (self.__class__.__name__, self.name,
                               self.info.state)

    @property
    def keystore(self):
        if self._keystore is None:
            return default_keystore()
        return self._keystore

    @property
    def reactor(self):
        if self._reactor is None:
            from twisted.internet import reactor
            return reactor
        return self._reactor

    @property
    def state(self):
        return self.info.state

    def log(self, *args, **kwargs):
        kwargs['facility'] = kwargs.get('facility') or self.facility
        return log.msg(*args, **kwargs)

    def _status(self, stage):
        def _update_status(status):
            self.info._set_stage_status(stage, status)
        return _update_status

    def _check_open(self):
        if self.info.is_closed():
            raise SessionClosedError(self.name)

    # establishment

    @inlineCallbacks
    def _run_control(self):
        with add_context(self._status("control"),
                         "connecting to control channel", SessionError,
                         "control"):
            control = yield self._open_control()
        if self.info.is_closed():
            yield self._close_control(control)
            raise SessionClosedError(self.name)
        self._control = control
        self.info._set_stage_status("control", "connected")
        self.info._advance(info.CONTROL_CONNECTED)
        self.log(format="%(name)s: control channel connected",
                 name=self.name, level=NOISY)
        return control

    @inlineCallbacks
    def _run_identity(self):
        with add_context(self._status("identity"), "loading identity",
                         SessionError, "identity"):
            data = yield self.keys()
            address = self._identity_address(data)
        self._identity = data
        self._address = address
        self.info._set_address(address)
        self.info._set_stage_status("identity", "ready")
        self.info._advance(info.IDENTITY_READY)
        self.log(format="%(name)s: using identity %(address)s",
                 name=self.name, address=address)
        return data

    @inlineCallbacks
    def _run_session(self, style):
        with add_context(self._status("session"),
                         "opening %s session" % style, SessionError,
                         "session"):
            handle = yield self._open_session(style)
        if self.info.is_closed():
            yield self._close_session(handle)
            raise SessionClosedError(self.name)
        self._sessions[style] = handle
        self.info._set_stage_status("session", "active (%s)" % style)
        self.info._advance(info.SESSION_ACTIVE)
        if self.info.establishedAt is None:
            self.info._set_established_at(time.time())
        self.log(format="%(name)s: %(style)s session active",
                 name=self.name, style=style)
        return handle

    @inlineCallbacks
    def _run_listener(self, style):
        session = self._sessions[style]
        with add_context(self.info._set_listener_status,
                         "starting listener", SessionError, "listener"):
            listener = yield self._start_listener(style, session)
        if self.info.is_closed():
            yield listener.close()
            raise SessionClosedError(self.name)
        self._listeners[style] = listener
        if style == STREAM:
            where = str(listener.getHost())
        else:
            where = "%s (datagrams)" % self._address
        self.info._set_listener_status("listening on %s" % where)
        self.log(format="%(name)s: listening on %(where)s",
                 name=self.name, where=where)
        return listener

    @inlineCallbacks
    def _establish(self, ctx, style):
        ctx.check()
        self._check_open()
        yield ctx.watch(self._control_stage())
        self._check_open()
        yield ctx.watch(self._identity_stage())
        self._check_open()
        session = yield ctx.watch(self._session_stages[style]())
        self._check_open()
        return session

    def establish(self, *hints):
        """Build the control channel, identity, and session now, instead of
        waiting for the first listen() or dial(). Fires with the session
        handle."""
        return self._establish(Context.background(), style_for_hints(hints))

    # IListenerProvider

    @inlineCallbacks
    def listen(self, *hints):
        """Fire with this session's Listener, building whatever is missing
        first. Repeated calls fire with the same Listener."""
        style = style_for_hints(hints)
        yield self._establish(Context.background(), style)
        listener = yield self._listener_stages[style]()
        return listener

    @inlineCallbacks
    def listen_tls(self, *hints):
        """Fire with a TLS view of this session's Listener, using the
        certificate from tls_keys(). The Listener from listen() shares the
        same port, so once this has been called its connections are
        TLS-terminated too."""
        listener = yield self.listen(*hints)
        if style_for_hints(hints) != STREAM:
            raise TLSBootstrapError("TLS requires a stream listener")
        cert = yield self.tls_keys()
        return listener.wrap_tls(cert.options())

    def tls_keys(self):
        """Fire with the twisted.internet.ssl.PrivateCertificate for this
        session's own hostname, creating it the first time."""
        d = self.address()
        def _got_address(address):
            hostname, alt_names = self._tls_hostnames(address)
            return crypto.certificate_for(hostname, alt_names,
                                          keystore=self.keystore)
        d.addCallback(_got_address)
        return d

    # IDialer

    def dial(self, network, addr):
        return self.dial_context(Context.background(), network, addr)

    def dial_context(self, ctx, network, addr):
        try:
            ctx.check()
            host, port = tcp.split_host_port(addr)
        except Exception:
            return defer.fail()
        return self.connect(ctx, host, port, connection_factory(), addr)

    @inlineCallbacks
    def connect(self, ctx, host, port, factory, addr=None):
        """Connect 'factory' to host:port through this session. Fires with
        the protocol that 'factory' built."""
        if addr is None:
            addr = tcp.join_host_port(host, port)
        yield self._establish(ctx, STREAM)
        self.log(format="%(name)s: dialing %(addr)s",
                 name=self.name, addr=addr, level=NOISY)
        try:
            proto = yield ctx.watch(self._dial(host, port, factory))
        except (OnrampError, defer.CancelledError, error.TimeoutError):
            raise
        except Exception as e:
            raise DialError(addr, e) from e
        return proto

    def endpoint(self, host, port):
        """Return an IStreamClientEndpoint that connects through this
        session."""
        return SessionEndpoint(self, host, port)

    # IKeyProvider

    def keys(self):
        """Fire with this name's identity, generating and storing one if the
        keystore has none. Callers that arrive while a generation is under
        way get the same identity."""
        attempt = self._keys_attempt
        if attempt is None:
            attempt = self._keys_attempt = OneShotObserverList()
            d = self._load_or_generate_keys()
            def _done(res):
                self._keys_attempt = None
                attempt.fire(res)
            d.addBoth(_done)
        return attempt.whenFired()

    @inlineCallbacks
    def _load_or_generate_keys(self):
        data = self.keystore.load_identity(self.keystore_kind, self.name)
        if data is None:
            self.log(format="%(name)s: generating a new identity",
                     name=self.name, level=OPERATIONAL)
            data = yield self._generate_identity()
            self.keystore.store_identity(self.keystore_kind, self.name, data)
        return data

    def delete_keys(self):
        """Remove this name's identity from the keystore. A session which is
        already active keeps using the identity it loaded."""
        self.keystore.delete_identity(self.keystore_kind, self.name)

    def address(self):
        """Fire with this session's own transport hostname."""
        if self._address is not None:
            return defer.succeed(self._address)
        d = self.keys()
        d.addCallback(self._identity_address)
        return d

    # ICloser

    def close(self):
        """Close the listeners, the sessions, and the control channel. Every
        close is attempted even if an earlier one fails; all failures are
        reported together in one SessionError."""
        if self.info.is_closed():
            return defer.succeed(None)
        self.info._advance(info.CLOSED)
        self.info._set_closed_at(time.time())
        self.log(format="closing %(name)s", name=self.name)

        steps = []
        for style, listener in sorted(self._listeners.items()):
            if listener is not self._sessions.get(style):
                steps.append(("listener", defer.maybeDeferred(listener.close)))
        for style, handle in sorted(self._sessions.items()):
            steps.append(("session",
                          defer.maybeDeferred(self._close_session, handle)))
        if self._control is not None:
            steps.append(("control",
                          defer.maybeDeferred(self._close_control,
                                              self._control)))
        self._listeners = {}
        self._sessions = {}
        self._control = None

        d = defer.DeferredList([d for (_, d) in steps], consumeErrors=True)
        def _check(results):
            problems = []
            for (stage, _), (ok, res) in zip(steps, results):
                if not ok:
                    problems.append("%s: %s" % (stage, res.getErrorMessage()))
            if problems:
                self.log(format="%(name)s: close failed: %(problems)s",
                         name=self.name, problems="; ".join(problems),
                         level=UNUSUAL)
                raise SessionError("close", "; ".join(problems))
        d.addCallback(_check)
        return d

    # hooks

    def _open_control(self):
        raise NotImplementedError

    def _generate_identity(self):
        raise NotImplementedError

    def _identity_address(self, data):
        raise NotImplementedError

    def _open_session(self, style):
        raise NotImplementedError

    def _start_listener(self, style, session):
        raise NotImplementedError

    def _dial(self, host, port, factory):
        raise NotImplementedError

    def _close_session(self, handle):
        raise NotImplementedError

    def _close_control(self, control):
        raise NotImplementedError

    def _tls_hostnames(self, address):
        raise NotImplementedError
