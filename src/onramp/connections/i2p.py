# -*- test-case-name: onramp.test.test_i2p -*-

import os
import base64
import hashlib
import shutil
import tempfile
from zope.interface import implementer
from twisted.internet import defer, protocol
from twisted.internet.defer import inlineCallbacks
from twisted.internet.endpoints import clientFromString
from txi2p.sam import (SAMI2PStreamClientEndpoint,
                       SAMI2PStreamServerEndpoint)
from txi2p.sam.session import getSession
from txi2p.utils import generateDestination

from onramp import base32, config
from onramp.connection import Listener, NullConnection, TransportAddress
from onramp.connections.common import TransportSession, STREAM, DATAGRAM
from onramp.ipb import (ISAMClient, IdentityError, IdentityGenerationError,
                        SessionError, add_context)
from onramp.keystore import default_keystore

DEST_BASE32           = 0
DEST_HASH             = 1
DEST_HASH_BYTES       = 2
DEST_BASE32_TRUNCATED = 3
DEST_BASE64           = 4
DEST_BASE64_BYTES     = 5

# public key (256) + signing public key (128) + certificate type (1) +
# certificate length (2)
_DEST_HEADER = 387

def _b64_decode(s):
    if isinstance(s, str):
        s = s.encode("ascii")
    s = s.strip()
    s += b"=" * (-len(s) % 4)
    return base64.b64decode(s, altchars=b"-~", validate=True)

def _b64_encode(data):
    return base64.b64encode(data, altchars=b"-~").decode("ascii")

def destination_from_keys(keys):
    """Return the raw public destination bytes embedded at the front of an
    I2P private key (as written by SAM's DEST GENERATE, in I2P base64)."""
    try:
        raw = _b64_decode(keys)
    except ValueError as e:
        raise IdentityError("garlic identity is not I2P base64: %s"
                            % (e,)) from e
    if len(raw) < _DEST_HEADER:
        raise IdentityError("garlic identity is too short (%d bytes)"
                            % len(raw))
    certlen = int.from_bytes(raw[_DEST_HEADER-2:_DEST_HEADER], "big")
    destlen = _DEST_HEADER + certlen
    if len(raw) < destlen:
        raise IdentityError("garlic identity is truncated")
    return raw[:destlen]

def base32_address(keys):
    """Return the 'xxx.b32.i2p' hostname for an I2P private key."""
    digest = hashlib.sha256(destination_from_keys(keys)).digest()
    return base32.encode(digest) + ".b32.i2p"

def render_address(keys, mode=DEST_BASE32):
    """Render the destination for 'keys' in one of the DEST_* forms. The
    *_BYTES forms return bytes, the others return str."""
    dest = destination_from_keys(keys)
    digest = hashlib.sha256(dest).digest()
    if mode == DEST_BASE32:
        return base32.encode(digest) + ".b32.i2p"
    if mode == DEST_BASE32_TRUNCATED:
        return base32.encode(digest)
    if mode == DEST_HASH:
        return _b64_encode(digest)
    if mode == DEST_HASH_BYTES:
        return digest
    if mode == DEST_BASE64:
        return _b64_encode(dest)
    if mode == DEST_BASE64_BYTES:
        return dest
    raise ValueError("unknown address mode %r" % (mode,))

def is_garlic_address(addr):
    return ".i2p" in addr


@implementer(ISAMClient)
class TxI2PClient:
    """Talk to an I2P router's SAM bridge through txi2p."""

    def __init__(self, sam_address=None):
        self._sam_address = sam_address or config.SAM_ADDR
        self._reactor = None

    def __repr__(self):
        return "<TxI2PClient %s>" % self._sam_address

    def _sam_endpoint(self, reactor):
        return clientFromString(reactor, self._sam_address)

    @inlineCallbacks
    def open_control(self, reactor):
        # txi2p opens its own SAM connections as needed, so the control
        # handle is just the endpoint. Probe it once, so an unreachable
        # bridge is reported now rather than at the first session.
        self._reactor = reactor
        ep = self._sam_endpoint(reactor)
        probe = yield ep.connect(protocol.Factory.forProtocol(
            protocol.Protocol))
        probe.transport.loseConnection()
        return ep

    @inlineCallbacks
    def generate_identity(self, control, name):
        # txi2p writes the key file itself, and refuses to overwrite one
        tmpdir = tempfile.mkdtemp(prefix="onramp-")
        keyfile = os.path.join(tmpdir, name + ".i2p.private")
        try:
            yield generateDestination(self._reactor, keyfile, "SAM", control)
            with open(keyfile, "rb") as f:
                data = f.read()
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)
        return data

    def open_session(self, control, name, identity_path, options, style):
        if style != STREAM:
            raise SessionError("session",
                               "txi2p only provides STREAM sessions")
        return getSession(name, control, keyfile=identity_path,
                          options=config.options_to_dict(options))

    def listen(self, control, session, name, identity_path, options,
               factory):
        ep = SAMI2PStreamServerEndpoint.new(
            control, identity_path, nickname=name,
            options=config.options_to_dict(options))
        return ep.listen(factory)

    def dial(self, control, session, name, identity_path, options, host,
             port, factory):
        ep = SAMI2PStreamClientEndpoint.new(
            control, host, port, nickname=name, keyfile=identity_path,
            options=config.options_to_dict(options))
        return ep.connect(factory)

    def close_session(self, session):
        return defer.maybeDeferred(session.close)

    def close_control(self, control):
        return defer.succeed(None)


class GarlicSession(TransportSession):
    """An I2P endpoint: one SAM bridge, one persistent destination, and the
    stream (or datagram) session built on it.

    'client' provides ISAMClient. The default is a TxI2PClient for
    'sam_address' (itself defaulting to config.SAM_ADDR). 'options' is a list
    of "key=value" tunnel options, config.OPT_DEFAULTS if not given.
    """

    transport = "garlic"
    keystore_kind = "i2p"
    facility = "onramp.garlic"

    def __init__(self, name=None, sam_address=None, options=None,
                 client=None, keystore=None, reactor=None,
                 addr_mode=DEST_BASE32, torrent_mode=False):
        TransportSession.__init__(self, name, keystore, reactor)
        self.sam_address = sam_address or config.SAM_ADDR
        if options is None:
            options = config.OPT_DEFAULTS
        self.options = list(options)
        if client is None:
            client = TxI2PClient(self.sam_address)
        assert ISAMClient.providedBy(client), client
        self._client = client
        self.addr_mode = addr_mode
        self.torrent_mode = torrent_mode

    @property
    def default_name(self):
        return config.GARLIC_NAME

    def network(self):
        if self._listeners.get(STREAM) is not None:
            return "tcp"
        return "udp"

    def render_address(self):
        """Our own destination, in the form selected by addr_mode. Only
        meaningful once the identity has been loaded."""
        assert self._identity is not None, "no identity yet"
        r = render_address(self._identity, self.addr_mode)
        if self.torrent_mode:
            if isinstance(r, bytes):
                return r + b".i2p"
            return r + ".i2p"
        return r

    # hooks

    def _open_control(self):
        return self._client.open_control(self.reactor)

    @inlineCallbacks
    def _generate_identity(self):
        with add_context(self._status("identity"), "generating destination",
                         IdentityGenerationError):
            if self._control is not None:
                data = yield self._client.generate_identity(self._control,
                                                            self.name)
                return data
            # keys() was called before any session work: use a short-lived
            # control channel
            control = yield self._client.open_control(self.reactor)
            try:
                data = yield self._client.generate_identity(control,
                                                            self.name)
            finally:
                yield self._client.close_control(control)
        return data

    def _identity_address(self, data):
        return base32_address(data)

    def _identity_path(self):
        return self.keystore.identity_path(self.keystore_kind, self.name)

    def _open_session(self, style):
        return self._client.open_session(self._control, self.name,
                                         self._identity_path(),
                                         self.options, style)

    @inlineCallbacks
    def _start_listener(self, style, session):
        if style == DATAGRAM:
            # the datagram session is its own receive capability
            return session
        listener = Listener(TransportAddress("garlic", self._address))
        port = yield self._client.listen(self._control, session, self.name,
                                         self._identity_path(), self.options,
                                         listener)
        listener.attach(port)
        return listener

    def _dial(self, host, port, factory):
        return self._client.dial(self._control, self._sessions[STREAM],
                                 self.name, self._identity_path(),
                                 self.options, host, port, factory)

    def _close_session(self, handle):
        return self._client.close_session(handle)

    def _close_control(self, control):
        return self._client.close_control(control)

    def _tls_hostnames(self, address):
        return address, ()

    def dial_context(self, ctx, network, addr):
        if not is_garlic_address(addr):
            try:
                ctx.check()
            except Exception:
                return defer.fail()
            self.log(format="%(name)s: %(addr)s is not an I2P address,"
                     " returning a null connection",
                     name=self.name, addr=addr)
            return defer.succeed(NullConnection())
        return TransportSession.dial_context(self, ctx, network, addr)


def new_garlic(name=None, sam_address=None, options=None, **kwargs):
    """Build a GarlicSession and establish its stream session. Fires with the
    session."""
    g = GarlicSession(name, sam_address, options, **kwargs)
    d = g.establish()
    d.addCallback(lambda _: g)
    return d

def i2p_keys(name=None, sam_address=None, client=None, keystore=None):
    """Fire with the I2P private key bytes for 'name', generating and
    storing them first if necessary."""
    g = GarlicSession(name, sam_address, client=client, keystore=keystore)
    return g.keys()

def delete_garlic_keys(name, keystore=None):
    """Permanently delete the stored identity for 'name'. Any service later
    published under that name will have a new address."""
    keystore = keystore or default_keystore()
    keystore.delete_identity("i2p", name)
