# -*- test-case-name: onramp.test.test_tor -*-

import os
import base64
import hashlib
from zope.interface import implementer
from twisted.internet import defer
from twisted.internet.defer import inlineCallbacks
from twisted.internet.endpoints import clientFromString
from twisted.internet.interfaces import IStreamClientEndpoint
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey)
import txtorcon

from onramp import base32, config, observer
from onramp.connection import Listener, TransportAddress
from onramp.connections import tcp
from onramp.connections.common import TransportSession, STREAM
from onramp.ipb import (ITorClient, IdentityError, IdentityGenerationError,
                        DialError, SessionError, add_context)
from onramp.keystore import default_keystore

ONION_VERSION = b"\x03"

def generate_onion_key():
    """Return a fresh 32-byte Ed25519 seed."""
    key = Ed25519PrivateKey.generate()
    return key.private_bytes(serialization.Encoding.Raw,
                             serialization.PrivateFormat.Raw,
                             serialization.NoEncryption())

def _seed(data):
    # we store the 32-byte seed, but also accept seed+public (64 bytes)
    if len(data) not in (32, 64):
        raise IdentityError("onion identity must be 32 or 64 bytes, not %d"
                            % len(data))
    return data[:32]

def onion_public_key(data):
    key = Ed25519PrivateKey.from_private_bytes(_seed(data))
    return key.public_key().public_bytes(serialization.Encoding.Raw,
                                         serialization.PublicFormat.Raw)

def onion_service_id(data):
    """Return the v3 onion service id (without '.onion') for a stored
    identity."""
    pub = onion_public_key(data)
    checksum = hashlib.sha3_256(b".onion checksum" + pub +
                                ONION_VERSION).digest()[:2]
    return base32.encode(pub + checksum + ONION_VERSION)

def onion_address(data):
    return onion_service_id(data) + ".onion"

def tor_private_key_blob(data):
    """Return the 'ED25519-V3:...' string that ADD_ONION expects: the
    expanded (clamped SHA-512) form of the seed, in base64."""
    h = bytearray(hashlib.sha512(_seed(data)).digest())
    h[0] &= 248
    h[31] &= 127
    h[31] |= 64
    return "ED25519-V3:" + base64.b64encode(bytes(h)).decode("ascii")

def is_onion_address(addr):
    return tcp.hostname_of(addr).endswith(".onion")


@implementer(ITorClient)
class TxTorClient:
    """Drive a Tor daemon through txtorcon.

    The controller is obtained once, on first use, and shared by every
    session that uses this client: concurrent first callers all wait for the
    same attempt. If 'shared' is True (as it is for the process-wide client
    from default_tor_client()), close_control() leaves the controller
    running for other sessions.
    """

    def __init__(self, control_endpoint=None, launch=False,
                 data_directory=None, tor_binary=None, shared=False):
        if control_endpoint is None and not launch:
            control_endpoint = config.TOR_CONTROL
        self._control_endpoint = control_endpoint
        self._launch = launch
        self._data_directory = data_directory
        self._tor_binary = tor_binary
        self.shared = shared
        self._connected = False
        self._when_connected = observer.OneShotObserverList()

    def __repr__(self):
        if self._launch:
            return "<TxTorClient launched>"
        return "<TxTorClient %s>" % (self._control_endpoint,)

    def open_control(self, reactor):
        when_connected = self._when_connected
        if not self._connected:
            self._connected = True
            d = defer.maybeDeferred(self._connect, reactor)
            d.addErrback(self._connect_failed)
            d.addBoth(when_connected.fire)
        return when_connected.whenFired()

    def _connect_failed(self, f):
        # let a later caller try again
        self._connected = False
        self._when_connected = observer.OneShotObserverList()
        return f

    @inlineCallbacks
    def _connect(self, reactor):
        if self._launch:
            if self._data_directory and not os.path.exists(
                    self._data_directory):
                # tor will mkdir this, but txtorcon wants to chdir to it
                # before spawning the tor process
                os.mkdir(self._data_directory)
            tor = yield txtorcon.launch(reactor,
                                        data_directory=self._data_directory,
                                        tor_binary=self._tor_binary)
            return tor
        ep = self._control_endpoint
        if isinstance(ep, str):
            ep = clientFromString(reactor, ep)
        assert IStreamClientEndpoint.providedBy(ep), ep
        tor = yield txtorcon.connect(reactor, ep)
        return tor

    def open_session(self, control, private_key_blob, port):
        return control.create_onion_endpoint(port, private_key=private_key_blob,
                                             version=3)

    def listen(self, control, session, factory):
        return session.listen(factory)

    def dial(self, control, host, port, factory):
        return control.stream_via(host, port).connect(factory)

    def close_control(self, control):
        if self.shared:
            return defer.succeed(None)
        self._connected = False
        self._when_connected = observer.OneShotObserverList()
        return defer.maybeDeferred(control.quit)

_shared_client = None

def default_tor_client():
    """Return the process-wide TxTorClient, which talks to the Tor control
    port at config.TOR_CONTROL."""
    global _shared_client
    if _shared_client is None:
        _shared_client = TxTorClient(shared=True)
    return _shared_client

def set_default_tor_client(client):
    global _shared_client
    _shared_client = client
    return client


class OnionSession(TransportSession):
    """A Tor endpoint: one persistent v3 onion-service key, published as an
    ephemeral onion service when listen() is first called. Dialing goes out
    through Tor, to .onion names or to ordinary hosts.

    'client' provides ITorClient, and defaults to the shared
    default_tor_client(). 'port' is the virtual port the service is
    published on.
    """

    transport = "onion"
    keystore_kind = "onion"
    facility = "onramp.onion"

    def __init__(self, name=None, client=None, port=None, keystore=None,
                 reactor=None):
        TransportSession.__init__(self, name, keystore, reactor)
        assert client is None or ITorClient.providedBy(client), client
        self._client = client
        self.port = port or config.ONION_PORT

    @property
    def default_name(self):
        return config.ONION_NAME

    @property
    def client(self):
        # resolved late, so key management never needs a Tor client
        if self._client is None:
            self._client = default_tor_client()
        return self._client

    def service_id(self):
        """Fire with our onion service id, without the '.onion' suffix."""
        d = self.keys()
        d.addCallback(onion_service_id)
        return d

    # hooks

    def _open_control(self):
        return self.client.open_control(self.reactor)

    def _generate_identity(self):
        with add_context(self._status("identity"), "generating onion key",
                         IdentityGenerationError):
            return defer.succeed(generate_onion_key())

    def _identity_address(self, data):
        return onion_address(data)

    def _open_session(self, style):
        if style != STREAM:
            raise SessionError("session", "onion services carry streams only")
        return self.client.open_session(self._control,
                                         tor_private_key_blob(self._identity),
                                         self.port)

    @inlineCallbacks
    def _start_listener(self, style, session):
        listener = Listener(TransportAddress("onion", self._address,
                                             self.port))
        port = yield self.client.listen(self._control, session, listener)
        listener.attach(port)
        return listener

    def _dial(self, host, port, factory):
        if tcp.is_non_public_numeric_address(host):
            raise DialError(tcp.join_host_port(host, port),
                            "no Tor exit can reach a non-public address")
        return self.client.dial(self._control, host, port, factory)

    def _close_session(self, handle):
        # the onion service goes away when its listening port is stopped
        return defer.succeed(None)

    def _close_control(self, control):
        return self.client.close_control(control)

    def _tls_hostnames(self, address):
        service_id = address[:-len(".onion")]
        return service_id, (address,)


def new_onion(name=None, **kwargs):
    """Build an OnionSession and establish it. Fires with the session."""
    o = OnionSession(name, **kwargs)
    d = o.establish()
    d.addCallback(lambda _: o)
    return d

def onion_keys(name=None, keystore=None):
    """Fire with the onion key (a 32-byte Ed25519 seed) for 'name',
    generating and storing one first if necessary. No Tor daemon is
    needed."""
    o = OnionSession(name, keystore=keystore)
    return o.keys()

def delete_onion_keys(name, keystore=None):
    """Permanently delete the stored onion key for 'name'. This changes the
    onion address of any service later published under that name."""
    keystore = keystore or default_keystore()
    keystore.delete_identity("onion", name)
