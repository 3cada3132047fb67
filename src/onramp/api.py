# application code should import all names from here instead of from
# the individual modules. Use code like this:
#
#  from onramp.api import dial, listen
#
# This will make it easier to rearrange onramp's internals in the future.
# Anything you might import from outside onramp.api is subject to movement
# in new releases.

from twisted.internet import defer

from onramp._version import verstr as __version__

from onramp import config
from onramp.connections.i2p import (GarlicSession, new_garlic, i2p_keys,
                                    delete_garlic_keys)
from onramp.connections.tor import (OnionSession, new_onion, onion_keys,
                                    delete_onion_keys)
from onramp.connection import Connection, NullConnection, Listener
from onramp.context import Context
from onramp.crypto import certificate_for
from onramp.endpoints import AgentEndpointFactory
from onramp.ipb import (OnrampError, PathError, KeystoreError, IdentityError,
                        IdentityGenerationError, SessionError,
                        SessionEstablishmentError, SessionClosedError,
                        DialError, TLSBootstrapError, RelayError)
from onramp.keystore import (Keystore, set_default_keystore, resolve_root,
                             delete_root)
from onramp.registry import SessionRegistry
from onramp.relay import RelayProxy, serve
from onramp.router import ProtocolRouter

# hush pyflakes
_unused = [
    __version__,
    GarlicSession, new_garlic, i2p_keys, delete_garlic_keys,
    OnionSession, new_onion, onion_keys, delete_onion_keys,
    Connection, NullConnection, Listener,
    Context,
    certificate_for,
    AgentEndpointFactory,
    OnrampError, PathError, KeystoreError, IdentityError,
    IdentityGenerationError, SessionError, SessionEstablishmentError,
    SessionClosedError, DialError, TLSBootstrapError, RelayError,
    Keystore, set_default_keystore, resolve_root, delete_root,
    RelayProxy, serve,
    ]
del _unused

# The sessions created by the functions below. Sessions that applications
# build for themselves are not tracked here.
garlics = SessionRegistry(GarlicSession, facility="onramp.garlic")
onions = SessionRegistry(OnionSession, facility="onramp.onion")
router = ProtocolRouter(garlics, onions)

def dial(network, addr):
    """Connect to 'addr' (a URL or host:port). .i2p names go over I2P,
    everything else over Tor. Fires with a Connection."""
    return router.dial(network, addr)

def listen(network, keys):
    """Fire with a Listener for the service named 'keys'. 'network' may be
    'i2p'/'garlic' or 'tor'/'onion' to pick the transport; otherwise a
    'keys' ending in .i2p means I2P and anything else means Tor."""
    return router.listen(network, keys)

def listen_garlic(network, keys):
    return _listen(garlics, keys, network)

def listen_onion(network, keys):
    return _listen(onions, keys, network)

def _listen(registry, name, network):
    try:
        session = registry.get_or_create(name)
    except Exception:
        return defer.fail()
    return session.listen(network)

def dial_garlic(network, addr):
    return _dial(garlics, config.GARLIC_NAME, network, addr)

def dial_onion(network, addr):
    return _dial(onions, config.ONION_NAME, network, addr)

def _dial(registry, name, network, addr):
    try:
        session = registry.get_or_create(name)
    except Exception:
        return defer.fail()
    return session.dial(network, addr)

def close_garlic(name):
    return garlics.close_one(name)

def close_all_garlic():
    return garlics.close_all()

def close_onion(name):
    return onions.close_one(name)

def close_all_onion():
    return onions.close_all()

def close_all():
    """Close every session that dial() and listen() have created."""
    d = defer.DeferredList([close_all_garlic(), close_all_onion()])
    d.addCallback(lambda _: None)
    return d
