# -*- test-case-name: onramp.test.test_router -*-

from urllib.parse import urlsplit
from twisted.internet import defer

from onramp import config
from onramp.connections import tcp
from onramp.logging import log
from onramp.logging.log import NOISY

GARLIC = "garlic"
ONION = "onion"

GARLIC_HINTS = ("i2p", "garlic")
ONION_HINTS = ("tor", "onion")

def _log(*args, **kwargs):
    kwargs.setdefault("facility", "onramp.router")
    kwargs.setdefault("level", NOISY)
    return log.msg(*args, **kwargs)

def hostname_of(addr):
    """Extract the hostname from a URL ('http://foo.i2p/x') or from a plain
    'host[:port]' string. Returns "" if there is none."""
    if "://" in addr:
        return urlsplit(addr).hostname or ""
    try:
        return tcp.hostname_of(addr)
    except ValueError:
        return urlsplit("//" + addr).hostname or ""

def select(addr):
    """Return GARLIC for destinations in .i2p, and ONION for everything
    else. Tor reaches ordinary hosts too."""
    if hostname_of(addr).endswith(".i2p"):
        return GARLIC
    return ONION

def select_listen(hint, keys_or_addr):
    if hint in GARLIC_HINTS:
        return GARLIC
    if hint in ONION_HINTS:
        return ONION
    return select(keys_or_addr)


class ProtocolRouter:
    """Send dial() and listen() calls to a garlic or onion session, chosen
    from the destination. Sessions come from the two SessionRegistry tables,
    which build them on first use.

    Dials use the default session name of each transport, so that all
    outbound traffic on one transport shares a single session. Listens use
    'keys_or_addr' as the session name, so each name is its own service.
    """

    def __init__(self, garlics, onions):
        self.garlics = garlics
        self.onions = onions

    def _registry(self, which):
        if which == GARLIC:
            return self.garlics
        return self.onions

    def dial(self, network, addr):
        which = select(addr)
        name = config.GARLIC_NAME if which == GARLIC else config.ONION_NAME
        _log(format="dialing %(addr)s via %(which)s", addr=addr, which=which)
        try:
            session = self._registry(which).get_or_create(name)
        except Exception:
            return defer.fail()
        return session.dial(network, _host_port(addr))

    def listen(self, hint, keys_or_addr):
        which = select_listen(hint, keys_or_addr)
        _log(format="listening as %(name)s via %(which)s",
             name=keys_or_addr, which=which)
        try:
            session = self._registry(which).get_or_create(keys_or_addr)
        except Exception:
            return defer.fail()
        return session.listen(hint)

def _host_port(addr):
    # sessions dial "host:port": turn a URL into that, with the scheme's port
    if "://" not in addr:
        return addr
    u = urlsplit(addr)
    port = u.port
    if port is None:
        port = 443 if u.scheme == "https" else 80
    return tcp.join_host_port(u.hostname or "", port)
