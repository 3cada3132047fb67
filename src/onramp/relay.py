# -*- test-case-name: onramp.test.test_relay -*-

from twisted.internet import defer
from twisted.internet.defer import inlineCallbacks

from onramp.connection import connection_factory
from onramp.router import hostname_of
from onramp.connections import tcp
from onramp.ipb import OnrampError, DialError, RelayError
from onramp.logging import log
from onramp.logging.log import NOISY, UNUSUAL

def _log(*args, **kwargs):
    kwargs.setdefault("facility", "onramp.relay")
    return log.msg(*args, **kwargs)

def route_for(remote_addr):
    """Return 'garlic', 'onion', or 'direct' for a 'host:port' string or a
    URL."""
    host = hostname_of(remote_addr)
    if host.endswith(".i2p"):
        return "garlic"
    if host.endswith(".onion"):
        return "onion"
    return "direct"


class RelayProxy:
    """Expose a service through a listener: every connection accepted on
    the listener is joined to a new connection to 'remote_addr', and bytes
    are copied in both directions without being looked at.

    Remote addresses in .i2p are dialed through 'garlic', those in .onion
    through 'onion', and anything else with plain TCP. The sessions are
    created (with default names) when first needed, if not given.
    """

    def __init__(self, garlic=None, onion=None, reactor=None):
        self._garlic = garlic
        self._onion = onion
        self._reactor = reactor
        self._relays = set()

    @property
    def garlic(self):
        if self._garlic is None:
            from onramp.connections.i2p import GarlicSession
            self._garlic = GarlicSession()
        return self._garlic

    @property
    def onion(self):
        if self._onion is None:
            from onramp.connections.tor import OnionSession
            self._onion = OnionSession()
        return self._onion

    @property
    def reactor(self):
        if self._reactor is None:
            from twisted.internet import reactor
            return reactor
        return self._reactor

    def active(self):
        """How many relays are running right now."""
        return len(self._relays)

    def when_done(self):
        """Fire when every relay that is running now has finished."""
        d = defer.DeferredList(list(self._relays))
        d.addCallback(lambda _: None)
        return d

    @inlineCallbacks
    def serve(self, listener, remote_addr):
        """Accept connections forever. The Deferred fails, with the error
        from accept(), only when the listener stops giving out connections;
        relays that are already running carry on."""
        _log(format="relaying %(listener)s to %(remote)s",
             listener=str(listener.getHost()), remote=remote_addr)
        while True:
            conn = yield listener.accept()
            self._start_relay(conn, remote_addr)

    def _start_relay(self, conn, remote_addr):
        d = self._relay(conn, remote_addr)
        self._relays.add(d)
        def _done(res):
            self._relays.discard(d)
            return res
        d.addBoth(_done)
        d.addErrback(log.err, "relay to %s failed" % remote_addr,
                     facility="onramp.relay", level=UNUSUAL)
        return d

    @inlineCallbacks
    def _relay(self, conn, remote_addr):
        try:
            remote = yield self.dial(remote_addr)
        except Exception as e:
            yield conn.close()
            raise RelayError("cannot dial %s: %s" % (remote_addr, e)) from e
        _log(format="relay %(local)s <-> %(remote)s started",
             local=str(conn.getPeer()), remote=remote_addr, level=NOISY)
        pipes = [self._pipe(conn, remote), self._pipe(remote, conn)]
        try:
            yield defer.DeferredList(pipes, fireOnOneCallback=True,
                                     fireOnOneErrback=True,
                                     consumeErrors=True)
        except defer.FirstError as e:
            raise RelayError("relay to %s: %s" % (
                remote_addr, e.subFailure.getErrorMessage())) from e
        finally:
            yield defer.DeferredList([conn.close(), remote.close()],
                                     consumeErrors=True)
        _log(format="relay %(local)s <-> %(remote)s finished",
             local=str(conn.getPeer()), remote=remote_addr, level=NOISY)

    @inlineCallbacks
    def _pipe(self, src, dst):
        while True:
            data = yield src.read()
            if not data:
                return
            dst.write(data)

    def dial(self, remote_addr):
        """Fire with a Connection to remote_addr, over the transport that
        route_for() picks."""
        route = route_for(remote_addr)
        if route == "garlic":
            return self.garlic.dial("tcp", remote_addr)
        if route == "onion":
            return self.onion.dial("tcp", remote_addr)
        try:
            host, port = tcp.split_host_port(remote_addr)
        except ValueError:
            return defer.fail()
        d = tcp.dial(self.reactor, host, port, connection_factory())
        def _failed(f):
            if f.check(OnrampError, defer.CancelledError):
                return f
            raise DialError(remote_addr, f.getErrorMessage())
        d.addErrback(_failed)
        return d


_proxy = None

def default_proxy():
    global _proxy
    if _proxy is None:
        _proxy = RelayProxy()
    return _proxy

def serve(listener, remote_addr):
    """Relay every connection accepted on 'listener' to 'remote_addr',
    using the process-wide RelayProxy."""
    return default_proxy().serve(listener, remote_addr)
