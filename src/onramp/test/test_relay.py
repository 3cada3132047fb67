import mock
from twisted.trial import unittest
from twisted.internet import reactor, defer, error, protocol
from twisted.internet.defer import inlineCallbacks
from twisted.internet.endpoints import TCP4ServerEndpoint

from onramp import util, relay
from onramp.connection import Listener, TransportAddress, connection_factory
from onramp.connections import tcp
from onramp.ipb import RelayError, DialError


class Routes(unittest.TestCase):
    def test_route_for(self):
        self.assertEqual(relay.route_for("abc.b32.i2p:80"), "garlic")
        self.assertEqual(relay.route_for("example.i2p:8080"), "garlic")
        self.assertEqual(relay.route_for("abc.onion:80"), "onion")
        self.assertEqual(relay.route_for("example.com:80"), "direct")
        self.assertEqual(relay.route_for("127.0.0.1:22"), "direct")
        self.assertEqual(relay.route_for("[::1]:22"), "direct")
        self.assertEqual(relay.route_for("http://abc.onion/"), "onion")
        self.assertEqual(relay.route_for("example.i2p"), "garlic")

    def test_dial_routes(self):
        garlic = mock.Mock()
        garlic.dial.return_value = defer.succeed("g")
        onion = mock.Mock()
        onion.dial.return_value = defer.succeed("o")
        p = relay.RelayProxy(garlic=garlic, onion=onion)
        self.assertEqual(self.successResultOf(p.dial("x.i2p:80")), "g")
        garlic.dial.assert_called_once_with("tcp", "x.i2p:80")
        self.assertEqual(self.successResultOf(p.dial("y.onion:443")), "o")
        onion.dial.assert_called_once_with("tcp", "y.onion:443")

    def test_direct_bad_address(self):
        p = relay.RelayProxy(garlic=mock.Mock(), onion=mock.Mock())
        self.failureResultOf(p.dial("no-port-here"), ValueError)

    def test_lazy_sessions(self):
        p = relay.RelayProxy()
        self.assertEqual(p.garlic.name, "onramp-garlic")
        self.assertEqual(p.onion.name, "onramp-onion")
        self.assertIdentical(p.garlic, p.garlic)


class Echo(protocol.Protocol):
    def dataReceived(self, data):
        self.transport.write(data)


class Greeter(protocol.Protocol):
    def connectionMade(self):
        self.transport.write(b"hello, goodbye")
        self.transport.loseConnection()


class RecordingProxy(relay.RelayProxy):
    """finished[i] fires when the i'th relay is over, however it ended."""

    def __init__(self, *args, **kwargs):
        relay.RelayProxy.__init__(self, *args, **kwargs)
        self.finished = [defer.Deferred() for i in range(4)]
        self.count = 0

    def _start_relay(self, conn, remote_addr):
        d = relay.RelayProxy._start_relay(self, conn, remote_addr)
        done = self.finished[self.count]
        self.count += 1
        d.addBoth(lambda _: done.callback(None))
        return d


class FlakyProxy(RecordingProxy):
    """The first dial goes to a port nobody listens on."""

    def __init__(self, dead_port, *args, **kwargs):
        RecordingProxy.__init__(self, *args, **kwargs)
        self.dead_port = dead_port
        self.dials = 0

    def dial(self, remote_addr):
        self.dials += 1
        if self.dials == 1:
            return relay.RelayProxy.dial(self, "127.0.0.1:%d" % self.dead_port)
        return relay.RelayProxy.dial(self, remote_addr)


class Relay(unittest.TestCase):
    @inlineCallbacks
    def setUp(self):
        backend_port = util.allocate_tcp_port()
        ep = TCP4ServerEndpoint(reactor, backend_port, interface="127.0.0.1")
        self.backend = yield ep.listen(protocol.Factory.forProtocol(Echo))
        self.addCleanup(self.backend.stopListening)
        self.remote = "127.0.0.1:%d" % backend_port

        self.front_port = util.allocate_tcp_port()
        self.listener = Listener(TransportAddress("tcp", "127.0.0.1",
                                                  self.front_port))
        ep = TCP4ServerEndpoint(reactor, self.front_port,
                                interface="127.0.0.1")
        yield self.listener.listenOn(ep)
        self.addCleanup(self.listener.close)

    @inlineCallbacks
    def read_exactly(self, conn, length):
        data = b""
        while len(data) < length:
            more = yield conn.read()
            if not more:
                break
            data += more
        return data

    @inlineCallbacks
    def connect(self):
        c = yield tcp.dial(reactor, "127.0.0.1", self.front_port,
                           connection_factory())
        self.addCleanup(c.close)
        return c

    def serve(self, proxy):
        d = proxy.serve(self.listener, self.remote)
        def _stop():
            self.listener.close()
            return self.assertFailure(d, error.ConnectionDone)
        self.addCleanup(_stop)
        return d

    @inlineCallbacks
    def test_relay(self):
        proxy = RecordingProxy(reactor=reactor)
        self.serve(proxy)
        client = yield self.connect()
        client.write(b"through the tunnel")
        got = yield self.read_exactly(client, 18)
        self.assertEqual(got, b"through the tunnel")
        self.assertEqual(proxy.active(), 1)
        yield client.close()
        yield proxy.finished[0]
        self.assertEqual(proxy.active(), 0)

    @inlineCallbacks
    def test_many(self):
        proxy = RecordingProxy(reactor=reactor)
        self.serve(proxy)
        c1 = yield self.connect()
        c2 = yield self.connect()
        c2.write(b"second")
        c1.write(b"first")
        got = yield self.read_exactly(c1, 5)
        self.assertEqual(got, b"first")
        got = yield self.read_exactly(c2, 6)
        self.assertEqual(got, b"second")
        done = proxy.when_done()
        yield c1.close()
        yield c2.close()
        yield done

    @inlineCallbacks
    def test_failed_dial_is_isolated(self):
        proxy = FlakyProxy(util.allocate_tcp_port(), reactor=reactor)
        self.serve(proxy)
        doomed = yield self.connect()
        eof = yield doomed.read()
        self.assertEqual(eof, b"")
        yield proxy.finished[0]
        errors = self.flushLoggedErrors(RelayError)
        self.assertEqual(len(errors), 1)
        self.assertIn("cannot dial", str(errors[0].value))
        self.assertIsInstance(errors[0].value.__cause__, DialError)

        # the accept loop carries on
        client = yield self.connect()
        client.write(b"still here")
        got = yield self.read_exactly(client, 10)
        self.assertEqual(got, b"still here")
        yield client.close()
        yield proxy.finished[1]

    @inlineCallbacks
    def test_backend_closes(self):
        port = util.allocate_tcp_port()
        ep = TCP4ServerEndpoint(reactor, port, interface="127.0.0.1")
        greeter = yield ep.listen(protocol.Factory.forProtocol(Greeter))
        self.addCleanup(greeter.stopListening)
        self.remote = "127.0.0.1:%d" % port
        proxy = RecordingProxy(reactor=reactor)
        self.serve(proxy)
        client = yield self.connect()
        got = yield self.read_exactly(client, 100)
        self.assertEqual(got, b"hello, goodbye")
        yield proxy.finished[0]

    @inlineCallbacks
    def test_serve_stops_with_listener(self):
        proxy = RecordingProxy(reactor=reactor)
        d = proxy.serve(self.listener, self.remote)
        yield self.listener.close()
        yield self.assertFailure(d, error.ConnectionDone)
