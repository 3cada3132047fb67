# -*- test-case-name: onramp.test.test_connection -*-

from zope.interface import implementer
from twisted.internet import protocol, defer, error, interfaces
from twisted.protocols import policies
from twisted.protocols.tls import TLSMemoryBIOFactory
from twisted.python.failure import Failure

from onramp.observer import OneShotObserverList
from onramp.logging import log
from onramp.logging.log import NOISY


@implementer(interfaces.IAddress)
class TransportAddress:
    """The address of one end of an onramp connection or listener. 'host'
    is a .b32.i2p name, a .onion name, or an ordinary hostname/IP."""

    def __init__(self, transport, host, port=None):
        self.transport = transport
        self.host = host
        self.port = port

    def __eq__(self, other):
        if not isinstance(other, TransportAddress):
            return NotImplemented
        return ((self.transport, self.host, self.port) ==
                (other.transport, other.host, other.port))

    def __hash__(self):
        return hash((self.transport, self.host, self.port))

    def __str__(self):
        if self.port is None:
            return self.host
        return "%s:%d" % (self.host, self.port)

    def __repr__(self):
        return "TransportAddress(%r, %r, %r)" % (self.transport, self.host,
                                                 self.port)


class Connection(protocol.Protocol, policies.TimeoutMixin):
    """A byte stream with pull-style reads.

    read() returns a Deferred that fires with the next chunk of bytes, with
    b"" once the other side has closed cleanly, or with a Failure if the
    connection was lost for some other reason. write() never blocks.
    """
    listener = None

    def __init__(self):
        self._buffered = []
        self._readers = []
        self._lost = None
        self._closing = False
        self._when_closed = OneShotObserverList()

    def __repr__(self):
        return "<%s to %s>" % (self.__class__.__name__, self.getPeer())

    def connectionMade(self):
        if self.listener is not None:
            self.listener._connection_made(self)

    def dataReceived(self, data):
        self.resetTimeout()
        if self._readers:
            self._readers.pop(0).callback(data)
        else:
            self._buffered.append(data)

    def connectionLost(self, reason=protocol.connectionDone):
        self.setTimeout(None)
        self._lost = reason
        readers, self._readers = self._readers, []
        for d in readers:
            self._deliver_eof(d)
        self._when_closed.fireIfNotFired(None)

    def _deliver_eof(self, d):
        if self._lost.check(error.ConnectionDone):
            d.callback(b"")
        else:
            d.errback(self._lost)

    def read(self):
        if self._buffered:
            data = b"".join(self._buffered)
            self._buffered = []
            return defer.succeed(data)
        d = defer.Deferred(self._cancel_read)
        if self._lost is not None:
            self._deliver_eof(d)
            return d
        self._readers.append(d)
        return d

    def _cancel_read(self, d):
        if d in self._readers:
            self._readers.remove(d)

    def write(self, data):
        """Queue 'data' for the peer. Returns the number of bytes queued."""
        assert isinstance(data, bytes), type(data)
        if self._lost is not None or self._closing:
            raise error.ConnectionDone("write to a closed connection")
        self.transport.write(data)
        return len(data)

    def close(self):
        """Close the connection. Returns a Deferred that fires once the
        connection is gone. Closing twice is harmless."""
        if self._lost is None and not self._closing:
            self._closing = True
            self.transport.loseConnection()
        return self._when_closed.whenFired()

    def whenClosed(self):
        return self._when_closed.whenFired()

    def set_deadline(self, seconds):
        """Drop the connection after 'seconds' without incoming data. None
        disables the deadline."""
        self.setTimeout(seconds)

    def timeoutConnection(self):
        log.msg(format="%(conn)s timed out", conn=repr(self), level=NOISY,
                facility="onramp.connection")
        if hasattr(self.transport, "abortConnection"):
            self.transport.abortConnection()
        else:
            self.transport.loseConnection()

    def getHost(self):
        if self.transport is None:
            return None
        return self.transport.getHost()

    def getPeer(self):
        if self.transport is None:
            return None
        return self.transport.getPeer()


@implementer(interfaces.ITransport)
class NullTransport:
    """A transport that goes nowhere: writes vanish, nothing arrives."""
    disconnecting = False

    def write(self, data):
        pass
    def writeSequence(self, data):
        pass
    def loseConnection(self):
        pass
    def abortConnection(self):
        pass
    def getHost(self):
        return TransportAddress("null", "127.0.0.1")
    def getPeer(self):
        return TransportAddress("null", "127.0.0.1")

class NullConnection(Connection):
    """What a garlic session hands out when asked to dial something that is
    not an I2P destination. Reads return b"" at once, writes are discarded,
    and close() does nothing. This lets one dial function serve an HTTP
    client that also sees non-I2P URLs."""

    def __init__(self):
        Connection.__init__(self)
        self.makeConnection(NullTransport())

    def read(self):
        return defer.succeed(b"")

    def write(self, data):
        return len(data)

    def close(self):
        return defer.succeed(None)

    def set_deadline(self, seconds):
        pass


def connection_factory():
    return protocol.Factory.forProtocol(Connection)


@implementer(interfaces.IListeningPort)
class Listener(protocol.ServerFactory):
    """I hold one listening port and hand out its inbound connections,
    either as Connections through accept(), or to a Twisted protocol
    factory attached with endpoint().listen(factory).

    Once wrap_tls() has been called, every connection arriving afterwards is
    wrapped in a server-side TLS layer."""

    noisy = False

    def __init__(self, address):
        self._address = address
        self._port = None
        self._pending = []
        self._waiting = []
        self._delegate = None
        self._tls_options = None
        self._closed = False
        self._tls_listener = None

    def __repr__(self):
        return "<Listener on %s>" % (self._address,)

    def listenOn(self, endpoint):
        """Start listening on the given IStreamServerEndpoint. Fires with
        this Listener."""
        d = endpoint.listen(self)
        d.addCallback(self.attach)
        return d

    def attach(self, port):
        """Adopt an IListeningPort that was started with me as its factory.
        close() will stop it."""
        self._port = port
        return self

    # IListeningPort

    def startListening(self):
        pass

    def stopListening(self):
        return self.close()

    def getHost(self):
        return self._address

    @property
    def addr(self):
        return str(self._address)

    def buildProtocol(self, addr):
        if self._closed:
            return None
        if self._delegate is not None:
            factory = self._delegate
        else:
            factory = _AcceptFactory(self)
        if self._tls_options is not None:
            factory = TLSMemoryBIOFactory(self._tls_options, False, factory)
        return factory.buildProtocol(addr)

    def _connection_made(self, conn):
        if self._waiting:
            self._waiting.pop(0).callback(conn)
        else:
            self._pending.append(conn)

    def accept(self):
        """Fire with the next inbound Connection. Fails with
        twisted.internet.error.ConnectionDone once I am closed."""
        if self._pending:
            return defer.succeed(self._pending.pop(0))
        if self._closed:
            return defer.fail(error.ConnectionDone("listener closed"))
        d = defer.Deferred(self._cancel_accept)
        self._waiting.append(d)
        return d

    def _cancel_accept(self, d):
        if d in self._waiting:
            self._waiting.remove(d)

    def close(self):
        """Stop listening. Pending accept() calls fail, connections that were
        never accepted are dropped. Closing twice is harmless."""
        if self._closed:
            return defer.succeed(None)
        self._closed = True
        waiting, self._waiting = self._waiting, []
        for d in waiting:
            d.errback(Failure(error.ConnectionDone("listener closed")))
        pending, self._pending = self._pending, []
        for conn in pending:
            conn.close()
        if self._port is not None:
            return defer.maybeDeferred(self._port.stopListening)
        return defer.succeed(None)

    def closed(self):
        return self._closed

    def wrap_tls(self, options):
        """Return a TLS view of this listener, using 'options' (typically
        PrivateCertificate.options()) for the server side of each handshake.
        """
        self._tls_options = options
        if self._tls_listener is None:
            self._tls_listener = TLSListener(self)
        return self._tls_listener

    def endpoint(self):
        return ListenerEndpoint(self)


class TLSListener:
    """The TLS view of a Listener. It shares the accept queue of the
    Listener it wraps."""

    def __init__(self, listener):
        self._listener = listener

    def __repr__(self):
        return "<TLSListener on %s>" % (self._listener.getHost(),)

    def accept(self):
        return self._listener.accept()

    def close(self):
        return self._listener.close()

    def closed(self):
        return self._listener.closed()

    def getHost(self):
        return self._listener.getHost()

    @property
    def addr(self):
        return self._listener.addr

    def endpoint(self):
        return ListenerEndpoint(self._listener)


class _AcceptFactory(protocol.Factory):
    noisy = False

    def __init__(self, listener):
        self._listener = listener

    def buildProtocol(self, addr):
        p = Connection()
        p.factory = self
        p.listener = self._listener
        return p


@implementer(interfaces.IStreamServerEndpoint)
class ListenerEndpoint:
    """Adapt an already-listening Listener to IStreamServerEndpoint, so that
    e.g. a twisted.web Site can serve on it. listen() fires with the Listener
    itself, which provides IListeningPort."""

    def __init__(self, listener):
        self._listener = listener

    def listen(self, factory):
        if self._listener.closed():
            return defer.fail(error.CannotListenError(
                None, str(self._listener.getHost()), "listener closed"))
        self._listener._delegate = factory
        return defer.succeed(self._listener)
