import os
import base64
from zope.interface import implementer
from twisted.internet import defer
from twisted.internet.interfaces import IListeningPort
from twisted.internet.testing import StringTransport
from twisted.python import failure

from onramp.ipb import ISAMClient, ITorClient
from onramp.keystore import Keystore


class ShouldFailMixin:

    def shouldFail(self, expected_failure, which, substring,
                   callable, *args, **kwargs):
        assert substring is None or isinstance(substring, str)
        d = defer.maybeDeferred(callable, *args, **kwargs)
        def done(res):
            if isinstance(res, failure.Failure):
                if not res.check(expected_failure):
                    self.fail("got failure %s, was expecting %s"
                              % (res, expected_failure))
                if substring:
                    self.assertTrue(substring in str(res),
                                    "%s: substring '%s' not in '%s'"
                                    % (which, substring, str(res)))
                # make the Failure available to a subsequent callback, but
                # keep it from triggering an errback
                return [res]
            else:
                self.fail("%s was supposed to raise %s, not get '%s'" %
                          (which, expected_failure, res))
        d.addBoth(done)
        return d


class KeystoreMixin:
    def make_keystore(self):
        basedir = self.mktemp()
        os.makedirs(basedir)
        return Keystore(basedir)


def make_i2p_keys(certlen=4):
    """Build something shaped like a SAM private destination: public key,
    signing key, certificate, then the private keys, in I2P base64."""
    dest = (os.urandom(256) + os.urandom(128) + b"\x05" +
            certlen.to_bytes(2, "big") + os.urandom(certlen))
    private = os.urandom(256) + os.urandom(32)
    return base64.b64encode(dest + private, altchars=b"-~")


@implementer(IListeningPort)
class FakePort:
    def __init__(self, factory):
        self.factory = factory
        self.stopped = False
    def startListening(self):
        pass
    def stopListening(self):
        self.stopped = True
        return defer.succeed(None)
    def getHost(self):
        return None


class _FakeClient:
    """Records calls, and can be told to fail or to hold any of them.

    fail[method] = exception makes the next call of that method fail.
    hold(method) makes the next call return a Deferred that the test
    fires with release(method, result)."""

    def __init__(self):
        self.calls = []
        self.fail = {}
        self._holding = set()
        self._held = {}
        self.dialed = []

    def _maybe(self, method, result):
        self.calls.append(method)
        if method in self.fail:
            return defer.fail(self.fail.pop(method))
        if method in self._holding:
            self._holding.discard(method)
            d = defer.Deferred()
            self._held[method] = (d, result)
            return d
        return defer.succeed(result)

    def count(self, method):
        return self.calls.count(method)

    def hold(self, method):
        self._holding.add(method)

    def release(self, method, error=None):
        d, result = self._held.pop(method)
        if error is not None:
            d.errback(error)
        else:
            d.callback(result)

    def _connect(self, host, port, factory):
        p = factory.buildProtocol(None)
        t = StringTransport()
        p.makeConnection(t)
        self.dialed.append((host, port, p, t))
        return p


@implementer(ISAMClient)
class FakeSAMClient(_FakeClient):
    def __init__(self):
        _FakeClient.__init__(self)
        self.ports = []

    def open_control(self, reactor):
        return self._maybe("open_control", "sam-control")

    def generate_identity(self, control, name):
        return self._maybe("generate_identity", make_i2p_keys())

    def open_session(self, control, name, identity_path, options, style):
        self.session_options = options
        return self._maybe("open_session", ("sam-session", style))

    def listen(self, control, session, name, identity_path, options,
               factory):
        port = FakePort(factory)
        self.ports.append(port)
        return self._maybe("listen", port)

    def dial(self, control, session, name, identity_path, options, host,
             port, factory):
        d = self._maybe("dial", None)
        d.addCallback(lambda _: self._connect(host, port, factory))
        return d

    def close_session(self, session):
        return self._maybe("close_session", None)

    def close_control(self, control):
        return self._maybe("close_control", None)


class FakeOnionEndpoint:
    def __init__(self, private_key_blob, port):
        self.private_key_blob = private_key_blob
        self.port = port


@implementer(ITorClient)
class FakeTorClient(_FakeClient):
    def __init__(self):
        _FakeClient.__init__(self)
        self.ports = []
        self.endpoints = []

    def open_control(self, reactor):
        return self._maybe("open_control", "tor-control")

    def open_session(self, control, private_key_blob, port):
        ep = FakeOnionEndpoint(private_key_blob, port)
        self.endpoints.append(ep)
        return self._maybe("open_session", ep)

    def listen(self, control, session, factory):
        port = FakePort(factory)
        self.ports.append(port)
        return self._maybe("listen", port)

    def dial(self, control, host, port, factory):
        d = self._maybe("dial", None)
        d.addCallback(lambda _: self._connect(host, port, factory))
        return d

    def close_control(self, control):
        return self._maybe("close_control", None)
