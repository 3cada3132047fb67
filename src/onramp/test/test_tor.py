import os
import base64
import hashlib
import mock
from cryptography import x509
from cryptography.x509.oid import NameOID
from twisted.trial import unittest
from twisted.internet import defer, error
from twisted.internet.endpoints import TCP4ClientEndpoint
from twisted.internet.interfaces import IStreamClientEndpoint
from twisted.internet.task import Clock

from onramp import info
from onramp.connection import Listener, Connection
from onramp.connections import tor
from onramp.ipb import IdentityError, SessionError, DialError, ITorClient
from onramp.test.common import FakeTorClient, KeystoreMixin


class Keys(unittest.TestCase):
    def test_generate(self):
        k1 = tor.generate_onion_key()
        k2 = tor.generate_onion_key()
        self.assertEqual(len(k1), 32)
        self.assertNotEqual(k1, k2)

    def test_service_id(self):
        seed = tor.generate_onion_key()
        sid = tor.onion_service_id(seed)
        self.assertEqual(len(sid), 56)
        self.assertEqual(sid, sid.lower())
        raw = base64.b32decode(sid.upper())
        self.assertEqual(len(raw), 35)
        pub, checksum, version = raw[:32], raw[32:34], raw[34:]
        self.assertEqual(pub, tor.onion_public_key(seed))
        self.assertEqual(version, b"\x03")
        self.assertEqual(checksum, hashlib.sha3_256(
            b".onion checksum" + pub + b"\x03").digest()[:2])
        self.assertEqual(tor.onion_address(seed), sid + ".onion")

    def test_stable(self):
        seed = b"\x42" * 32
        self.assertEqual(tor.onion_service_id(seed),
                         tor.onion_service_id(seed))
        # the 64-byte seed+public form names the same service
        pub = tor.onion_public_key(seed)
        self.assertEqual(tor.onion_service_id(seed + pub),
                         tor.onion_service_id(seed))

    def test_bad_length(self):
        self.assertRaises(IdentityError, tor.onion_service_id, b"short")
        self.assertRaises(IdentityError, tor.tor_private_key_blob, b"x" * 33)

    def test_blob(self):
        seed = tor.generate_onion_key()
        blob = tor.tor_private_key_blob(seed)
        self.assertTrue(blob.startswith("ED25519-V3:"))
        expanded = base64.b64decode(blob[len("ED25519-V3:"):])
        self.assertEqual(len(expanded), 64)
        self.assertEqual(expanded[0] & 7, 0)
        self.assertEqual(expanded[31] & 128, 0)
        self.assertEqual(expanded[31] & 64, 64)
        # the upper half is the unmodified hash prefix
        self.assertEqual(expanded[32:], hashlib.sha512(seed).digest()[32:])

    def test_is_onion(self):
        self.assertTrue(tor.is_onion_address("abc.onion"))
        self.assertTrue(tor.is_onion_address("abc.onion:80"))
        self.assertFalse(tor.is_onion_address("onion.example.com:80"))
        self.assertFalse(tor.is_onion_address("abc.b32.i2p"))


class Session(KeystoreMixin, unittest.TestCase):
    def setUp(self):
        self.client = FakeTorClient()
        self.keystore = self.make_keystore()
        self.o = tor.OnionSession("svc", client=self.client, port=8080,
                                  keystore=self.keystore)

    def test_listen(self):
        l = self.successResultOf(self.o.listen())
        self.assertIsInstance(l, Listener)
        seed = self.keystore.load_identity("onion", "svc")
        self.assertEqual(len(seed), 32)
        self.assertEqual(l.getHost().host, tor.onion_address(seed))
        self.assertEqual(l.getHost().port, 8080)
        self.assertEqual(self.o.state, info.SESSION_ACTIVE)
        (ep,) = self.client.endpoints
        self.assertEqual(ep.private_key_blob, tor.tor_private_key_blob(seed))
        self.assertEqual(ep.port, 8080)
        # the session generated its key without asking Tor
        self.assertEqual(self.client.calls,
                         ["open_control", "open_session", "listen"])

    def test_address_survives_restart(self):
        self.successResultOf(self.o.listen())
        first = self.o.info.address
        self.successResultOf(self.o.close())
        again = tor.OnionSession("svc", client=FakeTorClient(),
                                 keystore=self.keystore)
        self.successResultOf(again.listen())
        self.assertEqual(again.info.address, first)

    def test_service_id(self):
        sid = self.successResultOf(self.o.service_id())
        addr = self.successResultOf(self.o.address())
        self.assertEqual(sid + ".onion", addr)
        # no Tor needed for that
        self.assertEqual(self.client.calls, [])

    def test_datagram(self):
        f = self.failureResultOf(self.o.listen("udp"), SessionError)
        self.assertEqual(f.value.stage, "session")

    def test_dial(self):
        c = self.successResultOf(self.o.dial("tcp", "abcdef.onion:80"))
        self.assertIsInstance(c, Connection)
        self.assertEqual(self.client.dialed[0][:2], ("abcdef.onion", 80))
        # clearnet goes through Tor too
        self.successResultOf(self.o.dial("tcp", "example.com:443"))
        self.assertEqual(self.client.dialed[1][:2], ("example.com", 443))
        self.assertEqual(self.client.count("open_control"), 1)

    def test_dial_private_address(self):
        for addr in ["127.0.0.1:80", "192.168.1.1:80", "[::1]:80"]:
            f = self.failureResultOf(self.o.dial("tcp", addr), DialError)
            self.assertIn("non-public", str(f.value))
        self.assertEqual(self.client.count("dial"), 0)

    def test_close(self):
        self.successResultOf(self.o.listen())
        self.successResultOf(self.o.close())
        self.assertTrue(self.client.ports[0].stopped)
        self.assertEqual(self.client.count("close_control"), 1)
        self.assertEqual(self.o.state, info.CLOSED)

    def test_tls_keys(self):
        # before any session exists
        cert = self.successResultOf(self.o.tls_keys())
        self.assertEqual(self.o.state, info.UNINITIALIZED)
        sid = self.successResultOf(self.o.service_id())
        c = cert.original.to_cryptography()
        cn = c.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        self.assertEqual(cn, sid)
        sans = c.extensions.get_extension_for_class(
            x509.SubjectAlternativeName).value
        self.assertEqual(sans.get_values_for_type(x509.DNSName),
                         [sid, sid + ".onion"])


class Helpers(KeystoreMixin, unittest.TestCase):
    def test_onion_keys(self):
        ks = self.make_keystore()
        k1 = self.successResultOf(tor.onion_keys("h", keystore=ks))
        k2 = self.successResultOf(tor.onion_keys("h", keystore=ks))
        self.assertEqual(k1, k2)
        tor.delete_onion_keys("h", keystore=ks)
        k3 = self.successResultOf(tor.onion_keys("h", keystore=ks))
        self.assertNotEqual(k1, k3)

    def test_new_onion(self):
        client = FakeTorClient()
        o = self.successResultOf(tor.new_onion(
            "n", client=client, keystore=self.make_keystore()))
        self.assertIsInstance(o, tor.OnionSession)
        self.assertEqual(o.state, info.SESSION_ACTIVE)
        self.assertEqual(o.port, 80)

    def test_default_client(self):
        orig = tor._shared_client
        self.addCleanup(tor.set_default_tor_client, orig)
        fake = tor.set_default_tor_client(FakeTorClient())
        o = tor.OnionSession()
        self.assertEqual(o.name, "onramp-onion")
        self.assertIdentical(o.client, fake)


class TxTor(unittest.TestCase):
    def setUp(self):
        self.reactor = Clock()
        self.tor = mock.Mock()
        self.tor.quit.return_value = defer.succeed(None)

    def test_provides(self):
        c = tor.TxTorClient()
        self.assertTrue(ITorClient.providedBy(c))
        self.assertEqual(repr(c), "<TxTorClient tcp:127.0.0.1:9051>")
        self.assertTrue(tor.default_tor_client().shared)

    def test_connect_once(self):
        c = tor.TxTorClient("tcp:127.0.0.1:9999")
        d = defer.Deferred()
        with mock.patch("txtorcon.connect", return_value=d) as connect:
            d1 = c.open_control(self.reactor)
            d2 = c.open_control(self.reactor)
            self.assertNoResult(d1)
            d.callback(self.tor)
            self.assertIdentical(self.successResultOf(d1), self.tor)
            self.assertIdentical(self.successResultOf(d2), self.tor)
            self.assertIdentical(
                self.successResultOf(c.open_control(self.reactor)), self.tor)
        self.assertEqual(connect.call_count, 1)
        ((reactor, ep), _) = connect.call_args
        self.assertIdentical(reactor, self.reactor)
        self.assertTrue(IStreamClientEndpoint.providedBy(ep))

    def test_connect_retry(self):
        c = tor.TxTorClient("tcp:127.0.0.1:9999")
        with mock.patch("txtorcon.connect",
                        return_value=defer.fail(
                            error.ConnectionRefusedError())):
            self.failureResultOf(c.open_control(self.reactor),
                                 error.ConnectionRefusedError)
        with mock.patch("txtorcon.connect",
                        return_value=defer.succeed(self.tor)) as connect:
            self.assertIdentical(
                self.successResultOf(c.open_control(self.reactor)), self.tor)
        self.assertEqual(connect.call_count, 1)

    def test_endpoint_object(self):
        ep = TCP4ClientEndpoint(self.reactor, "127.0.0.1", 9051)
        c = tor.TxTorClient(ep)
        with mock.patch("txtorcon.connect",
                        return_value=defer.succeed(self.tor)) as connect:
            self.successResultOf(c.open_control(self.reactor))
        connect.assert_called_once_with(self.reactor, ep)

    def test_launch(self):
        datadir = self.mktemp()
        c = tor.TxTorClient(launch=True, data_directory=datadir,
                            tor_binary="/usr/bin/tor")
        self.assertEqual(repr(c), "<TxTorClient launched>")
        with mock.patch("txtorcon.launch",
                        return_value=defer.succeed(self.tor)) as launch:
            self.successResultOf(c.open_control(self.reactor))
        launch.assert_called_once_with(self.reactor, data_directory=datadir,
                                       tor_binary="/usr/bin/tor")
        self.assertTrue(os.path.isdir(datadir))

    def test_close_private(self):
        c = tor.TxTorClient("tcp:127.0.0.1:9999")
        with mock.patch("txtorcon.connect",
                        return_value=defer.succeed(self.tor)) as connect:
            control = self.successResultOf(c.open_control(self.reactor))
            self.successResultOf(c.close_control(control))
            self.tor.quit.assert_called_once_with()
            # the next user gets a new controller
            self.successResultOf(c.open_control(self.reactor))
        self.assertEqual(connect.call_count, 2)

    def test_close_shared(self):
        c = tor.TxTorClient("tcp:127.0.0.1:9999", shared=True)
        with mock.patch("txtorcon.connect",
                        return_value=defer.succeed(self.tor)):
            control = self.successResultOf(c.open_control(self.reactor))
            self.successResultOf(c.close_control(control))
        self.assertFalse(self.tor.quit.called)

    def test_session_methods(self):
        c = tor.TxTorClient()
        onion_ep = mock.Mock()
        self.tor.create_onion_endpoint.return_value = onion_ep
        self.assertIdentical(c.open_session(self.tor, "ED25519-V3:xx", 80),
                             onion_ep)
        self.tor.create_onion_endpoint.assert_called_once_with(
            80, private_key="ED25519-V3:xx", version=3)
        factory = object()
        onion_ep.listen.return_value = defer.succeed("port")
        self.assertEqual(self.successResultOf(c.listen(self.tor, onion_ep,
                                                       factory)), "port")
        stream_ep = mock.Mock()
        stream_ep.connect.return_value = defer.succeed("proto")
        self.tor.stream_via.return_value = stream_ep
        self.assertEqual(self.successResultOf(
            c.dial(self.tor, "abc.onion", 80, factory)), "proto")
        self.tor.stream_via.assert_called_once_with("abc.onion", 80)
        stream_ep.connect.assert_called_once_with(factory)
