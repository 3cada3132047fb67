# -*- test-case-name: onramp.test.test_crypto -*-

import os
import datetime
import ipaddress
from twisted.internet.ssl import PrivateCertificate
from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from onramp import util
from onramp.ipb import TLSBootstrapError
from onramp.keystore import default_keystore
from onramp.logging import log
from onramp.logging.log import NOISY, OPERATIONAL

VALIDITY = datetime.timedelta(days=5*365)

def _log(*args, **kwargs):
    kwargs.setdefault("facility", "onramp.tls")
    return log.msg(*args, **kwargs)

def create_private_key():
    return ec.generate_private_key(ec.SECP384R1())

def _subject_alt_names(hosts):
    # each host may itself be a comma-separated list
    names = []
    for h in [part.strip() for host in hosts for part in host.split(",")]:
        if not h or h in names:
            continue
        names.append(h)
    sans = []
    for h in names:
        try:
            sans.append(x509.IPAddress(ipaddress.ip_address(h)))
        except ValueError:
            sans.append(x509.DNSName(h))
    return sans

def create_certificate(private_key, *hosts):
    """Return a self-signed x509.Certificate for hosts[0], also valid for
    the remaining hosts. IP literals become IP SANs, everything else a DNS
    SAN."""
    host = hosts[0] if hosts else ""
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "I2P Anonymous Network"),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "I2P"),
        x509.NameAttribute(NameOID.LOCALITY_NAME, "XX"),
        x509.NameAttribute(NameOID.STREET_ADDRESS, "XX"),
        x509.NameAttribute(NameOID.COUNTRY_NAME, "XX"),
        x509.NameAttribute(NameOID.COMMON_NAME, host),
        ])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (x509.CertificateBuilder()
               .subject_name(name)
               .issuer_name(name)
               .public_key(private_key.public_key())
               .serial_number(x509.random_serial_number())
               .not_valid_before(now)
               .not_valid_after(now + VALIDITY)
               .add_extension(x509.BasicConstraints(ca=True, path_length=None),
                              critical=True)
               .add_extension(x509.KeyUsage(digital_signature=True,
                                            content_commitment=False,
                                            key_encipherment=True,
                                            data_encipherment=False,
                                            key_agreement=False,
                                            key_cert_sign=True,
                                            crl_sign=False,
                                            encipher_only=False,
                                            decipher_only=False),
                              critical=True)
               .add_extension(x509.ExtendedKeyUsage(
                   [ExtendedKeyUsageOID.SERVER_AUTH]), critical=False))
    sans = _subject_alt_names(hosts)
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans),
                                        critical=False)
    return builder.sign(private_key, hashes.SHA512())

def create_crl(certificate, private_key):
    """Return an empty x509.CertificateRevocationList issued by
    'certificate', valid for as long as the certificate is."""
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (x509.CertificateRevocationListBuilder()
               .issuer_name(certificate.subject)
               .last_update(now)
               .next_update(certificate.not_valid_after_utc))
    return builder.sign(private_key, hashes.SHA512())

def _pem(obj):
    return obj.public_bytes(serialization.Encoding.PEM)

def _generate(hostname, alt_names, paths):
    crt_path, pem_path, crl_path = paths
    _log(format="generating TLS keys for %(host)s", host=hostname,
         level=OPERATIONAL)
    key = create_private_key()
    cert = create_certificate(key, hostname, *alt_names)
    crl = create_crl(cert, key)
    key_pem = key.private_bytes(serialization.Encoding.PEM,
                                serialization.PrivateFormat.TraditionalOpenSSL,
                                serialization.NoEncryption())
    util.write_atomically(crt_path, _pem(cert), mode=0o644)
    util.write_atomically(pem_path, key_pem + _pem(cert))
    util.write_atomically(crl_path, _pem(crl))
    _log(format="TLS certificate saved to %(path)s", path=crt_path)

def certificate_for(hostname, alt_names=(), keystore=None):
    """Return a twisted.internet.ssl.PrivateCertificate for 'hostname',
    generating (and storing) a new key, certificate, and CRL in the TLS
    keystore unless the certificate and key files already exist. Use
    .options() on the result to get a server context factory."""
    keystore = keystore or default_keystore()
    try:
        paths = keystore.tls_paths(hostname)
        crt_path, pem_path, _ = paths
        if not (os.path.exists(crt_path) and os.path.exists(pem_path)):
            _generate(hostname, alt_names, paths)
        else:
            _log(format="using existing TLS keys for %(host)s",
                 host=hostname, level=NOISY)
        with open(crt_path, "rb") as f:
            crt_data = f.read()
        with open(pem_path, "rb") as f:
            pem_data = f.read()
        return load_certificate(crt_data + pem_data)
    except TLSBootstrapError:
        raise
    except Exception as e:
        raise TLSBootstrapError("unable to bootstrap TLS for %s: %s"
                                % (hostname, e)) from e

def load_certificate(cert_data):
    """Build a PrivateCertificate from PEM data holding a certificate and
    its private key. The first certificate found is used."""
    cert = PrivateCertificate.loadPEM(cert_data)
    return cert

def tls_listener(listener, cert):
    """Wrap an onramp.connection.Listener so that every connection it
    accepts from now on speaks TLS, using the PrivateCertificate 'cert'."""
    return listener.wrap_tls(cert.options())
