# -*- test-case-name: onramp.test.test_keystore -*-

import os
import shutil

from onramp import config, util
from onramp.ipb import PathError, KeystoreError
from onramp.logging import log
from onramp.logging.log import NOISY, UNUSUAL

IDENTITY_SUFFIXES = {
    "i2p": ".i2p.private",
    "onion": ".tor.private",
    }

def _log(*args, **kwargs):
    kwargs.setdefault("facility", "onramp.keystore")
    kwargs.setdefault("level", NOISY)
    return log.msg(*args, **kwargs)


class Keystore:
    """I own the three directories where identities and TLS material live:
    i2pkeys/, onionkeys/, and tlskeys/ (see config.KEYSTORE_DIRS). They are
    resolved relative to 'basedir', which defaults to the working directory
    at the time of first use, and are created on demand."""

    def __init__(self, basedir=None, dirnames=None):
        self._basedir = basedir
        self._dirnames = dict(dirnames or config.KEYSTORE_DIRS)
        self._roots = {}

    def __repr__(self):
        return "<Keystore at %s>" % (self._basedir or "<cwd>",)

    def basedir(self):
        if self._basedir is None:
            try:
                self._basedir = os.getcwd()
            except OSError as e:
                raise PathError("unable to determine working directory: %s"
                                % (e,)) from e
        return os.path.abspath(self._basedir)

    def root(self, kind):
        """Return the absolute path of the directory for 'kind' (one of
        'i2p', 'onion', or 'tls'), creating it if necessary."""
        if kind not in self._dirnames:
            raise ValueError("unknown keystore kind %r" % (kind,))
        path = self._roots.get(kind)
        if path is None:
            path = os.path.join(self.basedir(), self._dirnames[kind])
            self._roots[kind] = path
        if not os.path.isdir(path):
            _log(format="creating %(kind)s keystore at %(path)s",
                 kind=kind, path=path)
            try:
                os.makedirs(path, 0o755, exist_ok=True)
            except OSError as e:
                raise PathError("unable to create keystore %s: %s"
                                % (path, e)) from e
        return path

    def delete(self, kind):
        """Remove the whole directory for 'kind'. Callers must not do this
        while sessions that use it are being established."""
        if kind not in self._dirnames:
            raise ValueError("unknown keystore kind %r" % (kind,))
        path = os.path.join(self.basedir(), self._dirnames[kind])
        _log(format="deleting %(kind)s keystore at %(path)s",
             kind=kind, path=path, level=UNUSUAL)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PathError("unable to delete keystore %s: %s"
                            % (path, e)) from e
        self._roots.pop(kind, None)

    # identities

    def identity_path(self, kind, name):
        assert kind in IDENTITY_SUFFIXES, kind
        return os.path.join(self.root(kind), name + IDENTITY_SUFFIXES[kind])

    def load_identity(self, kind, name):
        """Return the stored identity bytes, or None if there are none. An
        empty file is treated as missing (and will be regenerated)."""
        path = self.identity_path(kind, name)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise KeystoreError("unable to read %s: %s" % (path, e)) from e
        if not data:
            _log(format="keyfile %(path)s is empty, re-generating keys",
                 path=path, level=UNUSUAL)
            return None
        return data

    def store_identity(self, kind, name, data):
        assert isinstance(data, bytes), type(data)
        path = self.identity_path(kind, name)
        try:
            util.write_atomically(path, data)
        except OSError as e:
            raise KeystoreError("unable to write %s: %s" % (path, e)) from e
        _log(format="stored %(kind)s identity for %(name)s",
             kind=kind, name=name)
        return path

    def delete_identity(self, kind, name):
        """Permanently remove an identity. This changes the address of any
        service that is later published under the same name."""
        path = self.identity_path(kind, name)
        try:
            os.remove(path)
        except OSError as e:
            raise KeystoreError("unable to delete %s: %s" % (path, e)) from e
        _log(format="deleted %(kind)s identity for %(name)s",
             kind=kind, name=name, level=UNUSUAL)

    # TLS material

    def tls_paths(self, hostname):
        root = self.root("tls")
        return (os.path.join(root, hostname + ".crt"),
                os.path.join(root, hostname + ".pem"),
                os.path.join(root, hostname + ".crl"))


_default = None

def default_keystore():
    global _default
    if _default is None:
        _default = Keystore()
    return _default

def set_default_keystore(keystore_or_basedir):
    """Replace the process-wide keystore. Accepts a Keystore, or a base
    directory to build one from. Returns the new default."""
    global _default
    if isinstance(keystore_or_basedir, Keystore):
        _default = keystore_or_basedir
    else:
        _default = Keystore(keystore_or_basedir)
    return _default

def resolve_root(kind):
    return default_keystore().root(kind)

def delete_root(kind):
    return default_keystore().delete(kind)
