# -*- test-case-name: onramp.test.test_util -*-

import os, sys
import socket
from twisted.python.runtime import platformType


def move_into_place(source, dest):
    """Atomically replace a file, or as near to it as the platform allows.
    The dest file may or may not exist."""
    if "win32" in sys.platform.lower():
        try:
            os.remove(dest)
        except FileNotFoundError:
            pass
    os.rename(source, dest)

def write_atomically(path, data, mode=0o600):
    """Write bytes to a temporary sibling of 'path', then rename it into
    place. The file is created with the given permission bits."""
    tmp = path + ".tmp"
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
    except BaseException:
        os.unlink(tmp)
        raise
    move_into_place(tmp, path)

def allocate_tcp_port():
    """Return an (integer) available TCP port on localhost. This briefly
    listens on the port in question, then closes it right away."""

    # The kernel can hand out a port which is bound by some other process to
    # 127.0.0.1 when we ask with 0.0.0.0 (and vice versa on some OSes), so
    # each candidate is tested twice, once per interface. We use
    # SO_REUSEADDR so our lingering socket won't prevent the caller from
    # opening it themselves in a few moments.

    count = 0
    while True:
        s = _make_socket()
        s.bind(("0.0.0.0", 0))
        port = s.getsockname()[1]
        s.close()

        s = _make_socket()
        try:
            s.bind(("0.0.0.0", port))
            s.listen(5) # this is what sometimes fails
            s.close()
            s = _make_socket()
            s.bind(("127.0.0.1", port))
            s.listen(5)
            s.close()
            return port
        except socket.error:
            s.close()
            count += 1
            if count > 100:
                raise
            # try again

def _make_socket():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if platformType == "posix" and sys.platform != "cygwin":
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    return s
