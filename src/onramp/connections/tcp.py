# -*- test-case-name: onramp.test.test_tcp -*-

import re
import ipaddress
from twisted.internet.endpoints import HostnameEndpoint

DOTTED_QUAD_RESTR=r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}"
# In addition to the usual colon-hex IPv6 addresses, accept "::FFFF:1.2.3.4"
# (IPv4-mapped), and "FE8::1%en0" (local-scope/site-scope with a zone-id)
COLON_HEX_RESTR=(r"\[[A-Fa-f0-9:]+" +
                 r"(?:" + DOTTED_QUAD_RESTR + r"|%[a-zA-Z0-9.]+)?\]")
DNS_NAME_RESTR=r"[A-Za-z.0-9\-~]+"

# (hostname or IPv4 address or []-wrapped IPv6 address), then an optional
# port number
HOST_PORT_RE=re.compile(r"^(%s|%s|%s)(?::(\d{1,5}))?$" %
                        (DOTTED_QUAD_RESTR, COLON_HEX_RESTR, DNS_NAME_RESTR))

def split_host_port(addr, default_port=None):
    """Split 'host:port' (or '[v6addr]:port') into (host, int port). The
    brackets are removed from IPv6 addresses. If the port is missing,
    'default_port' is used, and if that is None too, ValueError is raised.
    """
    mo = HOST_PORT_RE.search(addr)
    if not mo:
        raise ValueError("unparseable address %r" % (addr,))
    host, port = mo.group(1), mo.group(2)
    host = host.lstrip("[").rstrip("]")
    if port is None:
        if default_port is None:
            raise ValueError("address %r has no port" % (addr,))
        return host, default_port
    port = int(port)
    if not 0 < port < 65536:
        raise ValueError("bad port in %r" % (addr,))
    return host, port

def join_host_port(host, port):
    if ":" in host:
        return "[%s]:%d" % (host, port)
    return "%s:%d" % (host, port)

def hostname_of(addr):
    """Return just the host part of 'addr', which may or may not carry a
    port."""
    return split_host_port(addr, default_port=0)[0]

def is_non_public_numeric_address(host):
    # for numeric hostnames, skip RFC1918 addresses, since no Tor exit
    # node will be able to reach those. Likewise ignore IPv6 addresses.
    try:
        a = ipaddress.ip_address(host)
    except ValueError:
        return False # non-numeric, let Tor try it
    if a.version != 4:
        return True # IPv6 gets ignored
    if (a.is_loopback or a.is_multicast or a.is_private or a.is_reserved
        or a.is_unspecified):
        return True # too weird, don't connect
    return False

def endpoint(reactor, host, port):
    return HostnameEndpoint(reactor, host, port)

def dial(reactor, host, port, factory):
    """Connect 'factory' straight to host:port, without any anonymizing
    transport. Fires with the protocol that 'factory' built."""
    return endpoint(reactor, host, port).connect(factory)
