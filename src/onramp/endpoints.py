# -*- test-case-name: onramp.test.test_endpoints -*-

from zope.interface import implementer
from twisted.internet.interfaces import IStreamClientEndpoint
from twisted.web.iweb import IAgentEndpointFactory

from onramp.context import Context
from onramp.connections import tcp
from onramp.ipb import IDialer


@implementer(IStreamClientEndpoint)
class SessionEndpoint:
    """Connect an arbitrary protocol factory to host:port through a
    TransportSession."""

    def __init__(self, session, host, port):
        self._session = session
        self._host = host
        self._port = port

    def __repr__(self):
        return "<SessionEndpoint %s via %r>" % (
            tcp.join_host_port(self._host, self._port), self._session)

    def connect(self, factory):
        return self._session.connect(Context.background(), self._host,
                                     self._port, factory)


@implementer(IAgentEndpointFactory)
class AgentEndpointFactory:
    """Give this to twisted.web.client.Agent.usingEndpointFactory() to make
    HTTP requests through a session."""

    def __init__(self, session):
        assert IDialer.providedBy(session), session
        self._session = session

    def endpointForURI(self, uri):
        host = uri.host
        if isinstance(host, bytes):
            host = host.decode("ascii")
        return SessionEndpoint(self._session, host, uri.port)
