#!/usr/bin/env python
import collections
import logging
import ssl
import urllib.parse

import tornado.iostream
import tornado.tcpclient
import tornado.tcpserver

import ssltunnel.session

logger = logging.getLogger(__name__)


class ProxyRoute(collections.namedtuple("ProxyRoute", ["host", "port"])):
    """
    The one backend every connection is relayed to.
    """
    @classmethod
    def from_origin(cls, origin):
        """
        Parse an origin such as "http://127.0.0.1:8080".
        Raises ValueError if it is not a plain-HTTP origin with a usable port.
        """
        parts = urllib.parse.urlsplit(origin)
        if parts.scheme != "http":
            raise ValueError("unsupported backend scheme %r in %r" % (parts.scheme, origin))
        if not parts.hostname:
            raise ValueError("no backend host in %r" % (origin,))
        # .port raises ValueError when out of range
        port = parts.port or 80
        return cls(parts.hostname, port)

    def __str__(self):
        return "%s:%d" % (self.host, self.port)


def server_ssl_context(certfile, keyfile):
    """
    Server-side TLS context for the listener.
    Raises ssl.SSLError/OSError if the files are missing or unusable.
    """
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(certfile, keyfile)
    return ctx


class ProxyServer(tornado.tcpserver.TCPServer):
    """
    TLS terminating HTTP proxy to a single backend.

    """
    def __init__(self,
                 route,
                 ssl_options=None,
                 session_factory=None,
                 handshake_timeout=None,connect_timeout=None,response_timeout=None,idle_timeout=None,
                 max_connections=None,
                 tcp_client=None,
                 *args,**kwargs):
        """
        ProxyServer initializer function (constructor) .
        Input Parameters:
            route                   : the ProxyRoute (host,port) of the backend.
                                      None means "no usable backend": every client gets a 502.
            ssl_options             : ssl.SSLContext (or Tornado's SSL options dictionary)
                                      for the listener . None means a plain TCP listener.
            session_factory         : creates one Session per connection (SessionFactory by default)
            handshake_timeout       : seconds allowed for the client's TLS handshake (None: no limit)
            connect_timeout         : seconds allowed to connect to the backend (None: no limit)
            response_timeout        : seconds allowed between forwarding a request and receiving the
                                      backend's response headers; the client then gets a 504 (None: no limit)
            idle_timeout            : seconds a connection may go without traffic in either direction (None: no limit)
            max_connections         : number of concurrent sessions (None: no limit).
                                      Connections over the limit are closed as soon as they are accepted.
            tcp_client              : tornado TCPClient used to reach the backend (a new one by default)
            args,kwargs             : will be passed directly to the Tornado engine
        """
        if session_factory is None:
            session_factory=ssltunnel.session.SessionFactory()
        assert isinstance(session_factory,ssltunnel.session.SessionFactory)
        self.session_factory=session_factory

        # This is the proxied server that we'll connect to
        self.route=route

        self.handshake_timeout=handshake_timeout
        self.connect_timeout=connect_timeout
        self.response_timeout=response_timeout
        self.idle_timeout=idle_timeout
        self.max_connections=max_connections

        if tcp_client is None:
            tcp_client=tornado.tcpclient.TCPClient()
        self.tcp_client=tcp_client

        # Session-List
        self.SessionsList=[]

        # call Tornado's Engine . pass args/kwargs directly
        super(ProxyServer,self).__init__(ssl_options=ssl_options,*args,**kwargs)

    def handle_stream(self, stream, address):
        """
        The proxy will call this function for every new connection as a callback
        This is the Session starting point: we initiate a new session and add it to the sessions-list
        """
        assert isinstance(stream,tornado.iostream.IOStream)
        if self.max_connections is not None and len(self.SessionsList) >= self.max_connections:
            logger.warning("Connection limit (%d) reached, dropping %s", self.max_connections, address)
            stream.close()
            return None
        session=self.session_factory.new()   # Use the factory to create new session
        self.SessionsList.append(session)
        # Tornado logs anything the session lets escape
        return session.new_connection(stream,address,self)

    def remove_session(self,session):
        assert isinstance(session,ssltunnel.session.Session)
        assert session.p2s_state==ssltunnel.session.Session.State.CLOSED
        assert session.c2p_state==ssltunnel.session.Session.State.CLOSED
        self.SessionsList.remove(session)
        self.session_factory.delete(session)

    def get_connections_count(self):
        return len(self.SessionsList)
