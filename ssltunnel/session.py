#!/usr/bin/env python

import datetime
import logging
import ssl
import sys

from tornado import gen, httputil
from tornado.http1connection import HTTP1Connection, HTTP1ConnectionParameters
from tornado.ioloop import IOLoop
from tornado.iostream import SSLIOStream, StreamClosedError, UnsatisfiableReadError
from tornado.util import TimeoutError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
MAX_HEADER_SIZE = 64 * 1024

# Bodies are streamed, never buffered, so their size is not limited
CONNECTION_PARAMS = HTTP1ConnectionParameters(
    chunk_size=READ_CHUNK_SIZE,
    max_header_size=MAX_HEADER_SIZE,
    max_body_size=sys.maxsize,
)

HOP_BY_HOP_HEADERS = frozenset([
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
])


def with_deadline(future, seconds):
    """
    Bound an awaitable by a timeout in seconds. None means no timeout.
    Raises tornado.util.TimeoutError when the time is up.
    """
    if seconds is None:
        return future
    return gen.with_timeout(datetime.timedelta(seconds=seconds), future,
                            quiet_exceptions=(StreamClosedError,))


def strip_hop_by_hop(headers):
    """
    Copy headers without the ones that only describe a single connection:
    the standard hop-by-hop headers and every header named in "Connection".
    """
    dropped=set(HOP_BY_HOP_HEADERS)
    for value in headers.get_list("Connection"):
        dropped.update(token.strip().lower() for token in value.split(",") if token.strip())
    result=httputil.HTTPHeaders()
    for name,value in headers.get_all():
        if name.lower() not in dropped:
            result.add(name,value)
    return result


def forwarded_request_headers(headers, client_ip):
    """
    Headers sent to the backend: hop-by-hop headers removed, the client
    address appended to X-Forwarded-For, one backend connection per request.
    """
    result=strip_hop_by_hop(headers)
    # answered by the proxy itself
    if "Expect" in result:
        del result["Expect"]
    prior=result.get_list("X-Forwarded-For")
    if prior:
        del result["X-Forwarded-For"]
    result["X-Forwarded-For"]=", ".join(prior + [client_ip])
    result["Connection"]="close"
    return result


def error_response(code, method="GET"):
    """
    (start line, headers, body) of the proxy's own plain-text error response.
    """
    reason=httputil.responses.get(code,"Unknown")
    body=("%d %s\n" % (code,reason)).encode("ascii")
    headers=httputil.HTTPHeaders()
    headers["Content-Type"]="text/plain; charset=utf-8"
    headers["Content-Length"]=str(len(body))
    if method == "HEAD":
        body=b""
    return httputil.ResponseStartLine("HTTP/1.1",code,reason),headers,body


class IdleTimer(object):
    """
    Calls on_idle once nothing touched the timer for `timeout` seconds.
    timeout=None: never fires.
    """
    def __init__(self,timeout,on_idle):
        self.timeout=timeout
        self.on_idle=on_idle
        self.io_loop=IOLoop.current()
        self.last_activity=self.io_loop.time()
        self._handle=None

    def start(self):
        if self.timeout is not None:
            self._handle=self.io_loop.call_later(self.timeout,self._check)

    def touch(self):
        self.last_activity=self.io_loop.time()

    def stop(self):
        if self._handle is not None:
            self.io_loop.remove_timeout(self._handle)
            self._handle=None

    def _check(self):
        self._handle=None
        remaining=self.last_activity+self.timeout-self.io_loop.time()
        if remaining <= 0:
            self.on_idle()
            return
        self._handle=self.io_loop.call_later(remaining,self._check)


class Session(object):
    """
    One Session per accepted connection.
    - The client's socket is "c2p" (client to proxy). It arrives from the
      ProxyServer already wrapped in TLS, but the handshake is still pending.
    - Each request the client sends is one Exchange, with its own "p2s"
      (proxy to server) connection to the backend.
    - Flow:
        - finish the TLS handshake on c2p (drop the connection on failure)
        - read requests from c2p one after the other (HTTP/1.x keep-alive)
          and hand each one to a new Exchange
        - when the connection sees no traffic for idle_timeout, close it
    - Requests keep their method, target, headers and body; only the
      hop-by-hop headers change and X-Forwarded-For is added.
      Responses keep their status, headers and body.
    """
    class LoggerOptions:
        """
        Logging options - which messages/notifications we would like to log...
        The logging is for development&maintenance. In production set all to False
        """
        # Log charactaristics
        LOG_SESSION_ID=True         # for each log, add the session-id
        # Log different operations
        LOG_NEW_SESSION_OP=False
        LOG_HANDSHAKE_OP=False
        LOG_REQUEST_OP=False
        LOG_RESPONSE_OP=False
        LOG_CLOSE_OP=False
        LOG_CONNECT_OP=False
        LOG_REMOVE_SESSION=False

    class State:
        """
        Each socket has a state.
        We will use the state to identify whether the connection is open or closed
        """
        CLOSED,CONNECTING,CONNECTED=range(3)

    def __init__(self):
        self.proxy=None
        self.c2p_stream=None
        self.c2p_address=None
        self.c2p_state=Session.State.CLOSED
        self.exchange=None      # the request currently being relayed
        self.idle_timer=None

    @property
    def p2s_state(self):
        if self.exchange is None:
            return Session.State.CLOSED
        return self.exchange.p2s_state

    def log(self,msg):
        prefix=str(id(self))+":" if Session.LoggerOptions.LOG_SESSION_ID else ""
        logger.debug(prefix + msg)

    def touch(self):
        if self.idle_timer is not None:
            self.idle_timer.touch()

    async def new_connection(self,stream,address,proxy):
        """
        Drive the whole life of the connection. Returns when both sides are closed.
        """
        self.proxy=proxy
        self.c2p_stream=stream
        self.c2p_address=address
        self.c2p_state=Session.State.CONNECTED
        if Session.LoggerOptions.LOG_NEW_SESSION_OP:
            self.log("New Session from %s" % (address,))

        try:
            # send data immediately to the client ... (Disable Nagle TCP algorithm)
            self.c2p_stream.set_nodelay(True)
            if not await self.c2p_handshake():
                return
            self.idle_timer=IdleTimer(proxy.idle_timeout,self.on_idle)
            self.idle_timer.start()
            await self.serve_requests()
        finally:
            if self.idle_timer is not None:
                self.idle_timer.stop()
            self.c2p_start_close()
            self.p2s_start_close()
            self.remove_session()

    ###############
    ## Handshake ##
    ###############
    async def c2p_handshake(self):
        if not isinstance(self.c2p_stream,SSLIOStream):
            # plain listener, nothing to negotiate
            return True
        try:
            await with_deadline(self.c2p_stream.wait_for_handshake(),self.proxy.handshake_timeout)
        except TimeoutError:
            logger.info("TLS handshake with %s timed out", self.c2p_address)
            return False
        except (StreamClosedError,ssl.SSLError,OSError) as e:
            # tornado already logged the SSL error (if any) ; the client simply goes away
            if Session.LoggerOptions.LOG_HANDSHAKE_OP:
                self.log("handshake failed: %r" % (e,))
            return False
        if Session.LoggerOptions.LOG_HANDSHAKE_OP:
            self.log("handshake done (%s)" % (self.c2p_stream.socket.version(),))
        return True

    ##############
    ## Requests ##
    ##############
    async def serve_requests(self):
        while True:
            c2p_conn=HTTP1Connection(self.c2p_stream,False,CONNECTION_PARAMS,self.c2p_address)
            self.exchange=Exchange(self,c2p_conn)
            try:
                # resolves once the response has been written (or the client left)
                keep_open=await c2p_conn.read_response(self.exchange)
            except (StreamClosedError,UnsatisfiableReadError):
                return
            if not keep_open or self.c2p_stream.closed():
                return

    def on_idle(self):
        logger.info("No traffic from %s for %ss, closing", self.c2p_address, self.proxy.idle_timeout)
        self.c2p_start_close()
        self.p2s_start_close()

    ######################
    ## Close Connection ##
    ######################
    def c2p_start_close(self):
        if self.c2p_state == Session.State.CLOSED:
            return
        if Session.LoggerOptions.LOG_CLOSE_OP:
            self.log("closing c2p")
        self.c2p_state=Session.State.CLOSED
        self.c2p_stream.close()

    def p2s_start_close(self):
        if self.exchange is not None:
            self.exchange.p2s_start_close()

    ###########
    ## UTILS ##
    ###########
    def remove_session(self):
        if Session.LoggerOptions.LOG_REMOVE_SESSION:
            self.log("remove session")
        self.proxy.remove_session(self)


class Exchange(httputil.HTTPMessageDelegate):
    """
    One request relayed to the backend, and its response relayed back.
    - headers_received: connect p2s and forward the request head
    - data_received:    forward each body chunk
    - finish:           finish the request and start reading the response
    If the backend cannot be reached, or goes away before its response
    headers arrive, the client gets "502 Bad Gateway" ("504 Gateway Timeout"
    when response_timeout expired). A response that breaks off after its
    headers were relayed can only be cut short: the client connection is closed.
    """
    def __init__(self,session,c2p_conn):
        self.session=session
        self.c2p_conn=c2p_conn
        self.request_start_line=None
        self.p2s_stream=None
        self.p2s_conn=None
        self.p2s_state=Session.State.CLOSED
        self.error_code=None
        self.response_started=False
        self.response_finished=False
        self.timed_out=False
        self._response_timeout=None

    #############
    ## Request ##
    #############
    async def headers_received(self,start_line,headers):
        session=self.session
        session.touch()
        self.request_start_line=start_line
        if Session.LoggerOptions.LOG_REQUEST_OP:
            session.log("%s %s" % (start_line.method,start_line.path))
        if not await self.p2s_connect():
            self.error_code=502
            return
        self.p2s_conn=HTTP1Connection(self.p2s_stream,True,CONNECTION_PARAMS,session.proxy.route)
        try:
            await self.p2s_conn.write_headers(
                httputil.RequestStartLine(start_line.method,start_line.path,"HTTP/1.1"),
                forwarded_request_headers(headers,session.c2p_address[0]))
        except StreamClosedError:
            self.p2s_lost("sending the request")

    async def data_received(self,chunk):
        self.session.touch()
        if self.error_code is not None:
            return
        try:
            await self.p2s_conn.write(chunk)
        except StreamClosedError:
            self.p2s_lost("sending the request body")

    def finish(self):
        if self.error_code is not None:
            self.send_error(self.error_code)
            return
        self.p2s_conn.finish()
        # stop relaying if the client goes away while we wait for the response
        self.c2p_conn.set_close_callback(self.p2s_start_close)
        IOLoop.current().add_future(gen.convert_yielded(self.relay_response()),lambda f: f.result())

    def on_connection_close(self):
        # the client left in the middle of its request
        self.p2s_start_close()

    ##############
    ## Response ##
    ##############
    async def relay_response(self):
        timeout=self.session.proxy.response_timeout
        if timeout is not None:
            self._response_timeout=IOLoop.current().call_later(timeout,self.on_response_timeout)
        try:
            await self.p2s_conn.read_response(BackendResponse(self))
        except (StreamClosedError,UnsatisfiableReadError) as e:
            if Session.LoggerOptions.LOG_RESPONSE_OP:
                self.session.log("backend response interrupted: %r" % (e,))
        finally:
            self.cancel_response_timeout()
            self.p2s_start_close()

        if self.response_finished:
            return
        if not self.response_started:
            if self.timed_out:
                logger.warning("Backend %s did not answer within %ss", self.session.proxy.route, timeout)
                self.send_error(504)
            else:
                logger.warning("Backend %s closed the connection without a response", self.session.proxy.route)
                self.send_error(502)
        else:
            logger.warning("Backend %s response to %s was cut short", self.session.proxy.route, self.session.c2p_address)
            self.c2p_conn.close()

    def on_response_timeout(self):
        self._response_timeout=None
        self.timed_out=True
        self.p2s_start_close()

    def cancel_response_timeout(self):
        if self._response_timeout is not None:
            IOLoop.current().remove_timeout(self._response_timeout)
            self._response_timeout=None

    def send_error(self,code):
        start_line,headers,body=error_response(code,self.request_start_line.method)
        self.c2p_conn.write_headers(start_line,headers,body)
        self.c2p_conn.finish()

    #############
    ## Connect ##
    #############
    async def p2s_connect(self):
        session=self.session
        route=session.proxy.route
        if route is None:
            logger.error("No backend route, rejecting request from %s", session.c2p_address)
            return False

        self.p2s_state=Session.State.CONNECTING
        if Session.LoggerOptions.LOG_CONNECT_OP:
            session.log("connecting to %s" % (route,))
        try:
            self.p2s_stream=await with_deadline(
                session.proxy.tcp_client.connect(route.host,route.port),
                session.proxy.connect_timeout)
        except TimeoutError:
            self.p2s_state=Session.State.CLOSED
            logger.warning("Timed out connecting to backend %s", route)
            return False
        except (StreamClosedError,OSError) as e:
            self.p2s_state=Session.State.CLOSED
            logger.warning("Unable to connect to backend %s: %s", route, getattr(e,"real_error",None) or e)
            return False

        if self.p2s_state == Session.State.CLOSED:
            # the client went away while we were connecting
            self.p2s_stream.close()
            return False
        self.p2s_state=Session.State.CONNECTED
        # send data immediately to the server... (Disable Nagle TCP algorithm)
        self.p2s_stream.set_nodelay(True)
        if Session.LoggerOptions.LOG_CONNECT_OP:
            session.log("connected to %s" % (route,))
        return True

    def p2s_lost(self,what):
        logger.warning("Backend %s closed the connection while %s", self.session.proxy.route, what)
        self.error_code=502
        self.p2s_start_close()

    def p2s_start_close(self):
        if self.p2s_state == Session.State.CLOSED:
            return
        self.p2s_state=Session.State.CLOSED
        if self.p2s_stream is not None:
            self.p2s_stream.close()


class BackendResponse(httputil.HTTPMessageDelegate):
    """
    Writes the backend's response to the client as it arrives.
    """
    def __init__(self,exchange):
        self.exchange=exchange

    async def headers_received(self,start_line,headers):
        if start_line.code < 200:
            # interim (1xx) responses are not relayed
            return
        exchange=self.exchange
        exchange.cancel_response_timeout()
        exchange.response_started=True
        exchange.session.touch()
        if Session.LoggerOptions.LOG_RESPONSE_OP:
            exchange.session.log("%d %s" % (start_line.code,start_line.reason))
        try:
            await exchange.c2p_conn.write_headers(start_line,strip_hop_by_hop(headers))
        except StreamClosedError:
            exchange.p2s_start_close()

    async def data_received(self,chunk):
        exchange=self.exchange
        try:
            await exchange.c2p_conn.write(chunk)
        except StreamClosedError:
            exchange.p2s_start_close()
            return
        exchange.session.touch()

    def finish(self):
        self.exchange.response_finished=True
        self.exchange.c2p_conn.finish()

    def on_connection_close(self):
        pass


class SessionFactory(object):
    """
    This is  the default session-factory. it simply returns a "Session" object
    """
    def __init__(self):
        pass

    def new(self,*args,**kwargs):
        """
        The caller needs a Session objet (constructed with *args,**kwargs).
        In this implementation we're simply creating a new object. you can enhance and create a pool or add logs..
        """
        return Session(*args,**kwargs)

    def delete(self,session):
        """
        Delete a session object
        """
        assert( isinstance(session,Session))
        del session
