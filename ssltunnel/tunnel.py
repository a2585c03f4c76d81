#!/usr/bin/env python
import asyncio
import logging
import sys

import tornado.options

from ssltunnel.config import parse_config
from ssltunnel.credentials import CredentialsError, ensure_credentials
from ssltunnel.proxyserver import ProxyRoute, ProxyServer, server_ssl_context

logger = logging.getLogger(__name__)


class ListenerError(Exception):
    """The TLS listener could not be started."""


def start_proxy(bind_address, bind_port, backend_origin, cert_path, key_path,
                handshake_timeout=None, connect_timeout=None, response_timeout=None, idle_timeout=None,
                max_connections=None):
    """
    Bind a TLS listener on bind_address:bind_port that relays every
    connection to backend_origin. Must be called with an IOLoop running
    (or about to run) in this thread.

    A backend origin that cannot be parsed is logged and the listener is
    started anyway; its clients then get "502 Bad Gateway".
    Raises ListenerError if the credentials cannot be loaded or the port
    cannot be bound.
    """
    try:
        route = ProxyRoute.from_origin(backend_origin)
    except ValueError as e:
        logger.error("Invalid backend origin: %s", e)
        route = None

    try:
        ctx = server_ssl_context(cert_path, key_path)
    except OSError as e:
        raise ListenerError("Unable to load %s and %s: %s" % (cert_path, key_path, e)) from e

    server = ProxyServer(route, ssl_options=ctx,
                         handshake_timeout=handshake_timeout,
                         connect_timeout=connect_timeout,
                         response_timeout=response_timeout,
                         idle_timeout=idle_timeout,
                         max_connections=max_connections)
    try:
        server.listen(bind_port, address=bind_address)
    except OSError as e:
        raise ListenerError("Unable to bind to %s:%d: %s" % (bind_address, bind_port, e)) from e
    return server


class Tunnel(object):
    """
    Provision credentials, then listen. The state only moves forward:
    UNINITIALIZED -> CREDENTIALS_READY -> LISTENING, and the process runs
    until it is killed.
    """
    class State:
        UNINITIALIZED,CREDENTIALS_READY,LISTENING=range(3)

    def __init__(self, config):
        self.config=config
        self.state=Tunnel.State.UNINITIALIZED
        self.server=None

    def provision(self):
        """Raises CredentialsError."""
        assert self.state==Tunnel.State.UNINITIALIZED
        generated=ensure_credentials(self.config.key_path, self.config.cert_path,
                                     self.config.hosts, self.config.organization,
                                     verify=self.config.verify_credentials)
        self.state=Tunnel.State.CREDENTIALS_READY
        return generated

    def listen(self):
        """Raises ListenerError."""
        assert self.state==Tunnel.State.CREDENTIALS_READY
        config=self.config
        logger.info("Binding to %s:%d and wrapping localhost:%d",
                    config.bind_address, config.serve_port, config.wrap_port)
        self.server=start_proxy(config.bind_address, config.serve_port, config.backend_origin,
                                config.cert_path, config.key_path,
                                handshake_timeout=config.handshake_timeout,
                                connect_timeout=config.connect_timeout,
                                response_timeout=config.response_timeout,
                                idle_timeout=config.idle_timeout,
                                max_connections=config.max_connections)
        self.state=Tunnel.State.LISTENING
        return self.server

    async def serve_forever(self):
        self.listen()
        await asyncio.Event().wait()


def main(args=None):
    try:
        config=parse_config(args)
    except tornado.options.Error as e:
        sys.exit(str(e))

    tunnel=Tunnel(config)
    try:
        tunnel.provision()
    except CredentialsError as e:
        logger.critical("%s", e)
        sys.exit(1)

    try:
        asyncio.run(tunnel.serve_forever())
    except ListenerError as e:
        logger.critical("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
