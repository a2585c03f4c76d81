#!/usr/bin/env python
import dataclasses
from typing import Optional, Tuple

import tornado.log
import tornado.options


DEFAULT_ORGANIZATION = "Super Secure Widgets Co."
DEFAULT_KEY_PATH = "key"
DEFAULT_CERT_PATH = "cert"
BACKEND_HOST = "127.0.0.1"


@dataclasses.dataclass(frozen=True)
class TunnelConfig:
    """
    Everything the tunnel needs, fixed once at startup.
    Timeouts are in seconds; None means "wait forever".
    max_connections=None means "no admission limit".
    """
    wrap_port: int = 80
    serve_port: int = 443
    hosts: Tuple[str, ...] = ("localhost",)
    bind_address: str = "0.0.0.0"
    key_path: str = DEFAULT_KEY_PATH
    cert_path: str = DEFAULT_CERT_PATH
    organization: str = DEFAULT_ORGANIZATION
    verify_credentials: bool = False
    handshake_timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    response_timeout: Optional[float] = None
    idle_timeout: Optional[float] = None
    max_connections: Optional[int] = None

    @property
    def backend_origin(self):
        return "http://%s:%d" % (BACKEND_HOST, self.wrap_port)


def define_options(parser):
    """
    Register the tunnel's command line flags on a tornado OptionParser.
    Flags are accepted as "-name=value" or "--name=value".
    """
    parser.define("wrap", default=80, type=int,
                  help="The local port to wrap with SSL.")
    parser.define("serve", default=443, type=int,
                  help="The serve port to bind to.")
    parser.define("hosts", default=["localhost"], type=str, multiple=True,
                  help="A comma separated list of hostnames to serve.")
    parser.define("bind", default="0.0.0.0", type=str,
                  help="The address to bind the TLS listener to.")
    parser.define("key", default=DEFAULT_KEY_PATH, type=str,
                  help="Private key file (PEM, PKCS#1).")
    parser.define("cert", default=DEFAULT_CERT_PATH, type=str,
                  help="Certificate file (PEM).")
    parser.define("organization", default=DEFAULT_ORGANIZATION, type=str,
                  help="Subject organization of generated certificates.")
    parser.define("verify_credentials", default=False, type=bool,
                  help="Parse existing key/cert and regenerate them if unusable.")
    parser.define("handshake_timeout", default=0.0, type=float,
                  help="Seconds allowed for the TLS handshake (0: no limit).")
    parser.define("connect_timeout", default=0.0, type=float,
                  help="Seconds allowed to connect to the backend (0: no limit).")
    parser.define("response_timeout", default=0.0, type=float,
                  help="Seconds allowed for the backend's response headers (0: no limit).")
    parser.define("idle_timeout", default=0.0, type=float,
                  help="Seconds a connection may go without traffic in either direction (0: no limit).")
    parser.define("max_connections", default=0, type=int,
                  help="Maximum concurrent connections (0: no limit).")


def _unbounded_if_zero(value):
    if value is None or value <= 0:
        return None
    return value


def config_from_options(options):
    return TunnelConfig(
        wrap_port=options.wrap,
        serve_port=options.serve,
        hosts=tuple(options.hosts),
        bind_address=options.bind,
        key_path=options.key,
        cert_path=options.cert,
        organization=options.organization,
        verify_credentials=options.verify_credentials,
        handshake_timeout=_unbounded_if_zero(options.handshake_timeout),
        connect_timeout=_unbounded_if_zero(options.connect_timeout),
        response_timeout=_unbounded_if_zero(options.response_timeout),
        idle_timeout=_unbounded_if_zero(options.idle_timeout),
        max_connections=_unbounded_if_zero(options.max_connections),
    )


def parse_config(args=None):
    """
    Parse the command line (sys.argv when args is None; args[0] is the
    program name) and return a TunnelConfig.
    Logging is configured as a side effect, from tornado's --logging flags.
    Raises tornado.options.Error on unknown or malformed flags.
    """
    parser = tornado.options.OptionParser()
    define_options(parser)
    tornado.log.define_logging_options(parser)
    parser.parse_command_line(args)
    return config_from_options(parser)
