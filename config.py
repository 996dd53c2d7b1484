"""Startup configuration.

Values come from the environment (``PORT``, ``HOST``) and from ``key:value``
command-line arguments, e.g.::

    python main.py --port:9000 --lode:app->app --verbose:1

Command-line values win over the environment.
"""

import os
import sys

from errors import ConfigurationError

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_APP = "app->app"
MAX_T = 40
MIN_T = 10
KEEP_ALIVE_TIMEOUT = 5.0  # seconds

KNOWN_ARGS = ("--host", "--port", "--lode", "--max-threads", "--verbose")


def parse_args(argv=None):
    """Split ``key:value`` arguments into a dict."""
    if argv is None:
        argv = sys.argv[1:]
    result = {}
    for arg in argv:
        if ':' not in arg:
            raise ConfigurationError(f"Invalid argument format: {arg} (expected key:value)")
        key, value = arg.split(':', 1)
        if key not in KNOWN_ARGS:
            raise ConfigurationError(f"Unknown argument: {key}")
        result[key] = value
    return result


def _int_option(name, raw, low, high):
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if not low <= value <= high:
        raise ConfigurationError(f"{name} must be between {low} and {high}, got {value}")
    return value


class ServerConfig:
    """Settings for one server process."""

    def __init__(self, host=DEFAULT_HOST, port=DEFAULT_PORT, app_spec=DEFAULT_APP,
                 max_threads=MAX_T, initial_threads=MIN_T,
                 keep_alive_timeout=KEEP_ALIVE_TIMEOUT, verbose=False):
        self.host = host
        self.port = port
        self.app_spec = app_spec
        self.max_threads = max_threads
        # never start more threads than the pool may hold
        self.initial_threads = min(initial_threads, max_threads)
        self.keep_alive_timeout = keep_alive_timeout
        self.verbose = verbose

    @classmethod
    def from_env(cls, environ=None, argv=None) -> "ServerConfig":
        if environ is None:
            environ = os.environ
        args = parse_args(argv)

        host = args.get('--host') or environ.get("HOST") or DEFAULT_HOST
        raw_port = args.get('--port') or environ.get("PORT") or DEFAULT_PORT
        port = _int_option("port", raw_port, 0, 65535)

        max_threads = MAX_T
        if '--max-threads' in args:
            max_threads = _int_option("max-threads", args['--max-threads'], 1, 1024)

        verbose = args.get('--verbose', '0').lower() in ('1', 'true', 'yes', 'on')

        return cls(
            host=host,
            port=port,
            app_spec=args.get('--lode') or DEFAULT_APP,
            max_threads=max_threads,
            verbose=verbose,
        )

    def __repr__(self):
        return (f"ServerConfig(host={self.host!r}, port={self.port}, app_spec={self.app_spec!r}, "
                f"max_threads={self.max_threads}, verbose={self.verbose})")
