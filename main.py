"""Entry point: ``python main.py [--port:N] [--host:ADDR] [--lode:module->attr]``."""

import importlib
import sys
import traceback

from config import ServerConfig
from errors import ConfigurationError
from server import HTTPServer, err_log, log


class AppLoader:
    """Load the WSGI app named by a ``module->attr`` string."""
    def __init__(self, lode):
        self.lode = lode

    def load(self):
        if '->' not in self.lode:
            raise ConfigurationError(f"Invalid format for --lode: {self.lode} (expected module->function)")
        module_path, func_name = self.lode.split('->', 1)
        try:
            app_module = importlib.import_module(module_path)
        except ImportError as e:
            raise ConfigurationError(f"Error loading app '{module_path}': {e}") from e
        func = getattr(app_module, func_name, None)
        if func is None or not callable(func):
            raise ConfigurationError(f"'{func_name}' in '{module_path}' is not callable.")
        return func


def start(config: ServerConfig, app):
    """Bind, then serve until interrupted. Bind errors propagate."""
    server = HTTPServer(
        host=config.host,
        port=config.port,
        max_threads=config.max_threads,
        initial_threads=config.initial_threads,
        keep_alive_timeout=config.keep_alive_timeout,
        verbose=config.verbose,
    )
    server.set_app(app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log("Shutting down.")
    finally:
        server.server_close()


def main(argv=None):
    try:
        config = ServerConfig.from_env(argv=argv)
        app = AppLoader(config.app_spec).load()
    except ConfigurationError as e:
        err_log(str(e), traceback.format_exc() if getattr(e, "__cause__", None) else "")
        return 2
    start(config, app)
    return 0


if __name__ == "__main__":
    sys.exit(main())
