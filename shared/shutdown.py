"""uvicorn server with idempotent signal handling.

Stock uvicorn treats a second Ctrl-C as "force exit" and re-raises the
captured signal once serving stops, so the process ends with a signal
status. Here the first SIGINT/SIGTERM starts a normal shutdown (stop
accepting, drain in-flight requests, run the lifespan shutdown hooks) and
every later signal is only logged. serve() then returns and the process
exits 0.
"""

import logging
import signal

import uvicorn

logger = logging.getLogger(__name__)


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


class GracefulServer(uvicorn.Server):
    def handle_exit(self, sig: int, frame) -> None:
        if self.should_exit:
            logger.info("[shutdown] %s received again, shutdown already in progress", _signal_name(sig))
            return
        logger.info("[shutdown] %s received, shutting down gracefully", _signal_name(sig))
        self.should_exit = True


def serve(app, host: str, port: int) -> None:
    config = uvicorn.Config(app, host=host, port=port, log_config=None)
    GracefulServer(config).run()
    logger.info("[shutdown] server stopped")
