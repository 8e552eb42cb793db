# airquality_exporter/api.py

import contextlib
import logging
import signal
import threading

import uvicorn
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from airquality_exporter.config.settings import parse_listen_address

logger = logging.getLogger(__name__)

router = APIRouter()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ServerError(Exception):
    """Raised when the metrics server cannot bind or stops serving."""

    pass


@router.get("/ping")
def ping():
    return {"status": "ok"}


@router.get("/metrics")
def metrics(request: Request):
    registry: CollectorRegistry = request.app.state.registry
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


class ExporterServer(uvicorn.Server):
    """uvicorn server that returns normally on SIGTERM or SIGINT.

    Stock uvicorn re-raises captured signals once serving ends, which kills
    the process before the caller can stop the device controller.
    """

    @contextlib.contextmanager
    def capture_signals(self):
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        previous = {sig: signal.signal(sig, self.handle_shutdown) for sig in SHUTDOWN_SIGNALS}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def handle_shutdown(self, sig, frame) -> None:
        logger.info("Received shutdown signal", extra={"signal": signal.Signals(sig).name})
        if self.should_exit and sig == signal.SIGINT:
            self.force_exit = True
        self.should_exit = True


def create_app(registry: CollectorRegistry) -> FastAPI:
    app = FastAPI(title="airquality-exporter", docs_url=None, redoc_url=None)
    app.state.registry = registry
    app.include_router(router)
    return app


def run_server(app: FastAPI, listen_address: str, log_level: str = "info") -> None:
    """Serve ``app`` with uvicorn in the calling thread until shutdown.

    Raises:
        ServerError: The address is invalid or the socket cannot be bound.
    """
    try:
        host, port = parse_listen_address(listen_address)
    except ValueError as e:
        raise ServerError(str(e)) from e

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level,
        log_config=None,
        access_log=False,
    )
    server = ExporterServer(config)

    logger.info("Starting HTTP server", extra={"address": listen_address})
    try:
        server.run()
    except SystemExit as e:
        # uvicorn exits when the socket cannot be bound
        raise ServerError(f"Cannot serve on {listen_address}") from e
    if not server.started:
        raise ServerError(f"Cannot serve on {listen_address}")
