import asyncio
import contextlib

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


logger = structlog.get_logger()


def create_metrics_app() -> FastAPI:
    """Create the internal Prometheus scrape app, kept off the public port."""
    app = FastAPI(
        title="Settlement Service Metrics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    return app


class BackgroundServer:
    """Runs an ASGI app under uvicorn as a task on the current event loop."""

    def __init__(
        self,
        app: FastAPI,
        name: str,
        host: str = "0.0.0.0",
        port: int = 8000,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._app = app
        self._name = name
        self._host = host
        self._port = port
        self._shutdown_timeout = shutdown_timeout
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_config=None,
            access_log=False,
            lifespan="on",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(), name=f"{self._name}-server")
        logger.info("server_started", server=self._name, host=self._host, port=self._port)

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=self._shutdown_timeout)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

        logger.info("server_stopped", server=self._name)
