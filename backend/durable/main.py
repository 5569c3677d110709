"""FastAPI application bootstrap for the durable orchestration host."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import get_router
from .container import (
    build_container,
    shutdown as shutdown_container,
    startup as startup_container,
)
from .env import load_dotenv_if_present
from .startup_checks import run_startup_checks


class _InstanceIdFilter(logging.Filter):
    """Ensure every log record has an instance_id attribute."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "instance_id"):
            record.instance_id = "system"
        return True


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [instance_id=%(instance_id)s] %(name)s: %(message)s",
    )
    root_logger = logging.getLogger()
    instance_filter = _InstanceIdFilter()
    for handler in root_logger.handlers:
        handler.addFilter(instance_filter)


def create_app(container=None, *, run_checks: bool = True) -> FastAPI:
    """Construct the FastAPI application."""
    _configure_logging()
    load_dotenv_if_present()

    if container is None:
        from .settings import get_settings

        container = build_container(settings=get_settings())

    app = FastAPI(title="durable")
    app.state.container = container
    app.include_router(get_router(container))

    @app.on_event("startup")
    async def _startup() -> None:
        if run_checks:
            run_startup_checks()
        await startup_container(container)
        logging.getLogger(__name__).info(
            "durable host ready mode=%s orchestrators=%s",
            container.settings.runtime.mode,
            ",".join(container.registry.orchestrator_names()),
            extra={"instance_id": "system"},
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_container(container)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "mode": container.settings.runtime.mode}

    return app


_APP: FastAPI | None = None


def get_app() -> FastAPI:
    """Accessor for ASGI servers expecting an `app` variable."""

    global _APP
    if _APP is None:
        _APP = create_app()
    return _APP


def __getattr__(name: str):  # pragma: no cover
    if name == "app":
        return get_app()
    raise AttributeError(name)
