from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from channelprov.apps.api.deps import close_graph_client
from channelprov.apps.api.errors import EXCEPTION_HANDLERS
from channelprov.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from channelprov.apps.api.routes.health import router as health_router
from channelprov.apps.api.routes.provisioning import router as provisioning_router
from channelprov.core.config import get_settings
from channelprov.core.logging import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # The provider client pools connections for the life of the process.
    await close_graph_client()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    for exc_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exc_class, handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(provisioning_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
