from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Request

from ..backends.base import DetectionBackend, GenerationBackend
from ..config import Settings, get_settings
from ..db.base import BaseLedgerStore
from ..db.mongo import MongoLedgerStore
from ..errors import CreditError
from .deps import build_services
from .middleware import RequestContextMiddleware
from .router import billing_router, credit_error_response, credits_router, writer_router


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseLedgerStore] = None,
    generation: Optional[GenerationBackend] = None,
    detection: Optional[DetectionBackend] = None,
) -> FastAPI:
    settings = settings or get_settings()
    services = build_services(settings, store=store, generation=generation, detection=detection)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.store, MongoLedgerStore):
            await services.store.ensure_indexes()
        yield

    app = FastAPI(title="Generation Credits API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.state.settings = settings

    app.add_middleware(RequestContextMiddleware, path_prefix="/writer")

    @app.exception_handler(CreditError)
    async def handle_credit_error(request: Request, exc: CreditError):
        return credit_error_response(exc)

    app.include_router(credits_router)
    app.include_router(billing_router)
    app.include_router(writer_router)
    return app


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
