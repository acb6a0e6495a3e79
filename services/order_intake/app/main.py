import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .errors import OrderServiceError
from .handlers import OrderIngestion
from .logging_setup import setup_logging
from .publisher import Publisher, create_publisher

logger = logging.getLogger(__name__)

router = APIRouter()


def get_ingestion(request: Request) -> OrderIngestion:
    return request.app.state.ingestion


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/orders", status_code=201)
async def post_orders(request: Request, ingestion: OrderIngestion = Depends(get_ingestion)):
    # Raw body: decoding and validation belong to the ingestion handler, which
    # answers 400 with {"error": ...} rather than FastAPI's 422 shape.
    body = await request.body()
    return await run_in_threadpool(ingestion.handle, body)


def create_app(publisher: Optional[Publisher] = None) -> FastAPI:
    """Build the HTTP app.

    With no publisher, one is created from the environment during startup and
    a configuration problem aborts startup before any request is served.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if publisher is None:
            try:
                settings = Settings.from_env()
            except OrderServiceError as e:
                setup_logging()
                logger.critical("refusing to start: %s", e.message)
                raise
            setup_logging(settings.log_level)
            try:
                app.state.ingestion = OrderIngestion(create_publisher(settings))
            except OrderServiceError as e:
                logger.critical("refusing to start: %s", e.message)
                raise
            logger.info("publishing order events via %s to %s", settings.backend, settings.destination_id)
        yield

    app = FastAPI(title="order-intake", lifespan=lifespan)
    if publisher is not None:
        app.state.ingestion = OrderIngestion(publisher)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    settings = Settings.from_env()
    uvicorn.run("services.order_intake.app.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
