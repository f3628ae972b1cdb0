import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .consumer import start_consumer
from .container import build_container
from .errors import BookingCoreError
from .middleware import RequestLoggingMiddleware
from .routes import router

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def booking_core_error_handler(request: Request, exc: BookingCoreError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app(container=None) -> FastAPI:
    app = FastAPI(title="Booking Service")
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(BookingCoreError, booking_core_error_handler)
    app.include_router(router)
    app.state.container = container
    app.state.consumer_conn = None

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "booking-service"}

    @app.on_event("startup")
    async def startup():
        if app.state.container is None:
            app.state.container = build_container()
        if config.RABBIT_URL:
            app.state.consumer_conn = await start_consumer(app.state.container, config.RABBIT_URL)
        else:
            logger.warning("RABBIT_URL not set: consumer disabled")

    @app.on_event("shutdown")
    async def shutdown():
        conn = app.state.consumer_conn
        if conn and not conn.is_closed:
            await conn.close()
        if app.state.container is not None:
            await app.state.container.close()

    return app


configure_logging()
app = create_app()
