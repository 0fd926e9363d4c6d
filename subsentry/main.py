import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from subsentry import __version__
from subsentry.config import settings
from subsentry.errors import SubsentryError
from subsentry.logging import configure_logging
from subsentry.routers import alerts as alerts_router
from subsentry.routers import subscriptions as subscriptions_router
import subsentry.services.metrics  # noqa: F401  # register counters before exposure

configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = logging.getLogger("subsentry.api")

# Error code -> HTTP status
ERROR_STATUS = {
    "validation": 422,
    "not_found": 404,
    "invalid_state": 409,
    "concurrency": 409,
    "cancelled": 499,
}

app = FastAPI(title="subsentry", version=__version__)


@app.exception_handler(SubsentryError)
async def subsentry_error_handler(request: Request, exc: SubsentryError):
    status = ERROR_STATUS.get(exc.code, 400)
    logger.info(
        "request rejected: %s",
        exc.code,
        extra={"path": request.url.path, "method": request.method, "status": status},
    )
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.get("/healthz", tags=["health"])
def healthz():
    return {"ok": True, "version": __version__, "env": settings.ENV}


@app.get("/metrics", include_in_schema=False)
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(subscriptions_router.router)
app.include_router(alerts_router.router)
