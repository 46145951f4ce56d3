# collision/main.py
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from collision.api import router
from collision.core.config import settings
from collision.database import init_db
from collision.errors import CollisionError
from collision.i18n import normalize_lang, t
from collision.monitoring import run_selftest
from collision.sweep import sweep_forever

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Tag Collision Service")
app.include_router(router)


def _envelope(code: int, msg: str, data=None) -> dict:
    return {"code": code, "data": data, "msg": msg}


@app.exception_handler(CollisionError)
async def collision_error_handler(request: Request, exc: CollisionError):
    lang = normalize_lang(request.headers.get("accept-language"))
    return JSONResponse(
        _envelope(exc.code, t(lang, exc.message_key, **exc.params)),
        status_code=exc.http_status,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    lang = normalize_lang(request.headers.get("accept-language"))
    logger.warning("Bad request %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(
        _envelope(400, t(lang, "ERR_VALIDATION")),
        status_code=status.HTTP_400_BAD_REQUEST,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    lang = normalize_lang(request.headers.get("accept-language"))
    return JSONResponse(
        _envelope(500, t(lang, "ERR_INTERNAL")),
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.on_event("startup")
async def startup_event():
    try:
        init_db()
        logger.info("DB initialized")
    except Exception:
        logger.exception("DB init failed (startup). Continuing to boot app.")

    app.state.sweep_task = None
    if settings.MATCHER_SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweep_task = asyncio.create_task(sweep_forever(settings.MATCHER_SWEEP_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "sweep_task", None)
    if task is not None:
        task.cancel()


@app.get("/")
async def root():
    return {"message": "Tag Collision Service is running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    result = run_selftest(quick=True)
    return {"status": result.get("status", "unknown"), "checks": result.get("checks", [])}


@app.get("/selftest")
def selftest():
    return run_selftest(quick=False)
