import asyncio
import os

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db
from app.dependencies import get_runtime
from app.logging_config import get_logger, setup_logging
from app.routers import amo_webhook, order

setup_logging(settings.log_level)

app = FastAPI(
    title="Orange Bot API",
    description="MAX messenger bot for the Orange flower shop with amoCRM integration",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(order.router)
app.include_router(amo_webhook.router)

poller_logger = get_logger("poller")
_poller_task: asyncio.Task | None = None


def _is_polling_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.bot_polling_enabled and bool(settings.max_bot_token)


@app.on_event("startup")
async def start_poller() -> None:
    global _poller_task
    init_db()
    if not _is_polling_enabled():
        poller_logger.info("Long polling disabled")
        return

    poller = get_runtime().poller
    try:
        await poller.init()
    except Exception as exc:
        poller_logger.error("MAX bot init failed", extra={"context": {"error": str(exc)}})
    if _poller_task is None or _poller_task.done():
        _poller_task = asyncio.create_task(poller.run())
        poller_logger.info("Poller started")


@app.on_event("shutdown")
async def stop_poller() -> None:
    global _poller_task
    runtime = get_runtime()
    if _poller_task is not None:
        runtime.poller.stop()
        _poller_task.cancel()
        try:
            await _poller_task
        except asyncio.CancelledError:
            pass
        _poller_task = None
    await runtime.background.cancel_all()


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.web_port)
