import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy.orm import Session

from app.config import missing_routing_keys, resolve_telegram_routing, settings
from app.database import SessionLocal, get_db
from app.logging_config import get_logger, setup_logging
from app.models import AdminTask, Conversation, Message, Order
from app.routers import profiles, telegram_webhook
from app.services.alert_service import alert_critical, alert_error
from app.services.conversation_service import Orchestrator
from app.services.errors import ConnectivityError, RateLimitedError, ReadinessError
from app.services.orchestrator_state import build_orchestrator_state
from app.services.telegram_service import TelegramService
from app.services.vip_service import run_vip_sweep

setup_logging(settings.log_level)

app = FastAPI(
    title="Matchmaker Orchestrator",
    description="Conversation and moderation service for the matchmaking Telegram bot",
    version="0.1.0",
)

app.include_router(telegram_webhook.router)
app.include_router(profiles.router)

logger = get_logger("main")
moderation_logger = get_logger("moderation_worker")
vip_logger = get_logger("vip_worker")

routing = resolve_telegram_routing()
orchestrator = Orchestrator(
    TelegramService(settings.telegram_bot_token),
    routing,
    build_orchestrator_state(settings.orchestrator_state_backend, settings.redis_url),
)
app.state.orchestrator = orchestrator

_moderation_worker_task: asyncio.Task | None = None
_vip_worker_task: asyncio.Task | None = None

RATE_LIMIT_PADDING_SECONDS = 2
WORKER_ERROR_BACKOFF_SECONDS = 60


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_enabled_outside_tests(env_name: str) -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get(env_name), default=True)


def _get_moderation_worker_settings() -> tuple[float, int]:
    interval_seconds = max(settings.moderation_worker_interval_seconds, 0.1)
    return interval_seconds, settings.moderation_batch_size


def _get_vip_worker_settings() -> float:
    return max(settings.vip_worker_interval_seconds, 1.0)


async def _moderation_worker_loop() -> None:
    while True:
        interval_seconds, limit = _get_moderation_worker_settings()
        try:
            await asyncio.sleep(interval_seconds)
            db = SessionLocal()
            try:
                await orchestrator.moderation.post_pending_tasks(db, limit=limit)
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except RateLimitedError as exc:
            moderation_logger.warning(
                "Moderation worker rate limited",
                extra={"context": {"retry_after": exc.retry_after}},
            )
            await asyncio.sleep(exc.retry_after + RATE_LIMIT_PADDING_SECONDS)
        except Exception as exc:
            moderation_logger.error(
                "Moderation worker loop failed",
                extra={"context": {"error": str(exc)}},
                exc_info=True,
            )
            alert_error("Moderation worker loop failed", {"error": str(exc)})
            await asyncio.sleep(WORKER_ERROR_BACKOFF_SECONDS)


async def _vip_worker_loop() -> None:
    while True:
        try:
            db = SessionLocal()
            try:
                await run_vip_sweep(db, orchestrator.telegram, routing, orchestrator.send_system_response)
            finally:
                db.close()
            await asyncio.sleep(_get_vip_worker_settings())
        except asyncio.CancelledError:
            break
        except Exception as exc:
            vip_logger.error("VIP worker loop failed", extra={"context": {"error": str(exc)}}, exc_info=True)
            alert_error("VIP worker loop failed", {"error": str(exc)})
            await asyncio.sleep(WORKER_ERROR_BACKOFF_SECONDS)


@app.on_event("startup")
async def check_media_archive_readiness() -> None:
    """Refuse to start against a database without the media archive columns."""
    missing = missing_routing_keys(routing)
    if missing:
        logger.warning("Telegram routing incomplete", extra={"context": {"missing": missing}})
    if not _is_enabled_outside_tests("MEDIA_ARCHIVE_READINESS_CHECK_ENABLED"):
        return
    db = SessionLocal()
    try:
        orchestrator.guard.ensure(db, "startup")
    except (ReadinessError, ConnectivityError) as exc:
        alert_critical("Media archive readiness check failed", {"code": exc.code, "error": str(exc)})
        raise
    finally:
        db.close()


@app.on_event("startup")
async def start_workers() -> None:
    global _moderation_worker_task, _vip_worker_task
    if _is_enabled_outside_tests("MODERATION_WORKER_ENABLED"):
        if _moderation_worker_task is None or _moderation_worker_task.done():
            _moderation_worker_task = asyncio.create_task(_moderation_worker_loop())
            moderation_logger.info("Moderation worker started")
    if _is_enabled_outside_tests("VIP_WORKER_ENABLED"):
        if _vip_worker_task is None or _vip_worker_task.done():
            _vip_worker_task = asyncio.create_task(_vip_worker_loop())
            vip_logger.info("VIP worker started")


async def _stop(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@app.on_event("shutdown")
async def stop_workers() -> None:
    global _moderation_worker_task, _vip_worker_task
    await _stop(_moderation_worker_task)
    await _stop(_vip_worker_task)
    _moderation_worker_task = None
    _vip_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "orders": db.query(Order).count(),
        "admin_tasks": db.query(AdminTask).count(),
    }
