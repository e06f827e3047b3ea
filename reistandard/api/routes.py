"""API route definitions for ReiStandard."""

from __future__ import annotations

import hmac
import json
from typing import Any, Callable, Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from reistandard import __version__
from reistandard.config import get_settings
from reistandard.errors import ApiError, ConfigurationError
from reistandard.logging_config import get_logger
from reistandard.modules.scheduler.dispatcher import Dispatcher
from reistandard.modules.scheduler.service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    ScheduleService,
)

logger = get_logger(__name__)

router = APIRouter()

ENCRYPTION_VERSION = "1"


# ── Service accessors (overridable from main.py and tests) ───────────

_service: Optional[ScheduleService] = None
_dispatcher_factory: Callable[[], Dispatcher] = Dispatcher.from_settings


def set_service(service: Optional[ScheduleService]) -> None:
    """Inject the schedule service instance."""
    global _service
    _service = service


def get_service() -> ScheduleService:
    global _service
    if _service is None:
        _service = ScheduleService()
    return _service


def set_dispatcher_factory(factory: Callable[[], Dispatcher]) -> None:
    """Replace how /send-notifications builds its dispatcher."""
    global _dispatcher_factory
    _dispatcher_factory = factory


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not user_id.strip():
        raise ApiError("USER_ID_REQUIRED", "Missing X-User-Id header")
    return user_id.strip()


def _require_task_id(task_id: Optional[str]) -> str:
    if not task_id:
        raise ApiError("TASK_ID_REQUIRED", "Missing task id")
    return task_id


async def _read_json(request: Request, error_code: str) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ApiError(error_code, "Request body is not valid JSON") from exc


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service health and configuration status."""
    settings = get_settings()
    return {
        "status": "healthy",
        "version": __version__,
        "encryption_configured": bool(settings.encryption_key),
        "vapid_configured": not settings.missing_vapid_keys,
        "cron_configured": bool(settings.cron_secret),
    }


# ── Tasks ────────────────────────────────────────────────────────────

@router.post("/schedule-message")
async def schedule_message(
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
    x_payload_encrypted: Optional[str] = Header(default=None),
    x_encryption_version: Optional[str] = Header(default=None),
) -> JSONResponse:
    """Create a scheduled task from an encrypted body."""
    if (x_payload_encrypted or "").lower() != "true":
        raise ApiError("ENCRYPTION_REQUIRED", "Request body must be encrypted")
    user_id = _require_user(x_user_id)
    if x_encryption_version != ENCRYPTION_VERSION:
        raise ApiError(
            "UNSUPPORTED_ENCRYPTION_VERSION",
            "Unsupported encryption version",
            details={"supportedVersions": [ENCRYPTION_VERSION]},
        )

    body = await _read_json(request, "INVALID_ENCRYPTED_PAYLOAD")
    data = await get_service().schedule(user_id, body)
    return _ok(data, status_code=201)


@router.put("/update-message")
async def update_message(
    request: Request,
    task_id: Optional[str] = Query(default=None, alias="id"),
    x_user_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    """Update a pending task. The body may be encrypted or plain."""
    task_uuid = _require_task_id(task_id)
    user_id = _require_user(x_user_id)
    body = await _read_json(request, "INVALID_UPDATE_DATA")
    data = await get_service().update(user_id, task_uuid, body)
    return _ok(data)


@router.delete("/cancel-message")
async def cancel_message(
    task_id: Optional[str] = Query(default=None, alias="id"),
    x_user_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    """Delete one of the caller's tasks."""
    task_uuid = _require_task_id(task_id)
    user_id = _require_user(x_user_id)
    data = await get_service().cancel(user_id, task_uuid)
    return _ok(data)


@router.get("/messages")
async def list_messages(
    x_user_id: Optional[str] = Header(default=None),
    status: str = "all",
    contact_name: Optional[str] = Query(default=None, alias="contactName"),
    message_subtype: Optional[str] = Query(default=None, alias="messageSubtype"),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1),
    offset: int = Query(default=0, ge=0),
) -> JSONResponse:
    """List the caller's tasks, newest schedule last."""
    user_id = _require_user(x_user_id)
    data = await get_service().list_tasks(
        user_id,
        status=None if status == "all" else status,
        contact_name=contact_name,
        message_subtype=message_subtype,
        limit=min(limit, MAX_PAGE_SIZE),
        offset=offset,
    )
    return _ok(data)


# ── Delivery trigger ─────────────────────────────────────────────────

@router.post("/send-notifications")
async def send_notifications(
    authorization: Optional[str] = Header(default=None),
) -> JSONResponse:
    """Run one delivery pass. Called by an external cron."""
    try:
        dispatcher = _dispatcher_factory()
    except ConfigurationError as exc:
        logger.error("dispatch_config_error", code=exc.code, missing=exc.missing)
        raise ApiError.from_configuration(exc) from exc

    secret = get_settings().cron_secret
    provided = (authorization or "").strip()
    expected = f"Bearer {secret}".encode("utf-8")
    if not secret or not hmac.compare_digest(provided.encode("utf-8"), expected):
        raise ApiError("UNAUTHORIZED", "Invalid or missing cron token", status_code=401)

    try:
        report = await dispatcher.run()
    except ConfigurationError as exc:
        raise ApiError.from_configuration(exc) from exc
    return _ok(report.to_dict())


# ── Key distribution ─────────────────────────────────────────────────

@router.get("/get-master-key")
async def get_master_key() -> JSONResponse:
    """Hand clients the master value they derive their per-user key from."""
    settings = get_settings()
    if not settings.encryption_key:
        raise ApiError(
            "ENCRYPTION_CONFIG_ERROR",
            "Encryption master key is not configured",
            status_code=500,
        )
    return _ok({
        "masterKey": settings.encryption_key,
        "version": int(ENCRYPTION_VERSION),
        "vapidPublicKey": settings.vapid_public_key or None,
    })
