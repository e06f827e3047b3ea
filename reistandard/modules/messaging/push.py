"""Web Push delivery.

The dispatcher only depends on the ``PushSender`` protocol: deliver one JSON
payload to one subscriber descriptor, succeed or raise ``PushDeliveryError``.
``WebPushSender`` is the production implementation on top of pywebpush.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

from reistandard.config import Settings
from reistandard.errors import ConfigurationError
from reistandard.logging_config import get_logger

logger = get_logger(__name__)


class PushDeliveryError(Exception):
    """A push service rejected or failed to accept a notification."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class VapidConfig:
    """Signing credentials for the push service, loaded once at startup."""

    email: str
    public_key: str
    private_key: str

    @property
    def subject(self) -> str:
        return self.email if self.email.startswith("mailto:") else f"mailto:{self.email}"

    @classmethod
    def from_settings(cls, settings: Settings) -> "VapidConfig":
        """Build the config or raise ConfigurationError naming the missing keys."""
        missing = settings.missing_vapid_keys
        if missing:
            raise ConfigurationError(
                "VAPID_CONFIG_ERROR",
                "VAPID configuration is missing; push notifications cannot be sent",
                missing=missing,
            )
        return cls(
            email=settings.vapid_email,
            public_key=settings.vapid_public_key,
            private_key=settings.vapid_private_key,
        )


class PushSender(Protocol):
    """Delivers one payload to one subscriber."""

    async def send(self, subscription: dict[str, Any], payload: dict[str, Any]) -> None:
        ...


class WebPushSender:
    """Sends VAPID-signed Web Push messages through pywebpush."""

    def __init__(self, vapid: VapidConfig, ttl: int = 86400) -> None:
        self._vapid = vapid
        self._ttl = ttl

    async def send(self, subscription: dict[str, Any], payload: dict[str, Any]) -> None:
        if not subscription or not subscription.get("endpoint"):
            raise PushDeliveryError("push subscription has no endpoint")
        data = json.dumps(payload, ensure_ascii=False)
        # pywebpush is blocking (requests); keep it off the event loop.
        await asyncio.to_thread(self._send_blocking, subscription, data)

    def _send_blocking(self, subscription: dict[str, Any], data: str) -> None:
        from pywebpush import WebPushException, webpush

        try:
            webpush(
                subscription_info=subscription,
                data=data,
                vapid_private_key=self._vapid.private_key,
                vapid_claims={"sub": self._vapid.subject},
                ttl=self._ttl,
            )
        except WebPushException as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise PushDeliveryError(f"push delivery failed: {exc}", status_code=status) from exc
