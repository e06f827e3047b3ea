"""Resolve the notification text for a task.

Fixed tasks decrypt their stored message. Prompted and auto tasks call the
user's OpenAI-compatible chat completions endpoint exactly once; retrying is
the dispatcher's job, not this module's.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from reistandard.logging_config import get_logger
from reistandard.modules.scheduler.models import MessageType, TaskSnapshot
from reistandard.security.encryption import EncryptionError, decrypt_at_rest

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0


class ContentError(Exception):
    """Base class for content resolution failures."""


class StorageCorruptionError(ContentError):
    """A stored encrypted field could not be decrypted."""


class CompletionError(ContentError):
    """The completion endpoint failed or returned an unusable body."""


class ContentGenerator:
    """Produces the final text for one task per call."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_tokens: int = 500,
        temperature: float = 0.8,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._transport = transport

    async def resolve(self, task: TaskSnapshot, key: bytes) -> str:
        if task.message_type == MessageType.FIXED:
            return self._decrypt_field(task.user_message, key, "user_message")

        api_key = self._decrypt_field(task.api_key, key, "api_key")
        prompt = self._decrypt_field(task.complete_prompt, key, "complete_prompt")
        if not task.api_url or not task.primary_model:
            raise StorageCorruptionError("task is missing api_url or primary_model")
        return await self.complete(task.api_url, api_key, task.primary_model, prompt)

    @staticmethod
    def _decrypt_field(value: Optional[str], key: bytes, name: str) -> str:
        if not value:
            raise StorageCorruptionError(f"stored field {name} is empty")
        try:
            return decrypt_at_rest(value, key)
        except EncryptionError as exc:
            raise StorageCorruptionError(f"stored field {name} could not be decrypted") from exc

    async def complete(self, api_url: str, api_key: str, model: str, prompt: str) -> str:
        """Issue one chat completion request and return the trimmed reply."""
        body = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(api_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise CompletionError(f"AI API timed out after {self._timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise CompletionError(f"AI API request failed: {exc}") from exc

        if not response.is_success:
            raise CompletionError(f"AI API error: {response.status_code} {response.reason_phrase}")

        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionError("AI API returned a non-JSON body") from exc

        content = _extract_content(data)
        if content is None:
            raise CompletionError("AI API response has no choices[0].message.content")
        logger.debug("completion_received", model=model, chars=len(content))
        return content.strip()


def _extract_content(data: Any) -> Optional[str]:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None
