"""Tests for push configuration and the pywebpush adapter."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

from reistandard.errors import ConfigurationError
from reistandard.modules.messaging.push import PushDeliveryError, VapidConfig, WebPushSender


@pytest.fixture
def vapid() -> VapidConfig:
    return VapidConfig(email="ops@example.com", public_key="pub", private_key="priv")


class TestVapidConfig:
    """Tests for loading push credentials."""

    def test_from_settings(self, settings) -> None:
        vapid = VapidConfig.from_settings(settings)
        assert vapid.email == "ops@example.com"
        assert vapid.public_key == "test-vapid-public"
        assert vapid.private_key == "test-vapid-private"

    def test_missing_keys_are_named(self, settings) -> None:
        incomplete = settings.model_copy(update={"vapid_email": "", "vapid_private_key": ""})
        with pytest.raises(ConfigurationError) as exc_info:
            VapidConfig.from_settings(incomplete)
        assert exc_info.value.code == "VAPID_CONFIG_ERROR"
        assert exc_info.value.missing == ["VAPID_EMAIL", "VAPID_PRIVATE_KEY"]

    def test_subject_adds_mailto(self, vapid) -> None:
        assert vapid.subject == "mailto:ops@example.com"
        assert VapidConfig("mailto:a@b.c", "p", "k").subject == "mailto:a@b.c"


class TestWebPushSender:
    """Tests for WebPushSender."""

    @pytest.mark.asyncio
    async def test_sends_signed_json_payload(self, vapid, subscription) -> None:
        with patch("pywebpush.webpush") as mock_webpush:
            await WebPushSender(vapid).send(subscription, {"title": "From Rei", "message": "你好！"})

        mock_webpush.assert_called_once()
        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["subscription_info"] == subscription
        assert json.loads(kwargs["data"]) == {"title": "From Rei", "message": "你好！"}
        assert kwargs["vapid_private_key"] == "priv"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}

    @pytest.mark.asyncio
    async def test_push_service_error_is_delivery_error(self, vapid, subscription) -> None:
        response = MagicMock(status_code=410)
        error = WebPushException("Push failed: 410 Gone", response=response)
        with patch("pywebpush.webpush", side_effect=error):
            with pytest.raises(PushDeliveryError) as exc_info:
                await WebPushSender(vapid).send(subscription, {"message": "hi"})
        assert exc_info.value.status_code == 410

    @pytest.mark.asyncio
    async def test_subscription_without_endpoint(self, vapid) -> None:
        with patch("pywebpush.webpush") as mock_webpush:
            with pytest.raises(PushDeliveryError):
                await WebPushSender(vapid).send({"keys": {}}, {"message": "hi"})
        mock_webpush.assert_not_called()
