"""Push delivery and message chunking."""

from reistandard.modules.messaging.push import PushDeliveryError, PushSender, VapidConfig, WebPushSender
from reistandard.modules.messaging.splitter import split_sentences

__all__ = ["PushDeliveryError", "PushSender", "VapidConfig", "WebPushSender", "split_sentences"]
