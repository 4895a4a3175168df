"""Alert notification payloads, channel senders and the fan-out dispatcher."""

from .channels import ChannelSender, build_sender, parse_channel_config
from .dispatcher import DispatchSummary, NotificationDispatcher
from .payload import AlertNotification

__all__ = [
    "AlertNotification",
    "ChannelSender",
    "DispatchSummary",
    "NotificationDispatcher",
    "build_sender",
    "parse_channel_config",
]
