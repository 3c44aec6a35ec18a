"""Channel adapters for all supported transports."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    InboundMessage,
    InputSanitizer,
    MessageDeduplicator,
)
from channels.facebook_adapter import FacebookAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.widget_adapter import WidgetAdapter, WidgetSession

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError",
    "InboundMessage", "InputSanitizer", "MessageDeduplicator",
    "FacebookAdapter", "WhatsAppAdapter", "WidgetAdapter", "WidgetSession",
]
