from dataclasses import dataclass
from typing import Dict, Tuple

from src.ingestion.domain.normalized_activity import UNKNOWN_PLATFORM


@dataclass(frozen=True)
class PlatformMapping:
    """
    Dotted payload paths probed in order for each canonical field.
    """
    platform: str
    text: Tuple[str, ...]
    timestamp: Tuple[str, ...]
    fingerprint: Tuple[str, ...]
    ip_address: Tuple[str, ...]
    handle: Tuple[str, ...]
    chat_id: Tuple[str, ...]


GENERIC_MAPPING = PlatformMapping(
    platform=UNKNOWN_PLATFORM,
    text=("text", "content", "body", "message", "caption"),
    timestamp=("ts", "timestamp", "occurred_at", "date", "time"),
    fingerprint=("from.fingerprint", "device.fingerprint", "fingerprint", "device_id"),
    ip_address=("from.ip", "ip_address", "ip", "meta.ip"),
    handle=("from.handle", "from.username", "handle", "username", "user"),
    chat_id=("chat.id", "chat_id", "thread_id", "conversation_id"),
)

TELEGRAM_MAPPING = PlatformMapping(
    platform="telegram",
    text=("message.text", "message.caption", "text", "caption"),
    timestamp=("message.date", "ts", "date", "timestamp"),
    fingerprint=("from.fingerprint", "message.from.fingerprint", "fingerprint"),
    ip_address=("from.ip", "message.from.ip", "ip_address", "ip"),
    handle=("message.from.username", "from.username", "from.handle", "handle", "username"),
    chat_id=("message.chat.id", "chat.id", "chat_id"),
)

INSTAGRAM_MAPPING = PlatformMapping(
    platform="instagram",
    text=("caption.text", "caption", "text", "message.text"),
    timestamp=("taken_at", "timestamp", "created_time", "ts"),
    fingerprint=("device.fingerprint", "from.fingerprint", "fingerprint"),
    ip_address=("client.ip", "from.ip", "ip_address", "ip"),
    handle=("user.username", "owner.username", "from.username", "username", "handle"),
    chat_id=("thread_id", "conversation.id", "chat_id"),
)

WHATSAPP_MAPPING = PlatformMapping(
    platform="whatsapp",
    text=("text.body", "body", "text", "caption"),
    timestamp=("timestamp", "ts", "date"),
    fingerprint=("device.fingerprint", "metadata.device_id", "fingerprint"),
    ip_address=("metadata.ip", "ip_address", "ip"),
    handle=("from", "profile.name", "handle", "username"),
    chat_id=("metadata.phone_number_id", "chat_id", "group_id"),
)

PLATFORM_MAPPINGS: Dict[str, PlatformMapping] = {
    mapping.platform: mapping
    for mapping in (TELEGRAM_MAPPING, INSTAGRAM_MAPPING, WHATSAPP_MAPPING)
}
