"""
Wire protocol for the chat websocket.

Inbound frames are parsed into a closed set of event dataclasses; outbound
frames are plain dicts built by the helpers at the bottom of this module.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from .exceptions import ProtocolError

# Presence states
STATUS_ONLINE = "online"
STATUS_IDLE = "idle"
STATUS_OFFLINE = "offline"
VALID_STATUSES = frozenset({STATUS_ONLINE, STATUS_IDLE, STATUS_OFFLINE})

# Error codes reported to the sending session
INVALID_JSON = "INVALID_JSON"
INVALID_PAYLOAD = "INVALID_PAYLOAD"
MISSING_TYPE = "MISSING_TYPE"
UNKNOWN_EVENT = "UNKNOWN_EVENT"
MISSING_CHANNEL_ID = "MISSING_CHANNEL_ID"
INVALID_CHANNEL_ID = "INVALID_CHANNEL_ID"
MISSING_CONTENT = "MISSING_CONTENT"
INVALID_STATUS = "INVALID_STATUS"
NOT_IN_CHANNEL = "NOT_IN_CHANNEL"
NOT_MEMBER = "NOT_MEMBER"
PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class JoinChannel:
    channel_id: int


@dataclass(frozen=True)
class LeaveChannel:
    channel_id: int


@dataclass(frozen=True)
class SendMessage:
    channel_id: int
    content: str


@dataclass(frozen=True)
class TypingStart:
    channel_id: int


@dataclass(frozen=True)
class TypingStop:
    channel_id: int


@dataclass(frozen=True)
class StatusUpdate:
    status: str


InboundEvent = Union[JoinChannel, LeaveChannel, SendMessage, TypingStart, TypingStop, StatusUpdate]


def coerce_id(value: Any) -> Optional[int]:
    """Normalise a numeric id from JSON (int or ASCII digit string), else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdigit():
            return int(value)
    return None


def _channel_id(data: dict, event_type: str) -> int:
    value = data.get("channelId")
    if value is None or value == "":
        raise ProtocolError(MISSING_CHANNEL_ID, "Missing channelId", event_type)
    channel_id = coerce_id(value)
    if channel_id is None:
        raise ProtocolError(INVALID_CHANNEL_ID, "Invalid channelId", event_type)
    return channel_id


def _content(data: dict, event_type: str) -> str:
    content = data.get("content")
    if not isinstance(content, str) or not content:
        raise ProtocolError(MISSING_CONTENT, "Missing content", event_type)
    return content


def _status(data: dict, event_type: str) -> str:
    status = data.get("status")
    if status not in VALID_STATUSES:
        raise ProtocolError(
            INVALID_STATUS,
            f"Invalid status: {status!r} (expected online, idle or offline)",
            event_type,
        )
    return status


def parse_event(raw: Union[str, bytes]) -> InboundEvent:
    """
    Decode one client frame.

    Args:
        raw: UTF-8 JSON text (or bytes) received from the websocket

    Returns:
        The matching inbound event

    Raises:
        ProtocolError: if the frame is not a JSON object, has no type,
            names an unknown type or lacks a required field
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        raise ProtocolError(INVALID_JSON, "Invalid message format")

    if not isinstance(data, dict):
        raise ProtocolError(INVALID_PAYLOAD, "Message must be a JSON object")

    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ProtocolError(MISSING_TYPE, "Missing message type")

    if event_type == "join-channel":
        return JoinChannel(channel_id=_channel_id(data, event_type))
    elif event_type == "leave-channel":
        return LeaveChannel(channel_id=_channel_id(data, event_type))
    elif event_type == "message":
        return SendMessage(
            channel_id=_channel_id(data, event_type),
            content=_content(data, event_type),
        )
    elif event_type == "typing-start":
        return TypingStart(channel_id=_channel_id(data, event_type))
    elif event_type == "typing-stop":
        return TypingStop(channel_id=_channel_id(data, event_type))
    elif event_type == "status-update":
        return StatusUpdate(status=_status(data, event_type))

    raise ProtocolError(UNKNOWN_EVENT, f"Unknown message type: {event_type}", event_type)


# --- Outbound frames ---


def connected(user_id: int, username: str) -> dict[str, Any]:
    return {"type": "connected", "userId": user_id, "username": username}


def joined_channel(channel_id: int) -> dict[str, Any]:
    return {"type": "joined-channel", "channelId": channel_id}


def user_joined(channel_id: int, user_id: int, username: str) -> dict[str, Any]:
    return {
        "type": "user-joined",
        "channelId": channel_id,
        "user": {"id": user_id, "username": username, "status": STATUS_ONLINE},
    }


def user_left(channel_id: int, user_id: int) -> dict[str, Any]:
    return {"type": "user-left", "channelId": channel_id, "userId": user_id}


def user_typing(channel_id: int, user_id: int, username: str) -> dict[str, Any]:
    return {
        "type": "user-typing",
        "channelId": channel_id,
        "userId": user_id,
        "username": username,
    }


def user_stopped_typing(channel_id: int, user_id: int) -> dict[str, Any]:
    return {"type": "user-stopped-typing", "channelId": channel_id, "userId": user_id}


def status_changed(user_id: int, username: str, status: str) -> dict[str, Any]:
    return {"type": "status-changed", "userId": user_id, "username": username, "status": status}


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def message(
    message_id: int,
    channel_id: int,
    sender_id: int,
    sender_username: str,
    content: str,
    message_type: str,
    timestamp: Union[datetime, str],
) -> dict[str, Any]:
    if isinstance(timestamp, datetime):
        timestamp = format_timestamp(timestamp)
    return {
        "type": "message",
        "id": message_id,
        "channelId": channel_id,
        "senderId": sender_id,
        "senderUsername": sender_username,
        "content": content,
        "messageType": message_type,
        "timestamp": timestamp,
    }


def error(code: str, message: str, event_type: Optional[str] = None) -> dict[str, Any]:
    frame = {"type": "error", "code": code, "message": message}
    if event_type is not None:
        frame["eventType"] = event_type
    return frame
