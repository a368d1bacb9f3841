"""
Wire envelopes exchanged with a OneBot 11 gateway.

Three shapes cross the wire:
- Outbound command: {"action": str, "params": {...}, "echo": int}
- Inbound reply:    {"status": str, "retcode": int, "data": {...} | null, "echo": int}
- Inbound event:    an open-ended object keyed by post_type and sub-fields

Everything decoded here is validated up front. A payload with the wrong shape
raises DecodeError at decode time instead of failing later at the point of use.
"""

import json
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

from onebot_bridge.errors import DecodeError

# ============================================================================
# ACTIONS
# ============================================================================

ACTION_SEND_PRIVATE_MSG = "send_private_msg"
ACTION_SEND_GROUP_MSG = "send_group_msg"
ACTION_SET_GROUP_KICK = "set_group_kick"
ACTION_SET_GROUP_BAN = "set_group_ban"
ACTION_SET_GROUP_WHOLE_BAN = "set_group_whole_ban"
ACTION_GET_STATUS = "get_status"

# ============================================================================
# EVENT CLASSIFICATION
# ============================================================================

# Standardized identifiers for OneBot 11 events, usable in plugin filters
EVENT_TYPES_: List[str] = [
    # Message Events (post_type: "message")
    "MESSAGE_PRIVATE",
    "MESSAGE_GROUP",

    # Message Sent Events (post_type: "message_sent"), the bot's own messages
    "MESSAGE_SENT_PRIVATE",
    "MESSAGE_SENT_GROUP",

    # Notice Events (post_type: "notice")
    "NOTICE_FRIEND_ADD",
    "NOTICE_FRIEND_RECALL",
    "NOTICE_GROUP_RECALL",
    "NOTICE_GROUP_INCREASE",
    "NOTICE_GROUP_DECREASE",
    "NOTICE_GROUP_ADMIN",
    "NOTICE_GROUP_BAN",
    "NOTICE_GROUP_UPLOAD",
    "NOTICE_GROUP_CARD",
    "NOTICE_GROUP_NAME",
    "NOTICE_GROUP_TITLE",
    "NOTICE_POKE",
    "NOTICE_PROFILE_LIKE",
    "NOTICE_INPUT_STATUS",
    "NOTICE_ESSENCE",
    "NOTICE_GROUP_MSG_EMOJI_LIKE",
    "NOTICE_BOT_OFFLINE",

    # Request Events (post_type: "request")
    "REQUEST_FRIEND",
    "REQUEST_GROUP",

    # Meta Events (post_type: "meta_event")
    "META_HEARTBEAT",
    "META_LIFECYCLE"
]

# notice_type -> identifier, for the notice types that need no sub_type
NOTICE_TYPES = {
    "friend_add": "NOTICE_FRIEND_ADD",
    "friend_recall": "NOTICE_FRIEND_RECALL",
    "group_recall": "NOTICE_GROUP_RECALL",
    "group_increase": "NOTICE_GROUP_INCREASE",
    "group_decrease": "NOTICE_GROUP_DECREASE",
    "group_admin": "NOTICE_GROUP_ADMIN",
    "group_ban": "NOTICE_GROUP_BAN",
    "group_upload": "NOTICE_GROUP_UPLOAD",
    "group_card": "NOTICE_GROUP_CARD",
    "essence": "NOTICE_ESSENCE",
    "group_msg_emoji_like": "NOTICE_GROUP_MSG_EMOJI_LIKE",
    "bot_offline": "NOTICE_BOT_OFFLINE",
}

# sub_type of notice_type "notify" -> identifier
NOTIFY_SUB_TYPES = {
    "group_name": "NOTICE_GROUP_NAME",
    "title": "NOTICE_GROUP_TITLE",
    "poke": "NOTICE_POKE",
    "profile_like": "NOTICE_PROFILE_LIKE",
    "input_status": "NOTICE_INPUT_STATUS",
}


def EventTypeParser(rawEvent: Mapping[str, Any]) -> str:
    """
    Map a OneBot 11 event onto one of EVENT_TYPES_.

    OneBot uses post_type as the primary classifier and message_type,
    notice_type, request_type or meta_event_type below it. The "notify"
    notice needs a third level, sub_type.

    Args:
        rawEvent: Decoded event object

    Returns:
        str: An identifier from EVENT_TYPES_, or "UNEXPECTED" for anything
             this table does not know. Unknown kinds are still dispatched;
             the identifier only exists to make filters easy to write.

    Example:
        {"post_type": "message", "message_type": "private"} -> "MESSAGE_PRIVATE"
        {"post_type": "notice", "notice_type": "notify", "sub_type": "poke"} -> "NOTICE_POKE"
    """
    match rawEvent.get("post_type"):
        case "message":
            match rawEvent.get("message_type"):
                case "private":
                    return "MESSAGE_PRIVATE"
                case "group":
                    return "MESSAGE_GROUP"

        case "message_sent":
            match rawEvent.get("message_type"):
                case "private":
                    return "MESSAGE_SENT_PRIVATE"
                case "group":
                    return "MESSAGE_SENT_GROUP"

        case "notice":
            noticeType = rawEvent.get("notice_type")
            if noticeType == "notify":
                return NOTIFY_SUB_TYPES.get(rawEvent.get("sub_type"), "UNEXPECTED")
            return NOTICE_TYPES.get(noticeType, "UNEXPECTED")

        case "request":
            match rawEvent.get("request_type"):
                case "friend":
                    return "REQUEST_FRIEND"
                case "group":
                    return "REQUEST_GROUP"

        case "meta_event":
            match rawEvent.get("meta_event_type"):
                case "heartbeat":
                    return "META_HEARTBEAT"
                case "lifecycle":
                    return "META_LIFECYCLE"

    return "UNEXPECTED"

# ============================================================================
# EVENTS
# ============================================================================

def _Freeze(value: Any) -> Any:
    """Recursively turn dicts into read-only mappings and lists into tuples."""
    if isinstance(value, dict):
        return MappingProxyType({key: _Freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_Freeze(item) for item in value)
    return value


class Event:
    """
    A decoded gateway event.

    The same instance is handed to every filter and handler of every plugin,
    possibly on several threads at once, so it is read-only all the way down:
    nested objects come back as read-only mappings and arrays as tuples.
    """

    __slots__ = ("_raw", "_eventType")

    def __init__(self, rawEvent: Mapping[str, Any]):
        object.__setattr__(self, "_raw", _Freeze(dict(rawEvent)))
        object.__setattr__(self, "_eventType", EventTypeParser(rawEvent))

    def __setattr__(self, name, value):
        raise AttributeError("Event is read-only")

    def __delattr__(self, name):
        raise AttributeError("Event is read-only")

    @property
    def raw(self) -> Mapping[str, Any]:
        return self._raw

    @property
    def eventType(self) -> str:
        return self._eventType

    @property
    def postType(self) -> Optional[str]:
        return self._raw.get("post_type")

    def Get(self, key: str, default: Any = None) -> Any:
        return self._raw.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self._raw[key]

    def __contains__(self, key: object) -> bool:
        return key in self._raw

    def TextMessage(self) -> str:
        """
        Concatenate the text segments of a message event.

        OneBot 11 messages are arrays of segments ({"type": "text", "data":
        {"text": ...}}, images, @mentions, ...). Only text segments are kept.
        A message given as a plain CQ-code string is returned unchanged.
        Events without a message yield "".
        """
        message = self._raw.get("message")
        if isinstance(message, str):
            return message
        if not isinstance(message, tuple):
            return ""

        textParts_ = []
        for segment in message:
            if isinstance(segment, Mapping) and segment.get("type") == "text":
                textData = segment.get("data")
                if isinstance(textData, Mapping):
                    textParts_.append(str(textData.get("text", "")))
        return "".join(textParts_)

    def __repr__(self) -> str:
        return f"Event(eventType={self._eventType!r}, post_type={self.postType!r})"


def _JsonObjectParser(raw: Union[bytes, str], what: str) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exception:
            raise DecodeError(f"{what} is not valid UTF-8: {exception}") from exception
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError, RecursionError) as exception:
        raise DecodeError(f"{what} is not valid JSON: {exception}") from exception
    if not isinstance(payload, dict):
        raise DecodeError(f"{what} must be a JSON object, got {type(payload).__name__}")
    return payload


def EventDecoder(raw: Union[bytes, str]) -> Event:
    """Decode raw bytes from the event stream. Raises DecodeError."""
    return Event(_JsonObjectParser(raw, "event"))

# ============================================================================
# REPLIES
# ============================================================================

class Reply(NamedTuple):
    """Reply to a command; retcode 0 means success."""
    status: str
    retcode: int
    data: Any
    echo: Optional[int]

    @property
    def ok(self) -> bool:
        return self.retcode == 0


def _IsInteger(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def ReplyDecoder(raw: Union[bytes, str, Mapping[str, Any]]) -> Reply:
    """
    Decode a reply envelope from the API stream or the HTTP channel.

    Args:
        raw: Raw bytes/str, or an already-parsed object (HTTP responses)

    Returns:
        Reply with echo None when the gateway omitted it

    Raises:
        DecodeError: not a JSON object, retcode missing or not an int,
                     echo present but not an int
    """
    payload = dict(raw) if isinstance(raw, Mapping) else _JsonObjectParser(raw, "reply")

    retcode = payload.get("retcode")
    if not _IsInteger(retcode):
        raise DecodeError(f"reply retcode must be an integer, got {retcode!r}")

    echo = payload.get("echo")
    if echo is not None and not _IsInteger(echo):
        raise DecodeError(f"reply echo must be an integer, got {echo!r}")

    return Reply(
        status=str(payload.get("status", "")),
        retcode=retcode,
        data=payload.get("data"),
        echo=echo,
    )

# ============================================================================
# COMMANDS
# ============================================================================

def CommandConstructor(action: str, params: Mapping[str, Any], echo: int) -> Dict[str, Any]:
    """Build an outbound command envelope."""
    return {
        "action": action,
        "params": dict(params),
        "echo": echo,
    }


def TextSegmentConstructor(text: str) -> List[Dict[str, Any]]:
    """Wrap plain text in OneBot 11 message segment format."""
    return [{"type": "text", "data": {"text": text}}]

# ============================================================================
# STATUS
# ============================================================================

STATUS_FIELDS_ = (
    "app_initialized",
    "app_enabled",
    "plugins_good",
    "app_good",
    "online",
    "good",
)


class StatusReport(NamedTuple):
    """Health flags returned by get_status."""
    app_initialized: bool
    app_enabled: bool
    plugins_good: bool
    app_good: bool
    online: bool
    good: bool


def StatusDecoder(reply: Reply) -> StatusReport:
    """
    Validate a get_status reply and convert it to a StatusReport.

    Every field in STATUS_FIELDS_ must be present and a bool.

    Raises:
        DecodeError: retcode is non-zero, data is not an object, or a field
                     is missing or mistyped
    """
    if not reply.ok:
        raise DecodeError(f"get_status failed with retcode {reply.retcode}")
    if not isinstance(reply.data, Mapping):
        raise DecodeError(f"get_status data must be an object, got {type(reply.data).__name__}")

    missingFields_ = [field for field in STATUS_FIELDS_ if field not in reply.data]
    if missingFields_:
        raise DecodeError(f"get_status data is missing fields: {missingFields_}")

    mistypedFields_ = [field for field in STATUS_FIELDS_ if not isinstance(reply.data[field], bool)]
    if mistypedFields_:
        raise DecodeError(f"get_status fields are not booleans: {mistypedFields_}")

    return StatusReport(**{field: reply.data[field] for field in STATUS_FIELDS_})
