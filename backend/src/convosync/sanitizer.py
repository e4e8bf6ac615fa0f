"""Input sanitization for remote conversation writes.

Malformed input is the main source of InvalidArgument rejections from the
document store. Two layers live here:

- sanitize_params() cleans caller-supplied creation parameters. It is applied
  with escalating strictness only after a write has been rejected.
- sanitize_document() bounds any payload recursively before it is written.

Everything in this module is a pure transformation with no I/O.
"""

import hashlib
import json
import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from models import (
    AGENT_TYPES,
    DEFAULT_AGENT_TYPE,
    DEFAULT_TITLE,
    Conversation,
    CreateConversationParams,
    Message,
    utc_now,
)
from convosync.config import settings
from convosync.errors import InvalidArgument

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "default-agent"

# Characters reserved by the store's field-path syntax
_RESERVED_KEY_CHARS = re.compile(r"[.\\/\[\]#$]")
_UNSAFE_TITLE_CHARS = re.compile(r"[^\w\s.,!?()-]")
_UNSAFE_TITLE_CHARS_ASCII = re.compile(r"[^\w\s.,!?()-]", re.ASCII)
# Lone surrogates and the U+FFFE/U+FFFF non-characters
_INVALID_CODEPOINTS = re.compile("[\ud800-\udfff\ufffe\uffff]")

# Document store limits
MAX_STRING_LENGTH = 10000
MAX_LIST_LENGTH = 1000
MAX_MAPPING_KEYS = 500
MAX_KEY_LENGTH = 1500
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class SanitizeLevel(IntEnum):
    """How aggressively creation params are cleaned."""

    NONE = 0
    STANDARD = 1
    STRICT = 2

    def escalate(self) -> "SanitizeLevel":
        return SanitizeLevel(min(self + 1, SanitizeLevel.STRICT))


@dataclass(frozen=True)
class SanitizerLimits:
    title_max_length: int = 100
    initial_message_max_length: int = 1000
    metadata_string_length: int = 500
    metadata_list_cap: int = 50
    metadata_item_length: int = 100
    agent_id_max_length: int = 100
    user_id_max_length: int = 128

    @classmethod
    def from_settings(cls) -> "SanitizerLimits":
        return cls(
            title_max_length=settings.title_max_length,
            initial_message_max_length=settings.initial_message_max_length,
            metadata_list_cap=settings.metadata_list_cap,
        )

    def strict(self) -> "SanitizerLimits":
        return SanitizerLimits(
            title_max_length=min(self.title_max_length, 50),
            initial_message_max_length=min(self.initial_message_max_length, 500),
            metadata_string_length=min(self.metadata_string_length, 200),
            metadata_list_cap=min(self.metadata_list_cap, 10),
            metadata_item_length=min(self.metadata_item_length, 50),
            agent_id_max_length=self.agent_id_max_length,
            user_id_max_length=self.user_id_max_length,
        )


def safe_key(key: Any) -> str:
    """Rewrite a mapping key so it cannot collide with store path syntax."""
    return _RESERVED_KEY_CHARS.sub("_", str(key))


def strip_invalid_codepoints(text: str) -> str:
    return _INVALID_CODEPOINTS.sub("", text)


def sanitize_params(
    params: CreateConversationParams,
    level: SanitizeLevel = SanitizeLevel.STANDARD,
    limits: SanitizerLimits | None = None,
) -> CreateConversationParams:
    """Return a cleaned copy of creation params.

    NONE returns the params untouched. STANDARD substitutes placeholders for
    missing identifiers, bounds strings and flattens metadata. STRICT applies
    tighter bounds, restricts the title to ASCII and keeps only scalar
    metadata (plus short lists).
    """
    if level == SanitizeLevel.NONE:
        return params

    limits = limits or SanitizerLimits.from_settings()
    strict = level >= SanitizeLevel.STRICT
    if strict:
        limits = limits.strict()

    agent_id = _sanitize_agent_id(params.agent_id, limits)
    return CreateConversationParams(
        title=_sanitize_title(params.title, limits, ascii_only=strict),
        agent_id=agent_id,
        agent_type=_sanitize_agent_type(params.agent_type),
        user_id=_sanitize_user_id(params.user_id, agent_id, limits),
        initial_message=_sanitize_initial_message(params.initial_message, limits),
        metadata=_sanitize_metadata(params.metadata, limits, strict=strict),
    )


def _sanitize_agent_id(agent_id: Any, limits: SanitizerLimits) -> str:
    if not isinstance(agent_id, str) or not agent_id.strip():
        logger.warning("Invalid agent id, using default")
        return DEFAULT_AGENT_ID
    # A slash would split the namespace into extra path segments
    cleaned = agent_id.strip().replace("/", "_")
    return cleaned[: limits.agent_id_max_length]


def _sanitize_user_id(user_id: Any, agent_id: str, limits: SanitizerLimits) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        digest = hashlib.sha1(agent_id.encode("utf-8")).hexdigest()[:12]
        logger.warning("Invalid or missing user id, using placeholder")
        return f"guest-{digest}"
    return user_id.strip()[: limits.user_id_max_length]


def _sanitize_title(title: Any, limits: SanitizerLimits, ascii_only: bool = False) -> str:
    if not isinstance(title, str):
        return DEFAULT_TITLE
    pattern = _UNSAFE_TITLE_CHARS_ASCII if ascii_only else _UNSAFE_TITLE_CHARS
    cleaned = pattern.sub("", strip_invalid_codepoints(title))
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = cleaned[: limits.title_max_length].strip()
    return cleaned or DEFAULT_TITLE


def _sanitize_agent_type(agent_type: Any) -> str:
    if isinstance(agent_type, str) and agent_type in AGENT_TYPES:
        return agent_type
    return DEFAULT_AGENT_TYPE


def _sanitize_initial_message(message: Any, limits: SanitizerLimits) -> str | None:
    if not isinstance(message, str):
        return None
    cleaned = strip_invalid_codepoints(message[: limits.initial_message_max_length])
    if not cleaned.strip():
        return None
    return cleaned


def _sanitize_metadata(metadata: Any, limits: SanitizerLimits, strict: bool = False) -> dict[str, Any] | None:
    if not isinstance(metadata, Mapping):
        return None

    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        name = safe_key(key)
        if isinstance(value, (bool, int, float)):
            cleaned[name] = value
        elif isinstance(value, str):
            cleaned[name] = strip_invalid_codepoints(value[: limits.metadata_string_length])
        elif isinstance(value, (list, tuple)):
            cleaned[name] = [
                _summarize_item(item, limits.metadata_item_length)
                for item in value[: limits.metadata_list_cap]
            ]
        elif isinstance(value, Mapping) and not strict:
            try:
                cleaned[name] = json.dumps(value, default=str)[: limits.metadata_string_length]
            except (TypeError, ValueError):
                logger.warning(f"Could not serialize metadata[{name}], dropping it")
        # None and opaque objects are dropped

    return cleaned or None


def sanitize_message_metadata(metadata: Any, limits: SanitizerLimits | None = None) -> dict[str, Any] | None:
    """Bound a message or update metadata mapping the same way creation metadata is."""
    return _sanitize_metadata(metadata, limits or SanitizerLimits.from_settings())


def _summarize_item(item: Any, max_length: int) -> Any:
    if item is None or isinstance(item, (bool, int, float)):
        return item
    if isinstance(item, str):
        return item[:max_length]
    try:
        return json.dumps(item, default=str)[:max_length]
    except (TypeError, ValueError):
        return str(item)[:max_length]


def build_conversation(
    params: CreateConversationParams,
    conversation_id: str = "",
    now: datetime | None = None,
) -> Conversation:
    """Turn creation params into a conversation ready to be written.

    Params that cannot even form a conversation (missing or non-string ids,
    wrong types) are reported as InvalidArgument, the same way the store
    reports payloads it rejects, so the retry policy can sanitize them.
    """
    now = now or utc_now()
    title = params.title if isinstance(params.title, str) and params.title.strip() else None
    try:
        conversation = Conversation(
            id=conversation_id,
            agent_id=params.agent_id,
            agent_type=params.agent_type if params.agent_type is not None else DEFAULT_AGENT_TYPE,
            user_id=params.user_id,
            title=title or DEFAULT_TITLE,
            metadata=params.metadata,
            created_at=now,
            updated_at=now,
        )
    except ValidationError as e:
        raise InvalidArgument(f"Malformed conversation params: {e.error_count()} invalid fields") from e

    if not conversation.agent_id or not conversation.user_id:
        raise InvalidArgument("agentId and userId must not be empty")

    if params.initial_message:
        if not isinstance(params.initial_message, str):
            raise InvalidArgument("initialMessage must be a string")
        conversation.append(Message(role="user", content=params.initial_message, timestamp=now))
        if title:
            # An explicit title wins over one derived from the first message
            conversation.title = title
    conversation.updated_at = now
    return conversation


def sanitize_document(value: Any) -> Any:
    """Recursively bound a payload to what the document store accepts."""
    if value is None or isinstance(value, bool):
        return value

    if isinstance(value, BaseModel):
        return sanitize_document(value.model_dump(by_alias=True))

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, str):
        if len(value) > MAX_STRING_LENGTH:
            logger.warning(f"String too long ({len(value)} chars), truncating to {MAX_STRING_LENGTH}")
            value = value[:MAX_STRING_LENGTH]
        return strip_invalid_codepoints(value)

    if isinstance(value, int):
        if value < _INT64_MIN or value > _INT64_MAX:
            return str(value)
        return value

    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return value

    if isinstance(value, (list, tuple)):
        if len(value) > MAX_LIST_LENGTH:
            logger.warning(f"List too large ({len(value)} items), truncating to {MAX_LIST_LENGTH}")
            value = value[:MAX_LIST_LENGTH]
        return [sanitize_document(item) for item in value if item is not None]

    if isinstance(value, Mapping):
        return _sanitize_mapping(value)

    if isinstance(value, (set, frozenset)):
        return f"[{type(value).__name__}: {len(value)} items]"

    if isinstance(value, (bytes, bytearray)):
        return f"[bytes: {len(value)}]"

    if isinstance(value, BaseException):
        return f"[Error: {value}]"

    if isinstance(value, re.Pattern):
        return value.pattern

    return f"[Object {type(value).__name__}]"


def _sanitize_mapping(value: Mapping) -> dict[str, Any]:
    if len(value) > MAX_MAPPING_KEYS:
        logger.warning(f"Mapping with {len(value)} keys, keeping the first {MAX_MAPPING_KEYS}")

    sanitized: dict[str, Any] = {}
    for index, (key, item) in enumerate(value.items()):
        if index >= MAX_MAPPING_KEYS:
            break
        key = str(key)
        if key.startswith(("_", "$")) or callable(item):
            continue
        name = safe_key(key)
        if name[:1].isdigit():
            name = f"n_{name}"
        sanitized[name[:MAX_KEY_LENGTH]] = sanitize_document(item)
    return sanitized
