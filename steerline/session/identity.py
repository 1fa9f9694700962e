"""Conversation identity and the keys derived from it."""

from __future__ import annotations

import re
from dataclasses import dataclass

from steerline.exceptions import SessionIdentityError

SESSION_KEY_SEPARATOR = ":"
STORAGE_PARTITION_SEPARATOR = "/"
FILE_KEY_SEPARATOR = "_"
DEFAULT_TENANT = "default"
MAIN_THREAD = "main"

_DISALLOWED = re.compile(r"[:/\\]")


def _segment(field: str, raw: object) -> str:
    value = str(raw if raw is not None else "").strip()
    if not value:
        raise SessionIdentityError("IDENTITY_EMPTY", f"Invalid {field} (IDENTITY_EMPTY): {raw!r}")
    if _DISALLOWED.search(value):
        raise SessionIdentityError(
            "IDENTITY_CONTAINS_SEPARATOR",
            f"Invalid {field} (IDENTITY_CONTAINS_SEPARATOR): {value!r}",
        )
    return value


def normalize_thread(thread: object) -> str:
    """Unthreaded and general-topic messages collapse onto the main thread."""
    if thread is None:
        return MAIN_THREAD
    text = str(thread).strip()
    if text in ("", "1"):
        return MAIN_THREAD
    return text


@dataclass(frozen=True)
class SessionIdentity:
    tenant: str
    channel: str
    thread: str = MAIN_THREAD

    @classmethod
    def create(
        cls,
        channel: object,
        thread: object = None,
        tenant: object = DEFAULT_TENANT,
    ) -> "SessionIdentity":
        return cls(
            tenant=_segment("tenant", tenant),
            channel=_segment("channel", channel),
            thread=_segment("thread", normalize_thread(thread)),
        )

    @property
    def session_key(self) -> str:
        return SESSION_KEY_SEPARATOR.join((self.tenant, self.channel, self.thread))

    @property
    def storage_key(self) -> str:
        return STORAGE_PARTITION_SEPARATOR.join((self.tenant, self.channel, self.thread))

    @property
    def file_key(self) -> str:
        return FILE_KEY_SEPARATOR.join(_escape_file_segment(s) for s in (self.tenant, self.channel, self.thread))

    def __str__(self) -> str:
        return self.session_key


def _split_triplet(value: str, separator: str, code: str, field: str) -> list[str]:
    parts = str(value or "").split(separator)
    if len(parts) != 3:
        raise SessionIdentityError(code, f"Invalid {field} ({code}): {value!r}")
    return parts


def parse_session_key(session_key: str) -> SessionIdentity:
    tenant, channel, thread = _split_triplet(
        session_key, SESSION_KEY_SEPARATOR, "SESSION_KEY_INVALID_FORMAT", "session key"
    )
    return SessionIdentity.create(channel=channel, thread=thread, tenant=tenant)


def parse_storage_key(storage_key: str) -> SessionIdentity:
    tenant, channel, thread = _split_triplet(
        storage_key, STORAGE_PARTITION_SEPARATOR, "STORAGE_PARTITION_INVALID_FORMAT", "storage key"
    )
    return SessionIdentity.create(channel=channel, thread=thread, tenant=tenant)


def _escape_file_segment(segment: str) -> str:
    return segment.replace("%", "%25").replace(FILE_KEY_SEPARATOR, "%5F")


def _unescape_file_segment(segment: str) -> str:
    return segment.replace("%5F", FILE_KEY_SEPARATOR).replace("%25", "%")


def parse_file_key(file_key: str) -> SessionIdentity | None:
    """Decode a canonical file key; anything else (legacy layouts) yields None."""
    parts = str(file_key or "").split(FILE_KEY_SEPARATOR)
    if len(parts) != 3:
        return None
    tenant, channel, thread = (_unescape_file_segment(p) for p in parts)
    try:
        return SessionIdentity.create(channel=channel, thread=thread, tenant=tenant)
    except SessionIdentityError:
        return None
