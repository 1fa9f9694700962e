"""One JSON record per conversation, stored in a flat directory."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from steerline.config import get_config
from steerline.logging import get_logger
from steerline.session.identity import SessionIdentity, parse_file_key

log = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class SessionRecord(BaseModel):
    """Persisted provider session and accounting for one conversation."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str
    saved_at: str = Field(default_factory=_utcnow_iso)
    working_dir: str = ""
    context_window_usage: dict[str, int] | None = Field(default=None, alias="contextWindowUsage")
    context_window_size: int = Field(default=200000, alias="contextWindowSize")
    total_input_tokens: int = Field(default=0, alias="totalInputTokens")
    total_output_tokens: int = Field(default=0, alias="totalOutputTokens")
    total_queries: int = Field(default=0, alias="totalQueries")
    session_start_time: str | None = Field(default=None, alias="sessionStartTime")


class SessionStore:
    """Directory of ``<tenant>_<channel>_<thread>.json`` files.

    Files that do not decode to a full identity (older flat ``<chat>.json``
    layouts) are left alone: never listed, loaded, migrated or deleted.
    """

    def __init__(self, sessions_dir: Path | str | None = None):
        if sessions_dir is None:
            sessions_dir = get_config().resolved_sessions_dir()
        self.sessions_dir = Path(sessions_dir).expanduser()

    def path_for(self, identity: SessionIdentity) -> Path:
        return self.sessions_dir / f"{identity.file_key}.json"

    def exists(self, identity: SessionIdentity) -> bool:
        return self.path_for(identity).is_file()

    def save(self, identity: SessionIdentity, record: SessionRecord) -> bool:
        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
            payload = record.model_dump(by_alias=True)
            self.path_for(identity).write_text(json.dumps(payload), encoding="utf-8")
            return True
        except OSError as e:
            log.warning("Failed to save session", session_key=identity.session_key, error=str(e))
            return False

    def load(self, identity: SessionIdentity) -> SessionRecord | None:
        path = self.path_for(identity)
        if not path.is_file():
            return None
        try:
            return SessionRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            log.warning("Failed to load session", session_key=identity.session_key, error=str(e))
            return None

    def list_identities(self) -> list[SessionIdentity]:
        if not self.sessions_dir.is_dir():
            return []
        identities: list[SessionIdentity] = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            identity = parse_file_key(path.stem)
            if identity is not None:
                identities.append(identity)
        return identities

    def list_keys(self) -> list[str]:
        return [identity.session_key for identity in self.list_identities()]

    def delete(self, identity: SessionIdentity) -> bool:
        path = self.path_for(identity)
        if not path.is_file():
            return False
        path.unlink()
        return True
