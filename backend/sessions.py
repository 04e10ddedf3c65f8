"""Per-identity practice history with a fixed most-recent-first retention cap."""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from supabase import Client, create_client

from config import Settings
from uploads import Mode

logger = logging.getLogger(__name__)

MAX_SESSIONS = 20
SESSIONS_TABLE = "sessions"


@dataclass(frozen=True)
class Identity:
    key: str
    authenticated: bool = False

    @property
    def storage_key(self) -> str:
        safe = re.sub(r"[^A-Za-z0-9_-]", "_", self.key)
        return f"speechprep-sessions-{safe}"


GUEST = Identity("guest")


class SessionRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    mode: Mode
    transcript: str
    feedback: dict[str, Any]
    script: str | None = None
    script_tone: str | None = Field(default=None, alias="scriptTone")
    topic: str | None = None
    time_limit_seconds: float | None = Field(default=None, alias="timeLimitSeconds")
    elapsed_seconds: float | None = Field(default=None, alias="elapsedSeconds")

    def to_row(self, user_id: str) -> dict[str, Any]:
        row = self.model_dump(mode="json")
        row["user_id"] = user_id
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SessionRecord":
        return cls.model_validate({k: v for k, v in row.items() if k != "user_id"})


class SessionBackend(Protocol):
    def insert(self, identity: Identity, record: SessionRecord) -> None: ...

    def list(self, identity: Identity) -> list[SessionRecord]: ...

    def delete(self, identity: Identity, ids: list[str]) -> None: ...


class LocalSessionBackend:
    """One JSON file per identity, newest record first."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()

    def path_for(self, identity: Identity) -> Path:
        return self.root / f"{identity.storage_key}.json"

    def _read(self, identity: Identity) -> list[dict[str, Any]]:
        path = self.path_for(identity)
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable session history %s: %s", path, exc)
            return []
        return payload if isinstance(payload, list) else []

    def _write(self, identity: Identity, rows: list[dict[str, Any]]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(identity)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(rows, indent=2), encoding="utf-8")
        tmp.replace(path)

    def insert(self, identity: Identity, record: SessionRecord) -> None:
        with self._lock:
            rows = self._read(identity)
            rows.insert(0, record.model_dump(mode="json", by_alias=True))
            self._write(identity, rows)

    def list(self, identity: Identity) -> list[SessionRecord]:
        with self._lock:
            rows = self._read(identity)
        records = []
        for row in rows:
            try:
                records.append(SessionRecord.model_validate(row))
            except ValueError:
                logger.warning("Skipping malformed session row in %s", self.path_for(identity))
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records

    def delete(self, identity: Identity, ids: list[str]) -> None:
        doomed = set(ids)
        with self._lock:
            rows = [row for row in self._read(identity) if row.get("id") not in doomed]
            self._write(identity, rows)


class SupabaseSessionBackend:
    """Rows in the hosted ``sessions`` table, one per practice attempt."""

    def __init__(self, client: Client, table: str = SESSIONS_TABLE) -> None:
        self.client = client
        self.table = table

    def insert(self, identity: Identity, record: SessionRecord) -> None:
        self.client.table(self.table).insert(record.to_row(identity.key)).execute()

    def list(self, identity: Identity) -> list[SessionRecord]:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("user_id", identity.key)
            .order("created_at", desc=True)
            .execute()
        )
        return [SessionRecord.from_row(row) for row in response.data or []]

    def delete(self, identity: Identity, ids: list[str]) -> None:
        if ids:
            self.client.table(self.table).delete().in_("id", ids).execute()


class SessionStore:
    """Routes guests to local storage and users to the hosted store.

    The retention cap is applied here after every insert, so it holds for any
    backend. When the hosted store fails, the record is kept locally under the
    same identity instead.
    """

    def __init__(
        self,
        local: SessionBackend,
        hosted: SessionBackend | None = None,
        *,
        limit: int = MAX_SESSIONS,
    ) -> None:
        self.local = local
        self.hosted = hosted
        self.limit = limit

    def _backend_for(self, identity: Identity) -> SessionBackend:
        if identity.authenticated and self.hosted is not None:
            return self.hosted
        return self.local

    def _add_to(self, backend: SessionBackend, identity: Identity, record: SessionRecord) -> None:
        backend.insert(identity, record)
        overflow = backend.list(identity)[self.limit :]
        if overflow:
            backend.delete(identity, [old.id for old in overflow])
            logger.debug("Evicted %d old session(s) for %s", len(overflow), identity.key)

    def add(self, identity: Identity, record: SessionRecord) -> SessionRecord:
        backend = self._backend_for(identity)
        try:
            self._add_to(backend, identity, record)
        except Exception as exc:
            if backend is self.local:
                raise
            logger.error("Error saving session to hosted store: %s; using local storage", exc)
            self._add_to(self.local, identity, record)
        return record

    def list(self, identity: Identity) -> list[SessionRecord]:
        backend = self._backend_for(identity)
        try:
            records = backend.list(identity)
        except Exception as exc:
            if backend is self.local:
                raise
            logger.error("Error loading sessions from hosted store: %s; using local storage", exc)
            records = self.local.list(identity)
        return records[: self.limit]


class AuthenticationError(Exception):
    pass


class IdentityResolver:
    """Turn an ``Authorization`` header into an :class:`Identity`."""

    def __init__(self, client: Client | None = None) -> None:
        self.client = client

    def resolve(self, authorization: str | None) -> Identity:
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return GUEST
        if self.client is None:
            logger.info("Bearer token ignored: hosted auth is not configured")
            return GUEST
        try:
            response = self.client.auth.get_user(token)
        except Exception as exc:
            raise AuthenticationError(str(exc) or "Invalid session token") from exc
        user = getattr(response, "user", None)
        if user is None:
            raise AuthenticationError("Invalid session token")
        return Identity(str(user.id), authenticated=True)


def build_supabase_client(settings: Settings) -> Client | None:
    if not settings.supabase_configured:
        return None
    return create_client(settings.supabase_url, settings.supabase_key)


def build_session_store(settings: Settings, client: Client | None = None) -> SessionStore:
    hosted = SupabaseSessionBackend(client) if client is not None else None
    return SessionStore(LocalSessionBackend(settings.storage_dir), hosted)
