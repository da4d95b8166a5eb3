"""
Ephemeral protocol state with per-record TTL: pending authorization requests,
authorization codes and upstream refresh tokens.

consume() is an atomic get-then-delete in both backends: when several callers
race on the same key exactly one gets the record, the rest see None.
"""
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, fields
from datetime import timedelta
from typing import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from oidc_broker.config import (
    AUTH_CODE_TTL_SECONDS,
    AUTH_REQUEST_TTL_SECONDS,
    STATE_PURGE_EVERY_WRITES,
    UPSTREAM_REFRESH_TOKEN_TTL_SECONDS,
)
from oidc_broker.models import EphemeralEntry, utc_now

logger = logging.getLogger(__name__)

KIND_AUTH_REQUEST = "auth_request"
KIND_AUTH_CODE = "auth_code"
KIND_UPSTREAM_REFRESH = "upstream_refresh"


def _key(kind: str, record_id: str) -> str:
    return f"{kind}:{record_id}"


class StateStore:
    """
    TTL key-value store interface. Expired records are never returned, and
    every `purge_every` writes the store deletes them.
    """

    def __init__(self, purge_every: int = STATE_PURGE_EVERY_WRITES):
        self._purge_every = max(1, purge_every)
        self._writes = 0
        self._writes_lock = threading.Lock()

    def put(self, kind: str, record_id: str, record: dict, ttl_seconds: int) -> None:
        self._write(_key(kind, record_id), kind, json.dumps(record), ttl_seconds)
        with self._writes_lock:
            self._writes += 1
            due = self._writes % self._purge_every == 0
        if due:
            self.purge_expired()

    def _write(self, key: str, kind: str, payload: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def get(self, kind: str, record_id: str) -> dict | None:
        raise NotImplementedError

    def consume(self, kind: str, record_id: str) -> dict | None:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError

    def purge_expired(self) -> int:
        return 0


class MemoryStateStore(StateStore):
    """Single-process store. Fine for one worker and for tests."""

    def __init__(self, clock: Callable[[], float] = time.time, purge_every: int = STATE_PURGE_EVERY_WRITES):
        super().__init__(purge_every)
        self._clock = clock
        self._data: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def count(self) -> int:
        """Stored records, expired ones included."""
        return len(self._data)

    def _write(self, key: str, kind: str, payload: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl_seconds, payload)

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return payload

    def get(self, kind: str, record_id: str) -> dict | None:
        with self._lock:
            payload = self._live(_key(kind, record_id))
        return json.loads(payload) if payload is not None else None

    def consume(self, kind: str, record_id: str) -> dict | None:
        key = _key(kind, record_id)
        with self._lock:
            payload = self._live(key)
            if payload is None:
                return None
            del self._data[key]
        return json.loads(payload)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (exp, _) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
        return len(expired)


class SqlStateStore(StateStore):
    """
    Database-backed store; shared by every worker pointing at the same DB.
    consume() is a single DELETE ... RETURNING statement.
    """

    def __init__(self, session_factory: sessionmaker, purge_every: int = STATE_PURGE_EVERY_WRITES):
        super().__init__(purge_every)
        self._session_factory = session_factory

    def count(self) -> int:
        """Stored records, expired ones included."""
        with self._session_factory() as db:
            return db.execute(select(func.count()).select_from(EphemeralEntry)).scalar_one()

    def _write(self, key: str, kind: str, payload: str, ttl_seconds: int) -> None:
        with self._session_factory() as db:
            db.merge(
                EphemeralEntry(
                    key=key,
                    kind=kind,
                    payload=payload,
                    expires_at=utc_now() + timedelta(seconds=ttl_seconds),
                )
            )
            db.commit()

    def get(self, kind: str, record_id: str) -> dict | None:
        with self._session_factory() as db:
            payload = db.execute(
                select(EphemeralEntry.payload).where(
                    EphemeralEntry.key == _key(kind, record_id),
                    EphemeralEntry.expires_at > utc_now(),
                )
            ).scalar_one_or_none()
        return json.loads(payload) if payload is not None else None

    def consume(self, kind: str, record_id: str) -> dict | None:
        stmt = (
            delete(EphemeralEntry)
            .where(
                EphemeralEntry.key == _key(kind, record_id),
                EphemeralEntry.expires_at > utc_now(),
            )
            .returning(EphemeralEntry.payload)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as db:
            payload = db.execute(stmt).scalar_one_or_none()
            db.commit()
        return json.loads(payload) if payload is not None else None

    def purge_expired(self) -> int:
        with self._session_factory() as db:
            result = db.execute(
                delete(EphemeralEntry)
                .where(EphemeralEntry.expires_at <= utc_now())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
            db.commit()
        if count:
            logger.info("Purged %d expired ephemeral records", count)
        return count


# --- typed records ---


def _from_dict(cls, data: dict):
    return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass
class AuthorizationRequest:
    # client_id/redirect_uri are None for a plain website login
    client_id: str | None
    redirect_uri: str | None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    original_state: str | None = None
    user_id: int | None = None


@dataclass
class AuthorizationCode:
    user_id: int
    client_id: str
    redirect_uri: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None


@dataclass
class RefreshTokenRecord:
    user_id: int
    refresh_token: str


def store_authorization_request(store: StateStore, request_id: str, request: AuthorizationRequest) -> None:
    store.put(KIND_AUTH_REQUEST, request_id, asdict(request), AUTH_REQUEST_TTL_SECONDS)


def get_authorization_request(store: StateStore, request_id: str) -> AuthorizationRequest | None:
    data = store.get(KIND_AUTH_REQUEST, request_id)
    return _from_dict(AuthorizationRequest, data) if data is not None else None


def consume_authorization_request(store: StateStore, request_id: str) -> AuthorizationRequest | None:
    data = store.consume(KIND_AUTH_REQUEST, request_id)
    return _from_dict(AuthorizationRequest, data) if data is not None else None


def store_authorization_code(store: StateStore, code: str, entry: AuthorizationCode) -> None:
    store.put(KIND_AUTH_CODE, code, asdict(entry), AUTH_CODE_TTL_SECONDS)


def consume_authorization_code(store: StateStore, code: str) -> AuthorizationCode | None:
    data = store.consume(KIND_AUTH_CODE, code)
    return _from_dict(AuthorizationCode, data) if data is not None else None


def store_upstream_refresh_token(store: StateStore, user_id: int, refresh_token: str) -> None:
    record = RefreshTokenRecord(user_id=user_id, refresh_token=refresh_token)
    store.put(KIND_UPSTREAM_REFRESH, str(user_id), asdict(record), UPSTREAM_REFRESH_TOKEN_TTL_SECONDS)


def get_upstream_refresh_token(store: StateStore, user_id: int) -> RefreshTokenRecord | None:
    data = store.get(KIND_UPSTREAM_REFRESH, str(user_id))
    return _from_dict(RefreshTokenRecord, data) if data is not None else None
