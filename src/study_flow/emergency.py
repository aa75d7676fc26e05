"""Emergency backups for payloads that no sink accepted."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
import logging
import time
from typing import Any, Callable, Mapping

from .contracts import utc_now
from .errors import RecoveryError
from .kv import KeyValueStore


logger = logging.getLogger(__name__)

BACKUP_PREFIX = "emergency_backup_"


@dataclass(frozen=True)
class RecoveryAttempt:
    attempted_at: str
    success: bool
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"attempted_at": self.attempted_at, "success": self.success, "error": self.error}


@dataclass(frozen=True)
class EmergencyBackupEntry:
    key: str
    payload: dict[str, Any]
    failure: dict[str, str | None]
    created_at: str
    recovered: bool = False
    recovered_at: str | None = None
    recovery_attempts: tuple[RecoveryAttempt, ...] = field(default_factory=tuple)

    @property
    def user_id(self) -> str | None:
        value = self.payload.get("user_id")
        return str(value) if value is not None else None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EmergencyBackupEntry":
        attempts = payload.get("recovery_attempts") or []
        return cls(
            key=str(payload["key"]),
            payload=dict(payload["payload"]),
            failure=dict(payload.get("failure") or {}),
            created_at=str(payload["created_at"]),
            recovered=bool(payload.get("recovered", False)),
            recovered_at=payload.get("recovered_at"),
            recovery_attempts=tuple(
                RecoveryAttempt(
                    attempted_at=str(item["attempted_at"]),
                    success=bool(item["success"]),
                    error=item.get("error"),
                )
                for item in attempts
            ),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "payload": self.payload,
            "failure": dict(self.failure),
            "created_at": self.created_at,
            "recovered": self.recovered,
            "recovered_at": self.recovered_at,
            "recovery_attempts": [item.as_dict() for item in self.recovery_attempts],
        }


class EmergencyStore:
    def __init__(self, kv: KeyValueStore, *, clock_ms: Callable[[], int] | None = None) -> None:
        self.kv = kv
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    def save(self, payload: Mapping[str, Any], failure: Mapping[str, str | None]) -> EmergencyBackupEntry:
        key = self._fresh_key()
        entry = EmergencyBackupEntry(
            key=key,
            payload=dict(payload),
            failure=dict(failure),
            created_at=utc_now(),
        )
        self._write(entry)
        logger.error(
            "SF emergency backup written key=%s user_id=%s failure=%s",
            key,
            entry.user_id,
            entry.failure,
        )
        return entry

    def get(self, key: str) -> EmergencyBackupEntry | None:
        if not str(key or "").startswith(BACKUP_PREFIX):
            return None
        raw = self.kv.get(key)
        if raw is None:
            return None
        return EmergencyBackupEntry.from_payload(json.loads(raw))

    def require(self, key: str) -> EmergencyBackupEntry:
        entry = self.get(key)
        if entry is None:
            raise RecoveryError("BACKUP_NOT_FOUND", key)
        return entry

    def list_entries(self) -> list[EmergencyBackupEntry]:
        entries: list[EmergencyBackupEntry] = []
        for key in self.kv.list_keys(BACKUP_PREFIX):
            raw = self.kv.get(key)
            if raw is None:
                continue
            try:
                entries.append(EmergencyBackupEntry.from_payload(json.loads(raw)))
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("SF emergency backup unreadable key=%s error=%s", key, exc)
        entries.sort(key=lambda item: (item.created_at, item.key))
        return entries

    def record_attempt(self, key: str, *, success: bool, error: str | None = None) -> EmergencyBackupEntry:
        entry = self.require(key)
        attempted_at = utc_now()
        attempt = RecoveryAttempt(attempted_at=attempted_at, success=success, error=error)
        updated = replace(entry, recovery_attempts=entry.recovery_attempts + (attempt,))
        if success:
            updated = replace(updated, recovered=True, recovered_at=attempted_at)
        self._write(updated)
        return updated

    def mark_recovered(self, key: str) -> EmergencyBackupEntry:
        entry = self.require(key)
        updated = replace(entry, recovered=True, recovered_at=entry.recovered_at or utc_now())
        self._write(updated)
        return updated

    def delete(self, key: str) -> bool:
        if self.get(key) is None:
            return False
        self.kv.delete(key)
        logger.info("SF emergency backup deleted key=%s", key)
        return True

    def delete_all(self, *, recovered_only: bool = False) -> list[str]:
        deleted: list[str] = []
        for entry in self.list_entries():
            if recovered_only and not entry.recovered:
                continue
            self.kv.delete(entry.key)
            deleted.append(entry.key)
        logger.info("SF emergency backups deleted count=%s recovered_only=%s", len(deleted), recovered_only)
        return deleted

    def _fresh_key(self) -> str:
        base = f"{BACKUP_PREFIX}{self._clock_ms()}"
        key = base
        suffix = 1
        while self.kv.get(key) is not None:
            key = f"{base}_{suffix}"
            suffix += 1
        return key

    def _write(self, entry: EmergencyBackupEntry) -> None:
        self.kv.set(entry.key, json.dumps(entry.as_dict(), sort_keys=True, ensure_ascii=True))
