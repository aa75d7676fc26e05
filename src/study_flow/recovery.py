"""Operator replay of emergency backups."""

from __future__ import annotations

import copy
from dataclasses import dataclass
import hmac
import logging
from typing import Any, Mapping

from .contracts import utc_now
from .emergency import EmergencyBackupEntry, EmergencyStore
from .errors import AllSinksFailedError, RecoveryAuthError, RecoveryError, ValidationError
from .pipeline import SubmissionPipeline


logger = logging.getLogger(__name__)

RECOVERED = "RECOVERED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"


def verify_token(token: str | None, shared_secret: str | None) -> None:
    secret = str(shared_secret or "")
    if not secret:
        raise RecoveryAuthError("recovery secret not configured")
    provided = str(token or "")
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise RecoveryAuthError()


def replay_payload(entry: EmergencyBackupEntry, *, recovered_at: str | None = None) -> dict[str, Any]:
    payload = copy.deepcopy(entry.payload)
    payload["recovered"] = True
    metadata = payload.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, Mapping) else {}
    metadata["recovery"] = {"backup_key": entry.key, "recovered_at": recovered_at or utc_now()}
    payload["metadata"] = metadata
    return payload


@dataclass(frozen=True)
class BackupSummary:
    key: str
    user_id: str | None
    created_at: str
    recovered: bool
    recovered_at: str | None
    failure: dict[str, str | None]
    attempts: int

    @classmethod
    def from_entry(cls, entry: EmergencyBackupEntry) -> "BackupSummary":
        return cls(
            key=entry.key,
            user_id=entry.user_id,
            created_at=entry.created_at,
            recovered=entry.recovered,
            recovered_at=entry.recovered_at,
            failure=dict(entry.failure),
            attempts=len(entry.recovery_attempts),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "recovered": self.recovered,
            "recovered_at": self.recovered_at,
            "failure": dict(self.failure),
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class ScanSummary:
    entries: tuple[BackupSummary, ...]

    @property
    def pending(self) -> int:
        return sum(1 for entry in self.entries if not entry.recovered)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": len(self.entries),
            "pending": self.pending,
            "recovered": len(self.entries) - self.pending,
            "entries": [entry.as_dict() for entry in self.entries],
        }


@dataclass(frozen=True)
class RecoveryOutcome:
    key: str
    status: str
    submission_key: str | None = None
    degraded: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RECOVERED

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status,
            "success": self.success,
            "submission_key": self.submission_key,
            "degraded": self.degraded,
            "error": self.error,
        }


@dataclass(frozen=True)
class RecoverAllSummary:
    outcomes: tuple[RecoveryOutcome, ...]

    def _count(self, status: str) -> int:
        return sum(1 for item in self.outcomes if item.status == status)

    @property
    def successful(self) -> int:
        return self._count(RECOVERED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [item.as_dict() for item in self.outcomes],
        }


@dataclass(frozen=True)
class ClearSummary:
    deleted: tuple[str, ...]
    missing: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {"deleted": list(self.deleted), "missing": list(self.missing), "count": len(self.deleted)}


class RecoveryTool:
    """Shared-secret gated driver over the emergency store and the pipeline.

    Replays go through ``SubmissionPipeline.submit`` with backups disabled, so a failed
    replay updates the existing entry instead of creating another one.
    """

    def __init__(
        self,
        emergency: EmergencyStore,
        pipeline: SubmissionPipeline,
        *,
        shared_secret: str | None,
        token: str | None,
    ) -> None:
        verify_token(token, shared_secret)
        self.emergency = emergency
        self.pipeline = pipeline

    def scan(self) -> ScanSummary:
        entries = tuple(BackupSummary.from_entry(entry) for entry in self.emergency.list_entries())
        logger.info("SF recovery scan total=%s", len(entries))
        return ScanSummary(entries=entries)

    def recover_one(self, key: str, *, force: bool = False) -> RecoveryOutcome:
        entry = self.emergency.require(key)
        if entry.recovered and not force:
            logger.info("SF recovery skipped key=%s reason=already_recovered", key)
            return RecoveryOutcome(key=key, status=SKIPPED, error="already recovered")
        payload = replay_payload(entry)
        try:
            record = self.pipeline.submit(payload, backup_on_failure=False)
        except ValidationError as exc:
            return self._failed(key, f"{exc.code}:{'; '.join(exc.errors)}")
        except AllSinksFailedError as exc:
            causes = exc.record.failure_causes()
            detail = ", ".join(f"{sink}={error}" for sink, error in causes.items())
            return self._failed(key, f"{exc.code}:{detail}", submission_key=exc.record.submission_key)
        self.emergency.record_attempt(key, success=True)
        logger.info(
            "SF recovery succeeded key=%s submission_key=%s degraded=%s",
            key,
            record.submission_key,
            record.degraded,
        )
        return RecoveryOutcome(
            key=key,
            status=RECOVERED,
            submission_key=record.submission_key,
            degraded=record.degraded,
        )

    def recover_all(self, *, force: bool = False) -> RecoverAllSummary:
        outcomes: list[RecoveryOutcome] = []
        for entry in self.scan().entries:
            try:
                outcomes.append(self.recover_one(entry.key, force=force))
            except RecoveryError as exc:
                logger.warning("SF recovery failed key=%s error=%s", entry.key, exc)
                outcomes.append(RecoveryOutcome(key=entry.key, status=FAILED, error=str(exc)))
        summary = RecoverAllSummary(outcomes=tuple(outcomes))
        logger.info(
            "SF recovery batch successful=%s failed=%s skipped=%s",
            summary.successful,
            summary.failed,
            summary.skipped,
        )
        return summary

    def clear(self, key: str) -> ClearSummary:
        if self.emergency.delete(key):
            return ClearSummary(deleted=(key,))
        return ClearSummary(deleted=(), missing=(key,))

    def clear_all(self, *, recovered_only: bool = False) -> ClearSummary:
        return ClearSummary(deleted=tuple(self.emergency.delete_all(recovered_only=recovered_only)))

    def _failed(self, key: str, error: str, *, submission_key: str | None = None) -> RecoveryOutcome:
        self.emergency.record_attempt(key, success=False, error=error)
        logger.warning("SF recovery failed key=%s error=%s", key, error)
        return RecoveryOutcome(key=key, status=FAILED, submission_key=submission_key, error=error)
