"""Failsafe dual-sink submission pipeline."""

from __future__ import annotations

import copy
from dataclasses import dataclass
import logging
import random
import time
from typing import Any, Callable, Mapping

import requests

from .config import StudyFlowProfile
from .contracts import submission_key
from .emergency import EmergencyStore
from .errors import AllSinksFailedError, SinkError, ValidationError
from .kv import build_kv_store
from .retry import RetryExecutor, RetryPolicy
from .schema import SubmissionValidator
from .sinks import HttpPrimarySink, HttpSecondarySink, Sink, SinkReceipt


logger = logging.getLogger(__name__)

EMERGENCY_NAMESPACE = "emergency"


@dataclass(frozen=True)
class SinkOutcome:
    sink: str
    success: bool
    attempts: int
    error: str | None = None
    record_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "sink": self.sink,
            "success": self.success,
            "attempts": self.attempts,
            "error": self.error,
            "record_id": self.record_id,
        }


@dataclass(frozen=True)
class SubmissionRecord:
    payload: dict[str, Any]
    submission_key: str
    primary: SinkOutcome
    secondary: SinkOutcome
    warnings: tuple[str, ...] = ()

    @property
    def overall_success(self) -> bool:
        return self.primary.success or self.secondary.success

    @property
    def degraded(self) -> bool:
        return self.primary.success != self.secondary.success

    def failure_causes(self) -> dict[str, str | None]:
        return {self.primary.sink: self.primary.error, self.secondary.sink: self.secondary.error}

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.payload.get("user_id"),
            "submission_key": self.submission_key,
            "overall_success": self.overall_success,
            "degraded": self.degraded,
            "primary": self.primary.as_dict(),
            "secondary": self.secondary.as_dict(),
            "warnings": list(self.warnings),
        }


class SubmissionPipeline:
    """Validate once, write to both sinks in order, back up when neither accepts.

    Both writes carry the same idempotency key derived from ``user_id`` and
    ``submitted_at`` so an upsert-capable sink keeps one record per submission.
    """

    def __init__(
        self,
        *,
        primary: Sink,
        secondary: Sink,
        emergency: EmergencyStore,
        validator: SubmissionValidator | None = None,
        executor: RetryExecutor | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.emergency = emergency
        self.validator = validator or SubmissionValidator()
        self.executor = executor or RetryExecutor()
        self.policy = policy or RetryPolicy()

    @classmethod
    def build(
        cls,
        profile: StudyFlowProfile,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> "SubmissionPipeline":
        primary = HttpPrimarySink(
            base_url=profile.primary_sink.url,
            api_key=profile.primary_sink.api_key,
            api_key_header=profile.primary_sink.api_key_header,
            timeout_seconds=profile.primary_sink.timeout_seconds,
            session=session,
        )
        secondary = HttpSecondarySink(
            base_url=profile.secondary_sink.url,
            api_key=profile.secondary_sink.api_key,
            api_key_header=profile.secondary_sink.api_key_header,
            timeout_seconds=profile.secondary_sink.timeout_seconds,
            session=session,
        )
        emergency = EmergencyStore(build_kv_store(profile.emergency_store, namespace=EMERGENCY_NAMESPACE))
        return cls(
            primary=primary,
            secondary=secondary,
            emergency=emergency,
            executor=RetryExecutor(sleep=sleep, rng=rng),
            policy=profile.retry_policy,
        )

    def submit(self, payload: Mapping[str, Any], *, backup_on_failure: bool = True) -> SubmissionRecord:
        report = self.validator.validate(payload)
        user_id = payload.get("user_id") if isinstance(payload, Mapping) else None
        for warning in report.warnings:
            logger.warning("SF submit validation warning user_id=%s warning=%s", user_id, warning)
        if not report.ok:
            logger.warning("SF submit rejected user_id=%s errors=%s", user_id, len(report.errors))
            raise ValidationError(list(report.errors), list(report.warnings))

        body = copy.deepcopy(dict(payload))
        key = submission_key(body)
        primary = self._write(self.primary, body, key)
        secondary = self._write(self.secondary, body, key)
        record = SubmissionRecord(
            payload=body,
            submission_key=key,
            primary=primary,
            secondary=secondary,
            warnings=report.warnings,
        )
        if record.overall_success:
            if record.degraded:
                logger.warning(
                    "SF submit degraded user_id=%s submission_key=%s primary=%s secondary=%s",
                    user_id,
                    key,
                    primary.error or "ok",
                    secondary.error or "ok",
                )
            else:
                logger.info("SF submit ok user_id=%s submission_key=%s", user_id, key)
            return record

        backup_key = None
        if backup_on_failure:
            try:
                backup_key = self.emergency.save(body, record.failure_causes()).key
            except Exception as exc:
                logger.error(
                    "SF submit failed on all sinks and emergency backup failed user_id=%s submission_key=%s error=%s",
                    user_id,
                    key,
                    exc,
                )
                raise AllSinksFailedError(record, None) from exc
        logger.error(
            "SF submit failed on all sinks user_id=%s submission_key=%s backup_key=%s",
            user_id,
            key,
            backup_key,
        )
        raise AllSinksFailedError(record, backup_key)

    def sync_user_profile(self, profile: Mapping[str, Any]) -> bool:
        """Single-attempt, best-effort profile upsert on the primary sink."""
        upsert = getattr(self.primary, "upsert_user", None)
        if upsert is None:
            return False
        try:
            upsert(dict(profile))
        except SinkError as exc:
            logger.warning("SF profile sync failed user_id=%s error=%s", profile.get("user_id"), exc)
            return False
        return True

    def _write(self, sink: Sink, body: dict[str, Any], key: str) -> SinkOutcome:
        result = self.executor.run(
            lambda: sink.write(body, idempotency_key=key),
            self.policy,
            label=f"{sink.name}_sink",
        )
        if result.success:
            receipt: SinkReceipt | None = result.value
            logger.info("SF sink write ok sink=%s attempts=%s", sink.name, result.attempts)
            return SinkOutcome(
                sink=sink.name,
                success=True,
                attempts=result.attempts,
                record_id=receipt.record_id if receipt else None,
            )
        logger.warning(
            "SF sink write failed sink=%s attempts=%s error=%s",
            sink.name,
            result.attempts,
            result.error_text,
        )
        return SinkOutcome(sink=sink.name, success=False, attempts=result.attempts, error=result.error_text)
