from __future__ import annotations

from pathlib import Path
import random
from typing import Any, Mapping

import pytest

from study_flow.emergency import EmergencyStore
from study_flow.errors import AllSinksFailedError, RecoveryAuthError, RecoveryError, TransientSinkError
from study_flow.kv import build_kv_store
from study_flow.pipeline import SubmissionPipeline
from study_flow.recovery import FAILED, RECOVERED, SKIPPED, RecoveryTool
from study_flow.retry import RetryExecutor, RetryPolicy
from study_flow.sinks import SinkReceipt


SECRET = "operator-secret"


class _ToggleSink:
    """Fails with a transient error while ``down``; otherwise upserts by idempotency key."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.down = True
        self.records: dict[str, dict[str, Any]] = {}

    def write(self, payload: Mapping[str, Any], *, idempotency_key: str) -> SinkReceipt:
        if self.down:
            raise TransientSinkError(self.name, "connection refused")
        self.records[idempotency_key] = dict(payload)
        return SinkReceipt(sink=self.name, record_id=idempotency_key[:8])


def _setup(tmp_path: Path) -> tuple[SubmissionPipeline, _ToggleSink, _ToggleSink]:
    primary, secondary = _ToggleSink("primary"), _ToggleSink("secondary")
    pipeline = SubmissionPipeline(
        primary=primary,
        secondary=secondary,
        emergency=EmergencyStore(build_kv_store(f"sqlite:///{tmp_path / 'emergency.db'}", namespace="emergency")),
        executor=RetryExecutor(sleep=lambda _: None, rng=random.Random(2)),
        policy=RetryPolicy(max_attempts=3),
    )
    return pipeline, primary, secondary


def _fail_once(pipeline: SubmissionPipeline, payload: dict) -> str:
    with pytest.raises(AllSinksFailedError) as excinfo:
        pipeline.submit(payload)
    assert excinfo.value.backup_key
    return excinfo.value.backup_key


def _tool(pipeline: SubmissionPipeline, token: str | None = SECRET) -> RecoveryTool:
    return RecoveryTool(pipeline.emergency, pipeline, shared_secret=SECRET, token=token)


def test_wrong_or_missing_token_is_rejected(tmp_path: Path) -> None:
    pipeline, _, _ = _setup(tmp_path)
    with pytest.raises(RecoveryAuthError):
        _tool(pipeline, token="guess")
    with pytest.raises(RecoveryAuthError):
        _tool(pipeline, token=None)
    with pytest.raises(RecoveryAuthError):
        RecoveryTool(pipeline.emergency, pipeline, shared_secret=None, token="")


def test_recover_one_against_healthy_sinks(tmp_path: Path, valid_payload: dict) -> None:
    pipeline, primary, secondary = _setup(tmp_path)
    key = _fail_once(pipeline, valid_payload)
    primary.down = secondary.down = False

    tool = _tool(pipeline)
    scan = tool.scan()
    assert [entry.key for entry in scan.entries] == [key]
    assert scan.pending == 1

    outcome = tool.recover_one(key)
    assert outcome.status == RECOVERED
    assert outcome.success is True
    entry = pipeline.emergency.get(key)
    assert entry.recovered is True
    assert len(entry.recovery_attempts) == 1
    replayed = next(iter(secondary.records.values()))
    assert replayed["recovered"] is True
    assert replayed["metadata"]["recovery"]["backup_key"] == key
    assert replayed["user_id"] == valid_payload["user_id"]
    assert len(pipeline.emergency.list_entries()) == 1

    assert tool.clear(key).deleted == (key,)
    assert pipeline.emergency.list_entries() == []


def test_failed_replay_records_attempt_without_new_backup(tmp_path: Path, valid_payload: dict) -> None:
    pipeline, _, _ = _setup(tmp_path)
    key = _fail_once(pipeline, valid_payload)
    outcome = _tool(pipeline).recover_one(key)
    assert outcome.status == FAILED
    assert "connection refused" in (outcome.error or "")
    entries = pipeline.emergency.list_entries()
    assert [entry.key for entry in entries] == [key]
    assert entries[0].recovered is False
    assert entries[0].recovery_attempts[0].success is False


def test_recovered_entries_are_skipped_unless_forced(tmp_path: Path, valid_payload: dict) -> None:
    pipeline, primary, secondary = _setup(tmp_path)
    key = _fail_once(pipeline, valid_payload)
    primary.down = secondary.down = False
    tool = _tool(pipeline)
    tool.recover_one(key)
    assert tool.recover_one(key).status == SKIPPED
    assert tool.recover_one(key, force=True).status == RECOVERED
    assert len(secondary.records) == 1


def test_recover_all_tallies_outcomes(tmp_path: Path, valid_payload: dict) -> None:
    pipeline, primary, secondary = _setup(tmp_path)
    first = _fail_once(pipeline, valid_payload)
    second_payload = dict(valid_payload, user_id="user-002")
    second = _fail_once(pipeline, second_payload)
    primary.down = False
    tool = _tool(pipeline)
    tool.recover_one(first)
    summary = tool.recover_all()
    assert summary.successful == 1
    assert summary.skipped == 1
    assert summary.failed == 0
    statuses = {item.key: item.status for item in summary.outcomes}
    assert statuses == {first: SKIPPED, second: RECOVERED}
    assert summary.as_dict()["successful"] == 1
    assert all(item.degraded for item in summary.outcomes if item.status == RECOVERED)


def test_recover_all_counts_vanished_entry_as_failed(
    tmp_path: Path, valid_payload: dict, monkeypatch: pytest.MonkeyPatch
) -> None:
    pipeline, primary, secondary = _setup(tmp_path)
    gone = _fail_once(pipeline, valid_payload)
    kept = _fail_once(pipeline, dict(valid_payload, user_id="user-003"))
    primary.down = secondary.down = False
    tool = _tool(pipeline)
    listed = tool.scan()

    def scan_then_delete() -> Any:
        pipeline.emergency.delete(gone)
        return listed

    monkeypatch.setattr(tool, "scan", scan_then_delete)
    summary = tool.recover_all()
    statuses = {item.key: item.status for item in summary.outcomes}
    assert statuses == {gone: FAILED, kept: RECOVERED}
    assert summary.failed == 1
    assert summary.successful == 1
    failed = next(item for item in summary.outcomes if item.key == gone)
    assert "BACKUP_NOT_FOUND" in (failed.error or "")


def test_clear_all_can_keep_pending_entries(tmp_path: Path, valid_payload: dict) -> None:
    pipeline, primary, secondary = _setup(tmp_path)
    done = _fail_once(pipeline, valid_payload)
    pending = _fail_once(pipeline, dict(valid_payload, user_id="user-009"))
    primary.down = secondary.down = False
    tool = _tool(pipeline)
    tool.recover_one(done)
    assert tool.clear_all(recovered_only=True).deleted == (done,)
    assert [entry.key for entry in pipeline.emergency.list_entries()] == [pending]
    assert tool.clear_all().deleted == (pending,)
    assert tool.clear("emergency_backup_404").missing == ("emergency_backup_404",)


def test_unknown_key_raises(tmp_path: Path) -> None:
    pipeline, _, _ = _setup(tmp_path)
    with pytest.raises(RecoveryError) as excinfo:
        _tool(pipeline).recover_one("emergency_backup_1")
    assert excinfo.value.code == "BACKUP_NOT_FOUND"
