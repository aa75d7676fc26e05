from __future__ import annotations

import json
from pathlib import Path

import pytest

from study_flow.checkpoints import (
    ASSIGNMENT_SLOT,
    FULL_SLOT,
    POST_SURVEY_SLOT,
    CheckpointStore,
    all_slots,
    response_slot,
)
from study_flow.contracts import FlowSession, PreSurvey, QuestionResponse, Stage
from study_flow.errors import CheckpointPersistError
from study_flow.kv import KeyValueStoreError, SqlKeyValueStore, build_kv_store


class _FailingKv:
    """Delegates to a real store but refuses writes to selected keys."""

    def __init__(self, inner: SqlKeyValueStore, fail_keys: set[str]) -> None:
        self.inner = inner
        self.fail_keys = fail_keys
        self.attempted: list[str] = []

    def get(self, key: str) -> str | None:
        return self.inner.get(key)

    def set(self, key: str, value: str) -> None:
        self.attempted.append(key)
        if key in self.fail_keys:
            raise OSError(f"disk full writing {key}")
        self.inner.set(key, value)

    def delete(self, key: str) -> None:
        self.inner.delete(key)

    def list_keys(self, prefix: str = "") -> list[str]:
        return self.inner.list_keys(prefix)


def _kv(tmp_path: Path, namespace: str = "checkpoint") -> SqlKeyValueStore:
    return build_kv_store(f"sqlite:///{tmp_path / 'study_flow.db'}", namespace=namespace)


def test_kv_store_basic_operations(tmp_path: Path) -> None:
    kv = _kv(tmp_path)
    assert kv.get("missing") is None
    kv.set("flow/a", "1")
    kv.set("flow/a", "2")
    kv.set("flow/b_x", "3")
    kv.set("other", "4")
    assert kv.get("flow/a") == "2"
    assert kv.list_keys("flow/") == ["flow/a", "flow/b_x"]
    assert kv.list_keys("flow/b_") == ["flow/b_x"]
    kv.delete("flow/a")
    assert kv.get("flow/a") is None


def test_kv_namespaces_are_isolated(tmp_path: Path) -> None:
    checkpoints = _kv(tmp_path, "checkpoint")
    emergency = _kv(tmp_path, "emergency")
    checkpoints.set("k", "checkpoint")
    assert emergency.get("k") is None
    assert emergency.list_keys() == []


def test_kv_rejects_empty_keys_and_non_string_values(tmp_path: Path) -> None:
    kv = _kv(tmp_path)
    with pytest.raises(KeyValueStoreError):
        kv.set("", "x")
    with pytest.raises(KeyValueStoreError):
        kv.set("k", {"not": "text"})  # type: ignore[arg-type]


def test_crash_recovery_round_trip(tmp_path: Path, completed_session: FlowSession) -> None:
    CheckpointStore(_kv(tmp_path)).save_all(completed_session)
    reloaded = CheckpointStore(_kv(tmp_path)).load()
    assert reloaded == completed_session


def test_load_returns_none_when_empty(tmp_path: Path) -> None:
    assert CheckpointStore(_kv(tmp_path)).load() is None


def test_reconstructs_from_shadows_when_full_slot_is_corrupt(tmp_path: Path, completed_session: FlowSession) -> None:
    kv = _kv(tmp_path)
    store = CheckpointStore(kv)
    store.save_all(completed_session)
    kv.set(FULL_SLOT, "{not json")
    reloaded = store.load()
    assert reloaded == completed_session


def test_reconstruction_requires_assignment_shadow(tmp_path: Path, completed_session: FlowSession) -> None:
    kv = _kv(tmp_path)
    store = CheckpointStore(kv)
    store.save_all(completed_session)
    kv.delete(FULL_SLOT)
    kv.delete(ASSIGNMENT_SLOT)
    assert store.load() is None


def test_newer_shadow_wins_over_stale_full_slot(tmp_path: Path, completed_session: FlowSession) -> None:
    inner = _kv(tmp_path)
    CheckpointStore(inner).save_all(completed_session)

    flaky = _FailingKv(inner, {FULL_SLOT})
    replacement = QuestionResponse.build(
        section="test",
        question_index=1,
        category_id="cat-7",
        question_text="changed",
        correct_answer="12",
        answer_text="13",
        question_load_time="2026-03-01T11:00:00.000Z",
        answer_submit_time="2026-03-01T11:00:20.000Z",
    )
    completed_session.upsert_response(replacement)
    completed_session.revision += 1
    with pytest.raises(CheckpointPersistError):
        CheckpointStore(flaky).save(completed_session, [response_slot("test", 1)])

    reloaded = CheckpointStore(inner).load()
    assert reloaded is not None
    assert reloaded.find_response("test", 1) == replacement
    assert reloaded.revision == completed_session.revision
    assert reloaded.stage is Stage.COMPLETED


def test_full_slot_decides_stage_over_newer_assignment_shadow(tmp_path: Path, completed_session: FlowSession) -> None:
    kv = _kv(tmp_path)
    store = CheckpointStore(kv)
    store.save_all(completed_session)
    envelope = json.loads(kv.get(ASSIGNMENT_SLOT))
    envelope["entity"]["stage"] = "lesson"
    envelope["revision"] = completed_session.revision + 5
    kv.set(ASSIGNMENT_SLOT, json.dumps(envelope))
    reloaded = store.load()
    assert reloaded is not None
    assert reloaded.stage is Stage.COMPLETED


def test_save_attempts_every_slot_before_raising(tmp_path: Path, completed_session: FlowSession) -> None:
    flaky = _FailingKv(_kv(tmp_path), {FULL_SLOT, POST_SURVEY_SLOT})
    touched = all_slots(completed_session)
    with pytest.raises(CheckpointPersistError) as excinfo:
        CheckpointStore(flaky).save(completed_session, touched)
    assert flaky.attempted == [FULL_SLOT, *touched]
    assert FULL_SLOT in str(excinfo.value)
    assert POST_SURVEY_SLOT in str(excinfo.value)


def test_shadows_of_another_user_are_ignored(tmp_path: Path, completed_session: FlowSession) -> None:
    kv = _kv(tmp_path)
    store = CheckpointStore(kv)
    store.save_all(completed_session)
    other = FlowSession(
        user_id="user-002",
        lesson_type="solo",
        lesson_question_index=0,
        created_at="2026-03-02T09:00:00.000Z",
        stage=Stage.LESSON,
        pre_survey=PreSurvey(math_interest=1, completed_at="2026-03-02T09:05:00.000Z"),
        revision=1,
    )
    store.save(other, [ASSIGNMENT_SLOT])
    reloaded = store.load()
    assert reloaded is not None
    assert reloaded.user_id == "user-002"
    assert reloaded.practice == []
    assert reloaded.pre_survey == other.pre_survey


def test_clear_removes_full_and_shadow_slots(tmp_path: Path, completed_session: FlowSession) -> None:
    kv = _kv(tmp_path)
    store = CheckpointStore(kv)
    store.save_all(completed_session)
    store.clear()
    assert kv.list_keys("flow/") == []
    assert store.load() is None
