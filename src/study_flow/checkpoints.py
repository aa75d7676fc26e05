"""Write-ahead checkpoints for the in-progress study session."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Iterable, Mapping

from .contracts import (
    ContractError,
    FlowSession,
    PostSurvey,
    PreSurvey,
    QuestionResponse,
    Stage,
    StudyMetadata,
    utc_now,
)
from .errors import CheckpointPersistError
from .kv import KeyValueStore


logger = logging.getLogger(__name__)

FULL_SLOT = "flow/session"
SHADOW_PREFIX = "flow/shadow/"
ASSIGNMENT_SLOT = "flow/shadow/assignment"
PRE_SURVEY_SLOT = "flow/shadow/survey/pre"
POST_SURVEY_SLOT = "flow/shadow/survey/post"
RESPONSE_PREFIX = "flow/shadow/response/"


def response_slot(section: str, question_index: int) -> str:
    return f"{RESPONSE_PREFIX}{section}/{question_index}"


@dataclass(frozen=True)
class ShadowCopy:
    slot: str
    user_id: str
    revision: int
    entity: Any


class CheckpointStore:
    """Full-aggregate slot plus per-entity shadow slots over one key/value store.

    Reconciliation on load: an entity's shadow copy replaces the full slot's copy only
    when it was written at a strictly higher revision. The full slot always decides the
    stage when it parses.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    def save(self, session: FlowSession, touched: Iterable[str] = ()) -> None:
        failures: list[str] = []
        self._attempt(FULL_SLOT, _dumps(session.as_dict()), failures)
        for slot in dict.fromkeys(touched):
            entity = _shadow_entity(session, slot)
            if entity is _MISSING:
                continue
            envelope = {
                "user_id": session.user_id,
                "revision": session.revision,
                "written_at": utc_now(),
                "entity": entity,
            }
            self._attempt(slot, _dumps(envelope), failures)
        if failures:
            raise CheckpointPersistError("; ".join(failures))

    def save_all(self, session: FlowSession) -> None:
        self.save(session, all_slots(session))

    def load(self) -> FlowSession | None:
        full = self._read_full()
        shadows = self._read_shadows(full.user_id if full else None)
        if full is None:
            return _reconstruct(shadows)
        return _overlay(full, shadows)

    def clear(self) -> None:
        failures: list[str] = []
        keys = [FULL_SLOT, *self.kv.list_keys(SHADOW_PREFIX)]
        for key in keys:
            try:
                self.kv.delete(key)
            except Exception as exc:
                failures.append(f"{key}:{exc}")
        if failures:
            raise CheckpointPersistError("; ".join(failures))
        logger.info("SF checkpoint cleared slots=%s", len(keys))

    def _attempt(self, slot: str, value: str, failures: list[str]) -> None:
        try:
            self.kv.set(slot, value)
        except Exception as exc:
            logger.error("SF checkpoint write failed slot=%s error=%s", slot, exc)
            failures.append(f"{slot}:{exc}")

    def _read_full(self) -> FlowSession | None:
        raw = self.kv.get(FULL_SLOT)
        if raw is None:
            return None
        try:
            return FlowSession.from_payload(json.loads(raw))
        except (ValueError, TypeError, KeyError, ContractError) as exc:
            logger.warning("SF checkpoint full slot unreadable; falling back to shadows error=%s", exc)
            return None

    def _read_shadows(self, user_id: str | None) -> dict[str, ShadowCopy]:
        copies: dict[str, ShadowCopy] = {}
        for slot in self.kv.list_keys(SHADOW_PREFIX):
            raw = self.kv.get(slot)
            if raw is None:
                continue
            try:
                envelope = json.loads(raw)
                copy = ShadowCopy(
                    slot=slot,
                    user_id=str(envelope["user_id"]),
                    revision=int(envelope["revision"]),
                    entity=envelope["entity"],
                )
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("SF checkpoint shadow unreadable slot=%s error=%s", slot, exc)
                continue
            copies[slot] = copy
        if user_id is None:
            assignment = copies.get(ASSIGNMENT_SLOT)
            user_id = assignment.user_id if assignment else None
        return {slot: copy for slot, copy in copies.items() if copy.user_id == user_id}


def all_slots(session: FlowSession) -> list[str]:
    slots = [ASSIGNMENT_SLOT]
    if session.pre_survey is not None:
        slots.append(PRE_SURVEY_SLOT)
    if session.post_survey is not None:
        slots.append(POST_SURVEY_SLOT)
    for item in [*session.practice, *session.test]:
        slots.append(response_slot(item.section, item.question_index))
    return slots


_MISSING = object()


def _shadow_entity(session: FlowSession, slot: str) -> Any:
    if slot == ASSIGNMENT_SLOT:
        return {
            "user_id": session.user_id,
            "stage": session.stage.value,
            "lesson_type": session.lesson_type,
            "lesson_question_index": session.lesson_question_index,
            "created_at": session.created_at,
            "terms_accepted_at": session.terms_accepted_at,
            "metadata": session.metadata.as_dict(),
        }
    if slot == PRE_SURVEY_SLOT:
        return session.pre_survey.as_dict() if session.pre_survey else _MISSING
    if slot == POST_SURVEY_SLOT:
        return session.post_survey.as_dict() if session.post_survey is not None else _MISSING
    if slot.startswith(RESPONSE_PREFIX):
        section, _, index = slot[len(RESPONSE_PREFIX) :].partition("/")
        try:
            found = session.find_response(section, int(index))
        except (ValueError, ContractError):
            found = None
        return found.as_dict() if found else _MISSING
    raise ValueError(f"unknown checkpoint slot: {slot}")


def _reconstruct(shadows: Mapping[str, ShadowCopy]) -> FlowSession | None:
    assignment = shadows.get(ASSIGNMENT_SLOT)
    if assignment is None:
        return None
    entity = assignment.entity
    try:
        session = FlowSession(
            user_id=assignment.user_id,
            lesson_type=entity["lesson_type"],
            lesson_question_index=entity["lesson_question_index"],
            created_at=entity["created_at"],
            stage=Stage(entity["stage"]),
            metadata=StudyMetadata.from_payload(entity.get("metadata")),
            terms_accepted_at=entity.get("terms_accepted_at"),
            revision=assignment.revision,
        )
    except (ValueError, TypeError, KeyError, ContractError) as exc:
        logger.warning("SF checkpoint assignment shadow unusable error=%s", exc)
        return None
    for copy in shadows.values():
        if copy.slot != ASSIGNMENT_SLOT:
            _apply_shadow(session, copy)
        session.revision = max(session.revision, copy.revision)
    logger.warning(
        "SF checkpoint reconstructed from shadows user_id=%s stage=%s revision=%s",
        session.user_id,
        session.stage.value,
        session.revision,
    )
    return session


def _overlay(session: FlowSession, shadows: Mapping[str, ShadowCopy]) -> FlowSession:
    newer = [copy for copy in shadows.values() if copy.revision > session.revision]
    for copy in newer:
        if copy.slot == ASSIGNMENT_SLOT:
            entity = copy.entity
            session.metadata = StudyMetadata.from_payload(entity.get("metadata"))
            session.terms_accepted_at = entity.get("terms_accepted_at")
            continue
        _apply_shadow(session, copy)
    if newer:
        session.revision = max(copy.revision for copy in newer)
        logger.warning(
            "SF checkpoint full slot stale; applied shadows=%s revision=%s",
            sorted(copy.slot for copy in newer),
            session.revision,
        )
    return session


def _apply_shadow(session: FlowSession, copy: ShadowCopy) -> None:
    try:
        if copy.slot == PRE_SURVEY_SLOT:
            session.pre_survey = PreSurvey.from_payload(copy.entity)
        elif copy.slot == POST_SURVEY_SLOT:
            session.post_survey = PostSurvey.from_payload(copy.entity)
        elif copy.slot.startswith(RESPONSE_PREFIX):
            response = QuestionResponse.from_payload(copy.entity)
            bucket = session.responses(response.section)
            bucket[:] = [item for item in bucket if item.question_index != response.question_index]
            bucket.append(response)
            bucket.sort(key=lambda item: item.question_index)
    except (ValueError, TypeError, ContractError) as exc:
        logger.warning("SF checkpoint shadow skipped slot=%s error=%s", copy.slot, exc)


def _dumps(value: Mapping[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
