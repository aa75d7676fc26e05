"""Stage state machine for one participant's study session."""

from __future__ import annotations

import logging
import random
from typing import Any, Callable, Iterable, Mapping
import uuid

from .checkpoints import ASSIGNMENT_SLOT, POST_SURVEY_SLOT, PRE_SURVEY_SLOT, CheckpointStore, response_slot
from .config import StudyFlowProfile
from .contracts import (
    LESSON_TYPES,
    STAGE_SUCCESSOR,
    CategoryVariation,
    FlowSession,
    PostSurvey,
    PreSurvey,
    QuestionResponse,
    Stage,
    StudyMetadata,
    build_submission_payload,
    likert_value,
    utc_now,
)
from .errors import CheckpointPersistError, StudyFlowError
from .kv import build_kv_store
from .pipeline import SubmissionPipeline, SubmissionRecord


logger = logging.getLogger(__name__)

CHECKPOINT_NAMESPACE = "checkpoint"
POST_SURVEY_STAGES = {Stage.POST_TEST, Stage.FINAL_TEST, Stage.COMPLETED}


class FlowOrchestrator:
    """Owns the in-memory session and checkpoints it before every transition returns.

    Out-of-order calls (a stale or repeated UI event) are ignored with a warning and
    leave the session untouched. Checkpoint write failures are logged, not raised.
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        pipeline: SubmissionPipeline,
        *,
        rng: random.Random | None = None,
        sync_profile: bool = False,
    ) -> None:
        self.checkpoints = checkpoints
        self.pipeline = pipeline
        self.sync_profile = sync_profile
        self._rng = rng or random.Random()
        self.session: FlowSession | None = None
        self.last_record: SubmissionRecord | None = None

    @classmethod
    def build(
        cls,
        profile: StudyFlowProfile,
        *,
        pipeline: SubmissionPipeline | None = None,
        rng: random.Random | None = None,
    ) -> "FlowOrchestrator":
        checkpoints = CheckpointStore(build_kv_store(profile.checkpoint_store, namespace=CHECKPOINT_NAMESPACE))
        return cls(
            checkpoints,
            pipeline or SubmissionPipeline.build(profile),
            rng=rng,
            sync_profile=profile.sync_profile,
        )

    @property
    def stage(self) -> Stage | None:
        return self.session.stage if self.session else None

    def start(
        self,
        user_id: str | None = None,
        *,
        hit_id: str | None = None,
        assignment_id: str | None = None,
        category_indices: Iterable[int] = (),
        category_variations: Iterable[CategoryVariation | Mapping[str, Any]] = (),
    ) -> FlowSession:
        restored = self._restore()
        if restored is not None and (user_id is None or restored.user_id == user_id):
            self.session = restored
            logger.info(
                "SF flow resumed user_id=%s stage=%s revision=%s",
                restored.user_id,
                restored.stage.value,
                restored.revision,
            )
            return restored
        if restored is not None:
            logger.warning(
                "SF flow replacing checkpoint user_id=%s stage=%s new_user_id=%s",
                restored.user_id,
                restored.stage.value,
                user_id,
            )
            self._clear_checkpoint()

        metadata = StudyMetadata(
            hit_id=hit_id,
            assignment_id=assignment_id,
            category_indices=tuple(category_indices),
            category_variations=tuple(
                item if isinstance(item, CategoryVariation) else CategoryVariation.from_payload(item)
                for item in category_variations
            ),
        )
        self.session = FlowSession(
            user_id=user_id or uuid.uuid4().hex,
            lesson_type=self._rng.choice(LESSON_TYPES),
            lesson_question_index=self._rng.randrange(2),
            created_at=utc_now(),
            metadata=metadata,
        )
        self.last_record = None
        logger.info(
            "SF flow started user_id=%s lesson_type=%s lesson_question_index=%s",
            self.session.user_id,
            self.session.lesson_type,
            self.session.lesson_question_index,
        )
        self._commit("start", [ASSIGNMENT_SLOT])
        self._sync_profile()
        return self.session

    def agree_to_terms(self) -> bool:
        def apply(session: FlowSession) -> list[str]:
            session.terms_accepted_at = utc_now()
            return []

        return self._transition("agree_to_terms", Stage.TERMS, apply)

    def complete_pre_test(self, pre_survey: PreSurvey | Mapping[str, Any]) -> bool:
        session = self._require_session()
        survey = pre_survey if isinstance(pre_survey, PreSurvey) else _pre_survey(pre_survey)
        if likert_value(survey.math_interest) is None:
            logger.warning(
                "SF flow ignored action=complete_pre_test reason=math_interest_invalid user_id=%s value=%r",
                session.user_id,
                pre_survey.math_interest if isinstance(pre_survey, PreSurvey) else pre_survey.get("math_interest"),
            )
            return False

        def apply(session: FlowSession) -> list[str]:
            session.pre_survey = survey
            return [PRE_SURVEY_SLOT]

        return self._transition("complete_pre_test", Stage.PRE_TEST, apply)

    def complete_lesson(self) -> bool:
        return self._transition("complete_lesson", Stage.LESSON)

    def complete_break(self) -> bool:
        return self._transition("complete_break", Stage.BREAK)

    def complete_post_test(self, post_survey: PostSurvey | Mapping[str, Any] | None = None) -> bool:
        survey = _post_survey(post_survey) if post_survey is not None else None

        def apply(session: FlowSession) -> list[str]:
            if survey is None:
                return []
            session.post_survey = session.post_survey.merged_with(survey) if session.post_survey else survey
            return [POST_SURVEY_SLOT]

        return self._transition("complete_post_test", Stage.POST_TEST, apply)

    def complete_final_test(self) -> bool:
        return self._transition("complete_final_test", Stage.FINAL_TEST)

    def record_practice_response(self, response: QuestionResponse) -> bool:
        return self._record_response("record_practice_response", "practice", Stage.LESSON, response)

    def record_test_response(self, response: QuestionResponse) -> bool:
        return self._record_response("record_test_response", "test", Stage.FINAL_TEST, response)

    def record_post_survey(self, post_survey: PostSurvey | Mapping[str, Any]) -> bool:
        session = self._require_session()
        if session.stage not in POST_SURVEY_STAGES:
            logger.warning("SF flow ignored action=record_post_survey stage=%s", session.stage.value)
            return False
        survey = _post_survey(post_survey)
        session.post_survey = session.post_survey.merged_with(survey) if session.post_survey else survey
        self._commit("record_post_survey", [POST_SURVEY_SLOT])
        return True

    def finalize(self, *, submitted_at: str | None = None) -> SubmissionRecord | None:
        """Submit the completed session; clears the checkpoint only on success.

        ``ValidationError`` and ``AllSinksFailedError`` propagate with the checkpoint kept.
        """
        if self.session is None and self.last_record is not None:
            logger.warning("SF flow already finalized user_id=%s", self.last_record.payload.get("user_id"))
            return self.last_record
        session = self._require_session()
        if session.stage is not Stage.COMPLETED:
            logger.warning("SF flow ignored action=finalize stage=%s", session.stage.value)
            return None
        payload = build_submission_payload(session, submitted_at=submitted_at)
        record = self.pipeline.submit(payload)
        self._clear_checkpoint()
        self.last_record = record
        self.session = None
        logger.info(
            "SF flow finalized user_id=%s submission_key=%s degraded=%s",
            session.user_id,
            record.submission_key,
            record.degraded,
        )
        return record

    def reset(self) -> None:
        user_id = self.session.user_id if self.session else None
        self._clear_checkpoint()
        self.session = None
        self.last_record = None
        logger.info("SF flow reset user_id=%s", user_id)

    def _transition(
        self,
        action: str,
        expected: Stage,
        apply: Callable[[FlowSession], list[str]] | None = None,
    ) -> bool:
        session = self._require_session()
        if session.stage is not expected:
            logger.warning(
                "SF flow ignored action=%s stage=%s expected=%s",
                action,
                session.stage.value,
                expected.value,
            )
            return False
        touched = apply(session) if apply else []
        session.stage = STAGE_SUCCESSOR[expected]
        logger.info(
            "SF flow transition user_id=%s action=%s stage=%s->%s",
            session.user_id,
            action,
            expected.value,
            session.stage.value,
        )
        self._commit(action, [ASSIGNMENT_SLOT, *touched])
        self._sync_profile()
        return True

    def _record_response(self, action: str, section: str, expected: Stage, response: QuestionResponse) -> bool:
        session = self._require_session()
        if session.stage is not expected:
            logger.warning("SF flow ignored action=%s stage=%s expected=%s", action, session.stage.value, expected.value)
            return False
        if response.section != section:
            logger.warning("SF flow ignored action=%s section=%s expected=%s", action, response.section, section)
            return False
        status = session.upsert_response(response)
        if status == "DUPLICATE":
            logger.info(
                "SF flow duplicate response ignored section=%s question_index=%s submission_id=%s",
                section,
                response.question_index,
                response.submission_id,
            )
            return False
        logger.info(
            "SF flow response %s section=%s question_index=%s is_correct=%s",
            status.lower(),
            section,
            response.question_index,
            response.is_correct,
        )
        self._commit(action, [response_slot(section, response.question_index)])
        return True

    def _commit(self, action: str, touched: list[str]) -> None:
        session = self._require_session()
        session.revision += 1
        try:
            self.checkpoints.save(session, touched)
        except CheckpointPersistError as exc:
            logger.error(
                "SF checkpoint persist failed action=%s user_id=%s revision=%s error=%s",
                action,
                session.user_id,
                session.revision,
                exc,
            )

    def _restore(self) -> FlowSession | None:
        try:
            return self.checkpoints.load()
        except Exception:
            logger.exception("SF checkpoint load failed; starting without a restored session")
            return None

    def _clear_checkpoint(self) -> None:
        try:
            self.checkpoints.clear()
        except Exception as exc:
            logger.error("SF checkpoint clear failed error=%s", exc)

    def _sync_profile(self) -> None:
        if not self.sync_profile or self.session is None:
            return
        self.pipeline.sync_user_profile(self.session.user_profile())

    def _require_session(self) -> FlowSession:
        if self.session is None:
            raise StudyFlowError("FLOW_NOT_STARTED", "call start() first")
        return self.session


def _pre_survey(value: Mapping[str, Any]) -> PreSurvey:
    completed_at = value.get("completed_at") or utc_now()
    return PreSurvey(math_interest=likert_value(value.get("math_interest")), completed_at=completed_at)


def _post_survey(value: PostSurvey | Mapping[str, Any]) -> PostSurvey:
    if isinstance(value, PostSurvey):
        return value
    return PostSurvey.from_form(value)
