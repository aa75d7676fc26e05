"""Study session data model and the submission wire payload."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
import hashlib
import math
import re
from typing import Any, Iterable, Mapping
import uuid


class Stage(str, Enum):
    TERMS = "terms"
    PRE_TEST = "pre-test"
    LESSON = "lesson"
    BREAK = "break"
    POST_TEST = "post-test"
    FINAL_TEST = "final-test"
    COMPLETED = "completed"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)
STAGE_SUCCESSOR: dict[Stage, Stage] = dict(zip(STAGE_ORDER, STAGE_ORDER[1:]))

LESSON_TYPES: tuple[str, ...] = ("group", "multi", "single", "solo")
CONDITIONS: tuple[str, ...] = ("multi", "single", "peers", "solo")
SECTIONS: tuple[str, ...] = ("practice", "test")
SENDERS: tuple[str, ...] = ("user", "ai")

INTEREST_LABELS: dict[str, int] = {
    "very-interested": 5,
    "somewhat-interested": 4,
    "neutral": 3,
    "somewhat-uninterested": 2,
    "very-uninterested": 1,
}
ATTENTION_CHECK_ANSWER = 4
POST_SURVEY_LIKERT_FIELDS: tuple[str, ...] = (
    "post_math_interest",
    "confusion_level",
    "difficulty_level",
    "correctness_perception",
    "learning_amount",
)
POST_SURVEY_TEXT_FIELDS: tuple[str, ...] = ("pros_and_cons", "age", "gender", "education_level")

_NUMBER_STRIP_RE = re.compile(r"[\s,$]")
_FRACTION_RE = re.compile(r"^(-?\d+(?:\.\d+)?)/(-?\d+(?:\.\d+)?)$")
_SUBSECOND_RE = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


class ContractError(ValueError):
    """Raised when a study record cannot be built from its payload."""


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or "T" not in value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat only takes 3 or 6 fractional digits before Python 3.11.
    text = _SUBSECOND_RE.sub(lambda match: f"{match.group(1)}.{(match.group(2) + '000000')[:6]}", text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def is_iso_timestamp(value: Any) -> bool:
    return parse_timestamp(value) is not None


def condition_for_lesson_type(lesson_type: str) -> str:
    if lesson_type not in LESSON_TYPES:
        raise ContractError(f"lesson_type must be one of {list(LESSON_TYPES)}; got {lesson_type!r}")
    return "peers" if lesson_type == "group" else lesson_type


def answers_match(answer: str, correct: str, *, tolerance: float = 1e-6) -> bool:
    """Case/whitespace-insensitive comparison that also accepts numerically equal forms.

    ``"0.5"``, ``"1/2"`` and ``" .50 "`` all match ``"0.5"``.
    """
    left = _normalize_answer(answer)
    right = _normalize_answer(correct)
    if not right:
        return False
    if left == right:
        return True
    left_num = _parse_number(left)
    right_num = _parse_number(right)
    if left_num is None or right_num is None:
        return False
    return math.isclose(left_num, right_num, rel_tol=tolerance, abs_tol=tolerance)


def _normalize_answer(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


def _parse_number(text: str) -> float | None:
    raw = _NUMBER_STRIP_RE.sub("", text)
    if raw.endswith("%"):
        raw = raw[:-1]
    match = _FRACTION_RE.match(raw)
    if match:
        denominator = float(match.group(2))
        if denominator == 0:
            return None
        return float(match.group(1)) / denominator
    try:
        number = float(raw)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass(frozen=True)
class ChatMessage:
    id: int
    sender: str
    text: str
    timestamp: str
    agent_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChatMessage":
        mapped = _as_mapping(payload, "chat_message")
        agent_id = mapped.get("agent_id", mapped.get("agentId"))
        return cls(
            id=mapped.get("id"),
            sender=mapped.get("sender"),
            text=mapped.get("text"),
            timestamp=mapped.get("timestamp"),
            agent_id=agent_id if agent_id not in ("",) else None,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "agent_id": self.agent_id,
            "text": self.text,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class QuestionResponse:
    section: str
    question_index: int
    category_id: str
    question_text: str
    correct_answer: str
    answer_text: str
    is_correct: bool
    question_load_time: str
    answer_submit_time: str
    duration_seconds: float
    scratchboard_content: str = ""
    chat_messages: tuple[ChatMessage, ...] = ()
    skip_button_click_time: str | None = None
    submission_id: str = ""

    @classmethod
    def build(
        cls,
        *,
        section: str,
        question_index: int,
        category_id: str,
        question_text: str,
        correct_answer: str,
        answer_text: str,
        question_load_time: str,
        answer_submit_time: str,
        skip_button_click_time: str | None = None,
        scratchboard_content: str = "",
        chat_messages: Iterable[ChatMessage | Mapping[str, Any]] = (),
        duration_seconds: float | None = None,
        is_correct: bool | None = None,
        submission_id: str | None = None,
    ) -> "QuestionResponse":
        """Assemble a response from UI inputs, deriving correctness and duration."""
        if section not in SECTIONS:
            raise ContractError(f"section must be one of {list(SECTIONS)}; got {section!r}")
        if duration_seconds is None:
            started = parse_timestamp(question_load_time)
            ended = parse_timestamp(answer_submit_time)
            if started is None or ended is None:
                raise ContractError("question_load_time and answer_submit_time must be ISO-8601 timestamps")
            duration_seconds = round(max(0.0, (ended - started).total_seconds()), 3)
        if is_correct is None:
            is_correct = answers_match(answer_text, correct_answer)
        messages = tuple(
            item if isinstance(item, ChatMessage) else ChatMessage.from_payload(item) for item in chat_messages
        )
        return cls(
            section=section,
            question_index=question_index,
            category_id=category_id,
            question_text=question_text,
            correct_answer=correct_answer,
            answer_text=answer_text,
            is_correct=bool(is_correct),
            question_load_time=question_load_time,
            answer_submit_time=answer_submit_time,
            duration_seconds=duration_seconds,
            scratchboard_content=scratchboard_content or "",
            chat_messages=messages,
            skip_button_click_time=skip_button_click_time,
            submission_id=submission_id or uuid.uuid4().hex,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "QuestionResponse":
        mapped = _as_mapping(payload, "question_response")
        messages = mapped.get("chat_messages") or []
        return cls(
            section=mapped.get("section"),
            question_index=mapped.get("question_index"),
            category_id=mapped.get("category_id"),
            question_text=mapped.get("question_text"),
            correct_answer=mapped.get("correct_answer"),
            answer_text=mapped.get("answer_text"),
            is_correct=mapped.get("is_correct"),
            question_load_time=mapped.get("question_load_time"),
            answer_submit_time=mapped.get("answer_submit_time"),
            duration_seconds=mapped.get("duration_seconds"),
            scratchboard_content=mapped.get("scratchboard_content") or "",
            chat_messages=tuple(ChatMessage.from_payload(item) for item in messages),
            skip_button_click_time=mapped.get("skip_button_click_time"),
            submission_id=str(mapped.get("submission_id") or ""),
        )

    @property
    def natural_key(self) -> tuple[str, int]:
        return (self.section, self.question_index)

    def as_dict(self) -> dict[str, Any]:
        payload = self.to_wire()
        payload["section"] = self.section
        payload["submission_id"] = self.submission_id
        return payload

    def to_wire(self) -> dict[str, Any]:
        return {
            "question_index": self.question_index,
            "category_id": self.category_id,
            "question_text": self.question_text,
            "correct_answer": self.correct_answer,
            "answer_text": self.answer_text,
            "is_correct": self.is_correct,
            "question_load_time": self.question_load_time,
            "answer_submit_time": self.answer_submit_time,
            "skip_button_click_time": self.skip_button_click_time,
            "duration_seconds": self.duration_seconds,
            "scratchboard_content": self.scratchboard_content,
            "chat_messages": [message.as_dict() for message in self.chat_messages],
        }


@dataclass(frozen=True)
class PreSurvey:
    math_interest: int
    completed_at: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PreSurvey":
        mapped = _as_mapping(payload, "pre_survey")
        return cls(math_interest=mapped.get("math_interest"), completed_at=mapped.get("completed_at"))

    def as_dict(self) -> dict[str, Any]:
        return {"math_interest": self.math_interest, "completed_at": self.completed_at}


@dataclass(frozen=True)
class PostSurvey:
    completed_at: str | None = None
    post_math_interest: int | None = None
    confusion_level: int | None = None
    difficulty_level: int | None = None
    correctness_perception: int | None = None
    learning_amount: int | None = None
    pros_and_cons: str | None = None
    age: str | None = None
    gender: str | None = None
    education_level: str | None = None
    passed_attention_check: bool | None = None
    agent_perceptions: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PostSurvey":
        mapped = _as_mapping(payload, "post_survey")
        kwargs: dict[str, Any] = {
            name: mapped.get(name)
            for name in ("completed_at", "passed_attention_check", *POST_SURVEY_LIKERT_FIELDS, *POST_SURVEY_TEXT_FIELDS)
        }
        perceptions = mapped.get("agent_perceptions") or {}
        kwargs["agent_perceptions"] = {str(name): dict(value) for name, value in dict(perceptions).items()}
        return cls(**kwargs)

    @classmethod
    def from_form(cls, form: Mapping[str, Any], *, completed_at: str | None = None) -> "PostSurvey":
        """Normalize a raw survey form into the stored shape.

        Interest answers arrive as labels (``very-interested``) or numeric strings,
        the attention check as the chosen option, and agent ratings as
        ``<agent>_perception`` entries.
        """
        mapped = _as_mapping(form, "post_survey_form")
        kwargs: dict[str, Any] = {"completed_at": completed_at or mapped.get("completed_at") or utc_now()}
        for name in POST_SURVEY_LIKERT_FIELDS:
            kwargs[name] = likert_value(mapped.get(name))
        for name in POST_SURVEY_TEXT_FIELDS:
            value = mapped.get(name)
            kwargs[name] = str(value) if value not in (None, "") else None
        attention = mapped.get("attention_check_answer")
        if attention not in (None, ""):
            try:
                kwargs["passed_attention_check"] = int(str(attention).strip()) == ATTENTION_CHECK_ANSWER
            except ValueError:
                kwargs["passed_attention_check"] = False
        perceptions: dict[str, dict[str, Any]] = {}
        for key, value in mapped.items():
            if key.endswith("_perception") and isinstance(value, Mapping):
                perceptions[key[: -len("_perception")]] = dict(value)
        kwargs["agent_perceptions"] = perceptions
        return cls(**kwargs)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in ("completed_at", *POST_SURVEY_LIKERT_FIELDS, *POST_SURVEY_TEXT_FIELDS, "passed_attention_check"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if self.agent_perceptions:
            payload["agent_perceptions"] = {name: dict(value) for name, value in self.agent_perceptions.items()}
        return payload

    def merged_with(self, other: "PostSurvey") -> "PostSurvey":
        updates = {name: value for name, value in other.as_dict().items() if name != "agent_perceptions"}
        perceptions = {**self.agent_perceptions, **other.agent_perceptions}
        return replace(self, **updates, agent_perceptions=perceptions)


def likert_value(value: Any) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1 <= value <= 5 else None
    text = str(value).strip().lower()
    if text in INTEREST_LABELS:
        return INTEREST_LABELS[text]
    try:
        parsed = int(text)
    except ValueError:
        return None
    return parsed if 1 <= parsed <= 5 else None


@dataclass(frozen=True)
class CategoryVariation:
    category_index: int
    practice_variation: int
    test_variation: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CategoryVariation":
        mapped = _as_mapping(payload, "category_variation")
        return cls(
            category_index=mapped.get("category_index"),
            practice_variation=mapped.get("practice_variation"),
            test_variation=mapped.get("test_variation"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "category_index": self.category_index,
            "practice_variation": self.practice_variation,
            "test_variation": self.test_variation,
        }


@dataclass(frozen=True)
class StudyMetadata:
    hit_id: str | None = None
    assignment_id: str | None = None
    category_indices: tuple[int, ...] = ()
    category_variations: tuple[CategoryVariation, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "StudyMetadata":
        mapped = _as_mapping(payload or {}, "metadata")
        return cls(
            hit_id=mapped.get("hit_id"),
            assignment_id=mapped.get("assignment_id"),
            category_indices=tuple(mapped.get("category_indices") or ()),
            category_variations=tuple(
                CategoryVariation.from_payload(item) for item in mapped.get("category_variations") or ()
            ),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "hit_id": self.hit_id,
            "assignment_id": self.assignment_id,
            "category_indices": list(self.category_indices),
            "category_variations": [item.as_dict() for item in self.category_variations],
        }


@dataclass
class FlowSession:
    """The in-progress aggregate for one participant. Single writer."""

    user_id: str
    lesson_type: str
    lesson_question_index: int
    created_at: str
    stage: Stage = Stage.TERMS
    metadata: StudyMetadata = field(default_factory=StudyMetadata)
    practice: list[QuestionResponse] = field(default_factory=list)
    test: list[QuestionResponse] = field(default_factory=list)
    pre_survey: PreSurvey | None = None
    post_survey: PostSurvey | None = None
    terms_accepted_at: str | None = None
    revision: int = 0

    @property
    def condition(self) -> str:
        return condition_for_lesson_type(self.lesson_type)

    def responses(self, section: str) -> list[QuestionResponse]:
        if section == "practice":
            return self.practice
        if section == "test":
            return self.test
        raise ContractError(f"unknown section: {section!r}")

    def find_response(self, section: str, question_index: int) -> QuestionResponse | None:
        for item in self.responses(section):
            if item.question_index == question_index:
                return item
        return None

    def upsert_response(self, response: QuestionResponse) -> str:
        """Insert or replace by (section, question_index); returns NEW, REPLACED or DUPLICATE."""
        bucket = self.responses(response.section)
        for position, existing in enumerate(bucket):
            if existing.question_index != response.question_index:
                continue
            if existing.submission_id == response.submission_id:
                return "DUPLICATE"
            bucket[position] = response
            return "REPLACED"
        bucket.append(response)
        bucket.sort(key=lambda item: item.question_index)
        return "NEW"

    def user_profile(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "flow_stage": self.stage.value,
            "lesson_type": self.lesson_type,
            "lesson_question_index": self.lesson_question_index,
            "condition": self.condition,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FlowSession":
        mapped = _as_mapping(payload, "flow_session")
        user_id = str(mapped.get("user_id") or "").strip()
        if not user_id:
            raise ContractError("flow_session.user_id is required")
        try:
            stage = Stage(mapped.get("stage") or Stage.TERMS.value)
        except ValueError as exc:
            raise ContractError(f"flow_session.stage is invalid: {mapped.get('stage')!r}") from exc
        pre_survey = mapped.get("pre_survey")
        post_survey = mapped.get("post_survey")
        return cls(
            user_id=user_id,
            lesson_type=mapped.get("lesson_type"),
            lesson_question_index=mapped.get("lesson_question_index", 0),
            created_at=mapped.get("created_at"),
            stage=stage,
            metadata=StudyMetadata.from_payload(mapped.get("metadata")),
            practice=[QuestionResponse.from_payload(item) for item in mapped.get("practice") or []],
            test=[QuestionResponse.from_payload(item) for item in mapped.get("test") or []],
            pre_survey=PreSurvey.from_payload(pre_survey) if pre_survey else None,
            post_survey=PostSurvey.from_payload(post_survey) if post_survey is not None else None,
            terms_accepted_at=mapped.get("terms_accepted_at"),
            revision=int(mapped.get("revision") or 0),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "stage": self.stage.value,
            "lesson_type": self.lesson_type,
            "lesson_question_index": self.lesson_question_index,
            "created_at": self.created_at,
            "metadata": self.metadata.as_dict(),
            "practice": [item.as_dict() for item in self.practice],
            "test": [item.as_dict() for item in self.test],
            "pre_survey": self.pre_survey.as_dict() if self.pre_survey else None,
            "post_survey": self.post_survey.as_dict() if self.post_survey is not None else None,
            "terms_accepted_at": self.terms_accepted_at,
            "revision": self.revision,
        }


def build_submission_payload(session: FlowSession, *, submitted_at: str | None = None) -> dict[str, Any]:
    """Project the aggregate onto the fixed submission wire shape."""
    practice = sorted(session.practice, key=lambda item: item.question_index)
    test = sorted(session.test, key=lambda item: item.question_index)
    return {
        "user_id": session.user_id,
        "condition": session.condition,
        "pre_survey": session.pre_survey.as_dict() if session.pre_survey else None,
        "practice_section": {"questions": [item.to_wire() for item in practice]},
        "test_section": {"questions": [item.to_wire() for item in test]},
        "post_survey": session.post_survey.as_dict() if session.post_survey is not None else {},
        "submitted_at": submitted_at or utc_now(),
        "metadata": session.metadata.as_dict(),
    }


def submission_key(payload: Mapping[str, Any]) -> str:
    """Deterministic idempotency key: one logical record per (user_id, submitted_at)."""
    raw = f"{payload.get('user_id') or ''}|{payload.get('submitted_at') or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _as_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ContractError(f"{field_name} must be a mapping")
    return value
