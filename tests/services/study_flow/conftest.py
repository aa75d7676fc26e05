from __future__ import annotations

import pytest

from study_flow.contracts import (
    CategoryVariation,
    ChatMessage,
    FlowSession,
    PostSurvey,
    PreSurvey,
    QuestionResponse,
    Stage,
    StudyMetadata,
    build_submission_payload,
)


SUBMITTED_AT = "2026-03-01T12:00:00.000Z"


def _response(section: str, index: int, category: str, *, chat: tuple[ChatMessage, ...] = ()) -> QuestionResponse:
    return QuestionResponse.build(
        section=section,
        question_index=index,
        category_id=category,
        question_text=f"{section} question {index}",
        correct_answer="12",
        answer_text=" 12 ",
        question_load_time="2026-03-01T10:00:00.000Z",
        answer_submit_time="2026-03-01T10:01:30.000Z",
        scratchboard_content="3 * 4 = 12",
        chat_messages=chat,
        submission_id=f"{section}-{index}",
    )


def build_completed_session() -> FlowSession:
    chat = (
        ChatMessage(id=1, sender="user", text="how do I start?", timestamp="2026-03-01T10:00:10.000Z"),
        ChatMessage(id=2, sender="ai", text="multiply first", timestamp="2026-03-01T10:00:12.000Z", agent_id="bob"),
    )
    session = FlowSession(
        user_id="user-001",
        lesson_type="group",
        lesson_question_index=1,
        created_at="2026-03-01T09:55:00.000Z",
        stage=Stage.COMPLETED,
        metadata=StudyMetadata(
            hit_id="HIT-1",
            assignment_id="ASG-1",
            category_indices=(3, 7),
            category_variations=(CategoryVariation(3, 0, 1), CategoryVariation(7, 1, 0)),
        ),
        terms_accepted_at="2026-03-01T09:56:00.000Z",
        revision=9,
    )
    session.pre_survey = PreSurvey(math_interest=4, completed_at="2026-03-01T09:58:00.000Z")
    session.practice = [_response("practice", 0, "cat-3", chat=chat), _response("practice", 1, "cat-7")]
    session.test = [_response("test", 0, "cat-3"), _response("test", 1, "cat-7")]
    session.post_survey = PostSurvey.from_form(
        {
            "post_math_interest": "somewhat-interested",
            "confusion_level": "2",
            "attention_check_answer": "4",
            "age": "25-34",
            "bob_perception": {"helpfulness": 5},
        },
        completed_at="2026-03-01T11:59:00.000Z",
    )
    return session


@pytest.fixture
def completed_session() -> FlowSession:
    return build_completed_session()


@pytest.fixture
def valid_payload() -> dict:
    return build_submission_payload(build_completed_session(), submitted_at=SUBMITTED_AT)
