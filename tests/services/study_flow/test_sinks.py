from __future__ import annotations

import json

import pytest
import requests

from study_flow.errors import TerminalSinkError, TransientSinkError
from study_flow.sinks import IDEMPOTENCY_HEADER, HttpPrimarySink, HttpSecondarySink


class _StubResponse:
    def __init__(self, status_code: int, body: object | None = None, text: str = "") -> None:
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.text = text
        self.content = b"" if body is None and status_code == 204 else b"{}"

    def json(self) -> object:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _StubSession:
    def __init__(self, responses: list[object]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, object]] = []

    def request(self, method: str, url: str, **kwargs: object) -> object:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self._responses:
            raise AssertionError("no stub responses configured")
        next_item = self._responses.pop(0)
        if isinstance(next_item, Exception):
            raise next_item
        return next_item


def test_primary_upserts_user_then_appends_document(valid_payload: dict) -> None:
    session = _StubSession([_StubResponse(200, {"id": "user-001"}), _StubResponse(201, {"id": "doc-9"})])
    sink = HttpPrimarySink(base_url="http://primary.local/", api_key="k1", session=session)
    receipt = sink.write(valid_payload, idempotency_key="key-1")
    assert receipt.record_id == "doc-9"
    assert [call["method"] for call in session.calls] == ["PUT", "POST"]
    assert session.calls[0]["url"] == "http://primary.local/v1/users/user-001"
    assert session.calls[1]["url"] == "http://primary.local/v1/documents"
    document = session.calls[1]["json"]
    assert document["_meta"] == {"source": "study_flow", "idempotency_key": "key-1"}
    assert session.calls[1]["headers"] == {"X-Api-Key": "k1", IDEMPOTENCY_HEADER: "key-1"}
    assert "_meta" not in valid_payload


def test_secondary_posts_exact_payload(valid_payload: dict) -> None:
    session = _StubSession([_StubResponse(200, {"success": True, "id": 42})])
    sink = HttpSecondarySink(base_url="http://secondary.local", session=session)
    receipt = sink.write(valid_payload, idempotency_key="key-2")
    assert receipt.record_id == "42"
    assert session.calls[0]["url"] == "http://secondary.local/v1/submissions"
    assert json.dumps(session.calls[0]["json"], sort_keys=True) == json.dumps(valid_payload, sort_keys=True)


@pytest.mark.parametrize(
    "outcome",
    [
        requests.Timeout("slow"),
        requests.ConnectionError("refused"),
        _StubResponse(408),
        _StubResponse(429),
        _StubResponse(503, text="overloaded"),
    ],
)
def test_transient_failures_are_classified(outcome: object, valid_payload: dict) -> None:
    sink = HttpSecondarySink(base_url="http://secondary.local", session=_StubSession([outcome]))
    with pytest.raises(TransientSinkError) as excinfo:
        sink.write(valid_payload, idempotency_key="k")
    assert excinfo.value.sink == "secondary"
    assert excinfo.value.retryable is True


@pytest.mark.parametrize(
    "outcome",
    [
        _StubResponse(400, text="bad field"),
        _StubResponse(422),
        _StubResponse(200, {"success": False, "error": "schema mismatch"}),
        _StubResponse(200, ValueError("not json")),
        requests.exceptions.InvalidURL("bad host"),
        requests.exceptions.MissingSchema("no scheme"),
        requests.exceptions.InvalidHeader("bad header"),
    ],
)
def test_terminal_failures_are_classified(outcome: object, valid_payload: dict) -> None:
    sink = HttpSecondarySink(base_url="http://secondary.local", session=_StubSession([outcome]))
    with pytest.raises(TerminalSinkError) as excinfo:
        sink.write(valid_payload, idempotency_key="k")
    assert excinfo.value.retryable is False


def test_primary_document_without_id_is_rejected(valid_payload: dict) -> None:
    session = _StubSession([_StubResponse(200, {}), _StubResponse(201, {})])
    sink = HttpPrimarySink(base_url="http://primary.local", session=session)
    with pytest.raises(TerminalSinkError):
        sink.write(valid_payload, idempotency_key="k")


def test_upsert_user_requires_user_id() -> None:
    sink = HttpPrimarySink(base_url="http://primary.local", session=_StubSession([]))
    with pytest.raises(TerminalSinkError):
        sink.upsert_user({"condition": "solo"})


def test_base_url_is_required() -> None:
    with pytest.raises(ValueError):
        HttpSecondarySink(base_url="", session=_StubSession([]))
