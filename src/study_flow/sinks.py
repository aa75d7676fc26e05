"""HTTP clients for the primary (document) and secondary (exact-schema) sinks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol
from urllib.parse import quote

import requests

from .errors import TerminalSinkError, TransientSinkError


PRIMARY_SINK = "primary"
SECONDARY_SINK = "secondary"
IDEMPOTENCY_HEADER = "Idempotency-Key"
RETRYABLE_STATUS = {408, 429}


@dataclass(frozen=True)
class SinkReceipt:
    sink: str
    record_id: str | None


class Sink(Protocol):
    name: str

    def write(self, payload: Mapping[str, Any], *, idempotency_key: str) -> SinkReceipt: ...


@dataclass
class _HttpSink:
    base_url: str
    api_key: str | None = None
    api_key_header: str = "X-Api-Key"
    timeout_seconds: float = 10.0
    session: requests.Session | None = None
    name: str = ""

    def __post_init__(self) -> None:
        if not str(self.base_url or "").strip():
            raise ValueError(f"{self.name} sink base_url is required")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._session = self.session or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        url = self.base_url.rstrip("/") + path
        headers: dict[str, str] = {}
        if self.api_key:
            headers[self.api_key_header] = self.api_key
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        try:
            response = self._session.request(
                method,
                url,
                json=dict(body),
                timeout=self.timeout_seconds,
                headers=headers,
            )
        except requests.Timeout as exc:
            raise TransientSinkError(self.name, "timeout") from exc
        except requests.ConnectionError as exc:
            raise TransientSinkError(self.name, str(exc)[:256]) from exc
        except requests.RequestException as exc:
            raise TerminalSinkError(self.name, f"request_invalid:{str(exc)[:256]}") from exc
        status = response.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            raise TransientSinkError(self.name, f"http_{status}")
        if status >= 400:
            raise TerminalSinkError(self.name, f"http_{status}:{_response_text(response)}")
        return _response_json(self.name, response)


@dataclass
class HttpPrimarySink(_HttpSink):
    """Loose document store: upserts the user profile, then appends the submission."""

    name: str = PRIMARY_SINK
    source: str = "study_flow"

    def upsert_user(self, profile: Mapping[str, Any], *, idempotency_key: str | None = None) -> SinkReceipt:
        user_id = str(profile.get("user_id") or "").strip()
        if not user_id:
            raise TerminalSinkError(self.name, "user_id missing")
        body = self._request(
            "PUT",
            f"/v1/users/{quote(user_id, safe='')}",
            profile,
            idempotency_key=idempotency_key,
        )
        return SinkReceipt(sink=self.name, record_id=_record_id(body) or user_id)

    def write(self, payload: Mapping[str, Any], *, idempotency_key: str) -> SinkReceipt:
        self.upsert_user(
            {"user_id": payload.get("user_id"), "condition": payload.get("condition")},
            idempotency_key=idempotency_key,
        )
        document = dict(payload)
        document["_meta"] = {"source": self.source, "idempotency_key": idempotency_key}
        body = self._request("POST", "/v1/documents", document, idempotency_key=idempotency_key)
        record_id = _record_id(body)
        if not record_id:
            raise TerminalSinkError(self.name, "response missing id")
        return SinkReceipt(sink=self.name, record_id=record_id)


@dataclass
class HttpSecondarySink(_HttpSink):
    """Strict relational store: accepts only the validated submission shape."""

    name: str = SECONDARY_SINK

    def write(self, payload: Mapping[str, Any], *, idempotency_key: str) -> SinkReceipt:
        body = self._request("POST", "/v1/submissions", payload, idempotency_key=idempotency_key)
        if not isinstance(body, Mapping) or body.get("success") is not True:
            detail = body.get("error") if isinstance(body, Mapping) else None
            raise TerminalSinkError(self.name, f"success=false:{detail or 'unknown'}")
        return SinkReceipt(sink=self.name, record_id=_record_id(body))


def _record_id(body: Any) -> str | None:
    if not isinstance(body, Mapping):
        return None
    value = body.get("id")
    if value in (None, ""):
        return None
    return str(value)


def _response_json(sink: str, response: Any) -> Any:
    if response.status_code == 204 or not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise TerminalSinkError(sink, "invalid_json") from exc


def _response_text(response: Any) -> str:
    return str(getattr(response, "text", "") or "")[:256]
