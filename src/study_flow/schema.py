"""Submission payload validation: declarative schema plus cross-field study rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from .contracts import is_iso_timestamp
from .errors import ValidationError


SCHEMA_ROOT = Path(__file__).resolve().parent / "schemas"
SUBMISSION_SCHEMA = "submission.schema.yaml"
SECTION_SIZE = 2
EXPECTED_INDICES = {0, 1}


@dataclass(frozen=True)
class ValidationReport:
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass
class SubmissionValidator:
    """Collects every violation in one pass; never stops at the first."""

    schema_root: Path = SCHEMA_ROOT
    schema_name: str = SUBMISSION_SCHEMA
    _validator: Draft202012Validator | None = field(default=None, init=False, repr=False)

    def validate(self, payload: Any) -> ValidationReport:
        if not isinstance(payload, Mapping):
            return ValidationReport(errors=("payload must be a JSON object",))
        errors: list[str] = []
        warnings: list[str] = []
        errors.extend(self._structural_errors(payload))
        errors.extend(_timestamp_errors(payload))
        for section in ("practice_section", "test_section"):
            errors.extend(_section_errors(section, payload.get(section)))
        errors.extend(_alignment_errors(payload))
        warnings.extend(_test_chat_warnings(payload))
        return ValidationReport(errors=tuple(errors), warnings=tuple(warnings))

    def enforce(self, payload: Any) -> ValidationReport:
        report = self.validate(payload)
        if not report.ok:
            raise ValidationError(list(report.errors), list(report.warnings))
        return report

    def _structural_errors(self, payload: Mapping[str, Any]) -> list[str]:
        validator = self._load_validator()
        found = sorted(validator.iter_errors(dict(payload)), key=lambda e: [str(p) for p in e.absolute_path])
        return [_format_error(error.absolute_path, error.message) for error in found]

    def _load_validator(self) -> Draft202012Validator:
        if self._validator is None:
            self._validator = _build_validator(self.schema_root / self.schema_name)
        return self._validator


def _build_validator(path: Path) -> Draft202012Validator:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    _normalize_nullable(data)
    schema_id = data.get("$id") or path.as_uri()
    registry = Registry().with_resource(
        schema_id,
        Resource.from_contents(data, default_specification=DRAFT202012),
    )
    return Draft202012Validator(data, registry=registry)


def _normalize_nullable(node: Any) -> None:
    if isinstance(node, dict):
        nullable = node.pop("nullable", False)
        if nullable and "type" in node:
            node_type = node["type"]
            if isinstance(node_type, list):
                if "null" not in node_type:
                    node_type.append("null")
            else:
                node["type"] = [node_type, "null"]
        for value in node.values():
            _normalize_nullable(value)
    elif isinstance(node, list):
        for item in node:
            _normalize_nullable(item)


def _format_error(path: Iterable[Any], message: str) -> str:
    parts = [str(item) for item in path]
    if not parts:
        return message
    return f"{'.'.join(parts)}: {message}"


def _questions(section: Any) -> list[Any] | None:
    if not isinstance(section, Mapping):
        return None
    questions = section.get("questions")
    return questions if isinstance(questions, list) else None


def _section_errors(name: str, section: Any) -> list[str]:
    questions = _questions(section)
    if questions is None:
        return []
    errors: list[str] = []
    if len(questions) != SECTION_SIZE:
        errors.append(f"{name} must have exactly {SECTION_SIZE} questions")
    indices = [item.get("question_index") for item in questions if isinstance(item, Mapping)]
    keys = [repr(index) for index in indices]
    if len(keys) != len(set(keys)) or set(keys) != {repr(index) for index in EXPECTED_INDICES}:
        errors.append(f"{name} question indices must be exactly [0, 1]; got {indices}")
    return errors


def _alignment_errors(payload: Mapping[str, Any]) -> list[str]:
    practice = _questions(payload.get("practice_section"))
    test = _questions(payload.get("test_section"))
    if practice is None or test is None:
        return []
    by_index = {
        item.get("question_index"): item
        for item in test
        if isinstance(item, Mapping) and _is_index(item.get("question_index"))
    }
    errors: list[str] = []
    for item in practice:
        if not isinstance(item, Mapping):
            continue
        index = item.get("question_index")
        if not _is_index(index) or index not in by_index:
            continue
        other = by_index[index]
        if index not in EXPECTED_INDICES:
            continue
        if item.get("category_id") != other.get("category_id"):
            errors.append(
                f"Q{index + 1} category mismatch: practice={item.get('category_id')}, "
                f"test={other.get('category_id')}"
            )
    return errors


def _timestamp_errors(payload: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []
    for path, value in _timestamp_fields(payload):
        if not is_iso_timestamp(value):
            errors.append(f"{path} must be an ISO-8601 timestamp; got {value!r}")
    return errors


def _timestamp_fields(payload: Mapping[str, Any]) -> list[tuple[str, Any]]:
    fields: list[tuple[str, Any]] = []
    if "submitted_at" in payload:
        fields.append(("submitted_at", payload.get("submitted_at")))
    for survey in ("pre_survey", "post_survey"):
        value = payload.get(survey)
        if isinstance(value, Mapping) and "completed_at" in value:
            fields.append((f"{survey}.completed_at", value.get("completed_at")))
    for section in ("practice_section", "test_section"):
        for position, item in enumerate(_questions(payload.get(section)) or []):
            if not isinstance(item, Mapping):
                continue
            prefix = f"{section}.questions.{position}"
            for name in ("question_load_time", "answer_submit_time"):
                if name in item:
                    fields.append((f"{prefix}.{name}", item.get(name)))
            if item.get("skip_button_click_time") is not None:
                fields.append((f"{prefix}.skip_button_click_time", item.get("skip_button_click_time")))
            messages = item.get("chat_messages")
            for msg_pos, message in enumerate(messages if isinstance(messages, list) else []):
                if isinstance(message, Mapping) and "timestamp" in message:
                    fields.append((f"{prefix}.chat_messages.{msg_pos}.timestamp", message.get("timestamp")))
    metadata = payload.get("metadata")
    if isinstance(metadata, Mapping) and isinstance(metadata.get("recovery"), Mapping):
        recovery = metadata["recovery"]
        if "recovered_at" in recovery:
            fields.append(("metadata.recovery.recovered_at", recovery.get("recovered_at")))
    return fields


def _test_chat_warnings(payload: Mapping[str, Any]) -> list[str]:
    warnings: list[str] = []
    for item in _questions(payload.get("test_section")) or []:
        if not isinstance(item, Mapping):
            continue
        messages = item.get("chat_messages")
        if isinstance(messages, list) and messages:
            warnings.append(
                f"test_section question {item.get('question_index')} carries {len(messages)} chat message(s)"
            )
    return warnings


def _is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
