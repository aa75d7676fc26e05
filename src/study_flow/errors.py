"""Study flow error taxonomy and helpers."""

from __future__ import annotations

from typing import Any


class StudyFlowError(RuntimeError):
    """Stable, operator-safe error surfaced as a reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class ConfigError(StudyFlowError, ValueError):
    def __init__(self, detail: str) -> None:
        super().__init__("CONFIG_INVALID", detail)


class ValidationError(StudyFlowError, ValueError):
    """Submission payload failed schema validation; never retried."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(
            "VALIDATION_FAILED",
            f"{len(self.errors)} error(s): " + "; ".join(self.errors),
        )


class SinkError(StudyFlowError):
    retryable = False

    def __init__(self, code: str, sink: str, detail: str | None = None) -> None:
        self.sink = sink
        super().__init__(code, f"{sink}:{detail}" if detail else sink)


class TransientSinkError(SinkError):
    """Timeout, connection failure or an explicit overload signal."""

    retryable = True

    def __init__(self, sink: str, detail: str | None = None) -> None:
        super().__init__("SINK_TRANSIENT", sink, detail)


class TerminalSinkError(SinkError):
    """Any other sink rejection; retrying cannot help."""

    def __init__(self, sink: str, detail: str | None = None) -> None:
        super().__init__("SINK_REJECTED", sink, detail)


class AllSinksFailedError(StudyFlowError):
    """Both sinks failed after retries; the payload went to the emergency store."""

    def __init__(self, record: Any, backup_key: str | None) -> None:
        self.record = record
        self.backup_key = backup_key
        super().__init__("ALL_SINKS_FAILED", backup_key or "no_backup")


class CheckpointPersistError(StudyFlowError):
    def __init__(self, detail: str) -> None:
        super().__init__("CHECKPOINT_PERSIST_FAILED", detail)


class RecoveryAuthError(StudyFlowError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__("UNAUTHORIZED", detail)


class RecoveryError(StudyFlowError):
    pass


def reason_code(exc: Exception) -> str:
    if isinstance(exc, StudyFlowError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
