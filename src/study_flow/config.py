"""Study flow profile loader."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from .errors import ConfigError
from .retry import RetryPolicy


DEFAULT_RECOVERY_HEADER = "X-Recovery-Token"


@dataclass(frozen=True)
class SinkEndpoint:
    url: str
    api_key: str | None = None
    api_key_header: str = "X-Api-Key"
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class StudyFlowProfile:
    profile_id: str
    checkpoint_store: str
    emergency_store: str
    primary_sink: SinkEndpoint
    secondary_sink: SinkEndpoint
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    sync_profile: bool = False
    recovery_secret: str | None = None
    recovery_header: str = DEFAULT_RECOVERY_HEADER
    log_paths: tuple[str, ...] = ()

    @classmethod
    def load(cls, path: Path | str) -> "StudyFlowProfile":
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"profile unreadable: {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"profile is not valid YAML: {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ConfigError("profile must be a mapping")
        return cls.from_payload(data)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "StudyFlowProfile":
        profile_id = str(data.get("profile_id") or "").strip()
        if not profile_id:
            raise ConfigError("profile_id is required")
        wiring = _section(data, "wiring")
        policy = _section(data, "policy")
        security = _section(data, "security")
        log_paths = wiring.get("log_paths") or []
        if not isinstance(log_paths, list):
            raise ConfigError("wiring.log_paths must be a list")
        return cls(
            profile_id=profile_id,
            checkpoint_store=_required_text(wiring, "checkpoint_store", "wiring"),
            emergency_store=_required_text(wiring, "emergency_store", "wiring"),
            primary_sink=_sink_endpoint(wiring, "primary_sink"),
            secondary_sink=_sink_endpoint(wiring, "secondary_sink"),
            retry_policy=_retry_policy(policy.get("retry") or {}),
            sync_profile=_as_bool(policy.get("sync_profile", False), "policy.sync_profile"),
            recovery_secret=_resolve_env(security.get("recovery_secret")) or None,
            recovery_header=str(security.get("recovery_header") or DEFAULT_RECOVERY_HEADER),
            log_paths=tuple(str(_resolve_env(item)) for item in log_paths),
        )


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{name} must be a mapping")
    return value


def _required_text(section: Mapping[str, Any], key: str, prefix: str) -> str:
    value = _resolve_env(section.get(key))
    text = str(value or "").strip()
    if not text:
        raise ConfigError(f"{prefix}.{key} is required")
    return text


def _sink_endpoint(wiring: Mapping[str, Any], key: str) -> SinkEndpoint:
    raw = wiring.get(key)
    if not isinstance(raw, Mapping):
        raise ConfigError(f"wiring.{key} must be a mapping")
    timeout = raw.get("timeout_seconds", 10.0)
    try:
        timeout_seconds = float(timeout)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"wiring.{key}.timeout_seconds must be a number") from exc
    if timeout_seconds <= 0:
        raise ConfigError(f"wiring.{key}.timeout_seconds must be > 0")
    return SinkEndpoint(
        url=_required_text(raw, "url", f"wiring.{key}"),
        api_key=_resolve_env(raw.get("api_key")) or None,
        api_key_header=str(raw.get("api_key_header") or "X-Api-Key"),
        timeout_seconds=timeout_seconds,
    )


def _retry_policy(raw: Any) -> RetryPolicy:
    if not isinstance(raw, Mapping):
        raise ConfigError("policy.retry must be a mapping")
    defaults = RetryPolicy()
    try:
        return RetryPolicy(
            max_attempts=int(raw.get("max_attempts", defaults.max_attempts)),
            base_delay_seconds=float(raw.get("base_delay_seconds", defaults.base_delay_seconds)),
            growth_factor=float(raw.get("growth_factor", defaults.growth_factor)),
            max_delay_seconds=float(raw.get("max_delay_seconds", defaults.max_delay_seconds)),
            jitter_max_seconds=float(raw.get("jitter_max_seconds", defaults.jitter_max_seconds)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"policy.retry invalid: {exc}") from exc


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    raise ConfigError(f"{name} must be a boolean")


_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def _resolve_env(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    match = _ENV_PATTERN.match(value.strip())
    if not match:
        return value
    return os.getenv(match.group(1))
