from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from study_flow.cli import main
from study_flow.emergency import EmergencyStore
from study_flow.kv import build_kv_store
from study_flow.pipeline import EMERGENCY_NAMESPACE


def _write_profile(tmp_path: Path) -> Path:
    profile = {
        "profile_id": "test",
        "wiring": {
            "checkpoint_store": f"sqlite:///{tmp_path / 'checkpoints.db'}",
            "emergency_store": f"sqlite:///{tmp_path / 'emergency.db'}",
            "primary_sink": {"url": "http://127.0.0.1:9"},
            "secondary_sink": {"url": "http://127.0.0.1:9"},
        },
        "security": {"recovery_secret": "s3cret"},
    }
    path = tmp_path / "profile.yaml"
    path.write_text(yaml.safe_dump(profile, sort_keys=False), encoding="utf-8")
    return path


def _seed_backup(tmp_path: Path, payload: dict) -> str:
    kv = build_kv_store(f"sqlite:///{tmp_path / 'emergency.db'}", namespace=EMERGENCY_NAMESPACE)
    return EmergencyStore(kv).save(payload, {"primary": "timeout", "secondary": "timeout"}).key


def test_scan_prints_entries(tmp_path: Path, valid_payload: dict, capsys: pytest.CaptureFixture[str]) -> None:
    key = _seed_backup(tmp_path, valid_payload)
    main(["--profile", str(_write_profile(tmp_path)), "--token", "s3cret", "--scan"])
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["total"] == 1
    assert out["entries"][0]["key"] == key
    assert out["entries"][0]["user_id"] == "user-001"


def test_token_from_environment_and_clear(
    tmp_path: Path,
    valid_payload: dict,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    key = _seed_backup(tmp_path, valid_payload)
    monkeypatch.setenv("STUDY_FLOW_RECOVERY_TOKEN", "s3cret")
    main(["--profile", str(_write_profile(tmp_path)), "--clear", key])
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["deleted"] == [key]


def test_bad_token_exits_nonzero(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("STUDY_FLOW_RECOVERY_TOKEN", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main(["--profile", str(_write_profile(tmp_path)), "--token", "wrong", "--scan"])
    assert excinfo.value.code == 1
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["error"] == "UNAUTHORIZED"


def test_requires_exactly_one_action(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--profile", str(_write_profile(tmp_path)), "--scan", "--clear-all"])
