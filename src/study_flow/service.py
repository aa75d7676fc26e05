"""Flask service wrapper for submissions and operator recovery."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Callable

from flask import Flask, jsonify, request

from .config import StudyFlowProfile
from .errors import AllSinksFailedError, RecoveryAuthError, RecoveryError, ValidationError, reason_code
from .logging_utils import configure_logging
from .pipeline import SubmissionPipeline
from .recovery import RecoveryTool


def create_app(profile_path: str, *, pipeline: SubmissionPipeline | None = None) -> Flask:
    profile = StudyFlowProfile.load(Path(profile_path))
    configure_logging(log_paths=profile.log_paths)
    pipeline = pipeline or SubmissionPipeline.build(profile)

    app = Flask(__name__)

    def recovery_call(action: Callable[[RecoveryTool], Any]) -> Any:
        token = request.headers.get(profile.recovery_header)
        try:
            tool = RecoveryTool(pipeline.emergency, pipeline, shared_secret=profile.recovery_secret, token=token)
            return jsonify(action(tool).as_dict())
        except RecoveryAuthError as exc:
            return jsonify({"error": exc.code}), 401
        except RecoveryError as exc:
            return jsonify({"error": exc.code, "detail": exc.detail}), 404

    @app.post("/v1/submit")
    def submit() -> Any:
        payload = request.get_json(force=True, silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "VALIDATION_FAILED", "errors": ["payload must be a JSON object"]}), 400
        try:
            record = pipeline.submit(payload)
        except ValidationError as exc:
            return jsonify({"error": exc.code, "errors": exc.errors, "warnings": exc.warnings}), 400
        except AllSinksFailedError as exc:
            body = {"error": exc.code, "backup_key": exc.backup_key, "record": exc.record.as_dict()}
            return jsonify(body), 503
        except Exception as exc:  # pragma: no cover
            return jsonify({"error": reason_code(exc)}), 500
        return jsonify(record.as_dict())

    @app.get("/v1/recovery/backups")
    def recovery_scan() -> Any:
        return recovery_call(lambda tool: tool.scan())

    @app.post("/v1/recovery/backups/<key>/recover")
    def recovery_recover_one(key: str) -> Any:
        force = request.args.get("force", "false").lower() in {"1", "true", "yes"}
        return recovery_call(lambda tool: tool.recover_one(key, force=force))

    @app.post("/v1/recovery/recover-all")
    def recovery_recover_all() -> Any:
        force = request.args.get("force", "false").lower() in {"1", "true", "yes"}
        return recovery_call(lambda tool: tool.recover_all(force=force))

    @app.delete("/v1/recovery/backups/<key>")
    def recovery_clear(key: str) -> Any:
        return recovery_call(lambda tool: tool.clear(key))

    @app.delete("/v1/recovery/backups")
    def recovery_clear_all() -> Any:
        recovered_only = request.args.get("recovered_only", "false").lower() in {"1", "true", "yes"}
        return recovery_call(lambda tool: tool.clear_all(recovered_only=recovered_only))

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Study flow submission service")
    parser.add_argument("--profile", required=True, help="Path to study flow profile YAML")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8093)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    app = create_app(args.profile)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
