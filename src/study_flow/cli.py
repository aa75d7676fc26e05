"""Operator CLI for emergency backup recovery."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Sequence

from .config import StudyFlowProfile
from .errors import StudyFlowError
from .logging_utils import configure_logging
from .pipeline import SubmissionPipeline
from .recovery import RecoveryTool


TOKEN_ENV = "STUDY_FLOW_RECOVERY_TOKEN"


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Study flow emergency backup recovery")
    parser.add_argument("--profile", required=True, help="Path to study flow profile YAML")
    parser.add_argument("--token", help=f"Recovery token (defaults to ${TOKEN_ENV})")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--scan", action="store_true", help="List emergency backups")
    action.add_argument("--recover", metavar="KEY", help="Replay one backup by key")
    action.add_argument("--recover-all", action="store_true", help="Replay every backup")
    action.add_argument("--clear", metavar="KEY", help="Delete one backup without replay")
    action.add_argument("--clear-all", action="store_true", help="Delete all backups without replay")
    parser.add_argument("--force", action="store_true", help="Replay backups already marked recovered")
    parser.add_argument("--recovered-only", action="store_true", help="With --clear-all, keep pending backups")
    args = parser.parse_args(argv)

    profile = StudyFlowProfile.load(Path(args.profile))
    configure_logging(logging.INFO, profile.log_paths)
    pipeline = SubmissionPipeline.build(profile)
    token = args.token or os.getenv(TOKEN_ENV)
    try:
        tool = RecoveryTool(pipeline.emergency, pipeline, shared_secret=profile.recovery_secret, token=token)
        if args.scan:
            result = tool.scan()
        elif args.recover:
            result = tool.recover_one(args.recover, force=args.force)
        elif args.recover_all:
            result = tool.recover_all(force=args.force)
        elif args.clear:
            result = tool.clear(args.clear)
        else:
            result = tool.clear_all(recovered_only=args.recovered_only)
    except StudyFlowError as exc:
        print(json.dumps({"error": exc.code, "detail": exc.detail}, ensure_ascii=True))
        raise SystemExit(1) from exc
    print(json.dumps(result.as_dict(), ensure_ascii=True))


if __name__ == "__main__":
    main()
