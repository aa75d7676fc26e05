"""Study flow orchestration, checkpointing and failsafe submission."""

from .checkpoints import CheckpointStore
from .config import StudyFlowProfile
from .contracts import FlowSession, QuestionResponse, Stage, build_submission_payload
from .emergency import EmergencyStore
from .orchestrator import FlowOrchestrator
from .pipeline import SubmissionPipeline, SubmissionRecord
from .recovery import RecoveryTool
from .retry import RetryExecutor, RetryPolicy
from .schema import SubmissionValidator

__all__ = [
    "CheckpointStore",
    "EmergencyStore",
    "FlowOrchestrator",
    "FlowSession",
    "QuestionResponse",
    "RecoveryTool",
    "RetryExecutor",
    "RetryPolicy",
    "Stage",
    "StudyFlowProfile",
    "SubmissionPipeline",
    "SubmissionRecord",
    "SubmissionValidator",
    "build_submission_payload",
]
