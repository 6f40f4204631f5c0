"""Workflow authoring: validation, CRUD lifecycle and prompt audio jobs."""
from workflow.audio_jobs import AudioJob, AudioJobQueue
from workflow.service import WorkflowNotFound, WorkflowService, WorkflowValidationFailed
from workflow.validator import ValidationCode, WorkflowValidator, validate_workflow

__all__ = [
    "WorkflowService", "WorkflowNotFound", "WorkflowValidationFailed",
    "AudioJob", "AudioJobQueue",
    "ValidationCode", "WorkflowValidator", "validate_workflow",
]
