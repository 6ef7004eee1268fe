"""
Update pipeline.

- Participant contract and registry
- Reference participants: snapshot, git source sync, container redeploy
- Orchestrator state machine with automatic rollback
- Update history
"""

from selfupdate.updates.docker_participant import ContainerRedeployParticipant
from selfupdate.updates.git_participant import SourceSyncParticipant
from selfupdate.updates.history import HistoryEntry, UpdateHistory
from selfupdate.updates.models import (
    CheckSummary,
    ErrorDetail,
    PipelineResult,
    RollbackOutcome,
    RollbackResult,
    UpdateInfo,
    UpdateOptions,
    UpdateResult,
)
from selfupdate.updates.participant import UpdateParticipant
from selfupdate.updates.registry import ParticipantRegistry, build_participants
from selfupdate.updates.snapshot_participant import SnapshotParticipant
from selfupdate.updates.state_machine import PipelineState, UpdateOrchestrator

__all__ = [
    # Contract
    "UpdateParticipant",
    "ParticipantRegistry",
    "build_participants",
    # Participants
    "SnapshotParticipant",
    "SourceSyncParticipant",
    "ContainerRedeployParticipant",
    # Orchestrator
    "UpdateOrchestrator",
    "PipelineState",
    # Models
    "UpdateOptions",
    "UpdateInfo",
    "UpdateResult",
    "CheckSummary",
    "ErrorDetail",
    "PipelineResult",
    "RollbackOutcome",
    "RollbackResult",
    # History
    "HistoryEntry",
    "UpdateHistory",
]
