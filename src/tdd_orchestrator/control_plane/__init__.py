"""Control-plane public API."""

from tdd_orchestrator.control_plane.actors import (
    ActorError,
    ActorTimeoutError,
    ChangeRequest,
    ChangeResult,
    CodeChangeActor,
    CommandCodeChangeActor,
    CommandReviewActor,
    ReviewActor,
)
from tdd_orchestrator.control_plane.driver import (
    PhaseDriver,
    ProjectSettings,
    ProjectSignalSource,
    SignalSource,
    project_source_factory,
)
from tdd_orchestrator.control_plane.escalation import EscalationPolicy, PolicyDecision, decide
from tdd_orchestrator.control_plane.phase_machine import (
    MachineSettings,
    PhaseStateMachine,
    PhaseTransitionError,
    TransitionOutcome,
)
from tdd_orchestrator.control_plane.scheduler import (
    AttentionWindowScheduler,
    Checkpoint,
    RunnerResult,
    SchedulerSettings,
    select_next,
)

__all__ = [
    "ActorError",
    "ActorTimeoutError",
    "AttentionWindowScheduler",
    "ChangeRequest",
    "ChangeResult",
    "Checkpoint",
    "CodeChangeActor",
    "CommandCodeChangeActor",
    "CommandReviewActor",
    "EscalationPolicy",
    "MachineSettings",
    "PhaseDriver",
    "PhaseStateMachine",
    "PhaseTransitionError",
    "PolicyDecision",
    "ProjectSettings",
    "ProjectSignalSource",
    "ReviewActor",
    "RunnerResult",
    "SchedulerSettings",
    "SignalSource",
    "TransitionOutcome",
    "decide",
    "project_source_factory",
    "select_next",
]
