"""
Kindred Ops Orchestrator
========================

Turns proposals for work into missions of ordered steps, hands the steps
to agents, reacts to events through triggers and recovers stuck work.

Components:
- PolicyStore: Named configuration lookups
- CapGate / AutoApproveEvaluator: Admission gates
- ProposalService: Single admission path for every proposal source
- MissionRepository: Missions, steps and the step state machine
- EventLog: Typed, append-only event stream
- TriggerEvaluator / TriggerRegistry: Event-driven proposals
- ReactionQueueProcessor: Reaction backlog
- StaleRecoverySweeper: Force-fails stuck steps
- HeartbeatCoordinator / HeartbeatScheduler: Periodic driver
- AgentWorker: Claim/execute loop for one agent
"""

from kindred_ops.core.ops.agent import AgentWorker
from kindred_ops.core.ops.events import EventLog, OpsEventType
from kindred_ops.core.ops.gates import AutoApproveEvaluator, CapGate
from kindred_ops.core.ops.heartbeat import HeartbeatCoordinator, HeartbeatReport, HeartbeatScheduler
from kindred_ops.core.ops.missions import MissionRepository, StepOutcome
from kindred_ops.core.ops.policy import PolicyStore
from kindred_ops.core.ops.proposals import AdmissionResult, ProposalService
from kindred_ops.core.ops.reactions import ReactionQueueProcessor
from kindred_ops.core.ops.recovery import StaleRecoverySweeper
from kindred_ops.core.ops.triggers import TriggerEvaluator, TriggerRegistry

__all__ = [
    "AdmissionResult",
    "AgentWorker",
    "AutoApproveEvaluator",
    "CapGate",
    "EventLog",
    "HeartbeatCoordinator",
    "HeartbeatReport",
    "HeartbeatScheduler",
    "MissionRepository",
    "OpsEventType",
    "PolicyStore",
    "ProposalService",
    "ReactionQueueProcessor",
    "StaleRecoverySweeper",
    "StepOutcome",
    "TriggerEvaluator",
    "TriggerRegistry",
]
