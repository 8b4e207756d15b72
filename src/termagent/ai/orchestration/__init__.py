"""Turn orchestration: stream assembly, context budgeting, approval, and the tool loop."""

from .approval import ApprovalDecision, ApprovalGate, ApprovalRequest, parse_response
from .context_budget import Budget, BudgetResult, ContextBudgetManager
from .orchestrator import (
    ConversationOrchestrator,
    OrchestratorConfig,
    TurnCallbacks,
    TurnOutcome,
    TurnState,
)
from .stream_assembler import AssembledResponse, StreamingResponseAssembler

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRequest",
    "AssembledResponse",
    "Budget",
    "BudgetResult",
    "ContextBudgetManager",
    "ConversationOrchestrator",
    "OrchestratorConfig",
    "StreamingResponseAssembler",
    "TurnCallbacks",
    "TurnOutcome",
    "TurnState",
    "parse_response",
]
