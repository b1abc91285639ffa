"""
Cashier — Policy-gated micro-payments for unattended agents.

Every order is scored by a weighted rule engine, then passed through
signed Reception → Approval → Payment stages that enforce per-order,
rolling-window and frequency limits.
"""

__version__ = "0.1.0"

from .config import PolicyConfig
from .errors import (
    AuditIntegrityError,
    CashierError,
    ExecutionError,
    IllegalTransitionError,
    LedgerError,
    PipelineIntegrityError,
    PolicyViolation,
    RateLimitExceeded,
    SigningError,
    SystemUnavailableError,
    ValidationError,
)
from .models import (
    Intent,
    Order,
    OrderRequest,
    OrderResponse,
    OrderStatus,
    PipelineRun,
    StageOutcome,
    StageRecord,
    StageRole,
)
from .decision import Decision, DecisionContext, DecisionEngine, DecisionResult, RiskTier
from .ledger import OrderFrequencyTracker, SpendLedger
from .store import InMemoryPolicyStore, PolicyStore
from .signing import EthAccountAttestationSigner, verify_attestation
from .settlement import DryRunSettlementExecutor, HttpSettlementExecutor, SettlementResult
from .stages import ApprovalStage, PaymentStage, ReceptionStage
from .orchestrator import PipelineOrchestrator, create_orchestrator
from .audit import AuditEvent, AuditTrail, EventType

__all__ = [
    "PolicyConfig",
    "CashierError", "ValidationError", "PolicyViolation", "RateLimitExceeded",
    "PipelineIntegrityError", "IllegalTransitionError", "ExecutionError",
    "SigningError", "LedgerError", "AuditIntegrityError", "SystemUnavailableError",
    "Intent", "Order", "OrderRequest", "OrderResponse", "OrderStatus",
    "PipelineRun", "StageOutcome", "StageRecord", "StageRole",
    "Decision", "DecisionContext", "DecisionEngine", "DecisionResult", "RiskTier",
    "SpendLedger", "OrderFrequencyTracker", "InMemoryPolicyStore", "PolicyStore",
    "EthAccountAttestationSigner", "verify_attestation",
    "DryRunSettlementExecutor", "HttpSettlementExecutor", "SettlementResult",
    "ReceptionStage", "ApprovalStage", "PaymentStage",
    "PipelineOrchestrator", "create_orchestrator",
    "AuditEvent", "AuditTrail", "EventType",
]
