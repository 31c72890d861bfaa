"""
Bursar: sponsored-fee reimbursement custody.

Multi-party, commit-reveal approvals guard a custodial balance:
Requester asks → five approval steps reveal → funds leave, maybe after a delay.
Every step can be relayed gaslessly and paid for out of prepaid gas credit.
"""

__version__ = "0.1.0"

from .access import Role, RoleTable
from .audit import AuditTrail, EventType
from .chain import Chain, Contract, relayable
from .circuit_breaker import CircuitBreaker
from .clock import ManualClock, SystemClock
from .closure import ClosureRequest, ClosureStatus, EmergencyClosureWorkflow
from .commit_reveal import REVEAL_WINDOW, CommitRevealBook, compute_commitment, new_nonce
from .config import CircuitBreakerConfig, GasTankConfig, ProjectConfig, RelayConfig
from .envelope import ForwardRequest, encode_call, sign_forward_request, verify_forward_request
from .gas_tank import GasCredit, GasCreditLedger, RefundClaim, RelayerStats
from .relay import ExecutionResult, MetaTxRelay
from .relayer import RelayReceipt, SponsoredRelayer
from .reimbursement import ReimbursementProject, ReimbursementRequest, RequestStatus
from .token import InMemoryBalanceLedger
from .withdrawal import WithdrawalDelayPolicy, WithdrawalTier

__all__ = [
    "Role", "RoleTable", "AuditTrail", "EventType",
    "Chain", "Contract", "relayable", "ManualClock", "SystemClock",
    "CircuitBreaker", "CircuitBreakerConfig", "GasTankConfig", "ProjectConfig", "RelayConfig",
    "REVEAL_WINDOW", "CommitRevealBook", "compute_commitment", "new_nonce",
    "ReimbursementProject", "ReimbursementRequest", "RequestStatus",
    "ClosureRequest", "ClosureStatus", "EmergencyClosureWorkflow",
    "ForwardRequest", "encode_call", "sign_forward_request", "verify_forward_request",
    "MetaTxRelay", "ExecutionResult", "SponsoredRelayer", "RelayReceipt",
    "GasCreditLedger", "GasCredit", "RelayerStats", "RefundClaim",
    "InMemoryBalanceLedger", "WithdrawalDelayPolicy", "WithdrawalTier",
]
