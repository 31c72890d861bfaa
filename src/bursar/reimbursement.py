"""
Reimbursement request state machine.

A project contract holds a custodial token balance and releases it only
after a request climbs the approval ladder:

    Pending -> SecretaryApproved -> CommitteeApproved -> FinanceApproved
      -> (three additional committee approvals) -> director
      -> Distributed | PendingWithdrawal -> Distributed

Every approval is the reveal half of a commit-reveal pair. Funds are
reserved when the request is created, so ``available_balance`` always
equals ``total_balance - locked_amount``. A circuit breaker guards
creation and every outflow, and large payouts wait behind an amount-tiered
withdrawal delay. The emergency closure workflow can drain and freeze the
project at any time.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .access import Role, RoleTable
from .addresses import ZERO_ADDRESS, normalize_address
from .audit import EventType
from .chain import Chain, Contract, relayable
from .circuit_breaker import CircuitBreaker
from .closure import ClosureRequest, EmergencyClosureWorkflow
from .commit_reveal import CommitRevealBook
from .config import ProjectConfig
from .errors import (
    AmountTooHighError,
    AmountTooLowError,
    ArrayLengthMismatchError,
    ContractFrozenError,
    DepositAmountTooLowError,
    DuplicateApproverError,
    DuplicateCommitteeApproverError,
    EmptyRecipientListError,
    InsufficientAvailableBalanceError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidDescriptionError,
    InvalidDocumentHashError,
    InvalidStatusError,
    MaxLockedPercentageExceededError,
    PausedError,
    ReentrantCallError,
    RequestNotAbandonedError,
    RequestNotFoundError,
    TooManyActiveRequestsError,
    TooManyRecipientsError,
    UnauthorizedApproverError,
    WithdrawalNotReadyError,
)
from .token import InMemoryBalanceLedger
from .units import format_tokens

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    PENDING = "pending"
    SECRETARY_APPROVED = "secretary_approved"
    COMMITTEE_APPROVED = "committee_approved"
    FINANCE_APPROVED = "finance_approved"
    PENDING_WITHDRAWAL = "pending_withdrawal"
    DISTRIBUTED = "distributed"
    CANCELLED = "cancelled"


FINAL_STATUSES = frozenset({RequestStatus.DISTRIBUTED, RequestStatus.CANCELLED})

# Ladder position, used to check that status only moves forward.
LADDER = (
    RequestStatus.PENDING,
    RequestStatus.SECRETARY_APPROVED,
    RequestStatus.COMMITTEE_APPROVED,
    RequestStatus.FINANCE_APPROVED,
    RequestStatus.PENDING_WITHDRAWAL,
    RequestStatus.DISTRIBUTED,
)


class ApprovalStep(str, Enum):
    SECRETARY = "secretary"
    COMMITTEE = "committee"
    FINANCE = "finance"
    COMMITTEE_ADDITIONAL = "committee_additional"
    DIRECTOR = "director"


STEP_ROLES = {
    ApprovalStep.SECRETARY: Role.SECRETARY,
    ApprovalStep.COMMITTEE: Role.COMMITTEE,
    ApprovalStep.FINANCE: Role.FINANCE,
    ApprovalStep.COMMITTEE_ADDITIONAL: Role.COMMITTEE,
    ApprovalStep.DIRECTOR: Role.DIRECTOR,
}

STEP_REQUIRED_STATUS = {
    ApprovalStep.SECRETARY: RequestStatus.PENDING,
    ApprovalStep.COMMITTEE: RequestStatus.SECRETARY_APPROVED,
    ApprovalStep.FINANCE: RequestStatus.COMMITTEE_APPROVED,
    ApprovalStep.COMMITTEE_ADDITIONAL: RequestStatus.FINANCE_APPROVED,
    ApprovalStep.DIRECTOR: RequestStatus.FINANCE_APPROVED,
}

APPROVER_ROLES = (Role.SECRETARY, Role.COMMITTEE, Role.FINANCE, Role.DIRECTOR)

# Grants of these roles feed the circuit breaker's churn counter; revokes do not.
CRITICAL_ROLES = frozenset({Role.ADMIN})


@dataclass
class ReimbursementRequest:
    """A request to pay one or more recipients out of the project balance."""

    request_id: int
    requester: str
    recipients: list[str]
    amounts: list[int]
    total_amount: int
    description: str
    document_hash: str
    created_at: int
    updated_at: int
    status: RequestStatus = RequestStatus.PENDING
    locked_amount: int = 0
    secretary_approver: Optional[str] = None
    committee_approver: Optional[str] = None
    finance_approver: Optional[str] = None
    additional_committee_approvers: list[str] = field(default_factory=list)
    director_approver: Optional[str] = None
    withdrawal_unlock_time: int = 0

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def approvers(self) -> list[str]:
        """Every address that has approved this request, at any step."""
        singles = [
            self.secretary_approver,
            self.committee_approver,
            self.finance_approver,
            self.director_approver,
        ]
        return [a for a in singles if a] + list(self.additional_committee_approvers)

    def to_dict(self) -> dict:
        d = copy.deepcopy(self.__dict__)
        d["status"] = self.status.value
        return d


class ReimbursementProject(Contract):
    """Custodial project balance released through the approval ladder."""

    def __init__(
        self,
        chain: Chain,
        token: InMemoryBalanceLedger,
        admin: str,
        project_id: str = "project",
        config: Optional[ProjectConfig] = None,
        events=None,
    ):
        super().__init__(chain, events)
        self.project_id = project_id
        self.token = token
        self.config = config or ProjectConfig()
        self.roles = RoleTable(admin)
        self.roles.add_listener(self._on_role_change)
        self.approvals = CommitRevealBook(chain.chain_id, self.config.reveal_window)
        self.circuit_breaker = CircuitBreaker(self.config.circuit_breaker)
        self.closure = EmergencyClosureWorkflow(self)
        self.paused = False
        self.frozen = False

        self._requests: dict[int, ReimbursementRequest] = {}
        self._next_request_id = 0
        self._locked = 0
        self._active_ids: list[int] = []
        self._entered = False

    # Balances

    @property
    def total_balance(self) -> int:
        return self.token.balance_of(self.address)

    @property
    def locked_amount(self) -> int:
        return self._locked

    @property
    def available_balance(self) -> int:
        return self.total_balance - self._locked

    def needs_deposit(self) -> bool:
        """True when the unlocked balance cannot fund even a minimum request."""
        return self.available_balance < self.config.min_amount

    @relayable
    def deposit(self, caller: str, amount: int) -> None:
        """Pull ``amount`` tokens from ``caller``; the caller must have approved the project."""
        self._ensure_operational()
        if amount < self.config.min_deposit:
            raise DepositAmountTooLowError(amount, self.config.min_deposit)
        depositor = normalize_address(caller)
        display = format_tokens(amount)
        with self._non_reentrant():
            self.token.transfer_from(self.address, depositor, self.address, amount)
        logger.info("Project %s received deposit of %s from %s", self.project_id, display, depositor)
        self._emit(EventType.DEPOSIT_RECEIVED, actor=depositor, amount=amount)

    # Request creation

    @relayable
    def create_request(
        self,
        caller: str,
        recipient: str,
        amount: int,
        description: str,
        document_hash: str,
    ) -> int:
        return self.create_request_multiple(caller, [recipient], [amount], description, document_hash)

    @relayable
    def create_request_multiple(
        self,
        caller: str,
        recipients: list[str],
        amounts: list[int],
        description: str,
        document_hash: str,
    ) -> int:
        """Validate and record a request, reserving its total immediately."""
        self._ensure_operational()
        self.roles.require(caller, Role.REQUESTER)
        now = self.now()
        self.circuit_breaker.ensure_not_tripped(now)
        recipients, amounts, total = self._validate_request(
            recipients, amounts, description, document_hash
        )
        self.circuit_breaker.check_single(total)
        if len(self._active_ids) >= self.config.max_active_requests:
            raise TooManyActiveRequestsError(
                f"Project already has {len(self._active_ids)} active requests"
            )
        available = self.available_balance
        if total > available:
            raise InsufficientAvailableBalanceError(total, available)
        if (self._locked + total) * 100 > self.total_balance * self.config.max_locked_percentage:
            raise MaxLockedPercentageExceededError(
                f"Locking {total} would exceed {self.config.max_locked_percentage}% of the balance"
            )

        request_id = self._next_request_id
        self._next_request_id += 1
        request = ReimbursementRequest(
            request_id=request_id,
            requester=normalize_address(caller),
            recipients=recipients,
            amounts=amounts,
            total_amount=total,
            description=description,
            document_hash=document_hash,
            created_at=now,
            updated_at=now,
            locked_amount=total,
        )
        self._requests[request_id] = request
        self._locked += total
        self._active_ids.append(request_id)

        logger.info(
            "Request %s created by %s for %s across %s recipients",
            request_id, request.requester, format_tokens(total), len(recipients),
        )
        self._emit(
            EventType.REQUEST_CREATED,
            subject_id=request_id,
            actor=request.requester,
            amount=total,
            details={"recipients": recipients, "document_hash": document_hash},
        )
        return request_id

    def _validate_request(
        self,
        recipients: list[str],
        amounts: list[int],
        description: str,
        document_hash: str,
    ) -> tuple[list[str], list[int], int]:
        cfg = self.config
        if not recipients:
            raise EmptyRecipientListError("At least one recipient is required")
        if len(recipients) > cfg.max_recipients:
            raise TooManyRecipientsError(len(recipients), cfg.max_recipients)
        if len(recipients) != len(amounts):
            raise ArrayLengthMismatchError(len(recipients), len(amounts))

        normalized: list[str] = []
        for recipient in recipients:
            addr = normalize_address(recipient)
            if addr == ZERO_ADDRESS:
                raise InvalidAddressError("Recipient cannot be the zero address")
            if addr in normalized:
                raise InvalidAddressError(f"Duplicate recipient {addr}")
            normalized.append(addr)

        total = 0
        for amount in amounts:
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise InvalidAmountError(f"Amount must be an integer, got {amount!r}")
            if amount < cfg.min_amount:
                raise AmountTooLowError(amount, cfg.min_amount)
            if amount > cfg.max_amount:
                raise AmountTooHighError(amount, cfg.max_amount)
            total += amount

        if not description or len(description) > cfg.max_description_length:
            raise InvalidDescriptionError(
                f"Description must be 1-{cfg.max_description_length} characters"
            )
        if not document_hash or len(document_hash) > cfg.max_document_hash_length:
            raise InvalidDocumentHashError(
                f"Document hash must be 1-{cfg.max_document_hash_length} characters"
            )
        return normalized, list(amounts), total

    # Approvals

    @relayable
    def commit_approval(self, caller: str, request_id: int, commitment: str) -> None:
        """Record the hidden approval intent of any approver."""
        self._ensure_operational()
        self.roles.require_any(caller, APPROVER_ROLES)
        request = self._get(request_id)
        if request.is_final or request.status is RequestStatus.PENDING_WITHDRAWAL:
            raise InvalidStatusError(f"Request {request_id} is {request.status.value}")
        self.approvals.commit(request_id, caller, commitment, self.now())
        self._emit(
            EventType.APPROVAL_COMMITTED,
            subject_id=request_id,
            actor=normalize_address(caller),
        )

    @relayable
    def approve_by_secretary(self, caller: str, request_id: int, nonce: int) -> RequestStatus:
        return self._reveal_approval(ApprovalStep.SECRETARY, caller, request_id, nonce)

    @relayable
    def approve_by_committee(self, caller: str, request_id: int, nonce: int) -> RequestStatus:
        return self._reveal_approval(ApprovalStep.COMMITTEE, caller, request_id, nonce)

    @relayable
    def approve_by_finance(self, caller: str, request_id: int, nonce: int) -> RequestStatus:
        return self._reveal_approval(ApprovalStep.FINANCE, caller, request_id, nonce)

    @relayable
    def approve_by_committee_additional(self, caller: str, request_id: int, nonce: int) -> RequestStatus:
        return self._reveal_approval(ApprovalStep.COMMITTEE_ADDITIONAL, caller, request_id, nonce)

    @relayable
    def approve_by_director(self, caller: str, request_id: int, nonce: int) -> RequestStatus:
        return self._reveal_approval(ApprovalStep.DIRECTOR, caller, request_id, nonce)

    def _reveal_approval(
        self,
        step: ApprovalStep,
        caller: str,
        request_id: int,
        nonce: int,
    ) -> RequestStatus:
        self._ensure_operational()
        self.roles.require(caller, STEP_ROLES[step])
        request = self._get(request_id)
        now = self.now()
        self.approvals.verify(request_id, caller, nonce, now)
        self._check_step(step, request, caller)
        self.approvals.consume(request_id, caller)

        approver = normalize_address(caller)
        request.updated_at = now
        if step is ApprovalStep.SECRETARY:
            request.secretary_approver = approver
            request.status = RequestStatus.SECRETARY_APPROVED
        elif step is ApprovalStep.COMMITTEE:
            request.committee_approver = approver
            request.status = RequestStatus.COMMITTEE_APPROVED
        elif step is ApprovalStep.FINANCE:
            request.finance_approver = approver
            request.status = RequestStatus.FINANCE_APPROVED
        elif step is ApprovalStep.COMMITTEE_ADDITIONAL:
            request.additional_committee_approvers.append(approver)
        else:
            request.director_approver = approver

        logger.info("Request %s approved at %s step by %s", request_id, step.value, approver)
        self._emit(
            EventType.REQUEST_APPROVED,
            subject_id=request_id,
            actor=approver,
            details={"step": step.value, "status": request.status.value},
        )
        if step is ApprovalStep.DIRECTOR:
            self._release(request, now)
        return request.status

    def _check_step(self, step: ApprovalStep, request: ReimbursementRequest, caller: str) -> None:
        required_status = STEP_REQUIRED_STATUS[step]
        if request.status is not required_status:
            raise InvalidStatusError(
                f"Request {request.request_id} is {request.status.value}; "
                f"{step.value} approval needs {required_status.value}"
            )
        approver = normalize_address(caller)
        seats = self.config.required_additional_approvers
        extra = request.additional_committee_approvers
        if step is ApprovalStep.COMMITTEE_ADDITIONAL:
            if len(extra) >= seats:
                raise InvalidStatusError(
                    f"Request {request.request_id} already has {seats} additional committee approvals"
                )
            if approver in extra or approver == request.committee_approver:
                raise DuplicateCommitteeApproverError(
                    f"{approver} already approved request {request.request_id} for the committee"
                )
        if step is ApprovalStep.DIRECTOR:
            if len(extra) < seats:
                raise InvalidStatusError(
                    f"Request {request.request_id} has {len(extra)} of {seats} additional committee approvals"
                )
            if request.locked_amount != request.total_amount or self.total_balance < request.total_amount:
                raise InsufficientAvailableBalanceError(request.total_amount, request.locked_amount)
        if approver in request.approvers():
            raise DuplicateApproverError(
                f"{approver} already approved request {request.request_id} at another step"
            )

    # Release of funds

    def _release(self, request: ReimbursementRequest, now: int) -> None:
        delay = self.config.withdrawal.delay_for(request.total_amount)
        if delay == 0 and self.circuit_breaker.admits_outflow(request.total_amount, now):
            self._distribute(request, now)
            return
        request.status = RequestStatus.PENDING_WITHDRAWAL
        request.withdrawal_unlock_time = now + delay
        logger.info(
            "Request %s queued for withdrawal at %s", request.request_id, request.withdrawal_unlock_time
        )
        self._emit(
            EventType.WITHDRAWAL_QUEUED,
            subject_id=request.request_id,
            amount=request.total_amount,
            details={
                "unlock_time": request.withdrawal_unlock_time,
                "tier": self.config.withdrawal.tier_for(request.total_amount).value,
            },
        )

    @relayable
    def execute_delayed_withdrawal(self, caller: str, request_id: int) -> None:
        """Pay out a queued request once its delay has elapsed. Anyone may call."""
        self._ensure_operational()
        request = self._get(request_id)
        if request.status is not RequestStatus.PENDING_WITHDRAWAL:
            raise InvalidStatusError(f"Request {request_id} is {request.status.value}")
        now = self.now()
        if now < request.withdrawal_unlock_time:
            raise WithdrawalNotReadyError(request.withdrawal_unlock_time, now)
        self.circuit_breaker.check_outflow(request.total_amount, now)
        self._distribute(request, now, executor=normalize_address(caller))

    def _distribute(self, request: ReimbursementRequest, now: int, executor: Optional[str] = None) -> None:
        with self._non_reentrant():
            self.circuit_breaker.record_outflow(request.total_amount, now)
            self._locked -= request.locked_amount
            request.locked_amount = 0
            request.status = RequestStatus.DISTRIBUTED
            request.updated_at = now
            self._deactivate(request)
            self.approvals.clear_subject(request.request_id)
            for recipient, amount in zip(request.recipients, request.amounts):
                self.token.transfer(self.address, recipient, amount)

        logger.info("Request %s distributed: %s", request.request_id, format_tokens(request.total_amount))
        self._emit(
            EventType.FUNDS_DISTRIBUTED,
            subject_id=request.request_id,
            actor=executor,
            amount=request.total_amount,
            details={"recipients": request.recipients, "amounts": request.amounts},
        )

    # Cancellation

    @relayable
    def cancel_request(self, caller: str, request_id: int) -> None:
        self._ensure_operational()
        request = self._get(request_id)
        if normalize_address(caller) != request.requester:
            raise UnauthorizedApproverError(f"Only the requester may cancel request {request_id}")
        if request.is_final:
            raise InvalidStatusError(f"Request {request_id} is {request.status.value}")
        self._cancel(request, normalize_address(caller), "cancelled by requester")

    def is_request_abandoned(self, request_id: int) -> bool:
        request = self._get(request_id)
        if request.is_final or request.status is RequestStatus.PENDING_WITHDRAWAL:
            return False
        return self.now() > request.updated_at + self.config.abandonment_period

    @relayable
    def cancel_abandoned_request(self, caller: str, request_id: int) -> None:
        """Release the reservation of a request nobody has touched for the abandonment period."""
        self._ensure_operational()
        if not self.is_request_abandoned(request_id):
            raise RequestNotAbandonedError(f"Request {request_id} is not abandoned")
        self._cancel(self._requests[request_id], normalize_address(caller), "abandoned")

    def _cancel(self, request: ReimbursementRequest, actor: str, reason: str) -> None:
        self._locked -= request.locked_amount
        request.locked_amount = 0
        request.status = RequestStatus.CANCELLED
        request.updated_at = self.now()
        self._deactivate(request)
        self.approvals.clear_subject(request.request_id)
        logger.info("Request %s cancelled (%s)", request.request_id, reason)
        self._emit(
            EventType.REQUEST_CANCELLED,
            subject_id=request.request_id,
            actor=actor,
            amount=request.total_amount,
            reason=reason,
        )

    # Views

    def get_request(self, request_id: int) -> ReimbursementRequest:
        return copy.deepcopy(self._get(request_id))

    def get_active_requests(self) -> list[int]:
        return list(self._active_ids)

    def get_user_active_requests(self, user: str) -> list[int]:
        addr = normalize_address(user)
        return [rid for rid in self._active_ids if self._requests[rid].requester == addr]

    def get_committee_additional_approvers(self, request_id: int) -> list[str]:
        return list(self._get(request_id).additional_committee_approvers)

    def circuit_breaker_status(self) -> dict:
        return self.circuit_breaker.status(self.now())

    # Administration

    def grant_role(self, caller: str, role: Role, account: str) -> bool:
        self._ensure_not_frozen()
        return self.roles.grant_role(caller, role, account)

    def revoke_role(self, caller: str, role: Role, account: str) -> bool:
        self._ensure_not_frozen()
        return self.roles.revoke_role(caller, role, account)

    def pause(self, caller: str) -> None:
        self._ensure_not_frozen()
        self.roles.require(caller, Role.ADMIN)
        self.paused = True
        logger.warning("Project %s paused by %s", self.project_id, normalize_address(caller))

    def unpause(self, caller: str) -> None:
        self._ensure_not_frozen()
        self.roles.require(caller, Role.ADMIN)
        self.paused = False
        logger.info("Project %s unpaused", self.project_id)

    def trigger_circuit_breaker(self, caller: str, reason: str) -> None:
        self._ensure_not_frozen()
        self.roles.require(caller, Role.ADMIN)
        self.circuit_breaker.trip(reason or "manual", self.now())
        self._emit(EventType.CIRCUIT_BREAKER_TRIPPED, actor=normalize_address(caller), reason=reason)

    def reset_circuit_breaker(self, caller: str) -> None:
        self._ensure_not_frozen()
        self.roles.require(caller, Role.ADMIN)
        self.circuit_breaker.reset()
        self._emit(EventType.CIRCUIT_BREAKER_RESET, actor=normalize_address(caller))

    def update_circuit_breaker(self, caller: str, max_daily_volume: int, max_single_tx_amount: int) -> None:
        self._ensure_not_frozen()
        self.roles.require(caller, Role.ADMIN)
        self.circuit_breaker.update_limits(max_daily_volume, max_single_tx_amount)

    def _on_role_change(self, role: Role, account: str, granted: bool) -> None:
        if not granted or role not in CRITICAL_ROLES:
            return
        if self.circuit_breaker.record_role_change(self.now()):
            self._emit(
                EventType.CIRCUIT_BREAKER_TRIPPED,
                actor=account,
                reason=self.circuit_breaker.state.trip_reason,
            )

    # Emergency closure

    @relayable
    def initiate_emergency_closure(self, caller: str, return_address: str, reason: str) -> int:
        return self.closure.initiate(caller, return_address, reason)

    @relayable
    def commit_closure_approval(self, caller: str, closure_id: int, commitment: str) -> None:
        self.closure.commit_approval(caller, closure_id, commitment)

    @relayable
    def approve_emergency_closure(self, caller: str, closure_id: int, nonce: int):
        return self.closure.approve(caller, closure_id, nonce)

    @relayable
    def cancel_emergency_closure(self, caller: str, closure_id: int) -> None:
        self.closure.cancel(caller, closure_id)

    def get_closure_request(self, closure_id: int) -> ClosureRequest:
        return self.closure.get(closure_id)

    def get_closure_committee_approvers(self, closure_id: int) -> list[str]:
        return self.closure.committee_approvers(closure_id)

    def has_enough_closure_committee_approvers(self, closure_id: int) -> bool:
        return self.closure.has_enough_committee_approvers(closure_id)

    @property
    def active_closure_id(self) -> Optional[int]:
        return self.closure.active_closure_id

    def _drain_to(self, return_address: str) -> int:
        """Send the whole balance to ``return_address`` and freeze the project."""
        amount = self.total_balance
        with self._non_reentrant():
            self.frozen = True
            self._locked = 0
            for request_id in self._active_ids:
                self._requests[request_id].locked_amount = 0
            if amount > 0:
                self.token.transfer(self.address, return_address, amount)
        logger.warning(
            "Project %s frozen; %s returned to %s", self.project_id, amount, return_address
        )
        return amount

    # Guards

    def _get(self, request_id: int) -> ReimbursementRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        return request

    def _deactivate(self, request: ReimbursementRequest) -> None:
        if request.request_id in self._active_ids:
            self._active_ids.remove(request.request_id)

    def _ensure_idle(self) -> None:
        if self._entered:
            raise ReentrantCallError("Reentrant call into project rejected")

    def _ensure_not_frozen(self) -> None:
        self._ensure_idle()
        if self.frozen:
            raise ContractFrozenError(f"Project {self.project_id} was closed by emergency closure")

    def _ensure_operational(self) -> None:
        self._ensure_not_frozen()
        if self.paused:
            raise PausedError(f"Project {self.project_id} is paused")

    @contextmanager
    def _non_reentrant(self):
        self._ensure_idle()
        self._entered = True
        try:
            yield
        finally:
            self._entered = False
