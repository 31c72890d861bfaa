"""
Emergency closure workflow.

A committee member or the director opens a closure naming a return address.
Three distinct committee reveals make it fully approved; the director's
reveal then sends the entire project balance to the return address and
freezes the project for good. Pending reimbursement requests are not
waited for.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .access import Role
from .addresses import ZERO_ADDRESS, normalize_address
from .audit import EventType
from .commit_reveal import CommitRevealBook
from .errors import (
    ActiveClosureExistsError,
    DuplicateApproverError,
    DuplicateCommitteeApproverError,
    InvalidAddressError,
    InvalidClosureStatusError,
    InvalidDescriptionError,
    InvalidReturnAddressError,
    RequestNotFoundError,
    UnauthorizedApproverError,
)

if TYPE_CHECKING:
    from .reimbursement import ReimbursementProject

logger = logging.getLogger(__name__)

REQUIRED_CLOSURE_APPROVALS = 3
CLOSURE_ROLES = (Role.COMMITTEE, Role.DIRECTOR)


class ClosureStatus(str, Enum):
    INITIATED = "initiated"
    PARTIALLY_APPROVED = "partially_approved"
    FULLY_APPROVED = "fully_approved"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


@dataclass
class ClosureRequest:
    closure_id: int
    initiator: str
    return_address: str
    reason: str
    created_at: int
    status: ClosureStatus = ClosureStatus.INITIATED
    committee_approvers: list[str] = field(default_factory=list)
    director_approver: Optional[str] = None
    executed_at: int = 0
    returned_amount: int = 0

    @property
    def is_open(self) -> bool:
        return self.status not in (ClosureStatus.EXECUTED, ClosureStatus.CANCELLED)


class EmergencyClosureWorkflow:
    """Closure state machine bound to one project."""

    def __init__(self, project: ReimbursementProject):
        self.project = project
        self.approvals = CommitRevealBook(project.chain_id, project.config.reveal_window)
        self.active_closure_id: Optional[int] = None
        self._closures: dict[int, ClosureRequest] = {}
        self._next_closure_id = 0

    def initiate(self, caller: str, return_address: str, reason: str) -> int:
        project = self.project
        project._ensure_not_frozen()
        project.roles.require_any(caller, CLOSURE_ROLES)
        if self.active_closure_id is not None:
            raise ActiveClosureExistsError(f"Closure {self.active_closure_id} is still open")
        try:
            destination = normalize_address(return_address)
        except InvalidAddressError as exc:
            raise InvalidReturnAddressError(str(exc)) from exc
        if destination == ZERO_ADDRESS:
            raise InvalidReturnAddressError("Return address cannot be the zero address")
        if not reason or len(reason) > project.config.max_description_length:
            raise InvalidDescriptionError(
                f"Reason must be 1-{project.config.max_description_length} characters"
            )

        closure_id = self._next_closure_id
        self._next_closure_id += 1
        closure = ClosureRequest(
            closure_id=closure_id,
            initiator=normalize_address(caller),
            return_address=destination,
            reason=reason,
            created_at=project.now(),
        )
        self._closures[closure_id] = closure
        self.active_closure_id = closure_id
        logger.warning(
            "Emergency closure %s initiated by %s: %s", closure_id, closure.initiator, reason
        )
        project._emit(
            EventType.CLOSURE_INITIATED,
            subject_id=closure_id,
            actor=closure.initiator,
            reason=reason,
            details={"return_address": destination},
        )
        return closure_id

    def commit_approval(self, caller: str, closure_id: int, commitment: str) -> None:
        project = self.project
        project._ensure_not_frozen()
        project.roles.require_any(caller, CLOSURE_ROLES)
        closure = self._get(closure_id)
        if not closure.is_open:
            raise InvalidClosureStatusError(f"Closure {closure_id} is {closure.status.value}")
        self.approvals.commit(closure_id, caller, commitment, project.now())
        project._emit(
            EventType.CLOSURE_COMMITTED,
            subject_id=closure_id,
            actor=normalize_address(caller),
        )

    def approve(self, caller: str, closure_id: int, nonce: int) -> ClosureStatus:
        """Reveal a committee or director approval."""
        project = self.project
        project._ensure_not_frozen()
        project.roles.require_any(caller, CLOSURE_ROLES)
        closure = self._get(closure_id)
        now = project.now()
        self.approvals.verify(closure_id, caller, nonce, now)
        approver = normalize_address(caller)

        if closure.status is ClosureStatus.FULLY_APPROVED:
            project.roles.require(caller, Role.DIRECTOR)
            if approver in closure.committee_approvers:
                raise DuplicateApproverError(
                    f"{approver} already approved closure {closure_id} as committee"
                )
            self.approvals.consume(closure_id, caller)
            self._execute(closure, approver, now)
        elif closure.status in (ClosureStatus.INITIATED, ClosureStatus.PARTIALLY_APPROVED):
            project.roles.require(caller, Role.COMMITTEE)
            if approver in closure.committee_approvers:
                raise DuplicateCommitteeApproverError(
                    f"{approver} already approved closure {closure_id}"
                )
            self.approvals.consume(closure_id, caller)
            closure.committee_approvers.append(approver)
            if len(closure.committee_approvers) >= REQUIRED_CLOSURE_APPROVALS:
                closure.status = ClosureStatus.FULLY_APPROVED
            else:
                closure.status = ClosureStatus.PARTIALLY_APPROVED
            logger.info(
                "Closure %s committee approval %s/%s by %s",
                closure_id, len(closure.committee_approvers), REQUIRED_CLOSURE_APPROVALS, approver,
            )
            project._emit(
                EventType.CLOSURE_APPROVED,
                subject_id=closure_id,
                actor=approver,
                details={"status": closure.status.value},
            )
        else:
            raise InvalidClosureStatusError(f"Closure {closure_id} is {closure.status.value}")
        return closure.status

    def _execute(self, closure: ClosureRequest, director: str, now: int) -> None:
        closure.director_approver = director
        closure.status = ClosureStatus.EXECUTED
        closure.executed_at = now
        self.active_closure_id = None
        self.approvals.clear_subject(closure.closure_id)
        closure.returned_amount = self.project._drain_to(closure.return_address)
        self.project._emit(
            EventType.CLOSURE_EXECUTED,
            subject_id=closure.closure_id,
            actor=director,
            amount=closure.returned_amount,
            details={"return_address": closure.return_address},
        )

    def cancel(self, caller: str, closure_id: int) -> None:
        project = self.project
        project._ensure_idle()
        closure = self._get(closure_id)
        if not closure.is_open:
            raise InvalidClosureStatusError(f"Closure {closure_id} is {closure.status.value}")
        canceller = normalize_address(caller)
        if canceller != closure.initiator and not project.roles.has_role(canceller, Role.ADMIN):
            raise UnauthorizedApproverError(
                f"Only the initiator or an admin may cancel closure {closure_id}"
            )
        closure.status = ClosureStatus.CANCELLED
        self.active_closure_id = None
        self.approvals.clear_subject(closure_id)
        logger.info("Closure %s cancelled by %s", closure_id, canceller)
        project._emit(EventType.CLOSURE_CANCELLED, subject_id=closure_id, actor=canceller)

    # Views

    def get(self, closure_id: int) -> ClosureRequest:
        return copy.deepcopy(self._get(closure_id))

    def committee_approvers(self, closure_id: int) -> list[str]:
        return list(self._get(closure_id).committee_approvers)

    def has_enough_committee_approvers(self, closure_id: int) -> bool:
        return len(self._get(closure_id).committee_approvers) >= REQUIRED_CLOSURE_APPROVALS

    def _get(self, closure_id: int) -> ClosureRequest:
        closure = self._closures.get(closure_id)
        if closure is None:
            raise RequestNotFoundError(f"Closure {closure_id} not found")
        return closure
