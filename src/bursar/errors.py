"""
Bursar error types.

Every failure belongs to one of four categories so callers know whether
to correct their inputs, correct their credentials, wait, or give up.
A raised error always leaves the contract state unchanged.
"""

from __future__ import annotations

from typing import Optional


class BursarError(Exception):
    """Base error for all Bursar operations."""
    pass


# Input validation errors
class ValidationError(BursarError, ValueError):
    """Malformed input, rejected before any state change."""
    pass


class InvalidAddressError(ValidationError):
    """Address is malformed, zero, or duplicated where it must be unique."""
    pass


class EmptyRecipientListError(ValidationError):
    """A request must name at least one recipient."""
    pass


class TooManyRecipientsError(ValidationError):
    """Recipient list is longer than the per-request maximum."""
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"{count} recipients exceeds limit of {limit}")


class ArrayLengthMismatchError(ValidationError):
    """Parallel arrays have different lengths."""
    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Array length mismatch: {left} != {right}")


class AmountTooLowError(ValidationError):
    """Amount is below the configured minimum."""
    def __init__(self, amount: int, minimum: int):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Amount {amount} is below minimum {minimum}")


class AmountTooHighError(ValidationError):
    """Amount is above the configured maximum."""
    def __init__(self, amount: int, maximum: int):
        self.amount = amount
        self.maximum = maximum
        super().__init__(f"Amount {amount} is above maximum {maximum}")


class InvalidAmountError(ValidationError):
    """Amount must be a positive integer."""
    pass


class DepositAmountTooLowError(AmountTooLowError):
    """Deposit is smaller than the minimum deposit."""
    pass


class InvalidDescriptionError(ValidationError):
    """Description or reason is empty or too long."""
    pass


class InvalidDocumentHashError(ValidationError):
    """Document hash is empty or too long."""
    pass


class InvalidReturnAddressError(InvalidAddressError):
    """Emergency closure needs a non-zero return address."""
    pass


class BatchTooLargeError(ValidationError):
    """Batch has more items than allowed."""
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Batch of {size} exceeds limit of {limit}")


class InsufficientGasError(ValidationError):
    """Envelope gas limit is below the relay floor."""
    def __init__(self, gas: int, minimum: int):
        self.gas = gas
        self.minimum = minimum
        super().__init__(f"Gas {gas} is below minimum {minimum}")


class RequestNotFoundError(ValidationError):
    """No request or closure with that id."""
    pass


class InvalidStatusError(ValidationError):
    """The subject is not in the status this operation needs."""
    pass


class InvalidClosureStatusError(InvalidStatusError):
    """The closure is not in the status this operation needs."""
    pass


class RequestNotAbandonedError(InvalidStatusError):
    """The request has seen activity too recently to be abandoned."""
    pass


class CallFailedError(ValidationError):
    """The relayed call could not be dispatched or raised in the target."""
    pass


class InvalidConfigurationError(ValidationError):
    """A limit, threshold or environment override is out of range."""
    pass


class LastAdminError(ValidationError):
    """The only remaining administrator cannot be revoked."""
    def __init__(self, account: str):
        self.account = account
        super().__init__(f"Cannot revoke the last admin {account}")


# Authorization errors
class AuthorizationError(BursarError):
    """Caller lacks the role, signature, nonce, or commitment required."""
    pass


class UnauthorizedError(AuthorizationError):
    """Caller does not hold the required role."""
    def __init__(self, caller: str, role: str):
        self.caller = caller
        self.role = role
        super().__init__(f"{caller} is missing role {role}")


class UnauthorizedRelayerError(UnauthorizedError):
    """Only registered relayers may claim gas refunds."""
    def __init__(self, caller: str):
        super().__init__(caller, "relayer")


class UnauthorizedApproverError(AuthorizationError):
    """Caller may not act on this request or closure."""
    pass


class DuplicateApproverError(AuthorizationError):
    """The same principal already approved this subject at another step."""
    pass


class DuplicateCommitteeApproverError(DuplicateApproverError):
    """The committee member already filled a seat on this subject."""
    pass


class InvalidCommitmentError(AuthorizationError):
    """No commitment stored, or the revealed preimage does not match it."""
    pass


class RevealTooEarlyError(AuthorizationError):
    """The reveal window has not elapsed since the commitment."""
    def __init__(self, reveal_after: int):
        self.reveal_after = reveal_after
        super().__init__(f"Reveal not allowed until after {reveal_after}")


class InvalidSignatureError(AuthorizationError):
    """Recovered signer does not match the envelope sender."""
    pass


class InvalidNonceError(AuthorizationError):
    """Envelope nonce is not the sender's next expected nonce."""
    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Invalid nonce: expected {expected}, got {actual}")


class InvalidChainIdError(AuthorizationError):
    """Envelope was signed for another chain."""
    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Invalid chain id: expected {expected}, got {actual}")


class ExpiredDeadlineError(AuthorizationError):
    """Envelope deadline has passed."""
    def __init__(self, deadline: int, now: int):
        self.deadline = deadline
        self.now = now
        super().__init__(f"Deadline {deadline} expired at {now}")


class TargetNotWhitelistedError(AuthorizationError):
    """Relay target is not on the whitelist."""
    pass


class ReentrantCallError(AuthorizationError):
    """A token transfer tried to re-enter the contract."""
    pass


# Policy errors
class PolicyError(BursarError):
    """Transient refusal that should succeed later without code changes."""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(message)


class CircuitBreakerActiveError(PolicyError):
    """The circuit breaker refuses this operation."""
    pass


class SingleTransactionLimitError(CircuitBreakerActiveError):
    """Amount exceeds the breaker's single-transaction ceiling."""
    def __init__(self, amount: int, limit: int):
        self.amount = amount
        self.limit = limit
        super().__init__(f"Amount {amount} exceeds single transaction limit {limit}")


class DailyVolumeExceededError(CircuitBreakerActiveError):
    """Amount would push the daily volume past the breaker ceiling."""
    def __init__(self, amount: int, remaining: int, retry_after: Optional[int] = None):
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"Amount {amount} exceeds remaining daily volume {remaining}",
            retry_after=retry_after,
        )


class WithdrawalNotReadyError(PolicyError):
    """Delayed withdrawal is still time-locked."""
    def __init__(self, unlock_time: int, now: int):
        self.unlock_time = unlock_time
        super().__init__(
            f"Withdrawal unlocks at {unlock_time}",
            retry_after=max(unlock_time - now, 0),
        )


class InsufficientAvailableBalanceError(PolicyError):
    """Unlocked balance is smaller than the requested amount."""
    def __init__(self, amount: int, available: int):
        self.amount = amount
        self.available = available
        super().__init__(f"Amount {amount} exceeds available balance {available}")


class InsufficientFundsError(PolicyError):
    """Holder does not have enough balance for the transfer."""
    pass


class MaxLockedPercentageExceededError(PolicyError):
    """Too large a share of the balance would be locked."""
    pass


class TooManyActiveRequestsError(PolicyError):
    """The project already has the maximum number of open requests."""
    pass


class RateLimitExceededError(PolicyError):
    """Sender exceeded the relay's per-window transaction limit."""
    pass


class TargetCallLimitExceededError(PolicyError):
    """Target reached its cumulative relayed call ceiling."""
    pass


class GasPriceTooHighError(PolicyError):
    """Claimed gas price is above the refund ceiling."""
    def __init__(self, gas_price: int, ceiling: int):
        self.gas_price = gas_price
        self.ceiling = ceiling
        super().__init__(f"Gas price {gas_price} exceeds ceiling {ceiling}")


class TransactionLimitExceededError(PolicyError):
    """Refund cost exceeds the per-transaction cap, balance, or daily allowance."""
    pass


class InsufficientCreditError(PolicyError):
    """Withdrawal exceeds the gas credit balance."""
    pass


class PausedError(PolicyError):
    """Contract is paused by an administrator."""
    pass


class ActiveClosureExistsError(PolicyError):
    """Another emergency closure is still open."""
    pass


# Terminal errors
class TerminalError(BursarError):
    """Permanent condition with no retry path."""
    pass


class ContractFrozenError(TerminalError):
    """Emergency closure executed; the contract accepts no more changes."""
    pass


class AuditChainBrokenError(TerminalError, RuntimeError):
    """Audit trail failed hash-chain verification."""
    def __init__(self, line_no: int, detail: str):
        self.line_no = line_no
        super().__init__(f"Audit chain broken at line {line_no}: {detail}")
