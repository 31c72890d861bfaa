"""
Gas credit ledger.

Users (or sponsors on their behalf) prepay native currency. Registered
relayers claim refunds against a user's credit, bounded by a per-transaction
cap, the remaining balance and a daily allowance. A claim that breaks any
bound is denied outright, never partially paid.

Claims trust the relayer's reported gas used, gas price and transaction
hash; nothing here cross-checks them against the relayed call, and the same
hash may be claimed twice. Limiting who holds the relayer role is the
control.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Optional

from .access import Role, RoleTable
from .addresses import ZERO_ADDRESS, normalize_address
from .audit import EventType
from .chain import Chain, Contract
from .config import GasTankConfig
from .errors import (
    BatchTooLargeError,
    GasPriceTooHighError,
    InsufficientCreditError,
    InvalidAddressError,
    InvalidAmountError,
    PausedError,
    TransactionLimitExceededError,
    UnauthorizedRelayerError,
)

logger = logging.getLogger(__name__)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class GasCredit:
    balance: int = 0
    max_per_transaction: int = 0
    daily_limit: int = 0
    daily_used: int = 0
    daily_reset_at: int = 0
    lifetime_used: int = 0


@dataclass
class RelayerStats:
    transaction_count: int = 0
    total_refunded: int = 0
    last_refund_at: int = 0


@dataclass(frozen=True)
class GasUsage:
    gas_used: int
    gas_price: int
    cost: int
    timestamp: int
    tx_hash: str
    relayer: str


@dataclass(frozen=True)
class RefundClaim:
    user: str
    gas_used: int
    gas_price: int
    tx_hash: str


class GasCreditLedger(Contract):
    """Prepaid gas credit with relayer refunds."""

    def __init__(
        self,
        chain: Chain,
        admin: str,
        config: Optional[GasTankConfig] = None,
        events=None,
    ):
        super().__init__(chain, events)
        self.config = config or GasTankConfig()
        self.roles = RoleTable(admin)
        self.paused = False
        self.total_deposited = 0
        self.total_refunded = 0
        self._credits: dict[str, GasCredit] = {}
        self._relayer_stats: dict[str, RelayerStats] = {}
        self._history: dict[str, deque[GasUsage]] = {}

    # Relayer pool

    def add_relayer(self, caller: str, relayer: str) -> None:
        self.roles.grant_role(caller, Role.RELAYER, relayer)

    def remove_relayer(self, caller: str, relayer: str) -> None:
        self.roles.revoke_role(caller, Role.RELAYER, relayer)

    def is_relayer(self, address: str) -> bool:
        return self.roles.has_role(address, Role.RELAYER)

    # Credit management

    def deposit_gas_credit(self, caller: str, owner: str, amount: int) -> GasCredit:
        """Move ``amount`` native units from ``caller`` into ``owner``'s credit."""
        self._ensure_active()
        if amount <= 0:
            raise InvalidAmountError("Deposit must be > 0")
        beneficiary = normalize_address(owner)
        if beneficiary == ZERO_ADDRESS:
            raise InvalidAddressError("Cannot deposit credit for the zero address")
        self.chain.transfer_native(caller, self.address, amount)

        credit = self._credits.get(beneficiary)
        if credit is None:
            credit = GasCredit(
                max_per_transaction=self.config.default_max_per_transaction,
                daily_limit=self.config.default_daily_limit,
                daily_reset_at=self.now() + self.config.daily_window,
            )
            self._credits[beneficiary] = credit
        credit.balance += amount
        self.total_deposited += amount
        logger.info("Gas credit for %s topped up by %s", beneficiary, amount)
        self._emit(
            EventType.GAS_CREDIT_DEPOSITED,
            actor=normalize_address(caller),
            amount=amount,
            details={"owner": beneficiary},
        )
        return replace(credit)

    def withdraw_gas_credit(self, caller: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError("Withdrawal must be > 0")
        owner = normalize_address(caller)
        credit = self._credits.get(owner)
        balance = credit.balance if credit else 0
        if amount > balance:
            raise InsufficientCreditError(f"Withdrawal {amount} exceeds credit {balance}")
        self.chain.transfer_native(self.address, owner, amount)
        credit.balance -= amount
        self._emit(EventType.GAS_CREDIT_WITHDRAWN, actor=owner, amount=amount)

    def update_gas_credit(
        self,
        caller: str,
        owner: str,
        max_per_transaction: int,
        daily_limit: int,
    ) -> None:
        self.roles.require(caller, Role.ADMIN)
        if max_per_transaction < 0 or daily_limit < 0:
            raise InvalidAmountError("Limits must be >= 0")
        addr = normalize_address(owner)
        credit = self._credits.setdefault(
            addr, GasCredit(daily_reset_at=self.now() + self.config.daily_window)
        )
        credit.max_per_transaction = max_per_transaction
        credit.daily_limit = daily_limit
        logger.info(
            "Gas credit limits for %s: per-tx %s, daily %s", addr, max_per_transaction, daily_limit
        )

    # Refunds

    def request_gas_refund(
        self,
        caller: str,
        user: str,
        gas_used: int,
        gas_price: int,
        tx_hash: str,
    ) -> int:
        """Pay the calling relayer ``gas_used * gas_price`` out of ``user``'s credit."""
        self._ensure_active()
        relayer = self._require_relayer(caller)
        claim = RefundClaim(normalize_address(user), gas_used, gas_price, tx_hash)
        now = self.now()
        cost, daily_used, reset_at = self._check_claim(claim, now)
        # Pay first so a treasury shortfall leaves the books untouched.
        self.chain.transfer_native(self.address, relayer, cost)
        self._apply_refund(relayer, claim, cost, daily_used, reset_at, now)
        return cost

    def batch_request_gas_refund(self, caller: str, claims: list[RefundClaim]) -> list[int]:
        """Validate every claim first; pay all of them or none."""
        self._ensure_active()
        relayer = self._require_relayer(caller)
        if len(claims) > self.config.max_batch_size:
            raise BatchTooLargeError(len(claims), self.config.max_batch_size)
        now = self.now()
        claims = [replace(c, user=normalize_address(c.user)) for c in claims]

        # Validate against a scratch copy so claims on the same user accumulate.
        originals = {c.user: self._credits.get(c.user) for c in claims}
        scratch = {user: replace(credit) for user, credit in originals.items() if credit}
        checked = []
        for claim in claims:
            cost, daily_used, reset_at = self._check_claim(claim, now, scratch.get(claim.user))
            credit = scratch[claim.user]
            credit.balance -= cost
            credit.daily_used = daily_used
            credit.daily_reset_at = reset_at
            checked.append((claim, cost, daily_used, reset_at))

        costs = [cost for _, cost, _, _ in checked]
        total = sum(costs)
        if total:
            self.chain.transfer_native(self.address, relayer, total)
        for claim, cost, daily_used, reset_at in checked:
            self._apply_refund(relayer, claim, cost, daily_used, reset_at, now)
        return costs

    def _check_claim(
        self,
        claim: RefundClaim,
        now: int,
        credit: Optional[GasCredit] = None,
    ) -> tuple[int, int, int]:
        """Return (cost, daily_used after the claim, daily reset time) or raise."""
        if not _is_int(claim.gas_used) or claim.gas_used <= 0:
            raise InvalidAmountError(f"gas_used must be a positive integer, got {claim.gas_used!r}")
        if not _is_int(claim.gas_price) or claim.gas_price < 0:
            raise InvalidAmountError(
                f"gas_price must be a non-negative integer, got {claim.gas_price!r}"
            )
        if claim.gas_price > self.config.max_gas_price:
            raise GasPriceTooHighError(claim.gas_price, self.config.max_gas_price)
        credit = credit or self._credits.get(claim.user)
        if credit is None:
            raise TransactionLimitExceededError(f"{claim.user} has no gas credit")

        daily_used, reset_at = credit.daily_used, credit.daily_reset_at
        if now >= reset_at:
            daily_used, reset_at = 0, now + self.config.daily_window

        cost = claim.gas_used * claim.gas_price
        if cost > credit.max_per_transaction:
            raise TransactionLimitExceededError(
                f"Cost {cost} exceeds per-transaction cap {credit.max_per_transaction}"
            )
        if cost > credit.balance:
            raise TransactionLimitExceededError(f"Cost {cost} exceeds credit balance {credit.balance}")
        remaining_daily = credit.daily_limit - daily_used
        if cost > remaining_daily:
            raise TransactionLimitExceededError(
                f"Cost {cost} exceeds remaining daily allowance {max(remaining_daily, 0)}",
                retry_after=reset_at - now,
            )
        return cost, daily_used + cost, reset_at

    def _apply_refund(
        self,
        relayer: str,
        claim: RefundClaim,
        cost: int,
        daily_used: int,
        reset_at: int,
        now: int,
    ) -> None:
        credit = self._credits[claim.user]
        credit.balance -= cost
        credit.daily_used = daily_used
        credit.daily_reset_at = reset_at
        credit.lifetime_used += cost

        stats = self._relayer_stats.setdefault(relayer, RelayerStats())
        stats.transaction_count += 1
        stats.total_refunded += cost
        stats.last_refund_at = now
        self.total_refunded += cost

        history = self._history.setdefault(claim.user, deque(maxlen=self.config.history_size))
        history.append(
            GasUsage(
                gas_used=claim.gas_used,
                gas_price=claim.gas_price,
                cost=cost,
                timestamp=now,
                tx_hash=claim.tx_hash,
                relayer=relayer,
            )
        )
        logger.info("Refunded %s to relayer %s from %s", cost, relayer, claim.user)
        self._emit(
            EventType.GAS_REFUNDED,
            actor=relayer,
            amount=cost,
            details={"user": claim.user, "tx_hash": claim.tx_hash, "gas_used": claim.gas_used},
        )

    # Views

    def get_gas_credit(self, owner: str) -> GasCredit:
        credit = self._credits.get(normalize_address(owner))
        return replace(credit) if credit else GasCredit()

    def get_available_credit(self, owner: str) -> int:
        """What could be refunded right now: balance capped by today's allowance."""
        credit = self._credits.get(normalize_address(owner))
        if credit is None:
            return 0
        daily_used = 0 if self.now() >= credit.daily_reset_at else credit.daily_used
        return max(min(credit.balance, credit.daily_limit - daily_used), 0)

    def get_gas_usage_history(self, owner: str, count: int = 10) -> list[GasUsage]:
        """Most recent ``count`` refunds charged to ``owner``, oldest first."""
        history = self._history.get(normalize_address(owner))
        if not history or count <= 0:
            return []
        return list(history)[-count:]

    def relayer_stats(self, relayer: str) -> RelayerStats:
        stats = self._relayer_stats.get(normalize_address(relayer))
        return replace(stats) if stats else RelayerStats()

    # Administration

    def pause(self, caller: str) -> None:
        self.roles.require(caller, Role.ADMIN)
        self.paused = True

    def unpause(self, caller: str) -> None:
        self.roles.require(caller, Role.ADMIN)
        self.paused = False

    def _ensure_active(self) -> None:
        if self.paused:
            raise PausedError("Gas credit ledger is paused")

    def _require_relayer(self, caller: str) -> str:
        relayer = normalize_address(caller)
        if not self.roles.has_role(relayer, Role.RELAYER):
            raise UnauthorizedRelayerError(relayer)
        return relayer
