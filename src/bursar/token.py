"""
Minimal fungible balance ledger.

Stands in for the external token contract: balances, allowances and the
transfer entry points the reimbursement project needs. Supply management
beyond ``mint`` is deliberately absent.
"""

from __future__ import annotations

import logging

from .addresses import ZERO_ADDRESS, normalize_address
from .chain import Chain, Contract, relayable
from .errors import InsufficientFundsError, InvalidAddressError, InvalidAmountError

logger = logging.getLogger(__name__)


class InMemoryBalanceLedger(Contract):
    """ERC-20 shaped ledger living on a Chain."""

    def __init__(self, chain: Chain, name: str = "OM Thai Baht", symbol: str = "OMTHB"):
        super().__init__(chain)
        self.name = name
        self.symbol = symbol
        self.decimals = 18
        self.total_supply = 0
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}

    def balance_of(self, account: str) -> int:
        return self._balances.get(normalize_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((normalize_address(owner), normalize_address(spender)), 0)

    def mint(self, to: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError("Mint amount must be > 0")
        recipient = self._require_recipient(to)
        self._balances[recipient] = self._balances.get(recipient, 0) + amount
        self.total_supply += amount

    @relayable
    def transfer(self, caller: str, to: str, amount: int) -> bool:
        self._move(normalize_address(caller), self._require_recipient(to), amount)
        return True

    @relayable
    def approve(self, caller: str, spender: str, amount: int) -> bool:
        if amount < 0:
            raise InvalidAmountError("Allowance must be >= 0")
        key = (normalize_address(caller), normalize_address(spender))
        self._allowances[key] = amount
        return True

    def transfer_from(self, caller: str, owner: str, to: str, amount: int) -> bool:
        src = normalize_address(owner)
        key = (src, normalize_address(caller))
        allowed = self._allowances.get(key, 0)
        if allowed < amount:
            raise InsufficientFundsError(f"Allowance {allowed} is below {amount}")
        self._move(src, self._require_recipient(to), amount)
        self._allowances[key] = allowed - amount
        return True

    def _move(self, src: str, dst: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmountError("Transfer amount must be >= 0")
        balance = self._balances.get(src, 0)
        if balance < amount:
            raise InsufficientFundsError(f"{src} holds {balance}, needs {amount}")
        self._balances[src] = balance - amount
        self._balances[dst] = self._balances.get(dst, 0) + amount
        self._after_transfer(src, dst, amount)

    def _after_transfer(self, src: str, dst: str, amount: int) -> None:
        """Hook run after balances move."""
        logger.debug("Transfer %s -> %s: %s", src, dst, amount)

    @staticmethod
    def _require_recipient(to: str) -> str:
        addr = normalize_address(to)
        if addr == ZERO_ADDRESS:
            raise InvalidAddressError("Cannot transfer to the zero address")
        return addr
