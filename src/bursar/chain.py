"""
In-process execution environment.

A Chain holds what every contract reads from its surroundings: the chain id,
block time, which addresses carry code, and native-currency balances used to
pay for gas credit and relayer refunds. Calls are processed one at a time.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .addresses import ZERO_ADDRESS, derive_contract_address, normalize_address
from .clock import Clock, SystemClock
from .errors import InsufficientFundsError, InvalidAmountError, InvalidConfigurationError

logger = logging.getLogger(__name__)

GENESIS_DEPLOYER = "0x" + "b0" * 20


def relayable(func: Callable) -> Callable:
    """Mark a contract method as callable through the meta-transaction relay.

    Relayable methods take the logical caller as a ``caller`` keyword.
    """
    func.__relayable__ = True
    return func


def is_relayable(func: Any) -> bool:
    return callable(func) and getattr(func, "__relayable__", False)


class Chain:
    """Registry of deployed contracts plus native balances and block time."""

    def __init__(self, chain_id: int = 1, clock: Optional[Clock] = None):
        if chain_id <= 0:
            raise InvalidConfigurationError("chain_id must be > 0")
        self.chain_id = chain_id
        self.clock = clock or SystemClock()
        self._contracts: dict[str, Any] = {}
        self._native: dict[str, int] = {}
        self._deploy_nonce = 0

    def now(self) -> int:
        return self.clock.now()

    def register(self, contract: Any) -> str:
        address = derive_contract_address(GENESIS_DEPLOYER, self._deploy_nonce)
        self._deploy_nonce += 1
        self._contracts[address] = contract
        logger.debug("Registered %s at %s", type(contract).__name__, address)
        return address

    def get_contract(self, address: str) -> Optional[Any]:
        return self._contracts.get(normalize_address(address))

    def has_code(self, address: str) -> bool:
        return normalize_address(address) in self._contracts

    # Native currency

    def native_balance_of(self, address: str) -> int:
        return self._native.get(normalize_address(address), 0)

    def fund(self, address: str, amount: int) -> None:
        """Credit native currency out of thin air (genesis allocation)."""
        if amount <= 0:
            raise InvalidAmountError("Funding amount must be > 0")
        addr = normalize_address(address)
        self._native[addr] = self._native.get(addr, 0) + amount

    def transfer_native(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmountError("Transfer amount must be >= 0")
        src = normalize_address(sender)
        dst = normalize_address(recipient)
        if dst == ZERO_ADDRESS:
            raise InvalidAmountError("Cannot send native currency to the zero address")
        balance = self._native.get(src, 0)
        if balance < amount:
            raise InsufficientFundsError(
                f"{src} holds {balance} native units, needs {amount}"
            )
        self._native[src] = balance - amount
        self._native[dst] = self._native.get(dst, 0) + amount


class Contract:
    """Base for objects deployed on a Chain.

    ``events`` is an optional sink with an ``AuditTrail.log`` signature.
    """

    def __init__(self, chain: Chain, events: Optional[Any] = None):
        self.chain = chain
        self.events = events
        self.address = chain.register(self)

    def _emit(self, event_type: Any, **fields: Any) -> None:
        if self.events is not None:
            self.events.log(event_type, contract=self.address, timestamp=self.now(), **fields)

    @property
    def chain_id(self) -> int:
        return self.chain.chain_id

    def now(self) -> int:
        return self.chain.now()
