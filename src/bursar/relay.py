"""
Meta-transaction relay.

Verifies a signed ForwardRequest and dispatches it to a whitelisted
contract with the signer as the logical caller. Checks run in a fixed
order: signature, chain id, deadline, nonce, whitelist and code, sender
rate limit, per-target call ceiling, gas floor. The sender's nonce is
single-use across every target. If the target call fails, the relay's own
bookkeeping is rolled back and CallFailedError is raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .access import Role, RoleTable
from .addresses import normalize_address
from .audit import EventType
from .chain import Chain, Contract, is_relayable
from .config import RelayConfig
from .envelope import ForwardRequest, decode_call, recover_signer
from .errors import (
    ArrayLengthMismatchError,
    BatchTooLargeError,
    BursarError,
    CallFailedError,
    ExpiredDeadlineError,
    InsufficientGasError,
    InvalidChainIdError,
    InvalidConfigurationError,
    InvalidNonceError,
    InvalidSignatureError,
    PausedError,
    RateLimitExceededError,
    TargetCallLimitExceededError,
    TargetNotWhitelistedError,
)

logger = logging.getLogger(__name__)

DEFAULT_GAS = 300_000
DEFAULT_TTL = 3600


@dataclass
class RateLimitWindow:
    window_start: int = 0
    count: int = 0


@dataclass
class ExecutionResult:
    """Outcome of one relayed call."""

    success: bool
    signer: Optional[str] = None
    nonce: Optional[int] = None
    return_value: Any = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "signer": self.signer,
            "nonce": self.nonce,
            "reason": self.reason,
        }


class MetaTxRelay(Contract):
    """Trusted forwarder fronting fees for envelope signers."""

    def __init__(
        self,
        chain: Chain,
        admin: str,
        config: Optional[RelayConfig] = None,
        events=None,
    ):
        super().__init__(chain, events)
        self.config = config or RelayConfig()
        self.roles = RoleTable(admin)
        self.max_tx_per_window = self.config.max_tx_per_window
        self.paused = False
        self._nonces: dict[str, int] = {}
        self._rate_limits: dict[str, RateLimitWindow] = {}
        self._target_calls: dict[str, int] = {}
        self._whitelist: set[str] = set()

    # Views

    def get_nonce(self, address: str) -> int:
        return self._nonces.get(normalize_address(address), 0)

    def is_whitelisted(self, target: str) -> bool:
        return normalize_address(target) in self._whitelist

    def target_call_count(self, target: str) -> int:
        return self._target_calls.get(normalize_address(target), 0)

    def build_request(
        self,
        sender: str,
        to: str,
        data: bytes,
        gas: int = DEFAULT_GAS,
        deadline: Optional[int] = None,
        value: int = 0,
        nonce: Optional[int] = None,
    ) -> ForwardRequest:
        """Fill in nonce, chain id and deadline for a new envelope."""
        return ForwardRequest(
            sender=sender,
            to=to,
            value=value,
            gas=gas,
            nonce=self.get_nonce(sender) if nonce is None else nonce,
            deadline=self.now() + DEFAULT_TTL if deadline is None else deadline,
            chain_id=self.chain_id,
            data=data,
        )

    # Verification

    def verify(self, request: ForwardRequest, signature: bytes) -> str:
        """Run every pre-dispatch check without mutating state. Returns the signer."""
        try:
            signer = recover_signer(request, signature, self.address)
        except Exception as exc:
            raise InvalidSignatureError(f"Unrecoverable signature: {exc}") from exc
        if signer != request.sender:
            raise InvalidSignatureError(f"Signer {signer} does not match sender {request.sender}")
        if request.chain_id != self.chain_id:
            raise InvalidChainIdError(self.chain_id, request.chain_id)
        now = self.now()
        if now > request.deadline:
            raise ExpiredDeadlineError(request.deadline, now)
        expected = self.get_nonce(signer)
        if request.nonce != expected:
            raise InvalidNonceError(expected, request.nonce)
        if request.to not in self._whitelist:
            raise TargetNotWhitelistedError(f"Target {request.to} is not whitelisted")
        if not self.chain.has_code(request.to):
            raise CallFailedError(f"Target {request.to} has no code")
        window = self._current_window(signer, now)
        if window.count >= self.max_tx_per_window:
            raise RateLimitExceededError(
                f"{signer} reached {self.max_tx_per_window} transactions per window",
                retry_after=window.window_start + self.config.rate_limit_window - now,
            )
        if self.target_call_count(request.to) >= self.config.max_calls_per_target:
            raise TargetCallLimitExceededError(
                f"Target {request.to} reached {self.config.max_calls_per_target} calls"
            )
        if request.gas < self.config.min_gas:
            raise InsufficientGasError(request.gas, self.config.min_gas)
        return signer

    def _current_window(self, sender: str, now: int) -> RateLimitWindow:
        window = self._rate_limits.get(sender)
        if window is None or now >= window.window_start + self.config.rate_limit_window:
            return RateLimitWindow(window_start=now, count=0)
        return window

    # Execution

    def execute(self, caller: str, request: ForwardRequest, signature: bytes) -> ExecutionResult:
        """Verify and dispatch one envelope. ``caller`` is the relayer paying the fee."""
        if self.paused:
            raise PausedError("Relay is paused")
        signer = self.verify(request, signature)
        now = self.now()
        target_address = request.to

        prev_window = self._rate_limits.get(signer)
        prev_calls = self.target_call_count(target_address)
        window = self._current_window(signer, now)
        self._nonces[signer] = request.nonce + 1
        self._rate_limits[signer] = RateLimitWindow(window.window_start, window.count + 1)
        self._target_calls[target_address] = prev_calls + 1

        value_moved = False
        try:
            method, args = decode_call(request.data)
            target = self.chain.get_contract(target_address)
            fn = getattr(target, method, None)
            if not is_relayable(fn):
                raise CallFailedError(f"{method} is not relayable on {target_address}")
            if request.value:
                self.chain.transfer_native(caller, target_address, request.value)
                value_moved = True
            return_value = fn(caller=signer, **args)
        except Exception as exc:
            self._nonces[signer] = request.nonce
            if prev_window is None:
                self._rate_limits.pop(signer, None)
            else:
                self._rate_limits[signer] = prev_window
            self._target_calls[target_address] = prev_calls
            if value_moved:
                self.chain.transfer_native(target_address, caller, request.value)
            logger.warning("Relayed call from %s to %s failed: %s", signer, target_address, exc)
            self._emit(
                EventType.META_TX_FAILED,
                actor=signer,
                success=False,
                reason=str(exc),
                details={"target": target_address, "nonce": request.nonce, "relayer": normalize_address(caller)},
            )
            if isinstance(exc, CallFailedError):
                raise
            raise CallFailedError(f"Call to {target_address} failed: {exc}") from exc

        logger.info(
            "Relayed %s from %s to %s (nonce %s)", method, signer, target_address, request.nonce
        )
        self._emit(
            EventType.META_TX_EXECUTED,
            actor=signer,
            details={
                "target": target_address,
                "method": method,
                "nonce": request.nonce,
                "relayer": normalize_address(caller),
            },
        )
        return ExecutionResult(
            success=True,
            signer=signer,
            nonce=request.nonce,
            return_value=return_value,
        )

    def batch_execute(
        self,
        caller: str,
        requests: list[ForwardRequest],
        signatures: list[bytes],
    ) -> list[bool]:
        """Execute each envelope independently; one failure does not abort the rest."""
        if len(requests) != len(signatures):
            raise ArrayLengthMismatchError(len(requests), len(signatures))
        if len(requests) > self.config.max_batch_size:
            raise BatchTooLargeError(len(requests), self.config.max_batch_size)
        results: list[bool] = []
        for request, signature in zip(requests, signatures):
            try:
                results.append(self.execute(caller, request, signature).success)
            except BursarError as exc:
                logger.info("Batch item from %s rejected: %s", request.sender, exc)
                results.append(False)
        return results

    # Administration

    def set_target_whitelist(self, caller: str, target: str, allowed: bool) -> None:
        """Add or remove a target.

        Removing a listed target resets its call counter, so the count only
        starts over after a remove and re-add. Re-adding a target that is
        already listed keeps its count.
        """
        self.roles.require(caller, Role.ADMIN)
        addr = normalize_address(target)
        if allowed:
            self._whitelist.add(addr)
        elif addr in self._whitelist:
            self._whitelist.discard(addr)
            self._target_calls[addr] = 0
        logger.info("Target %s whitelisted=%s", addr, allowed)
        self._emit(
            EventType.TARGET_WHITELIST_UPDATED,
            actor=normalize_address(caller),
            details={"target": addr, "allowed": allowed},
        )

    def update_rate_limit(self, caller: str, max_tx_per_window: int) -> None:
        self.roles.require(caller, Role.ADMIN)
        if max_tx_per_window <= 0:
            raise InvalidConfigurationError("max_tx_per_window must be > 0")
        self.max_tx_per_window = max_tx_per_window

    def pause(self, caller: str) -> None:
        self.roles.require(caller, Role.ADMIN)
        self.paused = True

    def unpause(self, caller: str) -> None:
        self.roles.require(caller, Role.ADMIN)
        self.paused = False
