"""
Sponsored relayer client.

Flow:
1. Execute the signed envelope through the relay (relayer fronts the fee)
2. Derive a transaction hash for the relayed call
3. Claim the refund from the signer's gas credit
4. Audit both halves
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_utils import keccak

from .addresses import normalize_address
from .audit import AuditTrail, EventType
from .envelope import ForwardRequest
from .errors import BursarError
from .gas_tank import GasCreditLedger
from .relay import ExecutionResult, MetaTxRelay
from .units import gwei

logger = logging.getLogger(__name__)


@dataclass
class RelayReceipt:
    """What a relayer got out of one submission."""

    result: ExecutionResult
    tx_hash: str
    gas_used: int
    gas_price: int
    refunded: int = 0
    refund_error: Optional[str] = None

    @property
    def refund_denied(self) -> bool:
        return self.refund_error is not None

    def to_dict(self) -> dict:
        return {
            "result": self.result.to_dict(),
            "tx_hash": self.tx_hash,
            "gas_used": self.gas_used,
            "gas_price": self.gas_price,
            "refunded": self.refunded,
            "refund_error": self.refund_error,
        }


def relayed_tx_hash(relay_address: str, request: ForwardRequest) -> str:
    """Stable identifier for a relayed call: (relay, sender, nonce) is unique once executed."""
    material = f"{normalize_address(relay_address)}:{request.sender}:{request.nonce}".encode()
    return "0x" + keccak(material).hex()


class SponsoredRelayer:
    """Submits envelopes for users and recovers the cost from their gas credit."""

    def __init__(
        self,
        address: str,
        relay: MetaTxRelay,
        gas_tank: GasCreditLedger,
        gas_price: int = gwei(20),
        audit: Optional[AuditTrail] = None,
    ):
        self.address = normalize_address(address)
        self.relay = relay
        self.gas_tank = gas_tank
        self.gas_price = gas_price
        self.audit = audit

    def submit(
        self,
        request: ForwardRequest,
        signature: bytes,
        gas_used: Optional[int] = None,
    ) -> RelayReceipt:
        """Relay one envelope, then claim its cost.

        Relay failures propagate. A denied refund does not undo the relayed
        call; the relayer absorbs the cost and the receipt records why.
        """
        result = self.relay.execute(self.address, request, signature)
        receipt = RelayReceipt(
            result=result,
            tx_hash=relayed_tx_hash(self.relay.address, request),
            gas_used=gas_used if gas_used is not None else request.gas,
            gas_price=self.gas_price,
        )
        self._claim(request.sender, receipt)
        return receipt

    def submit_batch(
        self,
        requests: list[ForwardRequest],
        signatures: list[bytes],
    ) -> list[Optional[RelayReceipt]]:
        """Relay a batch; items the relay rejected come back as None."""
        flags = self.relay.batch_execute(self.address, requests, signatures)
        receipts: list[Optional[RelayReceipt]] = []
        for request, ok in zip(requests, flags):
            if not ok:
                receipts.append(None)
                continue
            receipt = RelayReceipt(
                result=ExecutionResult(success=True, signer=request.sender, nonce=request.nonce),
                tx_hash=relayed_tx_hash(self.relay.address, request),
                gas_used=request.gas,
                gas_price=self.gas_price,
            )
            self._claim(request.sender, receipt)
            receipts.append(receipt)
        return receipts

    def _claim(self, user: str, receipt: RelayReceipt) -> None:
        try:
            receipt.refunded = self.gas_tank.request_gas_refund(
                self.address,
                user,
                receipt.gas_used,
                receipt.gas_price,
                receipt.tx_hash,
            )
        except BursarError as exc:
            receipt.refund_error = str(exc)
            logger.warning("Refund for %s denied: %s", receipt.tx_hash, exc)
            if self.audit:
                self.audit.log(
                    EventType.GAS_REFUND_DENIED,
                    contract=self.gas_tank.address,
                    actor=self.address,
                    amount=receipt.gas_used * receipt.gas_price,
                    success=False,
                    reason=str(exc),
                    details={"user": user, "tx_hash": receipt.tx_hash},
                )
            return
        if self.audit:
            self.audit.log(
                EventType.GAS_REFUNDED,
                contract=self.gas_tank.address,
                actor=self.address,
                amount=receipt.refunded,
                details={"user": user, "tx_hash": receipt.tx_hash},
            )
