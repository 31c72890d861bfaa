"""
Audit trail for contract events.

Contracts emit events (request created, approval revealed, funds
distributed, meta-transaction relayed, gas refunded, ...) to an optional
sink. AuditTrail is the bundled sink: append-only JSONL entries with an
HMAC hash chain so tampering is detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditChainBrokenError


DEFAULT_AUDIT_PATH = Path.home() / ".bursar" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".bursar-secrets" / "audit_hmac.key"


class EventType(str, Enum):
    DEPOSIT_RECEIVED = "deposit_received"
    REQUEST_CREATED = "request_created"
    APPROVAL_COMMITTED = "approval_committed"
    REQUEST_APPROVED = "request_approved"
    WITHDRAWAL_QUEUED = "withdrawal_queued"
    FUNDS_DISTRIBUTED = "funds_distributed"
    REQUEST_CANCELLED = "request_cancelled"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    CIRCUIT_BREAKER_RESET = "circuit_breaker_reset"
    CLOSURE_INITIATED = "closure_initiated"
    CLOSURE_COMMITTED = "closure_committed"
    CLOSURE_APPROVED = "closure_approved"
    CLOSURE_EXECUTED = "closure_executed"
    CLOSURE_CANCELLED = "closure_cancelled"
    META_TX_EXECUTED = "meta_tx_executed"
    META_TX_FAILED = "meta_tx_failed"
    TARGET_WHITELIST_UPDATED = "target_whitelist_updated"
    GAS_CREDIT_DEPOSITED = "gas_credit_deposited"
    GAS_CREDIT_WITHDRAWN = "gas_credit_withdrawn"
    GAS_REFUNDED = "gas_refunded"
    GAS_REFUND_DENIED = "gas_refund_denied"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    contract: Optional[str] = None
    subject_id: Optional[int] = None
    actor: Optional[str] = None
    amount: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    def payload(self) -> dict[str, Any]:
        """The hashed part of the entry: every set field except the chain links."""
        return {
            k: v
            for k, v in asdict(self).items()
            if v is not None and k not in {"prev_hash", "event_hash"}
        }


def _private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def _private_file(path: Path) -> None:
    _private_dir(path.parent)
    path.touch(exist_ok=True)
    os.chmod(path, 0o600)


class AuditTrail:
    """Tamper-evident append-only sink for contract events.

    Each line carries ``event_hash = HMAC(key, prev_hash | canonical payload)``,
    so editing, reordering or dropping a line breaks every later link. The key
    comes from ``BURSAR_AUDIT_HMAC_KEY`` when set, otherwise from a private key
    file created on first use.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = Path(path or DEFAULT_AUDIT_PATH)
        self.key_path = Path(key_path or DEFAULT_AUDIT_KEY_PATH)
        _private_file(self.path)
        _private_file(self.key_path)
        self._hmac_key = self._resolve_key()
        self._last_hash = self._tail_hash()

    def _resolve_key(self) -> bytes:
        from_env = os.getenv("BURSAR_AUDIT_HMAC_KEY")
        if from_env:
            return from_env.encode()
        stored = self.key_path.read_bytes().strip()
        if stored:
            return stored
        generated = secrets.token_hex(32).encode()
        self.key_path.write_bytes(generated)
        return generated

    def _tail_hash(self) -> str:
        """Hash of the last entry on disk, or "" for an empty trail."""
        with open(self.path, "r") as f:
            lines = [line for line in f if line.strip()]
        return json.loads(lines[-1]).get("event_hash", "") if lines else ""

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def log(
        self,
        event_type: EventType,
        contract: Optional[str] = None,
        subject_id: Optional[int] = None,
        actor: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
        timestamp: Optional[float] = None,
    ) -> AuditEvent:
        """Append one event and advance the chain. Matches the contract event sink signature."""
        event = AuditEvent(
            event_type=EventType(event_type).value,
            timestamp=time.time() if timestamp is None else timestamp,
            contract=contract,
            subject_id=subject_id,
            actor=actor,
            amount=amount,
            success=success,
            reason=reason,
            details=details,
            prev_hash=self._last_hash or None,
        )
        event.event_hash = self._event_hash(event.payload(), self._last_hash)

        with open(self.path, "a") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = event.event_hash
        return event

    def _verified_entries(self) -> Iterator[dict]:
        """Yield raw entries in file order, checking each link of the chain."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                prev_hash = raw.pop("prev_hash", None) or ""
                event_hash = raw.pop("event_hash", None) or ""
                if prev_hash != expected_prev:
                    raise AuditChainBrokenError(line_no, "previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(raw, prev_hash), event_hash):
                    raise AuditChainBrokenError(line_no, "event hash mismatch")
                expected_prev = event_hash
                raw["prev_hash"] = prev_hash or None
                raw["event_hash"] = event_hash
                yield raw
        self._last_hash = expected_prev

    def verify_chain(self) -> tuple[bool, str]:
        try:
            count = sum(1 for _ in self._verified_entries())
        except AuditChainBrokenError as e:
            return False, str(e)
        return True, f"{count} events verified"

    def read_events(
        self,
        subject_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
        contract: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verified events matching every given filter, most recent ``limit`` last."""
        fields = AuditEvent.__dataclass_fields__
        events = [
            AuditEvent(**{k: v for k, v in raw.items() if k in fields})
            for raw in self._verified_entries()
            if (subject_id is None or raw.get("subject_id") == subject_id)
            and (event_type is None or raw.get("event_type") == EventType(event_type).value)
            and (contract is None or raw.get("contract") == contract)
        ]
        return events[-limit:] if limit > 0 else []

    def summary(self, contract: Optional[str] = None) -> dict:
        events = self.read_events(contract=contract, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "actors": len({e.actor for e in events if e.actor}),
            "last_event": events[-1].to_json() if events else None,
        }
