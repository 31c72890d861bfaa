"""
Commit-reveal approvals.

An approver first commits ``keccak256(signer, subject_id, chain_id, nonce)``
and may only reveal the nonce once the reveal window has passed. The pending
intent stays hidden until racing it is pointless. The book does not know or
care whether calls arrive through the relay.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from eth_utils import keccak

from .addresses import address_bytes, normalize_address
from .errors import InvalidCommitmentError, RevealTooEarlyError


REVEAL_WINDOW = 30 * 60
_UINT256_MAX = 2**256 - 1


def _uint256(value: int, field_name: str) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidCommitmentError(f"{field_name} must be an integer")
    if value < 0 or value > _UINT256_MAX:
        raise InvalidCommitmentError(f"{field_name} is out of uint256 range")
    return value.to_bytes(32, "big")


def compute_commitment(signer: str, subject_id: int, chain_id: int, nonce: int) -> str:
    """Return the 0x-prefixed keccak256 of the tightly packed approval tuple."""
    packed = (
        address_bytes(signer)
        + _uint256(subject_id, "subject_id")
        + _uint256(chain_id, "chain_id")
        + _uint256(nonce, "nonce")
    )
    return "0x" + keccak(packed).hex()


def new_nonce() -> int:
    """A fresh secret nonce for a commitment."""
    return secrets.randbits(256)


def normalize_commitment(value: str | bytes) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise InvalidCommitmentError("Commitment must be a hex string")
    candidate = value.strip().lower()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64 or any(ch not in "0123456789abcdef" for ch in candidate):
        raise InvalidCommitmentError("Commitment must be 32 bytes (0x + 64 hex chars)")
    if int(candidate, 16) == 0:
        raise InvalidCommitmentError("Commitment must be non-zero")
    return "0x" + candidate


@dataclass
class Commitment:
    """The live commitment for one (subject, approver) pair."""

    commit_hash: str
    committed_at: int

    def reveal_after(self, window: int) -> int:
        return self.committed_at + window


class CommitRevealBook:
    """One live commitment per (subject, approver); a new commit overwrites."""

    def __init__(self, chain_id: int, reveal_window: int = REVEAL_WINDOW):
        self.chain_id = chain_id
        self.reveal_window = reveal_window
        self._commitments: dict[tuple[int, str], Commitment] = {}

    def commit(self, subject_id: int, approver: str, commit_hash: str | bytes, now: int) -> Commitment:
        commitment = Commitment(
            commit_hash=normalize_commitment(commit_hash),
            committed_at=now,
        )
        self._commitments[(subject_id, normalize_address(approver))] = commitment
        return commitment

    def get(self, subject_id: int, approver: str) -> Optional[Commitment]:
        return self._commitments.get((subject_id, normalize_address(approver)))

    def verify(self, subject_id: int, approver: str, nonce: int, now: int) -> Commitment:
        """Check a reveal without consuming the commitment."""
        commitment = self.get(subject_id, approver)
        if commitment is None:
            raise InvalidCommitmentError(
                f"No commitment from {normalize_address(approver)} for {subject_id}"
            )
        reveal_after = commitment.reveal_after(self.reveal_window)
        if now <= reveal_after:
            raise RevealTooEarlyError(reveal_after)
        expected = compute_commitment(approver, subject_id, self.chain_id, nonce)
        if expected != commitment.commit_hash:
            raise InvalidCommitmentError("Revealed nonce does not match commitment")
        return commitment

    def consume(self, subject_id: int, approver: str) -> None:
        key = (subject_id, normalize_address(approver))
        if key not in self._commitments:
            raise InvalidCommitmentError("Commitment already consumed")
        del self._commitments[key]

    def reveal(self, subject_id: int, approver: str, nonce: int, now: int) -> Commitment:
        commitment = self.verify(subject_id, approver, nonce, now)
        self.consume(subject_id, approver)
        return commitment

    def clear_subject(self, subject_id: int) -> int:
        """Drop every commitment for a subject that reached a final state."""
        keys = [key for key in self._commitments if key[0] == subject_id]
        for key in keys:
            del self._commitments[key]
        return len(keys)
