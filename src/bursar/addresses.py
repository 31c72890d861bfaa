"""Address helpers shared by every contract."""

from __future__ import annotations

import re

from eth_utils import keccak, to_canonical_address

from .errors import InvalidAddressError


ZERO_ADDRESS = "0x" + "00" * 20
_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise InvalidAddressError(f"Invalid Ethereum address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidAddressError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def address_bytes(address: str) -> bytes:
    """20-byte canonical form used in packed hashing."""
    return to_canonical_address(normalize_address(address))


def derive_contract_address(deployer: str, nonce: int) -> str:
    """Deterministic address for the nth contract registered by a deployer."""
    digest = keccak(address_bytes(deployer) + nonce.to_bytes(32, "big"))
    return "0x" + digest[-20:].hex()
