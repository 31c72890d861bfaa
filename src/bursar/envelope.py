"""
Signed forward-request envelopes (EIP-712).

A user describes the call they want relayed, signs it off-chain against the
relay's domain, and hands envelope plus signature to any relayer. The call
payload is canonical JSON naming a relayable method and its keyword
arguments.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from eth_account import Account
from eth_account.messages import encode_typed_data

from .addresses import normalize_address
from .errors import CallFailedError, ValidationError


FORWARDER_NAME = "MetaTxForwarder"
FORWARDER_VERSION = "1"

FORWARD_REQUEST_TYPES = {
    "ForwardRequest": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "gas", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
        {"name": "chainId", "type": "uint256"},
        {"name": "data", "type": "bytes"},
    ],
}


@dataclass(frozen=True)
class ForwardRequest:
    """The authorization envelope. Only its nonce outlives execution."""

    sender: str
    to: str
    value: int
    gas: int
    nonce: int
    deadline: int
    chain_id: int
    data: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", normalize_address(self.sender))
        object.__setattr__(self, "to", normalize_address(self.to))
        for name in ("value", "gas", "nonce", "deadline", "chain_id"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer")
        if not isinstance(self.data, (bytes, bytearray)):
            raise ValidationError("data must be bytes")
        object.__setattr__(self, "data", bytes(self.data))

    def to_message(self) -> dict:
        return {
            "from": self.sender,
            "to": self.to,
            "value": self.value,
            "gas": self.gas,
            "nonce": self.nonce,
            "deadline": self.deadline,
            "chainId": self.chain_id,
            "data": self.data,
        }

    def to_dict(self) -> dict:
        d = asdict(self)
        d["data"] = "0x" + self.data.hex()
        return d


def forwarder_domain(chain_id: int, verifying_contract: str) -> dict:
    return {
        "name": FORWARDER_NAME,
        "version": FORWARDER_VERSION,
        "chainId": int(chain_id),
        "verifyingContract": normalize_address(verifying_contract),
    }


def build_typed_data(request: ForwardRequest, verifying_contract: str) -> dict:
    """Typed data bound to the chain the envelope itself claims."""
    return {
        "domain": forwarder_domain(request.chain_id, verifying_contract),
        "types": FORWARD_REQUEST_TYPES,
        "primaryType": "ForwardRequest",
        "message": request.to_message(),
    }


def sign_forward_request(private_key: Any, request: ForwardRequest, verifying_contract: str) -> bytes:
    """Sign an envelope with the sender's key."""
    typed_data = build_typed_data(request, verifying_contract)
    signed = Account.sign_typed_data(
        private_key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    return bytes(signed.signature)


def recover_signer(request: ForwardRequest, signature: bytes, verifying_contract: str) -> str:
    typed_data = build_typed_data(request, verifying_contract)
    signable = encode_typed_data(
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    recovered = Account.recover_message(signable, signature=bytes(signature))
    return normalize_address(recovered)


def verify_forward_request(
    request: ForwardRequest,
    signature: bytes,
    verifying_contract: str,
) -> tuple[bool, str]:
    """Check that the envelope was signed by its claimed sender."""
    try:
        recovered = recover_signer(request, signature, verifying_contract)
    except Exception as e:
        return False, f"Signature verification failed: {e}"
    if recovered != request.sender:
        return False, f"Signer mismatch: expected {request.sender}, got {recovered}"
    return True, "Valid envelope"


def encode_call(method: str, **args: Any) -> bytes:
    """Serialize a relayable call using deterministic ordering and no whitespace."""
    if not method or not isinstance(method, str):
        raise ValidationError("method must be a non-empty string")
    payload = {"method": method, "args": _normalize_for_canonical_json(args)}
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def decode_call(data: bytes) -> tuple[str, dict[str, Any]]:
    try:
        payload = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CallFailedError(f"Malformed call data: {exc}") from exc
    if not isinstance(payload, dict):
        raise CallFailedError("Call data must be a JSON object")
    method = payload.get("method")
    args = payload.get("args", {})
    if not isinstance(method, str) or not method or method.startswith("_"):
        raise CallFailedError(f"Invalid method in call data: {method!r}")
    if not isinstance(args, dict):
        raise CallFailedError("Call arguments must be a JSON object")
    if "caller" in args:
        raise CallFailedError("Call arguments may not name the caller")
    return method, args


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, float):
        raise ValidationError("Floats are not allowed in call data; use integer base units")
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    raise ValidationError(f"Unsupported call argument type: {type(value).__name__}")
