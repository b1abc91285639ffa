"""
Stage attestation signatures.

Each stage signs a short human-readable statement of what it did with an
EIP-191 personal-message signature so the record can be verified later
against the stage's address.
"""

from __future__ import annotations

from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import SigningError


class AttestationSigner(Protocol):
    @property
    def address(self) -> str: ...

    def sign(self, message: bytes) -> str: ...


class EthAccountAttestationSigner:
    """Attestation signer backed by an in-process eth-account key."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "EthAccountAttestationSigner":
        return cls(Account.from_key(private_key))

    @classmethod
    def generate(cls) -> "EthAccountAttestationSigner":
        """Fresh random key. Useful for demos and tests."""
        return cls(Account.create())

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, message: bytes) -> str:
        try:
            signed = self._account.sign_message(encode_defunct(primitive=message))
        except Exception as e:
            raise SigningError(f"Failed to sign attestation: {e}") from e
        return "0x" + signed.signature.hex().removeprefix("0x")


def verify_attestation(message: str | bytes, signature: str, address: str) -> tuple[bool, str]:
    """Check that ``signature`` over ``message`` recovers to ``address``."""
    if not signature:
        return False, "Missing signature"
    raw = message.encode() if isinstance(message, str) else message
    try:
        recovered = Account.recover_message(
            encode_defunct(primitive=raw),
            signature=bytes.fromhex(signature.removeprefix("0x")),
        )
    except Exception as e:
        return False, f"Signature verification failed: {e}"
    if recovered.lower() != address.lower():
        return False, f"Signer mismatch: expected {address}, got {recovered}"
    return True, "Valid attestation"
