"""
commitment.py — Hash-lock secrets and the claim-time fee split.

The digest is keccak256 over the raw 32-byte secret, the same function the
request registry applies when claim(requestId, secret) is called, so the
value produced here is reproducible bit-for-bit on-chain.
"""

from __future__ import annotations

import hmac
import secrets

from web3 import Web3

SECRET_LENGTH = 32
BPS_DENOMINATOR = 10_000


def digest(secret: bytes) -> bytes:
    """Return keccak256(secret)."""
    return bytes(Web3.keccak(secret))


def generate_commitment() -> tuple[bytes, bytes]:
    """
    Generate a fresh random secret and its digest.

    Returns:
        (secret, secret_digest), both 32 bytes. Only the digest may be
        disclosed before the claim.
    """
    secret = secrets.token_bytes(SECRET_LENGTH)
    return secret, digest(secret)


def verify(secret: bytes, secret_digest: bytes) -> bool:
    """True iff secret_digest == keccak256(secret)."""
    if len(secret) != SECRET_LENGTH or len(secret_digest) != SECRET_LENGTH:
        return False
    return hmac.compare_digest(digest(secret), secret_digest)


def to_hex(value: bytes) -> str:
    return "0x" + value.hex()


def from_hex(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def split_fee(price: int, validator_fee_bps: int) -> tuple[int, int]:
    """
    Split a price into (seller_amount, validator_amount).

    The validator share rounds down; the seller receives the remainder, so
    the two always sum to the price. 100 at 500 bps -> (95, 5).
    """
    if price < 0:
        raise ValueError("price must be non-negative")
    if not 0 <= validator_fee_bps <= BPS_DENOMINATOR:
        raise ValueError("validator_fee_bps must be between 0 and 10000")
    validator_amount = price * validator_fee_bps // BPS_DENOMINATOR
    return price - validator_amount, validator_amount
