"""
encryption.py — secp256k1 key pairs, integrated encryption and content envelopes.

The same secp256k1 key pair signs ledger transactions and opens encrypted
payloads, so a sender only needs the recipient's public key.

Integrated scheme (per message):
    ephemeral key pair -> ECDH with recipient -> HKDF-SHA256 -> AES-256-GCM
    wire format: ephemeral_pubkey(65, uncompressed) || nonce(12) || ciphertext+tag

Content envelopes encrypt a deliverable once under a fresh AES-256-GCM
content key and wrap that key with the integrated scheme for each reader.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from typing import Iterable, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import DecryptionFailed

logger = logging.getLogger("agent_settlement.encryption")

_CURVE = ec.SECP256K1()
_HKDF_INFO = b"agent-settlement/ies/v1"
_EPHEMERAL_LEN = 65
_NONCE_LEN = 12
ENVELOPE_VERSION = 1

PublicKeyLike = Union[bytes, str]


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------

def generate_private_key() -> bytes:
    """Return a new random secp256k1 private key as 32 raw bytes."""
    key = ec.generate_private_key(_CURVE)
    return key.private_numbers().private_value.to_bytes(32, "big")


def public_key_bytes(private_key: bytes, compressed: bool = True) -> bytes:
    """Derive the SEC1-encoded public key for a raw private key."""
    key = _load_private(private_key)
    fmt = (
        serialization.PublicFormat.CompressedPoint
        if compressed
        else serialization.PublicFormat.UncompressedPoint
    )
    return key.public_key().public_bytes(serialization.Encoding.X962, fmt)


def normalize_public_key(public_key: PublicKeyLike) -> bytes:
    """Accept raw bytes or hex (with or without 0x) and return raw bytes."""
    if isinstance(public_key, str):
        text = public_key[2:] if public_key.startswith("0x") else public_key
        try:
            return bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError(f"public key is not valid hex: {exc}") from exc
    return bytes(public_key)


def _load_private(private_key: bytes) -> ec.EllipticCurvePrivateKey:
    if len(private_key) != 32:
        raise ValueError(f"private key must be 32 bytes, got {len(private_key)}")
    return ec.derive_private_key(int.from_bytes(private_key, "big"), _CURVE)


def _load_public(public_key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, normalize_public_key(public_key))


def _derive_key(shared: bytes, ephemeral: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_HKDF_INFO + ephemeral,
    ).derive(shared)


# ---------------------------------------------------------------------------
# Integrated encryption
# ---------------------------------------------------------------------------

def encrypt(recipient_public_key: PublicKeyLike, plaintext: bytes) -> bytes:
    """Encrypt plaintext for the holder of recipient_public_key."""
    peer = _load_public(recipient_public_key)
    ephemeral = ec.generate_private_key(_CURVE)
    ephemeral_pub = ephemeral.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    key = _derive_key(ephemeral.exchange(ec.ECDH(), peer), ephemeral_pub)
    nonce = os.urandom(_NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    logger.debug("encrypted %d bytes -> %d bytes", len(plaintext), len(ciphertext))
    return ephemeral_pub + nonce + ciphertext


def decrypt(private_key: bytes, data: bytes) -> bytes:
    """
    Open data produced by encrypt() with the recipient's private key.

    Raises:
        DecryptionFailed: malformed input, wrong key, or tampered ciphertext.
    """
    if len(data) <= _EPHEMERAL_LEN + _NONCE_LEN:
        raise DecryptionFailed("ciphertext too short")
    ephemeral_pub = data[:_EPHEMERAL_LEN]
    nonce = data[_EPHEMERAL_LEN:_EPHEMERAL_LEN + _NONCE_LEN]
    ciphertext = data[_EPHEMERAL_LEN + _NONCE_LEN:]
    try:
        peer = _load_public(ephemeral_pub)
        key = _derive_key(_load_private(private_key).exchange(ec.ECDH(), peer), ephemeral_pub)
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as exc:
        raise DecryptionFailed(f"unable to open ciphertext: {type(exc).__name__}") from exc


# ---------------------------------------------------------------------------
# Content envelopes
# ---------------------------------------------------------------------------

def generate_content_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def seal_envelope(
    plaintext: bytes,
    recipients: Iterable[PublicKeyLike],
    category: str = "",
) -> bytes:
    """
    Encrypt a deliverable for several readers.

    The returned bytes are a JSON document safe to put on the content
    network; `category` stays readable so validators can filter on it.
    """
    content_key = generate_content_key()
    nonce = os.urandom(_NONCE_LEN)
    ciphertext = AESGCM(content_key).encrypt(nonce, plaintext, category.encode("utf-8"))
    keys = {
        normalize_public_key(pub).hex(): _b64(encrypt(pub, content_key))
        for pub in recipients
    }
    if not keys:
        raise ValueError("an envelope needs at least one recipient")
    envelope = {
        "version": ENVELOPE_VERSION,
        "category": category,
        "nonce": _b64(nonce),
        "ciphertext": _b64(ciphertext),
        "keys": keys,
    }
    return json.dumps(envelope, sort_keys=True).encode("utf-8")


def parse_envelope(data: bytes) -> dict:
    try:
        envelope = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionFailed(f"envelope is not valid JSON: {exc}") from exc
    if not isinstance(envelope, dict) or envelope.get("version") != ENVELOPE_VERSION:
        raise DecryptionFailed("unsupported envelope format")
    return envelope


def envelope_recipients(envelope: dict) -> set[str]:
    """Hex public keys (compressed, no 0x) that can open the envelope."""
    return set(envelope.get("keys", {}))


def open_envelope(private_key: bytes, envelope: dict) -> bytes:
    """Decrypt an envelope parsed by parse_envelope()."""
    own = public_key_bytes(private_key).hex()
    wrapped = envelope.get("keys", {}).get(own)
    if wrapped is None:
        raise DecryptionFailed("envelope is not addressed to this identity")
    content_key = decrypt(private_key, _unb64(wrapped))
    try:
        return AESGCM(content_key).decrypt(
            _unb64(envelope["nonce"]),
            _unb64(envelope["ciphertext"]),
            envelope.get("category", "").encode("utf-8"),
        )
    except (InvalidTag, KeyError, ValueError) as exc:
        raise DecryptionFailed(f"unable to open envelope: {type(exc).__name__}") from exc


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except ValueError as exc:
        raise DecryptionFailed("envelope field is not valid base64") from exc
