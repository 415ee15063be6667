"""
keystore.py — Passphrase-protected key material and the local Identity.

The private key is written once to keystore.json in the state directory:
scrypt derives a 256-bit key from the passphrase and a random salt, and
AES-256-GCM seals the raw key bytes. The file is created with mode 0600.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_account import Account
from web3 import Web3

from . import encryption
from .errors import DecryptionFailed, NotFound, StorageCorrupted

logger = logging.getLogger("agent_settlement.keystore")

KEYSTORE_VERSION = 1
KEYSTORE_FILENAME = "keystore.json"
PASSPHRASE_ENV = "AGENT_SETTLEMENT_PASSPHRASE"

_SCRYPT_N = 2**15
_SCRYPT_R = 8
_SCRYPT_P = 1
_SALT_LEN = 16
_NONCE_LEN = 12


class Identity:
    """
    Key pair owned by this process.

    The raw private key stays inside this object; callers get the address,
    the compressed public key, a signing account, and decrypt operations.
    """

    def __init__(self, private_key: bytes):
        self._private_key = bytes(private_key)
        self._account = Account.from_key(self._private_key)
        self.public_key = encryption.public_key_bytes(self._private_key)

    @classmethod
    def generate(cls) -> "Identity":
        return cls(encryption.generate_private_key())

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    @property
    def mailbox_topic(self) -> str:
        """Inbound mailbox topic: keccak256 of the compressed public key."""
        return Web3.keccak(self.public_key).hex().removeprefix("0x")

    @property
    def account(self):
        """eth_account LocalAccount used by the ledger client for signing."""
        return self._account

    def decrypt(self, data: bytes) -> bytes:
        return encryption.decrypt(self._private_key, data)

    def open_envelope(self, envelope: dict) -> bytes:
        return encryption.open_envelope(self._private_key, envelope)

    def seal_for_self(self, plaintext: bytes) -> bytes:
        return encryption.encrypt(self.public_key, plaintext)

    def __repr__(self) -> str:
        return f"Identity(address={self.address})"


# ---------------------------------------------------------------------------
# Keystore file
# ---------------------------------------------------------------------------

def keystore_path(state_dir: Path) -> Path:
    return Path(state_dir) / KEYSTORE_FILENAME


def exists(state_dir: Path) -> bool:
    return keystore_path(state_dir).is_file()


def resolve_passphrase(passphrase: Optional[str] = None) -> str:
    resolved = passphrase if passphrase is not None else os.getenv(PASSPHRASE_ENV, "")
    if not resolved:
        raise ValueError(f"no passphrase given and {PASSPHRASE_ENV} is not set")
    return resolved


def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=32, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)


def save_identity(identity: Identity, state_dir: Path, passphrase: Optional[str] = None) -> Path:
    """Seal the identity's private key to disk. Refuses to overwrite."""
    path = keystore_path(state_dir)
    if path.exists():
        raise FileExistsError(f"keystore already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    salt = os.urandom(_SALT_LEN)
    nonce = os.urandom(_NONCE_LEN)
    key = _kdf(salt).derive(resolve_passphrase(passphrase).encode("utf-8"))
    ciphertext = AESGCM(key).encrypt(nonce, identity._private_key, None)

    document = {
        "version": KEYSTORE_VERSION,
        "address": identity.address,
        "kdf": {"name": "scrypt", "n": _SCRYPT_N, "r": _SCRYPT_R, "p": _SCRYPT_P},
        "salt": salt.hex(),
        "nonce": nonce.hex(),
        "ciphertext": ciphertext.hex(),
    }
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(document, handle, indent=2)
    logger.info("Keystore written: address=%s path=%s", identity.address, path)
    return path


def load_identity(state_dir: Path, passphrase: Optional[str] = None) -> Identity:
    """
    Unseal the keystore.

    Raises:
        NotFound:          no keystore in state_dir.
        DecryptionFailed:  wrong passphrase.
        StorageCorrupted:  file unreadable or structurally invalid.
    """
    path = keystore_path(state_dir)
    if not path.is_file():
        raise NotFound(f"no keystore at {path}")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
        if document.get("version") != KEYSTORE_VERSION:
            raise StorageCorrupted(path, f"unsupported version {document.get('version')}")
        kdf = document["kdf"]
        salt = bytes.fromhex(document["salt"])
        nonce = bytes.fromhex(document["nonce"])
        ciphertext = bytes.fromhex(document["ciphertext"])
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise StorageCorrupted(path, str(exc)) from exc

    key = Scrypt(salt=salt, length=32, n=kdf["n"], r=kdf["r"], p=kdf["p"]).derive(
        resolve_passphrase(passphrase).encode("utf-8")
    )
    try:
        private_key = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionFailed("wrong passphrase or tampered keystore") from exc

    identity = Identity(private_key)
    if Web3.to_checksum_address(document.get("address", identity.address)) != identity.address:
        raise StorageCorrupted(path, "address does not match key material")
    logger.debug("Keystore loaded: address=%s", identity.address)
    return identity
