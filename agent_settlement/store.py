"""
store.py — Local persisted state in the state directory.

Layout:
    requests/{request_id}.json     LocalRequest projection
    secrets/{request_id}.sealed    commitment secret, encrypted to own key
    validations/{request_id}.json  attestations produced by this identity
    earnings.jsonl                 append-only earnings records
    registration.json              identity token id + profile locator
    cursors.json                   poll cursors (block heights, mailbox names)

The store assumes a single writer process per state directory. Every file
is replaced atomically; the secret file is fsynced before put_secret()
returns so it is durable before the digest is broadcast.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from .errors import DecryptionFailed, NotFound, StorageCorrupted
from .models import Attestation, EarningsRecord, LocalRequest, Registration, RequestStatus, Role

logger = logging.getLogger("agent_settlement.store")


def _atomic_write(path: Path, data: bytes, mode: int = 0o600) -> None:
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class LocalStore:
    """File-backed local state for one identity."""

    def __init__(self, state_dir: Path, identity):
        self.root = Path(state_dir)
        self._identity = identity
        self._requests = self.root / "requests"
        self._secrets = self.root / "secrets"
        self._validations = self.root / "validations"
        self._earnings = self.root / "earnings.jsonl"
        self._registration = self.root / "registration.json"
        self._cursors = self.root / "cursors.json"
        for directory in (self.root, self._requests, self._secrets, self._validations):
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def save_request(self, request: LocalRequest) -> None:
        request.updated_at = int(time.time())
        payload = json.dumps(request.to_dict(), indent=2, sort_keys=True).encode("utf-8")
        _atomic_write(self._requests / f"{request.request_id}.json", payload)

    def load_request(self, request_id: int) -> LocalRequest:
        path = self._requests / f"{request_id}.json"
        if not path.is_file():
            raise NotFound(f"request {request_id} is not tracked locally")
        return self._read_request(path)

    def find_request(self, request_id: int) -> Optional[LocalRequest]:
        try:
            return self.load_request(request_id)
        except NotFound:
            return None

    def requests(
        self,
        status: Optional[RequestStatus] = None,
        role: Optional[Role] = None,
    ) -> list[LocalRequest]:
        found = [self._read_request(p) for p in sorted(self._requests.glob("*.json"))]
        return [
            r for r in found
            if (status is None or r.status == status) and (role is None or r.role == role)
        ]

    def _read_request(self, path: Path) -> LocalRequest:
        try:
            return LocalRequest.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageCorrupted(path, str(exc)) from exc

    # ------------------------------------------------------------------
    # Commitment secrets
    # ------------------------------------------------------------------

    def put_secret(self, request_id: int, secret: bytes) -> None:
        """Durably store a secret, sealed to this identity's public key."""
        _atomic_write(self._secrets / f"{request_id}.sealed", self._identity.seal_for_self(secret))
        logger.debug("Secret stored for request %s", request_id)

    def get_secret(self, request_id: int) -> bytes:
        """
        Raises:
            NotFound:         no secret was ever stored (or it was released).
            StorageCorrupted: the sealed file exists but cannot be opened.
        """
        path = self._secrets / f"{request_id}.sealed"
        if not path.is_file():
            raise NotFound(f"no secret stored for request {request_id}")
        try:
            return self._identity.decrypt(path.read_bytes())
        except (OSError, DecryptionFailed) as exc:
            raise StorageCorrupted(path, str(exc)) from exc

    def has_secret(self, request_id: int) -> bool:
        return (self._secrets / f"{request_id}.sealed").is_file()

    def delete_secret(self, request_id: int) -> None:
        path = self._secrets / f"{request_id}.sealed"
        if path.exists():
            path.unlink()
            logger.debug("Secret released for request %s", request_id)

    # ------------------------------------------------------------------
    # Earnings
    # ------------------------------------------------------------------

    def append_earnings(self, record: EarningsRecord) -> bool:
        """
        Append a record unless one already exists for (request_id, role).

        Returns True if the record was written.
        """
        if any(
            e.request_id == record.request_id and e.role == record.role
            for e in self.earnings()
        ):
            return False
        record.recorded_at = record.recorded_at or int(time.time())
        line = json.dumps({**asdict(record), "role": record.role.value}, sort_keys=True)
        with self._earnings.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        logger.info(
            "Earnings recorded: request=%s role=%s amount=%d",
            record.request_id, record.role.value, record.amount,
        )
        return True

    def earnings(self) -> list[EarningsRecord]:
        if not self._earnings.is_file():
            return []
        records = []
        try:
            for line in self._earnings.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    raw = json.loads(line)
                    raw["role"] = Role(raw["role"])
                    records.append(EarningsRecord(**raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageCorrupted(self._earnings, str(exc)) from exc
        return records

    # ------------------------------------------------------------------
    # Attestations
    # ------------------------------------------------------------------

    def save_attestation(self, attestation: Attestation) -> None:
        payload = json.dumps(asdict(attestation), indent=2, sort_keys=True).encode("utf-8")
        _atomic_write(self._validations / f"{attestation.request_id}.json", payload)

    def has_attestation(self, request_id: int) -> bool:
        return (self._validations / f"{request_id}.json").is_file()

    def attestations(self) -> list[Attestation]:
        found = []
        for path in sorted(self._validations.glob("*.json")):
            try:
                found.append(Attestation(**json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, TypeError) as exc:
                raise StorageCorrupted(path, str(exc)) from exc
        return found

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def save_registration(self, registration: Registration) -> None:
        payload = json.dumps(asdict(registration), indent=2, sort_keys=True).encode("utf-8")
        _atomic_write(self._registration, payload)

    def load_registration(self) -> Optional[Registration]:
        if not self._registration.is_file():
            return None
        try:
            return Registration(**json.loads(self._registration.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as exc:
            raise StorageCorrupted(self._registration, str(exc)) from exc

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    def _read_cursors(self) -> dict:
        if not self._cursors.is_file():
            return {}
        try:
            return json.loads(self._cursors.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StorageCorrupted(self._cursors, str(exc)) from exc

    def get_cursor(self, key: str, default=""):
        return self._read_cursors().get(key, default)

    def set_cursor(self, key: str, value) -> None:
        cursors = self._read_cursors()
        cursors[key] = value
        _atomic_write(self._cursors, json.dumps(cursors, sort_keys=True).encode("utf-8"))
