"""
content.py — Content network client (IPFS HTTP API) and remote pinning.

All content network calls go through this module.

  - put/get/pin map to the node's /api/v0/add, /cat and /pin/add
  - get() verifies integrity by re-hashing the bytes (add?only-hash=true)
    and comparing with the requested locator
  - publish/poll implement store-and-poll announcements: each announcement
    is a small file under /mailbox/<topic>/ in the node's mutable file
    space, named so lexical order equals arrival order; the poll cursor is
    the last name seen
  - Every failure surfaces as ContentUnavailable; transient transport
    errors are retried first
  - Pluggable transport for testing (inject an httpx.Client)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import SettlementConfig
from .errors import ContentUnavailable
from .retry import with_retries

logger = logging.getLogger("agent_settlement.content")

MAILBOX_ROOT = "/mailbox"
PINNING_API_URL = "https://api.pinata.cloud"

_TRANSIENT = (httpx.TimeoutException, httpx.NetworkError)


def _raise_for_status(resp: httpx.Response, operation: str) -> None:
    """
    Translate node error responses into ContentUnavailable.

    Node errors are JSON: {"Message": "...", "Code": 0, "Type": "error"}
    """
    if resp.is_success:
        return
    try:
        message = resp.json().get("Message") or resp.text
    except ValueError:
        message = resp.text
    raise ContentUnavailable(f"[{operation}] {resp.status_code}: {message}")


@dataclass
class Announcement:
    name: str
    data: bytes


# ---------------------------------------------------------------------------
# Main client
# ---------------------------------------------------------------------------

class ContentClient:
    """Content-addressed put/get/pin plus topic announcements."""

    def __init__(
        self,
        config: SettlementConfig,
        http_client: Optional[httpx.Client] = None,
        pinning: Optional["PinningService"] = None,
    ):
        self._config = config
        self._http = http_client or httpx.Client(
            base_url=config.ipfs_api_url,
            timeout=config.timeout_seconds,
        )
        self._pinning = pinning
        if self._pinning is None and config.pinning_jwt:
            self._pinning = PinningService(config.pinning_jwt, timeout=config.timeout_seconds)
        logger.info("ContentClient initialized: api=%s", config.ipfs_api_url)

    def _post(self, path: str, operation: str, **kwargs) -> httpx.Response:
        def _call():
            resp = self._http.post(path, **kwargs)
            _raise_for_status(resp, operation)
            return resp

        return with_retries(
            _call,
            retry_on=_TRANSIENT,
            error_cls=ContentUnavailable,
            retries=self._config.rpc_retries,
            backoff=self._config.rpc_backoff_seconds,
            label=operation,
        )

    # ------------------------------------------------------------------
    # Content-addressed storage
    # ------------------------------------------------------------------

    def put(self, data: bytes, pin: bool = True) -> str:
        """Store data and return its locator (CIDv1)."""
        resp = self._post(
            "/api/v0/add",
            "put",
            params={"cid-version": 1, "pin": str(pin).lower()},
            files={"file": ("blob", data)},
        )
        locator = resp.json()["Hash"]
        logger.info("Content stored: locator=%s size=%d", locator, len(data))
        if pin and self._pinning is not None:
            self._pinning.pin_by_hash(locator)
        return locator

    def get(self, locator: str) -> bytes:
        """
        Retrieve data by locator.

        Raises:
            ContentUnavailable: not retrievable, or the bytes do not hash
                                back to the requested locator.
        """
        data = self._post("/api/v0/cat", "get", params={"arg": locator}).content
        if self._config.verify_content:
            computed = self._post(
                "/api/v0/add",
                "verify",
                params={"cid-version": 1, "only-hash": "true"},
                files={"file": ("blob", data)},
            ).json()["Hash"]
            if computed != locator:
                raise ContentUnavailable(
                    f"[get] integrity check failed: requested {locator}, content hashes to {computed}"
                )
        logger.debug("Content retrieved: locator=%s size=%d", locator, len(data))
        return data

    def pin(self, locator: str) -> None:
        self._post("/api/v0/pin/add", "pin", params={"arg": locator})
        if self._pinning is not None:
            self._pinning.pin_by_hash(locator)
        logger.info("Content pinned: locator=%s", locator)

    # ------------------------------------------------------------------
    # Announcements
    # ------------------------------------------------------------------

    def publish(self, topic: str, data: bytes) -> str:
        """Append an announcement to topic. Returns the announcement name."""
        name = f"{time.time_ns():020d}"
        self._post(
            "/api/v0/files/write",
            "publish",
            params={
                "arg": f"{MAILBOX_ROOT}/{topic}/{name}",
                "create": "true",
                "parents": "true",
                "truncate": "true",
            },
            files={"file": ("announcement", data)},
        )
        logger.debug("Announcement published: topic=%s name=%s", topic[:16], name)
        return name

    def poll(self, topic: str, cursor: str = "") -> list[Announcement]:
        """Return announcements on topic with names after cursor, oldest first."""
        try:
            listing = self._post(
                "/api/v0/files/ls",
                "poll",
                params={"arg": f"{MAILBOX_ROOT}/{topic}", "long": "true"},
            ).json()
        except ContentUnavailable as exc:
            if "does not exist" in str(exc):
                return []
            raise
        names = sorted(
            entry["Name"] for entry in (listing.get("Entries") or [])
            if entry["Name"] > cursor
        )
        announcements = []
        for name in names:
            data = self._post(
                "/api/v0/files/read", "poll", params={"arg": f"{MAILBOX_ROOT}/{topic}/{name}"}
            ).content
            announcements.append(Announcement(name=name, data=data))
        return announcements

    def remove_announcement(self, topic: str, name: str) -> None:
        self._post("/api/v0/files/rm", "remove", params={"arg": f"{MAILBOX_ROOT}/{topic}/{name}"})

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._http.close()
        if self._pinning is not None:
            self._pinning.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class PinningService:
    """Remote pinning so content outlives the local node."""

    def __init__(self, jwt: str, http_client: Optional[httpx.Client] = None, timeout: int = 30):
        self._http = http_client or httpx.Client(
            base_url=PINNING_API_URL,
            headers={"Authorization": f"Bearer {jwt}"},
            timeout=timeout,
        )

    def pin_by_hash(self, locator: str) -> None:
        def _call():
            resp = self._http.post("/pinning/pinByHash", json={"hashToPin": locator})
            if not resp.is_success:
                raise ContentUnavailable(f"[pin_by_hash] {resp.status_code}: {resp.text}")
            return resp

        with_retries(_call, retry_on=_TRANSIENT, error_cls=ContentUnavailable, label="pin_by_hash")
        logger.info("Remote pin requested: locator=%s", locator)

    def close(self) -> None:
        self._http.close()
