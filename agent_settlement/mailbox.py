"""
mailbox.py — Encrypted store-and-poll messaging over the content network.

Each identity's inbound channel is the topic keccak256(compressed_public_key),
hex-encoded. Anyone who knows a public key can compute its topic, so no
directory or prior key exchange is needed.

publish(): JSON-encode -> encrypt for recipient -> put -> announce locator
poll():    list new announcements -> get -> decrypt -> decode, per message
"""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Optional

from web3 import Web3

from . import encryption
from .content import ContentClient
from .errors import ContentUnavailable, DecryptionFailed
from .models import MailboxDelivery, MailboxMessage

logger = logging.getLogger("agent_settlement.mailbox")


def topic_for(public_key: encryption.PublicKeyLike) -> str:
    """Deterministic mailbox topic for a public key."""
    return Web3.keccak(encryption.normalize_public_key(public_key)).hex().removeprefix("0x")


def encode_message(message: MailboxMessage) -> bytes:
    return json.dumps(
        {
            "sender": message.sender,
            "timestamp": message.timestamp,
            "message_type": message.message_type,
            "payload": base64.b64encode(message.payload).decode("ascii"),
        },
        sort_keys=True,
    ).encode("utf-8")


def decode_message(data: bytes) -> MailboxMessage:
    try:
        raw = json.loads(data.decode("utf-8"))
        return MailboxMessage(
            sender=raw["sender"],
            timestamp=int(raw["timestamp"]),
            message_type=raw["message_type"],
            payload=base64.b64decode(raw["payload"], validate=True),
        )
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise DecryptionFailed(f"message body is malformed: {exc}") from exc


class Mailbox:
    """
    Inbound and outbound mail for one identity.

    The poll cursor is kept in the local store so a restarted process
    does not re-deliver messages it already returned.
    """

    def __init__(self, identity, content: ContentClient, store=None):
        self._identity = identity
        self._content = content
        self._store = store
        self.topic = identity.mailbox_topic
        self._cursor = store.get_cursor(self._cursor_key) if store is not None else ""

    @property
    def _cursor_key(self) -> str:
        return f"mailbox:{self.topic}"

    def publish(
        self,
        recipient_public_key: encryption.PublicKeyLike,
        plaintext: bytes,
        message_type: str = "message",
    ) -> str:
        """
        Encrypt plaintext for the recipient, store it, and announce it on the
        recipient's topic.

        Returns:
            Locator of the stored ciphertext.
        """
        message = MailboxMessage(
            sender=self._identity.public_key_hex,
            timestamp=int(time.time()),
            message_type=message_type,
            payload=plaintext,
        )
        sealed = encryption.encrypt(recipient_public_key, encode_message(message))
        locator = self._content.put(sealed)
        recipient_topic = topic_for(recipient_public_key)
        self._content.publish(recipient_topic, locator.encode("utf-8"))
        logger.info(
            "Mailbox message published: type=%s topic=%s locator=%s",
            message_type, recipient_topic[:16], locator,
        )
        return locator

    def poll(self) -> list[MailboxDelivery]:
        """
        Retrieve new messages on this identity's topic.

        A message that cannot be opened is returned with its error set and
        the rest of the batch is still processed. A message whose content
        cannot be fetched is returned with its error set and ends the batch;
        the cursor stays before it so the next poll retries it.
        """
        announcements = self._content.poll(self.topic, self._cursor)
        deliveries = []
        start = self._cursor
        for announcement in announcements:
            locator = announcement.data.decode("utf-8", errors="replace").strip()
            delivery = self._open(locator)
            deliveries.append(delivery)
            if isinstance(delivery.error, ContentUnavailable):
                break
            self._cursor = announcement.name
        if self._cursor != start and self._store is not None:
            self._store.set_cursor(self._cursor_key, self._cursor)
        failed = sum(1 for d in deliveries if not d.ok)
        if deliveries:
            logger.info("Mailbox poll: %d messages, %d failed", len(deliveries), failed)
        return deliveries

    def _open(self, locator: str) -> MailboxDelivery:
        try:
            sealed = self._content.get(locator)
            message = decode_message(self._identity.decrypt(sealed))
        except (ContentUnavailable, DecryptionFailed) as exc:
            logger.warning("Mailbox message %s could not be opened: %s", locator, exc)
            return MailboxDelivery(locator=locator, error=exc)
        return MailboxDelivery(locator=locator, message=message)

    @property
    def cursor(self) -> Optional[str]:
        return self._cursor or None
