"""
errors.py — Typed exceptions for agent-settlement.

Every component raises a subclass of SettlementError so callers never
need to inspect raw RPC payloads, HTTP responses, or process output.
Kept in one module so the ledger, content, and engine layers can share
them without circular imports.

Only InsufficientFunds carries address/amount detail upward; everything
else carries a short machine-oriented reason.
"""

from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base exception for all settlement engine errors."""


class NetworkError(SettlementError):
    """Unrecoverable transport error after retries were exhausted."""


class InsufficientFunds(SettlementError):
    """Balance precondition failed before any submission was attempted."""

    def __init__(self, address: str, amount_needed: int):
        self.address = address
        self.amount_needed = amount_needed
        super().__init__(f"insufficient funds: address={address} amount_needed={amount_needed}")


class SubmissionFailed(SettlementError):
    """
    A ledger call could not be confirmed.

    `code` is "reverted" for contract-level rejections (never retried),
    "rejected" when the node refused the first broadcast, "exhausted" when
    every gas-escalated attempt failed and "unconfirmed" when a transaction
    was included but did not reach the required confirmations in time.
    """

    def __init__(self, reason: str, code: str = "exhausted", attempts: int = 0):
        self.reason = reason
        self.code = code
        self.attempts = attempts
        super().__init__(f"[{code}] {reason}")


class ContentUnavailable(SettlementError):
    """Store or retrieve on the content network failed."""


class DecryptionFailed(SettlementError):
    """A message or deliverable could not be opened with the local key."""


class HandlerTimeout(SettlementError):
    """The judgment handler did not finish within its configured timeout."""


class HandlerCrashed(SettlementError):
    """The judgment handler failed or produced an unusable verdict."""


class InvalidTransition(SettlementError):
    """Attempted state change violates the lifecycle guard table."""

    def __init__(self, request_id: int, current: object, target: object, detail: str = ""):
        self.request_id = request_id
        self.current = current
        self.target = target
        message = f"request {request_id}: {current} -> {target} not allowed"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class AlreadyClaimed(SettlementError):
    """The request has already been settled."""


class Expired(SettlementError):
    """The request deadline has passed."""


class NotFound(SettlementError):
    """No local or on-ledger record exists for the given key."""


class AlreadyRegistered(SettlementError):
    """This key pair already owns an identity token."""

    def __init__(self, agent_id: int):
        self.agent_id = agent_id
        super().__init__(f"identity already registered as agent {agent_id}")


class StorageCorrupted(SettlementError):
    """
    Local state (secret store, request cache, keystore) cannot be read.

    The only error considered fatal to the settlement loop.
    """

    def __init__(self, path: object, detail: Optional[str] = None):
        self.path = path
        super().__init__(f"local state unreadable: {path}" + (f" ({detail})" if detail else ""))
