"""
models.py — Shared dataclasses for agent-settlement.

These are the data structures passed between the ledger client, the
lifecycle engine, the orchestrator and the settlement loop. Keeping them
in one file avoids circular imports.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class RequestStatus(str, Enum):
    OPEN = "open"
    RESPONDED = "responded"
    VALIDATED = "validated"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def from_chain(cls, value: int) -> "RequestStatus":
        """Map the contract's uint8 discriminant to a status."""
        try:
            return _CHAIN_STATUS[value]
        except KeyError:
            raise ValueError(f"unknown on-chain request status {value}") from None

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.CLAIMED, RequestStatus.CANCELLED, RequestStatus.EXPIRED)


_CHAIN_STATUS = {
    0: RequestStatus.OPEN,
    1: RequestStatus.RESPONDED,
    2: RequestStatus.VALIDATED,
    3: RequestStatus.CLAIMED,
    4: RequestStatus.EXPIRED,
    5: RequestStatus.CANCELLED,
}


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    VALIDATOR = "validator"


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------

@dataclass
class RequestSpec:
    """What a buyer asks for. Price is in token minor units (6 decimals)."""
    payload_locator: str
    price: int
    deadline: int
    target: Optional[int] = None   # seller identity token; None = open request
    category: str = ""


@dataclass
class Request:
    """On-ledger request as returned by getRequest()."""
    request_id: int
    buyer: int
    buyer_address: str
    target: Optional[int]
    payload_locator: str
    price: int
    deadline: int
    status: RequestStatus


@dataclass
class Response:
    """On-ledger response. Exactly one per request."""
    request_id: int
    seller: int
    seller_address: str
    locator: str
    commitment: str  # 0x-prefixed digest of the seller's secret


@dataclass
class Attestation:
    """A validator's pass/fail + score judgment of a delivered response."""
    request_id: int
    validator: int
    passed: bool
    score: int
    reason: str
    created_at: int = 0


@dataclass
class LedgerEvent:
    """A decoded contract log entry, ordered by (block_number, log_index)."""
    kind: str
    request_id: Optional[int]
    block_number: int
    log_index: int
    tx_hash: str
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass
class SubmissionReceipt:
    """Returned by LedgerClient.submit() once the call is confirmed."""
    kind: str
    tx_hash: str
    block_number: int
    gas_used: int
    attempts: int
    events: list[LedgerEvent] = field(default_factory=list)

    def first_event(self, kind: str) -> Optional[LedgerEvent]:
        return next((e for e in self.events if e.kind == kind), None)


@dataclass
class SettlementReceipt:
    """Returned by RequestEngine.claim() after a confirmed reveal."""
    request_id: int
    tx_hash: str
    seller_amount: int
    validator_amount: int
    settled_at: int


# ---------------------------------------------------------------------------
# Local state
# ---------------------------------------------------------------------------

@dataclass
class LocalRequest:
    """
    Read-through projection of a request this identity participates in.

    Stored as requests/{request_id}.json in the state directory. The
    commitment secret is never part of this record; it lives in the
    encrypted secret store until the claim is confirmed.
    """
    request_id: int
    role: Role
    status: RequestStatus
    payload_locator: str
    price: int
    deadline: int
    buyer: int = 0
    target: Optional[int] = None
    category: str = ""
    response_locator: Optional[str] = None
    commitment: Optional[str] = None
    counterpart: Optional[str] = None
    seller_amount: int = 0
    validator_amount: int = 0
    last_event: Optional[tuple[int, int]] = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["role"] = self.role.value
        data["status"] = self.status.value
        data["last_event"] = list(self.last_event) if self.last_event else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LocalRequest":
        data = dict(data)
        data["role"] = Role(data["role"])
        data["status"] = RequestStatus(data["status"])
        if data.get("last_event"):
            data["last_event"] = tuple(data["last_event"])
        return cls(**data)


@dataclass
class EarningsRecord:
    """One settled amount attributable to this identity."""
    request_id: int
    role: Role
    amount: int
    tx_hash: str = ""
    recorded_at: int = 0


@dataclass
class Registration:
    """Identity token minted on the ledger plus its profile pointer."""
    agent_id: int
    address: str
    profile_locator: str
    registered_at: int = 0


# ---------------------------------------------------------------------------
# Mailbox
# ---------------------------------------------------------------------------

@dataclass
class MailboxMessage:
    """Plaintext of a mailbox message after decryption."""
    sender: str          # hex compressed public key of the sender
    timestamp: int
    message_type: str
    payload: bytes


@dataclass
class MailboxDelivery:
    """Per-announcement poll result: either a message or the error that hit it."""
    locator: str
    message: Optional[MailboxMessage] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass
class HandlerContext:
    """Named fields handed to a judgment handler alongside the deliverable."""
    request_id: int
    category: str
    seller: str
    deadline: int
    price: int


@dataclass
class Verdict:
    passed: bool
    score: int
    reason: str


@dataclass
class ValidationOutcome:
    """Result of processing one pending validation in a poll cycle."""
    request_id: int
    attestation: Optional[Attestation] = None
    error: Optional[Exception] = None
    skipped: bool = False


@dataclass
class ValidationReport:
    """Aggregated result of one orchestrator poll cycle."""
    outcomes: list[ValidationOutcome] = field(default_factory=list)

    @property
    def submitted(self) -> list[Attestation]:
        return [o.attestation for o in self.outcomes if o.attestation is not None]

    @property
    def errors(self) -> list[ValidationOutcome]:
        return [o for o in self.outcomes if o.error is not None]


@dataclass
class ReputationScore:
    agent_id: int
    passed: int
    failed: int
    total_earnings: int
    score: float


# ---------------------------------------------------------------------------
# Settlement loop
# ---------------------------------------------------------------------------

@dataclass
class LoopIteration:
    """What one settlement loop iteration did."""
    validations: ValidationReport = field(default_factory=ValidationReport)
    events_applied: int = 0
    claimed: list[SettlementReceipt] = field(default_factory=list)
    expired: list[int] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
