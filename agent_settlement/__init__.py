"""
agent-settlement — Hash-locked settlement of paid work between autonomous agents.

Public API:
    SettlementConfig        — Environment-driven configuration
    Identity                — Local key pair (signing + encryption)
    LedgerClient            — Balance checks, signed submission, event queries
    LedgerCall              — One state-mutating ledger call
    EventFilter             — Log-range query parameters
    ContentClient           — Content network put/get/pin + announcements
    Mailbox                 — Encrypted store-and-poll messaging
    LocalStore              — Local request cache, secrets, earnings
    RequestEngine           — Request lifecycle: create/respond/claim/cancel/expire
    ValidationOrchestrator  — Pending validation poll + attestation
    ExternalHandler         — Judgment via an external process
    ManualHandler           — Judgment via operator prompt
    SettlementLoop          — Continuous, cancellable settlement process
    register_identity       — Publish profile and mint the identity token
    update_profile          — Point the identity token at a new profile
    generate_commitment     — Fresh hash-lock secret and its digest
    verify                  — Check a secret against its digest
    split_fee               — Seller/validator amounts for a price
    SettlementError         — Base exception (typed subclasses below)
"""

__version__ = "0.1.0"

from .commitment import generate_commitment, split_fee, verify
from .config import SettlementConfig
from .content import ContentClient, PinningService
from .daemon import SettlementLoop
from .errors import (
    AlreadyClaimed,
    AlreadyRegistered,
    ContentUnavailable,
    DecryptionFailed,
    Expired,
    HandlerCrashed,
    HandlerTimeout,
    InsufficientFunds,
    InvalidTransition,
    NetworkError,
    NotFound,
    SettlementError,
    StorageCorrupted,
    SubmissionFailed,
)
from .handlers import ExternalHandler, JudgmentHandler, ManualHandler
from .identity import AgentProfile, build_profile, register_identity, search_agents, update_profile
from .keystore import Identity, load_identity, save_identity
from .ledger import EventFilter, LedgerCall, LedgerClient
from .lifecycle import RequestEngine
from .mailbox import Mailbox
from .models import (
    Attestation,
    EarningsRecord,
    LocalRequest,
    Request,
    RequestSpec,
    RequestStatus,
    Response,
    Role,
    SettlementReceipt,
    ValidationReport,
)
from .reputation import compute_reputation, reputation_tier
from .store import LocalStore
from .validation import ValidationOrchestrator

__all__ = [
    "__version__",
    "SettlementConfig",
    "Identity",
    "load_identity",
    "save_identity",
    "LedgerClient",
    "LedgerCall",
    "EventFilter",
    "ContentClient",
    "PinningService",
    "Mailbox",
    "LocalStore",
    "RequestEngine",
    "ValidationOrchestrator",
    "JudgmentHandler",
    "ExternalHandler",
    "ManualHandler",
    "SettlementLoop",
    "AgentProfile",
    "build_profile",
    "register_identity",
    "update_profile",
    "search_agents",
    "generate_commitment",
    "verify",
    "split_fee",
    "compute_reputation",
    "reputation_tier",
    "Attestation",
    "EarningsRecord",
    "LocalRequest",
    "Request",
    "RequestSpec",
    "RequestStatus",
    "Response",
    "Role",
    "SettlementReceipt",
    "ValidationReport",
    "SettlementError",
    "NetworkError",
    "InsufficientFunds",
    "SubmissionFailed",
    "ContentUnavailable",
    "DecryptionFailed",
    "HandlerTimeout",
    "HandlerCrashed",
    "InvalidTransition",
    "AlreadyClaimed",
    "AlreadyRegistered",
    "Expired",
    "NotFound",
    "StorageCorrupted",
]
