"""
identity.py — Identity token registration and profile metadata.

An identity token is minted once per key pair. After minting, the only
mutation is pointing the token at a new profile document on the content
network (setAgentURI).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from .content import ContentClient
from .errors import AlreadyRegistered, ContentUnavailable, NotFound, SubmissionFailed
from .ledger import EventFilter, LedgerCall, LedgerClient
from .models import Registration
from .store import LocalStore

logger = logging.getLogger("agent_settlement.identity")

PROFILE_VERSION = "0.1.0"


@dataclass
class AgentProfile:
    """Public profile document published when registering."""
    name: str
    description: str
    public_key: str
    address: str
    capabilities: list[str] = field(default_factory=list)
    pricing: int = 0          # default price in token minor units
    version: str = PROFILE_VERSION

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), indent=2, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "AgentProfile":
        raw = json.loads(data.decode("utf-8"))
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


def build_profile(
    identity,
    name: str,
    description: str = "",
    capabilities: Optional[list[str]] = None,
    pricing: int = 0,
) -> AgentProfile:
    return AgentProfile(
        name=name,
        description=description,
        public_key=identity.public_key_hex,
        address=identity.address,
        capabilities=list(capabilities or []),
        pricing=pricing,
    )


def register_identity(
    ledger: LedgerClient,
    content: ContentClient,
    store: LocalStore,
    profile: AgentProfile,
) -> Registration:
    """
    Publish the profile and mint the identity token.

    Raises:
        AlreadyRegistered: this key pair already owns an identity token.
        SubmissionFailed:  the register call confirmed without AgentRegistered.
    """
    existing = store.load_registration()
    if existing is not None:
        raise AlreadyRegistered(existing.agent_id)
    on_chain = ledger.agent_of(profile.address)
    if on_chain:
        raise AlreadyRegistered(on_chain)

    locator = content.put(profile.to_bytes())
    receipt = ledger.submit(LedgerCall.register(locator))
    event = receipt.first_event("AgentRegistered")
    if event is None:
        raise SubmissionFailed("register confirmed without AgentRegistered", code="missing_event")

    registration = Registration(
        agent_id=event.args["agentId"],
        address=profile.address,
        profile_locator=locator,
        registered_at=int(time.time()),
    )
    store.save_registration(registration)
    logger.info("Identity registered: agent_id=%s profile=%s", registration.agent_id, locator)
    return registration


def update_profile(
    ledger: LedgerClient,
    content: ContentClient,
    store: LocalStore,
    profile: AgentProfile,
) -> Registration:
    """Publish a new profile document and point the identity token at it."""
    registration = store.load_registration()
    if registration is None:
        raise NotFound("identity is not registered")
    locator = content.put(profile.to_bytes())
    ledger.submit(LedgerCall.set_profile(registration.agent_id, locator))
    registration.profile_locator = locator
    store.save_registration(registration)
    logger.info("Profile updated: agent_id=%s profile=%s", registration.agent_id, locator)
    return registration


def search_agents(
    ledger: LedgerClient,
    content: ContentClient,
    capability: Optional[str] = None,
    from_block: int = 0,
) -> dict[int, AgentProfile]:
    """
    Registered agents keyed by token id, optionally filtered by capability.

    Profiles are resolved from the newest AgentRegistered/AgentURIUpdated
    locator per agent. Profiles that cannot be fetched are skipped.
    """
    locators: dict[int, str] = {}
    for event in ledger.query_events(
        EventFilter(kinds=("AgentRegistered", "AgentURIUpdated"), from_block=from_block)
    ):
        locators[event.args["agentId"]] = event.args["agentURI"]

    profiles = {}
    for agent_id, locator in locators.items():
        try:
            profile = AgentProfile.from_bytes(content.get(locator))
        except (ContentUnavailable, ValueError, TypeError) as exc:
            logger.debug("search_agents: skipping agent %s: %s", agent_id, exc)
            continue
        if capability is None or capability in profile.capabilities:
            profiles[agent_id] = profile
    return profiles
