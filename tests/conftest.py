"""
Shared pytest fixtures for agent-settlement tests.
"""

from __future__ import annotations

import pytest

from agent_settlement.config import SettlementConfig
from agent_settlement.keystore import Identity
from agent_settlement.lifecycle import RequestEngine
from agent_settlement.store import LocalStore

from fakes import FakeChain, FakeContent

REQUEST_REGISTRY = "0x00000000000000000000000000000000000000A1"
AGENT_REGISTRY = "0x00000000000000000000000000000000000000B2"
TOKEN = "0x00000000000000000000000000000000000000C3"


@pytest.fixture
def config(tmp_path) -> SettlementConfig:
    return SettlementConfig(
        rpc_url="http://ledger.test",
        chain_id=31337,
        agent_registry_address=AGENT_REGISTRY,
        request_registry_address=REQUEST_REGISTRY,
        token_address=TOKEN,
        ipfs_api_url="http://ipfs.test",
        pinning_jwt="",
        state_dir=tmp_path / "state",
        block_interval_seconds=0.04,
        rpc_retries=2,
        rpc_backoff_seconds=0.0,
        capability_filter=[],
        auto_claim=True,
        auto_expire=False,
        start_block=0,
    )


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def content() -> FakeContent:
    return FakeContent()


@pytest.fixture(scope="session")
def buyer_identity() -> Identity:
    return Identity.generate()


@pytest.fixture(scope="session")
def seller_identity() -> Identity:
    return Identity.generate()


@pytest.fixture(scope="session")
def validator_identity() -> Identity:
    return Identity.generate()


class Participant:
    """One agent wired to the shared fake chain: identity, store, ledger, engine."""

    def __init__(self, config, chain, content, identity, name):
        self.identity = identity
        self.agent_id = chain.register(identity)
        self.store = LocalStore(config.state_dir / name, identity)
        self.ledger = chain.ledger_for(identity, config.min_balance_wei)
        self.engine = RequestEngine(
            config, self.ledger, self.store, identity,
            agent_id=self.agent_id, clock=chain.clock, content=content,
        )


@pytest.fixture
def buyer(config, chain, content, buyer_identity) -> Participant:
    return Participant(config, chain, content, buyer_identity, "buyer")


@pytest.fixture
def seller(config, chain, content, seller_identity) -> Participant:
    return Participant(config, chain, content, seller_identity, "seller")


@pytest.fixture
def validator(config, chain, content, validator_identity) -> Participant:
    return Participant(config, chain, content, validator_identity, "validator")
