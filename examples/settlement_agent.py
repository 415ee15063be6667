"""
examples/settlement_agent.py — Seller/validator agent running the settlement loop.

On first run a key pair is generated, encrypted into the state directory
and registered as an identity token. Every run then polls for validations
addressed to this agent, syncs ledger events, and claims payment for
validated responses until interrupted.

Environment (see SettlementConfig for the full list):
    AGENT_SETTLEMENT_RPC_URL, AGENT_SETTLEMENT_AGENT_REGISTRY,
    AGENT_SETTLEMENT_REQUEST_REGISTRY, AGENT_SETTLEMENT_TOKEN,
    AGENT_SETTLEMENT_PASSPHRASE

Run:
    python examples/settlement_agent.py                    # manual judgment
    python examples/settlement_agent.py ./judge.sh         # external handler
"""

import logging
import sys

from agent_settlement import (
    ContentClient,
    ExternalHandler,
    Identity,
    LedgerClient,
    LocalStore,
    ManualHandler,
    RequestEngine,
    SettlementConfig,
    SettlementLoop,
    ValidationOrchestrator,
    build_profile,
    register_identity,
)
from agent_settlement import keystore


def load_or_create_identity(config: SettlementConfig) -> Identity:
    if keystore.exists(config.state_dir):
        return keystore.load_identity(config.state_dir)
    identity = Identity.generate()
    keystore.save_identity(identity, config.state_dir)
    print(f"Generated identity {identity.address}")
    return identity


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = SettlementConfig()
    identity = load_or_create_identity(config)

    ledger = LedgerClient(config, identity)
    store = LocalStore(config.state_dir, identity)

    with ContentClient(config) as content:
        if store.load_registration() is None:
            profile = build_profile(identity, "example-agent", "Reviews code for a fee", config.capability_filter)
            registration = register_identity(ledger, content, store, profile)
            print(f"Registered as agent {registration.agent_id}")

        if len(sys.argv) > 1:
            handler = ExternalHandler(sys.argv[1:], timeout_seconds=config.handler_timeout_seconds)
        else:
            handler = ManualHandler()

        engine = RequestEngine(config, ledger, store, identity, content=content)
        orchestrator = ValidationOrchestrator(config, ledger, content, store, identity, handler, engine)
        loop = SettlementLoop(config, engine, store, orchestrator)
        loop.install_signal_handlers()
        loop.run()

    summary = engine.summary()
    print("\n=== Session Summary ===")
    for key, value in summary.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
