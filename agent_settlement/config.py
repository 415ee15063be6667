"""
config.py — Environment-driven configuration for agent-settlement.

All settings have defaults so a developer only needs to export
AGENT_SETTLEMENT_RPC_URL and the contract addresses for a working setup.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class SettlementConfig(BaseModel):
    """
    Configuration for the settlement engine.

    Reads from environment variables by default:
        AGENT_SETTLEMENT_RPC_URL           — ledger JSON-RPC endpoint
        AGENT_SETTLEMENT_CHAIN_ID          — chain id used when signing (default: 8453)
        AGENT_SETTLEMENT_AGENT_REGISTRY    — identity registry contract address
        AGENT_SETTLEMENT_REQUEST_REGISTRY  — request registry contract address
        AGENT_SETTLEMENT_TOKEN             — payment token contract address
        AGENT_SETTLEMENT_IPFS_API          — content network API (default: local node)
        AGENT_SETTLEMENT_IPFS_GATEWAY      — content network gateway
        AGENT_SETTLEMENT_PIN_JWT           — remote pinning service token (optional)
        AGENT_SETTLEMENT_STATE_DIR         — local state directory
        AGENT_SETTLEMENT_VALIDATOR_FEE_BPS — validator share of price in basis points
        AGENT_SETTLEMENT_HANDLER_TIMEOUT   — judgment handler timeout in seconds
        AGENT_SETTLEMENT_POLL_INTERVAL     — settlement loop interval in seconds
        AGENT_SETTLEMENT_CAPABILITIES      — comma-separated validator capability filter
    """

    rpc_url: str = os.getenv("AGENT_SETTLEMENT_RPC_URL", "https://mainnet.base.org")
    chain_id: int = int(os.getenv("AGENT_SETTLEMENT_CHAIN_ID", "8453"))
    agent_registry_address: str = os.getenv("AGENT_SETTLEMENT_AGENT_REGISTRY", _ZERO_ADDRESS)
    request_registry_address: str = os.getenv(
        "AGENT_SETTLEMENT_REQUEST_REGISTRY", _ZERO_ADDRESS
    )
    token_address: str = os.getenv(
        "AGENT_SETTLEMENT_TOKEN", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    )

    ipfs_api_url: str = os.getenv("AGENT_SETTLEMENT_IPFS_API", "http://localhost:5001")
    ipfs_gateway_url: str = os.getenv(
        "AGENT_SETTLEMENT_IPFS_GATEWAY", "https://gateway.pinata.cloud"
    )
    pinning_jwt: str = os.getenv("AGENT_SETTLEMENT_PIN_JWT", "")
    verify_content: bool = os.getenv("AGENT_SETTLEMENT_VERIFY_CONTENT", "true").lower() == "true"

    state_dir: Path = Path(
        os.getenv("AGENT_SETTLEMENT_STATE_DIR", str(Path.home() / ".agent-settlement"))
    )

    block_interval_seconds: float = float(os.getenv("AGENT_SETTLEMENT_BLOCK_INTERVAL", "2.0"))
    confirmation_blocks: int = int(os.getenv("AGENT_SETTLEMENT_CONFIRMATIONS", "1"))
    confirmation_timeout_seconds: Optional[float] = None
    max_submit_attempts: int = int(os.getenv("AGENT_SETTLEMENT_MAX_SUBMIT_ATTEMPTS", "3"))
    gas_bump_percent: int = int(os.getenv("AGENT_SETTLEMENT_GAS_BUMP_PERCENT", "20"))
    rpc_retries: int = int(os.getenv("AGENT_SETTLEMENT_RPC_RETRIES", "3"))
    rpc_backoff_seconds: float = float(os.getenv("AGENT_SETTLEMENT_RPC_BACKOFF", "1.0"))
    min_balance_wei: int = int(os.getenv("AGENT_SETTLEMENT_MIN_BALANCE_WEI", str(10**14)))

    validator_fee_bps: int = int(os.getenv("AGENT_SETTLEMENT_VALIDATOR_FEE_BPS", "500"))
    handler_timeout_seconds: float = float(os.getenv("AGENT_SETTLEMENT_HANDLER_TIMEOUT", "60"))
    poll_interval_seconds: float = float(os.getenv("AGENT_SETTLEMENT_POLL_INTERVAL", "30"))
    log_chunk_blocks: int = int(os.getenv("AGENT_SETTLEMENT_LOG_CHUNK", "2000"))
    start_block: int = int(os.getenv("AGENT_SETTLEMENT_START_BLOCK", "0"))
    timeout_seconds: int = int(os.getenv("AGENT_SETTLEMENT_TIMEOUT", "30"))

    capability_filter: list[str] = _env_list("AGENT_SETTLEMENT_CAPABILITIES")
    auto_claim: bool = os.getenv("AGENT_SETTLEMENT_AUTO_CLAIM", "true").lower() == "true"
    auto_expire: bool = os.getenv("AGENT_SETTLEMENT_AUTO_EXPIRE", "false").lower() == "true"

    @field_validator("validator_fee_bps")
    @classmethod
    def validate_fee_bps(cls, v: int) -> int:
        if v < 0 or v > 10_000:
            raise ValueError("validator_fee_bps must be between 0 and 10000")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1 or v > 300:
            raise ValueError("timeout_seconds must be between 1 and 300")
        return v

    @field_validator("max_submit_attempts", "rpc_retries", "confirmation_blocks", "log_chunk_blocks")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("handler_timeout_seconds", "block_interval_seconds")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @model_validator(mode="after")
    def default_confirmation_timeout(self) -> "SettlementConfig":
        # Bounded wait of roughly two block intervals unless set explicitly.
        if self.confirmation_timeout_seconds is None:
            self.confirmation_timeout_seconds = self.block_interval_seconds * 2
        return self
