"""
ledger.py — Signed submissions and log queries against the contract set.

Thin abstraction layer between the lifecycle engine and the external
ledger. All JSON-RPC traffic goes through this class.

Design goals:
  - Every state-mutating call is gated on a native balance check and
    raises InsufficientFunds before anything is signed or sent
  - Transactions are signed locally; the private key never leaves the
    Identity / eth_account boundary
  - One sequence number (nonce) stream per identity, monotonically
    increasing, guarded by a lock
  - Confirmation is a bounded poll; dropped or underpriced attempts are
    re-sent with an escalating gas price, contract reverts are surfaced
    immediately as SubmissionFailed(code="reverted")
  - Transient RPC failures are retried with exponential backoff
  - Pluggable transport for testing (inject a Web3 with a fake provider)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError

from . import abi
from .config import SettlementConfig
from .errors import InsufficientFunds, NetworkError, NotFound, SettlementError, SubmissionFailed
from .models import LedgerEvent, Request, RequestSpec, RequestStatus, Response, SubmissionReceipt
from .retry import with_retries

logger = logging.getLogger("agent_settlement.ledger")

_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_GAS_HEADROOM_PERCENT = 20
_REPLACEABLE_ERRORS = ("underpriced", "fee too low", "already known", "replacement transaction")


# ---------------------------------------------------------------------------
# RPC error classification
# ---------------------------------------------------------------------------

_TRANSIENT_RPC_MARKERS = ("rate limit", "too many requests", "timeout", "timed out", "try again")


def _is_transient(exc: BaseException) -> bool:
    """
    OSError (connection refused/reset, timeouts; the HTTP provider's
    requests exceptions derive from it) is always transient. A JSON-RPC
    error response is transient only when the node reports a rate limit or
    its own timeout; anything else describes the call itself.
    """
    if isinstance(exc, OSError):
        return True
    return any(marker in _rpc_reason(exc).lower() for marker in _TRANSIENT_RPC_MARKERS)


# ---------------------------------------------------------------------------
# Calls and filters
# ---------------------------------------------------------------------------

# kind -> (contract key, function name)
CALL_TARGETS: dict[str, tuple[str, str]] = {
    "register": ("agent_registry", "register"),
    "set_profile": ("agent_registry", "setAgentURI"),
    "create_request": ("request_registry", "createRequest"),
    "approve_allowance": ("token", "approve"),
    "submit_response": ("request_registry", "submitResponse"),
    "request_validation": ("request_registry", "requestValidation"),
    "submit_validation": ("request_registry", "submitValidation"),
    "claim": ("request_registry", "claim"),
    "cancel": ("request_registry", "cancel"),
    "expire": ("request_registry", "expire"),
    "withdraw": ("token", "transfer"),
}

# event kind -> contract key
EVENT_SOURCES: dict[str, str] = {
    "AgentRegistered": "agent_registry",
    "AgentURIUpdated": "agent_registry",
    "RequestCreated": "request_registry",
    "ResponseSubmitted": "request_registry",
    "ValidationRequested": "request_registry",
    "AttestationRecorded": "request_registry",
    "RequestValidated": "request_registry",
    "RequestClaimed": "request_registry",
    "RequestCancelled": "request_registry",
    "RequestExpired": "request_registry",
}

REQUEST_EVENTS = tuple(k for k, v in EVENT_SOURCES.items() if v == "request_registry")


@dataclass(frozen=True)
class LedgerCall:
    """One logical state-mutating call. Build with the classmethods."""
    kind: str
    args: tuple = ()

    def __post_init__(self):
        if self.kind not in CALL_TARGETS:
            raise ValueError(f"unknown ledger call kind '{self.kind}'")

    @classmethod
    def register(cls, profile_locator: str) -> "LedgerCall":
        return cls("register", (profile_locator,))

    @classmethod
    def set_profile(cls, agent_id: int, profile_locator: str) -> "LedgerCall":
        return cls("set_profile", (agent_id, profile_locator))

    @classmethod
    def create_request(cls, spec: RequestSpec) -> "LedgerCall":
        return cls("create_request", (spec.payload_locator, spec.price, spec.deadline, spec.target or 0))

    @classmethod
    def approve_allowance(cls, amount: int) -> "LedgerCall":
        return cls("approve_allowance", (amount,))

    @classmethod
    def submit_response(cls, request_id: int, locator: str, secret_digest: bytes) -> "LedgerCall":
        return cls("submit_response", (request_id, locator, bytes(secret_digest)))

    @classmethod
    def request_validation(cls, request_id: int) -> "LedgerCall":
        return cls("request_validation", (request_id,))

    @classmethod
    def submit_validation(cls, request_id: int, passed: bool, validator_id: int) -> "LedgerCall":
        return cls("submit_validation", (request_id, passed, validator_id))

    @classmethod
    def claim(cls, request_id: int, secret: bytes) -> "LedgerCall":
        return cls("claim", (request_id, bytes(secret)))

    @classmethod
    def cancel(cls, request_id: int) -> "LedgerCall":
        return cls("cancel", (request_id,))

    @classmethod
    def expire(cls, request_id: int) -> "LedgerCall":
        return cls("expire", (request_id,))

    @classmethod
    def withdraw(cls, destination: str, amount: int) -> "LedgerCall":
        return cls("withdraw", (Web3.to_checksum_address(destination), amount))

    def __repr__(self) -> str:
        # claim carries the plaintext secret; never render it.
        return f"LedgerCall(kind={self.kind!r})"


@dataclass
class EventFilter:
    """Log-range query. to_block=None means the current head."""
    kinds: tuple[str, ...] = REQUEST_EVENTS
    from_block: int = 0
    to_block: Optional[int] = None
    request_id: Optional[int] = None
    extra_topics: list = field(default_factory=list)


# ---------------------------------------------------------------------------
# Main client
# ---------------------------------------------------------------------------

class LedgerClient:
    """
    Client for the identity registry, request registry and payment token.

    Usage:
        ledger = LedgerClient(config, identity)
        receipt = ledger.submit(LedgerCall.cancel(42))
        for event in ledger.query_events(EventFilter(kinds=("RequestCreated",))):
            ...

    Pass web3 in tests to inject a fake provider.
    """

    def __init__(self, config: SettlementConfig, identity=None, web3: Optional[Web3] = None):
        self._config = config
        self._identity = identity
        self._web3 = web3 or Web3(
            Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": config.timeout_seconds})
        )
        self._contracts = {
            "agent_registry": self._contract(config.agent_registry_address, abi.AGENT_REGISTRY_ABI),
            "request_registry": self._contract(
                config.request_registry_address, abi.REQUEST_REGISTRY_ABI
            ),
            "token": self._contract(config.token_address, abi.TOKEN_ABI),
        }
        self._topics: dict[str, tuple[str, str]] = {}
        for kind, source in EVENT_SOURCES.items():
            event_abi = next(
                e for e in self._contracts[source].abi
                if e["type"] == "event" and e["name"] == kind
            )
            signature = f"{kind}({','.join(i['type'] for i in event_abi['inputs'])})"
            self._topics[Web3.keccak(text=signature).hex().removeprefix("0x")] = (source, kind)
        self._nonce_lock = threading.Lock()
        self._next_nonce: Optional[int] = None
        logger.info(
            "LedgerClient initialized: rpc=%s chain_id=%d signer=%s",
            config.rpc_url, config.chain_id, self.address or "(read-only)",
        )

    def _contract(self, address: str, contract_abi: list):
        return self._web3.eth.contract(address=Web3.to_checksum_address(address), abi=contract_abi)

    @property
    def address(self) -> Optional[str]:
        return self._identity.address if self._identity is not None else None

    @property
    def request_registry_address(self) -> str:
        return self._contracts["request_registry"].address

    def _rpc(self, fn: Callable[[], Any], label: str, passthrough: tuple = ()):
        """Run one RPC, retrying transient failures. Error responses become NetworkError."""
        return with_retries(
            fn,
            retry_on=(OSError, Web3RPCError),
            error_cls=NetworkError,
            retries=self._config.rpc_retries,
            backoff=self._config.rpc_backoff_seconds,
            label=f"ledger {label}",
            passthrough=passthrough,
            is_transient=_is_transient,
        )

    def _view(self, fn, label: str, missing: Optional[str] = None):
        """
        eth_call a contract view. A revert is NotFound when `missing`
        describes what the view looks up, SubmissionFailed otherwise.
        """
        try:
            return self._rpc(fn.call, label)
        except ContractLogicError as exc:
            reason = _revert_reason(exc)
            if missing is not None:
                raise NotFound(f"{missing}: {reason}") from exc
            raise SubmissionFailed(reason, code="reverted") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def check_balance(self, address: Optional[str] = None) -> int:
        """Native (gas) balance in wei for address, defaulting to the signer."""
        target = Web3.to_checksum_address(address or self._require_identity().address)
        return self._rpc(lambda: self._web3.eth.get_balance(target), "check_balance")

    def token_balance(self, address: Optional[str] = None) -> int:
        target = Web3.to_checksum_address(address or self._require_identity().address)
        fn = self._contracts["token"].functions.balanceOf(target)
        return self._view(fn, "token_balance")

    def block_number(self) -> int:
        return self._rpc(lambda: self._web3.eth.block_number, "block_number")

    def agent_of(self, address: Optional[str] = None) -> Optional[int]:
        """Identity token id owned by address, or None if not registered."""
        target = Web3.to_checksum_address(address or self._require_identity().address)
        fn = self._contracts["agent_registry"].functions.agentOf(target)
        agent_id = self._view(fn, "agent_of")
        return agent_id or None

    def get_request(self, request_id: int) -> Request:
        fn = self._contracts["request_registry"].functions.getRequest(request_id)
        buyer, buyer_id, target, locator, price, deadline, status = self._view(
            fn, "get_request", missing=f"request {request_id} does not exist"
        )
        if buyer == _ZERO_ADDRESS:
            raise NotFound(f"request {request_id} does not exist")
        return Request(
            request_id=request_id,
            buyer=buyer_id,
            buyer_address=buyer,
            target=target or None,
            payload_locator=locator,
            price=price,
            deadline=deadline,
            status=RequestStatus.from_chain(status),
        )

    def get_response(self, request_id: int) -> Response:
        fn = self._contracts["request_registry"].functions.getResponse(request_id)
        seller, seller_id, locator, secret_hash = self._view(
            fn, "get_response", missing=f"request {request_id} has no response"
        )
        if seller == _ZERO_ADDRESS:
            raise NotFound(f"request {request_id} has no response")
        return Response(
            request_id=request_id,
            seller=seller_id,
            seller_address=seller,
            locator=locator,
            commitment=HexBytes(secret_hash).to_0x_hex(),
        )

    # ------------------------------------------------------------------
    # Event log queries
    # ------------------------------------------------------------------

    def query_events(self, event_filter: EventFilter) -> Iterator[LedgerEvent]:
        """
        Lazily yield decoded events ordered by (block_number, log_index).

        The range is fetched in chunks of config.log_chunk_blocks; the
        generator is restartable by calling again with from_block set past
        the last position consumed.
        """
        unknown = [k for k in event_filter.kinds if k not in EVENT_SOURCES]
        if unknown:
            raise ValueError(f"unknown event kinds: {unknown}")

        to_block = event_filter.to_block
        if to_block is None:
            to_block = self.block_number()
        topic0 = ["0x" + t for t, (_, kind) in self._topics.items() if kind in event_filter.kinds]
        addresses = sorted({self._contracts[EVENT_SOURCES[k]].address for k in event_filter.kinds})
        topics: list = [topic0]
        if event_filter.request_id is not None:
            topics.append("0x" + event_filter.request_id.to_bytes(32, "big").hex())
        topics.extend(event_filter.extra_topics)

        start = event_filter.from_block
        chunk = self._config.log_chunk_blocks
        while start <= to_block:
            end = min(start + chunk - 1, to_block)
            params = {"fromBlock": start, "toBlock": end, "address": addresses, "topics": topics}
            logs = self._rpc(lambda: self._web3.eth.get_logs(params), "query_events")
            decoded = [e for e in (self._decode_log(log) for log in logs) if e is not None]
            decoded.sort(key=lambda e: e.position)
            logger.debug("query_events: blocks %d-%d -> %d events", start, end, len(decoded))
            yield from decoded
            start = end + 1

    def _decode_log(self, log) -> Optional[LedgerEvent]:
        if not log["topics"]:
            return None
        source_kind = self._topics.get(HexBytes(log["topics"][0]).hex().removeprefix("0x"))
        if source_kind is None:
            return None
        source, kind = source_kind
        event = getattr(self._contracts[source].events, kind)().process_log(log)
        args = {key: _plain(value) for key, value in dict(event["args"]).items()}
        return LedgerEvent(
            kind=kind,
            request_id=args.get("requestId"),
            block_number=event["blockNumber"],
            log_index=event["logIndex"],
            tx_hash=HexBytes(event["transactionHash"]).to_0x_hex(),
            args=args,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, call: LedgerCall) -> SubmissionReceipt:
        """
        Sign, send and confirm one logical call.

        Returns:
            SubmissionReceipt with the confirmed block and decoded events.

        Raises:
            InsufficientFunds: balance below the configured minimum or below
                               gas_limit * gas_price. Nothing is sent.
            SubmissionFailed:  revert (code="reverted") or every attempt was
                               dropped/underpriced (code="exhausted").
            NetworkError:      RPC unreachable after retries.
        """
        identity = self._require_identity()
        with self._nonce_lock:
            balance = self.check_balance(identity.address)
            if balance < self._config.min_balance_wei:
                logger.warning("submit %s: balance below minimum for %s", call.kind, identity.address)
                raise InsufficientFunds(identity.address, self._config.min_balance_wei - balance)

            fn = self._function(call)
            gas_limit = self._estimate_gas(fn, call)
            gas_price = self._rpc(lambda: self._web3.eth.gas_price, "gas_price")
            if balance < gas_limit * gas_price:
                raise InsufficientFunds(identity.address, gas_limit * gas_price - balance)

            nonce = self._reserve_nonce(identity.address)
            sent: list[HexBytes] = []
            last_reason = ""
            for attempt in range(1, self._config.max_submit_attempts + 1):
                tx = fn.build_transaction({
                    "from": identity.address,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "chainId": self._config.chain_id,
                })
                signed = identity.account.sign_transaction(tx)
                try:
                    tx_hash = self._rpc(
                        lambda: self._web3.eth.send_raw_transaction(signed.raw_transaction),
                        "send_raw_transaction",
                        passthrough=(Web3RPCError,),
                    )
                    sent.append(HexBytes(tx_hash))
                    logger.info(
                        "submit %s: attempt %d/%d sent tx=%s nonce=%d gas_price=%d",
                        call.kind, attempt, self._config.max_submit_attempts,
                        HexBytes(tx_hash).to_0x_hex(), nonce, gas_price,
                    )
                except Web3RPCError as exc:
                    last_reason = _rpc_reason(exc)
                    if "nonce too low" in last_reason.lower() and not sent:
                        self._next_nonce = None
                        nonce = self._reserve_nonce(identity.address)
                        continue
                    if not sent and not any(m in last_reason.lower() for m in _REPLACEABLE_ERRORS):
                        raise SubmissionFailed(last_reason, code="rejected", attempts=attempt) from exc
                    logger.warning("submit %s: attempt %d rejected: %s", call.kind, attempt, last_reason)

                try:
                    receipt = self._await_confirmation(sent) if sent else None
                except SubmissionFailed as exc:
                    self._next_nonce = nonce + 1
                    exc.attempts = attempt
                    raise
                if receipt is None:
                    last_reason = last_reason or "transaction dropped before confirmation"
                    gas_price = _bump(gas_price, self._config.gas_bump_percent)
                    continue

                self._next_nonce = nonce + 1
                if receipt["status"] == 1:
                    return SubmissionReceipt(
                        kind=call.kind,
                        tx_hash=HexBytes(receipt["transactionHash"]).to_0x_hex(),
                        block_number=receipt["blockNumber"],
                        gas_used=receipt["gasUsed"],
                        attempts=attempt,
                        events=[e for e in (self._decode_log(log) for log in receipt["logs"]) if e],
                    )

                # Reverted after inclusion: the nonce is spent. Re-estimating
                # surfaces a logical revert; otherwise retry with more gas.
                last_reason = "reverted after inclusion"
                logger.warning("submit %s: tx reverted in block %d", call.kind, receipt["blockNumber"])
                gas_limit = self._estimate_gas(fn, call)
                gas_price = _bump(gas_price, self._config.gas_bump_percent)
                nonce = self._reserve_nonce(identity.address)
                sent = []

            raise SubmissionFailed(
                last_reason or "no confirmation", code="exhausted",
                attempts=self._config.max_submit_attempts,
            )

    def _function(self, call: LedgerCall):
        contract_key, name = CALL_TARGETS[call.kind]
        args = call.args
        if call.kind == "approve_allowance":
            args = (self.request_registry_address, *call.args)
        return getattr(self._contracts[contract_key].functions, name)(*args)

    def _estimate_gas(self, fn, call: LedgerCall) -> int:
        try:
            estimate = self._rpc(
                lambda: fn.estimate_gas({"from": self._identity.address}), "estimate_gas"
            )
        except ContractLogicError as exc:
            reason = _revert_reason(exc)
            logger.warning("submit %s: reverted: %s", call.kind, reason)
            raise SubmissionFailed(reason, code="reverted", attempts=0) from exc
        return estimate * (100 + _GAS_HEADROOM_PERCENT) // 100

    def _reserve_nonce(self, address: str) -> int:
        pending = self._rpc(
            lambda: self._web3.eth.get_transaction_count(address, "pending"), "transaction_count"
        )
        nonce = max(pending, self._next_nonce or 0)
        self._next_nonce = nonce
        return nonce

    def _await_confirmation(self, tx_hashes: list[HexBytes]):
        """
        Poll until one of tx_hashes is included with enough confirmations.

        Returns the receipt, or None if nothing was included within
        config.confirmation_timeout_seconds (treated as dropped). Raises
        SubmissionFailed(code="unconfirmed") when a transaction was included
        but never reached config.confirmation_blocks; it is not re-sent.
        """
        interval = self._config.block_interval_seconds / 4
        polls = max(1, math.ceil(self._config.confirmation_timeout_seconds / interval))
        mined = None
        for _ in range(polls):
            for tx_hash in tx_hashes:
                try:
                    mined = self._rpc(
                        lambda: self._web3.eth.get_transaction_receipt(tx_hash), "get_receipt",
                        passthrough=(TransactionNotFound,),
                    )
                    break
                except TransactionNotFound:
                    continue
            if mined is not None:
                head = self.block_number()
                if head - mined["blockNumber"] + 1 >= self._config.confirmation_blocks:
                    return mined
            time.sleep(interval)
        if mined is not None:
            tx_hash = HexBytes(mined["transactionHash"]).to_0x_hex()
            logger.warning(
                "tx %s included but below %d confirmations after wait",
                tx_hash, self._config.confirmation_blocks,
            )
            raise SubmissionFailed(
                f"tx {tx_hash} included in block {mined['blockNumber']} but not final",
                code="unconfirmed",
            )
        return None

    def _require_identity(self):
        if self._identity is None:
            raise SettlementError("ledger client has no signing identity")
        return self._identity


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _bump(gas_price: int, percent: int) -> int:
    return max(gas_price + 1, gas_price * (100 + percent) // 100)


def _plain(value):
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    return value


def _rpc_reason(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return str(message)


def _revert_reason(exc: ContractLogicError) -> str:
    """Strip the node's prefix so callers get the contract's own reason."""
    message = _rpc_reason(exc)
    for prefix in ("execution reverted: ", "execution reverted"):
        if message.startswith(prefix):
            message = message[len(prefix):]
            break
    return message.strip() or "reverted"
