"""
test_ledger.py — LedgerClient against a scripted JSON-RPC provider.

A real Web3 instance (no middleware) talks to FakeRPC, which answers the
handful of eth_* methods the client uses. This exercises signing,
balance gating, revert handling, confirmation polling and log decoding
without a node.

Run with:
    pytest tests/test_ledger.py -v
"""

from __future__ import annotations

import pytest
from eth_abi import encode
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.providers import BaseProvider

from agent_settlement import abi
from agent_settlement.errors import InsufficientFunds, NetworkError, NotFound, SubmissionFailed
from agent_settlement.keystore import Identity
from agent_settlement.ledger import EventFilter, LedgerCall, LedgerClient
from agent_settlement.models import RequestStatus

from conftest import REQUEST_REGISTRY

_ZERO_HASH = "0x" + "00" * 32
_ERROR_SELECTOR = "0x08c379a0"


def _int(value) -> int:
    return int(value, 16) if isinstance(value, str) else int(value)


def encode_log(kind: str, block: int, log_index: int, tx_hash: str = _ZERO_HASH, **args) -> dict:
    """Raw log entry for a request registry event, as a node would return it."""
    event_abi = next(e for e in abi.REQUEST_REGISTRY_ABI if e["type"] == "event" and e["name"] == kind)
    signature = f"{kind}({','.join(i['type'] for i in event_abi['inputs'])})"
    topics = [Web3.keccak(text=signature).to_0x_hex()]
    data_types, data_values = [], []
    for item in event_abi["inputs"]:
        if item["indexed"]:
            topics.append("0x" + encode([item["type"]], [args[item["name"]]]).hex())
        else:
            data_types.append(item["type"])
            data_values.append(args[item["name"]])
    return {
        "address": Web3.to_checksum_address(REQUEST_REGISTRY),
        "topics": topics,
        "data": "0x" + encode(data_types, data_values).hex(),
        "blockNumber": hex(block),
        "blockHash": _ZERO_HASH,
        "transactionHash": tx_hash,
        "transactionIndex": "0x0",
        "logIndex": hex(log_index),
        "removed": False,
    }


class FakeRPC(BaseProvider):
    """
    Scripted node. Every request is recorded in `calls` as (method, params).

    Knobs:
        balance        native balance returned for any address
        revert         reason string; eth_estimateGas reverts with it
        send_error     message; eth_sendRawTransaction fails with it
        drop           sent transactions never get a receipt
        receipt_logs   logs attached to the next mined receipt
        logs           entries served by eth_getLogs
        call_result    hex returned by eth_call
        flaky          {method: n} raises ConnectionError n times first
        errors         {method: [error, ...]} JSON-RPC errors served first, in order
    """

    def __init__(self):
        super().__init__()
        self.calls: list[tuple[str, list]] = []
        self.head = 10
        self.nonce = 7
        self.balance = 10**18
        self.gas_price = 10**9
        self.revert = None
        self.send_error = None
        self.drop = False
        self.receipt_logs: list[dict] = []
        self.logs: list[dict] = []
        self.call_result = "0x"
        self.flaky: dict[str, int] = {}
        self.errors: dict[str, list[dict]] = {}
        self.sent: list[HexBytes] = []
        self._receipts: dict[str, dict] = {}

    def is_connected(self, show_traceback: bool = False) -> bool:
        return True

    def make_request(self, method, params):
        self.calls.append((method, list(params)))
        if self.flaky.get(method):
            self.flaky[method] -= 1
            raise ConnectionError("connection reset by peer")
        if self.errors.get(method):
            return {"jsonrpc": "2.0", "id": 1, "error": self.errors[method].pop(0)}
        try:
            result = getattr(self, method)(*params)
        except _RPCError as exc:
            return {"jsonrpc": "2.0", "id": 1, "error": exc.error}
        return {"jsonrpc": "2.0", "id": 1, "result": result}

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    # eth_* handlers

    def eth_blockNumber(self):
        return hex(self.head)

    def eth_getBalance(self, address, block="latest"):
        return hex(self.balance)

    def eth_gasPrice(self):
        return hex(self.gas_price)

    def eth_getTransactionCount(self, address, block="latest"):
        return hex(self.nonce)

    def eth_estimateGas(self, tx, *block):
        if self.revert is not None:
            reason = "0x" + encode(["string"], [self.revert]).hex()
            raise _RPCError({
                "code": 3,
                "message": f"execution reverted: {self.revert}",
                "data": _ERROR_SELECTOR + reason[2:],
            })
        return hex(50_000)

    def eth_call(self, tx, *block):
        return self.call_result

    def eth_sendRawTransaction(self, raw):
        if self.send_error is not None:
            raise _RPCError({"code": -32000, "message": self.send_error})
        tx_hash = Web3.keccak(HexBytes(raw)).to_0x_hex()
        self.sent.append(HexBytes(tx_hash))
        if not self.drop:
            self.head += 1
            logs = [dict(log, transactionHash=tx_hash, blockNumber=hex(self.head)) for log in self.receipt_logs]
            self._receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "transactionIndex": "0x0",
                "blockHash": _ZERO_HASH,
                "blockNumber": hex(self.head),
                "status": "0x1",
                "gasUsed": hex(42_000),
                "cumulativeGasUsed": hex(42_000),
                "logs": logs,
            }
        return tx_hash

    def eth_getTransactionReceipt(self, tx_hash):
        return self._receipts.get(HexBytes(tx_hash).to_0x_hex())

    def eth_getLogs(self, params):
        start, end = _int(params["fromBlock"]), _int(params["toBlock"])
        return [log for log in self.logs if start <= _int(log["blockNumber"]) <= end]


class _RPCError(Exception):
    def __init__(self, error: dict):
        super().__init__(error["message"])
        self.error = error


@pytest.fixture
def rpc() -> FakeRPC:
    return FakeRPC()


@pytest.fixture
def signer() -> Identity:
    return Identity.generate()


def _ledger(config, rpc, signer, **overrides) -> LedgerClient:
    web3 = Web3(rpc, middleware=[])
    return LedgerClient(config.model_copy(update=overrides), signer, web3=web3)


# ---------------------------------------------------------------------------
# 1. Submission
# ---------------------------------------------------------------------------

class TestSubmit:

    def test_confirmed_call_returns_receipt_with_events(self, config, rpc, signer):
        rpc.receipt_logs = [encode_log("RequestCancelled", 0, 0, requestId=42)]

        receipt = _ledger(config, rpc, signer).submit(LedgerCall.cancel(42))

        assert receipt.kind == "cancel"
        assert receipt.tx_hash == rpc.sent[0].to_0x_hex()
        assert receipt.block_number == rpc.head
        assert receipt.gas_used == 42_000
        [event] = receipt.events
        assert (event.kind, event.request_id, event.block_number) == ("RequestCancelled", 42, rpc.head)

    def test_transaction_is_signed_by_identity(self, config, rpc, signer):
        _ledger(config, rpc, signer).submit(LedgerCall.expire(3))
        raw = next(params[0] for method, params in rpc.calls if method == "eth_sendRawTransaction")
        sender = Account.recover_transaction(HexBytes(raw))
        assert sender == signer.address

    def test_low_balance_sends_nothing(self, config, rpc, signer):
        rpc.balance = 0
        with pytest.raises(InsufficientFunds) as info:
            _ledger(config, rpc, signer).submit(LedgerCall.cancel(1))
        assert info.value.address == signer.address
        assert "eth_sendRawTransaction" not in rpc.methods()
        assert "eth_estimateGas" not in rpc.methods()

    def test_balance_below_gas_cost_sends_nothing(self, config, rpc, signer):
        rpc.balance = config.min_balance_wei
        rpc.gas_price = 10**12
        with pytest.raises(InsufficientFunds):
            _ledger(config, rpc, signer).submit(LedgerCall.cancel(1))
        assert rpc.sent == []

    def test_revert_surfaces_reason(self, config, rpc, signer):
        rpc.revert = "not open"
        with pytest.raises(SubmissionFailed, match="not open") as info:
            _ledger(config, rpc, signer).submit(LedgerCall.cancel(1))
        assert info.value.code == "reverted"
        assert rpc.sent == []

    def test_node_rejection_is_not_retried(self, config, rpc, signer):
        rpc.send_error = "invalid sender"
        with pytest.raises(SubmissionFailed) as info:
            _ledger(config, rpc, signer).submit(LedgerCall.cancel(1))
        assert info.value.code == "rejected"
        assert rpc.methods().count("eth_sendRawTransaction") == 1

    def test_dropped_transaction_is_resent_then_exhausted(self, config, rpc, signer):
        rpc.drop = True
        ledger = _ledger(config, rpc, signer, max_submit_attempts=2)
        with pytest.raises(SubmissionFailed) as info:
            ledger.submit(LedgerCall.cancel(1))
        assert info.value.code == "exhausted"
        assert len(rpc.sent) == 2
        assert rpc.sent[0] != rpc.sent[1]

    def test_nonce_advances_between_calls(self, config, rpc, signer):
        ledger = _ledger(config, rpc, signer)
        ledger.submit(LedgerCall.cancel(1))
        ledger.submit(LedgerCall.cancel(1))
        raws = [HexBytes(params[0]) for method, params in rpc.calls if method == "eth_sendRawTransaction"]
        assert len(raws) == 2
        assert len(set(raws)) == 2

    def test_included_but_not_final_is_unconfirmed(self, config, rpc, signer):
        ledger = _ledger(config, rpc, signer, confirmation_blocks=3)
        with pytest.raises(SubmissionFailed) as info:
            ledger.submit(LedgerCall.cancel(1))
        assert info.value.code == "unconfirmed"
        assert info.value.attempts == 1
        assert len(rpc.sent) == 1

    def test_read_only_client_cannot_submit(self, config, rpc):
        ledger = LedgerClient(config, None, web3=Web3(rpc, middleware=[]))
        with pytest.raises(Exception, match="no signing identity"):
            ledger.submit(LedgerCall.cancel(1))

    def test_call_repr_hides_secret(self):
        call = LedgerCall.claim(1, b"\xab" * 32)
        assert "ab" * 32 not in repr(call)

    def test_unknown_call_kind_rejected(self):
        with pytest.raises(ValueError):
            LedgerCall("mint")


# ---------------------------------------------------------------------------
# 2. Reads
# ---------------------------------------------------------------------------

class TestReads:

    def test_get_request_decodes_tuple(self, config, rpc, signer):
        buyer = Identity.generate().address
        rpc.call_result = "0x" + encode(
            ["address", "uint256", "uint256", "string", "uint256", "uint64", "uint8"],
            [buyer, 4, 0, "bafytask", 100, 1_700_003_600, 1],
        ).hex()

        request = _ledger(config, rpc, signer).get_request(9)

        assert request.request_id == 9
        assert request.buyer == 4
        assert request.buyer_address == buyer
        assert request.target is None
        assert (request.payload_locator, request.price, request.deadline) == ("bafytask", 100, 1_700_003_600)
        assert request.status == RequestStatus.RESPONDED

    def test_missing_request_raises_not_found(self, config, rpc, signer):
        rpc.call_result = "0x" + encode(
            ["address", "uint256", "uint256", "string", "uint256", "uint64", "uint8"],
            ["0x0000000000000000000000000000000000000000", 0, 0, "", 0, 0, 0],
        ).hex()
        with pytest.raises(NotFound):
            _ledger(config, rpc, signer).get_request(404)

    def test_get_response_commitment_is_hex(self, config, rpc, signer):
        seller = Identity.generate().address
        digest = Web3.keccak(b"\x01" * 32)
        rpc.call_result = "0x" + encode(
            ["address", "uint256", "string", "bytes32"], [seller, 2, "bafyresponse", bytes(digest)],
        ).hex()
        response = _ledger(config, rpc, signer).get_response(1)
        assert response.commitment == digest.to_0x_hex()
        assert response.seller_address == seller

    def test_transient_errors_are_retried(self, config, rpc, signer):
        rpc.flaky["eth_blockNumber"] = 1
        assert _ledger(config, rpc, signer).block_number() == 10

    def test_persistent_transport_failure_is_network_error(self, config, rpc, signer):
        rpc.flaky["eth_blockNumber"] = 5
        with pytest.raises(NetworkError, match="after 2 attempts"):
            _ledger(config, rpc, signer).block_number()

    def test_rpc_error_response_is_network_error(self, config, rpc, signer):
        rpc.errors["eth_getLogs"] = [{"code": -32005, "message": "query returned more than 10000 results"}]
        with pytest.raises(NetworkError, match="more than 10000 results"):
            list(_ledger(config, rpc, signer).query_events(EventFilter(to_block=1)))
        assert rpc.methods().count("eth_getLogs") == 1

    def test_rate_limit_is_retried(self, config, rpc, signer):
        rpc.errors["eth_blockNumber"] = [{"code": -32005, "message": "rate limit exceeded"}]
        assert _ledger(config, rpc, signer).block_number() == 10
        assert rpc.methods().count("eth_blockNumber") == 2

    def test_view_revert_is_not_found(self, config, rpc, signer):
        reason = encode(["string"], ["unknown request"]).hex()
        rpc.errors["eth_call"] = [{
            "code": 3,
            "message": "execution reverted: unknown request",
            "data": _ERROR_SELECTOR + reason,
        }]
        with pytest.raises(NotFound, match="unknown request"):
            _ledger(config, rpc, signer).get_request(9)


# ---------------------------------------------------------------------------
# 3. Event queries
# ---------------------------------------------------------------------------

class TestQueryEvents:

    def test_chunks_range_and_orders_events(self, config, rpc, signer):
        rpc.logs = [
            encode_log("RequestCancelled", 1, 0, requestId=1),
            encode_log("RequestExpired", 3, 5, requestId=3),
            encode_log("RequestCancelled", 3, 2, requestId=2),
            encode_log("RequestExpired", 4, 0, requestId=4),
        ]
        ledger = _ledger(config, rpc, signer, log_chunk_blocks=2)

        events = list(ledger.query_events(
            EventFilter(kinds=("RequestCancelled", "RequestExpired"), from_block=0, to_block=4)
        ))

        assert [e.request_id for e in events] == [1, 2, 3, 4]
        ranges = [
            (_int(params[0]["fromBlock"]), _int(params[0]["toBlock"]))
            for method, params in rpc.calls if method == "eth_getLogs"
        ]
        assert ranges == [(0, 1), (2, 3), (4, 4)]

    def test_decodes_non_indexed_arguments(self, config, rpc, signer):
        secret = b"\x11" * 32
        rpc.logs = [
            encode_log("RequestClaimed", 2, 0, requestId=5, secret=secret, sellerAmount=95, validatorAmount=5),
        ]
        [event] = _ledger(config, rpc, signer).query_events(EventFilter(kinds=("RequestClaimed",), to_block=2))
        assert event.args["sellerAmount"] == 95
        assert event.args["validatorAmount"] == 5
        assert event.args["secret"] == "0x" + secret.hex()

    def test_request_id_filter_adds_topic(self, config, rpc, signer):
        list(_ledger(config, rpc, signer).query_events(EventFilter(request_id=7, to_block=1)))
        [(_, params)] = [c for c in rpc.calls if c[0] == "eth_getLogs"]
        assert params[0]["topics"][1] == "0x" + (7).to_bytes(32, "big").hex()

    def test_default_range_ends_at_head(self, config, rpc, signer):
        list(_ledger(config, rpc, signer).query_events(EventFilter(from_block=9)))
        [(_, params)] = [c for c in rpc.calls if c[0] == "eth_getLogs"]
        assert _int(params[0]["toBlock"]) == 10

    def test_unknown_kind_rejected(self, config, rpc, signer):
        with pytest.raises(ValueError):
            list(_ledger(config, rpc, signer).query_events(EventFilter(kinds=("Minted",))))
