"""
abi.py — Interfaces of the contracts the settlement engine consumes.

Only the functions and events the engine calls or indexes are declared.
"""

from __future__ import annotations


def _param(type_: str, name: str, indexed: bool = False) -> dict:
    return {"type": type_, "name": name, "internalType": type_, "indexed": indexed}


def _fn(name: str, inputs=(), outputs=(), mutability: str = "nonpayable") -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"type": t, "name": n, "internalType": t} for t, n in inputs],
        "outputs": [{"type": t, "name": n, "internalType": t} for t, n in outputs],
    }


def _event(name: str, inputs) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [_param(t, n, indexed) for t, n, indexed in inputs],
    }


AGENT_REGISTRY_ABI = [
    _fn("register", [("string", "agentURI")], [("uint256", "agentId")]),
    _fn("setAgentURI", [("uint256", "agentId"), ("string", "agentURI")]),
    _fn("agentOf", [("address", "owner")], [("uint256", "")], "view"),
    _fn("agentURI", [("uint256", "agentId")], [("string", "")], "view"),
    _fn("ownerOf", [("uint256", "tokenId")], [("address", "")], "view"),
    _event("AgentRegistered", [
        ("uint256", "agentId", True),
        ("address", "owner", True),
        ("string", "agentURI", False),
    ]),
    _event("AgentURIUpdated", [
        ("uint256", "agentId", True),
        ("string", "agentURI", False),
    ]),
]

TOKEN_ABI = [
    _fn("approve", [("address", "spender"), ("uint256", "amount")], [("bool", "")]),
    _fn("transfer", [("address", "to"), ("uint256", "amount")], [("bool", "")]),
    _fn("balanceOf", [("address", "account")], [("uint256", "")], "view"),
    _fn("allowance", [("address", "owner"), ("address", "spender")], [("uint256", "")], "view"),
]

REQUEST_REGISTRY_ABI = [
    _fn(
        "createRequest",
        [("string", "payloadCid"), ("uint256", "price"), ("uint64", "deadline"),
         ("uint256", "targetAgentId")],
        [("uint256", "requestId")],
    ),
    _fn("submitResponse", [("uint256", "requestId"), ("string", "responseCid"),
                           ("bytes32", "secretHash")]),
    _fn("requestValidation", [("uint256", "requestId")]),
    _fn("submitValidation", [("uint256", "requestId"), ("bool", "passed"),
                             ("uint256", "validatorAgentId")]),
    _fn("claim", [("uint256", "requestId"), ("bytes32", "secret")]),
    _fn("cancel", [("uint256", "requestId")]),
    _fn("expire", [("uint256", "requestId")]),
    _fn(
        "getRequest",
        [("uint256", "requestId")],
        [("address", "buyer"), ("uint256", "buyerAgentId"), ("uint256", "targetAgentId"),
         ("string", "payloadCid"), ("uint256", "price"), ("uint64", "deadline"),
         ("uint8", "status")],
        "view",
    ),
    _fn(
        "getResponse",
        [("uint256", "requestId")],
        [("address", "seller"), ("uint256", "sellerAgentId"), ("string", "responseCid"),
         ("bytes32", "secretHash")],
        "view",
    ),
    _event("RequestCreated", [
        ("uint256", "requestId", True),
        ("uint256", "buyerAgentId", True),
        ("uint256", "targetAgentId", True),
        ("string", "payloadCid", False),
        ("uint256", "price", False),
        ("uint64", "deadline", False),
    ]),
    _event("ResponseSubmitted", [
        ("uint256", "requestId", True),
        ("uint256", "sellerAgentId", True),
        ("string", "responseCid", False),
        ("bytes32", "secretHash", False),
    ]),
    _event("ValidationRequested", [
        ("uint256", "requestId", True),
        ("uint256", "validatorAgentId", True),
    ]),
    _event("AttestationRecorded", [
        ("uint256", "requestId", True),
        ("uint256", "validatorAgentId", True),
        ("bool", "passed", False),
    ]),
    _event("RequestValidated", [
        ("uint256", "requestId", True),
        ("uint256", "validatorAgentId", True),
    ]),
    _event("RequestClaimed", [
        ("uint256", "requestId", True),
        ("bytes32", "secret", False),
        ("uint256", "sellerAmount", False),
        ("uint256", "validatorAmount", False),
    ]),
    _event("RequestCancelled", [("uint256", "requestId", True)]),
    _event("RequestExpired", [("uint256", "requestId", True)]),
]
