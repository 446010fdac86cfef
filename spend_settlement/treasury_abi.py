"""ABI fragments for the treasury contract and the rail minter."""
from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from . import models as m

_Param = Tuple[str, str]


def _params(items: Sequence[_Param]) -> List[Dict[str, Any]]:
    return [{"name": name, "type": typ, "internalType": typ} for name, typ in items]


def _fn(name: str, inputs: Sequence[_Param] = (), outputs: Sequence[_Param] = (),
        *, view: bool = False) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": _params(inputs),
        "outputs": _params(outputs),
        "stateMutability": "view" if view else "nonpayable",
    }


def _tuple_fn(name: str, inputs: Sequence[_Param], components: Sequence[_Param]) -> Dict[str, Any]:
    entry = _fn(name, inputs, view=True)
    entry["outputs"] = [{
        "name": "",
        "type": "tuple",
        "components": _params(components),
    }]
    return entry


def _event(name: str, fields: Sequence[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "internalType": t, "indexed": indexed}
            for n, t, indexed in fields
        ],
    }


ACCOUNT_COMPONENTS: List[_Param] = [
    ("owner", "address"),
    ("approver", "address"),
    ("label", "string"),
    ("budgetPerPeriod", "uint256"),
    ("periodDuration", "uint256"),
    ("perTxLimit", "uint256"),
    ("dailyLimit", "uint256"),
    ("approvalThreshold", "uint256"),
    ("periodSpent", "uint256"),
    ("periodReserved", "uint256"),
    ("dailySpent", "uint256"),
    ("dailyReserved", "uint256"),
    ("periodStart", "uint256"),
    ("lastDayTimestamp", "uint256"),
    ("status", "uint8"),
    ("allowedChains", "uint32[]"),
    ("minBalance", "uint256"),
    ("targetBalance", "uint256"),
]

REQUEST_COMPONENTS: List[_Param] = [
    ("accountId", "uint256"),
    ("requester", "address"),
    ("amount", "uint256"),
    ("chainId", "uint32"),
    ("destinationAddress", "address"),
    ("description", "string"),
    ("createdAt", "uint256"),
    ("approved", "bool"),
    ("rejected", "bool"),
    ("executed", "bool"),
    ("gatewayTxId", "string"),
]

_ID = ("accountId", "uint256")
_REQ = ("requestId", "uint256")

TREASURY_ABI: List[Dict[str, Any]] = [
    # reads
    _tuple_fn("getAccount", [_ID], ACCOUNT_COMPONENTS),
    _tuple_fn("getRequest", [_REQ], REQUEST_COMPONENTS),
    _fn("nextAccountId", outputs=[("", "uint256")], view=True),
    # operator
    _fn("markSpendExecuted", [_REQ, ("gatewayTxId", "string")]),
    _fn("markSpendFailed", [_REQ, ("reason", "string")]),
    _fn("recordInboundFunding", [("amount", "uint256"), ("gatewayTxId", "string")]),
    # admin: accounts
    _fn(
        "createSpendAccount",
        [
            ("owner", "address"),
            ("label", "string"),
            ("budgetPerPeriod", "uint256"),
            ("periodDuration", "uint256"),
            ("perTxLimit", "uint256"),
            ("dailyLimit", "uint256"),
            ("approvalThreshold", "uint256"),
            ("approver", "address"),
            ("allowedChains", "uint32[]"),
        ],
        [("", "uint256")],
    ),
    _fn(
        "updateSpendAccount",
        [
            _ID,
            ("budgetPerPeriod", "uint256"),
            ("perTxLimit", "uint256"),
            ("dailyLimit", "uint256"),
            ("approvalThreshold", "uint256"),
            ("approver", "address"),
        ],
    ),
    _fn("freezeAccount", [_ID]),
    _fn("unfreezeAccount", [_ID]),
    _fn("closeAccount", [_ID]),
    _fn("updateAllowedChains", [_ID, ("allowedChains", "uint32[]")]),
    _fn("setAutoTopupConfig", [_ID, ("minBalance", "uint256"), ("targetBalance", "uint256")]),
    _fn("autoTopup", [_ID]),
    _fn("sweepAccount", [_ID]),
    _fn("resetPeriod", [_ID]),
    # admin: requests
    _fn(
        "requestSpend",
        [
            _ID,
            ("amount", "uint256"),
            ("chainId", "uint32"),
            ("destinationAddress", "address"),
            ("description", "string"),
        ],
        [("", "uint256")],
    ),
    _fn("approveSpend", [_REQ]),
    _fn("rejectSpend", [_REQ, ("reason", "string")]),
    # admin: contract
    _fn("pause"),
    _fn("unpause"),
    _fn("transferAdmin", [("newAdmin", "address")]),
    # events
    _event("SpendRequested", [
        ("requestId", "uint256", True),
        ("accountId", "uint256", True),
        ("requester", "address", True),
        ("amount", "uint256", False),
        ("chainId", "uint32", False),
        ("destinationAddress", "address", False),
    ]),
    _event("SpendApproved", [
        ("requestId", "uint256", True),
        ("accountId", "uint256", True),
        ("approver", "address", True),
        ("amount", "uint256", False),
    ]),
    _event("SpendRejected", [
        ("requestId", "uint256", True),
        ("accountId", "uint256", True),
        ("approver", "address", True),
        ("reason", "string", False),
    ]),
    _event("SpendExecuted", [
        ("requestId", "uint256", True),
        ("accountId", "uint256", True),
        ("amount", "uint256", False),
        ("gatewayTxId", "string", False),
    ]),
    _event("SpendFailed", [
        ("requestId", "uint256", True),
        ("accountId", "uint256", True),
        ("reason", "string", False),
    ]),
    _event("SpendAccountCreated", [
        ("accountId", "uint256", True),
        ("owner", "address", True),
        ("label", "string", False),
        ("budgetPerPeriod", "uint256", False),
    ]),
    _event("SpendAccountUpdated", [("accountId", "uint256", True)]),
    _event("SpendAccountFrozen", [("accountId", "uint256", True)]),
    _event("SpendAccountUnfrozen", [("accountId", "uint256", True)]),
    _event("SpendAccountClosed", [("accountId", "uint256", True)]),
    _event("InboundFunding", [
        ("amount", "uint256", False),
        ("gatewayTxId", "string", False),
        ("timestamp", "uint256", False),
    ]),
    _event("AdminTransferred", [
        ("previousAdmin", "address", True),
        ("newAdmin", "address", True),
    ]),
    _event("ContractPaused", []),
    _event("ContractUnpaused", []),
]

MINTER_ABI: List[Dict[str, Any]] = [
    _fn("gatewayMint", [("attestationPayload", "bytes"), ("signature", "bytes")]),
]

# Treasury event name -> bus event name.
EVENT_ROUTES: Dict[str, str] = {
    "SpendRequested": m.SPEND_REQUESTED,
    "SpendApproved": m.SPEND_APPROVED,
    "SpendRejected": m.SPEND_REJECTED,
    "SpendExecuted": m.SPEND_EXECUTED,
    "SpendFailed": m.SPEND_FAILED,
    "SpendAccountCreated": m.ACCOUNT_CREATED,
    "SpendAccountUpdated": m.ACCOUNT_UPDATED,
    "SpendAccountFrozen": m.ACCOUNT_FROZEN,
    "SpendAccountUnfrozen": m.ACCOUNT_UNFROZEN,
    "SpendAccountClosed": m.ACCOUNT_CLOSED,
    "InboundFunding": m.FUNDING_INBOUND,
    "AdminTransferred": m.ADMIN_TRANSFERRED,
    "ContractPaused": m.CONTRACT_PAUSED,
    "ContractUnpaused": m.CONTRACT_UNPAUSED,
}


def event_signature(name: str) -> str:
    """Canonical ``Name(type,...)`` for a treasury event."""
    for entry in TREASURY_ABI:
        if entry["type"] == "event" and entry["name"] == name:
            types = ",".join(p["type"] for p in entry["inputs"])
            return f"{name}({types})"
    raise KeyError(name)
