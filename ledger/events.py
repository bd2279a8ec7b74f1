from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from web3 import Web3

from ledger.abi import from_base_units


class AwardedEvent(BaseModel):
    event: Literal["Awarded"] = "Awarded"
    tx_hash: str
    block_number: int
    recipient: str
    amount: Decimal
    reason: str  # bytes32 hex
    awarder: str


class DiminishingRateAppliedEvent(BaseModel):
    event: Literal["DiminishingRateApplied"] = "DiminishingRateApplied"
    tx_hash: str
    block_number: int
    recipient: str
    requested_amount: Decimal
    actual_amount: Decimal
    balance_percent: int


class TransferEvent(BaseModel):
    event: Literal["Transfer"] = "Transfer"
    tx_hash: str
    block_number: int
    from_address: str
    to_address: str
    value: Decimal


LedgerEvent = Annotated[
    Union[AwardedEvent, DiminishingRateAppliedEvent, TransferEvent],
    Field(discriminator="event"),
]

_ledger_event = TypeAdapter(LedgerEvent)


def _hex(value) -> str:
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value).lower()


def decode_log(log) -> LedgerEvent:
    """Turn a web3 decoded log into one of the known event shapes."""
    name = log["event"]
    args = log["args"]
    base = {
        "event": name,
        "tx_hash": _hex(log["transactionHash"]),
        "block_number": int(log["blockNumber"]),
    }

    if name == "Awarded":
        base.update(
            recipient=args["recipient"],
            amount=from_base_units(args["amount"]),
            reason=_hex(args["reason"]),
            awarder=args["awarder"],
        )
    elif name == "DiminishingRateApplied":
        base.update(
            recipient=args["recipient"],
            requested_amount=from_base_units(args["requestedAmount"]),
            actual_amount=from_base_units(args["actualAmount"]),
            balance_percent=int(args["currentBalancePercent"]),
        )
    elif name == "Transfer":
        base.update(
            from_address=args["from"],
            to_address=args["to"],
            value=from_base_units(args["value"]),
        )
    else:
        raise ValueError(f"Unsupported ledger event: {name}")

    return _ledger_event.validate_python(base)
