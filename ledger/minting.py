import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from web3 import Web3

from core.config import settings
from ledger.abi import SOULAANI_COIN, UNITY_COIN, reason_hash, to_base_units
from ledger.client import LedgerClient, LedgerReceipt, get_ledger_client
from ledger.custody import BACKEND_PRINCIPAL, CustodyService, get_custody_service
from ledger.events import AwardedEvent, DiminishingRateAppliedEvent

logger = logging.getLogger(__name__)


@dataclass
class MintResult:
    tx_hash: str
    block_number: int
    requested_amount: Decimal
    actual_amount: Decimal
    balance_percent: int | None = None

    @property
    def diminished(self) -> bool:
        return self.actual_amount < self.requested_amount


def actual_reward_amount(receipt: LedgerReceipt, recipient: str | None = None) -> tuple[Decimal | None, int | None]:
    """Amount the SC contract really minted, plus the balance percent when it was diminished."""
    awarded = None
    diminished = None
    for event in receipt.events:
        if recipient and getattr(event, "recipient", "").lower() != recipient.lower():
            continue
        if isinstance(event, AwardedEvent) and awarded is None:
            awarded = event
        elif isinstance(event, DiminishingRateAppliedEvent) and diminished is None:
            diminished = event

    balance_percent = diminished.balance_percent if diminished else None
    if awarded is not None:
        return awarded.amount, balance_percent
    if diminished is not None:
        return diminished.actual_amount, balance_percent
    return None, None


class TokenMinter:
    """Sign, submit and confirm mints from the backend wallet.

    ``on_submitted`` gets the tx hash as soon as the chain accepted the
    transaction, before confirmation is awaited.
    """

    def __init__(self, ledger: LedgerClient, custody: CustodyService, confirmation_timeout: float):
        self.ledger = ledger
        self.custody = custody
        self.confirmation_timeout = confirmation_timeout

    def _mint(self, token_id: str, call_data: str, on_submitted: Callable[[str], None] | None) -> LedgerReceipt:
        tx_hash = self.custody.sign_and_submit(
            BACKEND_PRINCIPAL, self.ledger.address_of(token_id), call_data
        )
        if on_submitted is not None:
            on_submitted(tx_hash)
        return self.ledger.wait_for_confirmation(tx_hash, self.confirmation_timeout)

    def mint_onramp(
        self,
        to_address: str,
        amount: Decimal,
        on_submitted: Callable[[str], None] | None = None,
    ) -> MintResult:
        call_data = self.ledger.encode_call(
            UNITY_COIN, "mintOnramp", Web3.to_checksum_address(to_address), to_base_units(amount)
        )
        receipt = self._mint(UNITY_COIN, call_data, on_submitted)
        logger.info("Minted %s UC to %s in %s", amount, to_address, receipt.tx_hash)
        return MintResult(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            requested_amount=amount,
            actual_amount=amount,
        )

    def mint_reward(
        self,
        recipient: str,
        amount: Decimal,
        reason: str,
        on_submitted: Callable[[str], None] | None = None,
    ) -> MintResult:
        call_data = self.ledger.encode_call(
            SOULAANI_COIN,
            "mintReward",
            Web3.to_checksum_address(recipient),
            to_base_units(amount),
            reason_hash(reason),
        )
        receipt = self._mint(SOULAANI_COIN, call_data, on_submitted)

        actual, balance_percent = actual_reward_amount(receipt, recipient)
        if actual is None:
            logger.warning("No Awarded event in %s, assuming requested amount", receipt.tx_hash)
            actual = amount

        logger.info("Minted %s SC (requested %s) to %s in %s", actual, amount, recipient, receipt.tx_hash)
        return MintResult(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            requested_amount=amount,
            actual_amount=actual,
            balance_percent=balance_percent,
        )


_minter: TokenMinter | None = None


def get_token_minter() -> TokenMinter:
    global _minter
    if _minter is None:
        _minter = TokenMinter(
            ledger=get_ledger_client(),
            custody=get_custody_service(),
            confirmation_timeout=settings.MINT_CONFIRMATION_TIMEOUT_SECONDS,
        )
    return _minter
