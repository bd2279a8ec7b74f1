import logging
from dataclasses import dataclass, field
from decimal import Decimal

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from core.config import settings
from ledger.abi import (
    SC_REWARD_ENGINE_ABI,
    SOULAANI_COIN,
    TOKEN_ABIS,
    UNITY_COIN,
    from_base_units,
    to_base_units,
)
from ledger.events import LedgerEvent, decode_log

logger = logging.getLogger(__name__)

# events decoded out of receipts, per token
RECEIPT_EVENTS = {
    UNITY_COIN: ("Transfer",),
    SOULAANI_COIN: ("Awarded", "DiminishingRateApplied"),
}


class LedgerError(Exception):
    pass


class SubmissionRejected(LedgerError):
    pass


class TransactionReverted(LedgerError):
    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} reverted on chain")
        self.tx_hash = tx_hash


class ConfirmationTimeout(LedgerError):
    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


@dataclass
class LedgerReceipt:
    tx_hash: str
    success: bool
    block_number: int
    events: list[LedgerEvent] = field(default_factory=list)


class LedgerClient:
    """Thin I/O adapter over the token contracts. No business state."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        token_addresses: dict[str, str | None],
        reward_engine_address: str | None = None,
        request_timeout: int = 30,
    ):
        self.chain_id = chain_id
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self._addresses = {
            token_id: Web3.to_checksum_address(address)
            for token_id, address in token_addresses.items()
            if address
        }
        self._contracts = {
            token_id: self.w3.eth.contract(address=address, abi=TOKEN_ABIS[token_id])
            for token_id, address in self._addresses.items()
        }
        self._reward_engine = None
        if reward_engine_address:
            self._reward_engine = self.w3.eth.contract(
                address=Web3.to_checksum_address(reward_engine_address),
                abi=SC_REWARD_ENGINE_ABI,
            )

    def address_of(self, token_id: str) -> str:
        return self._contract(token_id).address

    def _contract(self, token_id: str):
        contract = self._contracts.get(token_id)
        if contract is None:
            raise LedgerError(f"No contract address configured for {token_id}")
        return contract

    # Reads

    def balance_of(self, address: str, token_id: str) -> Decimal:
        try:
            raw = self._contract(token_id).functions.balanceOf(
                Web3.to_checksum_address(address)
            ).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"balanceOf failed: {e}") from e
        return from_base_units(raw)

    def total_supply(self, token_id: str) -> Decimal:
        try:
            raw = self._contract(token_id).functions.totalSupply().call()
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"totalSupply failed: {e}") from e
        return from_base_units(raw)

    def calculate_reward(self, recipient: str, purchase_amount: Decimal) -> Decimal:
        if self._reward_engine is None:
            raise LedgerError("No reward engine address configured")
        try:
            raw = self._reward_engine.functions.calculateReward(
                Web3.to_checksum_address(recipient),
                to_base_units(purchase_amount),
            ).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"calculateReward failed: {e}") from e
        return from_base_units(raw)

    def block_number(self) -> int:
        try:
            return self.w3.eth.block_number
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"block_number failed: {e}") from e

    def get_transaction_receipt(self, tx_hash: str) -> LedgerReceipt | None:
        """Receipt for a mined transaction, None when the chain has no record of it."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"get_transaction_receipt failed: {e}") from e
        return self._to_receipt(receipt)

    def get_event_logs(
        self,
        token_id: str,
        event_name: str,
        from_block: int,
        to_block: int | str = "latest",
    ) -> list[LedgerEvent]:
        event = getattr(self._contract(token_id).events, event_name)
        try:
            logs = event().get_logs(from_block=from_block, to_block=to_block)
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"get_logs({event_name}) failed: {e}") from e
        return [decode_log(log) for log in logs]

    # Writes

    def encode_call(self, token_id: str, fn_name: str, *args) -> str:
        return self._contract(token_id).encode_abi(fn_name, args=list(args))

    def next_nonce(self, address: str) -> int:
        try:
            return self.w3.eth.get_transaction_count(address, "pending")
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"get_transaction_count failed: {e}") from e

    def fee_fields(self) -> dict:
        try:
            latest_block = self.w3.eth.get_block("latest")
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"get_block failed: {e}") from e
        base_fee = latest_block.get("baseFeePerGas") or self.w3.to_wei("0.05", "gwei")
        try:
            priority = self.w3.eth.max_priority_fee
        except (Web3Exception, ValueError):
            priority = self.w3.to_wei("0.01", "gwei")
        return {
            "maxFeePerGas": int(base_fee * 2 + priority),
            "maxPriorityFeePerGas": int(priority),
        }

    def estimate_gas(self, tx: dict) -> int:
        try:
            return int(self.w3.eth.estimate_gas(tx) * 1.2)
        except (Web3Exception, ValueError) as e:
            # a failing estimate means the call would revert
            raise SubmissionRejected(f"Gas estimation failed: {e}") from e

    def submit_signed_transaction(self, raw_transaction: bytes) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
        except (Web3Exception, ValueError, OSError) as e:
            raise SubmissionRejected(f"Transaction rejected: {e}") from e
        return Web3.to_hex(tx_hash)

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> LedgerReceipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=2
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, timeout) from e
        except (Web3Exception, ValueError, OSError) as e:
            raise LedgerError(f"wait_for_transaction_receipt failed: {e}") from e

        result = self._to_receipt(receipt)
        if not result.success:
            raise TransactionReverted(tx_hash)
        return result

    def _to_receipt(self, receipt) -> LedgerReceipt:
        events: list[LedgerEvent] = []
        for token_id, names in RECEIPT_EVENTS.items():
            contract = self._contracts.get(token_id)
            if contract is None:
                continue
            for name in names:
                for log in getattr(contract.events, name)().process_receipt(receipt, errors=DISCARD):
                    if log["address"] == contract.address:
                        events.append(decode_log(log))

        return LedgerReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]).lower(),
            success=receipt["status"] == 1,
            block_number=int(receipt["blockNumber"]),
            events=events,
        )


_client: LedgerClient | None = None


def get_ledger_client() -> LedgerClient:
    global _client
    if _client is None:
        _client = LedgerClient(
            rpc_url=settings.RPC_URL,
            chain_id=settings.CHAIN_ID,
            token_addresses={
                UNITY_COIN: settings.UNITY_COIN_ADDRESS,
                SOULAANI_COIN: settings.SOULAANI_COIN_ADDRESS,
            },
            reward_engine_address=settings.SC_REWARD_ENGINE_ADDRESS,
            request_timeout=settings.RPC_TIMEOUT_SECONDS,
        )
    return _client
