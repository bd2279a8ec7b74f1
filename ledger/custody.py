import logging
import os
import threading
from typing import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account
from web3 import Web3

from core.config import settings
from core.database import SessionLocal
from core.models import User, utcnow
from ledger.client import LedgerClient, get_ledger_client

logger = logging.getLogger(__name__)

BACKEND_PRINCIPAL = "backend"

_IV_BYTES = 16
_TAG_BYTES = 16


class SigningError(Exception):
    pass


def _key_bytes(encryption_key_hex: str | None) -> bytes:
    if not encryption_key_hex:
        raise SigningError("WALLET_ENCRYPTION_KEY is not set")
    try:
        key = bytes.fromhex(encryption_key_hex)
    except ValueError as e:
        raise SigningError("WALLET_ENCRYPTION_KEY must be hex") from e
    if len(key) != 32:
        raise SigningError("WALLET_ENCRYPTION_KEY must be 32 bytes")
    return key


def encrypt_private_key(private_key: str, encryption_key_hex: str) -> str:
    """AES-256-GCM, stored as ``iv:authTag:ciphertext`` in hex."""
    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(_key_bytes(encryption_key_hex)).encrypt(iv, private_key.encode(), None)
    ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_private_key(encrypted: str, encryption_key_hex: str) -> str:
    try:
        iv_hex, tag_hex, ciphertext_hex = encrypted.split(":")
        iv, tag, ciphertext = bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(ciphertext_hex)
    except ValueError as e:
        raise SigningError("Malformed encrypted key") from e

    try:
        plain = AESGCM(_key_bytes(encryption_key_hex)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise SigningError("Encrypted key failed authentication") from e
    return plain.decode()


def _user_key_lookup(principal_id: str) -> str | None:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.id == principal_id).first()
        return user.encrypted_private_key if user else None
    finally:
        db.close()


class CustodyService:
    """Signs and submits transactions for a principal.

    The backend principal signs mints. Any other principal id is a user id
    whose encrypted key lives on the users table. Decrypted key material only
    exists inside a single ``sign_and_submit`` call.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        encryption_key: str | None,
        backend_encrypted_key: str | None,
        key_lookup: Callable[[str], str | None] = _user_key_lookup,
    ):
        self.ledger = ledger
        self._encryption_key = encryption_key
        self._backend_encrypted_key = backend_encrypted_key
        self._key_lookup = key_lookup
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, principal_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(principal_id, threading.Lock())

    def _encrypted_key_for(self, principal_id: str) -> str:
        if principal_id == BACKEND_PRINCIPAL:
            encrypted = self._backend_encrypted_key
        else:
            encrypted = self._key_lookup(principal_id)
        if not encrypted:
            raise SigningError(f"No signing key for principal {principal_id}")
        return encrypted

    def sign_and_submit(self, principal_id: str, to_address: str, call_data: str) -> str:
        encrypted = self._encrypted_key_for(principal_id)

        # one nonce in flight per principal
        with self._lock_for(principal_id):
            account = Account.from_key(decrypt_private_key(encrypted, self._encryption_key))
            try:
                tx = {
                    "from": account.address,
                    "to": Web3.to_checksum_address(to_address),
                    "data": call_data,
                    "value": 0,
                    "chainId": self.ledger.chain_id,
                    "nonce": self.ledger.next_nonce(account.address),
                    **self.ledger.fee_fields(),
                }
                tx["gas"] = self.ledger.estimate_gas(tx)
                try:
                    signed = account.sign_transaction(tx)
                except (TypeError, ValueError) as e:
                    raise SigningError(f"Signing failed for principal {principal_id}: {e}") from e
            finally:
                del account

            tx_hash = self.ledger.submit_signed_transaction(signed.raw_transaction)

        logger.info("Submitted tx %s for principal %s", tx_hash, principal_id)
        return tx_hash

    def provision_wallet(self, db, user: User) -> str:
        """Create a custodial wallet for a user that has none."""
        if user.has_wallet:
            return user.wallet_address

        account = Account.create()
        user.wallet_address = account.address
        user.encrypted_private_key = encrypt_private_key(account.key.hex(), self._encryption_key)
        user.wallet_created_at = utcnow()
        db.commit()
        logger.info("Provisioned wallet %s for user %s", account.address, user.id)
        return account.address


_custody: CustodyService | None = None


def get_custody_service() -> CustodyService:
    global _custody
    if _custody is None:
        _custody = CustodyService(
            ledger=get_ledger_client(),
            encryption_key=settings.WALLET_ENCRYPTION_KEY,
            backend_encrypted_key=settings.BACKEND_WALLET_ENCRYPTED_KEY,
        )
    return _custody
