import asyncio
import uuid
from typing import Callable, Optional, Union

import bcrypt
import structlog

from config import Settings, get_settings
from models import Account, AccountInfo, ErrorKind, Failure, Ledger
from repositories import LedgerRepository

# Configure structured logging
logger = structlog.get_logger()


def generate_unique_id() -> str:
    return uuid.uuid4().hex


class CredentialHasher:
    """Salted one-way hashing of account secrets."""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, secret: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("ascii")

    def verify(self, secret: str, credential_hash: str) -> bool:
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), credential_hash.encode("ascii"))
        except ValueError:
            # Malformed stored hash or over-long secret never matches
            return False


class AccountService:
    def __init__(
        self,
        ledger_repo: LedgerRepository,
        hasher: CredentialHasher,
        settings: Settings,
        id_source: Callable[[], str] = generate_unique_id,
    ):
        self.ledger_repo = ledger_repo
        self.hasher = hasher
        self.settings = settings
        self.id_source = id_source

    def _validate_secret(self, secret: str) -> Optional[Failure]:
        if len(secret) < self.settings.credential_min_length:
            return Failure(
                error=ErrorKind.invalid_credential,
                detail=f"Secret must be at least {self.settings.credential_min_length} characters",
            )
        if len(secret.encode("utf-8")) > self.settings.credential_max_bytes:
            return Failure(
                error=ErrorKind.invalid_credential,
                detail=f"Secret must be at most {self.settings.credential_max_bytes} bytes",
            )
        return None

    def _new_account_id(self, ledger: Ledger) -> str:
        account_id = self.id_source()
        while account_id in ledger.accounts:
            logger.warning("Generated account id already in use, drawing another", account_id=account_id)
            account_id = self.id_source()
        return account_id

    def _scan(self, ledger: Ledger, secret: str) -> Optional[Account]:
        for account in ledger.accounts.values():
            if self.hasher.verify(secret, account.credential_hash):
                return account
        return None

    async def lookup_by_credential(self, ledger: Ledger, secret: str) -> Union[Account, Failure]:
        """Return the first account whose stored hash verifies against the secret.

        The scan runs in a worker thread.
        """
        if secret:
            account = await asyncio.to_thread(self._scan, ledger, secret)
            if account is not None:
                return account

        return Failure(error=ErrorKind.account_not_found, detail="Account not found")

    async def create_account(self, secret: str) -> Union[str, Failure]:
        invalid = self._validate_secret(secret)
        if invalid is not None:
            logger.warning("Account creation rejected", reason=invalid.detail)
            return invalid

        credential_hash = await asyncio.to_thread(self.hasher.hash, secret)

        async with self.ledger_repo.get_lock():
            ledger = await self.ledger_repo.load()

            account_id = self._new_account_id(ledger)
            ledger.accounts[account_id] = Account(
                id=account_id,
                credential_hash=credential_hash,
                balance=self.settings.initial_balance,
            )
            await self.ledger_repo.save(ledger)

        logger.info("Account created", account_id=account_id, balance=self.settings.initial_balance)
        return account_id

    async def account_info(self, secret: str) -> Union[AccountInfo, Failure]:
        if not secret:
            return Failure(error=ErrorKind.invalid_credential, detail="Secret must not be empty")

        async with self.ledger_repo.get_lock():
            ledger = await self.ledger_repo.load()
            account = await self.lookup_by_credential(ledger, secret)

        if isinstance(account, Failure):
            return account
        return AccountInfo(accountId=account.id, balance=account.balance)

    async def account_exists(self, account_id: str) -> bool:
        async with self.ledger_repo.get_lock():
            ledger = await self.ledger_repo.load()
        return account_id in ledger.accounts

    async def get_balance(self, secret: str) -> Union[float, Failure]:
        info = await self.account_info(secret)
        if isinstance(info, Failure):
            return info
        return info.balance

    async def transfer(self, secret: str, amount: float, dest_id: str) -> Union[float, Failure]:
        """Move ``amount`` from the account owning ``secret`` to ``dest_id``.

        Returns the source account's new balance. Every failure is detected
        before either balance is touched, and the ledger is only written once
        both sides have been updated in memory.
        """
        if not amount > 0:
            logger.warning("Transfer rejected", reason="non-positive amount", amount=amount)
            return Failure(error=ErrorKind.invalid_amount, detail="Amount must be positive")

        async with self.ledger_repo.get_lock():
            ledger = await self.ledger_repo.load()

            source = await self.lookup_by_credential(ledger, secret)
            if isinstance(source, Failure):
                logger.warning("Transfer rejected", reason="source not found", dest_id=dest_id)
                return Failure(error=ErrorKind.source_not_found, detail="Source account not found")

            dest = ledger.accounts.get(dest_id)
            if dest is None:
                logger.warning("Transfer rejected", reason="destination not found", account_id=source.id, dest_id=dest_id)
                return Failure(error=ErrorKind.destination_not_found, detail="Destination account not found")

            if source.balance < amount:
                logger.warning(
                    "Insufficient balance for transfer",
                    account_id=source.id,
                    dest_id=dest_id,
                    current_balance=source.balance,
                    requested_amount=amount,
                )
                return Failure(error=ErrorKind.insufficient_balance, detail="Insufficient balance")

            if dest is source:
                # Self-transfer nets to nothing; skip the write
                logger.info("Self-transfer accepted", account_id=source.id, amount=amount)
                return source.balance

            source.balance -= amount
            dest.balance += amount
            await self.ledger_repo.save(ledger)

        logger.info(
            "Transfer committed",
            account_id=source.id,
            dest_id=dest_id,
            amount=amount,
            new_balance=source.balance,
        )
        return source.balance

    async def delete_account(self, secret: str) -> Optional[Failure]:
        async with self.ledger_repo.get_lock():
            ledger = await self.ledger_repo.load()

            account = await self.lookup_by_credential(ledger, secret)
            if isinstance(account, Failure):
                logger.warning("Account deletion rejected", reason="account not found")
                return account

            del ledger.accounts[account.id]
            await self.ledger_repo.save(ledger)

        logger.info("Account deleted", account_id=account.id, discarded_balance=account.balance)
        return None

    async def rotate_credential(self, old_secret: str, new_secret: str) -> Optional[Failure]:
        invalid = self._validate_secret(new_secret)
        if invalid is not None:
            logger.warning("Credential rotation rejected", reason=invalid.detail)
            return invalid

        async with self.ledger_repo.get_lock():
            ledger = await self.ledger_repo.load()

            account = await self.lookup_by_credential(ledger, old_secret)
            if isinstance(account, Failure):
                logger.warning("Credential rotation rejected", reason="account not found")
                return account

            account.credential_hash = await asyncio.to_thread(self.hasher.hash, new_secret)
            await self.ledger_repo.save(ledger)

        logger.info("Credential rotated", account_id=account.id)
        return None


# Factory function for dependency injection
def get_account_service(
    ledger_repo: LedgerRepository,
    settings: Optional[Settings] = None,
) -> AccountService:
    settings = settings or get_settings()
    return AccountService(ledger_repo, CredentialHasher(settings.bcrypt_rounds), settings)
