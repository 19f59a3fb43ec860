from pydantic import BaseModel, Field, model_validator
from enum import Enum
from typing import Dict, Literal
from datetime import datetime


class ErrorKind(str, Enum):
    invalid_credential = "InvalidCredential"
    invalid_amount = "InvalidAmount"
    account_not_found = "AccountNotFound"
    source_not_found = "SourceNotFound"
    destination_not_found = "DestinationNotFound"
    insufficient_balance = "InsufficientBalance"
    persistence_failure = "PersistenceFailure"


class Failure(BaseModel):
    """Tagged failure outcome returned by ledger operations."""
    error: ErrorKind
    detail: str


class Account(BaseModel):
    id: str = Field(..., min_length=1, description="Account identifier")
    credential_hash: str = Field(..., min_length=1, description="bcrypt hash of the account secret")
    balance: float = Field(..., ge=0, description="Current balance")


class Ledger(BaseModel):
    """Complete persisted snapshot: account id -> account."""
    accounts: Dict[str, Account] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_keys_match_ids(self):
        for key, account in self.accounts.items():
            if key != account.id:
                raise ValueError(f"Account stored under {key!r} has id {account.id!r}")
        return self


class AccountInfo(BaseModel):
    accountId: str = Field(..., description="Account identifier")
    balance: float = Field(..., description="Current balance")


# Request schemas

class SecretRequest(BaseModel):
    secret: str = Field(..., max_length=1024, description="Account secret")


class TransferRequest(BaseModel):
    secret: str = Field(..., max_length=1024, description="Secret of the source account")
    amount: float = Field(..., description="Amount to move, must be positive")
    destId: str = Field(..., min_length=1, max_length=100, description="Destination account identifier")


class RotateCredentialRequest(BaseModel):
    oldSecret: str = Field(..., max_length=1024, description="Current account secret")
    newSecret: str = Field(..., max_length=1024, description="Replacement account secret")


# Response schemas

class AccountCreatedResponse(BaseModel):
    accountId: str = Field(..., description="Identifier of the new account")


class AccountExistsResponse(BaseModel):
    accountId: str
    exists: bool


class BalanceResponse(BaseModel):
    balance: float = Field(..., description="Account balance after the operation")


class StatusResponse(BaseModel):
    status: Literal["deleted", "updated"]


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in the ledger")
