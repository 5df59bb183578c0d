from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class AccountKind(str, Enum):
    BANK = "bank"
    MOBILE_MONEY = "mobile_money"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class RuleType(str, Enum):
    KEYWORD = "keyword"
    MERCHANT = "merchant"
    AMOUNT_RANGE = "amount_range"
    PATTERN = "pattern"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class Provider(str, Enum):
    MONO = "mono"
    MTN_MOMO = "mtn_momo"


class LinkedAccount(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    account_name: str
    account_kind: AccountKind
    institution_name: str = ""
    balance: Decimal = Decimal("0")
    mono_account_id: str | None = None
    mtn_phone_number: str | None = None
    mtn_reference_id: str | None = None
    last_synced_at: datetime | None = None
    is_active: bool = True

    @model_validator(mode="after")
    def _identifiers_match_kind(self) -> "LinkedAccount":
        if self.account_kind is AccountKind.BANK:
            foreign = ("mtn_phone_number", "mtn_reference_id")
        else:
            foreign = ("mono_account_id",)
        present = [name for name in foreign if getattr(self, name)]
        if present:
            raise ValueError(f"{self.account_kind.value} account must not carry {', '.join(present)}")
        return self

    @property
    def provider_reference(self) -> str | None:
        if self.account_kind is AccountKind.BANK:
            return self.mono_account_id or None
        return self.mtn_phone_number or None


class Category(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str | None = None
    name: str
    icon_name: str = "circle"


class CategorizationRule(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    category_id: str
    rule_type: RuleType
    rule_value: str
    is_active: bool = True
    priority: int = 1
    # Filled by stores when listing rules; never persisted.
    category_name: str | None = None


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    account_id: str | None = None
    amount: Decimal
    type: TransactionType
    category_id: str | None = None
    description: str = ""
    transaction_date: datetime = Field(default_factory=utcnow)
    merchant_name: str | None = None
    mono_transaction_id: str | None = None
    mtn_reference_id: str | None = None
    provider_status: str | None = None
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    is_synced: bool = False
    auto_categorized: bool = False
    categorization_confidence: float | None = None
    sync_run_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def _amount_not_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("amount must not be negative")
        return value

    @field_validator("categorization_confidence")
    @classmethod
    def _confidence_in_range(cls, value: float | None) -> float | None:
        if value is not None and not 0.0 <= value <= 1.0:
            raise ValueError("categorization_confidence must be within [0, 1]")
        return value

    @property
    def provider_transaction_id(self) -> str | None:
        return self.mono_transaction_id or self.mtn_reference_id

    @property
    def is_provider_owned(self) -> bool:
        return self.is_synced or self.provider_transaction_id is not None


class SyncRun(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    account_id: str
    account_kind: AccountKind | None = None
    sync_type: str = "manual"
    status: SyncStatus = SyncStatus.IN_PROGRESS
    transactions_synced: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    error_message: str | None = None


class CategorizationResult(BaseModel):
    category_label: str
    confidence: float  # 0.0 to 1.0
    suggested_type: TransactionType
    source: str  # "rule", "heuristic", "fallback"
    category_id: str | None = None
    reasons: list[str] = Field(default_factory=list)


class CategorySuggestion(BaseModel):
    name: str
    icon_name: str = "circle"
    category_id: str | None = None  # None until the label is first used
    label: str | None = None
    confidence: float | None = None
    source: str  # "rule", "heuristic", "history", "fallback"


class AccountSnapshot(BaseModel):
    name: str = ""
    balance: Decimal
    institution: str = ""
    account_number: str | None = None
    currency: str | None = None


class SyncedTransaction(BaseModel):
    """Provider transaction normalized into the shape the orchestrator consumes."""

    provider: Provider
    provider_transaction_id: str
    amount: Decimal
    direction: TransactionType | None = None
    occurred_at: datetime
    description: str = ""
    payee_note: str | None = None
    counterparty: dict[str, Any] | None = None
    provider_status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderFetchResult(BaseModel):
    account: AccountSnapshot
    transactions: list[SyncedTransaction] = Field(default_factory=list)


class DateRange(BaseModel):
    start_date: datetime
    end_date: datetime

    @field_validator("end_date")
    @classmethod
    def _end_after_start(cls, value: datetime, info: Any) -> datetime:
        start = info.data.get("start_date")
        if start is not None and value < start:
            raise ValueError("end_date must not be before start_date")
        return value


class SyncOutcome(BaseModel):
    total_transactions: int = 0
    new_transactions: int = 0
    updated_transactions: int = 0
    errors: list[str] = Field(default_factory=list)
    account_kind: AccountKind | None = None
    institution_name: str = ""
    sync_run_id: str | None = None


class ErrorInfo(BaseModel):
    code: str
    message: str


class SyncResult(BaseModel):
    outcome: SyncOutcome | None = None
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


SyncStage = Literal["fetching", "storing", "completed", "error"]


class SyncProgress(BaseModel):
    status: SyncStage
    message: str
    account_kind: AccountKind | None = None
    transaction_count: int | None = None
    institution_name: str | None = None
    error: str | None = None


class BulkResult(BaseModel):
    updated: int = 0
    updated_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class TransactionUpdate(BaseModel):
    amount: Decimal | None = None
    type: TransactionType | None = None
    category_id: str | None = None
    transaction_date: datetime | None = None
    description: str | None = None
