from decimal import Decimal

from pydantic import BaseModel, Field

from ledger_sync.models import DateRange, Transaction


class SyncRequest(BaseModel):
    date_range: DateRange | None = None
    sync_type: str = "manual"


class SuggestRequest(BaseModel):
    description: str = ""
    amount: Decimal
    merchant_name: str | None = None
    limit: int = 5


class CategoryFeedbackRequest(BaseModel):
    category_id: str


class BulkRecategorizeRequest(BaseModel):
    transaction_ids: list[str] = Field(default_factory=list)
    category_id: str


class TransactionEditResponse(BaseModel):
    transaction: Transaction
    ignored_fields: list[str] = Field(default_factory=list)
