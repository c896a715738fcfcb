from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import EntrySource, NotificationKind
from money import parse_amount


class RawTransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(..., min_length=1, max_length=500)
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    occurred_at: datetime

    @field_validator("amount", mode="before")
    @classmethod
    def normalize_bank_amount(cls, value: Any) -> Any:
        # banks send floats and locale formatted strings such as "1.234,50"
        if isinstance(value, (str, float)):
            return parse_amount(value)
        return value


class LedgerEntryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(..., min_length=1, max_length=500)
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    occurred_at: Optional[datetime] = None


class LedgerAmendIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: str
    amount_cents: int
    description: str
    occurred_at: datetime
    source: EntrySource


class BudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    limit: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class BudgetProgressOut(BaseModel):
    id: int
    category: str
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    notified_for_current_period: bool


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message: str
    kind: NotificationKind
    created_at: datetime
    is_read: bool


class SyncRequest(BaseModel):
    connection_token: str = Field(..., min_length=1)


class IngestRequest(BaseModel):
    # items are validated one by one so a bad item never rejects the batch
    items: list[dict[str, Any]] = Field(default_factory=list)
