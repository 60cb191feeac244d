from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator, model_validator
from typing import Optional, List, Any, Literal, Union, Annotated
from datetime import datetime, date
from decimal import Decimal

from models.enums import (
    InvoiceStatus,
    BankTransactionStatus,
    RecurringFrequency,
    RecurringState,
    HealthLabel,
)


class Record(BaseModel):
    """Typed record read from the store; built from ORM rows."""
    model_config = ConfigDict(from_attributes=True)


# ==================== LINE ITEMS (invoice_items / recurring_invoice_items) ====================
class LineItem(Record):
    id: Optional[str] = None
    description: str
    quantity: Decimal = Field(default=Decimal("1"), ge=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    amount: Optional[Decimal] = None
    position: int = 0

    @model_validator(mode="after")
    def fill_amount(self):
        if self.amount is None:
            self.amount = self.quantity * self.unit_price
        return self


class LineItemCreate(BaseModel):
    description: str = Field(..., min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), ge=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)


# ==================== INVOICE (invoices) ====================
class Invoice(Record):
    id: str
    account_id: str
    client_id: str
    number: str
    status: InvoiceStatus
    issue_date: date
    due_date: Optional[date] = None
    subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    items: List[LineItem] = Field(default_factory=list)


# ==================== BANK TRANSACTION (bank_transactions) ====================
class BankTransaction(Record):
    id: str
    account_id: str
    bank_account_id: Optional[str] = None
    amount: Decimal
    date: date
    description: Optional[str] = None
    status: Optional[BankTransactionStatus] = None
    matched_invoice_id: Optional[str] = None


# ==================== CLIENT (clients) ====================
class Client(Record):
    id: str
    account_id: str
    name: str
    health_score: Optional[int] = Field(default=None, ge=0, le=100)


# ==================== RECURRING RULES ====================
class AlwaysCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["always"] = "always"


class MonthInCondition(BaseModel):
    """Matches when the due date being generated falls in one of the months."""
    model_config = ConfigDict(extra="forbid")
    type: Literal["month_in"]
    months: List[int] = Field(..., min_length=1)

    @field_validator("months")
    @classmethod
    def months_in_range(cls, v: List[int]) -> List[int]:
        bad = [m for m in v if m < 1 or m > 12]
        if bad:
            raise ValueError(f"months must be between 1 and 12, got {bad}")
        return sorted(set(v))


class AppendNoteAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["append_note"]
    text: str = Field(..., min_length=1)


class ApplyDiscountAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["apply_discount"]
    percent: Decimal = Field(..., gt=0, le=100)


class SkipAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["skip"]


RuleCondition = Annotated[Union[AlwaysCondition, MonthInCondition], Field(discriminator="type")]
RuleAction = Annotated[Union[AppendNoteAction, ApplyDiscountAction, SkipAction], Field(discriminator="type")]


class RecurringRule(BaseModel):
    model_config = ConfigDict(extra="forbid")
    condition: RuleCondition = Field(default_factory=AlwaysCondition)
    action: RuleAction


# ==================== RECURRING TEMPLATE (recurring_invoices) ====================
class RecurringInvoiceTemplate(Record):
    id: str
    account_id: str
    client_id: str
    template_number: str
    frequency: RecurringFrequency
    next_due_date: date
    last_generated_date: Optional[date] = None
    state: RecurringState = RecurringState.draft
    last_state_change_at: Optional[datetime] = None
    subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    # Raw stored payload; parsed by services.recurring_rules when used
    rules: Optional[Any] = None
    items: List[LineItem] = Field(default_factory=list)

    @field_validator("state", mode="before")
    @classmethod
    def default_state(cls, v):
        return RecurringState.draft if v is None else v

    @computed_field
    @property
    def is_active(self) -> bool:
        return self.state == RecurringState.active


class RecurringTemplateCreate(BaseModel):
    client_id: str
    template_number: str = Field(..., min_length=1)
    frequency: RecurringFrequency = RecurringFrequency.monthly
    next_due_date: date
    subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    state: RecurringState = RecurringState.draft
    rules: Optional[Any] = None
    items: List[LineItemCreate] = Field(default_factory=list)


class StateTransitionRequest(BaseModel):
    state: RecurringState


class StateHistoryEntry(Record):
    id: str
    recurring_invoice_id: str
    old_state: Optional[RecurringState] = None
    new_state: Optional[RecurringState] = None
    changed_at: datetime
    changed_by: Optional[str] = None


class GeneratedInvoiceResult(BaseModel):
    template_id: str
    invoice: Optional[Invoice] = None
    skipped: bool = False
    due_date: date
    next_due_date: date
    applied_rules: List[str] = Field(default_factory=list)


# ==================== HEALTH SCORE ====================
class HealthScore(BaseModel):
    score: int = Field(..., ge=0, le=100)
    status: HealthLabel
    overdue_count: int
    total_invoiced: Decimal
    total_paid: Decimal
    payment_ratio: float
