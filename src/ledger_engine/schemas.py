"""Pydantic schemas for ledger payloads and versioned JSON blobs."""

from datetime import date
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ============================================================================
# Payload parts
# ============================================================================


class AddressInput(BaseModel):
    """Billing or shipping address."""

    model_config = ConfigDict(from_attributes=True)

    address_line_one: str | None = None
    address_line_two: str | None = None
    city: str | None = None
    zip_code: str | None = Field(default=None, max_length=20)
    state: str | None = None
    country: str | None = None


class LineItemInput(BaseModel):
    """Line item to add (no ``id``) or update (with ``id``)."""

    id: int | None = None
    employee_id: UUID
    placement_id: UUID | None = None
    description: str | None = Field(default=None, max_length=255)
    hours: Decimal = Field(default=Decimal("0"), ge=0)
    rate: Decimal = Field(default=Decimal("0"))
    amount: Decimal | None = None
    timesheet_hour_ids: list[int] = Field(default_factory=list)
    information: str | None = Field(default=None, max_length=255)
    document_id: str | None = None

    @model_validator(mode="after")
    def _check_hour_links(self) -> "LineItemInput":
        if len(set(self.timesheet_hour_ids)) != len(self.timesheet_hour_ids):
            raise ValueError("timesheet_hour_ids must not repeat")
        if self.timesheet_hour_ids and self.placement_id is None:
            raise ValueError("placement_id is required when timesheet_hour_ids are linked")
        return self


class TaxInformation(BaseModel):
    """Versioned tax block stored on the ledger header."""

    schema_version: Literal[1] = 1
    tax_id: str | None = None
    tax_name: str | None = None
    tax_rate: Decimal | None = None
    tax_amount: Decimal | None = None
    notes: str | None = None


def _check_discount(discount_type: str | None, discount_value: Decimal | None) -> None:
    if discount_type is not None and discount_value is None:
        raise ValueError("discount_value is required when discount_type is set")
    if discount_type == "percent" and discount_value is not None and discount_value > 100:
        raise ValueError("percent discount_value cannot exceed 100")


# ============================================================================
# Create / update payloads
# ============================================================================


class LedgerCreate(BaseModel):
    """Schema for raising a new invoice or bill."""

    company_id: UUID
    ledger_type: Literal["invoice", "bill"]
    save_as_draft: bool = False
    order_number: str | None = Field(default=None, max_length=30)
    ledger_date: date | None = None
    due_date: date | None = None
    discount_type: Literal["percent", "fixed"] | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    adjustment_amount: Decimal = Decimal("0")
    customer_note: str | None = None
    terms_and_conditions: str | None = None
    tax_information: TaxInformation | None = None
    billing_address: AddressInput | None = None
    shipping_address: AddressInput | None = None
    line_items: list[LineItemInput] = Field(min_length=1)
    actor_id: UUID | None = None

    @model_validator(mode="after")
    def _validate(self) -> "LedgerCreate":
        _check_discount(self.discount_type, self.discount_value)
        if self.due_date and self.ledger_date and self.due_date < self.ledger_date:
            raise ValueError("due_date cannot be before ledger_date")
        if any(item.id is not None for item in self.line_items):
            raise ValueError("line item ids are assigned by the ledger")
        _check_hour_ids(self.ledger_type, self.line_items)
        return self


class LedgerUpdate(BaseModel):
    """Schema for changing a ledger. Only fields that are sent are applied."""

    order_number: str | None = Field(default=None, max_length=30)
    ledger_date: date | None = None
    due_date: date | None = None
    discount_type: Literal["percent", "fixed"] | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)
    discount_amount: Decimal | None = Field(default=None, ge=0)
    adjustment_amount: Decimal | None = None
    customer_note: str | None = None
    terms_and_conditions: str | None = None
    tax_information: TaxInformation | None = None
    billing_address: AddressInput | None = None
    shipping_address: AddressInput | None = None
    line_items: list[LineItemInput] = Field(default_factory=list)
    actor_id: UUID | None = None

    @field_validator("discount_amount", "adjustment_amount")
    @classmethod
    def _not_null(cls, value: Decimal | None) -> Decimal | None:
        if value is None:
            raise ValueError("cannot be null")
        return value

    @model_validator(mode="after")
    def _validate(self) -> "LedgerUpdate":
        _check_discount(self.discount_type, self.discount_value)
        new_ids = [i for item in self.line_items for i in item.timesheet_hour_ids]
        if len(set(new_ids)) != len(new_ids):
            raise ValueError("an hour entry can only be linked to one line item")
        return self

    def header_changes(self) -> dict[str, Any]:
        """Header fields explicitly present in the payload."""
        skip = {"line_items", "billing_address", "shipping_address", "actor_id"}
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name not in skip
        }


def _check_hour_ids(ledger_type: str, line_items: list[LineItemInput]) -> None:
    hour_ids = [i for item in line_items for i in item.timesheet_hour_ids]
    if ledger_type == "bill" and hour_ids:
        raise ValueError("bills cannot consume timesheet hours")
    if len(set(hour_ids)) != len(hour_ids):
        raise ValueError("an hour entry can only be linked to one line item")


# ============================================================================
# Versioned blobs
# ============================================================================


class LedgerSnapshot(BaseModel):
    """Point-in-time view of a ledger used for activity diffs."""

    schema_version: Literal[1] = 1
    engine_version: str | None = None
    header: dict[str, Any] = Field(default_factory=dict)
    line_items: list[dict[str, Any]] = Field(default_factory=list)
    addresses: list[dict[str, Any]] = Field(default_factory=list)


class NotificationPayload(BaseModel):
    """Fully built message handed to the notification dispatcher."""

    schema_version: Literal[1] = 1
    slug: str
    ledger_id: UUID
    reference_id: str
    recipients: list[UUID] = Field(default_factory=list)
    subject: str
    body: str
    attachments: list[str] = Field(default_factory=list)
