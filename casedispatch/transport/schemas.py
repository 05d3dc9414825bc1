# casedispatch/transport/schemas.py
"""
Request bodies for the case API.

Field names are camelCase on the wire; snake_case names are accepted too.
Required case fields are checked by the state machine, not here, so a
missing ``city`` gets the same error from every entry point.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from casedispatch.core.domain import CaseInput, DEFAULT_CURRENCY, IncomeEntry


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CreateCaseIn(_CamelModel):
    service_type: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=5000)
    phone: Optional[str] = Field(default=None, max_length=32)
    city: Optional[str] = Field(default=None, max_length=128)
    customer_id: Optional[str] = Field(default=None, max_length=128)
    category: Optional[str] = Field(default=None, max_length=128)
    neighborhood: Optional[str] = Field(default=None, max_length=128)
    address: Optional[str] = Field(default=None, max_length=512)
    priority: Optional[str] = Field(default=None, max_length=32)
    preferred_date: Optional[str] = Field(default=None, max_length=64)
    preferred_time: Optional[str] = Field(default=None, max_length=64)
    additional_details: Optional[str] = Field(default=None, max_length=5000)
    assignment_type: str = "open"
    provider_id: Optional[str] = Field(default=None, max_length=128)
    provider_name: Optional[str] = Field(default=None, max_length=256)
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    screenshots: list[Any] = Field(default_factory=list, max_length=20)

    def to_input(self) -> CaseInput:
        return CaseInput(**self.model_dump())


class AcceptIn(_CamelModel):
    provider_id: str = Field(min_length=1, max_length=128)
    provider_name: Optional[str] = Field(default=None, max_length=256)


class DeclineIn(_CamelModel):
    provider_id: str = Field(min_length=1, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=1000)


class ProviderIn(_CamelModel):
    provider_id: str = Field(min_length=1, max_length=128)


class IncomeIn(_CamelModel):
    amount: float = Field(ge=0)
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)
    payment_method: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=1000)

    def to_entry(self) -> IncomeEntry:
        return IncomeEntry(
            amount=self.amount,
            currency=self.currency.upper(),
            payment_method=self.payment_method,
            notes=self.notes,
        )


class CompleteIn(_CamelModel):
    completion_notes: Optional[str] = Field(default=None, max_length=5000)
    income: Optional[IncomeIn] = None


class StatusIn(_CamelModel):
    status: str = Field(min_length=1, max_length=32)
    message: Optional[str] = Field(default=None, max_length=5000)
