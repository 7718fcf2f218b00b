from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _id_of(value: Any) -> Any:
    # Stripe returns either the id or the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


class EventCategory(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION = "subscription"
    CUSTOMER = "customer"
    PRODUCT = "product"
    PRICE = "price"
    INVOICE = "invoice"
    CHARGE = "charge"
    IGNORED = "ignored"


MIRROR_CATEGORIES = (
    EventCategory.CUSTOMER,
    EventCategory.PRODUCT,
    EventCategory.PRICE,
    EventCategory.INVOICE,
    EventCategory.CHARGE,
)


class Recurring(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interval: Optional[str] = None


class PriceRef(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: Optional[str] = None
    recurring: Optional[Recurring] = None


class PlanRef(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: Optional[str] = None
    interval: Optional[str] = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: Optional[str] = None
    price: Optional[PriceRef] = None
    plan: Optional[PlanRef] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionData(BaseModel):
    """Snapshot of a Stripe subscription as carried by ``customer.subscription.*``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    object: str = "subscription"
    customer: Optional[str] = None
    status: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    created: Optional[int] = None

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value: Any) -> Any:
        return _id_of(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> Any:
        return value or {}

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _cancel_flag(cls, value: Any) -> Any:
        return bool(value)

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        if item is None:
            return None
        if item.price and item.price.id:
            return item.price.id
        return item.plan.id if item.plan else None

    @property
    def interval(self) -> Optional[str]:
        item = self.first_item
        if item is None:
            return None
        if item.plan and item.plan.interval:
            return item.plan.interval
        if item.price and item.price.recurring:
            return item.price.recurring.interval
        return None

    @property
    def period_start(self) -> Optional[int]:
        if self.current_period_start:
            return self.current_period_start
        item = self.first_item
        return item.current_period_start if item else None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end:
            return self.current_period_end
        item = self.first_item
        return item.current_period_end if item else None

    @property
    def user_id(self) -> Optional[str]:
        value = self.metadata.get("user_id") or self.metadata.get("userId")
        return str(value) if value else None


class CheckoutSessionData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    object: str = "checkout.session"
    mode: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_status: Optional[str] = None
    client_reference_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _expanded_id(cls, value: Any) -> Any:
        return _id_of(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def user_id(self) -> Optional[str]:
        value = self.metadata.get("userId") or self.metadata.get("user_id") or self.client_reference_id
        return str(value) if value else None

    @property
    def promotion_id(self) -> Optional[str]:
        value = self.metadata.get("promotionId") or self.metadata.get("promotion_id")
        return str(value) if value else None


class MirrorObject(BaseModel):
    """Any other Stripe object; kept whole so the mirror row can store ``attrs``."""

    model_config = ConfigDict(extra="allow")

    id: str
    object: Optional[str] = None

    @property
    def raw(self) -> Dict[str, Any]:
        return self.model_dump()


EventData = Union[SubscriptionData, CheckoutSessionData, MirrorObject, None]


class Envelope(BaseModel):
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    category: EventCategory = EventCategory.IGNORED
    data: EventData = None

    @property
    def created_at(self) -> Optional[int]:
        return self.created


class ResyncSubscriptionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "userId"))
    customer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("customer_id", "customerId"))
    email: Optional[str] = None
