"""
Typed views over Stripe objects.

Stripe responses and webhook bodies are validated into these models at the
gateway and webhook boundary so the lifecycle services never poke at raw
dictionaries. Expandable references (``"ch_123"`` or ``{"id": "ch_123", ...}``)
are normalized to plain ids.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import Field, field_validator

from ._strict_base import ProcessorPayload

PayloadT = TypeVar("PayloadT", bound=ProcessorPayload)

PAID_CHECKOUT_PAYMENT_STATUSES = ("paid", "no_payment_required")


def stripe_to_dict(obj: Any) -> Dict[str, Any]:
    """Plain-dict copy of a StripeObject (or a dict already)."""
    if obj is None:
        return {}
    for attr in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return dict(converter())
    if isinstance(obj, Mapping):
        return dict(obj)
    raise TypeError(f"Cannot convert {type(obj).__name__} to a dict")


def expandable_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        found = value.get("id")
        return str(found) if found else None
    found = getattr(value, "id", None)
    return str(found) if found else None


def _metadata(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    return dict(value) if isinstance(value, Mapping) else stripe_to_dict(value)


class PaymentIntentSnapshot(ProcessorPayload):
    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    amount_capturable: Optional[int] = None
    capture_method: Optional[str] = None
    latest_charge: Optional[str] = None
    customer: Optional[str] = None
    payment_method: Optional[str] = None
    cancellation_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("latest_charge", "customer", "payment_method", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> Optional[str]:
        return expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _normalize_metadata(cls, value: Any) -> Dict[str, Any]:
        return _metadata(value)

    @property
    def is_authorized_or_paid(self) -> bool:
        return self.status in ("succeeded", "requires_capture")


class CheckoutSessionSnapshot(ProcessorPayload):
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    url: Optional[str] = None
    customer: Optional[str] = None
    setup_intent: Optional[str] = None
    payment_intent: Optional[PaymentIntentSnapshot] = None
    charge: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", "setup_intent", "charge", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> Optional[str]:
        return expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _normalize_metadata(cls, value: Any) -> Dict[str, Any]:
        return _metadata(value)

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _expand_payment_intent(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            return {"id": value}
        if isinstance(value, Mapping):
            return value
        return stripe_to_dict(value)

    @classmethod
    def from_stripe(cls, obj: Any) -> "CheckoutSessionSnapshot":
        return cls.model_validate(stripe_to_dict(obj))

    @property
    def payment_intent_id(self) -> Optional[str]:
        return self.payment_intent.id if self.payment_intent else None

    @property
    def charge_id(self) -> Optional[str]:
        if self.charge:
            return self.charge
        return self.payment_intent.latest_charge if self.payment_intent else None

    @property
    def metadata_payment_id(self) -> Optional[str]:
        value = self.metadata.get("paymentId")
        return str(value) if value else None

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    @property
    def is_paid(self) -> bool:
        return self.is_complete and self.payment_status in PAID_CHECKOUT_PAYMENT_STATUSES

    @property
    def is_collected(self) -> bool:
        """Paid, or a manual-capture hold that Checkout reports as ``unpaid``."""
        if self.is_paid:
            return True
        return bool(
            self.is_complete
            and self.payment_intent is not None
            and self.payment_intent.status == "requires_capture"
        )


class SetupIntentDetails(ProcessorPayload):
    setup_intent_id: str
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "SetupIntentDetails":
        data = stripe_to_dict(obj)
        return cls(
            setup_intent_id=str(data.get("id")),
            customer_id=expandable_id(data.get("customer")),
            payment_method_id=expandable_id(data.get("payment_method")),
        )


class ChargeSnapshot(ProcessorPayload):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_captured: Optional[int] = None
    amount_refunded: int = 0

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> Optional[str]:
        return expandable_id(value)

    @property
    def captured_cents(self) -> int:
        return self.amount_captured or self.amount


class DisputeSnapshot(ProcessorPayload):
    id: str
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("charge", "payment_intent", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> Optional[str]:
        return expandable_id(value)


class AccountSnapshot(ProcessorPayload):
    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False


class StripeEventData(ProcessorPayload):
    object: Dict[str, Any] = Field(default_factory=dict)


class StripeEventEnvelope(ProcessorPayload):
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    account: Optional[str] = None
    data: StripeEventData = Field(default_factory=StripeEventData)

    @classmethod
    def from_stripe(cls, obj: Any) -> "StripeEventEnvelope":
        return cls.model_validate(stripe_to_dict(obj))

    @property
    def data_object(self) -> Dict[str, Any]:
        return self.data.object

    def object_as(self, model: Type[PayloadT]) -> PayloadT:
        return model.model_validate(self.data.object)
