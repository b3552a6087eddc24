# models/order_model.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone


class _CamelModel(BaseModel):
    # Storefront payloads are camelCase; accept both spellings
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItem(_CamelModel):
    product_id: str
    vendor_id: Optional[str] = None
    name: str = ""
    quantity: int = 1
    price: int = 0                  # XAF per unit
    image: Optional[str] = None


class Address(_CamelModel):
    full_name: str = ""
    address: str = ""
    city: str = ""
    region: str = ""
    phone_number: str = ""
    country: str = "CM"


class PendingOrder(_CamelModel):
    """Checkout payload staged until the payment is confirmed.

    ``payment_reference`` is only set when the payment went through but the
    order could not be created; it keeps the order retryable.
    """
    items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_method: str = "standard"
    payment_method: Optional[str] = None
    subtotal: int = 0
    shipping: int = 0
    total_amount: int = 0

    payment_reference: Optional[str] = None
    staged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def order_payload(self) -> Dict[str, Any]:
        """The part of the staged order that identifies the purchase."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"payment_reference", "staged_at"},
        )

    def same_staging(self, other: Optional["PendingOrder"]) -> bool:
        """True when ``other`` is this same staged checkout (retry annotation aside)."""
        return (
            other is not None
            and other.staged_at == self.staged_at
            and other.order_payload() == self.order_payload()
        )
