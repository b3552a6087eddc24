from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime, timezone


class User(BaseModel):
    """Storefront account (customer, vendor or admin)."""

    # ---------------- Profile ----------------
    id: str = Field(..., alias="_id")
    firebase_uid: Optional[str] = None
    display_name: str = ""
    email: str = ""
    email_verified: bool = False
    phone: Optional[str] = None
    role: Literal["customer", "vendor", "admin"] = "customer"

    # ---------------- Address ----------------
    address: str = ""
    city: str = ""
    country: str = "CM"

    # ---------------- Metadata ----------------
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def customer_name(self) -> str:
        return self.display_name or self.email

    model_config = {
        "from_attributes": True,
        "populate_by_name": True
    }
