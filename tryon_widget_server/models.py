"""
Pydantic models for widget API request validation.

All request bodies reject unknown fields. Field names follow the widget's
JSON conventions (camelCase) through aliases.

Security features:
- Product image must be an absolute http(s) URL
- Currency restricted to ISO 4217 style 3-letter codes
- maxTryOns bounded (1-10)
- Callback URLs must be http(s)
"""

from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tryon_widget_server.domain import ProductCategory, ProductSnapshot


def _is_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class WidgetModel(BaseModel):
    """Base model: strict about unknown fields, accepts aliases and names"""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ProductInput(WidgetModel):
    """Product as sent by the storefront"""

    id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    image: str = Field(..., max_length=2000, description="Absolute http(s) URL of the product image")
    category: Optional[ProductCategory] = None
    price: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        v = v.strip()
        if not _is_http_url(v):
            raise ValueError("Product image must be an http or https URL")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    def to_snapshot(self) -> ProductSnapshot:
        return ProductSnapshot(
            id=self.id,
            name=self.name,
            image=self.image,
            category=self.category.value if self.category else None,
            price=self.price,
            currency=self.currency,
        )


class SessionUserInput(WidgetModel):
    id: str = Field(..., min_length=1, max_length=255)


class SessionOptionsInput(WidgetModel):
    max_try_ons: Optional[int] = Field(default=None, alias="maxTryOns", ge=1, le=10)
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl", max_length=1000)

    @field_validator("callback_url")
    @classmethod
    def validate_callback_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _is_http_url(v):
            raise ValueError("callbackUrl must be an http or https URL")
        return v


class CreateSessionRequest(WidgetModel):
    """Body of POST /api/widget/session"""
    product: ProductInput
    user: Optional[SessionUserInput] = None
    options: Optional[SessionOptionsInput] = None


class TryOnRequest(WidgetModel):
    """Body of POST /api/widget/session/{id}/try-on"""
    photo: Optional[str] = Field(default=None, description="Base64 image or data URL")
    photo_url: Optional[str] = Field(default=None, alias="photoUrl", max_length=2000)
