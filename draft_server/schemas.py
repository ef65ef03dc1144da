"""Request bodies accepted by the HTTP surface."""

import re
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
MONEY_PATTERN = r"^\d+(\.\d{1,2})?$"
URL_PATTERN = r"^https?://\S+$"

PositiveInt = Annotated[int, Field(gt=0)]


class AddressInput(BaseModel):
    id: Optional[int] = Field(default=None, gt=0)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    company: Optional[str] = None
    address1: str = Field(min_length=1)
    address2: Optional[str] = None
    city: str = Field(min_length=1)
    province: Optional[str] = None
    country: str = Field(min_length=1)
    country_code: str = Field(min_length=2, max_length=2)
    zip: str = Field(min_length=1)
    phone: Optional[str] = None
    name: Optional[str] = None
    province_code: Optional[str] = None
    default: Optional[bool] = None


class MetafieldInput(BaseModel):
    namespace: str = Field(default="custom", min_length=1)
    key: str = Field(min_length=1)
    value: str = Field(min_length=1)
    type: str = "single_line_text_field"
    description: Optional[str] = None


class LineItemProperty(BaseModel):
    name: str
    value: str


class LineItemInput(BaseModel):
    variant_id: Optional[int] = Field(default=None, gt=0)
    product_id: Optional[int] = Field(default=None, gt=0)
    title: str = Field(min_length=1)
    quantity: PositiveInt
    price: Optional[str] = Field(default=None, pattern=MONEY_PATTERN)
    sku: Optional[str] = None
    variant_title: Optional[str] = None
    vendor: Optional[str] = None
    requires_shipping: Optional[bool] = None
    taxable: Optional[bool] = None
    gift_card: Optional[bool] = None
    fulfillment_service: Optional[str] = None
    grams: Optional[int] = Field(default=None, ge=0)
    properties: Optional[List[LineItemProperty]] = None

    @model_validator(mode="after")
    def _price_or_variant(self):
        if self.price is None and self.variant_id is None:
            raise ValueError("price is required unless variant_id is given")
        return self


class AppliedDiscount(BaseModel):
    description: str
    value_type: Literal["fixed_amount", "percentage"]
    value: str
    amount: Optional[str] = Field(default=None, pattern=MONEY_PATTERN)
    title: Optional[str] = None


class CreateDraftOrderRequest(BaseModel):
    customer_id: PositiveInt
    items: List[LineItemInput] = Field(min_length=1)
    note: Optional[str] = None
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    taxes_included: bool = False
    use_customer_default_address: bool = True
    shipping_address: Optional[AddressInput] = None
    billing_address: Optional[AddressInput] = None
    tags: Optional[str] = None
    applied_discount: Optional[AppliedDiscount] = None


class CompleteDraftOrderRequest(BaseModel):
    draft_id: PositiveInt
    invoice_url: Optional[str] = Field(default=None, pattern=URL_PATTERN)
    payment_pending: bool = False


class SendOrderConfirmationRequest(BaseModel):
    order_id: PositiveInt
    customer_id: PositiveInt
    cc: List[str] = []
    subject: Optional[str] = None
    custom_message: Optional[str] = None

    @field_validator("cc")
    @classmethod
    def _cc_emails(cls, value: List[str]) -> List[str]:
        return _check_emails(value)


class SendOrderEmailRequest(BaseModel):
    customer_id: PositiveInt
    draft_id: PositiveInt
    invoice_url: str = Field(pattern=URL_PATTERN)
    cc: List[str] = []
    subject: Optional[str] = None
    custom_message: Optional[str] = None

    @field_validator("cc")
    @classmethod
    def _cc_emails(cls, value: List[str]) -> List[str]:
        return _check_emails(value)


class CreateCustomerRequest(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: Optional[str] = None
    note: Optional[str] = None
    tags: List[str] = []
    default_address: AddressInput
    metafields: List[MetafieldInput] = []
    vat_number: Optional[str] = None
    verified_email: bool = True


class RegistrationForm(BaseModel):
    company_name: str = Field(min_length=1)
    contact_person: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    contact_email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    delivery_email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    phone: Optional[str] = None
    address1: str = Field(min_length=1)
    address2: Optional[str] = None
    city: str = Field(min_length=1)
    zip: str = Field(min_length=1)
    country: str = Field(min_length=1)
    country_code: str = Field(min_length=2, max_length=2)
    vat_number: Optional[str] = None
    customer_id: Optional[Union[int, str]] = None
    notes: Optional[str] = None
    marketing_consent: bool = False
    terms_accepted: bool

    @field_validator("terms_accepted")
    @classmethod
    def _terms(cls, value: bool) -> bool:
        if value is not True:
            raise ValueError("Terms must be accepted")
        return value


class RegistrationSubmitRequest(BaseModel):
    data: RegistrationForm
    hp: Optional[str] = None
    recaptchaToken: Optional[str] = None


def _check_emails(values: List[str]) -> List[str]:
    invalid = [v for v in values if not re.match(EMAIL_PATTERN, v or "")]
    if invalid:
        raise ValueError(f"Invalid CC email addresses: {', '.join(invalid)}")
    return values
