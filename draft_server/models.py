import csv
import io
import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, model_validator

DRAFT_STATUS_OPEN = "open"
DRAFT_STATUS_INVOICE_SENT = "invoice_sent"
DRAFT_STATUS_COMPLETED = "completed"
COMPLETABLE_STATUSES = (DRAFT_STATUS_OPEN, DRAFT_STATUS_INVOICE_SENT)

METAFIELD_NAMESPACE = "custom"
METAFIELD_TYPE = "single_line_text_field"


class ShopifyRecord(BaseModel):
    # Upstream payloads carry many more fields than we model; keep them.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class CustomerAddress(ShopifyRecord):
    id: Optional[int] = None
    customer_id: Optional[int] = None
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    company: Optional[str] = ""
    address1: Optional[str] = ""
    address2: Optional[str] = ""
    city: Optional[str] = ""
    province: Optional[str] = ""
    country: Optional[str] = ""
    country_code: Optional[str] = ""
    zip: Optional[str] = ""
    phone: Optional[str] = ""
    name: Optional[str] = ""
    province_code: Optional[str] = ""
    default: bool = False

    def is_valid(self) -> bool:
        return bool(self.address1 and self.city and self.country_code)

    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Metafield(ShopifyRecord):
    id: Optional[int] = None
    namespace: str = METAFIELD_NAMESPACE
    key: str = ""
    value: Optional[Union[str, int, float, bool]] = ""
    type: str = METAFIELD_TYPE
    description: Optional[str] = ""
    owner_id: Optional[int] = None
    owner_resource: str = "customer"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def text(self) -> str:
        return clean_string(self.value)


class Customer(ShopifyRecord):
    id: Optional[int] = None
    email: Optional[str] = ""
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    phone: Optional[str] = ""
    note: Optional[str] = ""
    tags: Optional[str] = ""
    state: Optional[str] = "disabled"
    currency: Optional[str] = "USD"
    orders_count: int = 0
    total_spent: Optional[str] = "0.00"
    verified_email: bool = False
    tax_exempt: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    addresses: List[CustomerAddress] = []
    default_address: Optional[CustomerAddress] = None
    metafields: List[Metafield] = []

    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def address_company(self) -> str:
        """Company from the default address, else from any address that has one."""
        if self.default_address and clean_string(self.default_address.company):
            return clean_string(self.default_address.company)
        for addr in self.addresses:
            if clean_string(addr.company):
                return clean_string(addr.company)
        return ""

    def display_label(self) -> str:
        return (
            self.address_company()
            or self.full_name()
            or (self.email or "").strip()
            or f"Client {self.id}"
        )

    def parse_note(self) -> Dict[str, Any]:
        return parse_note(self.note)

    def get_metafield(self, namespace: str, key: str) -> Optional[Metafield]:
        for mf in self.metafields:
            if mf.namespace == namespace and mf.key == key:
                return mf
        return None

    def company_name(self) -> str:
        mf = self.get_metafield(METAFIELD_NAMESPACE, "company_name")
        return self.address_company() or (mf.text() if mf else "")

    def vat_number(self) -> str:
        from_note = clean_string(self.parse_note().get("vat_number"))
        mf = self.get_metafield(METAFIELD_NAMESPACE, "vat_number")
        return from_note or (mf.text() if mf else "")

    def tag_list(self) -> List[str]:
        return [t.strip() for t in str(self.tags or "").split(",") if t and t.strip()]


class LineItem(ShopifyRecord):
    id: Optional[int] = None
    variant_id: Optional[int] = None
    product_id: Optional[int] = None
    title: Optional[str] = ""
    quantity: int = 1
    price: Optional[str] = "0.00"
    sku: Optional[str] = ""
    variant_title: Optional[str] = ""
    vendor: Optional[str] = ""
    total_discount: Optional[str] = "0.00"
    requires_shipping: bool = True
    taxable: bool = True
    gift_card: bool = False
    fulfillment_status: Optional[str] = None


class Order(ShopifyRecord):
    id: Optional[int] = None
    name: Optional[str] = ""
    order_number: Optional[int] = None
    email: Optional[str] = ""
    contact_email: Optional[str] = ""
    confirmed: bool = True
    currency: Optional[str] = "USD"
    financial_status: Optional[str] = "pending"
    fulfillment_status: Optional[str] = None
    total_price: Optional[str] = "0.00"
    subtotal_price: Optional[str] = "0.00"
    total_tax: Optional[str] = "0.00"
    tags: Optional[str] = ""
    note: Optional[str] = ""
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    line_items: List[LineItem] = []
    billing_address: Optional[CustomerAddress] = None
    shipping_address: Optional[CustomerAddress] = None
    customer: Optional[Customer] = None

    def customer_email(self) -> str:
        return self.email or self.contact_email or ""


class DraftOrder(ShopifyRecord):
    id: Optional[int] = None
    name: Optional[str] = ""
    status: Optional[str] = DRAFT_STATUS_OPEN
    email: Optional[str] = ""
    note: Optional[str] = ""
    tags: Optional[str] = ""
    currency: Optional[str] = "USD"
    taxes_included: bool = False
    invoice_url: Optional[str] = ""
    invoice_sent_at: Optional[str] = None
    total_price: Optional[str] = "0.00"
    subtotal_price: Optional[str] = "0.00"
    total_tax: Optional[str] = "0.00"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    order_id: Optional[int] = None
    line_items: List[LineItem] = []
    customer: Optional[Customer] = None
    applied_discount: Optional[Dict[str, Any]] = None

    def linked_order_id(self) -> Optional[int]:
        """Order id from ``order_id`` or a nested ``order`` object (both shapes occur)."""
        if self.order_id:
            return self.order_id
        nested = getattr(self, "order", None)
        if isinstance(nested, dict) and nested.get("id"):
            return nested["id"]
        return None

    def is_completed(self) -> bool:
        return self.status == DRAFT_STATUS_COMPLETED

    def is_completable(self) -> bool:
        return self.status in COMPLETABLE_STATUSES


class ShopifyWebhook(ShopifyRecord):
    id: Optional[int] = None
    topic: str = ""
    address: str = ""
    format: str = "json"
    api_version: Optional[str] = None
    fields: List[str] = []
    metafield_namespaces: List[str] = []
    private_metafield_namespaces: List[str] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def is_valid(self) -> bool:
        return bool(self.topic and self.address)


class EmailAttachment(BaseModel):
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class EmailMessage(BaseModel):
    from_address: str = ""
    to: List[str] = []
    cc: List[str] = []
    bcc: List[str] = []
    reply_to: str = ""
    subject: str = ""
    text: str = ""
    html: str = ""
    attachments: List[EmailAttachment] = []

    def is_valid(self) -> bool:
        return bool(self.from_address and self.to and self.subject and (self.text or self.html))

    def add_recipient(self, email: str) -> None:
        if email and email not in self.to:
            self.to.append(email)

    def add_cc(self, email: str) -> None:
        if email and email not in self.cc:
            self.cc.append(email)


class RegistrationData(BaseModel):
    """Registration form submission; only ever turned into emails."""

    company_name: str = ""
    contact_person: str = ""
    email: str = ""
    contact_email: str = ""
    delivery_email: str = ""
    phone: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    zip: str = ""
    country: str = ""
    country_code: str = ""
    vat_number: str = ""
    customer_id: Optional[Union[int, str]] = None
    notes: str = ""
    marketing_consent: bool = False
    terms_accepted: bool = False

    @model_validator(mode="after")
    def _default_emails(self):
        if not self.contact_email:
            self.contact_email = self.email
        if not self.delivery_email:
            self.delivery_email = self.email
        return self

    def is_valid(self) -> bool:
        return bool(self.company_name and self.contact_person and self.email and self.terms_accepted)

    def get_contact_email(self) -> str:
        return self.contact_email or self.delivery_email or self.email

    def to_csv(self) -> str:
        def _cell(value: Any) -> str:
            if value is None or value is False:
                return ""
            if value is True:
                return "true"
            return str(value).replace("\r", " ").replace("\n", " ")

        fields = list(type(self).model_fields)
        out = io.StringIO()
        writer = csv.writer(out, delimiter=";", quoting=csv.QUOTE_ALL, lineterminator="\r\n")
        writer.writerow(fields)
        writer.writerow([_cell(getattr(self, f)) for f in fields])
        return out.getvalue()


# ── helpers shared by the sync engine ─────────────────────────────
def clean_string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def first_non_empty(*values: Any) -> str:
    for value in values:
        cleaned = clean_string(value)
        if cleaned:
            return cleaned
    return ""


def parse_note(note: Optional[str]) -> Dict[str, Any]:
    """Best-effort parse of a customer note as a JSON object.

    Invalid JSON, or JSON that is not an object, yields ``{}``.
    """
    if not note:
        return {}
    try:
        data = json.loads(note)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}
