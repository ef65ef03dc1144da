import asyncio
import html
import json
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage as MimeMessage
from email.utils import make_msgid
from typing import Any, Dict, List, Optional

from . import config
from .draft_orders import DraftOrderCoordinator
from .errors import ConfigurationError, NotFoundError, UpstreamError, ValidationError
from .models import EmailAttachment, EmailMessage, Order, RegistrationData
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

DEFAULT_ORDER_SUBJECT = "Your order confirmation"
DEFAULT_ORDER_MESSAGE = "Thank you for your order!"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _split_addresses(value: str) -> List[str]:
    return [a.strip() for a in (value or "").split(",") if a.strip()]


class SmtpSender:
    """Blocking smtplib transport, run in the default executor.

    Port 587 with STARTTLS unless the port is 465 (implicit TLS).
    """

    def __init__(
        self,
        host: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        user: str = config.SMTP_USER,
        password: str = config.SMTP_PASS,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.host and self.port and self.user and self.password)

    def _connect(self) -> smtplib.SMTP:
        if not self.configured:
            raise ConfigurationError("SMTP configuration is incomplete")
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.port != 465:
                smtp.starttls()
            smtp.login(self.user, self.password)
        except Exception:
            smtp.close()
            raise
        return smtp

    def _send_sync(self, message: EmailMessage) -> str:
        mime = MimeMessage()
        mime["From"] = message.from_address
        mime["To"] = ", ".join(message.to)
        if message.cc:
            mime["Cc"] = ", ".join(message.cc)
        if message.reply_to:
            mime["Reply-To"] = message.reply_to
        mime["Subject"] = message.subject
        message_id = make_msgid()
        mime["Message-ID"] = message_id
        mime.set_content(message.text or "This message requires an HTML-capable mail client.")
        if message.html:
            mime.add_alternative(message.html, subtype="html")
        for att in message.attachments:
            maintype, _, subtype = att.content_type.split(";")[0].partition("/")
            mime.add_attachment(att.content, maintype=maintype, subtype=subtype or "octet-stream", filename=att.filename)

        smtp = self._connect()
        try:
            smtp.send_message(mime, to_addrs=message.to + message.cc + message.bcc)
        finally:
            smtp.quit()
        return message_id

    async def send(self, message: EmailMessage) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._send_sync, message)

    def _verify_sync(self) -> None:
        smtp = self._connect()
        try:
            smtp.noop()
        finally:
            smtp.quit()

    async def verify(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._verify_sync)


# ── templates ─────────────────────────────────────────────────────
_BOX = "background: #f8f9fa; padding: 15px; border-radius: 6px; margin: 20px 0;"
_H3 = "margin-top: 0; color: #0066cc;"


def _section(title: str, body: str, box: str = _BOX, h3: str = _H3) -> str:
    return f'<div style="{box}"><h3 style="{h3}">{html.escape(title)}</h3>{body}</div>'


def _field(label: str, value: Any) -> str:
    return f"<p><strong>{html.escape(label)}:</strong> {html.escape(str(value or ''))}</p>"


def render_admin_registration(data: RegistrationData, raw: Dict[str, Any], brand: str) -> str:
    parts = [
        f'<h2 style="color: #333; border-bottom: 2px solid #0066cc; padding-bottom: 10px;">'
        f"{html.escape(brand)} - New Registration</h2>",
        _section(
            "Company Information",
            _field("Company", data.company_name)
            + _field("Contact Person", data.contact_person)
            + _field("Email", data.get_contact_email())
            + _field("Phone", data.phone),
        ),
        _section(
            "Address Information",
            _field("Address", data.address1)
            + (_field("Address 2", data.address2) if data.address2 else "")
            + _field("City", data.city)
            + _field("Postal Code", data.zip)
            + _field("Country", f"{data.country} ({data.country_code})"),
        ),
    ]
    if data.vat_number:
        parts.append(_section("Business Information", _field("VAT Number", data.vat_number)))
    if data.notes:
        parts.append(_section("Additional Notes", f"<p>{html.escape(data.notes)}</p>"))
    parts.append(
        _section(
            "Marketing Preferences",
            _field("Marketing Consent", "Yes" if data.marketing_consent else "No")
            + _field("Terms Accepted", "Yes" if data.terms_accepted else "No"),
            box="background: #f0f0f0; padding: 15px; border-radius: 6px; margin: 20px 0;",
            h3="margin-top: 0; color: #666;",
        )
    )
    parts.append(
        '<div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #ddd;">'
        '<p style="color: #666; font-size: 14px;"><strong>Full data is attached as CSV.</strong><br>'
        f"Registration received at: {_now()}</p></div>"
    )
    parts.append(
        _section(
            "Raw JSON Data",
            '<pre style="background: #f8f9fa; padding: 10px; font-size: 12px;">'
            f"{html.escape(json.dumps(raw, indent=2, ensure_ascii=False, default=str))}</pre>",
        )
    )
    return '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">' + "".join(parts) + "</div>"


def render_user_confirmation(data: RegistrationData, brand: str, contact: str) -> str:
    steps = "".join(
        f"<li>{s}</li>"
        for s in (
            "Our team will review your registration",
            "We'll verify your business information",
            "You'll receive account setup instructions within 1-2 business days",
            "Our support team will contact you if we need additional information",
        )
    )
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #0066cc; border-bottom: 2px solid #0066cc; padding-bottom: 10px;">'
        "Thank you for your registration</h2>"
        f'<div style="{_BOX}">'
        f"<p>Dear {html.escape(data.contact_person)},</p>"
        f"<p>Thank you for your interest in {html.escape(brand)}.</p>"
        "<p>We have received your registration for:</p>"
        f'<p style="background: white; padding: 15px; border-left: 4px solid #0066cc;">'
        f"<strong>{html.escape(data.company_name)}</strong></p>"
        "<p>Our team will review your application and get back to you shortly.</p></div>"
        + _section("What happens next?", f"<ul>{steps}</ul>", box="background: #e7f3ff; padding: 15px; border-radius: 6px;")
        + '<p style="color: #666; font-size: 14px;">If you have any questions, please contact us.<br>'
        f"<strong>Email:</strong> {html.escape(contact)}</p>"
        f'<p style="color: #999; font-size: 12px; text-align: center;">'
        f"This is an automated message from {html.escape(brand)}.</p></div>"
    )


class Emailer:
    """Registration mail over SMTP and order receipts through Shopify."""

    def __init__(
        self,
        client: ShopifyClient,
        coordinator: DraftOrderCoordinator,
        sender: Optional[SmtpSender] = None,
        brand: str = config.BRAND,
        from_address: str = config.SMTP_FROM,
        admin_recipients: str = config.ADMIN_RECIPIENTS,
        copy_to_address: str = config.COPY_TO_ADDRESS,
    ):
        self.client = client
        self.coordinator = coordinator
        self.sender = sender or SmtpSender()
        self.brand = brand
        self.from_address = from_address
        self.admin_recipients = admin_recipients
        self.copy_to_address = copy_to_address

    # ── registration ─────────────────────────────────────────────
    async def send_admin_notification(self, raw: Dict[str, Any]) -> dict:
        data = RegistrationData.model_validate(raw)
        if not data.is_valid():
            raise ValidationError("Invalid registration data")
        recipients = _split_addresses(self.admin_recipients)
        if not recipients:
            raise ConfigurationError("No admin recipients configured")

        message = EmailMessage(
            from_address=self.from_address,
            to=recipients,
            reply_to=data.get_contact_email(),
            subject=f"New registration - {self.brand}: {data.company_name or 'n/a'}",
            html=render_admin_registration(data, raw, self.brand),
            attachments=[
                EmailAttachment(
                    filename="registration.csv",
                    content=data.to_csv().encode("utf-8"),
                    content_type="text/csv; charset=utf-8",
                )
            ],
        )
        if not message.is_valid():
            raise ConfigurationError("Invalid email message configuration")
        message_id = await self.sender.send(message)
        return {
            "success": True,
            "message_id": message_id,
            "recipients": message.to,
            "subject": message.subject,
            "sent_at": _now(),
            "company": data.company_name,
            "contact_email": data.get_contact_email(),
        }

    async def send_user_confirmation(self, raw: Dict[str, Any]) -> dict:
        data = RegistrationData.model_validate(raw)
        user_email = data.get_contact_email()
        if not user_email:
            raise ValidationError("No user email address found")
        contact = (_split_addresses(self.admin_recipients) or ["info@ikyum.com"])[0]
        message = EmailMessage(
            from_address=self.from_address,
            to=[user_email],
            subject=f"Thank you - {self.brand}",
            html=render_user_confirmation(data, self.brand, contact),
        )
        if not message.is_valid():
            raise ConfigurationError("Invalid confirmation email configuration")
        message_id = await self.sender.send(message)
        return {
            "success": True,
            "message_id": message_id,
            "recipient": user_email,
            "subject": message.subject,
            "sent_at": _now(),
            "company": data.company_name,
            "contact_person": data.contact_person,
        }

    async def send_registration_emails(self, raw: Dict[str, Any]) -> dict:
        """Send both registration emails; success means the admin copy went out."""
        results: Dict[str, Any] = {
            "admin_notification": None,
            "user_confirmation": None,
            "success": False,
            "errors": [],
        }
        try:
            results["admin_notification"] = await self.send_admin_notification(raw)
        except Exception as exc:
            logger.error("Admin notification failed: %s", exc)
            results["errors"].append(f"Admin notification failed: {exc}")
        try:
            results["user_confirmation"] = await self.send_user_confirmation(raw)
        except Exception as exc:
            logger.warning("User confirmation failed: %s", exc)
            results["errors"].append(f"User confirmation failed: {exc}")
        results["success"] = bool(results["admin_notification"])
        return results

    async def test_configuration(self) -> dict:
        try:
            await self.sender.verify()
        except Exception as exc:
            return {"success": False, "message": "Email configuration test failed", "error": str(exc)}
        return {
            "success": True,
            "message": "Email configuration is valid",
            "smtp_host": self.sender.host,
            "smtp_port": self.sender.port,
            "smtp_user": "configured" if self.sender.user else "missing",
        }

    # ── order receipts (sent by Shopify) ─────────────────────────
    async def send_order_confirmation(
        self,
        order_id: int,
        customer_id: int,
        cc: Optional[List[str]] = None,
        subject: Optional[str] = None,
        custom_message: Optional[str] = None,
    ) -> dict:
        if not order_id:
            raise ValidationError("Order ID is required")
        if not customer_id:
            raise ValidationError("Customer ID is required")
        subject = subject or DEFAULT_ORDER_SUBJECT
        custom_message = custom_message or DEFAULT_ORDER_MESSAGE

        data = await self.client.get(f"/customers/{customer_id}.json")
        customer = data.get("customer")
        if not customer:
            raise NotFoundError("Customer not found")
        customer_email = customer.get("email")
        if not customer_email:
            raise ValidationError("Customer has no email address")

        recipients = [customer_email]
        for addr in cc or []:
            if addr and addr not in recipients:
                recipients.append(addr)

        response = await self.client.post(
            f"/orders/{order_id}/send_receipt.json",
            {"email": {"to": ",".join(recipients), "subject": subject, "custom_message": custom_message}},
        )
        logger.info("Order %s receipt sent to %d recipient(s)", order_id, len(recipients))
        return {
            "success": True,
            "order_id": order_id,
            "recipients": recipients,
            "subject": subject,
            "sent_at": _now(),
            "shopify_response": response,
        }

    async def send_order_email_after_completion(
        self,
        customer_id: int,
        draft_id: int,
        invoice_url: Optional[str] = None,
        cc: Optional[List[str]] = None,
        subject: Optional[str] = None,
        custom_message: Optional[str] = None,
    ) -> dict:
        completion = await self.coordinator.complete(draft_id, invoice_url=invoice_url)
        if not completion.get("order_id"):
            raise UpstreamError("Failed to complete draft order")

        all_cc = list(cc or [])
        if self.copy_to_address:
            all_cc.insert(0, self.copy_to_address)

        try:
            email = await self.send_order_confirmation(
                completion["order_id"], customer_id, cc=all_cc, subject=subject, custom_message=custom_message
            )
        except Exception as exc:
            # The order exists at this point; report the email step separately.
            logger.error("Order %s completed but receipt failed: %s", completion["order_id"], exc)
            return {
                "success": False,
                "order_completed": True,
                "email_sent": False,
                "order_id": completion["order_id"],
                "draft_id": draft_id,
                "completed_at": completion.get("completed_at"),
                "error": str(exc),
                "order": completion.get("order"),
            }

        return {
            "success": True,
            "order_completed": True,
            "email_sent": True,
            "order_id": completion["order_id"],
            "draft_id": draft_id,
            "completed_at": completion.get("completed_at"),
            "email_recipients": email["recipients"],
            "order": completion.get("order"),
            "draft_order": completion.get("draft_order"),
        }

    async def order_email_status(self, order_id: int) -> dict:
        data = await self.client.get(f"/orders/{order_id}.json")
        if not data.get("order"):
            raise NotFoundError("Order not found")
        order = Order.model_validate(data["order"])
        return {
            "order_id": order_id,
            "order_name": order.name,
            "order_number": order.order_number,
            "customer_email": order.customer_email(),
            "confirmed": order.confirmed,
            "created_at": order.created_at,
            "processed_at": order.processed_at,
            "financial_status": order.financial_status,
            "fulfillment_status": order.fulfillment_status,
            "has_email_address": bool(order.customer_email()),
        }
