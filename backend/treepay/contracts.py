"""
Purchase contracts: render, convert to PDF, store, deliver by email.

``ContractService.generate_and_send_contract`` is the single entry point used
after settlement. Storing the PDF and emailing it are reported separately so a
failed email can be retried with ``resend_contract_email`` without rendering
again.
"""
import asyncio
import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import make_msgid
from io import BytesIO

from jinja2 import DictLoader, Environment, select_autoescape
from xhtml2pdf import pisa

from .config import Settings
from .utils import format_amount, now_vn

logger = logging.getLogger("contracts")

CONTRACT_FOLDER = "contracts"
CONTRACT_YEARS = 6

TEMPLATES = {
    "contract.html": """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<style>
  body { font-family: 'Times New Roman', serif; line-height: 1.6; padding: 40px; }
  h1 { text-align: center; color: #10B981; }
  h2 { color: #059669; border-bottom: 1px solid #10B981; padding-bottom: 5px; }
  .header { text-align: center; margin-bottom: 30px; }
  .tree-list { background: #f3f4f6; padding: 15px; margin: 20px 0; }
  .footer { margin-top: 30px; text-align: center; font-size: 12px; color: #666; }
</style>
</head>
<body>
  <div class="header">
    <h1>HOP DONG TRONG CAY DO DEN</h1>
    <p>So: {{ contract_number }}</p>
    <p>Ngay ky: {{ signing_date }}</p>
  </div>

  <h2>Ben A: Cong ty CP Dai Ngan Xanh</h2>
  <p>Dai dien: Ban Giam doc</p>

  <h2>Ben B: Khach hang</h2>
  <p><strong>Ho ten:</strong> {{ customer_name }}</p>
  <p><strong>Ma khach hang:</strong> {{ customer_id }}</p>
  <p><strong>Email:</strong> {{ customer_email }}</p>
  {% if customer_phone %}<p><strong>SDT:</strong> {{ customer_phone }}</p>{% endif %}

  <h2>Noi dung</h2>
  <p>So luong cay: {{ tree_count }}</p>
  <p>Tong gia tri: {{ total_amount }} VND</p>
  <p>Lo trong: {{ lot_name }}</p>
  <p>Phuong thuc thanh toan: {{ payment_method }} ({{ payment_date }})</p>

  <div class="tree-list">
    <p><strong>Ma cay:</strong></p>
    <ul>
    {% for code in tree_codes %}<li>{{ code }}</li>{% endfor %}
    </ul>
  </div>

  <p>Hop dong co hieu luc den ngay {{ expiry_date }}.</p>

  <div class="footer">Dai Ngan Xanh - {{ contract_number }}</div>
</body>
</html>
""",
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"]))


@dataclass
class EmailDelivery:
    status: str  # sent | failed | disabled
    message_id: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "sent"

    def to_dict(self) -> dict:
        return {"status": self.status, "success": self.success, "messageId": self.message_id, "error": self.error}


@dataclass
class ContractResult:
    success: bool
    url: str | None = None
    filename: str | None = None
    email: EmailDelivery | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "url": self.url,
            "filename": self.filename,
            "emailDelivery": self.email.to_dict() if self.email else None,
            "errors": self.errors,
        }


def _format_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def _add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # 29 February
        return value.replace(year=value.year + years, day=28)


def validate_contract_data(data: dict) -> list[str]:
    errors = []
    if not data.get("order_code"):
        errors.append("Missing order code")
    if not data.get("customer_name"):
        errors.append("Missing customer name")
    if not data.get("customer_id"):
        errors.append("Missing customer id")
    if not data.get("customer_email"):
        errors.append("Missing customer email")
    if not data.get("tree_count") or data["tree_count"] <= 0:
        errors.append("Invalid tree count")
    if not data.get("total_amount") or data["total_amount"] <= 0:
        errors.append("Invalid total amount")
    if not data.get("tree_codes"):
        errors.append("Missing tree codes")
    if not data.get("lot_name"):
        errors.append("Missing lot name")
    return errors


def generate_contract_metadata(data: dict) -> dict:
    contract_date = data.get("contract_date") or now_vn()
    return {
        "contract_number": f"HD-{data['order_code']}",
        "signing_date": _format_date(contract_date),
        "expiry_date": _format_date(_add_years(contract_date, CONTRACT_YEARS)),
    }


def generate_contract_html(data: dict) -> str:
    payment_date = data.get("payment_date") or now_vn()
    context = {
        **generate_contract_metadata(data),
        "customer_name": data["customer_name"],
        "customer_id": data["customer_id"],
        "customer_email": data["customer_email"],
        "customer_phone": data.get("customer_phone"),
        "tree_count": data["tree_count"],
        "total_amount": format_amount(data["total_amount"]),
        "tree_codes": data["tree_codes"],
        "lot_name": data["lot_name"],
        "payment_method": data.get("payment_method", "BANKING"),
        "payment_date": _format_date(payment_date),
    }
    return env.get_template("contract.html").render(**context)


def generate_filename(order_code: str) -> str:
    return f"hop-dong-{order_code.lower()}.pdf"


def contract_key(filename: str) -> str:
    return f"{CONTRACT_FOLDER}/{filename}"


def html_to_pdf(html: str) -> bytes:
    out = BytesIO()
    result = pisa.CreatePDF(src=html, dest=out, encoding="utf-8")
    if result.err:
        raise RuntimeError("xhtml2pdf failed to render contract")
    return out.getvalue()


class ContractService:
    def __init__(self, settings: Settings, storage, render_pdf=html_to_pdf):
        self.settings = settings
        self.storage = storage
        self._render_pdf = render_pdf

    async def generate_pdf(self, html: str) -> bytes:
        return await asyncio.to_thread(self._render_pdf, html)

    async def upload_contract(self, filename: str, pdf: bytes) -> str:
        return await self.storage.write(contract_key(filename), pdf, "application/pdf")

    def _build_email(self, to: str, customer_name: str, pdf: bytes, filename: str, url: str | None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.settings.email_from
        msg["To"] = to
        msg["Subject"] = "Hop dong trong cay Do Den cua ban"
        msg["Message-ID"] = make_msgid(domain="dainganxanh.vn")

        link = f"\n\nTai hop dong tai: {url}" if url else ""
        msg.set_content(
            f"Xin chao {customer_name},\n\n"
            f"Dinh kem la hop dong trong cay Do Den cua ban.{link}\n\n"
            f"Tran trong,\nDai Ngan Xanh Team"
        )
        msg.add_attachment(pdf, maintype="application", subtype="pdf", filename=filename)
        return msg

    def _smtp_send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.email_host, self.settings.email_port,
                          timeout=self.settings.email_timeout_seconds) as server:
            server.starttls()
            server.login(self.settings.email_user, self.settings.email_pass or "")
            server.send_message(msg)

    async def send_contract_email(
            self,
            to: str,
            customer_name: str,
            pdf: bytes,
            filename: str,
            url: str | None = None,
    ) -> EmailDelivery:
        if not self.settings.email_user:
            logger.warning("Skipping email send: EMAIL_USER not configured")
            return EmailDelivery(status="disabled")

        msg = self._build_email(to, customer_name, pdf, filename, url)
        try:
            await asyncio.to_thread(self._smtp_send, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send contract email to %s: %s", to, e)
            return EmailDelivery(status="failed", error=str(e))

        logger.info("Sent contract email to %s, messageId: %s", to, msg["Message-ID"])
        return EmailDelivery(status="sent", message_id=msg["Message-ID"])

    async def generate_and_send_contract(self, data: dict) -> ContractResult:
        errors = validate_contract_data(data)
        if errors:
            logger.error("Contract validation failed: %s", ", ".join(errors))
            return ContractResult(success=False, errors=errors)

        filename = generate_filename(data["order_code"])
        try:
            html = generate_contract_html(data)
            pdf = await self.generate_pdf(html)
            url = await self.upload_contract(filename, pdf)
        except Exception as e:
            logger.exception("Failed to generate contract for %s", data["order_code"])
            return ContractResult(success=False, filename=filename, errors=[str(e)])

        email = await self.send_contract_email(data["customer_email"], data["customer_name"], pdf, filename, url)
        logger.info("Contract generated for order %s: %s (email %s)", data["order_code"], url, email.status)
        return ContractResult(success=True, url=url, filename=filename, email=email)

    async def resend_contract_email(self, order_code: str, to: str, customer_name: str, url: str | None) -> EmailDelivery:
        filename = generate_filename(order_code)
        pdf = await self.storage.read(contract_key(filename))
        return await self.send_contract_email(to, customer_name, pdf, filename, url)
