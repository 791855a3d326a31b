import smtplib
from datetime import datetime

import pytest

from treepay.contracts import (
    generate_contract_html,
    generate_contract_metadata,
    generate_filename,
    validate_contract_data,
)
from treepay.utils import VN_TZ


def contract_data(**overrides):
    data = {
        "order_code": "DGX-20260101-ABC12",
        "customer_name": "Nguyen Van A",
        "customer_id": "user-1",
        "customer_email": "buyer@example.com",
        "tree_count": 2,
        "total_amount": 520000,
        "tree_codes": ["TREE-2026-00001", "TREE-2026-00002"],
        "lot_name": "Khu A",
        "payment_method": "BANKING",
        "payment_date": datetime(2026, 1, 1, tzinfo=VN_TZ),
        "contract_date": datetime(2026, 1, 2, tzinfo=VN_TZ),
    }
    data.update(overrides)
    return data


def test_validate_contract_data_reports_every_problem():
    assert validate_contract_data({}) == [
        "Missing order code",
        "Missing customer name",
        "Missing customer id",
        "Missing customer email",
        "Invalid tree count",
        "Invalid total amount",
        "Missing tree codes",
        "Missing lot name",
    ]
    assert validate_contract_data(contract_data()) == []
    assert validate_contract_data(contract_data(tree_count=0, total_amount=-1)) == [
        "Invalid tree count",
        "Invalid total amount",
    ]


def test_contract_metadata():
    metadata = generate_contract_metadata(contract_data())
    assert metadata == {
        "contract_number": "HD-DGX-20260101-ABC12",
        "signing_date": "02/01/2026",
        "expiry_date": "02/01/2032",
    }
    assert generate_filename("DGX-20260101-ABC12") == "hop-dong-dgx-20260101-abc12.pdf"


def test_contract_html_escapes_customer_input():
    html = generate_contract_html(contract_data(customer_name="<script>x</script>"))
    assert "&lt;script&gt;" in html
    assert "TREE-2026-00002" in html
    assert "520000 VND" in html


@pytest.mark.asyncio
async def test_generate_and_send_contract_email_disabled(contract_service, storage):
    result = await contract_service.generate_and_send_contract(contract_data())

    assert result.success
    assert result.url == "memory://contracts/hop-dong-dgx-20260101-abc12.pdf"
    assert result.email.status == "disabled"
    assert storage.objects["contracts/hop-dong-dgx-20260101-abc12.pdf"].startswith(b"%PDF")


@pytest.mark.asyncio
async def test_generate_and_send_contract_invalid_data(contract_service, storage):
    result = await contract_service.generate_and_send_contract(contract_data(tree_codes=[]))
    assert not result.success
    assert result.errors == ["Missing tree codes"]
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_email_failure_keeps_stored_contract(contract_service, settings, storage, monkeypatch):
    settings.email_user = "mailer@example.com"

    def broken_send(msg):
        raise smtplib.SMTPServerDisconnected("connection lost")

    monkeypatch.setattr(contract_service, "_smtp_send", broken_send)
    result = await contract_service.generate_and_send_contract(contract_data())

    assert result.success
    assert result.email.status == "failed"
    assert "connection lost" in result.email.error
    assert "contracts/hop-dong-dgx-20260101-abc12.pdf" in storage.objects


@pytest.mark.asyncio
async def test_resend_contract_reads_stored_pdf(contract_service, settings, storage, monkeypatch):
    settings.email_user = "mailer@example.com"
    sent = []
    monkeypatch.setattr(contract_service, "_smtp_send", sent.append)
    storage.objects["contracts/hop-dong-dgx-20260101-abc12.pdf"] = b"%PDF-stored"

    delivery = await contract_service.resend_contract_email(
        "DGX-20260101-ABC12", "buyer@example.com", "Nguyen Van A", "memory://contracts/x.pdf"
    )

    assert delivery.status == "sent"
    assert delivery.message_id
    attachment = next(sent[0].iter_attachments())
    assert attachment.get_content() == b"%PDF-stored"
    assert attachment.get_filename() == "hop-dong-dgx-20260101-abc12.pdf"
