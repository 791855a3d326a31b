from decimal import Decimal

import httpx
import pytest

from treepay.errors import ConfigurationError
from treepay.usdt import (
    UsdtVerifier,
    build_qr_value,
    generate_payment_info,
    get_network,
    lock_exchange_rate,
    vnd_to_usdt,
)

from conftest import SENDER, make_receipt, rpc_transport

TX = "0x" + "ab" * 32
ONE_USDT_BSC = 10 ** 18


def test_network_decimals(settings):
    bsc = get_network("BSC", settings)
    polygon = get_network("matic", settings)
    assert bsc.decimals == 18
    assert polygon.decimals == 6
    assert polygon.name == "polygon"
    assert bsc.to_token_amount("10400000000000000000") == Decimal("10.4")
    assert polygon.to_token_amount(10400000) == Decimal("10.4")
    assert get_network("tron", settings) is None


def test_vnd_to_usdt():
    assert vnd_to_usdt(260000, 0.00004) == Decimal("10.40")
    assert vnd_to_usdt(780000, Decimal("0.00004")) == Decimal("31.20")


def test_payment_info_and_qr(settings):
    info = generate_payment_info(260000, settings, "polygon")
    assert info["usdtAmount"] == 10.4
    assert info["network"] == "POLYGON"
    assert info["qrValue"] == build_qr_value(get_network("polygon", settings), settings.company_usdt_wallet, "10.4")
    assert info["qrValue"].endswith("&uint256=10400000")


def test_lock_exchange_rate(settings):
    lock = lock_exchange_rate("session-1", settings)
    assert lock["sessionId"] == "session-1"
    assert lock["rate"] == settings.vnd_to_usd_rate


@pytest.mark.asyncio
async def test_verify_transaction_success(settings):
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: make_receipt(10 * ONE_USDT_BSC)}))
    result = await verifier.verify_transaction(TX, Decimal("10.40"), "bsc")
    assert result.verified
    assert result.actual_amount == Decimal(10)
    assert result.sender == SENDER
    assert result.recipient.lower() == settings.company_usdt_wallet.lower()


@pytest.mark.asyncio
async def test_verify_transaction_accepts_overpayment(settings):
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: make_receipt(50 * ONE_USDT_BSC)}))
    result = await verifier.verify_transaction(TX, Decimal("10.40"))
    assert result.verified


@pytest.mark.asyncio
async def test_verify_transaction_insufficient_amount(settings):
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: make_receipt(9 * ONE_USDT_BSC)}))
    result = await verifier.verify_transaction(TX, Decimal("10.40"))
    assert not result.verified
    assert result.error == "Insufficient amount. Expected: 10.4, Received: 9"


@pytest.mark.asyncio
async def test_verify_transaction_wrong_recipient(settings):
    receipt = make_receipt(11 * ONE_USDT_BSC, to="0x" + "12" * 20)
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: receipt}))
    result = await verifier.verify_transaction(TX, Decimal("10.40"))
    assert result.error == "Wrong recipient"


@pytest.mark.asyncio
async def test_verify_transaction_failed_or_missing(settings):
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: make_receipt(11 * ONE_USDT_BSC, status="0x0")}))
    assert (await verifier.verify_transaction(TX, Decimal("10.40"))).error == "Transaction failed"
    assert (await verifier.verify_transaction("0x" + "cd" * 32, Decimal("10.40"))).error == "Transaction not found"


@pytest.mark.asyncio
async def test_verify_transaction_other_token_ignored(settings):
    receipt = make_receipt(11 * ONE_USDT_BSC, contract="0x" + "34" * 20)
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: receipt}))
    result = await verifier.verify_transaction(TX, Decimal("10.40"))
    assert result.error == "USDT transfer not found in transaction"


@pytest.mark.asyncio
async def test_verify_transaction_rpc_failure(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(502))
    result = await UsdtVerifier(settings, transport=transport).verify_transaction(TX, Decimal("10.40"))
    assert not result.verified
    assert result.error.startswith("Verification error:")


@pytest.mark.asyncio
async def test_verify_transaction_requires_wallet(settings):
    settings.company_usdt_wallet = ""
    with pytest.raises(ConfigurationError):
        await UsdtVerifier(settings, transport=rpc_transport({})).verify_transaction(TX, Decimal("10.40"))


@pytest.mark.asyncio
async def test_verify_transaction_tolerance_band(settings):
    receipts = {
        "0x01": make_receipt(96 * ONE_USDT_BSC // 10),
        "0x02": make_receipt(9 * ONE_USDT_BSC),
    }
    verifier = UsdtVerifier(settings, transport=rpc_transport(receipts))

    assert (await verifier.verify_transaction("0x01", Decimal(10))).verified

    rejected = await verifier.verify_transaction("0x02", Decimal(10))
    assert not rejected.verified
    assert rejected.error == "Insufficient amount. Expected: 10, Received: 9"


@pytest.mark.asyncio
async def test_verify_transaction_empty_log_data(settings):
    receipt = make_receipt(10 * ONE_USDT_BSC)
    receipt["logs"][0]["data"] = "0x"
    verifier = UsdtVerifier(settings, transport=rpc_transport({TX: receipt}))

    result = await verifier.verify_transaction(TX, Decimal("10.40"))
    assert not result.verified
    assert result.error == "Malformed transfer event"
