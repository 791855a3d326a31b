"""
Inbound payment webhooks.

Both channels run the same gates in order: admission (guards), duplicate
check, order lookup, amount check, settlement, post-payment workflow. Every
gate before settlement can reject the delivery; nothing after settlement can,
because the payment is already recorded by then.
"""
import json
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ValidationError, root_validator
from sqlalchemy.orm import Session

from .banking import extract_order_code_from_content, validate_payment_amount
from .config import Settings, get_settings
from .contracts import ContractService
from .database import get_db
from .deps import get_contract_service, get_retry_service, get_usdt_verifier, require_workspace_id
from .errors import ConfigurationError, WebhookRejected
from .guards import banking_signature_guard, blockchain_signature_guard, ip_whitelist_guard, webhook_rate_limit
from .ledger import (
    find_order_by_code,
    find_pending_by_usdt_amount,
    is_transaction_processed,
    mark_order_as_paid,
    record_delivery,
)
from .models import PaymentStatus
from .retry import TreeGenerationRetryService
from .usdt import UsdtVerifier, get_network, vnd_to_usdt
from .utils import VN_TZ, format_amount, new_correlation_id, now_vn
from .workflow import record_settlement, trigger_post_payment_workflow

logger = logging.getLogger("webhooks")

router = APIRouter(prefix="/webhooks")

ALREADY_PROCESSED = {"success": True, "message": "Transaction already processed"}
PROCESSED = {"success": True, "message": "Payment processed successfully"}


class BankingWebhookPayload(BaseModel):
    transactionId: str
    amount: Decimal
    content: str
    bankCode: str | None = None
    accountNumber: str | None = None
    timestamp: str | None = None
    signature: str | None = None

    @root_validator(skip_on_failure=True)
    def validate_required(cls, values):
        if not values.get("transactionId") or not values.get("content"):
            raise ValueError("Missing required fields: transactionId, amount, or content")
        if values["amount"] <= 0:
            raise ValueError(f"Invalid amount: {values['amount']}. Must be positive.")
        return values


class BlockchainWebhookPayload(BaseModel):
    txHash: str
    fromAddress: str
    toAddress: str
    amount: str
    tokenAddress: str
    network: str
    blockNumber: int | None = None
    timestamp: int


def _parse_paid_at(timestamp: str | None) -> datetime:
    if not timestamp:
        return now_vn()
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable payment timestamp %r, using current time", timestamp)
        return now_vn()


def _parse_payload(raw_body: bytes, model):
    try:
        return model(**json.loads(raw_body or b"{}"))
    except (ValueError, TypeError) as e:
        # pydantic's ValidationError is a ValueError
        message = e.errors()[0]["msg"] if isinstance(e, ValidationError) else str(e)
        raise WebhookRejected(f"Invalid payload: {message}") from e


async def process_banking_webhook(
        db: Session,
        payload: BankingWebhookPayload,
        settings: Settings,
        contract_service: ContractService,
        retry_service: TreeGenerationRetryService,
        correlation_id: str,
) -> dict:
    workspace_id = require_workspace_id(settings)

    if is_transaction_processed(db, workspace_id, payload.transactionId):
        logger.info(
            "[WEBHOOK:%s] Transaction %s already processed, ignoring duplicate",
            correlation_id, payload.transactionId,
        )
        return ALREADY_PROCESSED

    order_code = extract_order_code_from_content(payload.content)
    if not order_code:
        raise WebhookRejected(f'Order code not found in content: "{payload.content}"')

    logger.info(
        "[WEBHOOK:%s] Processing payment for order %s, txn=%s", correlation_id, order_code, payload.transactionId
    )

    order = find_order_by_code(db, workspace_id, order_code)
    if not order:
        raise WebhookRejected(f"Order {order_code} not found")

    if order.payment_status == PaymentStatus.VERIFIED:
        raise WebhookRejected(
            f"Order {order_code} already paid by transaction {order.transaction_hash}"
        )

    if not validate_payment_amount(payload.amount, order.total_amount, settings.banking_tolerance_percent):
        raise WebhookRejected(
            f"Amount mismatch: paid {format_amount(payload.amount)}, expected {format_amount(order.total_amount)}"
        )

    settled = mark_order_as_paid(db, order, payload.transactionId, _parse_paid_at(payload.timestamp))
    if settled is None:
        return ALREADY_PROCESSED

    logger.info(
        "[WEBHOOK:%s] Order %s marked as VERIFIED, transactionId: %s",
        correlation_id, order_code, payload.transactionId,
    )
    await record_settlement(db, settings, "banking", payload.transactionId, settled, correlation_id,
                            amount=payload.amount, currency="VND")

    await trigger_post_payment_workflow(db, settled, correlation_id, settings, contract_service, retry_service)
    return PROCESSED


async def process_blockchain_webhook(
        db: Session,
        payload: BlockchainWebhookPayload,
        settings: Settings,
        verifier: UsdtVerifier,
        contract_service: ContractService,
        retry_service: TreeGenerationRetryService,
        correlation_id: str,
) -> dict:
    workspace_id = require_workspace_id(settings)

    network = get_network(payload.network, settings)
    if network is None:
        raise WebhookRejected(f"Unsupported network: {payload.network}")

    if payload.tokenAddress.lower() != network.usdt_contract.lower():
        raise WebhookRejected(f"Unsupported token: {payload.tokenAddress}")

    try:
        usdt_amount = network.to_token_amount(payload.amount)
    except (ValueError, InvalidOperation) as e:
        raise WebhookRejected(f"Invalid amount: {payload.amount}") from e

    logger.info(
        "[WEBHOOK:%s] USDT payment received: %s USDT from %s on %s",
        correlation_id, format_amount(usdt_amount), payload.fromAddress, network.name,
    )

    if is_transaction_processed(db, workspace_id, payload.txHash):
        logger.info("[WEBHOOK:%s] Transaction %s already processed, ignoring duplicate", correlation_id, payload.txHash)
        return ALREADY_PROCESSED

    order = find_pending_by_usdt_amount(
        db,
        workspace_id,
        usdt_amount,
        settings.vnd_to_usd_rate,
        settings.usdt_tolerance,
        settings.usdt_match_scan_limit,
    )
    if not order:
        raise WebhookRejected(f"No matching order for {format_amount(usdt_amount)} USDT")

    expected_usdt = vnd_to_usdt(order.total_amount, settings.vnd_to_usd_rate)
    verification = await verifier.verify_transaction(payload.txHash, expected_usdt, network.name)
    if not verification.verified:
        raise WebhookRejected(verification.error or "Verification failed")

    logger.info("[WEBHOOK:%s] Transaction verified: %s", correlation_id, payload.txHash)

    paid_at = datetime.fromtimestamp(payload.timestamp, VN_TZ)
    settled = mark_order_as_paid(db, order, payload.txHash, paid_at)
    if settled is None:
        return ALREADY_PROCESSED

    await record_settlement(db, settings, "blockchain", payload.txHash, settled, correlation_id,
                            amount=verification.actual_amount, currency="USDT")

    await trigger_post_payment_workflow(db, settled, correlation_id, settings, contract_service, retry_service)
    return PROCESSED


@router.post("/banking", dependencies=[Depends(ip_whitelist_guard), Depends(banking_signature_guard)])
async def banking_webhook(
        request: Request,
        x_request_id: str | None = Header(None),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
        contract_service: ContractService = Depends(get_contract_service),
        retry_service: TreeGenerationRetryService = Depends(get_retry_service),
):
    correlation_id = x_request_id or new_correlation_id()
    raw_body = await request.body()
    txn_id = None

    try:
        payload = _parse_payload(raw_body, BankingWebhookPayload)
        txn_id = payload.transactionId
        logger.info(
            "[WEBHOOK:%s] Received banking webhook: txn=%s, amount=%s, bank=%s",
            correlation_id, payload.transactionId, payload.amount, payload.bankCode,
        )
        return await process_banking_webhook(db, payload, settings, contract_service, retry_service, correlation_id)
    except WebhookRejected as e:
        logger.warning("[WEBHOOK:%s] Validation error: %s", correlation_id, e.message)
        record_delivery(db, "banking", txn_id, "REJECTED", raw=e.message)
        return {"success": False, "message": e.message}


@router.post("/blockchain", dependencies=[Depends(webhook_rate_limit), Depends(blockchain_signature_guard)])
async def blockchain_webhook(
        request: Request,
        x_request_id: str | None = Header(None),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
        verifier: UsdtVerifier = Depends(get_usdt_verifier),
        contract_service: ContractService = Depends(get_contract_service),
        retry_service: TreeGenerationRetryService = Depends(get_retry_service),
):
    correlation_id = x_request_id or new_correlation_id()
    raw_body = await request.body()
    tx_hash = None

    try:
        payload = _parse_payload(raw_body, BlockchainWebhookPayload)
        tx_hash = payload.txHash
        logger.info("[WEBHOOK:%s] Received blockchain webhook: %s", correlation_id, payload.txHash)
        return await process_blockchain_webhook(
            db, payload, settings, verifier, contract_service, retry_service, correlation_id
        )
    except WebhookRejected as e:
        logger.warning("[WEBHOOK:%s] Blockchain payment rejected: %s", correlation_id, e.message)
        record_delivery(db, "blockchain", tx_hash, "REJECTED", raw=e.message)
        return {"success": False, "message": e.message}
    except ConfigurationError:
        raise
    except Exception:
        # always 200 so the provider does not retry-storm
        logger.exception("[WEBHOOK:%s] Error processing blockchain webhook", correlation_id)
        return {"success": False, "message": "Internal error"}


@router.get("/blockchain/health")
async def blockchain_health():
    return {"status": "ok", "service": "blockchain-webhook"}
