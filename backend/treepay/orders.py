import logging
import math
from datetime import datetime

from botocore.exceptions import ClientError
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, root_validator
from sqlalchemy.orm import Session

from .banking import generate_transfer_info, get_price_breakdown
from .config import Settings, get_settings
from .contracts import ContractService
from .database import get_db
from .deps import get_contract_service, get_retry_service, require_workspace_id
from .ledger import (
    assign_lot,
    create_order,
    find_order_by_code,
    find_order_by_id,
    get_lots,
    get_orders_by_buyer,
    list_orders,
    mark_order_as_paid,
)
from .models import Order, PaymentMethod, PaymentStatus
from .retry import TreeGenerationRetryService
from .usdt import generate_payment_info, get_exchange_rate, lock_exchange_rate
from .utils import new_correlation_id, now_vn
from .workflow import record_settlement, trigger_post_payment_workflow

logger = logging.getLogger("orders")

router = APIRouter(prefix="/orders")


class CheckoutRequest(BaseModel):
    quantity: int
    payment_method: str
    buyer_id: str | None = None
    buyer_name: str | None = None
    buyer_email: str | None = None
    buyer_phone: str | None = None
    bank_code: str = "VCB"
    network: str = "bsc"

    @root_validator(skip_on_failure=True)
    def validate_checkout(cls, values):
        if values["quantity"] <= 0:
            raise ValueError("quantity must be positive")
        method = (values.get("payment_method") or "").upper()
        if method in ("BANKING", "BANK"):
            method = PaymentMethod.BANK_TRANSFER
        if method not in (PaymentMethod.BANK_TRANSFER, PaymentMethod.USDT):
            raise ValueError("payment_method must be one of: BANK_TRANSFER, USDT")
        values["payment_method"] = method
        return values


class VerifyRequest(BaseModel):
    transaction_hash: str | None = None
    note: str | None = None


class AssignLotRequest(BaseModel):
    lot_id: str


def _get_order_or_404(db: Session, workspace_id: str, order_id: str) -> Order:
    order = find_order_by_id(db, workspace_id, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _page_meta(total: int, page: int, limit: int) -> dict:
    return {"total": total, "page": page, "limit": limit, "totalPages": math.ceil(total / limit) if limit else 0}


@router.post("/checkout")
async def checkout(
        body: CheckoutRequest,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    workspace_id = require_workspace_id(settings)
    order = create_order(
        db,
        workspace_id,
        quantity=body.quantity,
        payment_method=body.payment_method,
        buyer_id=body.buyer_id,
        buyer_name=body.buyer_name,
        buyer_email=body.buyer_email,
        buyer_phone=body.buyer_phone,
    )
    logger.info("Order %s created: %s trees, %s", order.order_code, order.quantity, order.payment_method)

    response = {
        "order": order.to_dict(),
        "priceBreakdown": get_price_breakdown(order.quantity),
    }
    if order.payment_method == PaymentMethod.USDT:
        try:
            response["payment"] = generate_payment_info(order.total_amount, settings, body.network)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        response["exchangeRate"] = get_exchange_rate(settings)
    else:
        response["payment"] = generate_transfer_info(order.total_amount, order.order_code, body.bank_code)
    return response


@router.get("/admin")
async def admin_list_orders(
        status: str = Query("ALL"),
        payment_method: str = Query("ALL", alias="paymentMethod"),
        start_date: datetime | None = Query(None, alias="startDate"),
        end_date: datetime | None = Query(None, alias="endDate"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    workspace_id = require_workspace_id(settings)
    orders, total = list_orders(
        db,
        workspace_id,
        status=status,
        payment_method=payment_method,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {"data": [o.to_dict() for o in orders], "meta": _page_meta(total, page, limit)}


@router.get("/exchange-rate")
async def exchange_rate(settings: Settings = Depends(get_settings)):
    return get_exchange_rate(settings)


@router.post("/exchange-rate/lock")
async def lock_rate(session_id: str = Query(..., alias="sessionId"), settings: Settings = Depends(get_settings)):
    return lock_exchange_rate(session_id, settings)


@router.get("/lots")
async def list_lots(db: Session = Depends(get_db)):
    return [{"id": lot.id, "name": lot.name, "region": lot.region, "capacity": lot.capacity} for lot in get_lots(db)]


@router.get("/my-history")
async def my_history(
        user_id: str = Query(..., alias="userId"),
        status: str = Query("ALL"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    workspace_id = require_workspace_id(settings)
    orders, total = get_orders_by_buyer(db, workspace_id, user_id, status=status, limit=limit, offset=(page - 1) * limit)
    return {"data": [o.to_dict() for o in orders], "meta": _page_meta(total, page, limit)}


@router.post("/{order_id}/verify")
async def verify_order(
        order_id: str,
        body: VerifyRequest,
        x_admin_id: str | None = Header(None),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
        contract_service: ContractService = Depends(get_contract_service),
        retry_service: TreeGenerationRetryService = Depends(get_retry_service),
):
    """Manual settlement for payments that never produced a webhook."""
    workspace_id = require_workspace_id(settings)
    order = _get_order_or_404(db, workspace_id, order_id)
    if order.payment_status == PaymentStatus.VERIFIED:
        raise HTTPException(status_code=409, detail=f"Order {order.order_code} already verified")

    settled = mark_order_as_paid(db, order, body.transaction_hash, now_vn(), verified_by_id=x_admin_id or "admin")
    if settled is None:
        raise HTTPException(status_code=409, detail=f"Order {order.order_code} already verified")

    correlation_id = new_correlation_id("admin")
    await record_settlement(db, settings, "manual", body.transaction_hash, settled, correlation_id, raw=body.note)
    logger.info("[ADMIN:%s] Order %s verified manually by %s", correlation_id, settled.order_code, x_admin_id)

    workflow = await trigger_post_payment_workflow(db, settled, correlation_id, settings, contract_service, retry_service)
    return {"order": settled.to_dict(), "workflow": workflow}


@router.post("/{order_id}/assign-lot")
async def assign_order_lot(
        order_id: str,
        body: AssignLotRequest,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    workspace_id = require_workspace_id(settings)
    order = _get_order_or_404(db, workspace_id, order_id)
    try:
        order = assign_lot(db, order, body.lot_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return order.to_dict()


@router.post("/{order_id}/regenerate-artifacts")
async def regenerate_artifacts(
        order_id: str,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
        contract_service: ContractService = Depends(get_contract_service),
        retry_service: TreeGenerationRetryService = Depends(get_retry_service),
):
    """Re-run tree minting and contract delivery for a settled order."""
    workspace_id = require_workspace_id(settings)
    order = _get_order_or_404(db, workspace_id, order_id)
    if order.payment_status != PaymentStatus.VERIFIED:
        raise HTTPException(status_code=409, detail=f"Order {order.order_code} is not settled")

    correlation_id = new_correlation_id("recovery")
    logger.info("[RECOVERY:%s] Regenerating artifacts for order %s", correlation_id, order.order_code)
    workflow = await trigger_post_payment_workflow(db, order, correlation_id, settings, contract_service, retry_service)
    db.refresh(order)
    return {"order": order.to_dict(), "workflow": workflow}


@router.post("/{order_id}/resend-contract")
async def resend_contract(
        order_id: str,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
        contract_service: ContractService = Depends(get_contract_service),
):
    workspace_id = require_workspace_id(settings)
    order = _get_order_or_404(db, workspace_id, order_id)
    if not order.contract_pdf_url:
        raise HTTPException(status_code=409, detail=f"Order {order.order_code} has no stored contract")
    if not order.buyer_email:
        raise HTTPException(status_code=409, detail=f"Order {order.order_code} has no buyer email")

    try:
        delivery = await contract_service.resend_contract_email(
            order.order_code, order.buyer_email, order.buyer_name or "Khach hang", order.contract_pdf_url
        )
    except (OSError, ClientError) as e:
        logger.error("Stored contract for %s could not be read: %s", order.order_code, e)
        raise HTTPException(status_code=404, detail="Stored contract not found")

    if delivery.message_id:
        order.contract_message_id = delivery.message_id
        db.commit()
    return delivery.to_dict()


@router.get("/{order_code}")
async def get_order(
        order_code: str,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    workspace_id = require_workspace_id(settings)
    order = find_order_by_code(db, workspace_id, order_code.upper())
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order.to_dict()
