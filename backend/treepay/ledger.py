import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .banking import calculate_order_amount, generate_order_code
from .models import Lot, Order, OrderStatus, PaymentMethod, PaymentStatus, PaymentTransaction, Tree
from .usdt import vnd_to_usdt
from .utils import now_vn, to_decimal

logger = logging.getLogger("ledger")


def create_order(
        db: Session,
        workspace_id: str,
        quantity: int,
        payment_method: str,
        buyer_id: str | None = None,
        buyer_name: str | None = None,
        buyer_email: str | None = None,
        buyer_phone: str | None = None,
) -> Order:
    db_order = Order(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        order_code=generate_order_code(),
        status=OrderStatus.PENDING,
        payment_method=payment_method,
        payment_status=PaymentStatus.PENDING,
        total_amount=calculate_order_amount(quantity),
        quantity=quantity,
        buyer_id=buyer_id,
        buyer_name=buyer_name,
        buyer_email=buyer_email,
        buyer_phone=buyer_phone,
    )
    db.add(db_order)
    db.commit()
    db.refresh(db_order)
    return db_order


def find_order_by_code(db: Session, workspace_id: str, order_code: str) -> Order | None:
    return (
        db.query(Order)
        .filter(Order.workspace_id == workspace_id, Order.order_code == order_code)
        .first()
    )


def find_order_by_id(db: Session, workspace_id: str, order_id: str) -> Order | None:
    return (
        db.query(Order)
        .filter(Order.workspace_id == workspace_id, Order.id == order_id)
        .first()
    )


def is_transaction_processed(db: Session, workspace_id: str, transaction_hash: str) -> bool:
    """True when a VERIFIED order already carries this provider transaction id."""
    return (
        db.query(Order.id)
        .filter(
            Order.workspace_id == workspace_id,
            Order.transaction_hash == transaction_hash,
            Order.payment_status == PaymentStatus.VERIFIED,
        )
        .first()
        is not None
    )


def mark_order_as_paid(
        db: Session,
        order: Order,
        transaction_hash: str | None,
        paid_at: datetime,
        verified_by_id: str | None = None,
) -> Order | None:
    """
    Settle an order. The write only applies while the order is not VERIFIED,
    so the first delivery to settle wins and its transaction hash is never
    overwritten. Returns None when another writer settled the order first.
    """
    now = now_vn()
    values = {
        Order.payment_status: PaymentStatus.VERIFIED,
        Order.transaction_hash: transaction_hash,
        Order.paid_at: paid_at,
        Order.verified_at: now,
        Order.status: OrderStatus.PAID,
        Order.updated_at: now,
    }
    if verified_by_id:
        values[Order.verified_by_id] = verified_by_id

    try:
        updated = (
            db.query(Order)
            .filter(Order.id == order.id, Order.payment_status != PaymentStatus.VERIFIED)
            .update(values, synchronize_session=False)
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Transaction %s already settled another order, refusing to settle %s",
            transaction_hash,
            order.order_code,
        )
        return None

    db.refresh(order)
    if not updated:
        logger.warning(
            "Order %s is already verified, transactionHash: %s",
            order.order_code,
            order.transaction_hash,
        )
        return None

    logger.info("Order %s marked as VERIFIED, transactionHash: %s", order.order_code, transaction_hash)
    return order


def mark_order_completed(db: Session, order: Order) -> None:
    if order.status == OrderStatus.PAID:
        order.status = OrderStatus.COMPLETED
        db.commit()


def find_pending_by_usdt_amount(
        db: Session,
        workspace_id: str,
        usdt_amount,
        rate,
        tolerance,
        scan_limit: int = 50,
) -> Order | None:
    """
    Match an on-chain amount to a pending USDT order.

    Only the most recent ``scan_limit`` pending orders are considered; with a
    larger backlog an older order cannot be matched and the delivery is
    rejected as unmatched.
    """
    observed = to_decimal(usdt_amount)
    tolerance = to_decimal(tolerance)

    candidates = (
        db.query(Order)
        .filter(
            Order.workspace_id == workspace_id,
            Order.payment_method == PaymentMethod.USDT,
            Order.payment_status == PaymentStatus.PENDING,
        )
        .order_by(Order.created_at.desc())
        .limit(scan_limit)
        .all()
    )

    best, best_diff = None, None
    for order in candidates:
        expected = vnd_to_usdt(order.total_amount, rate)
        diff = abs(observed - expected)
        if diff <= expected * tolerance and (best_diff is None or diff < best_diff):
            best, best_diff = order, diff

    if best is None and len(candidates) >= scan_limit:
        logger.warning(
            "No pending USDT order matched %s within the %s most recent; older orders were not scanned",
            observed,
            scan_limit,
        )
    return best


def get_trees_for_order(db: Session, order_id: str) -> list[Tree]:
    return db.query(Tree).filter(Tree.order_id == order_id).order_by(Tree.tree_code).all()


def get_order_details_for_contract(db: Session, workspace_id: str, order_id: str) -> dict | None:
    order = find_order_by_id(db, workspace_id, order_id)
    if not order:
        return None

    trees = get_trees_for_order(db, order.id)
    lot = None
    lot_id = order.lot_id or next((t.lot_id for t in trees if t.lot_id), None)
    if lot_id:
        lot = db.query(Lot).filter(Lot.id == lot_id).first()

    return {
        "order": order,
        "trees": trees,
        "lot_name": lot.name if lot else None,
    }


def update_contract_url(db: Session, order: Order, url: str, message_id: str | None = None) -> None:
    order.contract_pdf_url = url
    if message_id:
        order.contract_message_id = message_id
    db.commit()


def record_delivery(
        db: Session,
        provider: str,
        provider_txn_id: str | None,
        status: str,
        order_id: str | None = None,
        amount=None,
        currency: str | None = None,
        raw: str | None = None,
) -> None:
    db.add(PaymentTransaction(
        order_id=order_id,
        provider=provider,
        provider_txn_id=provider_txn_id,
        status=status,
        amount=to_decimal(amount) if amount is not None else None,
        currency=currency,
        raw_response=raw,
    ))
    db.commit()


def list_orders(
        db: Session,
        workspace_id: str,
        status: str = "ALL",
        payment_method: str = "ALL",
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
) -> tuple[list[Order], int]:
    query = db.query(Order).filter(Order.workspace_id == workspace_id)
    if status and status != "ALL":
        query = query.filter(Order.status == status)
    if payment_method and payment_method != "ALL":
        query = query.filter(Order.payment_method == payment_method)
    if start_date:
        query = query.filter(Order.created_at >= start_date)
    if end_date:
        query = query.filter(Order.created_at <= end_date)

    total = query.count()
    orders = query.order_by(Order.created_at.desc()).offset(offset).limit(limit).all()
    return orders, total


def get_orders_by_buyer(
        db: Session,
        workspace_id: str,
        buyer_id: str,
        status: str = "ALL",
        limit: int = 20,
        offset: int = 0,
) -> tuple[list[Order], int]:
    query = db.query(Order).filter(Order.workspace_id == workspace_id, Order.buyer_id == buyer_id)
    if status and status != "ALL":
        query = query.filter(Order.status == status)
    total = query.count()
    orders = query.order_by(Order.created_at.desc()).offset(offset).limit(limit).all()
    return orders, total


def get_lots(db: Session) -> list[Lot]:
    return db.query(Lot).order_by(Lot.name).all()


def assign_lot(db: Session, order: Order, lot_id: str) -> Order:
    lot = db.query(Lot).filter(Lot.id == lot_id).first()
    if not lot:
        raise LookupError(f"Lot {lot_id} not found")

    order.lot_id = lot.id
    db.query(Tree).filter(Tree.order_id == order.id).update({Tree.lot_id: lot.id}, synchronize_session=False)
    db.commit()
    db.refresh(order)
    logger.info("Order %s assigned to lot %s", order.order_code, lot.name)
    return order
