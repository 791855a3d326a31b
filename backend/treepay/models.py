from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey, Index, Text, text

from .database import Base
from .utils import now_vn


class OrderStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    COMPLETED = "COMPLETED"


class PaymentMethod:
    BANK_TRANSFER = "BANK_TRANSFER"
    USDT = "USDT"


class PaymentStatus:
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


VERIFIED_ONLY = text("payment_status = 'VERIFIED'")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        # at most one settled order per provider transaction
        Index(
            "uq_orders_verified_transaction_hash",
            "transaction_hash",
            unique=True,
            sqlite_where=VERIFIED_ONLY,
            postgresql_where=VERIFIED_ONLY,
        ),
    )

    id = Column(String, primary_key=True, index=True)
    workspace_id = Column(String, index=True)
    order_code = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, default=OrderStatus.PENDING, nullable=False)
    payment_method = Column(String, nullable=False)
    payment_status = Column(String, default=PaymentStatus.PENDING, nullable=False, index=True)
    total_amount = Column(Numeric(18, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    buyer_id = Column(String, nullable=True, index=True)
    buyer_name = Column(String, nullable=True)
    buyer_email = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)
    lot_id = Column(String, ForeignKey("lots.id"), nullable=True)
    transaction_hash = Column(String, nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by_id = Column(String, nullable=True)
    contract_pdf_url = Column(String, nullable=True)
    contract_message_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_vn)
    updated_at = Column(DateTime(timezone=True), default=now_vn, onupdate=now_vn)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "orderCode": self.order_code,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "paymentStatus": self.payment_status,
            "totalAmount": float(self.total_amount) if self.total_amount is not None else None,
            "quantity": self.quantity,
            "buyerId": self.buyer_id,
            "buyerName": self.buyer_name,
            "buyerEmail": self.buyer_email,
            "lotId": self.lot_id,
            "transactionHash": self.transaction_hash,
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "verifiedAt": self.verified_at.isoformat() if self.verified_at else None,
            "contractUrl": self.contract_pdf_url,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Lot(Base):
    __tablename__ = "lots"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    region = Column(String, nullable=True)
    capacity = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_vn)


class Tree(Base):
    __tablename__ = "trees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tree_code = Column(String, unique=True, index=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    owner_id = Column(String, nullable=True, index=True)
    lot_id = Column(String, ForeignKey("lots.id"), nullable=True)
    status = Column(String, default="SEEDLING")
    created_at = Column(DateTime(timezone=True), default=now_vn)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, index=True, nullable=True)
    provider = Column(String)
    provider_txn_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=True)
    amount = Column(Numeric(38, 18), nullable=True)
    currency = Column(String, nullable=True)
    raw_response = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_vn)
