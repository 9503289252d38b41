import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, BigInteger, DateTime, Boolean, ForeignKey, JSON, Text, CheckConstraint
)
from greenpay.database import Base
from greenpay.money import format_minor


def _uuid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


TRANSACTION_TYPES = ("send", "receive", "deposit", "withdraw", "exchange", "airtime", "card_purchase")
TRANSACTION_STATUSES = ("pending", "processing", "completed", "failed")
CARD_STATUSES = ("active", "inactive", "frozen", "blocked")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint("kes_balance >= 0", name="ck_users_kes_balance_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    full_name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=True)
    phone = Column(String, unique=True, index=True, nullable=True)

    # Wallets in minor units (cents); projection of completed ledger rows
    balance = Column(BigInteger, nullable=False, default=0)       # USD
    kes_balance = Column(BigInteger, nullable=False, default=0)   # KES

    has_virtual_card = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "fullName": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "balance": format_minor(self.balance),
            "kesBalance": format_minor(self.kes_balance),
            "hasVirtualCard": bool(self.has_virtual_card),
        }

    def __repr__(self):
        return f"<User(id={self.id}, balance={self.balance}, kes_balance={self.kes_balance})>"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint("fee >= 0", name="ck_transactions_fee_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    recipient_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=True)

    type = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)            # minor units, always positive
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String, nullable=False, default="pending")
    fee = Column(BigInteger, nullable=False, default=0)
    exchange_rate = Column(String, nullable=True)          # decimal string
    description = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)

    # Idempotency key for gateway events and client retries
    reference = Column(String, unique=True, index=True, nullable=False)
    admin_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "recipientId": self.recipient_id,
            "type": self.type,
            "amount": format_minor(self.amount),
            "currency": self.currency,
            "status": self.status,
            "fee": format_minor(self.fee),
            "exchangeRate": self.exchange_rate,
            "description": self.description,
            "metadata": self.meta or {},
            "reference": self.reference,
            "adminNotes": self.admin_notes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return (
            f"<Transaction(ref={self.reference}, user={self.user_id}, type={self.type}, "
            f"amount={self.amount}, currency={self.currency}, status={self.status})>"
        )


class VirtualCard(Base):
    __tablename__ = "virtual_cards"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    card_number = Column(String(16), nullable=False)
    cvv = Column(String(3), nullable=False)
    expiry_date = Column(String(5), nullable=False)
    status = Column(String, nullable=False, default="active")

    # Not fed by card purchases; app-level spending uses the user's wallets
    balance = Column(BigInteger, nullable=False, default=0)
    purchase_amount = Column(BigInteger, nullable=True)    # KES minor units
    payment_reference = Column(String, unique=True, nullable=True)
    purchased_at = Column(DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "cardNumber": self.card_number,
            "expiryDate": self.expiry_date,
            "status": self.status,
            "balance": format_minor(self.balance),
            "purchaseAmount": format_minor(self.purchase_amount) if self.purchase_amount else None,
            "paymentReference": self.payment_reference,
        }

    def __repr__(self):
        return f"<VirtualCard(user={self.user_id}, status={self.status})>"
