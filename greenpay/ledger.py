"""Transaction store: the append-only ledger of money movements.

Rows are only ever inserted, or have their status / completion / notes /
metadata updated. Balances are derived from the completed rows; the scalar
balances on ``users`` are a projection kept in step by ``greenpay.wallet``
inside the same database transaction.
"""
import logging
import secrets
import string
import time
from decimal import Decimal
from datetime import datetime, timezone

from sqlalchemy import func, update

from greenpay.errors import DuplicateReference, NotFound, ValidationFailed
from greenpay.models import Transaction, TRANSACTION_TYPES, TRANSACTION_STATUSES
from greenpay.money import to_minor

logger = logging.getLogger(__name__)

CREDIT_TYPES = ("receive", "deposit")
DEBIT_TYPES = ("send", "withdraw", "airtime")

# Allowed status transitions; completed and failed are terminal
STATUS_TRANSITIONS = {
    "pending": {"processing", "completed", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}
MUTABLE_FIELDS = {"status", "completed_at", "admin_notes", "meta"}

_REF_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference(prefix="GP"):
    return prefix + str(int(time.time() * 1000)) + "".join(secrets.choice(_REF_ALPHABET) for _ in range(5))


def create_transaction(db, *, user_id, type, amount, currency, status="pending", fee=0,
                       recipient_id=None, exchange_rate=None, description=None,
                       meta=None, reference=None, completed_at=None):
    """Insert a ledger row inside the caller's database transaction.

    Amounts are minor units. Nothing is committed here; the caller commits
    the row together with the balance change it justifies.
    """
    if type not in TRANSACTION_TYPES:
        raise ValidationFailed(f"Invalid transaction type: {type}")
    if status not in TRANSACTION_STATUSES:
        raise ValidationFailed(f"Invalid transaction status: {status}")
    if amount <= 0:
        raise ValidationFailed("Amount must be greater than 0")
    if fee < 0:
        raise ValidationFailed("Fee cannot be negative")

    if reference is None:
        reference = generate_reference()
    elif get_transaction_by_reference(db, reference) is not None:
        raise DuplicateReference(f"Transaction reference already exists: {reference}")

    if status == "completed" and completed_at is None:
        completed_at = datetime.now(timezone.utc)

    txn = Transaction(
        user_id=user_id,
        recipient_id=recipient_id,
        type=type,
        amount=amount,
        currency=currency,
        status=status,
        fee=fee,
        exchange_rate=exchange_rate,
        description=description,
        meta=meta or {},
        reference=reference,
        completed_at=completed_at,
    )
    db.add(txn)
    db.flush()
    logger.info(f"Ledger insert: {txn!r}")
    return txn


def get_transaction(db, transaction_id):
    return db.query(Transaction).filter(Transaction.id == transaction_id).first()


def get_transaction_by_reference(db, reference):
    return db.query(Transaction).filter(Transaction.reference == reference).first()


def get_transactions_by_user_id(db, user_id):
    """All rows owned by the user, newest first."""
    return db.query(Transaction).filter(
        Transaction.user_id == user_id
    ).order_by(
        Transaction.created_at.desc(), Transaction.id.desc()
    ).all()


def update_transaction(db, transaction_id, **updates):
    """Update the mutable fields of a ledger row.

    Only ``status``, ``completed_at``, ``admin_notes`` and ``meta`` may change,
    and status only along ``STATUS_TRANSITIONS``. Metadata is merged, not
    replaced.
    """
    illegal = set(updates) - MUTABLE_FIELDS
    if illegal:
        raise ValidationFailed(f"Transaction fields are immutable: {', '.join(sorted(illegal))}")

    txn = get_transaction(db, transaction_id)
    if txn is None:
        raise NotFound("Transaction not found")

    new_status = updates.get("status")
    if new_status is not None and new_status != txn.status:
        if new_status not in STATUS_TRANSITIONS.get(txn.status, set()):
            raise ValidationFailed(f"Cannot move transaction from {txn.status} to {new_status}")
        txn.status = new_status
        if new_status == "completed" and "completed_at" not in updates:
            txn.completed_at = datetime.now(timezone.utc)

    if "completed_at" in updates:
        txn.completed_at = updates["completed_at"]
    if "admin_notes" in updates:
        txn.admin_notes = updates["admin_notes"]
    if updates.get("meta"):
        txn.meta = {**(txn.meta or {}), **updates["meta"]}

    db.flush()
    return txn


def _fold(transactions, currency):
    total = 0
    for txn in transactions:
        if txn.status != "completed":
            continue
        if txn.type == "exchange":
            meta = txn.meta or {}
            if txn.currency == currency:
                total -= txn.amount + txn.fee
            if meta.get("targetCurrency") == currency:
                total += to_minor(Decimal(str(meta.get("convertedAmount", "0"))))
        elif txn.currency != currency:
            continue
        elif txn.type in CREDIT_TYPES:
            total += txn.amount
        elif txn.type in DEBIT_TYPES:
            total -= txn.amount + txn.fee
        # card_purchase is paid via M-Pesa and never touches the wallets
    return total


def derive_balance(db, user_id, currency):
    """Recompute a wallet balance (minor units) by folding completed rows from zero."""
    rows = db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.status == "completed",
    ).all()
    return _fold(rows, currency)


def pending_withdrawals_total(db, user_id, currency):
    """amount + fee of withdrawals still awaiting admin review."""
    total = db.query(
        func.coalesce(func.sum(Transaction.amount + Transaction.fee), 0)
    ).filter(
        Transaction.user_id == user_id,
        Transaction.type == "withdraw",
        Transaction.currency == currency,
        Transaction.status == "pending",
    ).scalar()
    return int(total or 0)


def pending_withdrawals(db, limit=100):
    return db.query(Transaction).filter(
        Transaction.type == "withdraw",
        Transaction.status == "pending",
    ).order_by(Transaction.created_at.asc()).limit(limit).all()


def total_volume(db):
    """Completed volume and fee revenue per currency, in minor units."""
    rows = db.query(
        Transaction.currency,
        func.coalesce(func.sum(Transaction.amount), 0),
        func.coalesce(func.sum(Transaction.fee), 0),
    ).filter(
        Transaction.status == "completed"
    ).group_by(Transaction.currency).all()
    return {currency: {"volume": int(volume), "revenue": int(revenue)} for currency, volume, revenue in rows}


def transition_status(db, transaction_id, from_status, to_status):
    """Move a row from ``from_status`` to ``to_status`` with one conditional UPDATE.

    Returns False when the row was not in ``from_status`` any more, i.e. some
    other request (an admin double-click, a replayed webhook) got there first.
    """
    if to_status not in STATUS_TRANSITIONS.get(from_status, set()):
        raise ValidationFailed(f"Cannot move transaction from {from_status} to {to_status}")
    values = {"status": to_status}
    if to_status == "completed":
        values["completed_at"] = datetime.now(timezone.utc)
    result = db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id, Transaction.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    if claimed:
        txn = get_transaction(db, transaction_id)
        db.refresh(txn)
    return claimed
