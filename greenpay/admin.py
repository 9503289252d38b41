import logging

from greenpay import ledger, wallet
from greenpay.models import Transaction, User, VirtualCard
from greenpay.money import format_minor
from greenpay.money_movement import atomic

logger = logging.getLogger(__name__)


def delete_user(db, user_id):
    """Remove a user with their card and the transactions they own.

    Other users' rows that point at this user as counterpart keep their
    amounts (their balances depend on them); only ``recipient_id`` is cleared.
    """
    wallet.require_user(db, user_id)
    with atomic(db):
        cards = db.query(VirtualCard).filter(VirtualCard.user_id == user_id).delete(synchronize_session=False)
        txns = db.query(Transaction).filter(
            Transaction.user_id == user_id
        ).delete(synchronize_session=False)
        db.query(Transaction).filter(
            Transaction.recipient_id == user_id
        ).update({Transaction.recipient_id: None}, synchronize_session=False)
        db.query(User).filter(User.id == user_id).delete(synchronize_session=False)
    logger.warning(f"USER DELETED: User={user_id}, Transactions={txns}, Cards={cards}")
    return {"transactions": txns, "cards": cards}


def dashboard_stats(db):
    volume = ledger.total_volume(db)
    return {
        "users": db.query(User).count(),
        "transactions": db.query(Transaction).count(),
        "pendingWithdrawals": db.query(Transaction).filter(
            Transaction.type == "withdraw", Transaction.status == "pending"
        ).count(),
        "volume": {
            currency: {"volume": format_minor(v["volume"]), "revenue": format_minor(v["revenue"])}
            for currency, v in volume.items()
        },
    }
