"""Stored wallet balances (USD ``balance`` and KES ``kes_balance``).

The scalars are a projection of the ledger. They are never read, modified in
Python and written back: every change is a single conditional UPDATE issued
in the same database transaction as the ledger row that justifies it.
"""
import logging

from sqlalchemy import update

from greenpay import ledger
from greenpay.errors import InsufficientBalance, NotFound
from greenpay.models import User
from greenpay.money import USD, KES, format_minor, normalize_currency

logger = logging.getLogger(__name__)

BALANCE_COLUMNS = {
    USD: User.balance,
    KES: User.kes_balance,
}


def _column(currency):
    return BALANCE_COLUMNS[normalize_currency(currency)]


def get_user(db, user_id):
    return db.query(User).filter(User.id == user_id).first()


def require_user(db, user_id, label="User"):
    user = get_user(db, user_id)
    if user is None:
        raise NotFound(f"{label} not found")
    return user


def debit(db, user_id, currency, amount_minor):
    """Atomically subtract ``amount_minor`` if and only if the wallet covers it."""
    column = _column(currency)
    result = db.execute(
        update(User)
        .where(User.id == user_id, column >= amount_minor)
        .values({column: column - amount_minor})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if get_user(db, user_id) is None:
            raise NotFound("User not found")
        logger.warning(f"BLOCKED DEBIT [BALANCE]: User={user_id}, Amount={format_minor(amount_minor)} {currency}")
        raise InsufficientBalance()
    logger.info(f"Debited {format_minor(amount_minor)} {currency} from user {user_id}")


def credit(db, user_id, currency, amount_minor):
    column = _column(currency)
    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values({column: column + amount_minor})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("User not found")
    logger.info(f"Credited {format_minor(amount_minor)} {currency} to user {user_id}")


def get_balances(db, user_id):
    """Fresh read of both stored balances in minor units."""
    user = require_user(db, user_id)
    db.refresh(user)
    return {USD: user.balance, KES: user.kes_balance}


def reconcile(db, user_id):
    """Compare the stored projection with the ledger fold for both wallets."""
    stored = get_balances(db, user_id)
    report = {}
    for currency in (USD, KES):
        derived = ledger.derive_balance(db, user_id, currency)
        report[currency] = {
            "stored": format_minor(stored[currency]),
            "derived": format_minor(derived),
            "drift": format_minor(stored[currency] - derived),
            "consistent": stored[currency] == derived,
        }
        if stored[currency] != derived:
            logger.error(
                f"BALANCE DRIFT: User={user_id}, Currency={currency}, "
                f"Stored={format_minor(stored[currency])}, Derived={format_minor(derived)}"
            )
    return report
