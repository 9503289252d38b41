"""PayHero webhook handling for virtual card purchases.

The gateway retries until it gets a 200, so the same callback can arrive
more than once. The external reference is the idempotency key: the
``card_purchase`` row and the card itself are unique per reference, and a
completed row is never completed again.
"""
import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from greenpay import ledger
from greenpay.errors import DuplicateReference, NotFound, TransactionFailed
from greenpay.models import User, VirtualCard
from greenpay.money import KES, to_minor
from greenpay.payhero import normalize_phone, parse_callback, payhero_client

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
FAILED = "failed"
IGNORED = "ignored"

CARD_KIND = "virtual-card"


def phone_variants(phone):
    """Every stored form of a Kenyan number we may find on a user row."""
    local, error = normalize_phone(phone)
    if error:
        return [str(phone)] if phone else []
    national = local[1:]
    return [local, national, "254" + national, "+254" + national]


def resolve_user(db, phone=None, txn=None):
    """Owner of the pending row for this reference; the callback phone only when there is none."""
    if txn is not None:
        return db.query(User).filter(User.id == txn.user_id).first()
    if phone:
        return db.query(User).filter(or_(*[User.phone == p for p in phone_variants(phone)])).first()
    return None


def _new_card(user_id, reference, amount_minor):
    expiry_year = datetime.now(timezone.utc).year + 4
    return VirtualCard(
        user_id=user_id,
        card_number="4567" + "".join(secrets.choice("0123456789") for _ in range(12)),
        cvv=str(secrets.randbelow(900) + 100),
        expiry_date=f"12/{str(expiry_year)[-2:]}",
        status="active",
        balance=0,
        purchase_amount=amount_minor,
        payment_reference=reference,
    )


def complete_card_purchase(db, reference, phone=None, amount=None, receipt=None):
    """Issue the card and complete the ``card_purchase`` row exactly once.

    Wallet balances are not touched: the card is paid for over M-Pesa.
    """
    txn = ledger.get_transaction_by_reference(db, reference)
    if txn is not None:
        if txn.type != "card_purchase":
            logger.warning(f"Callback reference {reference} belongs to a {txn.type} transaction, ignoring")
            return IGNORED
        if txn.status == "completed":
            logger.info(f"Duplicate card payment callback: {reference}")
            return DUPLICATE
        if txn.status == "failed":
            logger.warning(f"Success callback for failed card payment {reference}, needs manual review")
            return IGNORED

    user = resolve_user(db, phone, txn)
    if user is None:
        logger.error(f"Card payment {reference}: no user for phone={phone!r}")
        return IGNORED

    meta = {"MpesaReceiptNumber": receipt} if receipt else {}
    try:
        if txn is not None:
            if not ledger.transition_status(db, txn.id, txn.status, "completed"):
                db.rollback()
                return DUPLICATE
            if meta:
                ledger.update_transaction(db, txn.id, meta=meta)
            amount_minor = txn.amount
        else:
            if amount is None:
                logger.error(f"Card payment {reference}: no pending transaction and no amount in callback")
                return IGNORED
            amount_minor = to_minor(amount)
            ledger.create_transaction(
                db, user_id=user.id, type="card_purchase", amount=amount_minor, currency=KES,
                fee=0, status="completed", description="Virtual card purchase",
                reference=reference, meta=meta,
            )

        if db.query(VirtualCard).filter(VirtualCard.user_id == user.id).first() is not None:
            # Paid twice under different references; keep the payment on record, no second card
            logger.warning(f"User {user.id} already has a card; payment {reference} recorded for refund review")
            ledger.update_transaction(db, ledger.get_transaction_by_reference(db, reference).id,
                                      meta={"duplicatePayment": True})
            db.commit()
            return DUPLICATE

        db.add(_new_card(user.id, reference, amount_minor))
        user.has_virtual_card = True
        db.commit()
    except (IntegrityError, DuplicateReference):
        db.rollback()
        logger.info(f"Card payment {reference} already processed by a concurrent callback")
        return DUPLICATE
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error completing card payment {reference}: {e}")
        raise TransactionFailed() from e

    logger.info(f"✅ CARD ISSUED: User={user.id}, Ref={reference}, Receipt={receipt}")
    return PROCESSED


def mark_payment_failed(db, reference, reason=None):
    txn = ledger.get_transaction_by_reference(db, reference)
    if txn is not None and txn.type != "card_purchase":
        logger.warning(f"Failed PayHero callback for {txn.type} transaction {reference}, ignoring")
        return IGNORED
    if txn is None or txn.status not in ("pending", "processing"):
        logger.warning(f"Failed payment callback for {reference}: {reason}")
        return FAILED
    try:
        if ledger.transition_status(db, txn.id, txn.status, "failed"):
            ledger.update_transaction(db, txn.id, meta={"resultDesc": reason})
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error marking {reference} failed: {e}")
        raise TransactionFailed() from e
    logger.warning(f"🚫 PAYMENT FAILED: Ref={reference}, Reason={reason}")
    return FAILED


def handle_payhero_callback(db, payload, reference=None, kind=None):
    """Apply a PayHero callback. Returns one of processed/duplicate/failed/ignored."""
    result = parse_callback(payload)
    reference = result.reference or reference
    logger.info(
        f"PayHero callback: Ref={reference}, Kind={kind}, Status={result.status}, "
        f"Amount={result.amount}, Receipt={result.mpesa_receipt_number}"
    )
    if not reference:
        logger.warning("PayHero callback without a reference, ignoring")
        return IGNORED

    if kind not in (None, CARD_KIND):
        logger.info(f"No handler for PayHero callback type {kind!r}")
        return IGNORED

    if not result.success:
        return mark_payment_failed(db, reference, result.result_desc or result.status)

    return complete_card_purchase(
        db, reference,
        phone=result.phone,
        amount=result.amount,
        receipt=result.mpesa_receipt_number,
    )


def poll_card_payment(db, reference):
    """Ask PayHero about a still-pending card payment and apply the answer."""
    txn = ledger.get_transaction_by_reference(db, reference)
    if txn is None or txn.type != "card_purchase":
        raise NotFound("Payment not found")
    if txn.status in ("completed", "failed"):
        return txn

    ok, status, data = payhero_client.check_transaction_status(reference)
    if ok and status == "SUCCESS":
        complete_card_purchase(db, reference, receipt=data.get("provider_reference"))
    elif ok and status == "FAILED":
        mark_payment_failed(db, reference, data.get("result_desc") or status)

    db.refresh(txn)
    return txn
