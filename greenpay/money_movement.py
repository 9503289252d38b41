"""Money movement handlers: transfer, exchange, deposit, withdraw, airtime, card payment.

Every handler follows the same shape:

1. validate the request (amounts, currencies, profile gates)
2. take the per-account lock(s)
3. inside ONE database transaction: conditional debit, credit, ledger row(s)
4. commit, or roll back everything and surface a single error

Nothing here sleeps or schedules work for later; asynchronous gateway
completion arrives through ``greenpay.callbacks``.
"""
import logging
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import SQLAlchemyError

from greenpay import ledger, wallet
from greenpay import payhero
from greenpay.account_lock import account_lock
from greenpay.config import Config
from greenpay.errors import (
    GatewayError, InsufficientBalance, NotFound, TransactionFailed, ValidationFailed, WalletError
)
from greenpay.exchange_rate import exchange_rate_service
from greenpay.models import VirtualCard
from greenpay.money import (
    USD, KES, convert, format_minor, normalize_currency, parse_amount, parse_fee,
    percentage_fee, to_minor
)
from greenpay.payhero import payhero_client
from greenpay.paystack import paystack_client

logger = logging.getLogger(__name__)

AIRTIME_PROVIDERS = ("safaricom", "airtel", "telkom")
PAYSTACK_FAILED_STATUSES = ("failed", "abandoned", "reversed")


@contextmanager
def atomic(db):
    """Commit on success; roll back on ANY error so no half-applied movement survives."""
    try:
        yield db
        db.commit()
    except WalletError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error, movement rolled back: {str(e)}")
        raise TransactionFailed() from e
    except Exception:
        db.rollback()
        raise


def _require_card(user):
    if not user.has_virtual_card:
        raise ValidationFailed("Virtual card required. Please activate your virtual card first")


# --- TRANSFER ---

def transfer(db, from_user_id, to_user_id, amount, currency=USD, description=None, reference=None):
    """Move ``amount`` between two users' wallets of the same currency.

    Produces a completed ``send`` row for the sender and a completed
    ``receive`` row for the recipient sharing ``metadata.transferId``. A
    client ``reference`` makes the call idempotent.
    """
    amount_minor = to_minor(parse_amount(amount))
    currency = normalize_currency(currency)
    if from_user_id == to_user_id:
        raise ValidationFailed("Cannot transfer to yourself")

    transfer_id = reference or ledger.generate_reference("TRF")
    send_ref, receive_ref = f"{transfer_id}-S", f"{transfer_id}-R"

    with account_lock(from_user_id, to_user_id), atomic(db):
        existing = ledger.get_transaction_by_reference(db, send_ref)
        if existing is not None:
            if existing.user_id != from_user_id:
                raise ValidationFailed("Transfer reference already used")
            logger.info(f"Duplicate transfer received: {transfer_id}")
            return {
                "transferId": transfer_id,
                "send": existing,
                "receive": ledger.get_transaction_by_reference(db, receive_ref),
                "replayed": True,
            }

        sender = wallet.require_user(db, from_user_id, "Sender")
        wallet.require_user(db, to_user_id, "Recipient")
        _require_card(sender)

        wallet.debit(db, from_user_id, currency, amount_minor)
        wallet.credit(db, to_user_id, currency, amount_minor)

        meta = {"transferId": transfer_id}
        send = ledger.create_transaction(
            db, user_id=from_user_id, recipient_id=to_user_id, type="send",
            amount=amount_minor, currency=currency, fee=0, status="completed",
            description=description or "Transfer", meta=meta, reference=send_ref,
        )
        receive = ledger.create_transaction(
            db, user_id=to_user_id, recipient_id=from_user_id, type="receive",
            amount=amount_minor, currency=currency, fee=0, status="completed",
            description=description or "Transfer received", meta=meta, reference=receive_ref,
        )

    logger.info(
        f"✅ TRANSFER: From={from_user_id}, To={to_user_id}, "
        f"Amount={format_minor(amount_minor)} {currency}, TransferID={transfer_id}"
    )
    return {"transferId": transfer_id, "send": send, "receive": receive, "replayed": False}


# --- EXCHANGE ---

def exchange(db, user_id, amount, from_currency, to_currency):
    """Convert between the user's own wallets.

    fee = round(amount * EXCHANGE_FEE_RATE, 2) in the source currency;
    amount + fee leaves the source wallet, round(amount * rate, 2) lands in
    the target wallet.
    """
    amount_minor = to_minor(parse_amount(amount))
    from_currency = normalize_currency(from_currency)
    to_currency = normalize_currency(to_currency)
    if from_currency == to_currency:
        raise ValidationFailed("Source and target currencies must differ")

    # Rate lookup is network I/O; keep it outside the lock
    rate = exchange_rate_service.get_exchange_rate(from_currency, to_currency)
    fee_minor = percentage_fee(amount_minor, Config.EXCHANGE_FEE_RATE)
    total_minor = amount_minor + fee_minor
    converted_minor = convert(amount_minor, rate)
    if converted_minor <= 0:
        raise ValidationFailed("Amount too small to convert")

    with account_lock(user_id), atomic(db):
        user = wallet.require_user(db, user_id)
        _require_card(user)

        wallet.debit(db, user_id, from_currency, total_minor)
        wallet.credit(db, user_id, to_currency, converted_minor)

        txn = ledger.create_transaction(
            db, user_id=user_id, type="exchange", amount=amount_minor,
            currency=from_currency, fee=fee_minor, status="completed",
            exchange_rate=str(rate),
            description=f"Exchange {from_currency} to {to_currency}",
            meta={
                "convertedAmount": format_minor(converted_minor),
                "targetCurrency": to_currency,
                "totalDeducted": format_minor(total_minor),
            },
        )

    logger.info(
        f"✅ EXCHANGE: User={user_id}, {format_minor(amount_minor)} {from_currency} -> "
        f"{format_minor(converted_minor)} {to_currency} @ {rate}, Fee={format_minor(fee_minor)}"
    )
    return txn


# --- DEPOSIT ---

def initialize_deposit(db, user_id, amount, currency=USD):
    """Start a Paystack checkout and record the pending deposit it will complete."""
    amount_minor = to_minor(parse_amount(amount))
    currency = normalize_currency(currency)
    user = wallet.require_user(db, user_id)
    if not user.email:
        raise ValidationFailed("Email address is required for deposits")

    reference = ledger.generate_reference("DEP")
    result = paystack_client.initialize_payment(user.email, amount_minor, reference, currency)
    if not result.get("status"):
        logger.error(f"Deposit initialization failed for user {user_id}: {result.get('message')}")
        raise GatewayError("INITIALIZATION_FAILED", result.get("message") or "Payment initialization failed")

    data = result.get("data") or {}
    with atomic(db):
        txn = ledger.create_transaction(
            db, user_id=user_id, type="deposit", amount=amount_minor, currency=currency,
            status="pending", description="Wallet deposit", reference=reference,
            meta={"gateway": "paystack", "accessCode": data.get("access_code")},
        )
    return {"transaction": txn, "authorizationUrl": data.get("authorization_url"), "reference": reference}


def verify_deposit(db, user_id, reference):
    """Credit a deposit once Paystack confirms it. Safe to call repeatedly."""
    existing = ledger.get_transaction_by_reference(db, reference)
    if existing is not None:
        if existing.user_id != user_id or existing.type != "deposit":
            raise NotFound("Deposit not found")
        if existing.status == "completed":
            logger.info(f"Duplicate deposit verification: {reference}")
            return existing, False
        if existing.status == "failed":
            raise ValidationFailed("Payment was not successful")

    result = paystack_client.verify_payment(reference)
    data = result.get("data") or {}
    gateway_status = data.get("status")

    if not result.get("status") or gateway_status != "success":
        logger.warning(f"🚫 DEPOSIT NOT VERIFIED: User={user_id}, Ref={reference}, Status={gateway_status}")
        if existing is not None and gateway_status in PAYSTACK_FAILED_STATUSES:
            with atomic(db):
                if ledger.transition_status(db, existing.id, existing.status, "failed"):
                    ledger.update_transaction(db, existing.id, meta={"gatewayStatus": gateway_status})
        raise GatewayError(
            (gateway_status or "VERIFICATION_FAILED").upper(),
            result.get("message") or "Payment not successful",
        )

    currency = normalize_currency(data.get("currency") or USD)
    try:
        amount_minor = int(data["amount"])
    except (KeyError, TypeError, ValueError):
        raise GatewayError("INVALID_AMOUNT", "Payment verification returned no amount", status_code=500)

    with account_lock(user_id), atomic(db):
        wallet.require_user(db, user_id)
        txn = ledger.get_transaction_by_reference(db, reference)
        if txn is not None:
            db.refresh(txn)
            if txn.status == "completed":
                return txn, False
            if txn.amount != amount_minor or txn.currency != currency:
                logger.error(
                    f"Deposit amount mismatch for {reference}: expected {format_minor(txn.amount)} {txn.currency}, "
                    f"gateway reported {format_minor(amount_minor)} {currency}"
                )
                raise ValidationFailed("Verified amount does not match the deposit")
            if not ledger.transition_status(db, txn.id, txn.status, "completed"):
                return ledger.get_transaction_by_reference(db, reference), False
            ledger.update_transaction(db, txn.id, meta={"gatewayStatus": gateway_status, "channel": data.get("channel")})
        else:
            txn = ledger.create_transaction(
                db, user_id=user_id, type="deposit", amount=amount_minor, currency=currency,
                status="completed", description="Wallet deposit", reference=reference,
                meta={"gateway": "paystack", "gatewayStatus": gateway_status, "channel": data.get("channel")},
            )
        wallet.credit(db, user_id, currency, amount_minor)

    logger.info(f"✅ DEPOSIT: User={user_id}, Amount={format_minor(amount_minor)} {currency}, Ref={reference}")
    return txn, True


# --- WITHDRAW ---

def request_withdrawal(db, user_id, amount, currency=USD, fee="0.00", description=None):
    """Record a pending withdrawal after checking it against the ledger.

    Available funds are the ledger fold minus withdrawals already awaiting
    review, so two pending requests can never promise the same money.
    Balances move only on approval.
    """
    amount_minor = to_minor(parse_amount(amount))
    fee_minor = to_minor(parse_fee(fee))
    currency = normalize_currency(currency)

    with account_lock(user_id), atomic(db):
        user = wallet.require_user(db, user_id)
        _require_card(user)

        derived = ledger.derive_balance(db, user_id, currency)
        held = ledger.pending_withdrawals_total(db, user_id, currency)
        available = derived - held
        if amount_minor + fee_minor > available:
            logger.warning(
                f"🚫 BLOCKED WITHDRAWAL [BALANCE]: User={user_id}, "
                f"Requested={format_minor(amount_minor + fee_minor)}, Available={format_minor(available)} {currency}"
            )
            raise InsufficientBalance()

        txn = ledger.create_transaction(
            db, user_id=user_id, type="withdraw", amount=amount_minor, currency=currency,
            fee=fee_minor, status="pending", description=description or "Withdrawal request",
        )

    logger.info(f"Withdrawal pending review: User={user_id}, Amount={format_minor(amount_minor)} {currency}, Ref={txn.reference}")
    return txn


def _pending_withdrawal(db, transaction_id):
    txn = ledger.get_transaction(db, transaction_id)
    if txn is None or txn.type != "withdraw":
        raise NotFound("Withdrawal not found")
    if txn.status != "pending":
        raise ValidationFailed(f"Withdrawal already {txn.status}")
    return txn


def approve_withdrawal(db, transaction_id, admin_notes=None):
    """Debit amount + fee and complete the withdrawal, all or nothing."""
    txn = _pending_withdrawal(db, transaction_id)

    with account_lock(txn.user_id), atomic(db):
        if not ledger.transition_status(db, txn.id, "pending", "completed"):
            raise ValidationFailed("Withdrawal already processed")
        wallet.debit(db, txn.user_id, txn.currency, txn.amount + txn.fee)
        if admin_notes:
            ledger.update_transaction(db, txn.id, admin_notes=admin_notes)

    logger.info(f"✅ WITHDRAWAL APPROVED: Ref={txn.reference}, User={txn.user_id}, Amount={format_minor(txn.amount)}")
    return txn


def reject_withdrawal(db, transaction_id, admin_notes=None):
    txn = _pending_withdrawal(db, transaction_id)

    with atomic(db):
        if not ledger.transition_status(db, txn.id, "pending", "failed"):
            raise ValidationFailed("Withdrawal already processed")
        if admin_notes:
            ledger.update_transaction(db, txn.id, admin_notes=admin_notes)

    logger.info(f"WITHDRAWAL REJECTED: Ref={txn.reference}, User={txn.user_id}")
    return txn


# --- AIRTIME ---

def purchase_airtime(db, user_id, phone_number, amount, provider):
    """Debit the KES wallet for an airtime top-up. No fee, completes immediately."""
    amount_minor = to_minor(parse_amount(amount))
    if provider not in AIRTIME_PROVIDERS:
        raise ValidationFailed(f"Provider must be one of: {', '.join(AIRTIME_PROVIDERS)}")
    phone, error = payhero.normalize_phone(phone_number)
    if error:
        raise ValidationFailed("Invalid phone number")

    with account_lock(user_id), atomic(db):
        user = wallet.require_user(db, user_id)
        _require_card(user)

        wallet.debit(db, user_id, KES, amount_minor)
        txn = ledger.create_transaction(
            db, user_id=user_id, type="airtime", amount=amount_minor, currency=KES,
            fee=0, status="completed", description=f"Airtime {provider.capitalize()} {phone}",
            meta={"phoneNumber": phone, "provider": provider},
        )

    logger.info(f"✅ AIRTIME: User={user_id}, Amount={format_minor(amount_minor)} KES, Phone={phone}")
    return txn


# --- VIRTUAL CARD PAYMENT ---

def card_price_kes():
    """Card price in whole shillings; PayHero only accepts integer amounts."""
    rate = exchange_rate_service.get_exchange_rate(USD, KES)
    return (Config.CARD_PRICE_USD * rate).to_integral_value(rounding=ROUND_HALF_UP), rate


def create_card_payment(db, user_id, phone_number=None):
    """Send the M-Pesa STK push for a card and record the pending purchase."""
    user = wallet.require_user(db, user_id)
    has_card = db.query(VirtualCard).filter(VirtualCard.user_id == user_id).first() is not None
    if user.has_virtual_card or has_card:
        raise ValidationFailed("User already has a virtual card")

    phone = phone_number or user.phone
    if not phone:
        raise ValidationFailed("Phone number is required for M-Pesa payment")

    kes_amount, rate = card_price_kes()
    reference = payhero.generate_reference()
    result = payhero_client.initiate_mpesa_payment(kes_amount, phone, reference, customer_name=user.full_name)
    if not result.success:
        logger.error(f"Card payment initiation failed for user {user_id}: {result.status}")
        status_code = 400 if result.status.startswith("INVALID") else 500
        raise GatewayError(result.status, status_code=status_code)

    with atomic(db):
        txn = ledger.create_transaction(
            db, user_id=user_id, type="card_purchase", amount=to_minor(Decimal(kes_amount)),
            currency=KES, fee=0, status="pending", description="Virtual card purchase",
            reference=reference,
            meta={
                "phone": phone,
                "priceUsd": f"{Config.CARD_PRICE_USD:.2f}",
                "exchangeRate": str(rate),
                "checkoutRequestId": result.checkout_request_id,
                "payheroReference": result.reference,
            },
        )

    logger.info(f"STK push sent: User={user_id}, Amount={kes_amount} KES, Ref={reference}")
    return txn
