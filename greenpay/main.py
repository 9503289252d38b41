from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from greenpay.database import engine, get_db
from greenpay.models import Base
from greenpay.schemas import (
    TransferRequest, ExchangeRequest, DepositInitRequest, DepositVerifyRequest,
    TransactionCreateRequest, AirtimeRequest, CardPaymentRequest, AdminReviewRequest
)
from greenpay import admin, callbacks, ledger, money_movement, wallet
from greenpay.config import Config
from greenpay.errors import Forbidden, WalletError
from greenpay.exchange_rate import exchange_rate_service
from greenpay.money import format_minor, normalize_currency
from greenpay.redis_client import get_redis
from typing import Optional
import logging
import secrets
from datetime import datetime

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create tables if they don't exist
Base.metadata.create_all(bind=engine)
Config.log_configuration()

app = FastAPI(
    title="GreenPay Wallet API",
    version="1.0.0",
    description="Dual-currency (USD/KES) wallet ledger with M-Pesa card payments"
)


@app.exception_handler(WalletError)
def wallet_error_handler(request: Request, exc: WalletError):
    body = {"message": exc.message}
    gateway_status = getattr(exc, "gateway_status", None)
    if gateway_status:
        body["status"] = gateway_status
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    # pydantic prefixes messages raised from validators
    message = message.replace("Value error, ", "", 1)
    return JSONResponse(status_code=400, content={"message": message})


def require_admin(x_admin_key: Optional[str] = Header(None)):
    if not Config.ADMIN_API_KEY or not secrets.compare_digest(x_admin_key or "", Config.ADMIN_API_KEY):
        raise Forbidden()


def _wallets(db, user_id):
    balances = wallet.get_balances(db, user_id)
    return {"balance": format_minor(balances["USD"]), "kesBalance": format_minor(balances["KES"])}


# Health check for monitoring
@app.get("/health")
def health_check():
    """
    Health check endpoint for load balancers and monitoring tools.
    """
    try:
        redis_client = get_redis()
        redis_client.ping()
        redis_status = "healthy"
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0",
        "services": {
            "redis": redis_status
        }
    }


@app.post("/api/transfer")
def create_transfer(request: TransferRequest, db: Session = Depends(get_db)):
    """
    Peer-to-peer transfer between GreenPay users.

    Flow:
    1. Replay check (optional client reference)
    2. Lock both accounts
    3. Conditional debit of the sender, credit of the recipient
    4. send + receive ledger rows sharing a transferId
    5. Commit all of it, or none of it
    """
    logger.info(
        f"Processing transfer: From={request.from_user_id}, To={request.to_user_id}, "
        f"Amount={request.amount} {request.currency}"
    )
    result = money_movement.transfer(
        db,
        request.from_user_id,
        request.to_user_id,
        request.amount,
        request.currency,
        description=request.description,
        reference=request.reference,
    )
    return {
        "success": True,
        "message": "Transfer already processed" if result["replayed"] else "Transfer completed successfully",
        "transferId": result["transferId"],
        "transaction": result["send"].to_dict(),
        "recipientTransaction": result["receive"].to_dict() if result["receive"] else None,
        **_wallets(db, request.from_user_id),
    }


@app.post("/api/exchange/convert")
def convert_currency(request: ExchangeRequest, db: Session = Depends(get_db)):
    txn = money_movement.exchange(
        db, request.user_id, request.amount, request.from_currency, request.to_currency
    )
    return {
        "success": True,
        "transaction": txn.to_dict(),
        "convertedAmount": (txn.meta or {}).get("convertedAmount"),
        "fee": format_minor(txn.fee),
        "exchangeRate": txn.exchange_rate,
        **_wallets(db, request.user_id),
    }


@app.get("/api/exchange-rates")
def get_exchange_rate(
    from_currency: str = Query("USD", alias="from"),
    to_currency: str = Query("KES", alias="to")
):
    from_currency = normalize_currency(from_currency)
    to_currency = normalize_currency(to_currency)
    rate = exchange_rate_service.get_exchange_rate(from_currency, to_currency)
    return {"from": from_currency, "to": to_currency, "rate": str(rate)}


@app.post("/api/deposit/initialize-payment")
def initialize_deposit(request: DepositInitRequest, db: Session = Depends(get_db)):
    result = money_movement.initialize_deposit(db, request.user_id, request.amount, request.currency)
    return {
        "success": True,
        "authorizationUrl": result["authorizationUrl"],
        "reference": result["reference"],
        "transaction": result["transaction"].to_dict(),
    }


@app.post("/api/deposit/verify-payment")
def verify_deposit(request: DepositVerifyRequest, db: Session = Depends(get_db)):
    txn, credited = money_movement.verify_deposit(db, request.user_id, request.reference)
    return {
        "success": True,
        "message": "Deposit successful" if credited else "Deposit already processed",
        "transaction": txn.to_dict(),
        **_wallets(db, request.user_id),
    }


@app.post("/api/transactions")
def create_transaction(request: TransactionCreateRequest, db: Session = Depends(get_db)):
    """
    Submit a withdrawal request. Funds are checked against the ledger now and
    debited only when an admin approves.
    """
    txn = money_movement.request_withdrawal(
        db, request.user_id, request.amount, request.currency,
        fee=request.fee, description=request.description
    )
    return {
        "success": True,
        "message": "Withdrawal request submitted for approval",
        "transaction": txn.to_dict(),
    }


@app.get("/api/transactions/{user_id}")
def get_transactions(user_id: str, db: Session = Depends(get_db)):
    wallet.require_user(db, user_id)
    transactions = ledger.get_transactions_by_user_id(db, user_id)
    return {
        "count": len(transactions),
        "transactions": [txn.to_dict() for txn in transactions]
    }


@app.get("/api/users/{user_id}/balance")
def get_balance(user_id: str, db: Session = Depends(get_db)):
    report = wallet.reconcile(db, user_id)
    return {
        "userId": user_id,
        "balance": report["USD"]["stored"],
        "kesBalance": report["KES"]["stored"],
        "derived": {
            "balance": report["USD"]["derived"],
            "kesBalance": report["KES"]["derived"],
        },
    }


@app.post("/api/airtime/purchase")
def purchase_airtime(request: AirtimeRequest, db: Session = Depends(get_db)):
    txn = money_movement.purchase_airtime(
        db, request.user_id, request.phone_number, request.amount, request.provider
    )
    return {
        "success": True,
        "message": "Airtime purchased successfully",
        "transaction": txn.to_dict(),
        **_wallets(db, request.user_id),
    }


@app.post("/api/virtual-card/initialize-payment")
def initialize_card_payment(request: CardPaymentRequest, db: Session = Depends(get_db)):
    txn = money_movement.create_card_payment(db, request.user_id, request.phone_number)
    return {
        "success": True,
        "message": "STK push sent. Enter your M-Pesa PIN to complete the payment.",
        "reference": txn.reference,
        "amount": format_minor(txn.amount),
        "currency": txn.currency,
    }


@app.get("/api/virtual-card/payment-status/{reference}")
def card_payment_status(reference: str, db: Session = Depends(get_db)):
    txn = callbacks.poll_card_payment(db, reference)
    return {"reference": reference, "status": txn.status, "transaction": txn.to_dict()}


@app.post("/api/payhero-callback")
async def payhero_callback(
    request: Request,
    reference: Optional[str] = None,
    type: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    PayHero STK push webhook.

    Always answers 200: anything else makes the gateway retry. Outcomes are
    logged and the ledger row carries the result.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.error("PayHero callback with invalid JSON body")
        return {"status": "received", "outcome": callbacks.IGNORED}

    outcome = await run_in_threadpool(_apply_payhero_callback, db, payload, reference, type)
    return {"status": "received", "outcome": outcome}


def _apply_payhero_callback(db, payload, reference, kind):
    try:
        return callbacks.handle_payhero_callback(db, payload, reference=reference, kind=kind)
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing PayHero callback {reference}: {str(e)}", exc_info=True)
        return "error"


# --- ADMIN ---

@app.get("/api/admin/withdrawals", dependencies=[Depends(require_admin)])
def list_pending_withdrawals(limit: int = 100, db: Session = Depends(get_db)):
    withdrawals = ledger.pending_withdrawals(db, limit=limit)
    return {
        "count": len(withdrawals),
        "withdrawals": [txn.to_dict() for txn in withdrawals]
    }


@app.post("/api/admin/withdrawals/{transaction_id}/approve", dependencies=[Depends(require_admin)])
def approve_withdrawal(
    transaction_id: str,
    request: Optional[AdminReviewRequest] = None,
    db: Session = Depends(get_db)
):
    txn = money_movement.approve_withdrawal(
        db, transaction_id, admin_notes=request.admin_notes if request else None
    )
    return {"success": True, "message": "Withdrawal approved", "transaction": txn.to_dict()}


@app.post("/api/admin/withdrawals/{transaction_id}/reject", dependencies=[Depends(require_admin)])
def reject_withdrawal(
    transaction_id: str,
    request: Optional[AdminReviewRequest] = None,
    db: Session = Depends(get_db)
):
    txn = money_movement.reject_withdrawal(
        db, transaction_id, admin_notes=request.admin_notes if request else None
    )
    return {"success": True, "message": "Withdrawal rejected", "transaction": txn.to_dict()}


@app.get("/api/admin/stats", dependencies=[Depends(require_admin)])
def get_stats(db: Session = Depends(get_db)):
    return admin.dashboard_stats(db)


@app.get("/api/admin/users/{user_id}/reconcile", dependencies=[Depends(require_admin)])
def reconcile_user(user_id: str, db: Session = Depends(get_db)):
    report = wallet.reconcile(db, user_id)
    return {
        "userId": user_id,
        "consistent": all(entry["consistent"] for entry in report.values()),
        "wallets": report,
    }


@app.delete("/api/admin/users/{user_id}", dependencies=[Depends(require_admin)])
def delete_user(user_id: str, db: Session = Depends(get_db)):
    removed = admin.delete_user(db, user_id)
    return {"success": True, "message": "User deleted", "removed": removed}


@app.get("/")
def home():
    """
    Root endpoint - API information.
    """
    return {
        "message": "GreenPay Wallet API",
        "version": "1.0.0",
        "status": "operational",
        "endpoints": {
            "health": "/health",
            "transfer": "POST /api/transfer",
            "exchange": "POST /api/exchange/convert",
            "deposit": "POST /api/deposit/initialize-payment, POST /api/deposit/verify-payment",
            "withdraw": "POST /api/transactions",
            "history": "GET /api/transactions/{userId}",
            "airtime": "POST /api/airtime/purchase",
            "virtual_card": "POST /api/virtual-card/initialize-payment",
            "payhero_callback": "POST /api/payhero-callback",
            "admin": "/api/admin/*"
        }
    }
