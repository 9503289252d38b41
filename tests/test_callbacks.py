"""
Virtual card purchase over M-Pesa: STK push, PayHero callbacks and polling
"""

import pytest
from unittest.mock import MagicMock, patch

from greenpay import callbacks, ledger
from greenpay.models import Transaction, User, VirtualCard
from greenpay.payhero import PayHeroResponse


def _callback_body(reference, result_code=0, status="Success", phone="254712345678", amount=7740):
    return {
        "status": True,
        "response": {
            "Amount": amount,
            "CheckoutRequestID": "ws_CO_123",
            "ExternalReference": reference,
            "MpesaReceiptNumber": "SGL12345XY" if result_code == 0 else None,
            "Phone": phone,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully." if result_code == 0
            else "Request cancelled by user",
            "Status": status,
        },
    }


@pytest.fixture
def payhero():
    client = MagicMock()
    client.initiate_mpesa_payment.return_value = PayHeroResponse(
        success=True, status="QUEUED", reference="PH-1", checkout_request_id="ws_CO_123"
    )
    with patch("greenpay.money_movement.payhero_client", client), \
            patch("greenpay.callbacks.payhero_client", client):
        yield client


@pytest.fixture
def pending_card_payment(db, make_user):
    user = make_user(balance="10.00", kes_balance="100.00", has_card=False, phone="0712345678")
    txn = ledger.create_transaction(
        db, user_id=user.id, type="card_purchase", amount=774000, currency="KES",
        status="pending", reference="GPY12345678ABCDEF", meta={"phone": "0712345678"},
    )
    db.commit()
    return user, txn.reference


class TestCardPaymentInitialize:
    def test_sends_stk_push_and_records_pending(self, client, db, make_user, balances, payhero, fixed_rate):
        user = make_user(has_card=False, phone="0712345678")

        response = client.post("/api/virtual-card/initialize-payment", json={"userId": user.id})

        assert response.status_code == 200
        data = response.json()
        assert data["amount"] == "7740.00"
        assert data["currency"] == "KES"
        assert data["reference"].startswith("GPY")
        args = payhero.initiate_mpesa_payment.call_args.args
        assert args[0] == 7740
        assert args[1] == "0712345678"
        txn = ledger.get_transaction_by_reference(db, data["reference"])
        assert txn.status == "pending"
        assert txn.type == "card_purchase"
        assert balances(user.id) == ("0.00", "0.00")

    def test_gateway_status_passed_through(self, client, make_user, payhero, fixed_rate):
        user = make_user(has_card=False)
        payhero.initiate_mpesa_payment.return_value = PayHeroResponse(success=False, status="INVALID_PHONE_NUMBER")

        response = client.post("/api/virtual-card/initialize-payment", json={"userId": user.id, "phoneNumber": "0812"})

        assert response.status_code == 400
        assert response.json()["status"] == "INVALID_PHONE_NUMBER"

    def test_gateway_error_is_500(self, client, make_user, payhero, fixed_rate):
        user = make_user(has_card=False, phone="0712345678")
        payhero.initiate_mpesa_payment.return_value = PayHeroResponse(success=False, status="CREDENTIALS_MISSING")
        response = client.post("/api/virtual-card/initialize-payment", json={"userId": user.id})
        assert response.status_code == 500

    def test_existing_card_rejected(self, client, make_user, payhero, fixed_rate):
        user = make_user(has_card=True, phone="0712345678")
        response = client.post("/api/virtual-card/initialize-payment", json={"userId": user.id})
        assert response.status_code == 400
        payhero.initiate_mpesa_payment.assert_not_called()

    def test_phone_required(self, client, make_user, payhero, fixed_rate):
        user = make_user(has_card=False)
        response = client.post("/api/virtual-card/initialize-payment", json={"userId": user.id})
        assert response.status_code == 400


class TestPayHeroCallback:
    def test_duplicate_success_callback_issues_one_card(self, client, db, balances, pending_card_payment):
        user, reference = pending_card_payment
        body = _callback_body(reference)

        first = client.post("/api/payhero-callback", params={"reference": reference, "type": "virtual-card"}, json=body)
        second = client.post("/api/payhero-callback", params={"reference": reference, "type": "virtual-card"}, json=body)

        assert first.status_code == 200
        assert first.json()["outcome"] == callbacks.PROCESSED
        assert second.status_code == 200
        assert second.json()["outcome"] == callbacks.DUPLICATE

        db.expire_all()
        assert db.query(VirtualCard).filter(VirtualCard.user_id == user.id).count() == 1
        assert db.query(Transaction).filter(Transaction.type == "card_purchase").count() == 1
        txn = ledger.get_transaction_by_reference(db, reference)
        assert txn.status == "completed"
        assert txn.meta["MpesaReceiptNumber"] == "SGL12345XY"
        card = db.query(VirtualCard).filter(VirtualCard.user_id == user.id).one()
        assert card.card_number.startswith("4567") and len(card.card_number) == 16
        assert len(card.cvv) == 3
        # paid over M-Pesa; wallets untouched
        assert balances(user.id) == ("10.00", "100.00")

    def test_failed_callback_marks_payment_failed(self, client, db, balances, pending_card_payment):
        user, reference = pending_card_payment

        response = client.post("/api/payhero-callback", json=_callback_body(reference, result_code=1032, status="Failed"))

        assert response.status_code == 200
        assert response.json()["outcome"] == callbacks.FAILED
        db.expire_all()
        assert ledger.get_transaction_by_reference(db, reference).status == "failed"
        assert db.query(VirtualCard).count() == 0
        assert balances(user.id) == ("10.00", "100.00")

    def test_success_after_failure_is_ignored(self, client, db, pending_card_payment):
        user, reference = pending_card_payment
        client.post("/api/payhero-callback", json=_callback_body(reference, result_code=1, status="Failed"))
        response = client.post("/api/payhero-callback", json=_callback_body(reference))
        assert response.json()["outcome"] == callbacks.IGNORED
        assert db.query(VirtualCard).count() == 0

    def test_unknown_reference_resolved_by_phone(self, client, db, make_user):
        user = make_user(has_card=False, phone="+254798765432")

        response = client.post("/api/payhero-callback", json=_callback_body("GPYNEW", phone="0798765432"))

        assert response.json()["outcome"] == callbacks.PROCESSED
        db.expire_all()
        txn = ledger.get_transaction_by_reference(db, "GPYNEW")
        assert txn.user_id == user.id
        assert txn.status == "completed"
        assert txn.amount == 774000

    def test_unknown_user_ignored(self, client, db):
        response = client.post("/api/payhero-callback", json=_callback_body("GPYNOBODY", phone="0700000000"))
        assert response.status_code == 200
        assert response.json()["outcome"] == callbacks.IGNORED
        assert db.query(Transaction).count() == 0

    def test_second_payment_does_not_issue_second_card(self, client, db, pending_card_payment):
        user, reference = pending_card_payment
        client.post("/api/payhero-callback", json=_callback_body(reference))

        response = client.post("/api/payhero-callback", json=_callback_body("GPYSECOND"))

        assert response.json()["outcome"] == callbacks.DUPLICATE
        db.expire_all()
        assert db.query(VirtualCard).count() == 1
        assert ledger.get_transaction_by_reference(db, "GPYSECOND").meta["duplicatePayment"] is True

    def test_card_goes_to_row_owner_when_paid_from_another_users_phone(self, client, db, make_user,
                                                                       pending_card_payment):
        user, reference = pending_card_payment
        phone_owner = make_user(has_card=False, phone="0712000002")

        response = client.post("/api/payhero-callback", json=_callback_body(reference, phone="254712000002"))

        assert response.json()["outcome"] == callbacks.PROCESSED
        db.expire_all()
        card = db.query(VirtualCard).one()
        assert card.user_id == user.id
        assert ledger.get_transaction_by_reference(db, reference).user_id == user.id
        assert db.query(User).filter(User.id == phone_owner.id).one().has_virtual_card is False

    def test_failure_callback_cannot_fail_a_deposit(self, client, db, make_user, balances):
        user = make_user()
        ledger.create_transaction(
            db, user_id=user.id, type="deposit", amount=2500, currency="USD",
            status="pending", reference="DEP123",
        )
        db.commit()

        response = client.post("/api/payhero-callback", json=_callback_body("DEP123", result_code=1032, status="Failed"))

        assert response.status_code == 200
        assert response.json()["outcome"] == callbacks.IGNORED
        db.expire_all()
        assert ledger.get_transaction_by_reference(db, "DEP123").status == "pending"

        paystack = MagicMock()
        paystack.verify_payment.return_value = {
            "status": True, "data": {"status": "success", "amount": 2500, "currency": "USD"}
        }
        with patch("greenpay.money_movement.paystack_client", paystack):
            verify = client.post("/api/deposit/verify-payment", json={"userId": user.id, "reference": "DEP123"})
        assert verify.status_code == 200
        assert balances(user.id) == ("25.00", "0.00")

    def test_failure_callback_cannot_fail_a_withdrawal(self, client, db, make_user):
        user = make_user(balance="50.00")
        txn = ledger.create_transaction(
            db, user_id=user.id, type="withdraw", amount=1000, currency="USD", status="pending",
        )
        db.commit()

        response = client.post("/api/payhero-callback", json=_callback_body(txn.reference, result_code=1, status="Failed"))

        assert response.json()["outcome"] == callbacks.IGNORED
        db.expire_all()
        assert ledger.get_transaction(db, txn.id).status == "pending"

    def test_failure_callback_of_other_type_ignored(self, client, db, pending_card_payment):
        user, reference = pending_card_payment
        response = client.post(
            "/api/payhero-callback", params={"type": "airtime"},
            json=_callback_body(reference, result_code=1032, status="Failed"),
        )
        assert response.json()["outcome"] == callbacks.IGNORED
        db.expire_all()
        assert ledger.get_transaction_by_reference(db, reference).status == "pending"

    def test_invalid_json_still_acknowledged(self, client):
        response = client.post(
            "/api/payhero-callback", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 200
        assert response.json()["outcome"] == callbacks.IGNORED

    def test_other_callback_types_ignored(self, client, db, pending_card_payment):
        user, reference = pending_card_payment
        response = client.post("/api/payhero-callback", params={"type": "airtime"}, json=_callback_body(reference))
        assert response.json()["outcome"] == callbacks.IGNORED
        db.expire_all()
        assert ledger.get_transaction_by_reference(db, reference).status == "pending"


class TestPaymentPolling:
    def test_poll_success_completes(self, client, db, pending_card_payment, payhero):
        user, reference = pending_card_payment
        payhero.check_transaction_status.return_value = (True, "SUCCESS", {"provider_reference": "SGL999"})

        response = client.get(f"/api/virtual-card/payment-status/{reference}")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert db.query(VirtualCard).filter(VirtualCard.user_id == user.id).count() == 1

    def test_poll_queued_stays_pending(self, client, pending_card_payment, payhero):
        user, reference = pending_card_payment
        payhero.check_transaction_status.return_value = (True, "QUEUED", {})
        response = client.get(f"/api/virtual-card/payment-status/{reference}")
        assert response.json()["status"] == "pending"

    def test_poll_failed(self, client, pending_card_payment, payhero):
        user, reference = pending_card_payment
        payhero.check_transaction_status.return_value = (True, "FAILED", {"result_desc": "Insufficient funds"})
        response = client.get(f"/api/virtual-card/payment-status/{reference}")
        assert response.json()["status"] == "failed"

    def test_poll_unknown_reference(self, client, payhero):
        assert client.get("/api/virtual-card/payment-status/GPYMISSING").status_code == 404
