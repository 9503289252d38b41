"""
Airtime, history, balances and the admin back office
"""

import pytest
from unittest.mock import MagicMock, patch

from greenpay import ledger
from greenpay.models import Transaction, User, VirtualCard


def _airtime(client, user, amount, phone="0712345678", provider="safaricom", currency="KES"):
    return client.post("/api/airtime/purchase", json={
        "userId": user.id, "phoneNumber": phone, "amount": amount, "provider": provider, "currency": currency
    })


class TestAirtime:
    def test_debits_kes_wallet(self, client, db, make_user, balances):
        user = make_user(balance="5.00", kes_balance="500.00")

        response = _airtime(client, user, "100.00", phone="254712345678")

        assert response.status_code == 200
        txn = response.json()["transaction"]
        assert txn["type"] == "airtime"
        assert txn["status"] == "completed"
        assert txn["metadata"] == {"phoneNumber": "0712345678", "provider": "safaricom"}
        assert balances(user.id) == ("5.00", "400.00")
        assert ledger.derive_balance(db, user.id, "KES") == 40000

    def test_insufficient_kes(self, client, make_user, balances):
        user = make_user(balance="500.00", kes_balance="50.00")
        response = _airtime(client, user, "100.00")
        assert response.status_code == 400
        assert balances(user.id) == ("500.00", "50.00")

    def test_usd_not_accepted(self, client, make_user):
        user = make_user(balance="500.00")
        assert _airtime(client, user, "1.00", currency="USD").status_code == 400

    @pytest.mark.parametrize("override", [{"provider": "vodafone"}, {"phone": "12"}])
    def test_invalid_request(self, client, make_user, balances, override):
        user = make_user(kes_balance="500.00")
        assert _airtime(client, user, "10.00", **override).status_code == 400
        assert balances(user.id) == ("0.00", "500.00")


class TestHistoryAndBalance:
    def test_history_newest_first(self, client, make_user):
        alice, bob = make_user(balance="100.00"), make_user()
        client.post("/api/transfer", json={"fromUserId": alice.id, "toUserId": bob.id, "amount": "1.00"})
        client.post("/api/transfer", json={"fromUserId": alice.id, "toUserId": bob.id, "amount": "2.00"})

        response = client.get(f"/api/transactions/{alice.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 3
        assert [t["amount"] for t in data["transactions"]] == ["2.00", "1.00", "100.00"]

    def test_history_unknown_user(self, client):
        assert client.get("/api/transactions/nobody").status_code == 404

    def test_balance_reports_stored_and_derived(self, client, make_user):
        user = make_user(balance="12.50", kes_balance="300.00")
        response = client.get(f"/api/users/{user.id}/balance")
        assert response.json() == {
            "userId": user.id,
            "balance": "12.50",
            "kesBalance": "300.00",
            "derived": {"balance": "12.50", "kesBalance": "300.00"},
        }


class TestAdmin:
    def test_reconcile_after_mixed_activity(self, client, make_user, admin_headers, fixed_rate):
        alice, bob = make_user(balance="100.00", kes_balance="200.00"), make_user()
        client.post("/api/transfer", json={"fromUserId": alice.id, "toUserId": bob.id, "amount": "10.00"})
        client.post("/api/exchange/convert", json={
            "userId": alice.id, "amount": "20.00", "fromCurrency": "USD", "toCurrency": "KES"
        })
        client.post("/api/airtime/purchase", json={
            "userId": alice.id, "phoneNumber": "0712345678", "amount": "50.00", "provider": "airtel"
        })

        for user in (alice, bob):
            response = client.get(f"/api/admin/users/{user.id}/reconcile", headers=admin_headers)
            assert response.status_code == 200
            assert response.json()["consistent"] is True

    def test_stats(self, client, make_user, admin_headers, fixed_rate):
        user = make_user(balance="100.00")
        client.post("/api/exchange/convert", json={
            "userId": user.id, "amount": "50.00", "fromCurrency": "USD", "toCurrency": "KES"
        })
        client.post("/api/transactions", json={"userId": user.id, "type": "withdraw", "amount": "10.00"})

        response = client.get("/api/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["users"] == 1
        assert data["transactions"] == 3
        assert data["pendingWithdrawals"] == 1
        assert data["volume"]["USD"] == {"volume": "150.00", "revenue": "0.75"}

    def test_delete_user_keeps_counterparty_history(self, client, db, make_user, balances, admin_headers):
        alice, bob = make_user(balance="100.00"), make_user()
        client.post("/api/transfer", json={"fromUserId": alice.id, "toUserId": bob.id, "amount": "40.00"})
        db.add(VirtualCard(user_id=alice.id, card_number="4567000011112222", cvv="123", expiry_date="12/30"))
        db.commit()

        response = client.delete(f"/api/admin/users/{alice.id}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["removed"] == {"transactions": 2, "cards": 1}
        db.expire_all()
        assert db.query(User).filter(User.id == alice.id).first() is None
        assert db.query(Transaction).filter(Transaction.user_id == alice.id).count() == 0
        receive = db.query(Transaction).filter(Transaction.user_id == bob.id).one()
        assert receive.recipient_id is None
        assert balances(bob.id) == ("40.00", "0.00")
        assert ledger.derive_balance(db, bob.id, "USD") == 4000

    def test_delete_unknown_user(self, client, admin_headers):
        assert client.delete("/api/admin/users/nobody", headers=admin_headers).status_code == 404

    def test_delete_requires_admin(self, client, make_user):
        user = make_user()
        assert client.delete(f"/api/admin/users/{user.id}").status_code == 403


class TestHealth:
    def test_health_reports_redis(self, client):
        redis = MagicMock()
        with patch("greenpay.main.get_redis", return_value=redis):
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["services"]["redis"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["message"] == "GreenPay Wallet API"
