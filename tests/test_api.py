"""
HTTP surface tests (FastAPI TestClient)

Tests cover:
1. Auth gates: cookie, paid subscription, admin
2. Error taxonomy to status code mapping
3. End-to-end deposit -> approval -> ad view -> withdrawal
4. Application lifespan
"""

from decimal import Decimal

from fastapi.testclient import TestClient

from nova.crud import create_user, verify_password
from nova.database import PAID
from nova.main import app


TX_HASH = "0x5c504ed432cb51138bcf09aa5e8a410dd4a1e204ef84bfed1be16dfba1b22060"


class TestAuthGates:
    """Who may call what."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_anonymous_is_401(self, client):
        assert client.get("/api/dashboard").status_code == 401
        assert client.post("/api/ads/watch").status_code == 401

    def test_garbage_cookie_is_401(self, client):
        client.cookies.set("user_id", "not-a-number")
        assert client.get("/api/dashboard").status_code == 401

    def test_unpaid_user_cannot_watch_or_withdraw(self, client, login, make_user):
        """Ads and withdrawals need a paid subscription."""
        login(make_user(withdrawable=50))

        assert client.post("/api/ads/watch").status_code == 403
        response = client.post("/api/withdrawals", json={
            "amount": 20, "network": "TRC20", "wallet_address": "TXYZ1234567890abcdef",
        })
        assert response.status_code == 403

    def test_admin_routes_need_admin(self, client, login, make_user):
        login(make_user(tier=1))
        assert client.get("/admin/stats").status_code == 403
        assert client.patch("/admin/deposit/1", json={"status": "approved"}).status_code == 403

    def test_admin_can_read_stats(self, client, login, make_user):
        login(make_user(is_admin=True))
        response = client.get("/admin/stats")
        assert response.status_code == 200
        assert response.json()["stats"]["totalSubscriptions"] == 0


class TestErrorMapping:
    """Ledger errors become JSON bodies with the right status."""

    def test_not_found_is_404(self, client, login, make_user):
        login(make_user(is_admin=True))
        response = client.patch("/admin/deposit/9999", json={"status": "approved"})
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_conflict_is_409(self, client, login, make_user, make_deposit):
        deposit = make_deposit(make_user())
        login(make_user(is_admin=True))

        assert client.patch(f"/admin/deposit/{deposit.id}", json={"status": "approved"}).status_code == 200
        response = client.patch(f"/admin/deposit/{deposit.id}", json={"status": "approved"})
        assert response.status_code == 409
        assert "already been processed" in response.json()["error"]

    def test_invalid_decision_is_400(self, client, login, make_user, make_deposit):
        deposit = make_deposit(make_user())
        login(make_user(is_admin=True))
        response = client.patch(f"/admin/deposit/{deposit.id}", json={"status": "maybe"})
        assert response.status_code == 400

    def test_insufficient_funds_is_400(self, client, login, make_user):
        login(make_user(tier=1, withdrawable=12))
        response = client.post("/api/withdrawals", json={
            "amount": 50, "network": "TRC20", "wallet_address": "TXYZ1234567890abcdef",
        })
        assert response.status_code == 400
        assert "Insufficient balance" in response.json()["error"]

    def test_daily_limit_is_400(self, client, login, make_user):
        login(make_user(tier=4, locked=100))
        for _ in range(20):
            assert client.post("/api/ads/watch").status_code == 200
        response = client.post("/api/ads/watch")
        assert response.status_code == 400
        assert "Daily ad limit reached" in response.json()["error"]

    def test_admin_cannot_delete_self(self, client, login, make_user):
        admin = make_user(is_admin=True)
        login(admin)
        assert client.delete(f"/admin/users/{admin.id}").status_code == 400


class TestEndToEnd:
    """A member's full money path through the API."""

    def test_deposit_approve_watch_withdraw(self, client, login, db, make_user):
        referrer = make_user()
        member = make_user(referrer=referrer)
        admin = make_user(is_admin=True)

        login(member)
        response = client.post("/api/deposits", json={
            "tier_id": 7, "amount": 200, "network": "trc20", "transaction_id": TX_HASH,
        })
        assert response.status_code == 200
        deposit_id = response.json()["depositId"]

        login(admin)
        response = client.patch(f"/admin/deposit/{deposit_id}", json={"status": "approved"})
        assert response.status_code == 200
        assert "User now has access" in response.json()["message"]

        login(member)
        reward = client.post("/api/ads/watch").json()["reward"]
        assert Decimal(str(reward)) == Decimal("0.1")

        dashboard = client.get("/api/dashboard").json()
        assert dashboard["balance"]["payment_status"] == PAID
        assert dashboard["ads"]["clicksToday"] == 1

        login(referrer)
        response = client.post("/api/withdrawals", json={
            "amount": 11, "network": "TRC20", "wallet_address": "TXYZ1234567890abcdef",
        })
        assert response.status_code == 403

        db.refresh(referrer)
        assert referrer.withdrawable_balance == Decimal("10")

        login(admin)
        stats = client.get("/admin/stats").json()["stats"]
        assert Decimal(str(stats["totalRevenue"])) == Decimal("200")

    def test_withdrawal_reject_via_api(self, client, login, db, make_user):
        member = make_user(tier=1, withdrawable=30)
        login(member)
        withdrawal_id = client.post("/api/withdrawals", json={
            "amount": "25.5", "network": "BTC", "wallet_address": "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh",
        }).json()["withdrawalId"]

        login(make_user(is_admin=True))
        response = client.patch(f"/admin/withdrawal/{withdrawal_id}", json={
            "status": "rejected", "rejection_reason": "<script>x</script> flagged",
        })
        assert response.status_code == 200
        assert response.json()["rejectionReason"] == "&lt;script&gt;x&lt;/script&gt; flagged"

        db.refresh(member)
        assert member.withdrawable_balance == Decimal("30")

    def test_withdraw_full_balance_after_watching(self, client, login, db, make_user):
        """The dashboard figure after a day of ads is accepted as the amount."""
        member = make_user(tier=5, locked=1234)
        login(member)
        for _ in range(20):
            assert client.post("/api/ads/watch").status_code == 200

        shown = client.get("/api/dashboard").json()["balance"]["withdrawable_balance"]
        response = client.post("/api/withdrawals", json={
            "amount": str(shown), "network": "TRC20", "wallet_address": "TXYZ1234567890abcdef",
        })

        assert response.status_code == 200
        db.refresh(member)
        assert member.withdrawable_balance == Decimal("0")

    def test_withdrawal_address_round_trip(self, client, login, make_user):
        login(make_user(tier=1))
        response = client.post("/api/withdrawals/address", json={
            "wallet_address": " TXYZ1234567890abcdef ", "network": "trc20",
        })
        assert response.status_code == 200
        assert response.json()["message"] == "Withdrawal address updated successfully"

        saved = client.get("/api/withdrawals/address").json()
        assert saved == {"success": True, "walletAddress": "TXYZ1234567890abcdef", "network": "TRC20"}

        response = client.post("/api/withdrawals/address", json={"network": "TRC20"})
        assert response.status_code == 400
        assert response.json()["error"] == "Wallet address and network are required"

    def test_withdrawal_address_needs_login(self, client):
        assert client.get("/api/withdrawals/address").status_code == 401
        assert client.post("/api/withdrawals/address", json={}).status_code == 401

    def test_announcement_flow(self, client, login, make_user):
        member = make_user()
        login(make_user(is_admin=True))
        created = client.post("/admin/announcement", json={"title": "Hi", "content": "Welcome"}).json()
        announcement_id = created["announcement"]["id"]

        login(member)
        active = client.get("/api/announcement/active").json()
        assert active["announcement"]["title"] == "Hi"
        assert active["hasSeen"] is False

        assert client.post(f"/api/announcement/{announcement_id}/view").status_code == 200
        assert client.get("/api/announcement/active").json()["hasSeen"] is True

    def test_admin_delete_and_subscribe(self, client, login, make_user):
        member = make_user()
        login(make_user(is_admin=True))

        response = client.post(f"/admin/users/{member.id}/subscribe", json={"tier_id": 1})
        assert response.status_code == 200

        response = client.delete(f"/admin/users/{member.id}")
        assert response.status_code == 200
        assert Decimal(str(response.json()["revenueRemoved"])) == Decimal("20")
        assert client.delete(f"/admin/users/{member.id}").status_code == 404


class TestUserCrud:
    """Registration helpers."""

    def test_password_is_hashed(self, db):
        user = create_user(db, "alice", "alice@example.com", "s3cret-pass")
        assert user.password != "s3cret-pass"
        assert verify_password("s3cret-pass", user.password)
        assert not verify_password("wrong", user.password)

    def test_referrer_is_linked(self, db, make_user):
        referrer = make_user()
        user = create_user(db, "bob", "bob@example.com", "pw-123456", referrer_id=referrer.id)
        assert user.referrer_id == referrer.id


class TestLifespan:
    """Session factory set-up when the app starts."""

    def test_installed_factory_is_kept(self, client, session_factory):
        assert app.state.SessionLocal is session_factory

    def test_factory_built_when_missing(self, engine, monkeypatch):
        monkeypatch.setattr(app.state, "SessionLocal", None)
        monkeypatch.setattr("nova.main.make_engine", lambda: engine)

        with TestClient(app) as c:
            assert c.get("/health").json() == {"status": "ok"}

        assert app.state.SessionLocal is not None
