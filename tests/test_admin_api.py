import uuid

from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlalchemy.orm import Session

from fusion_ledger.models import User
from fusion_ledger.projection import suspend_balance_guard
from fusion_ledger.services.credits import CreditLedger


def _drift(db: Session, user: User, value: int) -> None:
    with suspend_balance_guard(db.connection()):
        db.execute(
            update(User).where(User.id == user.id).values(credits_balance=value)
            .execution_options(synchronize_session=False)
        )
    db.commit()


class TestAdminAuth:
    def test_requires_admin_key(self, test_client: TestClient, auth_headers: dict):
        assert test_client.get("/admin/balances/drift").status_code == 401
        # A user token is not an admin key
        assert test_client.get("/admin/balances/drift", headers=auth_headers).status_code == 401
        response = test_client.post("/admin/balances/reconcile", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401


class TestReconcileEndpoints:
    def test_drift_then_reconcile(self, test_client: TestClient, admin_headers: dict, db_session: Session, test_user: User):
        CreditLedger(db_session).purchase(test_user.id, 4, payment_reference=f"cs_{uuid.uuid4().hex}")
        _drift(db_session, test_user, 9)

        drift = test_client.get("/admin/balances/drift", headers=admin_headers)
        assert drift.status_code == 200
        assert {"user_id": str(test_user.id), "old_balance": 9, "new_balance": 4} in drift.json()

        response = test_client.post("/admin/balances/reconcile", headers=admin_headers)
        assert response.status_code == 200
        report = response.json()
        assert {"user_id": str(test_user.id), "old_balance": 9, "new_balance": 4} in report["corrections"]
        assert report["corrected"] == len(report["corrections"])

        again = test_client.post("/admin/balances/reconcile", headers=admin_headers).json()
        assert all(c["user_id"] != str(test_user.id) for c in again["corrections"])

    def test_reconcile_single_user(self, test_client: TestClient, admin_headers: dict, db_session: Session, test_user: User):
        _drift(db_session, test_user, 2)

        response = test_client.post(f"/admin/balances/{test_user.id}/reconcile", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["corrections"] == [
            {"user_id": str(test_user.id), "old_balance": 2, "new_balance": 0}
        ]
        second = test_client.post(f"/admin/balances/{test_user.id}/reconcile", headers=admin_headers)
        assert second.json() == {"corrected": 0, "corrections": [], "failed_user_ids": []}

    def test_reconcile_unknown_user(self, test_client: TestClient, admin_headers: dict):
        response = test_client.post(f"/admin/balances/{uuid.uuid4()}/reconcile", headers=admin_headers)
        assert response.status_code == 404


class TestAdjustEndpoint:
    def test_adjust(self, test_client: TestClient, admin_headers: dict, test_user: User):
        response = test_client.post(
            "/admin/credits/adjust",
            json={"user_id": str(test_user.id), "amount": 5, "description": "Support ticket 1234"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["balance"] == 5

        response = test_client.post(
            "/admin/credits/adjust",
            json={"user_id": str(test_user.id), "amount": -6, "description": "Too much"},
            headers=admin_headers,
        )
        assert response.status_code == 402

    def test_adjust_validation(self, test_client: TestClient, admin_headers: dict, test_user: User):
        for payload in (
            {"user_id": str(test_user.id), "amount": 0, "description": "Zero"},
            {"user_id": str(test_user.id), "amount": 1, "description": "Fake", "transaction_type": "purchase"},
            {"user_id": str(test_user.id), "amount": 1, "description": ""},
        ):
            response = test_client.post("/admin/credits/adjust", json=payload, headers=admin_headers)
            assert response.status_code == 422

    def test_adjust_unknown_user(self, test_client: TestClient, admin_headers: dict):
        response = test_client.post(
            "/admin/credits/adjust",
            json={"user_id": str(uuid.uuid4()), "amount": 1, "description": "Nobody"},
            headers=admin_headers,
        )
        assert response.status_code == 404
