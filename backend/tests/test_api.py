"""
API Tests for the Invoicing Core Endpoints

Drives the FastAPI app with TestClient. The database session is replaced
through dependency overrides and services are patched, so no database is
needed.

Run with: pytest tests/test_api.py -v
"""

import os

os.environ["INTERNAL_API_KEY"] = "test-internal-key-0123456789"
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from config import get_settings

get_settings.cache_clear()

from server import app  # noqa: E402
from database.connection import get_db  # noqa: E402
from models.enums import HealthLabel, RecurringFrequency, RecurringState  # noqa: E402
from models.schemas import HealthScore, RecurringInvoiceTemplate  # noqa: E402
from reconciliation.services.reconciliation_service import ReconciliationRunResult  # noqa: E402
from utils.errors import (  # noqa: E402
    DataAccessError,
    InvalidStateError,
    NotFoundError,
    ReconciliationTimeoutError,
)

ACCOUNT_ID = str(uuid.uuid4())
HEADERS = {
    "X-Internal-Api-Key": "test-internal-key-0123456789",
    "X-Account-Id": ACCOUNT_ID,
    "X-Service-Name": "dashboard",
}


async def override_get_db():
    yield AsyncMock()


@pytest.fixture
def client():
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def mock_service(path: str, **methods):
    """Patch a service class; each keyword becomes an AsyncMock method."""
    instance = MagicMock()
    for name, value in methods.items():
        setattr(instance, name, value if isinstance(value, AsyncMock) else AsyncMock(return_value=value))
    return patch(path, return_value=instance), instance


def run_result(**overrides) -> ReconciliationRunResult:
    values = dict(
        run_id="run-1",
        account_id=ACCOUNT_ID,
        dry_run=False,
        transactions_considered=1,
        invoices_considered=1,
        candidates_found=1,
        matches_applied=1,
        skipped=0,
        failed=0,
        truncated=False,
        matches=[{
            "transaction_id": "t1",
            "invoice_id": "i1",
            "amount": "150.00",
            "amount_diff": "0.00",
            "date_diff_days": 2,
            "confidence": 0.9,
            "status": "applied"
        }]
    )
    values.update(overrides)
    return ReconciliationRunResult(**values)


class TestHealthEndpoints:
    """Liveness and module status."""

    def test_liveness(self, client):
        response = client.get("/api/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_reconciliation_status(self, client):
        response = client.get("/api/reconciliation/status")

        assert response.status_code == 200
        body = response.json()
        assert body["module"] == "reconciliation"
        assert body["matching"]["date_window_days"] == 7


class TestAuthentication:
    """Internal key and account scoping."""

    def test_missing_api_key(self, client):
        response = client.post("/api/reconciliation/match", headers={"X-Account-Id": ACCOUNT_ID})

        assert response.status_code == 401

    def test_wrong_api_key(self, client):
        response = client.post(
            "/api/reconciliation/match",
            headers={"X-Internal-Api-Key": "wrong-key", "X-Account-Id": ACCOUNT_ID}
        )

        assert response.status_code == 401

    def test_missing_account(self, client):
        response = client.post(
            "/api/reconciliation/match",
            headers={"X-Internal-Api-Key": HEADERS["X-Internal-Api-Key"]}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "missing_parameter"
        assert response.json()["detail"]["parameter"] == "X-Account-Id"

    def test_malformed_account(self, client):
        response = client.get(
            "/api/account/health-score",
            headers={**HEADERS, "X-Account-Id": "not-a-uuid"}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "invalid_parameter"


class TestReconciliationEndpoints:
    """POST /api/reconciliation/match and manual-match."""

    def test_run_matching(self, client):
        patcher, service = mock_service(
            "reconciliation.endpoints.reconciliation_api.ReconciliationService",
            run_matching=run_result()
        )
        with patcher:
            response = client.post("/api/reconciliation/match", headers=HEADERS, json={})

        assert response.status_code == 200
        body = response.json()
        assert body["matches"] == 1
        assert body["details"][0]["invoice_id"] == "i1"
        service.run_matching.assert_awaited_once_with(ACCOUNT_ID, dry_run=False, timeout_seconds=None)

    def test_dry_run_is_forwarded(self, client):
        patcher, service = mock_service(
            "reconciliation.endpoints.reconciliation_api.ReconciliationService",
            run_matching=run_result(dry_run=True, matches_applied=0)
        )
        with patcher:
            response = client.post(
                "/api/reconciliation/match",
                headers=HEADERS,
                json={"dry_run": True, "timeout_seconds": 5}
            )

        assert response.status_code == 200
        service.run_matching.assert_awaited_once_with(ACCOUNT_ID, dry_run=True, timeout_seconds=5)

    def test_timeout_maps_to_504(self, client):
        patcher, _ = mock_service(
            "reconciliation.endpoints.reconciliation_api.ReconciliationService",
            run_matching=AsyncMock(side_effect=ReconciliationTimeoutError("too slow"))
        )
        with patcher:
            response = client.post("/api/reconciliation/match", headers=HEADERS)

        assert response.status_code == 504
        assert response.json()["detail"]["error"] == "timeout"

    def test_store_failure_maps_to_503(self, client):
        patcher, _ = mock_service(
            "reconciliation.endpoints.reconciliation_api.ReconciliationService",
            run_matching=AsyncMock(side_effect=DataAccessError("Failed to read invoices"))
        )
        with patcher:
            response = client.post("/api/reconciliation/match", headers=HEADERS)

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "data_access"

    def test_manual_match_conflict(self, client):
        patcher, _ = mock_service(
            "reconciliation.endpoints.reconciliation_api.ReconciliationService",
            match_manually=AsyncMock(side_effect=InvalidStateError("already matched"))
        )
        with patcher:
            response = client.post(
                "/api/reconciliation/manual-match",
                headers=HEADERS,
                json={"transaction_id": "t1", "invoice_id": "i1"}
            )

        assert response.status_code == 409

    def test_manual_match_records_user(self, client):
        patcher, service = mock_service(
            "reconciliation.endpoints.reconciliation_api.ReconciliationService",
            match_manually={"transaction_id": "t1", "invoice_id": "i1", "status": "applied"}
        )
        with patcher:
            response = client.post(
                "/api/reconciliation/manual-match",
                headers={**HEADERS, "X-User-Id": "user-7"},
                json={"transaction_id": "t1", "invoice_id": "i1"}
            )

        assert response.status_code == 200
        assert service.match_manually.await_args.kwargs["actor"] == "user-7"


class TestRecurringEndpoints:
    """Recurring template endpoints."""

    SERVICE = "routers.recurring.RecurringInvoiceService"

    def template(self, state=RecurringState.active) -> RecurringInvoiceTemplate:
        return RecurringInvoiceTemplate(
            id="template-1",
            account_id=ACCOUNT_ID,
            client_id="client-1",
            template_number="RI-001",
            frequency=RecurringFrequency.monthly,
            next_due_date=date(2024, 1, 31),
            state=state,
            subtotal=Decimal("100"),
            tax=Decimal("10"),
            total=Decimal("110")
        )

    def test_get_template_exposes_is_active(self, client):
        patcher, _ = mock_service(self.SERVICE, get_template=self.template())
        with patcher:
            response = client.get("/api/recurring/templates/template-1", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["is_active"] is True
        assert response.json()["state"] == "active"

    def test_get_missing_template(self, client):
        patcher, _ = mock_service(
            self.SERVICE,
            get_template=AsyncMock(side_effect=NotFoundError("Recurring template", "nope"))
        )
        with patcher:
            response = client.get("/api/recurring/templates/nope", headers=HEADERS)

        assert response.status_code == 404

    def test_create_template_validates_body(self, client):
        response = client.post(
            "/api/recurring/templates",
            headers=HEADERS,
            json={"client_id": "client-1", "template_number": "RI-9", "next_due_date": "2024-01-31", "subtotal": -5}
        )

        assert response.status_code == 422

    def test_create_template(self, client):
        patcher, service = mock_service(self.SERVICE, create_template=self.template(RecurringState.draft))
        with patcher:
            response = client.post(
                "/api/recurring/templates",
                headers=HEADERS,
                json={"client_id": "client-1", "template_number": "RI-001", "next_due_date": "2024-01-31"}
            )

        assert response.status_code == 201
        assert response.json()["is_active"] is False
        service.create_template.assert_awaited_once()

    def test_generate_on_draft_conflicts(self, client):
        patcher, _ = mock_service(
            self.SERVICE,
            generate_invoice=AsyncMock(side_effect=InvalidStateError("not active", current_state="draft"))
        )
        with patcher:
            response = client.post("/api/recurring/templates/template-1/generate", headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["detail"]["details"]["current_state"] == "draft"

    def test_state_change_passes_actor(self, client):
        patcher, service = mock_service(self.SERVICE, transition=self.template(RecurringState.paused))
        with patcher:
            response = client.post(
                "/api/recurring/templates/template-1/state",
                headers={**HEADERS, "X-User-Id": "user-1"},
                json={"state": "paused"}
            )

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        service.transition.assert_awaited_once_with(
            ACCOUNT_ID, "template-1", RecurringState.paused, changed_by="user-1"
        )

    def test_unknown_state_rejected(self, client):
        response = client.post(
            "/api/recurring/templates/template-1/state",
            headers=HEADERS,
            json={"state": "archived"}
        )

        assert response.status_code == 422

    def test_process_runs_for_the_calling_account(self, client):
        patcher, service = mock_service(self.SERVICE, process_due_templates={"invoices_generated": 0})
        with patcher:
            response = client.post("/api/recurring/process", headers=HEADERS)

        assert response.status_code == 200
        service.process_due_templates.assert_awaited_once_with(ACCOUNT_ID)

    def test_process_requires_account(self, client):
        response = client.post(
            "/api/recurring/process",
            headers={"X-Internal-Api-Key": HEADERS["X-Internal-Api-Key"]}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "X-Account-Id"

    def test_state_change_without_user_credits_service(self, client):
        patcher, service = mock_service(self.SERVICE, transition=self.template(RecurringState.paused))
        with patcher:
            response = client.post(
                "/api/recurring/templates/template-1/state",
                headers=HEADERS,
                json={"state": "paused"}
            )

        assert response.status_code == 200
        service.transition.assert_awaited_once_with(
            ACCOUNT_ID, "template-1", RecurringState.paused, changed_by="dashboard"
        )

    def test_preview_schedule(self, client):
        response = client.get(
            "/api/recurring/preview",
            params={"next_due_date": "2024-01-31", "frequency": "monthly", "count": 3}
        )

        assert response.status_code == 200
        assert response.json()["due_dates"] == ["2024-01-31", "2024-02-29", "2024-03-29"]


class TestHealthScoreEndpoints:
    """Client and account health score endpoints."""

    SERVICE = "routers.clients.HealthScoreService"

    def score(self) -> HealthScore:
        return HealthScore(
            score=50,
            status=HealthLabel.fair,
            overdue_count=0,
            total_invoiced=Decimal("100"),
            total_paid=Decimal("0"),
            payment_ratio=0.0
        )

    def test_client_health_score(self, client):
        patcher, service = mock_service(self.SERVICE, get_client_health_score=self.score())
        with patcher:
            response = client.get("/api/clients/client-1/health-score", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["score"] == 50
        assert response.json()["status"] == "fair"
        service.get_client_health_score.assert_awaited_once_with(ACCOUNT_ID, "client-1")

    def test_account_health_score(self, client):
        patcher, _ = mock_service(self.SERVICE, get_account_health_score=self.score())
        with patcher:
            response = client.get("/api/account/health-score", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "fair"

    def test_refresh_unknown_client(self, client):
        patcher, _ = mock_service(
            self.SERVICE,
            refresh_client_health_score=AsyncMock(side_effect=NotFoundError("Client", "missing"))
        )
        with patcher:
            response = client.post("/api/clients/missing/health-score/refresh", headers=HEADERS)

        assert response.status_code == 404

    def test_refresh_all(self, client):
        patcher, _ = mock_service(
            self.SERVICE,
            refresh_all_client_health_scores={"clients_checked": 2, "updated": 2, "errors": 0, "scores": {}}
        )
        with patcher:
            response = client.post("/api/clients/health-scores/refresh", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["updated"] == 2
