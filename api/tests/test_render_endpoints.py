"""
Tests for the HTTP surface: routers, auth boundary and error bodies.

The render service and ledger are replaced through FastAPI dependency
overrides, so these tests only check what reaches them and how their results
and exceptions are turned into responses.
"""
import base64
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_carpet_image, make_room_image
from fastapi.testclient import TestClient
from core.auth import get_current_user
from core.database import get_db
from core.errors import InternalError, LimitReachedError, UpstreamErrorCategory, UpstreamServiceError
from database.models import RenderAttempt, RenderMode, RenderStatus, UserRole
from main import create_app
from routers.render import get_render_service
from routers.usage import get_usage_ledger
from services.auth_service import auth_service
from services.candidate_scorer import BoundingBox, CandidateMetrics
from services.render_service import RenderOutcome
from services.usage_ledger_service import ConsumeResult, LedgerOverview, UsageSnapshot

SNAPSHOT = UsageSnapshot(limit=10, used=3, remaining=7, reset_at=datetime(2026, 5, 2))


def make_user(role=UserRole.USER, is_active=True):
    return SimpleNamespace(id="user-1", email="user@example.com", role=role, is_active=is_active)


@pytest.fixture
def render_service():
    service = MagicMock()
    service.render = AsyncMock(
        return_value=RenderOutcome(
            image_bytes=b"rendered-png",
            mime_type="image/png",
            attempt_id="attempt-1",
            mode="preview",
            metrics=CandidateMetrics(
                score=-6.5,
                rug_area_ratio=0.42,
                bounding_box=BoundingBox(10, 20, 200, 120),
                inside_mean_diff=32.5,
                outside_mean_diff=0.4,
                edge_contrast=21.0,
            ),
            usage=SNAPSHOT,
            refinements=["edge_polish"],
        )
    )
    return service


@pytest.fixture
def usage_ledger():
    ledger = MagicMock()
    ledger.usage_snapshot = AsyncMock(return_value=SNAPSHOT)
    ledger.consume = AsyncMock(return_value=ConsumeResult(allowed=True, new_balance=6))
    ledger.list_render_attempts = AsyncMock(return_value=[])
    ledger.overview = AsyncMock(return_value=LedgerOverview(users=4, renders=17, total_credits=23))
    return ledger


@pytest.fixture
def app(render_service, usage_ledger, mock_db_session):
    application = create_app()

    async def override_get_db():
        yield mock_db_session

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_render_service] = lambda: render_service
    application.dependency_overrides[get_usage_ledger] = lambda: usage_ledger
    return application


@pytest.fixture
def client(app):
    app.dependency_overrides[get_current_user] = lambda: make_user()
    return TestClient(app)


@pytest.fixture
def upload_files():
    return {
        "room_image": ("room.jpg", make_room_image(), "image/jpeg"),
        "carpet_image": ("carpet.png", make_carpet_image(), "image/png"),
    }


class TestRenderEndpoint:
    def test_success_payload(self, client, render_service, upload_files):
        response = client.post(
            "/api/render", files=upload_files, data={"mode": "preview", "carpet_name": "Royal 101", "note": "blue sofa"}
        )

        assert response.status_code == 200
        body = response.json()
        assert base64.b64decode(body["b64_json"]) == b"rendered-png"
        assert body["mime_type"] == "image/png"
        assert body["attempt_id"] == "attempt-1"
        assert body["mode"] == "preview"
        assert body["metrics"]["rug_area_ratio"] == 0.42
        assert body["metrics"]["bounding_box"] == {"min_x": 10, "min_y": 20, "max_x": 200, "max_y": 120}
        assert body["usage"] == {"limit": 10, "used": 3, "remaining": 7, "resetAt": "2026-05-02T00:00:00Z"}

        args, kwargs = render_service.render.await_args
        assert args[1] == "user-1"
        assert args[2] == upload_files["room_image"][1]
        assert kwargs["mode"] == "preview"
        assert kwargs["note"] == "blue sofa"

    def test_request_id_header_echoed(self, client, upload_files):
        response = client.post("/api/render", files=upload_files, headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"

    def test_missing_carpet_is_400(self, client, render_service):
        response = client.post("/api/render", files={"room_image": ("room.jpg", make_room_image(), "image/jpeg")})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION"
        render_service.render.assert_not_awaited()

    def test_oversize_upload_is_400(self, client, render_service, upload_files):
        with patch("routers.render.settings") as mock_settings:
            mock_settings.max_file_size = 16
            response = client.post("/api/render", files=upload_files)

        assert response.status_code == 400
        render_service.render.assert_not_awaited()

    def test_limit_reached_body(self, client, render_service, upload_files):
        render_service.render.side_effect = LimitReachedError()

        response = client.post("/api/render", files=upload_files)

        assert response.status_code == 429
        assert response.json() == {"code": "LIMIT_REACHED", "error": "Daily limit reached."}

    def test_upstream_error_maps_to_category_status(self, client, render_service, upload_files):
        render_service.render.side_effect = UpstreamServiceError(
            "Billing hard limit has been reached", UpstreamErrorCategory.BILLING
        )

        response = client.post("/api/render", files=upload_files)

        assert response.status_code == 402
        assert response.json()["code"] == "BILLING"

    def test_internal_error_carries_attempt_id(self, client, render_service, upload_files):
        render_service.render.side_effect = InternalError(attempt_id="attempt-9")

        response = client.post("/api/render", files=upload_files)

        assert response.status_code == 500
        assert response.json() == {"code": "INTERNAL", "error": "Render failed.", "attempt_id": "attempt-9"}


class TestAuthBoundary:
    def test_missing_token_is_401(self, app, upload_files):
        response = TestClient(app).post("/api/render", files=upload_files)

        assert response.status_code == 401

    def test_valid_token_resolves_account(self, app):
        token = auth_service.create_access_token({"sub": "user-1"})

        with patch.object(auth_service, "get_user_by_id", AsyncMock(return_value=make_user())):
            response = TestClient(app).get("/api/usage", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200

    def test_inactive_account_is_401(self, app):
        token = auth_service.create_access_token({"sub": "user-1"})

        with patch.object(auth_service, "get_user_by_id", AsyncMock(return_value=make_user(is_active=False))):
            response = TestClient(app).get("/api/usage", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_garbage_token_is_401(self, app):
        response = TestClient(app).get("/api/usage", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401


class TestUsageEndpoints:
    def test_get_usage(self, client):
        response = client.get("/api/usage")

        assert response.status_code == 200
        assert response.json()["resetAt"] == "2026-05-02T00:00:00Z"

    @pytest.mark.parametrize("amount,expected", [(1, 1), (2.7, 2), (0, 1), (-4, 1)])
    def test_consume_amount_floored_and_clamped(self, client, usage_ledger, amount, expected):
        response = client.post("/api/usage/consume", json={"type": "render", "amount": amount})

        assert response.status_code == 200
        assert usage_ledger.consume.await_args.kwargs["amount"] == expected

    def test_consume_without_credit_is_429(self, client, usage_ledger):
        usage_ledger.consume.return_value = ConsumeResult(allowed=False, new_balance=0)

        response = client.post("/api/usage/consume", json={})

        assert response.status_code == 429
        assert response.json() == {"code": "LIMIT_REACHED", "error": "Daily limit reached."}
        assert usage_ledger.consume.await_args.kwargs["reason"] == "render"


class TestAdminEndpoints:
    def test_non_admin_is_403(self, client):
        response = client.get("/api/admin/renders")

        assert response.status_code == 403

    def test_lists_attempts_for_admin(self, app, usage_ledger):
        app.dependency_overrides[get_current_user] = lambda: make_user(role=UserRole.ADMIN)
        usage_ledger.list_render_attempts.return_value = [
            RenderAttempt(
                id="attempt-1",
                user_id="user-1",
                mode=RenderMode.NORMAL,
                status=RenderStatus.FAILED,
                error="LIMIT_REACHED",
                created_at=datetime(2026, 5, 1, 9, 30),
            )
        ]

        response = TestClient(app).get("/api/admin/renders", params={"limit": 500})

        assert response.status_code == 200
        assert response.json()[0]["status"] == "failed"
        assert response.json()[0]["error"] == "LIMIT_REACHED"
        assert usage_ledger.list_render_attempts.await_args.kwargs["limit"] == 500

    def test_overview_for_admin(self, app, usage_ledger):
        app.dependency_overrides[get_current_user] = lambda: make_user(role=UserRole.ADMIN)

        response = TestClient(app).get("/api/admin/overview")

        assert response.status_code == 200
        assert response.json() == {"users": 4, "renders": 17, "totalCredits": 23}

    def test_overview_needs_admin(self, client, usage_ledger):
        response = client.get("/api/admin/overview")

        assert response.status_code == 403
        usage_ledger.overview.assert_not_awaited()


class TestHealth:
    def test_healthy(self, client, mock_db_session):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["db"] is True

    def test_database_down(self, client, mock_db_session):
        mock_db_session.execute.side_effect = RuntimeError("connection refused")

        response = client.get("/health")

        assert response.status_code == 500
        assert response.json()["db"] is False
