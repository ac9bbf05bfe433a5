"""Tests for the HTTP surface."""

import uuid
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from oncall_api.main import app
from oncall_api.schemas.escalation import ScanResult
from oncall_api.schemas.oncall import CurrentOnCallResponse, OnCallUser
from oncall_api.services.oncall_resolver import OnCallResolution
from oncall_api.services.scheduler import scan_guard

NOW = datetime(2024, 1, 3, 12, 0, tzinfo=UTC)
ORG_ID = uuid.uuid4()
ALERTS = "oncall_api.routers.alerts"
API_HEADERS = {"X-API-Key": "test-api-token"}


def alert_lookup(mock_db, alert):
    result = MagicMock()
    result.scalar_one_or_none.return_value = alert
    mock_db.execute.return_value = result


# ── Auth tests ──


class TestApiKey:
    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, client):
        response = await client.get(f"/api/orgs/{ORG_ID}/oncall/now")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_key_rejected(self, client):
        response = await client.get(
            f"/api/orgs/{ORG_ID}/oncall/now", headers={"X-API-Key": "nope"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_health_is_public(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}


# ── Health tests ──


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        with patch(
            "oncall_api.routers.health.check_database_connection", return_value=True
        ):
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": "connected",
            "scheduler": "stopped",
        }

    @pytest.mark.asyncio
    async def test_degraded(self, client):
        with patch(
            "oncall_api.routers.health.check_database_connection", return_value=False
        ):
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_not_ready(self, client):
        with patch(
            "oncall_api.routers.health.check_database_connection", return_value=False
        ):
            response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client):
        response = await client.get(
            "/health/live", headers={"X-Correlation-ID": "trace-123"}
        )

        assert response.headers["x-correlation-id"] == "trace-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client):
        response = await client.get("/health/live")

        uuid.UUID(response.headers["x-correlation-id"])


# ── On-call tests ──


class TestOnCallEndpoints:
    @pytest.mark.asyncio
    async def test_current_oncall(self, client):
        user = OnCallUser(id=uuid.uuid4(), email="ana@example.com", display_name="Ana")
        current = CurrentOnCallResponse(
            resolved_at=NOW,
            active_schedule_id=uuid.uuid4(),
            active_schedule_name="EMEA",
            in_coverage_window=True,
            is_holiday=False,
            primary=user,
            secondary=None,
        )

        with patch(
            "oncall_api.routers.oncall.get_current_oncall", return_value=current
        ) as mock_current:
            response = await client.get(
                f"/api/orgs/{ORG_ID}/oncall/now", headers=API_HEADERS
            )

        assert response.status_code == 200
        body = response.json()
        assert body["active_schedule_name"] == "EMEA"
        assert body["primary"]["email"] == "ana@example.com"
        assert body["secondary"] is None
        assert mock_current.call_args.args[1] == ORG_ID

    @pytest.mark.asyncio
    async def test_resolve_global_at_instant(self, client):
        primary = uuid.uuid4()
        resolution = OnCallResolution(
            resolved_at=NOW,
            primary_user_id=primary,
            active_schedule_id=uuid.uuid4(),
            in_coverage_window=True,
        )

        with patch(
            "oncall_api.routers.oncall.resolve_now", return_value=resolution
        ) as mock_resolve:
            response = await client.get(
                f"/api/orgs/{ORG_ID}/oncall/resolve",
                params={"at": "2024-01-03T12:00:00", "global": "true"},
                headers=API_HEADERS,
            )

        assert response.status_code == 200
        assert response.json()["primary_user_id"] == str(primary)
        assert mock_resolve.call_args.args[2] == NOW
        assert mock_resolve.call_args.kwargs["force_fallback"] is True

    @pytest.mark.asyncio
    async def test_resolve_defaults_to_local(self, client):
        resolution = OnCallResolution(resolved_at=NOW)

        with patch(
            "oncall_api.routers.oncall.resolve_now", return_value=resolution
        ) as mock_resolve:
            response = await client.get(
                f"/api/orgs/{ORG_ID}/oncall/resolve", headers=API_HEADERS
            )

        assert response.status_code == 200
        assert response.json()["active_schedule_id"] is None
        assert mock_resolve.call_args.kwargs["force_fallback"] is False


# ── Escalation tests ──


class TestEscalationEndpoints:
    @pytest.mark.asyncio
    async def test_manual_scan(self, client):
        with patch(
            f"{ALERTS}.run_escalation_scan_for_org",
            return_value=ScanResult(total_processed=3, escalated=1),
        ) as mock_scan:
            response = await client.post(
                f"/api/orgs/{ORG_ID}/escalations/scan",
                params={"at": "2024-01-03T12:00:00Z"},
                headers=API_HEADERS,
            )

        assert response.status_code == 200
        assert response.json() == {"total_processed": 3, "escalated": 1, "suppressed": 0}
        assert mock_scan.call_args.args[1:] == (ORG_ID, NOW)

    @pytest.mark.asyncio
    async def test_scan_already_running(self, client):
        with patch.object(scan_guard, "run", AsyncMock(return_value=(False, None))):
            response = await client.post(
                f"/api/orgs/{ORG_ID}/escalations/scan", headers=API_HEADERS
            )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_timeline_unknown_alert(self, client, mock_db):
        alert_lookup(mock_db, None)

        response = await client.get(
            f"/api/orgs/{ORG_ID}/alerts/{uuid.uuid4()}/escalations",
            headers=API_HEADERS,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_timeline(self, client, mock_db):
        alert_id = uuid.uuid4()
        alert_lookup(mock_db, MagicMock())
        rows = [
            SimpleNamespace(
                id=uuid.uuid4(),
                alert_event_id=alert_id,
                step_number=number,
                attempted_at=NOW,
                routed_to=["ONCALL_PRIMARY"],
                suppressed=number == 1,
                reason="QUIET_HOURS" if number == 1 else None,
            )
            for number in (1, 2)
        ]

        with patch(f"{ALERTS}.get_escalations_for_alert", return_value=rows):
            response = await client.get(
                f"/api/orgs/{ORG_ID}/alerts/{alert_id}/escalations",
                headers=API_HEADERS,
            )

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert [e["step_number"] for e in body["escalations"]] == [1, 2]
        assert body["escalations"][0]["reason"] == "QUIET_HOURS"


# ── Acknowledgment and failure reporting tests ──


class TestAlertEndpoints:
    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, client):
        with patch(f"{ALERTS}.acknowledge_alert", return_value=None):
            response = await client.post(
                f"/api/orgs/{ORG_ID}/alerts/{uuid.uuid4()}/acknowledge",
                headers=API_HEADERS,
            )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_acknowledge(self, client):
        alert_id, user_id = uuid.uuid4(), uuid.uuid4()
        alert = SimpleNamespace(
            id=alert_id,
            organization_id=ORG_ID,
            type="JOB_FAILURE_SPIKE",
            severity="HIGH",
            title="Job failures spiking",
            created_at=NOW,
            acknowledged=True,
            acknowledged_at=NOW,
            acknowledged_by_user_id=user_id,
        )

        with patch(f"{ALERTS}.acknowledge_alert", return_value=alert) as mock_ack:
            response = await client.post(
                f"/api/orgs/{ORG_ID}/alerts/{alert_id}/acknowledge",
                json={"user_id": str(user_id)},
                headers=API_HEADERS,
            )

        assert response.status_code == 200
        assert response.json()["acknowledged"] is True
        assert mock_ack.call_args.kwargs["user_id"] == user_id

    @pytest.mark.asyncio
    async def test_report_failure(self, client):
        alert_id = uuid.uuid4()
        recorder = MagicMock()
        recorder.record_failure = AsyncMock(return_value=SimpleNamespace(id=alert_id))
        original = app.state.failure_recorder
        app.state.failure_recorder = recorder
        try:
            response = await client.post(
                f"/api/orgs/{ORG_ID}/failures",
                json={"type": "WEBHOOK_FAILURE_SPIKE", "details": {"endpoint": "x"}},
                headers=API_HEADERS,
            )
        finally:
            app.state.failure_recorder = original

        assert response.status_code == 200
        assert response.json() == {"alert_raised": True, "alert_event_id": str(alert_id)}
        assert recorder.record_failure.call_args.kwargs["details"] == {"endpoint": "x"}

    @pytest.mark.asyncio
    async def test_report_failure_unknown_type(self, client):
        response = await client.post(
            f"/api/orgs/{ORG_ID}/failures",
            json={"type": "DISK_FULL"},
            headers=API_HEADERS,
        )

        assert response.status_code == 422
