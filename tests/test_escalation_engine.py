"""Tests for the alert escalation scanner."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from oncall_api.config import settings
from oncall_api.models import (
    AlertEscalation,
    AlertEvent,
    AlertSeverity,
    AlertType,
    EscalationPolicy,
    SuppressionReason,
)
from oncall_api.schemas.escalation import ScanResult, normalize_steps
from oncall_api.services.delivery_dispatcher import DeliveryResult
from oncall_api.services.escalation_engine import (
    EscalationOutcome,
    OrgScanGuard,
    determine_next_step,
    escalate_alert,
    get_open_alerts,
    get_suppression_reason,
    run_escalation_scan_for_org,
)
from oncall_api.services.notification_router import (
    PlannedDelivery,
    RouteKind,
    RoutePlan,
    RouteTarget,
)

# Wednesday 2024-01-03 12:00 UTC
NOW = datetime(2024, 1, 3, 12, 0, tzinfo=UTC)

ENGINE = "oncall_api.services.escalation_engine"


def make_alert(
    severity: AlertSeverity = AlertSeverity.CRITICAL,
    age_minutes: float = 11,
    organization_id: uuid.UUID | None = None,
) -> MagicMock:
    alert = MagicMock(spec=AlertEvent)
    alert.id = uuid.uuid4()
    alert.organization_id = organization_id or uuid.uuid4()
    alert.type = AlertType.JOB_FAILURE_SPIKE
    alert.severity = severity
    alert.title = "Job failures spiking"
    alert.details = {}
    alert.created_at = NOW - timedelta(minutes=age_minutes)
    alert.acknowledged = False
    return alert


def make_policy(
    steps=None,
    *,
    is_enabled: bool = True,
    timezone: str = "UTC",
    quiet_hours_enabled: bool = False,
    quiet_hours_start: str | None = None,
    quiet_hours_end: str | None = None,
    business_days_only: bool = False,
) -> MagicMock:
    policy = MagicMock(spec=EscalationPolicy)
    policy.is_enabled = is_enabled
    policy.timezone = timezone
    policy.quiet_hours_enabled = quiet_hours_enabled
    policy.quiet_hours_start = quiet_hours_start
    policy.quiet_hours_end = quiet_hours_end
    policy.business_days_only = business_days_only
    policy.sla_critical = 10
    policy.sla_high = 30
    policy.sla_medium = 180
    policy.sla_low = 1440
    policy.steps = (
        steps
        if steps is not None
        else [{"after_minutes": 5, "route_to": ["ONCALL_PRIMARY"]}]
    )
    return policy


def make_escalation(
    step_number: int,
    attempted_at: datetime,
    suppressed: bool = False,
) -> MagicMock:
    row = MagicMock(spec=AlertEscalation)
    row.id = uuid.uuid4()
    row.step_number = step_number
    row.attempted_at = attempted_at
    row.suppressed = suppressed
    return row


def plan_with_delivery() -> RoutePlan:
    channel = MagicMock()
    channel.id = uuid.uuid4()
    return RoutePlan(
        targets=[RouteTarget(RouteKind.ALIAS, "ONCALL_PRIMARY")],
        deliveries=[PlannedDelivery(channel, ("alice@example.com",))],
        oncall_recipients=["alice@example.com"],
    )


# ── Step selection tests (pure logic) ──


class TestDetermineNextStep:
    """Tests for determine_next_step."""

    def test_critical_fires_first_step_after_sla(self):
        alert = make_alert(AlertSeverity.CRITICAL, age_minutes=11)
        policy = make_policy()

        decision = determine_next_step(alert, policy, normalize_steps(policy.steps), [], NOW)

        assert decision.should_escalate is True
        assert decision.step_number == 1

    def test_sla_holds_back_early_step(self):
        alert = make_alert(AlertSeverity.CRITICAL, age_minutes=9)
        policy = make_policy()

        decision = determine_next_step(alert, policy, normalize_steps(policy.steps), [], NOW)

        assert decision.should_escalate is False
        assert decision.step_number is None

    def test_high_severity_waits_for_its_sla(self):
        alert = make_alert(AlertSeverity.HIGH, age_minutes=20)
        policy = make_policy()

        decision = determine_next_step(alert, policy, normalize_steps(policy.steps), [], NOW)

        assert decision.should_escalate is False

    def test_step_min_severity_filters_alert(self):
        alert = make_alert(AlertSeverity.MEDIUM, age_minutes=500)
        policy = make_policy(
            [{"after_minutes": 5, "route_to": ["EMAIL"], "min_severity": "HIGH"}]
        )

        decision = determine_next_step(alert, policy, normalize_steps(policy.steps), [], NOW)

        assert decision.should_escalate is False

    def test_highest_due_step_fires(self):
        alert = make_alert(age_minutes=31)
        policy = make_policy(
            [
                {"after_minutes": 5, "route_to": ["EMAIL"]},
                {"after_minutes": 15, "route_to": ["SLACK"]},
                {"after_minutes": 30, "route_to": ["WEBHOOK"]},
            ]
        )

        decision = determine_next_step(alert, policy, normalize_steps(policy.steps), [], NOW)

        assert decision.step_number == 3

    def test_next_step_after_fired_step(self):
        alert = make_alert(age_minutes=16)
        policy = make_policy(
            [
                {"after_minutes": 5, "route_to": ["EMAIL"]},
                {"after_minutes": 15, "route_to": ["SLACK"]},
            ]
        )
        existing = [make_escalation(1, NOW - timedelta(minutes=6))]

        decision = determine_next_step(
            alert, policy, normalize_steps(policy.steps), existing, NOW
        )

        assert decision.should_escalate is True
        assert decision.step_number == 2

    def test_fired_steps_are_never_repeated(self):
        alert = make_alert(age_minutes=60)
        policy = make_policy()
        existing = [make_escalation(1, NOW - timedelta(minutes=49))]

        decision = determine_next_step(
            alert, policy, normalize_steps(policy.steps), existing, NOW
        )

        assert decision.should_escalate is False
        assert "already fired" in decision.reason

    def test_suppressed_step_waits_for_cooldown(self):
        alert = make_alert(age_minutes=20)
        policy = make_policy()
        existing = [make_escalation(1, NOW - timedelta(minutes=3), suppressed=True)]

        decision = determine_next_step(
            alert, policy, normalize_steps(policy.steps), existing, NOW
        )

        assert decision.should_escalate is False
        assert decision.step_number == 1
        assert "cooldown" in decision.reason

    def test_suppressed_step_retries_after_cooldown(self):
        alert = make_alert(age_minutes=30)
        policy = make_policy()
        existing = [make_escalation(1, NOW - timedelta(minutes=11), suppressed=True)]

        decision = determine_next_step(
            alert, policy, normalize_steps(policy.steps), existing, NOW
        )

        assert decision.should_escalate is True
        assert decision.step_number == 1


# ── Suppression tests ──


class TestSuppression:
    """Tests for quiet hours and business-day suppression."""

    @pytest.mark.parametrize(
        "hour,minute,expected",
        [
            (23, 30, SuppressionReason.QUIET_HOURS),
            (6, 59, SuppressionReason.QUIET_HOURS),
            (7, 0, None),
            (12, 0, None),
            (22, 0, SuppressionReason.QUIET_HOURS),
        ],
    )
    def test_quiet_hours_wrap_midnight(self, hour, minute, expected):
        policy = make_policy(
            quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="07:00"
        )

        now = NOW.replace(hour=hour, minute=minute)

        assert get_suppression_reason(policy, now) == expected

    def test_quiet_hours_use_policy_timezone(self):
        policy = make_policy(
            timezone="America/New_York",
            quiet_hours_enabled=True,
            quiet_hours_start="22:00",
            quiet_hours_end="07:00",
        )

        # 03:30 UTC is 22:30 in New York
        assert (
            get_suppression_reason(policy, datetime(2024, 1, 3, 3, 30, tzinfo=UTC))
            == SuppressionReason.QUIET_HOURS
        )

    def test_business_days_only_on_weekend(self):
        policy = make_policy(business_days_only=True)

        saturday = datetime(2024, 1, 6, 12, tzinfo=UTC)

        assert get_suppression_reason(policy, saturday) == SuppressionReason.BUSINESS_DAYS_ONLY
        assert get_suppression_reason(policy, NOW) is None

    def test_business_days_use_local_weekday(self):
        policy = make_policy(business_days_only=True, timezone="America/New_York")

        # Saturday 02:00 UTC is still Friday evening in New York
        assert get_suppression_reason(policy, datetime(2024, 1, 6, 2, tzinfo=UTC)) is None

    def test_invalid_quiet_hours_do_not_suppress(self):
        policy = make_policy(
            quiet_hours_enabled=True, quiet_hours_start="late", quiet_hours_end="07:00"
        )

        assert get_suppression_reason(policy, NOW.replace(hour=3)) is None


# ── Per-alert flow tests ──


class TestEscalateAlert:
    """Tests for escalate_alert orchestration."""

    @pytest.mark.asyncio
    async def test_fires_and_dispatches(self, mock_db):
        alert = make_alert(age_minutes=11)
        policy = make_policy()
        plan = plan_with_delivery()

        with (
            patch(f"{ENGINE}.get_escalations_for_alert", return_value=[]),
            patch(f"{ENGINE}.plan_routes", return_value=plan),
            patch(f"{ENGINE}.record_escalation") as mock_record,
            patch(f"{ENGINE}.dispatch") as mock_dispatch,
        ):
            mock_record.return_value = make_escalation(1, NOW)
            mock_dispatch.return_value = DeliveryResult(
                channel_id=plan.deliveries[0].channel.id, success=True, attempts=1
            )

            outcome = await escalate_alert(
                mock_db, alert, policy, normalize_steps(policy.steps), NOW
            )

        assert outcome == EscalationOutcome.ESCALATED
        mock_record.assert_awaited_once()
        assert mock_record.call_args.kwargs.get("suppressed", False) is False
        mock_dispatch.assert_awaited_once()
        assert mock_dispatch.call_args.kwargs["recipients_override"] == ("alice@example.com",)

    @pytest.mark.asyncio
    async def test_rescan_within_minutes_does_nothing(self, mock_db):
        alert = make_alert(age_minutes=14)
        policy = make_policy()
        fired = make_escalation(1, NOW - timedelta(minutes=3))

        with (
            patch(f"{ENGINE}.get_escalations_for_alert", return_value=[fired]),
            patch(f"{ENGINE}.plan_routes") as mock_plan,
            patch(f"{ENGINE}.dispatch") as mock_dispatch,
        ):
            outcome = await escalate_alert(
                mock_db, alert, policy, normalize_steps(policy.steps), NOW
            )

        assert outcome == EscalationOutcome.NONE
        mock_plan.assert_not_called()
        mock_dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_quiet_hours_record_suppressed_row(self, mock_db):
        alert = make_alert(age_minutes=11)
        policy = make_policy(
            quiet_hours_enabled=True, quiet_hours_start="08:00", quiet_hours_end="18:00"
        )

        with (
            patch(f"{ENGINE}.get_escalations_for_alert", return_value=[]),
            patch(f"{ENGINE}.plan_routes") as mock_plan,
            patch(f"{ENGINE}.record_escalation") as mock_record,
            patch(f"{ENGINE}.dispatch") as mock_dispatch,
        ):
            mock_record.return_value = make_escalation(1, NOW, suppressed=True)

            outcome = await escalate_alert(
                mock_db, alert, policy, normalize_steps(policy.steps), NOW
            )

        assert outcome == EscalationOutcome.SUPPRESSED
        assert mock_record.call_args.kwargs["suppressed"] is True
        assert mock_record.call_args.kwargs["reason"] == SuppressionReason.QUIET_HOURS
        mock_plan.assert_not_called()
        mock_dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_oncall_coverage_is_suppressed(self, mock_db):
        alert = make_alert(age_minutes=11)
        policy = make_policy()
        empty_plan = RoutePlan(targets=[RouteTarget(RouteKind.ALIAS, "ONCALL_PRIMARY")])

        with (
            patch(f"{ENGINE}.get_escalations_for_alert", return_value=[]),
            patch(f"{ENGINE}.plan_routes", return_value=empty_plan),
            patch(f"{ENGINE}.record_escalation") as mock_record,
            patch(f"{ENGINE}.dispatch") as mock_dispatch,
        ):
            mock_record.return_value = make_escalation(1, NOW, suppressed=True)

            outcome = await escalate_alert(
                mock_db, alert, policy, normalize_steps(policy.steps), NOW
            )

        assert outcome == EscalationOutcome.SUPPRESSED
        assert (
            mock_record.call_args.kwargs["reason"] == SuppressionReason.NO_ONCALL_COVERAGE
        )
        mock_dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_tick_wins_race(self, mock_db):
        alert = make_alert(age_minutes=11)
        policy = make_policy()

        with (
            patch(f"{ENGINE}.get_escalations_for_alert", return_value=[]),
            patch(f"{ENGINE}.plan_routes", return_value=plan_with_delivery()),
            patch(f"{ENGINE}.record_escalation", return_value=None),
            patch(f"{ENGINE}.dispatch") as mock_dispatch,
        ):
            outcome = await escalate_alert(
                mock_db, alert, policy, normalize_steps(policy.steps), NOW
            )

        assert outcome == EscalationOutcome.NONE
        mock_dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_delivery_still_counts_as_escalated(self, mock_db):
        alert = make_alert(age_minutes=11)
        policy = make_policy()
        plan = plan_with_delivery()

        with (
            patch(f"{ENGINE}.get_escalations_for_alert", return_value=[]),
            patch(f"{ENGINE}.plan_routes", return_value=plan),
            patch(f"{ENGINE}.record_escalation", return_value=make_escalation(1, NOW)),
            patch(
                f"{ENGINE}.dispatch",
                return_value=DeliveryResult(
                    channel_id=plan.deliveries[0].channel.id,
                    success=False,
                    attempts=3,
                    error="EMAIL_500",
                ),
            ),
        ):
            outcome = await escalate_alert(
                mock_db, alert, policy, normalize_steps(policy.steps), NOW
            )

        assert outcome == EscalationOutcome.ESCALATED


class TestRecordEscalation:
    """Tests for record_escalation persistence."""

    @pytest.mark.asyncio
    async def test_duplicate_fired_step_returns_none(self, mock_db):
        from sqlalchemy.exc import IntegrityError

        from oncall_api.services.escalation_engine import record_escalation

        mock_db.begin_nested.return_value.__aexit__ = AsyncMock(
            side_effect=IntegrityError("dup", {}, Exception())
        )
        alert = make_alert()
        step = normalize_steps(make_policy().steps)[0]

        row = await record_escalation(mock_db, alert, 1, step, NOW)

        assert row is None
        mock_db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_row_snapshots_routes(self, mock_db):
        from oncall_api.services.escalation_engine import record_escalation

        alert = make_alert()
        step = normalize_steps(make_policy().steps)[0]

        row = await record_escalation(
            mock_db,
            alert,
            1,
            step,
            NOW,
            suppressed=True,
            reason=SuppressionReason.QUIET_HOURS,
        )

        assert row.routed_to == ["ONCALL_PRIMARY"]
        assert row.reason == "quiet-hours"
        assert row.suppressed is True
        mock_db.add.assert_called_once_with(row)
        mock_db.commit.assert_awaited_once()


# ── Organization scan tests ──


class TestRunEscalationScanForOrg:
    """Tests for run_escalation_scan_for_org."""

    @pytest.mark.asyncio
    async def test_missing_policy_returns_zero_counts(self, mock_db):
        with patch(f"{ENGINE}.get_policy", return_value=None):
            result = await run_escalation_scan_for_org(mock_db, uuid.uuid4(), NOW)

        assert result == ScanResult()

    @pytest.mark.asyncio
    async def test_disabled_policy_returns_zero_counts(self, mock_db):
        with (
            patch(f"{ENGINE}.get_policy", return_value=make_policy(is_enabled=False)),
            patch(f"{ENGINE}.get_open_alerts") as mock_alerts,
        ):
            result = await run_escalation_scan_for_org(mock_db, uuid.uuid4(), NOW)

        assert result.total_processed == 0
        mock_alerts.assert_not_called()

    @pytest.mark.asyncio
    async def test_counts_outcomes(self, mock_db):
        alerts = [make_alert(), make_alert(), make_alert()]

        with (
            patch(f"{ENGINE}.get_policy", return_value=make_policy()),
            patch(f"{ENGINE}.get_open_alerts", return_value=alerts),
            patch(
                f"{ENGINE}.escalate_alert",
                side_effect=[
                    EscalationOutcome.ESCALATED,
                    EscalationOutcome.SUPPRESSED,
                    EscalationOutcome.NONE,
                ],
            ),
        ):
            result = await run_escalation_scan_for_org(mock_db, uuid.uuid4(), NOW)

        assert result.total_processed == 3
        assert result.escalated == 1
        assert result.suppressed == 1

    @pytest.mark.asyncio
    async def test_policy_without_valid_steps_escalates_nothing(self, mock_db):
        with (
            patch(
                f"{ENGINE}.get_policy",
                return_value=make_policy([{"after_minutes": "soon", "route_to": []}]),
            ),
            patch(f"{ENGINE}.get_open_alerts", return_value=[make_alert()]),
            patch(f"{ENGINE}.escalate_alert") as mock_escalate,
        ):
            result = await run_escalation_scan_for_org(mock_db, uuid.uuid4(), NOW)

        assert result.total_processed == 1
        assert result.escalated == 0
        mock_escalate.assert_not_called()


    @pytest.mark.asyncio
    async def test_open_alert_query_excludes_acknowledged(self, mock_db):
        org_id = uuid.uuid4()
        result = MagicMock()
        result.scalars.return_value.all.return_value = []
        mock_db.execute.return_value = result

        assert await get_open_alerts(mock_db, org_id, NOW) == []

        stmt = mock_db.execute.call_args.args[0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        sql = str(compiled)
        assert "alert_events.acknowledged IS false" in sql
        assert "alert_events.created_at >=" in sql
        assert "alert_events.created_at <=" in sql
        assert "ORDER BY alert_events.created_at ASC" in sql
        params = list(compiled.params.values())
        assert org_id in params
        assert NOW in params
        assert NOW - timedelta(hours=settings.escalation_lookback_hours) in params


class TestOrgScanGuard:
    """Tests for the per-organization single-flight guard."""

    @pytest.mark.asyncio
    async def test_overlapping_scan_is_skipped(self):
        guard = OrgScanGuard()
        org_id = uuid.uuid4()
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_scan():
            started.set()
            await release.wait()
            return "done"

        first = asyncio.create_task(guard.run(org_id, slow_scan))
        await started.wait()

        assert guard.is_running(org_id) is True
        assert await guard.run(org_id, slow_scan) == (False, None)

        release.set()
        assert await first == (True, "done")
        assert len(guard) == 0

    @pytest.mark.asyncio
    async def test_different_organizations_run_concurrently(self):
        guard = OrgScanGuard()
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return 1

        async def quick():
            return 2

        first = asyncio.create_task(guard.run(uuid.uuid4(), blocked))
        await asyncio.sleep(0)

        assert await guard.run(uuid.uuid4(), quick) == (True, 2)

        release.set()
        assert await first == (True, 1)

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self):
        guard = OrgScanGuard()
        org_id = uuid.uuid4()

        async def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await guard.run(org_id, failing)

        assert guard.is_running(org_id) is False
        assert len(guard) == 0
