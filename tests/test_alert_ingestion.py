"""Tests for failure ingestion and alert acknowledgment."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from oncall_api.core.windowed_counter import WindowedCounter
from oncall_api.models import (
    AlertChannel,
    AlertEvent,
    AlertRule,
    AlertSeverity,
    AlertType,
    ChannelType,
)
from oncall_api.services.alert_ingestion import (
    DEFAULT_ALERT_RULES,
    FailureRecorder,
    acknowledge_alert,
    ensure_default_rules,
    route_new_alert,
)

NOW = datetime(2024, 1, 3, 12, 0, tzinfo=UTC)
INGESTION = "oncall_api.services.alert_ingestion"


def make_rule(
    alert_type: AlertType = AlertType.JOB_FAILURE_SPIKE,
    threshold: int = 5,
    window: int = 10,
    severity: AlertSeverity = AlertSeverity.HIGH,
) -> MagicMock:
    rule = MagicMock(spec=AlertRule)
    rule.id = uuid.uuid4()
    rule.type = alert_type
    rule.threshold_count = threshold
    rule.window_minutes = window
    rule.severity = severity
    rule.is_enabled = True
    return rule


def ingestion_patches(rule=None, recent=False):
    return (
        patch(f"{INGESTION}.ensure_default_rules"),
        patch(f"{INGESTION}.get_enabled_rule", return_value=rule),
        patch(f"{INGESTION}.has_recent_alert", return_value=recent),
        patch(f"{INGESTION}.route_new_alert", return_value=[]),
    )


class TestFailureRecorder:
    """Tests for FailureRecorder.record_failure."""

    def test_keeps_injected_empty_counter(self):
        counter = WindowedCounter(max_keys=5)

        recorder = FailureRecorder(counter)

        assert len(counter) == 0
        assert recorder.counter is counter
        assert recorder.counter.max_keys == 5

    @pytest.mark.asyncio
    async def test_below_threshold_raises_nothing(self, mock_db):
        recorder = FailureRecorder(WindowedCounter())
        org_id = uuid.uuid4()
        p_defaults, p_rule, p_recent, p_route = ingestion_patches(make_rule())

        with p_defaults, p_rule, p_recent, p_route as mock_route:
            for i in range(4):
                alert = await recorder.record_failure(
                    mock_db, AlertType.JOB_FAILURE_SPIKE, org_id, NOW + timedelta(seconds=i)
                )
                assert alert is None

        mock_db.add.assert_not_called()
        mock_route.assert_not_called()

    @pytest.mark.asyncio
    async def test_threshold_raises_and_routes_alert(self, mock_db):
        recorder = FailureRecorder(WindowedCounter())
        org_id = uuid.uuid4()
        rule = make_rule(threshold=5)
        p_defaults, p_rule, p_recent, p_route = ingestion_patches(rule)

        with p_defaults, p_rule, p_recent, p_route as mock_route:
            results = [
                await recorder.record_failure(
                    mock_db,
                    AlertType.JOB_FAILURE_SPIKE,
                    org_id,
                    NOW + timedelta(seconds=i),
                    details={"job": "sync"},
                )
                for i in range(5)
            ]

        alert = results[-1]
        assert results[:4] == [None] * 4
        assert isinstance(alert, AlertEvent)
        assert alert.severity == AlertSeverity.HIGH
        assert alert.rule_id == rule.id
        assert alert.details["observed_count"] == 5
        assert alert.details["job"] == "sync"
        mock_db.add.assert_called_once_with(alert)
        mock_db.commit.assert_awaited_once()
        mock_route.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recent_alert_suppresses_duplicate(self, mock_db):
        recorder = FailureRecorder(WindowedCounter())
        p_defaults, p_rule, p_recent, p_route = ingestion_patches(
            make_rule(threshold=1), recent=True
        )

        with p_defaults, p_rule, p_recent, p_route:
            alert = await recorder.record_failure(
                mock_db, AlertType.JOB_FAILURE_SPIKE, uuid.uuid4(), NOW
            )

        assert alert is None
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_rule_is_ignored(self, mock_db):
        counter = WindowedCounter()
        recorder = FailureRecorder(counter)
        p_defaults, p_rule, p_recent, p_route = ingestion_patches(None)

        with p_defaults, p_rule, p_recent, p_route:
            alert = await recorder.record_failure(
                mock_db, AlertType.OAUTH_REFRESH_FAILURE, uuid.uuid4(), NOW
            )

        assert alert is None
        assert len(counter) == 0

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_accumulate(self, mock_db):
        recorder = FailureRecorder(WindowedCounter())
        org_id = uuid.uuid4()
        p_defaults, p_rule, p_recent, p_route = ingestion_patches(
            make_rule(threshold=2, window=10)
        )

        with p_defaults, p_rule, p_recent, p_route:
            first = await recorder.record_failure(
                mock_db, AlertType.JOB_FAILURE_SPIKE, org_id, NOW
            )
            second = await recorder.record_failure(
                mock_db, AlertType.JOB_FAILURE_SPIKE, org_id, NOW + timedelta(minutes=11)
            )

        assert first is None
        assert second is None

    @pytest.mark.asyncio
    async def test_organizations_are_counted_separately(self, mock_db):
        counter = WindowedCounter()
        recorder = FailureRecorder(counter)
        p_defaults, p_rule, p_recent, p_route = ingestion_patches(make_rule(threshold=2))

        with p_defaults, p_rule, p_recent, p_route:
            await recorder.record_failure(
                mock_db, AlertType.JOB_FAILURE_SPIKE, uuid.uuid4(), NOW
            )
            alert = await recorder.record_failure(
                mock_db, AlertType.JOB_FAILURE_SPIKE, uuid.uuid4(), NOW
            )

        assert alert is None
        assert len(counter) == 2


class TestDefaultRules:
    """Tests for ensure_default_rules."""

    @pytest.mark.asyncio
    async def test_creates_missing_rules(self, mock_db):
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = [AlertType.JOB_FAILURE_SPIKE]
        mock_db.execute.return_value = mock_result

        await ensure_default_rules(mock_db, uuid.uuid4())

        created = [c.args[0] for c in mock_db.add.call_args_list]
        assert {r.type for r in created} == set(DEFAULT_ALERT_RULES) - {
            AlertType.JOB_FAILURE_SPIKE
        }
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_rules_left_alone(self, mock_db):
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = list(DEFAULT_ALERT_RULES)
        mock_db.execute.return_value = mock_result

        await ensure_default_rules(mock_db, uuid.uuid4())

        mock_db.add.assert_not_called()
        mock_db.commit.assert_not_called()


class TestRouteNewAlert:
    @pytest.mark.asyncio
    async def test_skips_channels_above_alert_severity(self, mock_db):
        alert = MagicMock(spec=AlertEvent)
        alert.organization_id = uuid.uuid4()
        alert.severity = AlertSeverity.HIGH
        low = MagicMock(spec=AlertChannel)
        low.type, low.min_severity = ChannelType.WEBHOOK, AlertSeverity.LOW
        critical = MagicMock(spec=AlertChannel)
        critical.type, critical.min_severity = ChannelType.SLACK, AlertSeverity.CRITICAL

        with (
            patch(f"{INGESTION}.load_enabled_channels", return_value=[low, critical]),
            patch(f"{INGESTION}.dispatch") as mock_dispatch,
        ):
            await route_new_alert(mock_db, alert, NOW)

        mock_dispatch.assert_awaited_once()
        assert mock_dispatch.call_args.args[2] is low


class TestAcknowledgeAlert:
    """Tests for acknowledge_alert."""

    @pytest.mark.asyncio
    async def test_missing_alert_returns_none(self, mock_db):
        mock_result = MagicMock()
        mock_result.scalar_one_or_none.return_value = None
        mock_db.execute.return_value = mock_result

        assert await acknowledge_alert(mock_db, uuid.uuid4(), uuid.uuid4(), NOW) is None

    @pytest.mark.asyncio
    async def test_acknowledges_open_alert(self, mock_db):
        alert = MagicMock(spec=AlertEvent)
        alert.acknowledged = False
        mock_result = MagicMock()
        mock_result.scalar_one_or_none.return_value = alert
        mock_db.execute.return_value = mock_result
        user_id = uuid.uuid4()

        result = await acknowledge_alert(
            mock_db, uuid.uuid4(), uuid.uuid4(), NOW, user_id=user_id
        )

        assert result is alert
        assert alert.acknowledged is True
        assert alert.acknowledged_at == NOW
        assert alert.acknowledged_by_user_id == user_id
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_acknowledgment_keeps_first(self, mock_db):
        first_ack = NOW - timedelta(minutes=5)
        alert = MagicMock(spec=AlertEvent)
        alert.acknowledged = True
        alert.acknowledged_at = first_ack
        mock_result = MagicMock()
        mock_result.scalar_one_or_none.return_value = alert
        mock_db.execute.return_value = mock_result

        await acknowledge_alert(mock_db, uuid.uuid4(), uuid.uuid4(), NOW)

        assert alert.acknowledged_at == first_ack
        mock_db.commit.assert_not_called()
