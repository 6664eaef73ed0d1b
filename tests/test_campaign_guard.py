"""
Unit tests for the campaign guard.

Tests strategy ordering, failure isolation and detached execution.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from usage_meter.core.campaign_guard import (
    CampaignGuard,
    ListTerminationStrategy,
    SessionSweepStrategy,
    StopOutcome,
    StopStrategy,
    default_strategies,
)
from usage_meter.provider.types import CallSession, Campaign, ProviderError, TelephonyProvider

NOW = datetime(2024, 5, 1, 12, 0, 0)
NUMBER = "74951234567"


@pytest.fixture
def provider():
    mock = Mock(spec=TelephonyProvider)
    mock.find_active_campaigns.return_value = []
    mock.find_active_sessions.return_value = []
    mock.terminate_campaign.return_value = True
    mock.terminate_session.return_value = True
    return mock


class TestListTerminationStrategy:
    """Test stopping the latest call list."""

    def test_stops_most_recent_campaign(self, provider):
        provider.find_active_campaigns.return_value = [
            Campaign("old", NUMBER, started_at=NOW - timedelta(hours=5)),
            Campaign("new", NUMBER, started_at=NOW - timedelta(hours=1)),
            Campaign("stale", NUMBER, started_at=NOW, active=False),
        ]
        strategy = ListTerminationStrategy(provider, timedelta(hours=24))

        outcome = strategy.execute(1, NUMBER, NOW)

        provider.find_active_campaigns.assert_called_once_with(NUMBER, NOW - timedelta(hours=24))
        provider.terminate_campaign.assert_called_once_with("new")
        assert outcome.stopped is True

    def test_no_campaigns(self, provider):
        outcome = ListTerminationStrategy(provider, timedelta(hours=24)).execute(1, NUMBER, NOW)
        assert outcome.stopped is False
        provider.terminate_campaign.assert_not_called()


class TestSessionSweepStrategy:
    """Test terminating unfinished sessions."""

    def test_terminates_unfinished_sessions_only(self, provider):
        provider.find_active_sessions.return_value = [
            CallSession("s1", finished=False),
            CallSession("s2", finished=True),
            CallSession("s3", finished=False),
        ]
        strategy = SessionSweepStrategy(provider, timedelta(minutes=30))

        outcome = strategy.execute(1, NUMBER, NOW)

        provider.find_active_sessions.assert_called_once_with(NUMBER, NOW - timedelta(minutes=30))
        assert [c.args[0] for c in provider.terminate_session.call_args_list] == ["s1", "s3"]
        assert outcome.stopped is True
        assert outcome.detail == "terminated 2/2 sessions"

    def test_session_failures_are_isolated(self, provider):
        provider.find_active_sessions.return_value = [
            CallSession("s1", finished=False),
            CallSession("s2", finished=False),
        ]
        provider.terminate_session.side_effect = [ProviderError("timeout"), True]

        outcome = SessionSweepStrategy(provider, timedelta(minutes=30)).execute(1, NUMBER, NOW)

        assert provider.terminate_session.call_count == 2
        assert outcome.stopped is True
        assert outcome.detail == "terminated 1/2 sessions"


class TestCampaignGuard:
    """Test the ordered, failure-isolated strategy run."""

    def test_stops_after_first_success(self, provider):
        provider.find_active_campaigns.return_value = [Campaign("list-1", NUMBER, started_at=NOW)]
        guard = CampaignGuard(default_strategies(provider))

        outcomes = guard.stop(1, NUMBER, now=NOW)

        assert [o.strategy for o in outcomes] == ["list_termination"]
        provider.find_active_sessions.assert_not_called()

    def test_falls_back_to_session_sweep(self, provider):
        provider.find_active_sessions.return_value = [CallSession("s1", finished=False)]
        guard = CampaignGuard(default_strategies(provider))

        outcomes = guard.stop(1, NUMBER, now=NOW)

        assert [o.strategy for o in outcomes] == ["list_termination", "session_sweep"]
        assert outcomes[-1].stopped is True

    def test_strategy_error_does_not_block_next(self, provider, caplog):
        provider.find_active_campaigns.side_effect = ProviderError("503 Service Unavailable")
        provider.find_active_sessions.return_value = [CallSession("s1", finished=False)]
        guard = CampaignGuard(default_strategies(provider))

        outcomes = guard.stop(1, NUMBER, now=NOW)

        assert outcomes[0].error == "503 Service Unavailable"
        assert outcomes[1].stopped is True
        assert "list_termination failed" in caplog.text

    def test_aware_now_is_converted_to_utc(self, provider):
        provider.find_active_campaigns.return_value = [
            Campaign("list-1", NUMBER, started_at=NOW - timedelta(hours=1)),
        ]
        guard = CampaignGuard(default_strategies(provider))
        local_now = datetime(2024, 5, 1, 15, 0, tzinfo=timezone(timedelta(hours=3)))

        outcomes = guard.stop(1, NUMBER, now=local_now)

        assert outcomes[0].stopped is True
        provider.find_active_campaigns.assert_called_once_with(NUMBER, NOW - timedelta(hours=24))

    def test_never_raises(self, provider):
        provider.find_active_campaigns.side_effect = RuntimeError("boom")
        provider.find_active_sessions.side_effect = ProviderError("down")
        guard = CampaignGuard(default_strategies(provider))

        outcomes = guard.stop(1, NUMBER, now=NOW)

        assert all(not o.stopped for o in outcomes)
        assert len(outcomes) == 2

    def test_custom_strategies_run_in_order(self):
        calls = []

        class Recording(StopStrategy):
            def __init__(self, name, stopped):
                super().__init__(Mock(), timedelta(minutes=1))
                self.name = name
                self.stopped = stopped

            def execute(self, account_id, number, now):
                calls.append(self.name)
                return StopOutcome(self.name, stopped=self.stopped)

        guard = CampaignGuard([Recording("a", False), Recording("b", True), Recording("c", True)])
        guard.stop(1, NUMBER, now=NOW)
        assert calls == ["a", "b"]

    def test_trigger_runs_detached(self, provider):
        def slow_lookup(number, since):
            time.sleep(0.2)
            return [Campaign("list-1", number, started_at=NOW)]

        provider.find_active_campaigns.side_effect = slow_lookup
        guard = CampaignGuard(default_strategies(provider), executor=ThreadPoolExecutor(max_workers=1))
        try:
            started = time.monotonic()
            future = guard.trigger(1, NUMBER)
            assert time.monotonic() - started < 0.2
            outcomes = future.result(timeout=5)
            assert outcomes[0].stopped is True
        finally:
            guard.shutdown()
