"""
Campaign guard.

Stops provider-side spend for a number once its account runs out of funds.

Stop order:
1. List termination - stop the most recent active outbound call list
2. Session sweep - hang up every unfinished call session on the number

Each strategy has its own failure boundary. Stopping is best-effort: the
wallet has already been charged, so failures are logged and never raised.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from usage_meter.provider.types import TelephonyProvider
from usage_meter.storage.models import to_naive_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopOutcome:
    """Result of one stop strategy."""
    strategy: str
    stopped: bool
    detail: str = ""
    error: Optional[str] = None


class StopStrategy(ABC):
    """One independent way of halting spend on a number."""

    name = "strategy"

    def __init__(self, provider: TelephonyProvider, window: timedelta):
        self.provider = provider
        self.window = window

    @abstractmethod
    def execute(self, account_id: int, number: str, now: datetime) -> StopOutcome:
        """Try to stop spend. May raise; the guard catches everything."""


class ListTerminationStrategy(StopStrategy):
    """Stop the most recent active call list for the number."""

    name = "list_termination"

    def execute(self, account_id: int, number: str, now: datetime) -> StopOutcome:
        campaigns = [
            c for c in self.provider.find_active_campaigns(number, now - self.window)
            if c.active
        ]
        if not campaigns:
            return StopOutcome(self.name, stopped=False, detail="no active call lists")

        latest = max(campaigns, key=lambda c: c.started_at or datetime.min)
        stopped = self.provider.terminate_campaign(latest.list_id)
        if stopped:
            logger.info(
                "Stopped call list %s for account %s on %s",
                latest.list_id, account_id, number,
            )
        return StopOutcome(self.name, stopped=stopped, detail=f"list {latest.list_id}")


class SessionSweepStrategy(StopStrategy):
    """Terminate every unfinished call session involving the number."""

    name = "session_sweep"

    def execute(self, account_id: int, number: str, now: datetime) -> StopOutcome:
        sessions = [
            s for s in self.provider.find_active_sessions(number, now - self.window)
            if not s.finished
        ]
        if not sessions:
            return StopOutcome(self.name, stopped=False, detail="no active sessions")

        logger.info("Found %d active sessions for %s", len(sessions), number)
        terminated = []
        for session in sessions:
            try:
                if self.provider.terminate_session(session.session_id):
                    terminated.append(session.session_id)
            except Exception as e:
                logger.error(
                    "Could not terminate session %s for %s: %s",
                    session.session_id, number, e,
                )
        return StopOutcome(
            self.name,
            stopped=bool(terminated),
            detail=f"terminated {len(terminated)}/{len(sessions)} sessions",
        )


def default_strategies(
    provider: TelephonyProvider,
    campaign_window: timedelta = timedelta(hours=24),
    session_window: timedelta = timedelta(minutes=30),
) -> List[StopStrategy]:
    return [
        ListTerminationStrategy(provider, campaign_window),
        SessionSweepStrategy(provider, session_window),
    ]


class CampaignGuard:
    """Runs stop strategies in order until one of them succeeds."""

    def __init__(
        self,
        strategies: Sequence[StopStrategy],
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = 4,
    ):
        self.strategies = list(strategies)
        self._executor = executor
        self._max_workers = max_workers

    def stop(
        self,
        account_id: int,
        number: str,
        now: Optional[datetime] = None,
    ) -> List[StopOutcome]:
        """Attempt every strategy in order, stopping at the first success.

        Never raises.

        Returns:
            Outcomes of the strategies that ran
        """
        now = to_naive_utc(now) if now else utc_now()
        logger.warning("Funds exhausted for account %s, stopping spend on %s", account_id, number)

        outcomes = []
        for strategy in self.strategies:
            try:
                outcome = strategy.execute(account_id, number, now)
            except Exception as e:
                logger.error(
                    "Stop strategy %s failed for account %s on %s: %s",
                    strategy.name, account_id, number, e,
                )
                outcome = StopOutcome(strategy.name, stopped=False, error=str(e))
            outcomes.append(outcome)
            if outcome.stopped:
                break
        else:
            logger.warning("No strategy stopped spend for account %s on %s", account_id, number)
        return outcomes

    def trigger(self, account_id: int, number: str) -> Future:
        """Run :meth:`stop` off the request path and return its future."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="campaign-guard"
            )
        return self._executor.submit(self.stop, account_id, number)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
