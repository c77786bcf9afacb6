"""Tests for the reconciliation scheduler and its job."""

from typing import Any
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from flakewatch.engine.models import ReconcileSummary
from flakewatch.engine.scheduler import (
    _scheduled_reconcile_job,
    run_reconciliation,
    start_scheduler,
    stop_scheduler,
)


def _sample(metric_name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(metric_name, labels or {}) or 0.0


def _engine(summary: ReconcileSummary | None = None, error: Exception | None = None) -> MagicMock:
    engine = MagicMock(name="fake_engine")
    if error is not None:
        engine.reconcile.side_effect = error
    else:
        engine.reconcile.return_value = summary or ReconcileSummary(scanned=2, verified=1, regressions=1)
    return engine


class TestRunReconciliation:
    async def test_returns_summary_and_counts_success(self) -> None:
        before = _sample("flakewatch_reconcile_runs_total", {"trigger": "manual", "status": "success"})
        summary = await run_reconciliation(_engine(), trigger="manual")

        assert summary.scanned == 2
        assert _sample("flakewatch_reconcile_runs_total", {"trigger": "manual", "status": "success"}) == before + 1

    async def test_failure_counted_and_raised(self) -> None:
        before = _sample("flakewatch_reconcile_runs_total", {"trigger": "manual", "status": "error"})
        with pytest.raises(RuntimeError, match="db gone"):
            await run_reconciliation(_engine(error=RuntimeError("db gone")), trigger="manual")
        assert _sample("flakewatch_reconcile_runs_total", {"trigger": "manual", "status": "error"}) == before + 1

    async def test_scheduled_job_swallows_and_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        await _scheduled_reconcile_job(_engine(error=RuntimeError("db gone")))
        assert "Scheduled reconciliation failed" in caplog.text


class TestScheduler:
    async def test_start_stop_with_interval(self, mock_settings: Any) -> None:
        import flakewatch.engine.scheduler as sched_mod

        mock_settings.reconcile_interval_minutes = 15
        start_scheduler(_engine())
        assert sched_mod._scheduler is not None
        assert sched_mod._scheduler.get_job("verification_reconcile") is not None
        stop_scheduler()
        assert sched_mod._scheduler is None

    async def test_zero_interval_is_noop(self, mock_settings: Any) -> None:
        import flakewatch.engine.scheduler as sched_mod

        # Ensure clean state
        stop_scheduler()
        mock_settings.reconcile_interval_minutes = 0
        start_scheduler(_engine())
        assert sched_mod._scheduler is None

    async def test_unconfigured_store_is_noop(self, mock_settings: Any) -> None:
        import flakewatch.engine.scheduler as sched_mod

        stop_scheduler()
        mock_settings.reconcile_interval_minutes = 15
        mock_settings.database_path = ""
        start_scheduler(_engine())
        assert sched_mod._scheduler is None
