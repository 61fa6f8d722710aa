"""Run health evaluator: pure function over a run status and its steps."""

from datetime import datetime, timedelta, timezone

import pytest

from psillyops.services.run_health import RunHealth, compute_run_health

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _step(status="PENDING", required=True, started_at=None):
    return {"status": status, "required": required, "started_at": started_at}


class TestRequiredSkips:
    def test_required_skip_flagged(self):
        health = compute_run_health("IN_PROGRESS", [_step("SKIPPED", required=True), _step()], now=NOW)
        assert health.has_required_skips is True
        assert health.needs_attention is True

    def test_optional_skip_not_flagged(self):
        health = compute_run_health("IN_PROGRESS", [_step("SKIPPED", required=False), _step()], now=NOW)
        assert health == RunHealth()


class TestStalledStep:
    @pytest.mark.parametrize("hours, stalled", [(3, False), (4, False), (5, True)])
    def test_default_threshold_is_four_hours(self, hours, stalled):
        steps = [_step("IN_PROGRESS", started_at=NOW - timedelta(hours=hours))]
        assert compute_run_health("IN_PROGRESS", steps, now=NOW).has_stalled_step is stalled

    def test_custom_threshold(self):
        steps = [_step("IN_PROGRESS", started_at=NOW - timedelta(minutes=45))]
        assert compute_run_health("IN_PROGRESS", steps, stall_threshold_hours=0.5, now=NOW).has_stalled_step

    def test_naive_timestamps_are_treated_as_utc(self):
        naive = (NOW - timedelta(hours=6)).replace(tzinfo=None)
        steps = [_step("IN_PROGRESS", started_at=naive)]
        assert compute_run_health("IN_PROGRESS", steps, now=NOW).has_stalled_step

    def test_only_in_progress_steps_can_stall(self):
        old = NOW - timedelta(days=2)
        steps = [_step("COMPLETED", started_at=old), _step("PENDING", started_at=old)]
        assert compute_run_health("IN_PROGRESS", steps, now=NOW).has_stalled_step is False


class TestIsBlocked:
    def test_fully_resolved_active_run_is_not_blocked(self):
        steps = [_step("COMPLETED"), _step("SKIPPED", required=False)]
        assert compute_run_health("IN_PROGRESS", steps, now=NOW).is_blocked is False

    def test_active_run_with_unresolvable_steps_is_blocked(self):
        # No pending, no in-progress, yet not every step resolved is only
        # reachable when the step data bypasses the engine.
        steps = [{"status": "UNKNOWN", "required": True}]
        assert compute_run_health("PLANNED", steps, now=NOW).is_blocked is True

    def test_terminal_run_never_blocked(self):
        steps = [{"status": "UNKNOWN", "required": True}]
        assert compute_run_health("CANCELLED", steps, now=NOW).is_blocked is False

    def test_open_work_is_not_blocked(self):
        assert compute_run_health("PLANNED", [_step()], now=NOW).is_blocked is False


def test_accepts_orm_like_objects():
    class Row:
        status = "SKIPPED"
        required = True
        started_at = None

    health = compute_run_health("IN_PROGRESS", [Row()], now=NOW)
    assert health.to_dict() == {
        "has_required_skips": True,
        "has_stalled_step": False,
        "is_blocked": False,
    }
