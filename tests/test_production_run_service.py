"""
Production run engine: creation and the start / stop / complete / skip
state machine.

    Step:  PENDING ⇄ IN_PROGRESS → COMPLETED
           PENDING | IN_PROGRESS | SKIPPED → SKIPPED
    Run:   PLANNED → IN_PROGRESS → COMPLETED (derived on the last completion)

Admin actors are used throughout so the assignment rules stay out of the
way; those are covered in test_run_assignment.py.
"""

import pytest

from psillyops.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from psillyops.models import db
from psillyops.models.production import ProductionRun, ProductionRunStep, TrackingToken
from psillyops.services.tracking_token_service import is_valid_token_format


def _steps(run_id):
    return (
        ProductionRunStep.query.filter_by(run_id=run_id)
        .order_by(ProductionRunStep.order)
        .all()
    )


def _step_ids(run):
    return [s["id"] for s in run["steps"]]


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateRun:
    def test_snapshots_templates_into_pending_steps(self, service, product, admin):
        result = service.create_run(product.id, 10, admin)

        assert result["status"] == "PLANNED"
        assert result["quantity"] == 10
        assert result["step_count"] == 3
        assert result["product"] == {"id": product.id, "name": product.name, "sku": product.sku}
        assert result["audit_recorded"] is True

        steps = _steps(result["run_id"])
        assert [s.status for s in steps] == ["PENDING"] * 3
        assert [s.order for s in steps] == [1, 2, 3]
        assert [s.template_key for s in steps] == ["mixing", "encapsulation", "labeling"]
        assert [s.required for s in steps] == [True, True, False]
        assert all(s.assigned_to is None and s.performed_by is None for s in steps)

    def test_issues_one_tracking_token(self, service, product, admin):
        result = service.create_run(product.id, 10, admin)
        token = result["tracking_token"]

        assert is_valid_token_format(token["token"])
        assert token["url"] == f"https://ops.test/qr/{token['token']}"

        run = db.session.get(ProductionRun, result["run_id"])
        assert run.tracking_token_id == token["id"]
        row = db.session.get(TrackingToken, token["id"])
        assert row.entity_id == run.id
        assert row.status == "ACTIVE"
        assert row.redirect_url == f"/production-runs/{run.id}"

    def test_each_run_gets_its_own_token(self, service, product, admin):
        a = service.create_run(product.id, 1, admin)
        b = service.create_run(product.id, 1, admin)
        assert a["tracking_token"]["token"] != b["tracking_token"]["token"]

    def test_actor_is_optional(self, service, product):
        result = service.create_run(product.id, 5)
        assert db.session.get(ProductionRun, result["run_id"]).created_by is None

    @pytest.mark.parametrize("quantity", [0, -3, 2.5, "10", None, True])
    def test_quantity_must_be_positive_integer(self, service, product, admin, quantity):
        with pytest.raises(ValidationError, match="quantity must be a positive integer"):
            service.create_run(product.id, quantity, admin)
        assert ProductionRun.query.count() == 0

    def test_unknown_product(self, service, admin):
        with pytest.raises(NotFoundError):
            service.create_run("no-such-product", 10, admin)

    def test_inactive_product(self, service, admin, make_product):
        product = make_product(sku="OLD-1", active=False)
        with pytest.raises(NotFoundError):
            service.create_run(product.id, 10, admin)

    def test_product_without_templates(self, service, admin, make_product):
        product = make_product(name="Bare Tincture", sku="BT-1", templates=())
        with pytest.raises(ValidationError, match='No production step template exists for product "Bare Tincture"'):
            service.create_run(product.id, 10, admin)
        assert ProductionRun.query.count() == 0

    @pytest.mark.parametrize("orders", [[1, 2, 2], [1, 3, 4], [0, 2, 3]])
    def test_corrupt_template_ordering_is_refused(self, service, admin, make_product, orders):
        product = make_product(sku="BAD-ORD", orders=orders)
        with pytest.raises(ValidationError, match="Invalid step template ordering"):
            service.create_run(product.id, 10, admin)
        assert ProductionRun.query.count() == 0
        assert TrackingToken.query.count() == 0

    def test_templates_not_starting_at_one_are_renumbered(self, service, admin, make_product):
        product = make_product(sku="OFFSET", orders=[5, 6, 7])
        result = service.create_run(product.id, 10, admin)
        assert [s.order for s in _steps(result["run_id"])] == [1, 2, 3]


# ═════════════════════════════════════════════════════════════════════════════
# Start / stop
# ═════════════════════════════════════════════════════════════════════════════


class TestStartStep:
    def test_start_moves_step_and_run_to_in_progress(self, service, run, admin, clock):
        step1 = run["steps"][0]["id"]
        result = service.start_step(step1, admin)

        assert result["status"] == "IN_PROGRESS"
        assert result["run_status"] == "IN_PROGRESS"
        assert result["timestamps"]["step_started_at"] is not None
        assert result["timestamps"]["run_started_at"] is not None
        assert result["timestamps"]["run_completed_at"] is None

        step = db.session.get(ProductionRunStep, step1)
        assert step.performed_by == admin.id

    def test_second_step_cannot_start_while_one_is_active(self, service, run, admin):
        step1, step2, _ = _step_ids(run)
        service.start_step(step1, admin)

        with pytest.raises(ValidationError, match=r"Step 1 \(Mixing\) is already in progress"):
            service.start_step(step2, admin)

        statuses = [s.status for s in _steps(run["id"])]
        assert statuses.count("IN_PROGRESS") == 1
        assert db.session.get(ProductionRunStep, step2).status == "PENDING"

    def test_start_requires_pending(self, service, run, admin):
        step1 = run["steps"][0]["id"]
        service.start_step(step1, admin)
        with pytest.raises(ValidationError, match=r"Step is not PENDING \(current: IN_PROGRESS\)"):
            service.start_step(step1, admin)

    def test_run_started_at_is_set_once(self, service, run, admin, clock):
        step1, step2, _ = _step_ids(run)
        first = service.start_step(step1, admin)["timestamps"]["run_started_at"]
        service.complete_step(step1, admin)

        clock.advance(minutes=30)
        second = service.start_step(step2, admin)["timestamps"]["run_started_at"]
        assert second == first

    def test_unknown_step(self, service, admin):
        with pytest.raises(NotFoundError):
            service.start_step("missing", admin)

    def test_empty_step_id(self, service, admin):
        with pytest.raises(ValidationError, match="step_id is required"):
            service.start_step("", admin)

    def test_cancelled_run_refuses_steps(self, service, run, admin):
        service.cancel_run(run["id"], admin, "batch recalled")
        with pytest.raises(ValidationError, match="Cannot start steps on a CANCELLED run"):
            service.start_step(run["steps"][0]["id"], admin)


class TestStopStep:
    def test_stop_resets_to_pending(self, service, run, admin):
        step1 = run["steps"][0]["id"]
        service.start_step(step1, admin)

        result = service.stop_step(step1, admin)
        assert result["status"] == "PENDING"
        assert result["timestamps"]["step_started_at"] is None
        # The run stays started; stopping does not roll it back to PLANNED.
        assert result["run_status"] == "IN_PROGRESS"

    def test_stop_frees_the_active_slot(self, service, run, admin):
        step1, step2, _ = _step_ids(run)
        service.start_step(step1, admin)
        service.stop_step(step1, admin)
        assert service.start_step(step2, admin)["status"] == "IN_PROGRESS"

    def test_stop_requires_in_progress(self, service, run, admin):
        with pytest.raises(ValidationError, match=r"Step is not IN_PROGRESS \(current: PENDING\)"):
            service.stop_step(run["steps"][0]["id"], admin)


# ═════════════════════════════════════════════════════════════════════════════
# Complete / skip
# ═════════════════════════════════════════════════════════════════════════════


class TestCompleteStep:
    def test_complete_requires_in_progress(self, service, run, admin):
        with pytest.raises(ValidationError, match=r"current: PENDING"):
            service.complete_step(run["steps"][0]["id"], admin)

    def test_completing_a_middle_step_leaves_run_open(self, service, run, admin):
        step1 = run["steps"][0]["id"]
        service.start_step(step1, admin)
        result = service.complete_step(step1, admin)

        assert result["status"] == "COMPLETED"
        assert result["run_status"] == "IN_PROGRESS"
        assert result["run_completed"] is False
        assert result["timestamps"]["step_completed_at"] is not None

    def test_last_completion_completes_run(self, service, run, admin):
        for step_id in _step_ids(run):
            service.start_step(step_id, admin)
            result = service.complete_step(step_id, admin)

        assert result["run_completed"] is True
        assert result["run_status"] == "COMPLETED"
        assert result["timestamps"]["run_completed_at"] is not None
        assert db.session.get(ProductionRun, run["id"]).completed_at is not None

    def test_skip_then_complete_remaining_completes_run(self, service, run, admin):
        """Optional step 3 skipped with a reason, steps 1 and 2 completed."""
        step1, step2, step3 = _step_ids(run)
        service.skip_step(step3, "not applicable", admin)

        service.start_step(step1, admin)
        first = service.complete_step(step1, admin)
        assert first["run_completed"] is False

        service.start_step(step2, admin)
        last = service.complete_step(step2, admin)
        assert last["run_completed"] is True
        assert last["run_status"] == "COMPLETED"

        run_row = db.session.get(ProductionRun, run["id"])
        assert run_row.status == "COMPLETED"
        assert run_row.completed_at is not None

    def test_skipping_the_last_open_step_completes_run(self, service, run, admin):
        """Steps 1 and 2 completed, step 3 skipped last."""
        step1, step2, step3 = _step_ids(run)
        for step_id in (step1, step2):
            service.start_step(step_id, admin)
            service.complete_step(step_id, admin)

        result = service.skip_step(step3, "not applicable", admin)
        assert result["status"] == "SKIPPED"
        assert result["run_completed"] is True
        assert result["run_status"] == "COMPLETED"
        assert result["timestamps"]["run_completed_at"] is not None

        run_row = db.session.get(ProductionRun, run["id"])
        assert run_row.status == "COMPLETED"
        assert run_row.completed_at is not None
        with pytest.raises(ValidationError):
            service.start_step(step3, admin)

    def test_skip_with_steps_left_open_keeps_run_going(self, service, run, admin):
        step1, _, step3 = _step_ids(run)
        service.start_step(step1, admin)

        result = service.skip_step(step3, None, admin)
        assert result["run_completed"] is False
        assert result["run_status"] == "IN_PROGRESS"

    def test_skipping_every_step_of_planned_run_completes_it(self, service, run, admin):
        for step_id in _step_ids(run):
            result = service.skip_step(step_id, "recipe change", admin)

        assert result["run_completed"] is True
        run_row = db.session.get(ProductionRun, run["id"])
        assert run_row.status == "COMPLETED"
        assert run_row.started_at is not None
        assert run_row.completed_at is not None

    def test_completed_run_refuses_further_transitions(self, service, run, admin):
        ids = _step_ids(run)
        for step_id in ids:
            service.start_step(step_id, admin)
            service.complete_step(step_id, admin)

        with pytest.raises(ValidationError):
            service.skip_step(ids[0], "late", admin)
        with pytest.raises(ValidationError):
            service.start_step(ids[0], admin)

    def test_completed_step_is_immutable(self, service, run, admin):
        step1 = run["steps"][0]["id"]
        service.start_step(step1, admin)
        service.complete_step(step1, admin)

        for call in (
            lambda: service.start_step(step1, admin),
            lambda: service.stop_step(step1, admin),
            lambda: service.complete_step(step1, admin),
            lambda: service.skip_step(step1, "no", admin),
        ):
            with pytest.raises(ValidationError):
                call()
        assert db.session.get(ProductionRunStep, step1).status == "COMPLETED"


class TestSkipStep:
    def test_required_step_needs_reason(self, service, run, admin):
        step1 = run["steps"][0]["id"]
        with pytest.raises(ValidationError, match="requires a reason"):
            service.skip_step(step1, "   ", admin)
        assert db.session.get(ProductionRunStep, step1).status == "PENDING"

        result = service.skip_step(step1, "damaged", admin)
        assert result["status"] == "SKIPPED"
        assert result["skip_reason"] == "damaged"
        assert result["timestamps"]["step_skipped_at"] is not None

    def test_reason_is_trimmed(self, service, run, admin):
        result = service.skip_step(run["steps"][0]["id"], "  seal torn  ", admin)
        assert result["skip_reason"] == "seal torn"

    def test_optional_step_skips_without_reason(self, service, run, admin):
        result = service.skip_step(run["steps"][2]["id"], None, admin)
        assert result["status"] == "SKIPPED"
        assert result["skip_reason"] is None

    def test_skip_in_progress_step_frees_active_slot(self, service, run, admin):
        step1, step2, _ = _step_ids(run)
        service.start_step(step1, admin)
        service.skip_step(step1, "machine down", admin)
        assert service.start_step(step2, admin)["status"] == "IN_PROGRESS"

    def test_reskip_replaces_reason(self, service, run, admin):
        step1 = run["steps"][0]["id"]
        service.skip_step(step1, "first", admin)
        assert service.skip_step(step1, "second", admin)["skip_reason"] == "second"

    def test_skip_does_not_start_run(self, service, run, admin):
        result = service.skip_step(run["steps"][2]["id"], None, admin)
        assert result["run_status"] == "PLANNED"


# ═════════════════════════════════════════════════════════════════════════════
# Run control (cancel / block / unblock)
# ═════════════════════════════════════════════════════════════════════════════


class TestRunControl:
    def test_cancel_requires_reason(self, service, run, admin):
        with pytest.raises(ValidationError, match="requires a reason"):
            service.cancel_run(run["id"], admin, "  ")

    def test_cancel_is_terminal(self, service, run, admin):
        result = service.cancel_run(run["id"], admin, "raw material recalled")
        assert result["status"] == "CANCELLED"
        assert result["status_reason"] == "raw material recalled"
        assert result["cancelled_at"] is not None
        with pytest.raises(ValidationError, match="Cannot cancel a CANCELLED run"):
            service.cancel_run(run["id"], admin, "again")

    def test_non_manager_cannot_cancel(self, service, run, operator):
        with pytest.raises(ForbiddenError):
            service.cancel_run(run["id"], operator, "nope")

    def test_block_refuses_step_transitions(self, service, run, admin):
        service.block_run(run["id"], admin, "QA hold")
        with pytest.raises(ValidationError, match="Cannot start steps on a BLOCKED run"):
            service.start_step(run["steps"][0]["id"], admin)

    def test_unblock_returns_unstarted_run_to_planned(self, service, run, admin):
        service.block_run(run["id"], admin, "QA hold")
        assert service.unblock_run(run["id"], admin)["status"] == "PLANNED"

    def test_unblock_returns_started_run_to_in_progress(self, service, run, admin):
        service.start_step(run["steps"][0]["id"], admin)
        service.block_run(run["id"], admin, "QA hold")
        assert service.unblock_run(run["id"], admin, "cleared")["status"] == "IN_PROGRESS"

    def test_unblock_requires_blocked(self, service, run, admin):
        with pytest.raises(ValidationError, match=r"Run is not BLOCKED \(current: PLANNED\)"):
            service.unblock_run(run["id"], admin)

    def test_unknown_run(self, service, admin):
        with pytest.raises(NotFoundError):
            service.block_run("missing", admin, "x")


# ═════════════════════════════════════════════════════════════════════════════
# Read side
# ═════════════════════════════════════════════════════════════════════════════


class TestReadSide:
    def test_get_run_detail(self, service, run):
        assert run["status"] == "PLANNED"
        assert [s["order"] for s in run["steps"]] == [1, 2, 3]
        assert run["current_step"]["step_key"] == "mixing"
        assert run["tracking_token"]["status"] == "ACTIVE"
        assert run["health"] == {
            "has_required_skips": False,
            "has_stalled_step": False,
            "is_blocked": False,
        }

    def test_current_step_prefers_in_progress(self, service, run, admin):
        step1, step2, _ = _step_ids(run)
        service.skip_step(step1, "n/a", admin)
        service.start_step(step2, admin)
        assert service.get_run(run["id"])["current_step"]["step_id"] == step2

    def test_get_run_unknown(self, service):
        with pytest.raises(NotFoundError):
            service.get_run("missing")

    def test_list_runs_filters_by_status(self, service, product, admin):
        a = service.create_run(product.id, 1, admin)
        b = service.create_run(product.id, 2, admin)
        service.cancel_run(a["run_id"], admin, "dup")

        planned = service.list_runs(status="planned")
        assert [r["id"] for r in planned] == [b["run_id"]]
        assert planned[0]["step_count"] == 3
        assert len(service.list_runs()) == 2

    def test_list_runs_rejects_unknown_status(self, service):
        with pytest.raises(ValidationError, match="Unknown run status: PAUSED"):
            service.list_runs(status="paused")

    def test_list_runs_clamps_limit(self, service, product, admin):
        for _ in range(3):
            service.create_run(product.id, 1, admin)
        assert len(service.list_runs(limit=0)) == 1
        assert len(service.list_runs(limit="2")) == 2
        with pytest.raises(ValidationError, match="limit must be an integer"):
            service.list_runs(limit="many")

    def test_runs_needing_attention(self, service, product, admin, clock):
        quiet = service.create_run(product.id, 1, admin)
        skipped = service.create_run(product.id, 1, admin)
        stalled = service.create_run(product.id, 1, admin)
        blocked = service.create_run(product.id, 1, admin)

        service.skip_step(service.get_run(skipped["run_id"])["steps"][0]["id"], "spilled", admin)
        service.start_step(service.get_run(stalled["run_id"])["steps"][0]["id"], admin)
        service.block_run(blocked["run_id"], admin, "QA hold")
        clock.advance(hours=5)

        flagged = {r["id"]: r["health"] for r in service.runs_needing_attention()}
        assert quiet["run_id"] not in flagged
        assert flagged[skipped["run_id"]]["has_required_skips"] is True
        assert flagged[stalled["run_id"]]["has_stalled_step"] is True
        assert blocked["run_id"] in flagged
