"""
Step assignment: claim, admin assign, and the claim-before-act rule that
non-admin actors follow for start / stop / complete / skip.
"""

import pytest

from psillyops.core.actor import Actor
from psillyops.core.exceptions import ForbiddenError, ValidationError
from psillyops.models import db
from psillyops.models.production import ProductionRunStep


class TestClaimBeforeAct:
    def test_unclaimed_start_refused_then_claim_and_start(self, service, run, operator, other_operator):
        step1 = run["steps"][0]["id"]

        with pytest.raises(ValidationError, match="must be claimed"):
            service.start_step(step1, operator)

        claimed = service.claim_step(step1, operator)
        assert claimed["assigned_to"] == operator.id
        assert service.start_step(step1, operator)["status"] == "IN_PROGRESS"

    def test_other_operator_cannot_act_on_claimed_step(self, service, run, operator, other_operator):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)

        with pytest.raises(ForbiddenError, match="not assigned to this step"):
            service.start_step(step1, other_operator)

        service.start_step(step1, operator)
        with pytest.raises(ForbiddenError):
            service.complete_step(step1, other_operator)
        with pytest.raises(ForbiddenError):
            service.stop_step(step1, other_operator)
        with pytest.raises(ForbiddenError):
            service.skip_step(step1, "not mine", other_operator)
        assert db.session.get(ProductionRunStep, step1).status == "IN_PROGRESS"

    def test_admin_bypasses_assignment(self, service, run, operator, admin):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        assert service.start_step(step1, admin)["status"] == "IN_PROGRESS"

    def test_unclaimed_skip_refused(self, service, run, operator):
        with pytest.raises(ValidationError, match="must be claimed before it can be skipped"):
            service.skip_step(run["steps"][2]["id"], None, operator)


class TestClaimStep:
    def test_claim_does_not_change_status(self, service, run, operator):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        assert db.session.get(ProductionRunStep, step1).status == "PENDING"

    def test_reclaim_by_same_actor_is_idempotent(self, service, run, operator):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        assert service.claim_step(step1, operator)["assigned_to"] == operator.id

    def test_claim_of_someone_elses_step_refused(self, service, run, operator, other_operator):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        with pytest.raises(ForbiddenError, match="already assigned to another user"):
            service.claim_step(step1, other_operator)
        assert db.session.get(ProductionRunStep, step1).assigned_to == operator.id

    def test_admin_can_take_over_a_claim(self, service, run, operator, admin):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        assert service.claim_step(step1, admin)["assigned_to"] == admin.id

    def test_in_progress_step_can_be_claimed(self, service, run, operator, admin):
        step1 = run["steps"][0]["id"]
        service.start_step(step1, admin)
        service.claim_step(step1, operator)
        assert service.complete_step(step1, operator)["status"] == "COMPLETED"


class TestAdminAssign:
    def test_assign_and_clear(self, service, run, admin, operator):
        step1 = run["steps"][0]["id"]
        assert service.admin_assign_step(step1, operator.id, admin)["assigned_to"] == operator.id
        assert service.admin_assign_step(step1, None, admin)["assigned_to"] is None
        assert service.admin_assign_step(step1, "  ", admin)["assigned_to"] is None

    def test_assign_overrides_existing_claim(self, service, run, admin, operator, other_operator):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        service.admin_assign_step(step1, other_operator.id, admin)
        assert service.start_step(step1, other_operator)["status"] == "IN_PROGRESS"

    def test_non_admin_refused(self, service, run, operator):
        with pytest.raises(ForbiddenError, match="Admin only"):
            service.admin_assign_step(run["steps"][0]["id"], operator.id, operator)

    def test_custom_admin_role(self, service, run, operator):
        supervisor = Actor.for_role("sup-1", "SUPERVISOR", admin_roles={"ADMIN", "SUPERVISOR"})
        result = service.admin_assign_step(run["steps"][0]["id"], operator.id, supervisor)
        assert result["assigned_to"] == operator.id


# ═════════════════════════════════════════════════════════════════════════════
# My work
# ═════════════════════════════════════════════════════════════════════════════


class TestMyAssignedSteps:
    def test_lists_open_steps_on_open_runs(self, service, product, admin, operator):
        a = service.get_run(service.create_run(product.id, 5, admin)["run_id"])
        b = service.get_run(service.create_run(product.id, 7, admin)["run_id"])

        service.admin_assign_step(a["steps"][0]["id"], operator.id, admin)
        service.admin_assign_step(a["steps"][1]["id"], operator.id, admin)
        service.admin_assign_step(b["steps"][0]["id"], operator.id, admin)

        service.start_step(a["steps"][0]["id"], operator)
        service.complete_step(a["steps"][0]["id"], operator)
        service.cancel_run(b["id"], admin, "duplicate order")

        rows = service.my_assigned_steps(operator)
        assert [r["step_id"] for r in rows] == [a["steps"][1]["id"]]
        assert rows[0]["run"]["id"] == a["id"]
        assert rows[0]["run"]["product"]["sku"] == product.sku

    def test_empty_for_unassigned_actor(self, service, run, other_operator):
        assert service.my_assigned_steps(other_operator) == []


class TestMyActiveRuns:
    def test_includes_runs_the_actor_recently_worked_on(self, service, product, admin, operator):
        worked = service.get_run(service.create_run(product.id, 5, admin)["run_id"])
        untouched = service.create_run(product.id, 5, admin)

        step1 = worked["steps"][0]["id"]
        service.claim_step(step1, operator)
        service.start_step(step1, operator)
        service.complete_step(step1, operator)

        rows = service.my_active_runs(operator)
        assert [r["run_id"] for r in rows] == [worked["id"]]
        assert rows[0]["current_step"]["step_key"] == "encapsulation"
        assert rows[0]["product_sku"] == product.sku
        assert untouched["run_id"] not in {r["run_id"] for r in rows}

    def test_activity_outside_window_is_ignored(self, service, run, operator, clock):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        service.start_step(step1, operator)
        service.complete_step(step1, operator)

        clock.advance(days=8)
        assert service.my_active_runs(operator) == []

    def test_in_progress_step_keeps_run_active(self, service, run, operator, clock):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        service.start_step(step1, operator)

        clock.advance(days=30)
        rows = service.my_active_runs(operator)
        assert [r["run_id"] for r in rows] == [run["id"]]
        assert rows[0]["current_step"]["step_status"] == "IN_PROGRESS"

    def test_terminal_runs_are_excluded(self, service, run, operator, admin):
        step1 = run["steps"][0]["id"]
        service.claim_step(step1, operator)
        service.start_step(step1, operator)
        service.cancel_run(run["id"], admin, "recall")
        assert service.my_active_runs(operator) == []

    def test_most_recent_first(self, service, product, admin, operator, clock):
        older = service.get_run(service.create_run(product.id, 1, admin)["run_id"])
        newer = service.get_run(service.create_run(product.id, 1, admin)["run_id"])

        service.claim_step(older["steps"][0]["id"], operator)
        service.skip_step(older["steps"][0]["id"], "spilled", operator)
        clock.advance(hours=1)
        service.claim_step(newer["steps"][0]["id"], operator)
        service.skip_step(newer["steps"][0]["id"], "spilled", operator)

        assert [r["run_id"] for r in service.my_active_runs(operator)] == [newer["id"], older["id"]]
