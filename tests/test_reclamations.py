"""
Reclamation state machine tests.

Covers the full round trip across two crews, every illegal transition the
workflow refuses, conditional-update races between sessions, and the
assigned/available partition of the crew read side.
"""
from datetime import date

import pytest

from solarhub.errors import (
    AuthorizationError,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from solarhub.models.models import Invoice, Project, ProjectHistory, Reclamation, ReclamationHistory
from solarhub.services import project_workflow, reclamations
from solarhub.services.statuses import ReclamationStatus

DEADLINE = date(2025, 9, 15)
REASON = "equipment missing on site"


def _status_changes(session, project_id):
    return (
        session.query(ProjectHistory)
        .filter(ProjectHistory.project_id == project_id, ProjectHistory.change_type == "status_change")
        .order_by(ProjectHistory.id.asc())
        .all()
    )


@pytest.fixture
def reclamation(session, completed_project, crew_a, lead):
    return reclamations.create(session, completed_project.id, crew_a.id, "Inverter fault after storm", DEADLINE, lead)


@pytest.fixture
def rejected(session, reclamation, worker_a):
    return reclamations.reject(session, reclamation.id, REASON, worker_a)


class TestRoundTrip:

    def test_reject_take_accept_complete(
        self, session, completed_project, crew_a, crew_b, lead, worker_a, worker_b
    ):
        rec = reclamations.create(session, completed_project.id, crew_a.id, "Inverter fault", DEADLINE, lead)
        session.refresh(completed_project)
        assert completed_project.status == "reclamation"
        assert rec.status == "pending"
        assert rec.original_crew_id == rec.current_crew_id == crew_a.id

        rec = reclamations.reject(session, rec.id, REASON, worker_a)
        assert rec.status == "rejected"
        assert rec.current_crew_id == crew_a.id

        rec = reclamations.take(session, rec.id, worker_b)
        assert rec.status == "pending"
        assert rec.current_crew_id == crew_b.id

        rec = reclamations.accept(session, rec.id, worker_b)
        assert rec.status == "accepted"
        assert rec.accepted_by == worker_b.crew_member_id
        session.refresh(completed_project)
        assert completed_project.work_start_date == DEADLINE

        rec = reclamations.complete(session, rec.id, "Replaced inverter", worker_b)
        assert rec.status == "completed"
        assert rec.completed_notes == "Replaced inverter"
        session.refresh(completed_project)
        assert completed_project.status == "work_completed"

        changes = _status_changes(session, completed_project.id)
        assert [(c.old_value, c.new_value) for c in changes] == [
            ("work_completed", "reclamation"),
            ("reclamation", "work_completed"),
        ]
        actions = [e.action for e in reclamations.history(session, rec.id)]
        assert actions == ["rejected", "reassigned", "accepted", "completed"]

    def test_reject_reason_is_kept(self, session, rejected):
        entry = reclamations.history(session, rejected.id)[0]
        assert entry.reason == REASON
        assert entry.action_by == "worker-a"

    def test_start_then_complete(self, session, reclamation, worker_a, completed_project):
        reclamations.accept(session, reclamation.id, worker_a)
        started = reclamations.start(session, reclamation.id, worker_a)
        assert started.status == "in_progress"

        done = reclamations.complete(session, reclamation.id, None, worker_a)
        assert done.status == "completed"
        assert done.completed_at is not None
        assert [e.action for e in reclamations.history(session, reclamation.id)] == [
            "accepted", "started", "completed",
        ]


class TestCreate:

    def test_workers_cannot_create(self, session, completed_project, crew_a, worker_a):
        with pytest.raises(AuthorizationError):
            reclamations.create(session, completed_project.id, crew_a.id, "x", DEADLINE, worker_a)

    @pytest.mark.parametrize("status", ["planning", "work_in_progress", "done"])
    def test_requires_completed_project(self, session, make_project, crew_a, lead, status):
        project = make_project(status=status)
        with pytest.raises(InvalidStateTransition):
            reclamations.create(session, project.id, crew_a.id, "x", DEADLINE, lead)

    @pytest.mark.parametrize("status", ["invoiced", "send_invoice", "invoice_sent", "paid"])
    def test_allowed_after_billing_started(self, session, make_project, crew_a, lead, status):
        project = make_project(status=status)
        rec = reclamations.create(session, project.id, crew_a.id, "Loose panel", DEADLINE, lead)
        assert rec.status == "pending"
        change = _status_changes(session, project.id)[0]
        assert change.old_value == status

    def test_second_reclamation_while_one_is_open(self, session, reclamation, completed_project, crew_a, lead):
        with pytest.raises(InvalidStateTransition):
            reclamations.create(session, completed_project.id, crew_a.id, "again", DEADLINE, lead)

    def test_missing_crew(self, session, completed_project, lead):
        with pytest.raises(NotFound):
            reclamations.create(session, completed_project.id, 555, "x", DEADLINE, lead)

    def test_crew_of_another_firm(self, session, completed_project, foreign_crew, admin):
        with pytest.raises(ValidationError):
            reclamations.create(session, completed_project.id, foreign_crew.id, "x", DEADLINE, admin)

    def test_bad_deadline(self, session, completed_project, crew_a, lead):
        with pytest.raises(ValidationError):
            reclamations.create(session, completed_project.id, crew_a.id, "x", "soon", lead)

    def test_notifies_crew(self, session, completed_project, crew_a, lead, notifier):
        reclamations.create(session, completed_project.id, crew_a.id, "x", "2025-09-15", lead, notifier=notifier)
        assert notifier.calls == [(completed_project.id, crew_a.id, "reclamation_created")]


class TestIllegalTransitions:

    @pytest.mark.parametrize("reason", ["too short", "   short   ", "", "         x"])
    def test_reject_reason_minimum_length(self, session, reclamation, worker_a, reason):
        with pytest.raises(ValidationError) as exc_info:
            reclamations.reject(session, reclamation.id, reason, worker_a)
        assert exc_info.value.field == "reason"
        session.refresh(reclamation)
        assert reclamation.status == "pending"

    def test_reject_after_accept(self, session, reclamation, worker_a):
        reclamations.accept(session, reclamation.id, worker_a)
        with pytest.raises(InvalidStateTransition) as exc_info:
            reclamations.reject(session, reclamation.id, REASON, worker_a)
        assert exc_info.value.attempted == "reject"
        assert exc_info.value.current == "accepted"

    def test_reject_by_other_crew(self, session, reclamation, worker_b):
        with pytest.raises(InvalidStateTransition):
            reclamations.reject(session, reclamation.id, REASON, worker_b)

    def test_accept_pending_of_other_crew(self, session, reclamation, worker_b):
        with pytest.raises(InvalidStateTransition):
            reclamations.accept(session, reclamation.id, worker_b)

    def test_crew_cannot_take_its_own_rejection(self, session, rejected, worker_a):
        with pytest.raises(InvalidStateTransition):
            reclamations.take(session, rejected.id, worker_a)

    def test_crew_cannot_accept_its_own_rejection(self, session, rejected, worker_a):
        with pytest.raises(InvalidStateTransition):
            reclamations.accept(session, rejected.id, worker_a)

    def test_take_requires_rejected(self, session, reclamation, worker_b):
        with pytest.raises(InvalidStateTransition):
            reclamations.take(session, reclamation.id, worker_b)

    def test_complete_requires_acceptance(self, session, reclamation, worker_a):
        with pytest.raises(InvalidStateTransition):
            reclamations.complete(session, reclamation.id, None, worker_a)

    def test_completed_is_terminal(self, session, reclamation, worker_a, worker_b, lead, crew_b):
        reclamations.accept(session, reclamation.id, worker_a)
        reclamations.complete(session, reclamation.id, None, worker_a)

        with pytest.raises(InvalidStateTransition):
            reclamations.accept(session, reclamation.id, worker_a)
        with pytest.raises(InvalidStateTransition):
            reclamations.take(session, reclamation.id, worker_b)
        with pytest.raises(InvalidStateTransition):
            reclamations.reassign(session, reclamation.id, crew_b.id, lead)
        with pytest.raises(InvalidStateTransition):
            reclamations.cancel(session, reclamation.id, lead)

    def test_managers_cannot_act_as_crew(self, session, reclamation, lead):
        with pytest.raises(AuthorizationError):
            reclamations.accept(session, reclamation.id, lead)

    def test_missing_reclamation(self, session, worker_a):
        with pytest.raises(NotFound):
            reclamations.accept(session, 31337, worker_a)


class TestRetakePolicy:

    def test_original_crew_may_take_back_after_another_crew_rejects(
        self, session, rejected, worker_a, worker_b
    ):
        reclamations.take(session, rejected.id, worker_b)
        reclamations.reject(session, rejected.id, "roof too steep for our gear", worker_b)

        rec = reclamations.take(session, rejected.id, worker_a)

        assert rec.status == "pending"
        assert rec.current_crew_id == worker_a.crew_id

    def test_accept_directly_from_rejected(self, session, rejected, worker_b, crew_b):
        rec = reclamations.accept(session, rejected.id, worker_b)
        assert rec.status == "accepted"
        assert rec.current_crew_id == crew_b.id
        assert rec.original_crew_id != crew_b.id


class TestManagerOperations:

    def test_reassign(self, session, reclamation, crew_b, lead, notifier):
        rec = reclamations.reassign(
            session, reclamation.id, crew_b.id, lead, deadline="2025-10-01", notifier=notifier
        )

        assert rec.status == "pending"
        assert rec.current_crew_id == crew_b.id
        assert rec.deadline == date(2025, 10, 1)
        entry = reclamations.history(session, rec.id)[-1]
        assert entry.action == "reassigned"
        assert entry.action_by == "lead-1"
        assert notifier.kinds() == ["reclamation_reassigned"]

    def test_reassign_clears_acceptance(self, session, reclamation, crew_b, lead, worker_a):
        reclamations.accept(session, reclamation.id, worker_a)
        rec = reclamations.reassign(session, reclamation.id, crew_b.id, lead)
        assert rec.accepted_by is None
        assert rec.status == "pending"

    def test_workers_cannot_reassign(self, session, reclamation, crew_b, worker_a):
        with pytest.raises(AuthorizationError):
            reclamations.reassign(session, reclamation.id, crew_b.id, worker_a)

    def test_cancel_restores_project(self, session, reclamation, completed_project, lead):
        rec = reclamations.cancel(session, reclamation.id, lead, reason="Client withdrew the claim")

        assert rec.status == "cancelled"
        session.refresh(completed_project)
        assert completed_project.status == "work_completed"
        assert reclamations.history(session, rec.id)[-1].reason == "Client withdrew the claim"

    def test_outside_lead_cannot_cancel(self, session, reclamation, outside_lead):
        with pytest.raises(AuthorizationError):
            reclamations.cancel(session, reclamation.id, outside_lead)


class TestInvoicedProject:

    @pytest.fixture
    def invoiced(self, session, make_project, crew_a):
        def _make(status, is_paid=False):
            project = make_project(status=status, crew=crew_a, invoice_number="INV-1")
            session.add(Invoice(
                project_id=project.id,
                external_id="ext-1",
                number="INV-1",
                is_paid=is_paid,
                status="paid" if is_paid else "sent",
            ))
            session.commit()
            return project

        return _make

    def _resolve(self, session, project, crew_a, lead, worker_a):
        rec = reclamations.create(session, project.id, crew_a.id, "Loose cabling", DEADLINE, lead)
        reclamations.accept(session, rec.id, worker_a)
        reclamations.complete(session, rec.id, "Cabling fixed", worker_a)
        session.refresh(project)
        return project

    def test_fields_stay_editable_after_completion(self, session, invoiced, crew_a, lead, worker_a):
        project = self._resolve(session, invoiced("invoice_sent"), crew_a, lead, worker_a)
        assert project.status == "work_completed"
        assert project.invoice_number == "INV-1"

        updated = project_workflow.transition(session, project.id, lead, changes={"notes": "client called"})

        assert updated.notes == "client called"
        assert updated.status == "work_completed"

    def test_status_change_still_checks_invoice_number(self, session, invoiced, crew_a, lead, worker_a):
        project = self._resolve(session, invoiced("invoice_sent"), crew_a, lead, worker_a)

        with pytest.raises(ValidationError):
            project_workflow.transition(session, project.id, lead, new_status="work_in_progress")
        project_workflow.transition(session, project.id, lead, new_status="invoice_sent")

    def test_paid_project_returns_to_paid(self, session, invoiced, crew_a, lead, worker_a):
        project = self._resolve(session, invoiced("paid", is_paid=True), crew_a, lead, worker_a)

        assert project.status == "paid"
        changes = [(e.old_value, e.new_value) for e in _status_changes(session, project.id)]
        assert changes == [
            ("paid", "reclamation"),
            ("reclamation", "work_completed"),
            ("work_completed", "paid"),
        ]
        assert _status_changes(session, project.id)[-1].user_id is None

    def test_unpaid_invoice_stays_work_completed(self, session, invoiced, crew_a, lead, worker_a):
        project = self._resolve(session, invoiced("invoiced"), crew_a, lead, worker_a)
        assert project.status == "work_completed"
        assert len(_status_changes(session, project.id)) == 2

    def test_cancel_of_paid_project_returns_to_paid(self, session, invoiced, crew_a, lead):
        project = invoiced("paid", is_paid=True)
        rec = reclamations.create(session, project.id, crew_a.id, "Loose cabling", DEADLINE, lead)

        reclamations.cancel(session, rec.id, lead)

        session.refresh(project)
        assert project.status == "paid"


class TestConcurrency:

    def test_concurrent_accept_of_rejected_claim(self, session, session_factory, rejected, worker_b, worker_c):
        assert rejected.status == "rejected"
        rejected_id = rejected.id

        other = session_factory()
        try:
            reclamations.accept(other, rejected_id, worker_c)
        finally:
            other.close()

        # ``session`` still sees the claim as rejected by crew A
        with pytest.raises((ConcurrentModification, InvalidStateTransition)):
            reclamations.accept(session, rejected_id, worker_b)

        session.expire_all()
        rec = session.get(Reclamation, rejected_id)
        assert rec.current_crew_id == worker_c.crew_id
        accepted = session.query(ReclamationHistory).filter(
            ReclamationHistory.reclamation_id == rejected_id,
            ReclamationHistory.action == "accepted",
        ).count()
        assert accepted == 1

    def test_accept_loses_to_take(self, session, session_factory, rejected, worker_b, worker_c):
        assert rejected.status == "rejected"

        other = session_factory()
        try:
            reclamations.take(other, rejected.id, worker_c)
        finally:
            other.close()

        # Still legal to accept a pending claim in general, so this is a lost race
        with pytest.raises(ConcurrentModification):
            reclamations.accept(session, rejected.id, worker_b)

    def test_concurrent_accept_on_pending(self, session, session_factory, reclamation, worker_a):
        assert reclamation.status == "pending"

        other = session_factory()
        try:
            reclamations.accept(other, reclamation.id, worker_a)
        finally:
            other.close()

        with pytest.raises((ConcurrentModification, InvalidStateTransition)):
            reclamations.reject(session, reclamation.id, REASON, worker_a)

        session.expire_all()
        assert session.get(Reclamation, reclamation.id).status == "accepted"

    def test_lost_race_leaves_project_untouched(self, session, session_factory, rejected, worker_b, worker_c):
        assert rejected.status == "rejected"
        project_id = rejected.project_id
        other = session_factory()
        try:
            reclamations.accept(other, rejected.id, worker_c)
        finally:
            other.close()
        before = session.query(ProjectHistory).filter(ProjectHistory.project_id == project_id).count()

        with pytest.raises((ConcurrentModification, InvalidStateTransition)):
            reclamations.accept(session, rejected.id, worker_b)

        after = session.query(ProjectHistory).filter(ProjectHistory.project_id == project_id).count()
        assert after == before


class TestCrewPartition:

    @pytest.mark.parametrize("status", [s.value for s in ReclamationStatus])
    @pytest.mark.parametrize("owner", ["mine", "other"])
    def test_classification_is_a_partition(self, status, owner):
        crew_id, other_crew = 1, 2
        current = crew_id if owner == "mine" else other_crew

        view = reclamations.classify_for_crew(status, current, crew_id)

        if status in ("completed", "cancelled"):
            assert view is None
        elif status == "rejected":
            assert view == ("available" if owner == "other" else None)
        elif owner == "mine":
            assert view == "assigned"
        else:
            assert view is None

    def test_queries_match_classification(
        self, session, make_project, crew_a, crew_b, crew_c, lead, worker_a, worker_b
    ):
        created = []
        for _ in range(5):
            project = make_project(status="work_completed", crew=crew_a)
            created.append(reclamations.create(session, project.id, crew_a.id, "Defect", DEADLINE, lead))
        pending, accepted, rejected_by_a, taken_by_b, completed = created
        reclamations.accept(session, accepted.id, worker_a)
        reclamations.reject(session, rejected_by_a.id, REASON, worker_a)
        reclamations.reject(session, taken_by_b.id, REASON, worker_a)
        reclamations.take(session, taken_by_b.id, worker_b)
        reclamations.accept(session, completed.id, worker_a)
        reclamations.complete(session, completed.id, None, worker_a)

        for crew in (crew_a, crew_b, crew_c):
            actionable = reclamations.actionable_for_crew(session, crew.id)
            assigned = {r.id for r in actionable["assigned"]}
            available = {r.id for r in actionable["available"]}
            assert assigned.isdisjoint(available)

            all_recs = session.query(Reclamation).all()
            expected_assigned = {
                r.id for r in all_recs if reclamations.classify_for_crew(r.status, r.current_crew_id, crew.id) == "assigned"
            }
            expected_available = {
                r.id for r in all_recs if reclamations.classify_for_crew(r.status, r.current_crew_id, crew.id) == "available"
            }
            assert assigned == expected_assigned
            assert available == expected_available

        mine = reclamations.actionable_for_crew(session, crew_a.id)
        assert {r.id for r in mine["assigned"]} == {pending.id, accepted.id}
        assert mine["available"] == []
        assert {r.id for r in reclamations.available_for_crew(session, crew_c.id)} == {rejected_by_a.id}

    def test_available_is_scoped_to_the_firm(self, session, rejected, foreign_crew):
        assert reclamations.available_for_crew(session, foreign_crew.id) == []


class TestReadSide:

    def test_list_for_firm_filters_status(self, session, reclamation, rejected, firm):
        assert [r.id for r in reclamations.list_for_firm(session, firm.id, "rejected")] == [rejected.id]
        assert reclamations.list_for_firm(session, firm.id, "pending") == []
        with pytest.raises(ValidationError):
            reclamations.list_for_firm(session, firm.id, "lost")

    def test_list_for_project(self, session, reclamation, completed_project):
        assert [r.id for r in reclamations.list_for_project(session, completed_project.id)] == [reclamation.id]

    def test_to_dict(self, session, reclamation):
        data = reclamations.reclamation_to_dict(reclamation)
        assert data["status_label"] == "Pending"
        assert data["deadline"] == "2025-09-15"

    def test_project_is_in_reclamation_while_open(self, session, reclamation):
        assert session.get(Project, reclamation.project_id).status == "reclamation"
