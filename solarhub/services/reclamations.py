"""
Reclamation (defect claim) workflow.

    pending --accept--> accepted --start--> in_progress --complete--> completed
       |                   |                                  ^
       +--reject--> rejected --take--> pending                |
                        +--accept (another crew)--> accepted -+

Admins and project leads open, reassign and cancel claims; crew workers
accept, reject, take, start and complete them. Every transition is a
conditional update on (status, current_crew_id), so concurrent callers
cannot both win.
"""
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import compare_and_swap, transaction
from ..errors import ConcurrentModification, InvalidStateTransition, NotFound, ValidationError
from ..models.models import Crew, Reclamation, ReclamationHistory, utcnow
from .notifications import (
    RECLAMATION_ACCEPTED,
    RECLAMATION_CREATED,
    RECLAMATION_REASSIGNED,
    Notifier,
    notify_safely,
)
from .permissions import SYSTEM_ACTOR, Actor, ensure_crew_worker, ensure_firm_access, ensure_manager
from .project_workflow import active_invoice, apply_changes, get_project, record_payment
from .statuses import (
    ACTIVE_RECLAMATION_STATUSES,
    COMPLETED_LIKE,
    TERMINAL_RECLAMATION_STATUSES,
    ProjectStatus,
    ReclamationStatus,
    parse_project_status,
    reclamation_status_label,
)

log = structlog.get_logger(__name__)

ASSIGNED = "assigned"
AVAILABLE = "available"

_ACTIVE = frozenset(s.value for s in ACTIVE_RECLAMATION_STATUSES)
_TERMINAL = frozenset(s.value for s in TERMINAL_RECLAMATION_STATUSES)
_OPEN = frozenset(s.value for s in ReclamationStatus) - _TERMINAL


def get_reclamation(db: Session, reclamation_id: int) -> Reclamation:
    reclamation = db.get(Reclamation, reclamation_id)
    if reclamation is None:
        raise NotFound("Reclamation", reclamation_id)
    return reclamation


def classify_for_crew(status: str, current_crew_id: Optional[int], crew_id: int) -> Optional[str]:
    """
    Where a reclamation sits from one crew's point of view.

    Returns ``"assigned"`` for the crew's own open work, ``"available"`` for a
    claim another crew rejected, and None for everything else (terminal claims,
    other crews' work, and the crew's own rejections).
    """
    if status in _ACTIVE and current_crew_id == crew_id:
        return ASSIGNED
    if status == ReclamationStatus.REJECTED.value and current_crew_id != crew_id:
        return AVAILABLE
    return None


def _coerce_deadline(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"Invalid deadline: {value!r}", field="deadline")


def _crew_in_firm(db: Session, crew_id: int, firm_id: int) -> Crew:
    crew = db.get(Crew, crew_id)
    if crew is None:
        raise NotFound("Crew", crew_id)
    if crew.firm_id != firm_id:
        raise ValidationError(f"Crew {crew_id} does not belong to firm {firm_id}", field="crew_id")
    return crew


def _require_status(reclamation: Reclamation, operation: str, allowed: Iterable[str]) -> None:
    if reclamation.status not in allowed:
        raise InvalidStateTransition("Reclamation", operation, reclamation.status)


def _require_current_crew(reclamation: Reclamation, operation: str, crew_id: int) -> None:
    if reclamation.current_crew_id != crew_id:
        raise InvalidStateTransition(
            "Reclamation",
            operation,
            reclamation.status,
            message=f"Reclamation {reclamation.id} is assigned to another crew",
        )


def _swap(
    db: Session,
    reclamation: Reclamation,
    operation: str,
    allowed: Iterable[str],
    values: Dict[str, Any],
) -> None:
    """Apply ``values`` only if status and current crew are still what we read."""
    expected = {"status": reclamation.status, "current_crew_id": reclamation.current_crew_id}
    values = dict(values, updated_at=utcnow())
    if compare_and_swap(db, Reclamation, reclamation.id, expected, values):
        return
    db.expire(reclamation)
    if db.query(Reclamation.id).filter(Reclamation.id == reclamation.id).first() is None:
        raise NotFound("Reclamation", reclamation.id)
    db.refresh(reclamation)
    if reclamation.status not in allowed:
        raise InvalidStateTransition("Reclamation", operation, reclamation.status)
    raise ConcurrentModification("Reclamation", reclamation.id, expected)


def _log_action(
    db: Session,
    reclamation: Reclamation,
    action: str,
    actor: Actor,
    crew_id: Optional[int],
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> ReclamationHistory:
    entry = ReclamationHistory(
        reclamation_id=reclamation.id,
        action=action,
        action_by=actor.id,
        action_by_member=actor.crew_member_id,
        crew_id=crew_id,
        reason=reason,
        notes=notes,
    )
    db.add(entry)
    db.flush()
    return entry


def _restore_project(db: Session, reclamation: Reclamation, actor: Actor, reason: str) -> None:
    """
    Return the project to ``work_completed``, then to ``paid`` if its invoice
    has been paid.
    """
    project = get_project(db, reclamation.project_id)
    if project.status != ProjectStatus.RECLAMATION.value:
        return
    apply_changes(
        db,
        project,
        actor,
        {"status": {"before": project.status, "after": ProjectStatus.WORK_COMPLETED.value}},
        reason=reason,
    )
    paid_invoice = active_invoice(db, project.id, paid=True)
    if paid_invoice is None:
        return
    db.refresh(project)
    record_payment(
        db,
        project,
        paid_invoice,
        SYSTEM_ACTOR,
        reason=f"invoice {paid_invoice.number} is paid",
    )


def create(
    db: Session,
    project_id: int,
    crew_id: int,
    description: str,
    deadline: Any,
    actor: Actor,
    notifier: Optional[Notifier] = None,
) -> Reclamation:
    """
    Open a reclamation against a completed project and route it to a crew.

    The project moves to ``reclamation``; its history records the status it
    had before.
    """
    project = get_project(db, project_id)
    ensure_manager(actor, project.firm_id)
    description = (description or "").strip()
    if not description:
        raise ValidationError("Description is required", field="description")
    deadline = _coerce_deadline(deadline)
    _crew_in_firm(db, crew_id, project.firm_id)
    if parse_project_status(project.status) not in COMPLETED_LIKE:
        raise InvalidStateTransition("Project", "open a reclamation for", project.status)

    prior_status = project.status
    with transaction(db):
        reclamation = Reclamation(
            project_id=project.id,
            firm_id=project.firm_id,
            description=description,
            deadline=deadline,
            status=ReclamationStatus.PENDING.value,
            original_crew_id=crew_id,
            current_crew_id=crew_id,
            created_by=actor.id,
        )
        db.add(reclamation)
        db.flush()
        apply_changes(
            db,
            project,
            actor,
            {"status": {"before": prior_status, "after": ProjectStatus.RECLAMATION.value}},
            reason=f"reclamation #{reclamation.id} opened",
        )
    db.refresh(reclamation)

    log.info(
        "reclamation.created",
        reclamation_id=reclamation.id,
        project_id=project.id,
        crew_id=crew_id,
        prior_status=prior_status,
    )
    notify_safely(notifier, project.id, crew_id, RECLAMATION_CREATED, {
        "reclamation_id": reclamation.id,
        "deadline": deadline.isoformat(),
    })
    return reclamation


def accept(db: Session, reclamation_id: int, actor: Actor, notifier: Optional[Notifier] = None) -> Reclamation:
    """
    Accept a pending claim of the actor's crew, or one rejected by another crew.

    Puts the repair on the crew's calendar by moving the project's work start
    date to the reclamation deadline.
    """
    crew_id = ensure_crew_worker(actor)
    reclamation = get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    allowed = (ReclamationStatus.PENDING.value, ReclamationStatus.REJECTED.value)
    _require_status(reclamation, "accept", allowed)
    if reclamation.status == ReclamationStatus.PENDING.value:
        _require_current_crew(reclamation, "accept", crew_id)
    elif reclamation.current_crew_id == crew_id:
        raise InvalidStateTransition(
            "Reclamation",
            "accept",
            reclamation.status,
            message="A crew cannot accept a reclamation it rejected",
        )

    with transaction(db):
        now = utcnow()
        _swap(db, reclamation, "accept", allowed, {
            "status": ReclamationStatus.ACCEPTED.value,
            "current_crew_id": crew_id,
            "accepted_by": actor.crew_member_id,
            "accepted_at": now,
        })
        _log_action(db, reclamation, "accepted", actor, crew_id)
        project = get_project(db, reclamation.project_id)
        if project.work_start_date != reclamation.deadline:
            apply_changes(
                db,
                project,
                actor,
                {"work_start_date": {"before": project.work_start_date, "after": reclamation.deadline}},
                reason=f"reclamation #{reclamation.id} accepted",
            )
    db.refresh(reclamation)

    log.info("reclamation.accepted", reclamation_id=reclamation.id, crew_id=crew_id, actor_id=actor.id)
    notify_safely(notifier, reclamation.project_id, crew_id, RECLAMATION_ACCEPTED, {
        "reclamation_id": reclamation.id,
        "deadline": reclamation.deadline.isoformat(),
    })
    return reclamation


def reject(db: Session, reclamation_id: int, reason: str, actor: Actor) -> Reclamation:
    crew_id = ensure_crew_worker(actor)
    reason = (reason or "").strip()
    if len(reason) < settings.reclamation_reject_min_chars:
        raise ValidationError(
            f"Rejection reason must be at least {settings.reclamation_reject_min_chars} characters",
            field="reason",
        )
    reclamation = get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    allowed = (ReclamationStatus.PENDING.value,)
    _require_status(reclamation, "reject", allowed)
    _require_current_crew(reclamation, "reject", crew_id)

    # current_crew_id stays: it records who rejected the claim
    with transaction(db):
        _swap(db, reclamation, "reject", allowed, {"status": ReclamationStatus.REJECTED.value})
        _log_action(db, reclamation, "rejected", actor, crew_id, reason=reason)
    db.refresh(reclamation)

    log.info("reclamation.rejected", reclamation_id=reclamation.id, crew_id=crew_id, actor_id=actor.id)
    return reclamation


def take(db: Session, reclamation_id: int, actor: Actor) -> Reclamation:
    """Take over a claim another crew rejected; it becomes pending for the actor's crew."""
    crew_id = ensure_crew_worker(actor)
    reclamation = get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    allowed = (ReclamationStatus.REJECTED.value,)
    _require_status(reclamation, "take", allowed)
    if reclamation.current_crew_id == crew_id:
        raise InvalidStateTransition(
            "Reclamation",
            "take",
            reclamation.status,
            message="A crew cannot take a reclamation it rejected",
        )

    previous_crew_id = reclamation.current_crew_id
    with transaction(db):
        _swap(db, reclamation, "take", allowed, {
            "status": ReclamationStatus.PENDING.value,
            "current_crew_id": crew_id,
            "accepted_by": None,
            "accepted_at": None,
        })
        _log_action(db, reclamation, "reassigned", actor, crew_id, notes=f"Taken over from crew {previous_crew_id}")
    db.refresh(reclamation)

    log.info(
        "reclamation.taken",
        reclamation_id=reclamation.id,
        from_crew_id=previous_crew_id,
        crew_id=crew_id,
    )
    return reclamation


def start(db: Session, reclamation_id: int, actor: Actor) -> Reclamation:
    crew_id = ensure_crew_worker(actor)
    reclamation = get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    allowed = (ReclamationStatus.ACCEPTED.value,)
    _require_status(reclamation, "start", allowed)
    _require_current_crew(reclamation, "start", crew_id)

    with transaction(db):
        _swap(db, reclamation, "start", allowed, {"status": ReclamationStatus.IN_PROGRESS.value})
        _log_action(db, reclamation, "started", actor, crew_id)
    db.refresh(reclamation)

    log.info("reclamation.started", reclamation_id=reclamation.id, crew_id=crew_id)
    return reclamation


def complete(db: Session, reclamation_id: int, notes: Optional[str], actor: Actor) -> Reclamation:
    """Finish the repair; the project returns to ``work_completed`` (or ``paid``, once invoiced and paid)."""
    crew_id = ensure_crew_worker(actor)
    reclamation = get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    allowed = (ReclamationStatus.ACCEPTED.value, ReclamationStatus.IN_PROGRESS.value)
    _require_status(reclamation, "complete", allowed)
    _require_current_crew(reclamation, "complete", crew_id)
    notes = (notes or "").strip() or None

    with transaction(db):
        _swap(db, reclamation, "complete", allowed, {
            "status": ReclamationStatus.COMPLETED.value,
            "completed_at": utcnow(),
            "completed_notes": notes,
        })
        _log_action(db, reclamation, "completed", actor, crew_id, notes=notes)
        _restore_project(db, reclamation, actor, reason=f"reclamation #{reclamation.id} completed")
    db.refresh(reclamation)

    log.info("reclamation.completed", reclamation_id=reclamation.id, crew_id=crew_id, actor_id=actor.id)
    return reclamation


def reassign(
    db: Session,
    reclamation_id: int,
    crew_id: int,
    actor: Actor,
    deadline: Any = None,
    description: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Reclamation:
    """Route an open claim to another crew; it starts over as pending."""
    reclamation = get_reclamation(db, reclamation_id)
    ensure_manager(actor, reclamation.firm_id)
    _require_status(reclamation, "reassign", _OPEN)
    _crew_in_firm(db, crew_id, reclamation.firm_id)

    values: Dict[str, Any] = {
        "status": ReclamationStatus.PENDING.value,
        "current_crew_id": crew_id,
        "accepted_by": None,
        "accepted_at": None,
    }
    if deadline is not None:
        values["deadline"] = _coerce_deadline(deadline)
    if description is not None:
        description = description.strip()
        if not description:
            raise ValidationError("Description cannot be empty", field="description")
        values["description"] = description

    previous_crew_id = reclamation.current_crew_id
    with transaction(db):
        _swap(db, reclamation, "reassign", _OPEN, values)
        _log_action(
            db,
            reclamation,
            "reassigned",
            actor,
            crew_id,
            notes=f"Reassigned from crew {previous_crew_id}",
        )
    db.refresh(reclamation)

    log.info(
        "reclamation.reassigned",
        reclamation_id=reclamation.id,
        from_crew_id=previous_crew_id,
        crew_id=crew_id,
        actor_id=actor.id,
    )
    notify_safely(notifier, reclamation.project_id, crew_id, RECLAMATION_REASSIGNED, {
        "reclamation_id": reclamation.id,
        "deadline": reclamation.deadline.isoformat(),
    })
    return reclamation


def cancel(db: Session, reclamation_id: int, actor: Actor, reason: Optional[str] = None) -> Reclamation:
    reclamation = get_reclamation(db, reclamation_id)
    ensure_manager(actor, reclamation.firm_id)
    _require_status(reclamation, "cancel", _OPEN)
    reason = (reason or "").strip() or None

    with transaction(db):
        _swap(db, reclamation, "cancel", _OPEN, {"status": ReclamationStatus.CANCELLED.value})
        _log_action(db, reclamation, "cancelled", actor, reclamation.current_crew_id, reason=reason)
        _restore_project(db, reclamation, actor, reason=f"reclamation #{reclamation.id} cancelled")
    db.refresh(reclamation)

    log.info("reclamation.cancelled", reclamation_id=reclamation.id, actor_id=actor.id)
    return reclamation


# Read side


def assigned_for_crew(db: Session, crew_id: int) -> List[Reclamation]:
    return (
        db.query(Reclamation)
        .filter(
            Reclamation.current_crew_id == crew_id,
            Reclamation.status.in_(_ACTIVE),
        )
        .order_by(Reclamation.deadline.asc(), Reclamation.id.asc())
        .all()
    )


def available_for_crew(db: Session, crew_id: int) -> List[Reclamation]:
    """Claims rejected by other crews of the same firm."""
    crew = db.get(Crew, crew_id)
    if crew is None:
        raise NotFound("Crew", crew_id)
    return (
        db.query(Reclamation)
        .filter(
            Reclamation.firm_id == crew.firm_id,
            Reclamation.status == ReclamationStatus.REJECTED.value,
            Reclamation.current_crew_id != crew_id,
        )
        .order_by(Reclamation.deadline.asc(), Reclamation.id.asc())
        .all()
    )


def actionable_for_crew(db: Session, crew_id: int) -> Dict[str, List[Reclamation]]:
    return {
        ASSIGNED: assigned_for_crew(db, crew_id),
        AVAILABLE: available_for_crew(db, crew_id),
    }


def history(db: Session, reclamation_id: int) -> List[ReclamationHistory]:
    get_reclamation(db, reclamation_id)
    return (
        db.query(ReclamationHistory)
        .filter(ReclamationHistory.reclamation_id == reclamation_id)
        .order_by(ReclamationHistory.created_at.asc(), ReclamationHistory.id.asc())
        .all()
    )


def list_for_project(db: Session, project_id: int) -> List[Reclamation]:
    return (
        db.query(Reclamation)
        .filter(Reclamation.project_id == project_id)
        .order_by(Reclamation.created_at.desc(), Reclamation.id.desc())
        .all()
    )


def list_for_firm(db: Session, firm_id: int, status: Optional[str] = None) -> List[Reclamation]:
    query = db.query(Reclamation).filter(Reclamation.firm_id == firm_id)
    if status:
        try:
            status = ReclamationStatus(status).value
        except ValueError:
            raise ValidationError(f"Invalid reclamation status '{status}'", field="status")
        query = query.filter(Reclamation.status == status)
    return query.order_by(Reclamation.created_at.desc(), Reclamation.id.desc()).all()


def reclamation_to_dict(reclamation: Reclamation) -> Dict[str, Any]:
    return {
        "id": reclamation.id,
        "project_id": reclamation.project_id,
        "firm_id": reclamation.firm_id,
        "description": reclamation.description,
        "deadline": reclamation.deadline.isoformat() if reclamation.deadline else None,
        "status": reclamation.status,
        "status_label": reclamation_status_label(reclamation.status),
        "original_crew_id": reclamation.original_crew_id,
        "current_crew_id": reclamation.current_crew_id,
        "created_by": reclamation.created_by,
        "accepted_by": reclamation.accepted_by,
        "accepted_at": reclamation.accepted_at.isoformat() if reclamation.accepted_at else None,
        "completed_at": reclamation.completed_at.isoformat() if reclamation.completed_at else None,
        "completed_notes": reclamation.completed_notes,
        "created_at": reclamation.created_at.isoformat() if reclamation.created_at else None,
    }


def history_entry_to_dict(entry: ReclamationHistory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "action_by": entry.action_by,
        "action_by_member": entry.action_by_member,
        "crew_id": entry.crew_id,
        "reason": entry.reason,
        "notes": entry.notes,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
