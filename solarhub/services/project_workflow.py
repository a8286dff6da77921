"""
Project state machine.

Every accepted call changes the project row, appends one history entry per
changed field and (for crew assignments) captures a crew snapshot, all inside
a single transaction. Notifications go out only after the commit.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import compare_and_swap, transaction
from ..errors import (
    AuthorizationError,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from ..models.models import Crew, Firm, Invoice, Project, ProjectHistory, ProjectNote, utcnow
from . import history
from .crew_snapshots import capture_snapshot, describe_assignment
from .invoice_provider import InvoiceProvider
from .notifications import (
    CREW_ASSIGNED,
    EQUIPMENT_ARRIVED,
    EQUIPMENT_DATE_CHANGED,
    WORK_DATES_CHANGED,
    Notifier,
    notify_safely,
)
from .permissions import Actor, ensure_firm_access, ensure_manager, is_admin
from .statuses import (
    ChangeType,
    ProjectStatus,
    is_invoiced_or_later,
    parse_project_status,
    project_status_label,
)

log = structlog.get_logger(__name__)

DATE_FIELDS = ("equipment_expected_date", "equipment_arrived_date", "work_start_date", "work_end_date")
CALL_FLAGS = ("needs_call_for_equipment_delay", "needs_call_for_crew_delay", "needs_call_for_date_change")
TEXT_FIELDS = (
    "notes",
    "installation_person_first_name",
    "installation_person_last_name",
    "installation_person_address",
    "installation_person_phone",
    "installation_person_unique_id",
    "invoice_number",
    "invoice_url",
)
MUTABLE_FIELDS = frozenset(("crew_id",) + DATE_FIELDS + CALL_FLAGS + TEXT_FIELDS)

FIELD_LABELS = {
    "status": "Status",
    "crew_id": "Crew",
    "equipment_expected_date": "Expected equipment date",
    "equipment_arrived_date": "Equipment arrival date",
    "work_start_date": "Work start date",
    "work_end_date": "Work end date",
    "needs_call_for_equipment_delay": "Call needed for equipment delay",
    "needs_call_for_crew_delay": "Call needed for crew delay",
    "needs_call_for_date_change": "Call needed for date change",
    "notes": "Notes",
    "invoice_number": "Invoice number",
    "invoice_url": "Invoice link",
}

NOTE_PRIORITIES = ("normal", "important", "urgent", "critical")

ACTIVITY_CHANGE_TYPES = frozenset({
    ChangeType.FILE_ADDED,
    ChangeType.FILE_DELETED,
    ChangeType.REPORT_ADDED,
    ChangeType.REPORT_UPDATED,
    ChangeType.REPORT_DELETED,
})


def change_type_for(field_name: str) -> ChangeType:
    if field_name == "status":
        return ChangeType.STATUS_CHANGE
    if field_name in ("equipment_expected_date", "equipment_arrived_date"):
        return ChangeType.EQUIPMENT_UPDATE
    if field_name in ("work_start_date", "work_end_date"):
        return ChangeType.DATE_UPDATE
    if field_name == "crew_id":
        return ChangeType.ASSIGNMENT_CHANGE
    if field_name in CALL_FLAGS:
        return ChangeType.CALL_UPDATE
    return ChangeType.INFO_UPDATE


def get_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFound("Project", project_id)
    return project


def get_firm(db: Session, firm_id: int) -> Firm:
    firm = db.get(Firm, firm_id)
    if firm is None:
        raise NotFound("Firm", firm_id)
    return firm


def _coerce_date(field_name: str, value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"Invalid date for {field_name}: {value!r}", field=field_name)


def _coerce(field_name: str, value: Any) -> Any:
    if field_name not in MUTABLE_FIELDS:
        raise ValidationError(f"Field '{field_name}' cannot be changed", field=field_name)
    if field_name in DATE_FIELDS:
        return _coerce_date(field_name, value)
    if field_name in CALL_FLAGS:
        if not isinstance(value, bool):
            raise ValidationError(f"{field_name} must be true or false", field=field_name)
        return value
    if field_name == "crew_id":
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValidationError("crew_id must be an integer", field="crew_id")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError("crew_id must be an integer", field="crew_id")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _ensure_crew_in_firm(db: Session, crew_id: int, firm_id: int) -> Crew:
    crew = db.get(Crew, crew_id)
    if crew is None:
        raise NotFound("Crew", crew_id)
    if crew.firm_id != firm_id:
        raise ValidationError(f"Crew {crew_id} does not belong to firm {firm_id}", field="crew_id")
    return crew


def _describe(field_name: str, before: Any, after: Any) -> str:
    label = FIELD_LABELS.get(field_name, field_name.replace("_", " ").capitalize())
    if field_name == "status":
        return f"{label} changed from {project_status_label(before)} to {project_status_label(after)}"
    if field_name == "crew_id" and after is None:
        return "Crew unassigned"
    if field_name in CALL_FLAGS:
        return f"{label}: {'yes' if after else 'no'}"
    old_text = history.stringify(before)
    new_text = history.stringify(after)
    if old_text is None:
        return f"{label} set to {new_text}"
    if new_text is None:
        return f"{label} cleared (was {old_text})"
    return f"{label} changed from {old_text} to {new_text}"


def apply_changes(
    db: Session,
    project: Project,
    actor: Actor,
    diff: Dict[str, Dict[str, Any]],
    reason: Optional[str] = None,
) -> List[ProjectHistory]:
    """
    Write ``diff`` to the project row and log it, inside the caller's transaction.

    The row update only applies while the project still has the status read by
    the caller and every changed field still holds its ``before`` value. A
    crew assignment captures a snapshot before its history entry is written.

    Args:
        db: Database session (the caller owns the transaction)
        project: Project as read at the start of the operation
        actor: Who is making the change
        diff: ``{field: {"before": old, "after": new}}`` of effective changes
        reason: Optional cause appended to every description

    Returns:
        The history entries written, in field order
    """
    expected = {"status": project.status}
    expected.update((name, change["before"]) for name, change in diff.items())
    values = {name: change["after"] for name, change in diff.items()}
    values["updated_at"] = utcnow()
    if not compare_and_swap(db, Project, project.id, expected, values):
        if db.query(Project.id).filter(Project.id == project.id).first() is None:
            raise NotFound("Project", project.id)
        raise ConcurrentModification("Project", project.id, expected)

    entries = []
    for field_name, change in diff.items():
        snapshot_id = None
        if field_name == "crew_id" and change["after"] is not None:
            snapshot = capture_snapshot(db, project.id, change["after"], actor)
            snapshot_id = snapshot.id
            description = describe_assignment(snapshot)
        else:
            description = _describe(field_name, change["before"], change["after"])
        if reason:
            description = f"{description} ({reason})"
        entries.append(history.append(
            db,
            project.id,
            actor.id,
            change_type_for(field_name),
            description,
            field_name=field_name,
            old_value=change["before"],
            new_value=change["after"],
            snapshot_id=snapshot_id,
        ))
    return entries


def _notify_changes(notifier: Optional[Notifier], project: Project, diff: Dict[str, Dict[str, Any]]) -> None:
    crew_change = diff.get("crew_id")
    if crew_change and crew_change["after"] is not None:
        notify_safely(notifier, project.id, crew_change["after"], CREW_ASSIGNED)
    if "work_start_date" in diff or "work_end_date" in diff:
        notify_safely(notifier, project.id, project.crew_id, WORK_DATES_CHANGED, {
            "work_start_date": history.stringify(project.work_start_date),
            "work_end_date": history.stringify(project.work_end_date),
        })
    if "equipment_expected_date" in diff:
        notify_safely(notifier, project.id, project.crew_id, EQUIPMENT_DATE_CHANGED, {
            "equipment_expected_date": history.stringify(project.equipment_expected_date),
        })
    arrived = diff.get("equipment_arrived_date")
    if arrived and arrived["after"] is not None:
        notify_safely(notifier, project.id, project.crew_id, EQUIPMENT_ARRIVED, {
            "equipment_arrived_date": history.stringify(arrived["after"]),
        })


def transition(
    db: Session,
    project_id: int,
    actor: Actor,
    new_status: Optional[str] = None,
    changes: Optional[Dict[str, Any]] = None,
    notifier: Optional[Notifier] = None,
) -> Project:
    """
    Change a project's status and/or fields.

    Raises:
        NotFound: project (or assigned crew) does not exist
        ValidationError: unknown status, unknown field or bad value
        AuthorizationError: no access to the firm, or a non-admin setting ``paid``
        InvalidStateTransition: entering or leaving ``reclamation`` directly
        ConcurrentModification: the status changed since it was read
    """
    project = get_project(db, project_id)
    ensure_firm_access(actor, project.firm_id)

    proposed: Dict[str, Any] = {}
    if new_status is not None:
        status = parse_project_status(new_status)
        if status is None:
            raise ValidationError(f"Invalid status '{new_status}'", field="status")
        if status == ProjectStatus.PAID and not is_admin(actor):
            raise AuthorizationError("Only admins can mark a project as paid")
        proposed["status"] = status.value
    for field_name, value in (changes or {}).items():
        proposed[field_name] = _coerce(field_name, value)

    current = {field_name: getattr(project, field_name) for field_name in proposed}
    diff = history.compute_diff(current, proposed)
    if not diff:
        return project

    if "status" in diff and ProjectStatus.RECLAMATION.value in (project.status, diff["status"]["after"]):
        raise InvalidStateTransition(
            "Project",
            f"change status to '{diff['status']['after']}'",
            project.status,
            message="The reclamation status is only entered and left through the reclamation workflow",
        )

    # Projects keep their invoice number through a reclamation; checked only
    # when status or invoice_number changes
    resulting_status = proposed.get("status", project.status)
    resulting_invoice = proposed["invoice_number"] if "invoice_number" in proposed else project.invoice_number
    touches_invoice = "status" in diff or "invoice_number" in diff
    if touches_invoice and resulting_invoice and not is_invoiced_or_later(resulting_status):
        raise ValidationError(
            f"An invoice number requires status '{ProjectStatus.INVOICED.value}' or later",
            field="invoice_number",
        )

    crew_change = diff.get("crew_id")
    if crew_change and crew_change["after"] is not None:
        _ensure_crew_in_firm(db, crew_change["after"], project.firm_id)

    previous_status = project.status
    with transaction(db):
        apply_changes(db, project, actor, diff)
    db.refresh(project)

    log.info(
        "project.transition",
        project_id=project.id,
        actor_id=actor.id,
        from_status=previous_status,
        to_status=project.status,
        fields=sorted(diff),
    )
    _notify_changes(notifier, project, diff)
    return project


def create_project(
    db: Session,
    actor: Actor,
    firm_id: int,
    notifier: Optional[Notifier] = None,
    **fields,
) -> Project:
    """Create a project in ``planning``, optionally with a crew already assigned."""
    ensure_manager(actor, firm_id)
    get_firm(db, firm_id)

    client_id = fields.pop("client_id", None)
    lead_id = fields.pop("lead_id", None) or actor.id
    if not lead_id:
        raise ValidationError("A project lead is required", field="lead_id")
    values = {}
    for field_name, value in fields.items():
        if field_name in ("invoice_number", "invoice_url"):
            raise ValidationError(f"Field '{field_name}' cannot be set on a new project", field=field_name)
        values[field_name] = _coerce(field_name, value)
    crew_id = values.pop("crew_id", None)
    if crew_id is not None:
        _ensure_crew_in_firm(db, crew_id, firm_id)

    with transaction(db):
        project = Project(
            firm_id=firm_id,
            client_id=client_id,
            lead_id=lead_id,
            status=ProjectStatus.PLANNING.value,
            **values,
        )
        db.add(project)
        db.flush()
        history.append(db, project.id, actor.id, ChangeType.CREATED, "Project created")
        if crew_id is not None:
            apply_changes(db, project, actor, {"crew_id": {"before": None, "after": crew_id}})
    db.refresh(project)

    log.info("project.created", project_id=project.id, firm_id=firm_id, actor_id=actor.id)
    if crew_id is not None:
        notify_safely(notifier, project.id, crew_id, CREW_ASSIGNED)
    return project


def add_note(db: Session, project_id: int, actor: Actor, content: str, priority: str = "normal") -> ProjectNote:
    project = get_project(db, project_id)
    ensure_firm_access(actor, project.firm_id)
    content = (content or "").strip()
    if not content:
        raise ValidationError("Note content is required", field="content")
    if priority not in NOTE_PRIORITIES:
        raise ValidationError(f"Invalid note priority '{priority}'", field="priority")

    with transaction(db):
        note = ProjectNote(project_id=project.id, user_id=actor.id, content=content, priority=priority)
        db.add(note)
        db.flush()
        preview = content if len(content) <= 80 else content[:77] + "..."
        history.append(
            db,
            project.id,
            actor.id,
            ChangeType.NOTE_ADDED,
            f"Note added: {preview}",
            note_id=note.id,
        )
    db.refresh(note)
    return note


def record_activity(
    db: Session,
    project_id: int,
    actor: Actor,
    change_type: str,
    description: str,
    field_name: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
) -> ProjectHistory:
    """Log a file or report change made by a collaborating service."""
    project = get_project(db, project_id)
    ensure_firm_access(actor, project.firm_id)
    try:
        kind = ChangeType(change_type)
    except ValueError:
        raise ValidationError(f"Unknown change type '{change_type}'", field="change_type")
    if kind not in ACTIVITY_CHANGE_TYPES:
        raise ValidationError(f"'{kind.value}' is not a file or report activity", field="change_type")
    if not description or not description.strip():
        raise ValidationError("Description is required", field="description")

    with transaction(db):
        entry = history.append(
            db,
            project.id,
            actor.id,
            kind,
            description.strip(),
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
        )
    return entry


def active_invoice(db: Session, project_id: int, paid: Optional[bool] = None) -> Optional[Invoice]:
    """The project's non-cancelled invoice, if any; ``paid`` narrows to paid or unpaid ones."""
    query = db.query(Invoice).filter(Invoice.project_id == project_id, Invoice.status != "cancelled")
    if paid is not None:
        query = query.filter(Invoice.is_paid.is_(paid))
    return query.order_by(Invoice.id.desc()).first()


def _validate_line_items(line_items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    items = list(line_items or [])
    if not items:
        raise ValidationError("At least one line item is required", field="line_items")
    payload_items = []
    for index, item in enumerate(items):
        description = str(item.get("description") or "").strip()
        if not description:
            raise ValidationError(f"Line item {index + 1} needs a description", field="line_items")
        try:
            quantity = Decimal(str(item.get("quantity", 1)))
            unit_price = Decimal(str(item.get("unit_price")))
        except ArithmeticError:
            raise ValidationError(f"Line item {index + 1} has an invalid quantity or price", field="line_items")
        if quantity <= 0 or unit_price < 0:
            raise ValidationError(f"Line item {index + 1} has an invalid quantity or price", field="line_items")
        payload_items.append({
            "product_key": item.get("product_key") or description[:50],
            "notes": description,
            "quantity": float(quantity),
            "cost": float(unit_price),
        })
    return payload_items


def create_invoice(
    db: Session,
    project_id: int,
    actor: Actor,
    provider: InvoiceProvider,
    line_items: Iterable[Dict[str, Any]],
) -> Invoice:
    """
    Issue an invoice through the provider and move the project to ``invoiced``.

    The provider is called first; if it fails nothing is written locally.
    """
    project = get_project(db, project_id)
    ensure_manager(actor, project.firm_id)

    existing = active_invoice(db, project.id)
    if existing is not None:
        raise InvalidStateTransition(
            "Project",
            "create invoice for",
            project.status,
            message=f"Project already has invoice {existing.number}",
        )
    if project.status != ProjectStatus.WORK_COMPLETED.value:
        raise InvalidStateTransition("Project", "create invoice for", project.status)

    today = date.today()
    payload = {
        "client_id": str(project.client_id) if project.client_id is not None else None,
        "po_number": str(project.id),
        "date": today.isoformat(),
        "due_date": (today + timedelta(days=settings.invoice_due_days)).isoformat(),
        "line_items": _validate_line_items(line_items),
    }
    created = provider.create_invoice(payload)

    with transaction(db):
        invoice = Invoice(
            project_id=project.id,
            external_id=created.id,
            number=created.number,
            invoice_date=created.invoice_date or today,
            due_date=created.due_date,
            total_amount=created.amount,
            is_paid=False,
            status="draft",
        )
        db.add(invoice)
        db.flush()
        proposed = {
            "status": ProjectStatus.INVOICED.value,
            "invoice_number": created.number,
            "invoice_url": provider.invoice_url(created.id),
        }
        current = {field_name: getattr(project, field_name) for field_name in proposed}
        apply_changes(db, project, actor, history.compute_diff(current, proposed))
    db.refresh(invoice)

    log.info(
        "invoice.created",
        project_id=project.id,
        invoice_id=invoice.id,
        external_id=invoice.external_id,
        number=invoice.number,
    )
    return invoice


def record_payment(db: Session, project: Project, invoice: Invoice, actor: Actor, reason: str) -> None:
    """
    Reflect a paid invoice on its project, inside the caller's transaction.

    A project under reclamation keeps its status and the payment is only
    logged; it moves to ``paid`` when the reclamation is resolved.
    """
    if project.status == ProjectStatus.PAID.value:
        return
    if project.status == ProjectStatus.RECLAMATION.value:
        history.append(
            db,
            project.id,
            actor.id,
            ChangeType.INFO_UPDATE,
            f"Invoice {invoice.number} paid ({reason})",
            field_name="invoice_number",
            new_value=invoice.number,
        )
        return
    apply_changes(
        db,
        project,
        actor,
        {"status": {"before": project.status, "after": ProjectStatus.PAID.value}},
        reason=reason,
    )


def mark_invoice_paid(db: Session, invoice_id: int, actor: Actor, provider: InvoiceProvider) -> Invoice:
    """Mark an invoice paid at the provider, then locally, and move the project to ``paid``."""
    if not is_admin(actor):
        raise AuthorizationError("Only admins can mark an invoice as paid")
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound("Invoice", invoice_id)
    project = get_project(db, invoice.project_id)
    ensure_firm_access(actor, project.firm_id)
    if invoice.is_paid:
        raise InvalidStateTransition("Invoice", "mark paid", invoice.status)

    provider.mark_paid(invoice.external_id)

    with transaction(db):
        expected = {"is_paid": False, "status": invoice.status}
        swapped = compare_and_swap(db, Invoice, invoice.id, expected, {
            "is_paid": True,
            "status": "paid",
            "updated_at": utcnow(),
        })
        if not swapped:
            raise ConcurrentModification("Invoice", invoice.id, expected)
        record_payment(db, project, invoice, actor, reason="marked paid manually")
    db.refresh(invoice)

    log.info("invoice.marked_paid", invoice_id=invoice.id, project_id=project.id, actor_id=actor.id)
    return invoice
