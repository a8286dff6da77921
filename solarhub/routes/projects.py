from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import NotFound
from ..auth.security import get_current_actor
from ..models.models import Project
from ..schemas.workflow import ActivityCreate, InvoiceCreate, NoteCreate, ProjectCreate, ProjectTransition
from ..services import crew_snapshots, history, project_workflow, reclamations
from ..services.invoice_provider import get_provider_factory
from ..services.notifications import Notifier, get_notifier
from ..services.permissions import Actor, ensure_firm_access
from ..services.statuses import project_status_label


router = APIRouter(prefix="/projects", tags=["projects"])


def _project_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "firm_id": p.firm_id,
        "client_id": p.client_id,
        "lead_id": p.lead_id,
        "crew_id": p.crew_id,
        "status": p.status,
        "status_label": project_status_label(p.status),
        "equipment_expected_date": history.stringify(p.equipment_expected_date),
        "equipment_arrived_date": history.stringify(p.equipment_arrived_date),
        "work_start_date": history.stringify(p.work_start_date),
        "work_end_date": history.stringify(p.work_end_date),
        "needs_call_for_equipment_delay": bool(p.needs_call_for_equipment_delay),
        "needs_call_for_crew_delay": bool(p.needs_call_for_crew_delay),
        "needs_call_for_date_change": bool(p.needs_call_for_date_change),
        "notes": p.notes,
        "invoice_number": p.invoice_number,
        "invoice_url": p.invoice_url,
        "updated_at": history.stringify(p.updated_at),
    }


def _readable_project(db: Session, project_id: int, actor: Actor) -> Project:
    project = project_workflow.get_project(db, project_id)
    ensure_firm_access(actor, project.firm_id)
    return project


@router.post("")
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
):
    fields = payload.model_dump(exclude_none=True)
    firm_id = fields.pop("firm_id")
    project = project_workflow.create_project(db, actor, firm_id, notifier=notifier, **fields)
    return _project_dict(project)


@router.get("/{project_id}")
def get_project(project_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    return _project_dict(_readable_project(db, project_id, actor))


@router.post("/{project_id}/transition")
def transition_project(
    project_id: int,
    payload: ProjectTransition,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
):
    project = project_workflow.transition(
        db,
        project_id,
        actor,
        new_status=payload.status,
        changes=payload.changes,
        notifier=notifier,
    )
    return _project_dict(project)


@router.get("/{project_id}/history")
def get_history(project_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    _readable_project(db, project_id, actor)
    return [item.to_dict() for item in history.read(db, project_id)]


@router.get("/{project_id}/snapshots")
def get_snapshots(project_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    _readable_project(db, project_id, actor)
    return [crew_snapshots.snapshot_to_dict(s) for s in crew_snapshots.list_snapshots(db, project_id)]


@router.get("/{project_id}/snapshots/{snapshot_id}")
def get_snapshot(
    project_id: int,
    snapshot_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _readable_project(db, project_id, actor)
    snapshot = crew_snapshots.get_snapshot(db, snapshot_id)
    if snapshot.project_id != project_id:
        # Don't leak snapshots of other projects
        raise NotFound("CrewSnapshot", snapshot_id)
    return crew_snapshots.snapshot_to_dict(snapshot)


@router.post("/{project_id}/notes")
def add_note(
    project_id: int,
    payload: NoteCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    note = project_workflow.add_note(db, project_id, actor, payload.content, payload.priority)
    return {"id": note.id, "content": note.content, "priority": note.priority}


@router.post("/{project_id}/activity")
def record_activity(
    project_id: int,
    payload: ActivityCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    entry = project_workflow.record_activity(
        db,
        project_id,
        actor,
        payload.change_type,
        payload.description,
        field_name=payload.field_name,
        old_value=payload.old_value,
        new_value=payload.new_value,
    )
    return {"id": entry.id, "change_type": entry.change_type}


@router.post("/{project_id}/invoices")
def create_invoice(
    project_id: int,
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    provider_factory: Callable = Depends(get_provider_factory),
):
    project = _readable_project(db, project_id, actor)
    provider = provider_factory(project_workflow.get_firm(db, project.firm_id))
    invoice = project_workflow.create_invoice(
        db,
        project_id,
        actor,
        provider,
        [item.model_dump() for item in payload.line_items],
    )
    return {
        "id": invoice.id,
        "number": invoice.number,
        "external_id": invoice.external_id,
        "status": invoice.status,
        "total_amount": history.stringify(invoice.total_amount),
    }


@router.get("/{project_id}/reclamations")
def get_reclamations(project_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    _readable_project(db, project_id, actor)
    return [reclamations.reclamation_to_dict(r) for r in reclamations.list_for_project(db, project_id)]
