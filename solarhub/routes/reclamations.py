from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_actor
from ..schemas.workflow import (
    ReclamationCancel,
    ReclamationComplete,
    ReclamationCreate,
    ReclamationReassign,
    ReclamationReject,
)
from ..services import reclamations
from ..services.notifications import Notifier, get_notifier
from ..services.permissions import Actor, ensure_crew_worker, ensure_firm_access


router = APIRouter(prefix="/reclamations", tags=["reclamations"])


@router.post("")
def create_reclamation(
    payload: ReclamationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
):
    reclamation = reclamations.create(
        db,
        payload.project_id,
        payload.crew_id,
        payload.description,
        payload.deadline,
        actor,
        notifier=notifier,
    )
    return reclamations.reclamation_to_dict(reclamation)


@router.get("")
def list_reclamations(
    firm_id: int,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    ensure_firm_access(actor, firm_id)
    return [reclamations.reclamation_to_dict(r) for r in reclamations.list_for_firm(db, firm_id, status)]


@router.get("/mine")
def my_reclamations(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    """Everything the worker's crew can act on, split into assigned and available."""
    crew_id = ensure_crew_worker(actor)
    actionable = reclamations.actionable_for_crew(db, crew_id)
    return {
        group: [reclamations.reclamation_to_dict(r) for r in items]
        for group, items in actionable.items()
    }


@router.get("/{reclamation_id}")
def get_reclamation(reclamation_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    reclamation = reclamations.get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    data = reclamations.reclamation_to_dict(reclamation)
    if actor.crew_id is not None:
        data["crew_view"] = reclamations.classify_for_crew(
            reclamation.status, reclamation.current_crew_id, actor.crew_id
        )
    return data


@router.get("/{reclamation_id}/history")
def get_reclamation_history(
    reclamation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    reclamation = reclamations.get_reclamation(db, reclamation_id)
    ensure_firm_access(actor, reclamation.firm_id)
    return [reclamations.history_entry_to_dict(e) for e in reclamations.history(db, reclamation_id)]


@router.post("/{reclamation_id}/accept")
def accept_reclamation(
    reclamation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
):
    reclamation = reclamations.accept(db, reclamation_id, actor, notifier=notifier)
    return reclamations.reclamation_to_dict(reclamation)


@router.post("/{reclamation_id}/reject")
def reject_reclamation(
    reclamation_id: int,
    payload: ReclamationReject,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    reclamation = reclamations.reject(db, reclamation_id, payload.reason, actor)
    return reclamations.reclamation_to_dict(reclamation)


@router.post("/{reclamation_id}/take")
def take_reclamation(reclamation_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    reclamation = reclamations.take(db, reclamation_id, actor)
    return reclamations.reclamation_to_dict(reclamation)


@router.post("/{reclamation_id}/start")
def start_reclamation(reclamation_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    reclamation = reclamations.start(db, reclamation_id, actor)
    return reclamations.reclamation_to_dict(reclamation)


@router.post("/{reclamation_id}/complete")
def complete_reclamation(
    reclamation_id: int,
    payload: ReclamationComplete,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    reclamation = reclamations.complete(db, reclamation_id, payload.notes, actor)
    return reclamations.reclamation_to_dict(reclamation)


@router.post("/{reclamation_id}/reassign")
def reassign_reclamation(
    reclamation_id: int,
    payload: ReclamationReassign,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: Notifier = Depends(get_notifier),
):
    reclamation = reclamations.reassign(
        db,
        reclamation_id,
        payload.crew_id,
        actor,
        deadline=payload.deadline,
        description=payload.description,
        notifier=notifier,
    )
    return reclamations.reclamation_to_dict(reclamation)


@router.post("/{reclamation_id}/cancel")
def cancel_reclamation(
    reclamation_id: int,
    payload: ReclamationCancel,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    reclamation = reclamations.cancel(db, reclamation_id, actor, reason=payload.reason)
    return reclamations.reclamation_to_dict(reclamation)
