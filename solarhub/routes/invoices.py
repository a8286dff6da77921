from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_actor, require_roles
from ..errors import NotFound
from ..models.models import Invoice
from ..services import reconciliation
from ..services.invoice_provider import get_provider_factory
from ..services.permissions import ROLE_ADMIN, ROLE_PROJECT_LEAD, Actor
from ..services.project_workflow import get_firm, get_project, mark_invoice_paid


router = APIRouter(prefix="/invoices", tags=["invoices"])


def _provider_for_invoice(db: Session, invoice_id: int, provider_factory: Callable):
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound("Invoice", invoice_id)
    project = get_project(db, invoice.project_id)
    return provider_factory(get_firm(db, project.firm_id))


@router.post("/reconcile")
def reconcile_firm(
    firm_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_ADMIN, ROLE_PROJECT_LEAD)),
    provider_factory: Callable = Depends(get_provider_factory),
):
    provider = provider_factory(get_firm(db, firm_id))
    return reconciliation.reconcile_all(db, firm_id, actor=actor, provider=provider).to_dict()


@router.post("/{invoice_id}/reconcile")
def reconcile_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    provider_factory: Callable = Depends(get_provider_factory),
):
    provider = _provider_for_invoice(db, invoice_id, provider_factory)
    result = reconciliation.reconcile_one(db, invoice_id, provider, actor=actor)
    return {"invoice_id": result.invoice_id, "updated": result.updated, "newly_paid": result.newly_paid, "status": result.status}


@router.post("/{invoice_id}/mark-paid")
def mark_paid(
    invoice_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    provider_factory: Callable = Depends(get_provider_factory),
):
    provider = _provider_for_invoice(db, invoice_id, provider_factory)
    invoice = mark_invoice_paid(db, invoice_id, actor, provider)
    return {"id": invoice.id, "number": invoice.number, "is_paid": invoice.is_paid, "status": invoice.status}
