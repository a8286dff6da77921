"""
Payment reconciliation against the invoicing provider.

The provider's view always wins. Local invoice rows are refreshed with a
conditional update, so repeated or concurrent runs for the same invoice write
at most once per provider-side change.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import compare_and_swap, transaction
from ..errors import NotFound, WorkflowError
from ..models.models import Firm, Invoice, Project, utcnow
from .invoice_provider import InvoiceProvider, PaymentStatus, provider_for_firm
from .permissions import SYSTEM_ACTOR, Actor, ensure_firm_access
from .project_workflow import get_project, record_payment

log = structlog.get_logger(__name__)

SYNC_REASON = "synchronised with invoicing provider"


@dataclass
class ReconcileResult:
    invoice_id: int
    updated: bool
    newly_paid: bool = False
    status: Optional[str] = None


@dataclass
class BatchResult:
    firm_id: int
    results: List[ReconcileResult] = field(default_factory=list)
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def checked(self) -> int:
        return len(self.results) + len(self.failures)

    @property
    def updated(self) -> int:
        return sum(1 for result in self.results if result.updated)

    def to_dict(self) -> Dict:
        return {
            "firm_id": self.firm_id,
            "checked": self.checked,
            "updated": self.updated,
            "results": [
                {"invoice_id": r.invoice_id, "updated": r.updated, "newly_paid": r.newly_paid, "status": r.status}
                for r in self.results
            ],
            "failures": {str(invoice_id): message for invoice_id, message in self.failures.items()},
        }


def _apply_remote_status(db: Session, invoice: Invoice, remote: PaymentStatus, actor: Actor) -> ReconcileResult:
    if invoice.is_paid == remote.is_paid and invoice.status == remote.status:
        return ReconcileResult(invoice_id=invoice.id, updated=False, status=invoice.status)

    newly_paid = remote.is_paid and not invoice.is_paid
    expected = {"is_paid": invoice.is_paid, "status": invoice.status}
    with transaction(db):
        swapped = compare_and_swap(db, Invoice, invoice.id, expected, {
            "is_paid": remote.is_paid,
            "status": remote.status,
            "updated_at": utcnow(),
        })
        if swapped and newly_paid:
            project = get_project(db, invoice.project_id)
            record_payment(db, project, invoice, actor, reason=SYNC_REASON)

    if not swapped:
        # Another reconciler already applied this change
        return ReconcileResult(invoice_id=invoice.id, updated=False, status=remote.status)

    log.info(
        "reconciliation.invoice_updated",
        invoice_id=invoice.id,
        project_id=invoice.project_id,
        from_status=expected["status"],
        to_status=remote.status,
        newly_paid=newly_paid,
    )
    return ReconcileResult(invoice_id=invoice.id, updated=True, newly_paid=newly_paid, status=remote.status)


def reconcile_one(
    db: Session,
    invoice_id: int,
    provider: InvoiceProvider,
    actor: Optional[Actor] = None,
) -> ReconcileResult:
    """
    Refresh one invoice from the provider.

    A newly paid invoice moves its project to ``paid`` with a history entry
    naming the synchronisation as the cause.

    Raises:
        NotFound: invoice does not exist
        UpstreamError: the provider call failed
    """
    actor = actor or SYSTEM_ACTOR
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound("Invoice", invoice_id)
    if actor is not SYSTEM_ACTOR:
        ensure_firm_access(actor, get_project(db, invoice.project_id).firm_id)

    remote = provider.check_payment_status(invoice.external_id)
    return _apply_remote_status(db, invoice, remote, actor)


def reconcile_all(
    db: Session,
    firm_id: int,
    actor: Optional[Actor] = None,
    provider: Optional[InvoiceProvider] = None,
) -> BatchResult:
    """
    Reconcile every unpaid invoice of a firm.

    Provider lookups run in a bounded thread pool; database writes happen on
    the calling thread as each lookup finishes. A failure for one invoice is
    recorded in the result and never stops the others.
    """
    actor = actor or SYSTEM_ACTOR
    firm = db.get(Firm, firm_id)
    if firm is None:
        raise NotFound("Firm", firm_id)
    ensure_firm_access(actor, firm_id)
    provider = provider or provider_for_firm(firm)

    invoices = (
        db.query(Invoice)
        .join(Project, Project.id == Invoice.project_id)
        .filter(Project.firm_id == firm_id, Invoice.is_paid.is_(False))
        .order_by(Invoice.id.asc())
        .all()
    )
    batch = BatchResult(firm_id=firm_id)
    if not invoices:
        return batch

    workers = max(1, min(settings.reconcile_max_workers, len(invoices)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(provider.check_payment_status, invoice.external_id): invoice for invoice in invoices}
        for future in as_completed(futures):
            invoice = futures[future]
            try:
                remote = future.result()
            except Exception as exc:
                log.warning(
                    "reconciliation.provider_failed",
                    invoice_id=invoice.id,
                    external_id=invoice.external_id,
                    error=str(exc),
                )
                batch.failures[invoice.id] = str(exc)
                continue
            try:
                batch.results.append(_apply_remote_status(db, invoice, remote, actor))
            except WorkflowError as exc:
                log.warning("reconciliation.apply_failed", invoice_id=invoice.id, error=exc.message)
                batch.failures[invoice.id] = exc.message
            except SQLAlchemyError as exc:
                db.rollback()
                log.warning("reconciliation.apply_failed", invoice_id=invoice.id, error=str(exc))
                batch.failures[invoice.id] = str(exc)

    batch.results.sort(key=lambda result: result.invoice_id)
    log.info(
        "reconciliation.batch_completed",
        firm_id=firm_id,
        checked=batch.checked,
        updated=batch.updated,
        failed=len(batch.failures),
    )
    return batch
