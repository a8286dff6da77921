"""
Crew notifications for committed project and reclamation transitions.
Side effects here are best-effort: a failure is logged and never undoes the
transition that triggered it.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import CrewMember, Notification

log = structlog.get_logger(__name__)

# Event kinds emitted by the state machines
CREW_ASSIGNED = "crew_assigned"
WORK_DATES_CHANGED = "work_dates_changed"
EQUIPMENT_DATE_CHANGED = "equipment_date_changed"
EQUIPMENT_ARRIVED = "equipment_arrived"
RECLAMATION_CREATED = "reclamation_created"
RECLAMATION_ACCEPTED = "reclamation_accepted"
RECLAMATION_REASSIGNED = "reclamation_reassigned"


class Notifier(ABC):
    """Receives ``(project_id, crew_id, event_kind)`` after a transition commits."""

    @abstractmethod
    def notify(self, project_id: int, crew_id: Optional[int], event_kind: str, payload: Optional[Dict] = None) -> None:
        ...


class OutboxNotifier(Notifier):
    """
    Queue one e-mail notification per crew member that has an address.

    Uses its own session so nothing it writes shares a transaction with the
    workflow change.
    """

    def __init__(self, session_factory: Callable[[], Session], timezone_str: Optional[str] = None):
        self.session_factory = session_factory
        self.timezone_str = timezone_str or settings.tz_default

    def notify(self, project_id: int, crew_id: Optional[int], event_kind: str, payload: Optional[Dict] = None) -> None:
        if not settings.enable_email or crew_id is None:
            return
        tz = pytz.timezone(self.timezone_str)
        body = dict(payload or {})
        body["occurred_at_local"] = datetime.now(tz).isoformat()

        db = self.session_factory()
        try:
            members: List[CrewMember] = (
                db.query(CrewMember)
                .filter(CrewMember.crew_id == crew_id, CrewMember.email.isnot(None))
                .all()
            )
            for member in members:
                db.add(Notification(
                    project_id=project_id,
                    crew_id=crew_id,
                    recipient=member.email,
                    channel="email",
                    event_kind=event_kind,
                    payload_json=body,
                    status="pending",
                ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def notify_safely(
    notifier: Optional[Notifier],
    project_id: int,
    crew_id: Optional[int],
    event_kind: str,
    payload: Optional[Dict] = None,
) -> bool:
    """
    Invoke the notifier, swallowing and logging any failure.

    Returns:
        True if the notifier ran without error (or there is none)
    """
    if notifier is None:
        return True
    try:
        notifier.notify(project_id, crew_id, event_kind, payload)
        return True
    except Exception as exc:
        log.warning(
            "notification.failed",
            project_id=project_id,
            crew_id=crew_id,
            event_kind=event_kind,
            error=str(exc),
        )
        return False


def get_notifier() -> Notifier:
    """Request dependency; replaced in tests."""
    return OutboxNotifier(SessionLocal)
