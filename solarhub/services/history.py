"""
Project history service.
Append-only audit trail of every material change to a project.
"""
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import enum
from typing import Any, Dict, Iterator, Optional

from sqlalchemy.orm import Session, aliased

from ..models.models import ProjectHistory, ProjectNote, User
from ..errors import ValidationError
from .statuses import ChangeType


def stringify(value: Any) -> Optional[str]:
    """Canonical text form used for stored old/new values and for diffing."""
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def append(
    db: Session,
    project_id: int,
    actor_id: Optional[str],
    change_type: str,
    description: str,
    field_name: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
    snapshot_id: Optional[int] = None,
    note_id: Optional[int] = None,
) -> ProjectHistory:
    """
    Append a history entry to the current unit of work.

    Args:
        db: Database session (the caller owns the transaction)
        project_id: Project the change belongs to
        actor_id: User who made the change, None for system changes
        change_type: One of ChangeType
        description: Human-readable summary
        field_name: Changed field, if the entry records a field change
        old_value: Previous value, stored stringified
        new_value: New value, stored stringified
        snapshot_id: Crew snapshot captured for this change
        note_id: Note created together with this entry

    Returns:
        The pending ProjectHistory row (flushed, so its id is set)
    """
    try:
        change_type = ChangeType(change_type).value
    except ValueError:
        raise ValidationError(f"Unknown change type '{change_type}'", field="change_type")

    entry = ProjectHistory(
        project_id=project_id,
        user_id=actor_id,
        change_type=change_type,
        field_name=field_name,
        old_value=stringify(old_value),
        new_value=stringify(new_value),
        description=description,
        crew_snapshot_id=snapshot_id,
        note_id=note_id,
    )
    db.add(entry)
    db.flush()
    return entry


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Values are compared by their stringified form, so ``date(2025, 1, 2)``
    and ``"2025-01-02"`` are equal.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    for key in after.keys():
        before_val = before.get(key)
        after_val = after.get(key)
        if stringify(before_val) != stringify(after_val):
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }
    return diff


@dataclass(frozen=True)
class HistoryItem:
    id: int
    project_id: int
    user_id: Optional[str]
    user_name: Optional[str]
    change_type: str
    field_name: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]
    description: str
    crew_snapshot_id: Optional[int]
    note_id: Optional[int]
    note_priority: Optional[str]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "change_type": self.change_type,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "description": self.description,
            "crew_snapshot_id": self.crew_snapshot_id,
            "note_priority": self.note_priority,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _display_name(user: Optional[User]) -> Optional[str]:
    if user is None:
        return None
    composed = " ".join(part for part in [user.first_name or "", user.last_name or ""] if part).strip()
    return composed or user.email


class HistoryView:
    """
    Read-only view over a project's history, newest first.

    Each iteration runs a fresh query, so the view can be iterated any number
    of times and always reflects committed state.
    """

    def __init__(self, db: Session, project_id: int, batch_size: int = 100):
        self.db = db
        self.project_id = project_id
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[HistoryItem]:
        author = aliased(User)
        query = (
            self.db.query(ProjectHistory, author, ProjectNote.priority)
            .outerjoin(author, author.id == ProjectHistory.user_id)
            .outerjoin(ProjectNote, ProjectNote.id == ProjectHistory.note_id)
            .filter(ProjectHistory.project_id == self.project_id)
            .order_by(ProjectHistory.created_at.desc(), ProjectHistory.id.desc())
            .yield_per(self.batch_size)
        )
        for entry, user, priority in query:
            yield HistoryItem(
                id=entry.id,
                project_id=entry.project_id,
                user_id=entry.user_id,
                user_name=_display_name(user),
                change_type=entry.change_type,
                field_name=entry.field_name,
                old_value=entry.old_value,
                new_value=entry.new_value,
                description=entry.description,
                crew_snapshot_id=entry.crew_snapshot_id,
                note_id=entry.note_id,
                note_priority=priority if entry.change_type == ChangeType.NOTE_ADDED.value else None,
                created_at=entry.created_at,
            )


def read(db: Session, project_id: int) -> HistoryView:
    return HistoryView(db, project_id)


def count_entries(db: Session, project_id: int, change_type: Optional[str] = None) -> int:
    query = db.query(ProjectHistory).filter(ProjectHistory.project_id == project_id)
    if change_type:
        query = query.filter(ProjectHistory.change_type == change_type)
    return query.count()
