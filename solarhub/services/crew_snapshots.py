"""
Crew snapshot capture.

A snapshot freezes a crew's roster at the moment the crew is assigned to a
project. History entries point at the snapshot, so later edits to the live
crew or its members never change what the history says.
"""
import copy
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.models import Crew, CrewMember, CrewSnapshot, Project
from ..errors import NotFound
from .permissions import Actor

CREW_FIELDS = ("id", "firm_id", "name", "unique_number", "leader_name", "phone", "address", "archived")
MEMBER_FIELDS = ("id", "crew_id", "first_name", "last_name", "email", "phone", "address", "unique_number", "role")


def _copy_fields(row, fields) -> Dict[str, Any]:
    return {name: copy.deepcopy(getattr(row, name)) for name in fields}


def capture_snapshot(db: Session, project_id: int, crew_id: int, actor: Actor) -> CrewSnapshot:
    """
    Capture the crew's current roster for a project.

    Every call creates a new row, even for a crew already captured on the same
    project: membership may have changed between the two assignments.
    """
    if db.get(Project, project_id) is None:
        raise NotFound("Project", project_id)
    crew = db.get(Crew, crew_id)
    if crew is None:
        raise NotFound("Crew", crew_id)

    members = (
        db.query(CrewMember)
        .filter(CrewMember.crew_id == crew_id)
        .order_by(CrewMember.id.asc())
        .all()
    )
    snapshot = CrewSnapshot(
        project_id=project_id,
        crew_id=crew_id,
        crew_data=_copy_fields(crew, CREW_FIELDS),
        members_data=[_copy_fields(member, MEMBER_FIELDS) for member in members],
        created_by=actor.id,
    )
    db.add(snapshot)
    db.flush()
    return snapshot


def get_snapshot(db: Session, snapshot_id: int) -> CrewSnapshot:
    snapshot = db.get(CrewSnapshot, snapshot_id)
    if snapshot is None:
        raise NotFound("CrewSnapshot", snapshot_id)
    return snapshot


def list_snapshots(db: Session, project_id: int) -> List[CrewSnapshot]:
    return (
        db.query(CrewSnapshot)
        .filter(CrewSnapshot.project_id == project_id)
        .order_by(CrewSnapshot.snapshot_date.asc(), CrewSnapshot.id.asc())
        .all()
    )


def member_names(snapshot: CrewSnapshot) -> List[str]:
    names = []
    for member in snapshot.members_data or []:
        full_name = f"{member.get('first_name') or ''} {member.get('last_name') or ''}".strip()
        if full_name:
            names.append(full_name)
    return names


def describe_assignment(snapshot: CrewSnapshot) -> str:
    """History description for a crew assignment, built only from captured data."""
    description = f'Crew "{snapshot.crew_data.get("name")}" assigned'
    names = member_names(snapshot)
    if names:
        description += f" (members: {', '.join(names)})"
    return description


def snapshot_to_dict(snapshot: Optional[CrewSnapshot]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    return {
        "id": snapshot.id,
        "project_id": snapshot.project_id,
        "crew_id": snapshot.crew_id,
        "crew_data": copy.deepcopy(snapshot.crew_data),
        "members_data": copy.deepcopy(snapshot.members_data),
        "created_by": snapshot.created_by,
        "snapshot_date": snapshot.snapshot_date.isoformat() if snapshot.snapshot_date else None,
    }
