"""
Actor identity and permission checks for workflow operations.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from ..errors import AuthorizationError

ROLE_ADMIN = "admin"
ROLE_PROJECT_LEAD = "project-lead"
ROLE_WORKER = "worker"
ROLES = frozenset({ROLE_ADMIN, ROLE_PROJECT_LEAD, ROLE_WORKER})


@dataclass(frozen=True)
class Actor:
    """
    The authenticated identity performing an operation.

    Supplied by the identity provider and trusted as-is. Workers additionally
    carry the crew (and crew member) they act for.
    """
    id: Optional[str]
    role: str
    firm_ids: FrozenSet[int] = field(default_factory=frozenset)
    crew_id: Optional[int] = None
    crew_member_id: Optional[int] = None

    def __post_init__(self):
        # Accept any iterable of firm ids
        object.__setattr__(self, "firm_ids", frozenset(int(f) for f in self.firm_ids))


# Used for changes the provider reports on its own (payment reconciliation)
SYSTEM_ACTOR = Actor(id=None, role=ROLE_ADMIN)


def is_admin(actor: Actor) -> bool:
    """Check if actor has admin role."""
    return actor.role == ROLE_ADMIN


def has_firm_access(actor: Actor, firm_id: int) -> bool:
    if is_admin(actor):
        return True
    return int(firm_id) in actor.firm_ids


def ensure_firm_access(actor: Actor, firm_id: int) -> None:
    if not has_firm_access(actor, firm_id):
        raise AuthorizationError(f"Access denied to firm {firm_id}")


def ensure_role(actor: Actor, *roles: str) -> None:
    if actor.role not in roles:
        raise AuthorizationError(
            f"Role '{actor.role}' is not allowed; requires one of: {', '.join(roles)}"
        )


def ensure_manager(actor: Actor, firm_id: int) -> None:
    """Admins and project leads of the firm manage projects and reclamations."""
    ensure_role(actor, ROLE_ADMIN, ROLE_PROJECT_LEAD)
    ensure_firm_access(actor, firm_id)


def ensure_crew_worker(actor: Actor) -> int:
    """
    Require a worker acting for a crew and return that crew id.
    """
    if actor.role != ROLE_WORKER or actor.crew_id is None:
        raise AuthorizationError("Only crew workers can act on reclamations")
    return actor.crew_id
