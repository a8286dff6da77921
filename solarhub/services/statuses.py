"""
Canonical status vocabulary for projects and reclamations.

Every human-readable status label in the hub comes from the tables below.
"""
import enum
from typing import Optional


class ProjectStatus(str, enum.Enum):
    PLANNING = "planning"
    EQUIPMENT_WAITING = "equipment_waiting"
    EQUIPMENT_ARRIVED = "equipment_arrived"
    WORK_SCHEDULED = "work_scheduled"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_COMPLETED = "work_completed"
    INVOICED = "invoiced"
    SEND_INVOICE = "send_invoice"
    INVOICE_SENT = "invoice_sent"
    PAID = "paid"
    RECLAMATION = "reclamation"
    DONE = "done"


class ReclamationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChangeType(str, enum.Enum):
    CREATED = "created"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT_CHANGE = "assignment_change"
    INFO_UPDATE = "info_update"
    DATE_UPDATE = "date_update"
    EQUIPMENT_UPDATE = "equipment_update"
    CALL_UPDATE = "call_update"
    FILE_ADDED = "file_added"
    FILE_DELETED = "file_deleted"
    NOTE_ADDED = "note_added"
    REPORT_ADDED = "report_added"
    REPORT_UPDATED = "report_updated"
    REPORT_DELETED = "report_deleted"


PROJECT_STATUS_LABELS = {
    ProjectStatus.PLANNING: "Planning",
    ProjectStatus.EQUIPMENT_WAITING: "Waiting for equipment",
    ProjectStatus.EQUIPMENT_ARRIVED: "Equipment arrived",
    ProjectStatus.WORK_SCHEDULED: "Work scheduled",
    ProjectStatus.WORK_IN_PROGRESS: "Work in progress",
    ProjectStatus.WORK_COMPLETED: "Work completed",
    ProjectStatus.INVOICED: "Invoiced",
    ProjectStatus.SEND_INVOICE: "Send invoice to client",
    ProjectStatus.INVOICE_SENT: "Invoice sent",
    ProjectStatus.PAID: "Paid",
    ProjectStatus.RECLAMATION: "Reclamation",
    ProjectStatus.DONE: "Done",
}

RECLAMATION_STATUS_LABELS = {
    ReclamationStatus.PENDING: "Pending",
    ReclamationStatus.ACCEPTED: "Accepted",
    ReclamationStatus.REJECTED: "Rejected",
    ReclamationStatus.IN_PROGRESS: "In progress",
    ReclamationStatus.COMPLETED: "Completed",
    ReclamationStatus.CANCELLED: "Cancelled",
}

# Statuses from which a reclamation may be opened
COMPLETED_LIKE = frozenset({
    ProjectStatus.WORK_COMPLETED,
    ProjectStatus.INVOICED,
    ProjectStatus.SEND_INVOICE,
    ProjectStatus.INVOICE_SENT,
    ProjectStatus.PAID,
})

# Linear billing progression used for the invoice-number invariant
_BILLING_ORDER = [
    ProjectStatus.PLANNING,
    ProjectStatus.EQUIPMENT_WAITING,
    ProjectStatus.EQUIPMENT_ARRIVED,
    ProjectStatus.WORK_SCHEDULED,
    ProjectStatus.WORK_IN_PROGRESS,
    ProjectStatus.WORK_COMPLETED,
    ProjectStatus.INVOICED,
    ProjectStatus.SEND_INVOICE,
    ProjectStatus.INVOICE_SENT,
    ProjectStatus.PAID,
    ProjectStatus.DONE,
]

ACTIVE_RECLAMATION_STATUSES = frozenset({
    ReclamationStatus.PENDING,
    ReclamationStatus.ACCEPTED,
    ReclamationStatus.IN_PROGRESS,
})

TERMINAL_RECLAMATION_STATUSES = frozenset({
    ReclamationStatus.COMPLETED,
    ReclamationStatus.CANCELLED,
})


def parse_project_status(value) -> Optional[ProjectStatus]:
    """Return the enum member for ``value`` or None if it is not a known status."""
    try:
        return ProjectStatus(value)
    except ValueError:
        return None


def project_status_label(value) -> str:
    status = parse_project_status(value)
    if status is None:
        return str(value)
    return PROJECT_STATUS_LABELS[status]


def reclamation_status_label(value) -> str:
    try:
        return RECLAMATION_STATUS_LABELS[ReclamationStatus(value)]
    except ValueError:
        return str(value)


def is_invoiced_or_later(value) -> bool:
    """True for statuses at or beyond ``invoiced``. ``reclamation`` counts since it is only entered after completion."""
    status = parse_project_status(value)
    if status is None:
        return False
    if status == ProjectStatus.RECLAMATION:
        return True
    return _BILLING_ORDER.index(status) >= _BILLING_ORDER.index(ProjectStatus.INVOICED)
