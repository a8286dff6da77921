from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    Text,
    Index,
    event,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..errors import ImmutableRecordError


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Firm(Base):
    """Tenant boundary. Owns crews and projects."""
    __tablename__ = "firms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Per-firm invoicing provider credentials
    invoice_provider_url: Mapped[Optional[str]] = mapped_column(String(500))
    invoice_provider_token: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(Text)
    tax_id: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(Base):
    """Profile row for an identity-provider subject; only used for display names."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(String(50), default="project-lead")  # admin|project-lead|worker
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Crew(Base):
    __tablename__ = "crews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    firm_id: Mapped[int] = mapped_column(Integer, ForeignKey("firms.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unique_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    leader_name: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    members = relationship(
        "CrewMember",
        back_populates="crew",
        order_by="CrewMember.id",
        cascade="all, delete-orphan",
    )


class CrewMember(Base):
    __tablename__ = "crew_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    crew_id: Mapped[int] = mapped_column(Integer, ForeignKey("crews.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)
    unique_number: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(50), default="worker")  # leader|worker|specialist
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    crew = relationship("Crew", back_populates="members")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    firm_id: Mapped[int] = mapped_column(Integer, ForeignKey("firms.id"), nullable=False, index=True)
    client_id: Mapped[Optional[int]] = mapped_column(Integer)  # Clients live outside the workflow core
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    crew_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("crews.id"), index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="planning", index=True)
    # Equipment and work dates
    equipment_expected_date: Mapped[Optional[date]] = mapped_column(Date)
    equipment_arrived_date: Mapped[Optional[date]] = mapped_column(Date)
    work_start_date: Mapped[Optional[date]] = mapped_column(Date)
    work_end_date: Mapped[Optional[date]] = mapped_column(Date)
    # Client call reminders
    needs_call_for_equipment_delay: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_call_for_crew_delay: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_call_for_date_change: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # Person at the installation site
    installation_person_first_name: Mapped[Optional[str]] = mapped_column(String(100))
    installation_person_last_name: Mapped[Optional[str]] = mapped_column(String(100))
    installation_person_address: Mapped[Optional[str]] = mapped_column(Text)
    installation_person_phone: Mapped[Optional[str]] = mapped_column(String(50))
    installation_person_unique_id: Mapped[Optional[str]] = mapped_column(String(100))
    # Set once an invoice exists
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100))
    invoice_url: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    crew = relationship("Crew")


class CrewSnapshot(Base):
    """Frozen copy of a crew's roster at the moment it was assigned to a project."""
    __tablename__ = "project_crew_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    crew_id: Mapped[int] = mapped_column(Integer, ForeignKey("crews.id"), nullable=False, index=True)
    crew_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    members_data: Mapped[list] = mapped_column(JSON, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    snapshot_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class ProjectNote(Base):
    __tablename__ = "project_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="normal")  # normal|important|urgent|critical
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProjectHistory(Base):
    """Append-only project audit trail"""
    __tablename__ = "project_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64))  # None for system-initiated changes
    change_type: Mapped[str] = mapped_column(String(50), nullable=False)
    field_name: Mapped[Optional[str]] = mapped_column(String(100))
    old_value: Mapped[Optional[str]] = mapped_column(Text)
    new_value: Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    crew_snapshot_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("project_crew_snapshots.id"))
    note_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("project_notes.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_project_history_project_time", "project_id", "created_at"),
    )


class Reclamation(Base):
    __tablename__ = "reclamations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    firm_id: Mapped[int] = mapped_column(Integer, ForeignKey("firms.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    deadline: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    original_crew_id: Mapped[int] = mapped_column(Integer, ForeignKey("crews.id"), nullable=False)
    current_crew_id: Mapped[int] = mapped_column(Integer, ForeignKey("crews.id"), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    accepted_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("crew_members.id"))
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReclamationHistory(Base):
    __tablename__ = "reclamation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reclamation_id: Mapped[int] = mapped_column(Integer, ForeignKey("reclamations.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # accepted|rejected|reassigned|started|completed|cancelled
    action_by: Mapped[Optional[str]] = mapped_column(String(64))
    action_by_member: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("crew_members.id"))
    crew_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("crews.id"))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Invoice(Base):
    """Local cache of an invoice held by the external provider"""
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    number: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)  # draft|sent|viewed|partial|paid|overdue|cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Notification(Base):
    """Outbox of crew-facing notifications triggered by committed transitions"""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    crew_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("crews.id"))
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="email")
    event_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_notifications_status", "status", "created_at"),
    )


# Write-once rows. Bulk query updates bypass these hooks; the services never issue them.
def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be modified")


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be deleted")


for _model in (CrewSnapshot, ProjectHistory, ReclamationHistory):
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)
