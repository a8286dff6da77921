"""
Pytest fixtures for the workflow engine test suite.

Every test gets its own SQLite database file under ``tmp_path``, so tests
that need two independent sessions (race scenarios) can open a second one
from ``session_factory``.
"""
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from solarhub.db import Base, make_engine
from solarhub.errors import UpstreamError
from solarhub.models.models import Crew, CrewMember, Firm, Project, User
from solarhub.services.invoice_provider import CreatedInvoice, InvoiceProvider, PaymentStatus
from solarhub.services.notifications import Notifier
from solarhub.services.permissions import ROLE_ADMIN, ROLE_PROJECT_LEAD, ROLE_WORKER, Actor


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'solarhub-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Firms, users and crews
# =============================================================================


@pytest.fixture
def firm(session):
    firm = Firm(name="Sonnenstrom GmbH", invoice_provider_url="https://invoices.test", invoice_provider_token="tok")
    session.add(firm)
    session.commit()
    return firm


@pytest.fixture
def other_firm(session):
    firm = Firm(name="Other Solar AG")
    session.add(firm)
    session.commit()
    return firm


@pytest.fixture
def users(session):
    rows = [
        User(id="admin-1", email="admin@solarhub.test", first_name="Ada", last_name="Admin", role=ROLE_ADMIN),
        User(id="lead-1", email="lead@solarhub.test", first_name="Lena", last_name="Lead", role=ROLE_PROJECT_LEAD),
        User(id="worker-a", email="worker.a@solarhub.test", role=ROLE_WORKER),
    ]
    session.add_all(rows)
    session.commit()
    return {user.id: user for user in rows}


def _make_crew(session, firm, name, number, members):
    crew = Crew(firm_id=firm.id, name=name, unique_number=number, leader_name=members[0][0] if members else None)
    session.add(crew)
    session.flush()
    for first_name, last_name, email in members:
        session.add(CrewMember(crew_id=crew.id, first_name=first_name, last_name=last_name, email=email))
    session.commit()
    return crew


@pytest.fixture
def crew_a(session, firm):
    return _make_crew(session, firm, "Alpha Roofers", "C-001", [
        ("Anna", "Alder", "anna@crews.test"),
        ("Ben", "Brandt", "ben@crews.test"),
    ])


@pytest.fixture
def crew_b(session, firm):
    return _make_crew(session, firm, "Beta Installers", "C-002", [("Carla", "Claus", "carla@crews.test")])


@pytest.fixture
def crew_c(session, firm):
    return _make_crew(session, firm, "Gamma Electric", "C-003", [("Dirk", "Dorn", None)])


@pytest.fixture
def foreign_crew(session, other_firm):
    return _make_crew(session, other_firm, "Foreign Crew", "X-001", [("Eva", "Ernst", None)])


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def admin(firm, users):
    return Actor(id="admin-1", role=ROLE_ADMIN)


@pytest.fixture
def lead(firm, users):
    return Actor(id="lead-1", role=ROLE_PROJECT_LEAD, firm_ids={firm.id})


@pytest.fixture
def outside_lead(other_firm):
    return Actor(id="lead-2", role=ROLE_PROJECT_LEAD, firm_ids={other_firm.id})


def _worker(firm, crew, user_id):
    return Actor(
        id=user_id,
        role=ROLE_WORKER,
        firm_ids={firm.id},
        crew_id=crew.id,
        crew_member_id=crew.members[0].id,
    )


@pytest.fixture
def worker_a(firm, crew_a, users):
    return _worker(firm, crew_a, "worker-a")


@pytest.fixture
def worker_b(firm, crew_b):
    return _worker(firm, crew_b, "worker-b")


@pytest.fixture
def worker_c(firm, crew_c):
    return _worker(firm, crew_c, "worker-c")


# =============================================================================
# Projects
# =============================================================================


@pytest.fixture
def make_project(session, firm):
    """Insert a project directly in any status (setup only, bypasses the workflow)."""

    def _make(status: str = "planning", crew: Optional[Crew] = None, **fields) -> Project:
        project = Project(
            firm_id=firm.id,
            lead_id="lead-1",
            status=status,
            crew_id=crew.id if crew else None,
            **fields,
        )
        session.add(project)
        session.commit()
        return project

    return _make


@pytest.fixture
def project(make_project):
    return make_project()


@pytest.fixture
def completed_project(make_project, crew_a):
    return make_project(status="work_completed", crew=crew_a, work_start_date=date(2025, 3, 3))


# =============================================================================
# Collaborator fakes
# =============================================================================


class RecordingNotifier(Notifier):
    def __init__(self):
        self.calls: List[tuple] = []

    def notify(self, project_id, crew_id, event_kind, payload=None):
        self.calls.append((project_id, crew_id, event_kind))

    def kinds(self) -> List[str]:
        return [call[2] for call in self.calls]


class FailingNotifier(Notifier):
    def notify(self, project_id, crew_id, event_kind, payload=None):
        raise RuntimeError("mail server unreachable")


class FakeProvider(InvoiceProvider):
    """In-memory invoicing provider."""

    def __init__(self):
        self.statuses: Dict[str, PaymentStatus] = {}
        self.failing: set = set()
        self.fail_create = False
        self.fail_mark_paid = False
        self.created: List[dict] = []
        self.marked_paid: List[str] = []
        self.checked: List[str] = []

    def set_status(self, external_id: str, status: str):
        self.statuses[external_id] = PaymentStatus(is_paid=status == "paid", status=status)

    def check_payment_status(self, external_id: str) -> PaymentStatus:
        self.checked.append(external_id)
        if external_id in self.failing:
            raise UpstreamError(f"provider unavailable for {external_id}", operation="check_payment_status")
        return self.statuses.get(external_id, PaymentStatus(is_paid=False, status="draft"))

    def create_invoice(self, payload: dict) -> CreatedInvoice:
        if self.fail_create:
            raise UpstreamError("provider rejected invoice", operation="create_invoice")
        self.created.append(payload)
        n = len(self.created)
        amount = sum(Decimal(str(i["quantity"])) * Decimal(str(i["cost"])) for i in payload["line_items"])
        return CreatedInvoice(id=f"ext-{n}", number=f"INV-{n:04d}", amount=amount, invoice_date=date(2025, 4, 1))

    def mark_paid(self, external_id: str) -> None:
        if self.fail_mark_paid:
            raise UpstreamError("provider timeout", operation="mark_paid")
        self.marked_paid.append(external_id)
        self.set_status(external_id, "paid")

    def invoice_url(self, external_id: str) -> Optional[str]:
        return f"https://invoices.test/invoices/{external_id}"


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()
