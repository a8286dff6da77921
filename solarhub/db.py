from contextlib import contextmanager

from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy import create_engine
from .config import settings


def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


engine = make_engine(settings.database_url)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """
    One logical unit of work.

    Everything written inside the block is committed together; any exception
    rolls the whole block back and is re-raised.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def compare_and_swap(db: Session, model, entity_id, expected: dict, values: dict) -> bool:
    """
    Conditionally update one row.

    The UPDATE only matches while every column in ``expected`` still holds the
    given value. Returns True when the row was updated, False when another
    writer got there first (or the row is gone).
    """
    query = db.query(model).filter(model.id == entity_id)
    for column, value in expected.items():
        attr = getattr(model, column)
        query = query.filter(attr.is_(None) if value is None else attr == value)
    return query.update(values, synchronize_session=False) == 1
