from contextlib import contextmanager

import structlog
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from orderpay import events
from orderpay.config import settings

logger = structlog.get_logger(__name__)

DATABASE_URL = settings.DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """Commit on success and roll back on error, at the outermost level only.

    Nested calls join the surrounding unit, so a ledger write made inside an
    orchestrator callback commits together with the order transition.
    """
    depth = db.info.get("uow_depth", 0)
    db.info["uow_depth"] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except Exception:
        if depth == 0:
            db.rollback()
            events.discard_pending(db)
        raise
    finally:
        db.info["uow_depth"] = depth

    if depth == 0:
        events.flush_pending(db)


def run_in_transaction(db: Session, fn, attempts: int = 3):
    """Run ``fn`` in its own unit of work, retrying on concurrent writers.

    A stale version counter or a unique-key race means another request
    changed the same rows first; the retry re-reads committed state, which
    turns duplicate callbacks into no-ops.
    """
    for attempt in range(1, attempts + 1):
        try:
            with unit_of_work(db):
                return fn()
        except (StaleDataError, IntegrityError) as exc:
            if db.info.get("uow_depth", 0) or attempt == attempts:
                raise
            logger.warning(
                "transaction.retry",
                attempt=attempt,
                error=exc.__class__.__name__,
            )
