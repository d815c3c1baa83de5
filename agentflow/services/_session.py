from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from agentflow.database import SessionLocal


@contextmanager
def session_scope(db: Optional[Session] = None) -> Iterator[Session]:
    """
    If db is provided, the caller owns the transaction: no commit/rollback/close here.
    If db is None, a session is opened, committed on success and rolled back on error.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        yield db
        if owns_db:
            db.commit()
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
