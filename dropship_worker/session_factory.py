from sqlalchemy.orm import Session

from dropship_worker.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
