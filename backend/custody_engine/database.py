"""
Custody Engine - Persistence wiring

One engine per process, built from DATABASE_URL. Production points it at
PostgreSQL; the test suite sets DATABASE_URL=sqlite:// before import so
module load never opens a PostgreSQL connection. Request handlers get a
session through get_db and wrap it in SqlAlchemyCustodyRepository.
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/custody_engine"
)

engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=DATABASE_URL.startswith("postgresql"))

# Repositories commit explicitly, once per workflow write
SessionLocal = sessionmaker(autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Per-request session, closed once the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create the custody tables (transactions, approvals, documents, logs, settings) if missing."""
    from .models import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
