import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi import HTTPException
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

# Create engine and session
db_url = os.getenv("DB_URL")

engine = None
SessionLocal = None
if db_url:
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    else:
        connect_args = {"options": "-csearch_path=public"}
    engine = create_engine(db_url, connect_args=connect_args)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create all tables defined in SQLAlchemy models (missing tables only)."""
    if engine is None:
        return
    from app.models import Base  # noqa: F401 registers every model
    Base.metadata.create_all(bind=engine, checkfirst=True)


def get_db():
    if SessionLocal is None:
        raise HTTPException(
            status_code=500,
            detail="Database is not configured. Missing DB_URL environment variable."
        )
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
