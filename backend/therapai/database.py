"""
Database engine and session factory
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from therapai import config

def _normalise_url(url: str) -> str:
    # Hosted Postgres (Supabase, Heroku) hands out bare postgres:// URLs
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url

SQLALCHEMY_DATABASE_URL = _normalise_url(config.DATABASE_URL)

if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False}
    )
else:
    engine = create_engine(SQLALCHEMY_DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    """One session per request, closed afterwards"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
