from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from lms_subscription_svc.config import get_settings

Base = declarative_base()


def make_engine(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db() -> None:
    # Import models so their tables are registered on Base.metadata
    from lms_subscription_svc.models import account, subscription  # noqa: F401
    Base.metadata.create_all(bind=engine)


def get_db():
    """
    FastAPI dependency yielding a SQLAlchemy session per request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
