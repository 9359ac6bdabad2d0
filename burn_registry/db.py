from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from medvault.config import Settings

# Burned tokens are kept apart from the vault's own database so one registry
# can serve several vault deployments.
DB_URL = Settings.from_env().burn_db_url

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db():
    from . import models  # noqa: F401  registers burned_tokens on Base

    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
