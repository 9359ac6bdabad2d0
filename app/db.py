from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from medvault.config import Settings
from medvault.store import SqlAlchemyStore, StoreBase

DB_URL = Settings.from_env().db_url

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
# Ciphertext blobs; tokens and ACLs share the engine through StoreBase's kv_entries.
Base = declarative_base()


def init_db():
    from . import models  # noqa: F401  registers encrypted_files on Base

    for metadata in (Base.metadata, StoreBase.metadata):
        metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store() -> SqlAlchemyStore:
    """Token and ACL records live in the same database as the blobs."""
    return SqlAlchemyStore(SessionLocal)
