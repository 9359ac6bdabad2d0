import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Query
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medvault.config import configure_logging

from . import models
from .db import get_db, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(os.getenv("MEDVAULT_LOG_LEVEL", "INFO"))
    init_db()
    yield


app = FastAPI(title="Burned Token Registry", version="0.1", lifespan=lifespan)


class BurnIn(BaseModel):
    token_id: str
    burned_by: Optional[str] = None
    metadata: Optional[dict] = None


class BurnedOut(BaseModel):
    token_id: str
    burned_at: str
    burned_by: str
    metadata: Optional[dict] = None


def _record_to_dict(rec: models.BurnedToken) -> dict:
    burned_at = rec.burned_at
    if burned_at.tzinfo is None:
        burned_at = burned_at.replace(tzinfo=timezone.utc)
    return {
        "token_id": rec.token_id,
        "burned_at": burned_at.isoformat(),
        "burned_by": rec.burned_by,
        "metadata": json.loads(rec.meta) if rec.meta else None,
    }


@app.post("/tokens/burn")
def burn_token(payload: BurnIn, db: Session = Depends(get_db)):
    existing = db.get(models.BurnedToken, payload.token_id)
    if not existing:
        existing = models.BurnedToken(
            token_id=payload.token_id,
            burned_at=datetime.now(timezone.utc),
            burned_by=payload.burned_by or "anonymous",
            meta=json.dumps(payload.metadata) if payload.metadata else None,
        )
        db.add(existing)
        try:
            db.commit()
            logger.info("Token %s burned", payload.token_id)
        except IntegrityError:
            # Another request burned it first; report that record.
            db.rollback()
            existing = db.get(models.BurnedToken, payload.token_id)
    return {"success": True, "token_id": payload.token_id, "burned_at": _record_to_dict(existing)["burned_at"]}


@app.get("/tokens/check")
def check_token(token_id: str = Query(..., description="Token to look up"), db: Session = Depends(get_db)):
    return {
        "token_id": token_id,
        "is_burned": db.get(models.BurnedToken, token_id) is not None,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/tokens/burned", response_model=List[BurnedOut])
def list_burned(db: Session = Depends(get_db)):
    recs = db.query(models.BurnedToken).order_by(models.BurnedToken.burned_at.desc()).limit(100).all()
    return [_record_to_dict(r) for r in recs]


@app.post("/tokens/burned/cleanup")
def cleanup_burned(days: int = Query(default=30, ge=1), db: Session = Depends(get_db)):
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    deleted = db.query(models.BurnedToken).filter(models.BurnedToken.burned_at < cutoff).delete(synchronize_session=False)
    db.commit()
    logger.info("Cleaned up %d old burned tokens", deleted)
    return {"deleted": deleted}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}
