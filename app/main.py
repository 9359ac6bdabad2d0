import base64
import binascii
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from medvault import acl, tokens
from medvault.blobs import content_id
from medvault.config import configure_logging
from medvault.errors import DuplicateTokenError, KeyFormatError
from medvault.registry import BurnRegistryClient

from . import models
from .db import get_db, get_store, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(os.getenv("MEDVAULT_LOG_LEVEL", "INFO"))
    # Initialize database schema at startup.
    init_db()
    yield


app = FastAPI(title="MedVault API", version="0.1", lifespan=lifespan)


class FileIn(BaseModel):
    data: str


class TokenIn(BaseModel):
    cid: str
    encryption_key: str
    iv: List[int]
    file_name: str
    file_type: str = ""
    share_type: Literal["one-time", "24-hours", "custom", "permanent"]
    created_by: str
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    custom_days: Optional[float] = None
    max_views: Optional[int] = None
    shared_with: str = tokens.PUBLIC


class AclIn(BaseModel):
    cid: str
    owner: str


class GrantIn(BaseModel):
    wallet_address: str
    access_type: Literal["temporary", "permanent"]
    granted_by: str
    duration_hours: Optional[float] = None


def get_token_manager() -> tokens.TokenManager:
    registry_url = os.getenv("MEDVAULT_BURN_REGISTRY_URL")
    registry = BurnRegistryClient(registry_url) if registry_url else None
    return tokens.TokenManager(get_store(), burn_registry=registry)


def get_acl_registry() -> acl.AclRegistry:
    return acl.AclRegistry(get_store())


def _listed(token: tokens.AccessToken) -> dict:
    # Listings never carry key material.
    data = token.to_dict()
    data.pop("encryption_key")
    data.pop("iv")
    return data


def _validation_to_dict(result: tokens.ValidationResult) -> dict:
    return {
        "valid": result.valid,
        "reason": result.reason,
        "code": result.code,
        "token": result.token.to_dict() if result.valid else None,
    }


def _acl_to_dict(record: acl.FileAccessControl) -> dict:
    data = record.to_dict()
    data["info"] = acl.describe_access(record)
    return data


@app.post("/files")
def upload_file(payload: FileIn, db: Session = Depends(get_db)):
    try:
        raw = base64.b64decode(payload.data, validate=True)
    except binascii.Error:
        raise HTTPException(status_code=400, detail="data must be base64")
    cid = content_id(raw)
    if not db.get(models.EncryptedFile, cid):
        db.add(
            models.EncryptedFile(
                cid=cid,
                data=payload.data,
                size=len(raw),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
        )
        db.commit()
        logger.info("Stored encrypted file %s (%d bytes)", cid, len(raw))
    return {"status": "stored", "cid": cid}


@app.get("/files/{cid}")
def download_file(cid: str, db: Session = Depends(get_db)):
    record = db.get(models.EncryptedFile, cid)
    if not record:
        raise HTTPException(status_code=404, detail="File not found. It may have expired or never been uploaded.")
    return {"cid": cid, "data": record.data}


@app.post("/tokens")
def create_token(payload: TokenIn, manager: tokens.TokenManager = Depends(get_token_manager)):
    try:
        token = manager.create_token(
            payload.cid,
            payload.encryption_key,
            bytes(payload.iv),
            payload.file_name,
            payload.file_type,
            payload.share_type,
            payload.created_by,
            valid_from=payload.valid_from,
            valid_until=payload.valid_until,
            custom_days=payload.custom_days,
            max_views=payload.max_views,
            shared_with=payload.shared_with,
        )
        manager.store(token)
    except DuplicateTokenError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except (KeyFormatError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return token.to_dict()


@app.get("/tokens")
def list_created(created_by: str = Query(...), manager: tokens.TokenManager = Depends(get_token_manager)):
    return [_listed(t) for t in manager.list_by_creator(created_by)]


@app.get("/tokens/shared-with/{identity}")
def list_received(identity: str, manager: tokens.TokenManager = Depends(get_token_manager)):
    return [_listed(t) for t in manager.list_by_recipient(identity)]


@app.get("/tokens/{token_id}/validate")
def validate_token(token_id: str, manager: tokens.TokenManager = Depends(get_token_manager)):
    return _validation_to_dict(manager.validate(token_id))


@app.post("/tokens/{token_id}/view")
def record_view(token_id: str, manager: tokens.TokenManager = Depends(get_token_manager)):
    result = manager.consume(token_id)
    if not result.valid:
        status = 404 if result.token is None else 403
        raise HTTPException(status_code=status, detail=result.reason)
    token = result.token
    return {"status": "viewed", "token_id": token_id, "view_count": token.view_count, "is_active": token.is_active}


@app.post("/tokens/{token_id}/revoke")
def revoke_token(token_id: str, manager: tokens.TokenManager = Depends(get_token_manager)):
    if not manager.revoke(token_id):
        raise HTTPException(status_code=404, detail=tokens.REASON_NOT_FOUND)
    return {"status": "revoked", "token_id": token_id}


@app.post("/tokens/cleanup")
def cleanup_tokens(manager: tokens.TokenManager = Depends(get_token_manager)):
    removed = manager.cleanup()
    return {"status": "cleaned", "removed": removed}


@app.post("/acl")
def create_acl(payload: AclIn, registry: acl.AclRegistry = Depends(get_acl_registry)):
    if registry.get(payload.cid):
        raise HTTPException(status_code=400, detail="Access control list already exists")
    return _acl_to_dict(registry.create(payload.cid, payload.owner))


@app.get("/acl/{cid}")
def get_acl(cid: str, registry: acl.AclRegistry = Depends(get_acl_registry)):
    record = registry.get(cid)
    if not record:
        raise HTTPException(status_code=404, detail=acl.REASON_NO_ACL)
    return _acl_to_dict(record)


@app.post("/acl/{cid}/grant")
def grant_access(cid: str, payload: GrantIn, registry: acl.AclRegistry = Depends(get_acl_registry)):
    try:
        record = registry.grant(cid, payload.wallet_address, payload.access_type, payload.granted_by, payload.duration_hours)
    except KeyError:
        raise HTTPException(status_code=404, detail=acl.REASON_NO_ACL)
    return _acl_to_dict(record)


@app.delete("/acl/{cid}/access/{wallet}")
def revoke_access(cid: str, wallet: str, registry: acl.AclRegistry = Depends(get_acl_registry)):
    try:
        record = registry.revoke(cid, wallet)
    except KeyError:
        raise HTTPException(status_code=404, detail=acl.REASON_NO_ACL)
    return _acl_to_dict(record)


@app.get("/acl/{cid}/verify")
def verify_access(cid: str, wallet: str = Query(...), registry: acl.AclRegistry = Depends(get_acl_registry)):
    decision = registry.verify_access(cid, wallet)
    return {"has_access": decision.has_access, "reason": decision.reason, "access_type": decision.access_type}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}
