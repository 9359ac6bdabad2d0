"""Per-file access control lists keyed by wallet address."""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .timeutil import ensure_utc, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

ACL_KEY_PREFIX = "acl_"

OWNER = "owner"
TEMPORARY = "temporary"
PERMANENT = "permanent"
GRANT_TYPES = (TEMPORARY, PERMANENT)

REASON_NO_ACL = "Access control list not found. This file may not exist or was uploaded without proper permissions."
REASON_NO_GRANT = "You do not have permission to access this file. Please request access from the file owner."
REASON_EXPIRED = "Your access to this file has expired."


@dataclass(frozen=True)
class AccessRule:
    wallet_address: str
    access_type: str
    granted_at: datetime
    granted_by: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and ensure_utc(now) > self.expires_at

    def to_dict(self) -> Dict:
        return {
            "wallet_address": self.wallet_address,
            "access_type": self.access_type,
            "granted_at": to_iso(self.granted_at),
            "granted_by": self.granted_by,
            "expires_at": to_iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AccessRule":
        return cls(
            wallet_address=data["wallet_address"],
            access_type=data["access_type"],
            granted_at=from_iso(data["granted_at"]),
            granted_by=data["granted_by"],
            expires_at=from_iso(data.get("expires_at")),
        )


@dataclass(frozen=True)
class FileAccessControl:
    cid: str
    owner: str
    created_at: datetime
    access_list: List[AccessRule] = field(default_factory=list)

    def rule_for(self, wallet_address: str) -> Optional[AccessRule]:
        for rule in self.access_list:
            if rule.wallet_address == wallet_address:
                return rule
        return None

    def to_dict(self) -> Dict:
        return {
            "cid": self.cid,
            "owner": self.owner,
            "created_at": to_iso(self.created_at),
            "access_list": [rule.to_dict() for rule in self.access_list],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "FileAccessControl":
        return cls(
            cid=data["cid"],
            owner=data["owner"],
            created_at=from_iso(data["created_at"]),
            access_list=[AccessRule.from_dict(r) for r in data.get("access_list", [])],
        )


@dataclass
class AccessDecision:
    has_access: bool
    reason: Optional[str] = None
    access_type: Optional[str] = None


def create_acl(cid: str, owner: str, now: Optional[datetime] = None) -> FileAccessControl:
    return FileAccessControl(cid=cid, owner=owner, created_at=ensure_utc(now or utc_now()))


def grant_access(
    acl: FileAccessControl,
    wallet_address: str,
    access_type: str,
    granted_by: str,
    duration_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> FileAccessControl:
    """Return a new ACL where `wallet_address` holds exactly one rule of the given type."""
    if access_type not in GRANT_TYPES:
        raise ValueError(f"access_type must be one of {GRANT_TYPES}")
    now = ensure_utc(now or utc_now())
    expires_at = None
    if access_type == TEMPORARY and duration_hours:
        expires_at = now + timedelta(hours=duration_hours)
    rule = AccessRule(
        wallet_address=wallet_address,
        access_type=access_type,
        granted_at=now,
        granted_by=granted_by,
        expires_at=expires_at,
    )
    others = [r for r in acl.access_list if r.wallet_address != wallet_address]
    return replace(acl, access_list=others + [rule])


def revoke_access(acl: FileAccessControl, wallet_address: str) -> FileAccessControl:
    return replace(acl, access_list=[r for r in acl.access_list if r.wallet_address != wallet_address])


def check_access(acl: Optional[FileAccessControl], wallet_address: str, now: Optional[datetime] = None) -> AccessDecision:
    """Owner first, then the access list; expired grants count as absent."""
    if acl is None:
        return AccessDecision(False, reason=REASON_NO_ACL)
    if acl.owner == wallet_address:
        return AccessDecision(True, access_type=OWNER)
    rule = acl.rule_for(wallet_address)
    if rule is None:
        return AccessDecision(False, reason=REASON_NO_GRANT)
    if rule.is_expired(now or utc_now()):
        return AccessDecision(False, reason=REASON_EXPIRED)
    return AccessDecision(True, access_type=rule.access_type)


def has_access(acl: FileAccessControl, wallet_address: str, now: Optional[datetime] = None) -> bool:
    return check_access(acl, wallet_address, now).has_access


def cleanup_expired_access(acl: FileAccessControl, now: Optional[datetime] = None) -> FileAccessControl:
    now = now or utc_now()
    return replace(acl, access_list=[r for r in acl.access_list if not r.is_expired(now)])


def _short(address: str, head: int, tail: int) -> str:
    if len(address) <= head + tail:
        return address
    return f"{address[:head]}...{address[-tail:]}"


def describe_access(acl: FileAccessControl) -> List[str]:
    count = len(acl.access_list)
    info = [
        f"Owner: {_short(acl.owner, 10, 8)}",
        f"Shared with: {count} {'person' if count == 1 else 'people'}",
    ]
    for rule in acl.access_list:
        kind = "Permanent" if rule.access_type == PERMANENT else "Temporary"
        expiry = f" (expires {rule.expires_at.date().isoformat()})" if rule.expires_at else ""
        info.append(f"  -> {_short(rule.wallet_address, 6, 4)}: {kind}{expiry}")
    return info


class AclRegistry:
    """Persists ACLs in a KeyValueStore, one record per cid."""

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.kv = store
        self.clock = clock

    @staticmethod
    def _key(cid: str) -> str:
        return f"{ACL_KEY_PREFIX}{cid}"

    def save(self, acl: FileAccessControl) -> None:
        self.kv.set(self._key(acl.cid), json.dumps(acl.to_dict()))

    def get(self, cid: str) -> Optional[FileAccessControl]:
        raw = self.kv.get(self._key(cid))
        if raw is None:
            return None
        try:
            return FileAccessControl.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Unreadable ACL for %s: %s", cid, exc)
            return None

    def create(self, cid: str, owner: str) -> FileAccessControl:
        acl = create_acl(cid, owner, now=self.clock())
        self.save(acl)
        return acl

    def ensure_acl(self, cid: str, requester: str) -> FileAccessControl:
        """
        Return the ACL for cid, creating one for files that predate ACLs.
        Such legacy files get the current requester installed as owner.
        """
        acl = self.get(cid)
        if acl is not None:
            return acl
        acl = create_acl(cid, requester, now=self.clock())
        if not self.kv.compare_and_set(self._key(cid), None, json.dumps(acl.to_dict())):
            return self.get(cid)
        logger.warning("Backfilled ACL for legacy file %s with owner %s", cid, requester)
        return acl

    def _modify(self, cid: str, fn) -> FileAccessControl:
        result: List[FileAccessControl] = []

        def apply(raw):
            result.clear()
            if raw is None:
                raise KeyError(f"No access control list for {cid}")
            acl = fn(FileAccessControl.from_dict(json.loads(raw)))
            result.append(acl)
            return json.dumps(acl.to_dict())

        self.kv.update(self._key(cid), apply)
        return result[0]

    def grant(self, cid: str, wallet_address: str, access_type: str, granted_by: str, duration_hours: Optional[float] = None) -> FileAccessControl:
        now = self.clock()
        acl = self._modify(cid, lambda acl: grant_access(acl, wallet_address, access_type, granted_by, duration_hours, now=now))
        logger.info("Granted %s access on %s to %s", access_type, cid, wallet_address)
        return acl

    def revoke(self, cid: str, wallet_address: str) -> FileAccessControl:
        acl = self._modify(cid, lambda acl: revoke_access(acl, wallet_address))
        logger.info("Revoked access on %s for %s", cid, wallet_address)
        return acl

    def verify_access(self, cid: str, wallet_address: str, now: Optional[datetime] = None) -> AccessDecision:
        return check_access(self.get(cid), wallet_address, now or self.clock())

    def cleanup(self, cid: str, now: Optional[datetime] = None) -> FileAccessControl:
        now = now or self.clock()
        return self._modify(cid, lambda acl: cleanup_expired_access(acl, now))
