"""
Access tokens gating release of a file's key and IV.

A token carries everything a viewer needs to decrypt (cid, key, iv, file name
and type) plus a sharing policy. Validity is recomputed from the persisted
fields on every check; the only mutations are record_view and revoke, both
applied through the store's compare-and-set loop.
"""

import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, ClassVar, Dict, List, Optional

from . import crypto
from .errors import (
    DuplicateTokenError,
    RegistryError,
    TokenExhaustedError,
    TokenExpiredError,
    TokenInactiveError,
    TokenNotFoundError,
    TokenNotYetValidError,
    TokenValidationError,
)
from .timeutil import end_of, ensure_utc, from_iso, start_of, to_iso, utc_now

logger = logging.getLogger(__name__)

PUBLIC = "public"
TOKEN_KEY_PREFIX = "access_token_"
TOKEN_INDEX_KEY = "all_access_tokens"

ONE_TIME_SAFETY_WINDOW = timedelta(days=7)
DAY_PASS_WINDOW = timedelta(hours=24)
DEFAULT_CUSTOM_WINDOW = timedelta(days=7)


class ShareType(str, Enum):
    ONE_TIME = "one-time"
    DAY_PASS = "24-hours"
    CUSTOM = "custom"
    PERMANENT = "permanent"


REASON_NOT_FOUND = "Token not found"
REASON_REVOKED = "Token has been revoked"
REASON_ONE_TIME_USED = "This one-time link has already been used"
REASON_MAX_VIEWS = "Maximum views reached"
REASON_EXPIRED = "Token has expired"
REASON_NOT_YET = "Access not yet available"
REASON_PERIOD_ENDED = "Access period has ended"


@dataclass(frozen=True)
class OneTimePolicy:
    expires_at: datetime
    share_type: ClassVar[ShareType] = ShareType.ONE_TIME

    def check(self, now: datetime):
        if now > self.expires_at:
            return TokenExpiredError, REASON_EXPIRED
        return None

    def is_over(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict:
        return {"expires_at": to_iso(self.expires_at)}


@dataclass(frozen=True)
class DayPassPolicy(OneTimePolicy):
    share_type: ClassVar[ShareType] = ShareType.DAY_PASS


@dataclass(frozen=True)
class CustomPolicy:
    valid_from: datetime
    valid_until: datetime
    share_type: ClassVar[ShareType] = ShareType.CUSTOM

    def check(self, now: datetime):
        if now < self.valid_from:
            return TokenNotYetValidError, REASON_NOT_YET
        if now > self.valid_until:
            return TokenExpiredError, REASON_PERIOD_ENDED
        return None

    def is_over(self, now: datetime) -> bool:
        return now > self.valid_until

    def to_dict(self) -> Dict:
        return {"valid_from": to_iso(self.valid_from), "valid_until": to_iso(self.valid_until)}


@dataclass(frozen=True)
class PermanentPolicy:
    share_type: ClassVar[ShareType] = ShareType.PERMANENT

    def check(self, now: datetime):
        return None

    def is_over(self, now: datetime) -> bool:
        return False

    def to_dict(self) -> Dict:
        return {}


_POLICIES = {cls.share_type: cls for cls in (OneTimePolicy, DayPassPolicy, CustomPolicy, PermanentPolicy)}


def policy_from_dict(share_type: str, data: Dict):
    share_type = ShareType(share_type)
    if share_type is ShareType.CUSTOM:
        return CustomPolicy(valid_from=from_iso(data["valid_from"]), valid_until=from_iso(data["valid_until"]))
    if share_type is ShareType.PERMANENT:
        return PermanentPolicy()
    return _POLICIES[share_type](expires_at=from_iso(data["expires_at"]))


@dataclass
class AccessToken:
    token_id: str
    cid: str
    encryption_key: str
    iv: bytes
    file_name: str
    file_type: str
    policy: object
    created_at: datetime
    created_by: str
    max_views: Optional[int] = None
    view_count: int = 0
    is_active: bool = True
    shared_with: str = PUBLIC

    @property
    def share_type(self) -> ShareType:
        return self.policy.share_type

    @property
    def expires_at(self) -> Optional[datetime]:
        return getattr(self.policy, "expires_at", None)

    @property
    def valid_from(self) -> Optional[datetime]:
        return getattr(self.policy, "valid_from", None)

    @property
    def valid_until(self) -> Optional[datetime]:
        return getattr(self.policy, "valid_until", None)

    @property
    def is_exhausted(self) -> bool:
        return self.max_views is not None and self.view_count >= self.max_views

    @property
    def key(self) -> bytes:
        return crypto.import_key(self.encryption_key)

    def to_dict(self) -> Dict:
        data = {
            "token_id": self.token_id,
            "cid": self.cid,
            "encryption_key": self.encryption_key,
            "iv": crypto.iv_to_list(self.iv),
            "file_name": self.file_name,
            "file_type": self.file_type,
            "share_type": self.share_type.value,
            "max_views": self.max_views,
            "view_count": self.view_count,
            "is_active": self.is_active,
            "created_at": to_iso(self.created_at),
            "created_by": self.created_by,
            "shared_with": self.shared_with,
        }
        data.update(self.policy.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "AccessToken":
        return cls(
            token_id=data["token_id"],
            cid=data["cid"],
            encryption_key=data["encryption_key"],
            iv=crypto.iv_from_list(data["iv"]),
            file_name=data["file_name"],
            file_type=data.get("file_type", ""),
            policy=policy_from_dict(data["share_type"], data),
            created_at=from_iso(data["created_at"]),
            created_by=data.get("created_by", "unknown"),
            max_views=data.get("max_views"),
            view_count=data.get("view_count", 0),
            is_active=data.get("is_active", True),
            shared_with=data.get("shared_with", PUBLIC),
        )


@dataclass
class ValidationResult:
    valid: bool
    token: Optional[AccessToken] = None
    reason: Optional[str] = None
    error: Optional[type] = field(default=None, repr=False)

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def raise_for_status(self) -> AccessToken:
        """Return the token when valid, otherwise raise the matching TokenValidationError."""
        if self.valid:
            return self.token
        error = self.error or TokenValidationError
        raise error(self.reason, token_id=self.token.token_id if self.token else None)


def _rejected(token: Optional[AccessToken], error: type, reason: str) -> ValidationResult:
    return ValidationResult(valid=False, token=token, reason=reason, error=error)


def exhausted_reason(token: AccessToken) -> str:
    return REASON_ONE_TIME_USED if token.share_type is ShareType.ONE_TIME else REASON_MAX_VIEWS


def check_token(token: Optional[AccessToken], now: datetime) -> ValidationResult:
    """
    Evaluate a token's policy at `now` without touching any state.
    First failing check wins: existence, active flag, view budget, then the
    time fields that belong to the token's own share type.
    """
    if token is None:
        return _rejected(None, TokenNotFoundError, REASON_NOT_FOUND)
    if not token.is_active:
        if token.is_exhausted:
            return _rejected(token, TokenExhaustedError, exhausted_reason(token))
        return _rejected(token, TokenInactiveError, REASON_REVOKED)
    if token.is_exhausted:
        return _rejected(token, TokenExhaustedError, exhausted_reason(token))
    failure = token.policy.check(ensure_utc(now))
    if failure:
        return _rejected(token, *failure)
    return ValidationResult(valid=True, token=token)


def _with_view(token: AccessToken) -> AccessToken:
    token.view_count += 1
    if token.is_exhausted:
        token.is_active = False
    return token


def can_never_validate(token: AccessToken, now: datetime) -> bool:
    """True when no future check of this token can succeed. Permanent tokens are always kept."""
    if token.share_type is ShareType.PERMANENT:
        return False
    return not token.is_active or token.is_exhausted or token.policy.is_over(ensure_utc(now))


_CID_PREFIX_CHARS = re.compile(r"[^A-Za-z0-9]")


def generate_token_id(cid: str, now: datetime) -> str:
    """Content-id prefix, millisecond timestamp and a random suffix."""
    prefix = _CID_PREFIX_CHARS.sub("", cid)[:8] or "tok"
    millis = int(ensure_utc(now).timestamp() * 1000)
    return f"{prefix}-{millis}-{secrets.token_hex(6)}"


def _build_policy(
    share_type: ShareType,
    now: datetime,
    valid_from: date | datetime | None,
    valid_until: date | datetime | None,
    custom_days: Optional[float],
):
    if share_type is not ShareType.CUSTOM and (valid_from is not None or valid_until is not None or custom_days is not None):
        raise ValueError(f"{share_type.value} tokens do not take a custom validity window")
    if share_type is ShareType.ONE_TIME:
        return OneTimePolicy(expires_at=now + ONE_TIME_SAFETY_WINDOW)
    if share_type is ShareType.DAY_PASS:
        return DayPassPolicy(expires_at=now + DAY_PASS_WINDOW)
    if share_type is ShareType.PERMANENT:
        return PermanentPolicy()

    if valid_from is not None or valid_until is not None:
        if valid_from is None or valid_until is None:
            raise ValueError("custom tokens need both valid_from and valid_until")
        start, end = start_of(valid_from), end_of(valid_until)
    elif custom_days is not None:
        if custom_days <= 0:
            raise ValueError("custom_days must be positive")
        start, end = now, now + timedelta(days=custom_days)
    else:
        logger.info("Custom share without a window; defaulting to %s", DEFAULT_CUSTOM_WINDOW)
        start, end = now, now + DEFAULT_CUSTOM_WINDOW
    if end < start:
        raise ValueError("valid_until is before valid_from")
    return CustomPolicy(valid_from=start, valid_until=end)


class TokenManager:
    """Creates, persists, validates and mutates access tokens in a KeyValueStore."""

    def __init__(self, store, clock: Callable[[], datetime] = utc_now, burn_registry=None):
        self.kv = store
        self.clock = clock
        self.burn_registry = burn_registry

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_utc(now if now is not None else self.clock())

    @staticmethod
    def _key(token_id: str) -> str:
        return f"{TOKEN_KEY_PREFIX}{token_id}"

    def create_token(
        self,
        cid: str,
        key: bytes | str,
        iv: bytes,
        file_name: str,
        file_type: str,
        share_type: ShareType | str,
        created_by: str,
        valid_from: date | datetime | None = None,
        valid_until: date | datetime | None = None,
        custom_days: Optional[float] = None,
        max_views: Optional[int] = None,
        shared_with: str = PUBLIC,
    ) -> AccessToken:
        """Mint a token (not yet persisted; call store())."""
        share_type = ShareType(share_type)
        now = self._now()
        encoded_key = crypto.export_key(key) if isinstance(key, bytes) else crypto.export_key(crypto.import_key(key))
        if len(iv) != crypto.IV_SIZE:
            raise ValueError(f"IV must be {crypto.IV_SIZE} bytes")
        if share_type is ShareType.ONE_TIME:
            max_views = 1
        elif max_views is not None and max_views < 1:
            raise ValueError("max_views must be at least 1")
        return AccessToken(
            token_id=generate_token_id(cid, now),
            cid=cid,
            encryption_key=encoded_key,
            iv=bytes(iv),
            file_name=file_name,
            file_type=file_type,
            policy=_build_policy(share_type, now, valid_from, valid_until, custom_days),
            created_at=now,
            created_by=created_by,
            max_views=max_views,
            shared_with=shared_with,
        )

    def store(self, token: AccessToken) -> None:
        """Persist a new token. Storing an id twice is a programming error."""
        if not self.kv.compare_and_set(self._key(token.token_id), None, json.dumps(token.to_dict())):
            raise DuplicateTokenError(f"Token {token.token_id} already exists")

        def add_to_index(raw):
            ids = json.loads(raw) if raw else []
            if token.token_id not in ids:
                ids.append(token.token_id)
            return json.dumps(ids)

        self.kv.update(TOKEN_INDEX_KEY, add_to_index)
        logger.info("Access token stored: %s (%s)", token.token_id, token.share_type.value)

    def get(self, token_id: str) -> Optional[AccessToken]:
        raw = self.kv.get(self._key(token_id))
        if raw is None:
            return None
        try:
            return AccessToken.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Unreadable token record %s: %s", token_id, exc)
            return None

    def validate(self, token_id: str, now: Optional[datetime] = None) -> ValidationResult:
        """Read-only check; never changes view_count or is_active."""
        result = check_token(self.get(token_id), self._now(now))
        if result.valid and self.burn_registry is not None and self.burn_registry.is_burned(token_id):
            return _rejected(result.token, TokenExhaustedError, exhausted_reason(result.token))
        return result

    def record_view(self, token_id: str) -> Optional[AccessToken]:
        """
        Count one genuine access. Burns the token when the view budget is used up.
        Not idempotent: call exactly once per real view.
        """
        updated: List[AccessToken] = []

        def bump(raw):
            updated.clear()
            if raw is None:
                return None
            token = _with_view(AccessToken.from_dict(json.loads(raw)))
            updated.append(token)
            return json.dumps(token.to_dict())

        self.kv.update(self._key(token_id), bump)
        if not updated:
            return None
        self._after_view(updated[0])
        return updated[0]

    def consume(self, token_id: str, now: Optional[datetime] = None) -> ValidationResult:
        """
        Validate and count a view in one compare-and-set step, so concurrent
        viewers cannot both pass the check on a token with one view left.
        """
        now = self._now(now)
        outcome: List[ValidationResult] = []

        def check_and_bump(raw):
            outcome.clear()
            token = AccessToken.from_dict(json.loads(raw)) if raw is not None else None
            result = check_token(token, now)
            if not result.valid:
                outcome.append(result)
                return raw
            token = _with_view(token)
            outcome.append(ValidationResult(valid=True, token=token))
            return json.dumps(token.to_dict())

        pre = self.validate(token_id, now)
        if not pre.valid:
            return pre
        self.kv.update(self._key(token_id), check_and_bump)
        result = outcome[0]
        if result.valid:
            self._after_view(result.token)
        return result

    def _after_view(self, token: AccessToken) -> None:
        if token.is_exhausted and token.view_count == token.max_views:
            logger.info("Token burned after %d view(s): %s", token.view_count, token.token_id)
            self._notify_burned(token)

    def _notify_burned(self, token: AccessToken) -> None:
        if self.burn_registry is None:
            return
        try:
            self.burn_registry.burn(token.token_id, burned_by=token.created_by, metadata={"cid": token.cid})
        except RegistryError as exc:
            logger.warning("Could not publish burn of %s: %s", token.token_id, exc)

    def revoke(self, token_id: str) -> bool:
        """Deactivate a token. Returns False when the token does not exist."""
        found = []

        def deactivate(raw):
            found.clear()
            if raw is None:
                return None
            found.append(True)
            data = json.loads(raw)
            data["is_active"] = False
            return json.dumps(data)

        self.kv.update(self._key(token_id), deactivate)
        if found:
            logger.info("Token revoked: %s", token_id)
        return bool(found)

    def token_ids(self) -> List[str]:
        return self.kv.get_json(TOKEN_INDEX_KEY, default=[])

    def _all(self) -> List[AccessToken]:
        tokens = []
        for token_id in self.token_ids():
            token = self.get(token_id)
            if token:
                tokens.append(token)
        return tokens

    def cleanup(self, now: Optional[datetime] = None) -> List[str]:
        """Delete tokens that can never validate again. Returns the removed ids."""
        now = self._now(now)
        removed = []
        for token_id in self.token_ids():
            key = self._key(token_id)
            raw = self.kv.get(key)
            if raw is not None:
                token = self.get(token_id)
                if token is None or not can_never_validate(token, now):
                    continue
                if not self.kv.compare_and_set(key, raw, None):
                    continue
                logger.info("Cleaned up token: %s", token_id)
            removed.append(token_id)

        if removed:
            gone = set(removed)
            self.kv.update(
                TOKEN_INDEX_KEY,
                lambda raw: json.dumps([t for t in json.loads(raw or "[]") if t not in gone]),
            )
        return removed

    def list_by_creator(self, created_by: str) -> List[AccessToken]:
        tokens = [t for t in self._all() if t.created_by == created_by]
        return sorted(tokens, key=lambda t: t.created_at, reverse=True)

    def list_by_recipient(self, identity: str, now: Optional[datetime] = None) -> List[AccessToken]:
        """Tokens addressed to `identity` (or public) that currently validate."""
        now = self._now(now)
        tokens = [
            t for t in self._all()
            if t.shared_with in (identity, PUBLIC) and check_token(t, now).valid
        ]
        return sorted(tokens, key=lambda t: t.created_at, reverse=True)

    def list_for_file(self, cid: str) -> List[AccessToken]:
        return [t for t in self._all() if t.cid == cid]


def describe(token: AccessToken, now: Optional[datetime] = None) -> str:
    """Human-readable status block for a token."""
    now = ensure_utc(now or utc_now())
    result = check_token(token, now)
    status = "Active" if result.valid else result.reason

    if token.share_type is ShareType.ONE_TIME:
        expiry = f"One-time use ({token.view_count}/{token.max_views} views)"
    elif token.share_type is ShareType.DAY_PASS:
        seconds_left = max(0.0, (token.expires_at - now).total_seconds())
        hours_left = int(-(-seconds_left // 3600))
        expiry = f"24-hour access ({hours_left}h remaining)"
    elif token.share_type is ShareType.CUSTOM:
        expiry = f"Custom: {to_iso(token.valid_from)} to {to_iso(token.valid_until)}"
    else:
        expiry = "Permanent access"

    return f"{status}\n{expiry}\nViews: {token.view_count}\nCreated: {to_iso(token.created_at)}"
