"""
Key-value persistence for tokens and ACLs.

Every store exposes get/set/delete over string keys plus compare_and_set,
which the token and ACL layers use to make read-modify-write updates atomic.
"""

import base64
import fcntl
import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Optional

from sqlalchemy import Column, String, Text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base

from .errors import ConcurrentUpdateError

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 10

_SAFE_KEY = re.compile(r"[A-Za-z0-9_.:\-]+")


class KeyValueStore:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        """
        Write `new` only if the current value equals `expected`.
        None stands for "absent" on both sides, so (None, v) is insert-if-missing
        and (v, None) is delete-if-unchanged. Returns whether the write happened.
        """
        raise NotImplementedError

    def update(self, key: str, fn: Callable[[Optional[str]], Optional[str]], attempts: int = MAX_CAS_ATTEMPTS) -> Optional[str]:
        """Apply fn to the current value with a compare-and-set retry loop."""
        for _ in range(attempts):
            current = self.get(key)
            new = fn(current)
            if new == current:
                return current
            if self.compare_and_set(key, current, new):
                return new
            logger.debug("compare_and_set conflict on %s, retrying", key)
        raise ConcurrentUpdateError(f"Could not update {key} after {attempts} attempts")

    def get_json(self, key: str, default=None):
        raw = self.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set_json(self, key: str, value) -> None:
        self.set(key, json.dumps(value))


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new
            return True


class JsonFileStore(KeyValueStore):
    """
    One file per key under a directory; survives process restarts.
    Keys outside the plain filename alphabet are stored under an encoded name.
    compare_and_set holds an flock on `.lock` so separate processes sharing
    the directory see one writer at a time.
    """

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._lock_path = self.base_dir / ".lock"

    def _path(self, key: str) -> Path:
        if _SAFE_KEY.fullmatch(key):
            return self.base_dir / f"{key}.json"
        encoded = base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")
        return self.base_dir / f"~{encoded}.json"

    @contextmanager
    def _locked(self):
        with self._lock, open(self._lock_path, "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, path: Path, value: Optional[str]) -> None:
        if value is None:
            path.unlink(missing_ok=True)
            return
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def get(self, key: str) -> Optional[str]:
        return self._read(self._path(key))

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        with self._locked():
            self._write(path, value)

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._locked():
            self._write(path, None)

    def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        path = self._path(key)
        with self._locked():
            if self._read(path) != expected:
                return False
            self._write(path, new)
            return True


StoreBase = declarative_base()


class KVEntry(StoreBase):
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


class SqlAlchemyStore(KeyValueStore):
    """Store backed by a single table; compare_and_set is a conditional UPDATE."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[str]:
        with self._session_factory() as db:
            entry = db.get(KVEntry, key)
            return entry.value if entry else None

    def set(self, key: str, value: str) -> None:
        with self._session_factory() as db:
            entry = db.get(KVEntry, key)
            if entry:
                entry.value = value
            else:
                db.add(KVEntry(key=key, value=value))
            db.commit()

    def delete(self, key: str) -> None:
        with self._session_factory() as db:
            db.query(KVEntry).filter(KVEntry.key == key).delete(synchronize_session=False)
            db.commit()

    def compare_and_set(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        with self._session_factory() as db:
            if expected is None:
                if new is None:
                    return db.get(KVEntry, key) is None
                db.add(KVEntry(key=key, value=new))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True
            query = db.query(KVEntry).filter(KVEntry.key == key, KVEntry.value == expected)
            if new is None:
                count = query.delete(synchronize_session=False)
            else:
                count = query.update({KVEntry.value: new}, synchronize_session=False)
            db.commit()
            return count == 1
