"""
Filesystem-backed collaborators for a single repo directory.

    repo/
      blobs/<sha256>.bin          content store (ciphertext only)
      pointers/<name>.json        latest signed record per pointer
      pointers/cache.json         last {value, sequence} seen per pointer
      shares.json                 share grants and share keys
      republish.json              republish enrollments (wrapped keys only)
"""
import json
import logging
import os
import threading

from pathlib import Path
from typing import Any, Dict, List

from ciphertree.crypto.hash import sha256_hex
from ciphertree.errors import NamingLayerError, NotFoundError, ValidationError
from ciphertree.pointer.protocol import NamingLayer
from ciphertree.pointer.records import ensure_sequence_advances, unmarshal_record, verify_pointer_record
from ciphertree.pointer.republish import RepublishCollaborator, RepublishEnrollment
from ciphertree.storage.base import ContentStore, ShareStore
from ciphertree.utils.dataModels import Share, ShareKey

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
    os.replace(tmp, path)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write(path, json.dumps(obj, indent=2).encode("utf-8"))


class LocalContentStore(ContentStore):
    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, address: str) -> Path:
        if not address or not all(c in "0123456789abcdef" for c in address):
            raise ValidationError(f"Invalid content address: {address!r}")
        return self.root / f"{address}.bin"

    def put(self, data: bytes) -> str:
        address = sha256_hex(data)
        path = self._path(address)
        if not path.exists():
            _atomic_write(path, data)
        return address

    def get(self, address: str) -> bytes:
        path = self._path(address)
        if not path.exists():
            raise NotFoundError(f"Blob {address} not found")
        return path.read_bytes()


class LocalNamingLayer(NamingLayer):
    """Stores the latest record per pointer and enforces monotonic sequences.

    ``offline`` makes fresh resolution fail so callers fall back to the cache.
    """

    def __init__(self, root: Path, offline: bool = False):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.offline = offline
        self._cache_path = root / "cache.json"
        self._lock = threading.Lock()

    def _record_path(self, name: str) -> Path:
        if not name.isalnum():
            raise NamingLayerError(f"Invalid pointer name: {name!r}")
        return self.root / f"{name}.json"

    def _remember(self, name: str, value: str, sequence: int) -> None:
        cache = _read_json(self._cache_path, {})
        cache[name] = {"value": value, "sequence": sequence}
        _write_json(self._cache_path, cache)

    def resolve_fresh(self, name: str, timeout: float) -> Dict[str, Any] | None:
        if self.offline:
            raise NamingLayerError("Naming layer unreachable")
        with self._lock:
            path = self._record_path(name)
            if not path.exists():
                return None
            raw = json.loads(path.read_text(encoding="utf-8"))
            self._remember(name, raw["value"], raw["sequence"])
            return raw

    def resolve_cached(self, name: str) -> Dict[str, Any] | None:
        with self._lock:
            return _read_json(self._cache_path, {}).get(name)

    def submit(self, name: str, wire_record: bytes) -> None:
        if self.offline:
            raise NamingLayerError("Naming layer unreachable")
        try:
            record = unmarshal_record(name, wire_record)
        except ValidationError as e:
            raise NamingLayerError(f"Rejected record for {name}: {e}") from None
        if not verify_pointer_record(record):
            raise NamingLayerError(f"Rejected record for {name}: bad signature")
        with self._lock:
            path = self._record_path(name)
            current = json.loads(path.read_text(encoding="utf-8"))["sequence"] if path.exists() else None
            ensure_sequence_advances(record.sequence, current)
            _atomic_write(path, wire_record)
            self._remember(name, record.value, record.sequence)
        logger.debug(f"Stored {name} seq {record.sequence}")


class JsonShareStore(ShareStore):
    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, List[Dict[str, Any]]]:
        return _read_json(self.path, {"shares": [], "shareKeys": []})

    def _save(self, data: Dict[str, List[Dict[str, Any]]]) -> None:
        _write_json(self.path, data)

    def add_share(self, share: Share, keys: List[ShareKey]) -> None:
        with self._lock:
            data = self._load()
            data["shares"].append(share.to_dict())
            data["shareKeys"].extend(k.to_dict() for k in keys)
            self._save(data)

    def get_share(self, share_id: str) -> Share | None:
        with self._lock:
            return next((Share.from_dict(s) for s in self._load()["shares"] if s["id"] == share_id), None)

    def list_shares(self, sharer_id=None, recipient_id=None, pointer_name=None) -> List[Share]:
        with self._lock:
            shares = [Share.from_dict(s) for s in self._load()["shares"]]
        return [
            s for s in shares
            if (sharer_id is None or s.sharer_id == sharer_id)
            and (recipient_id is None or s.recipient_id == recipient_id)
            and (pointer_name is None or s.pointer_name == pointer_name)
        ]

    def update_share(self, share: Share) -> None:
        with self._lock:
            data = self._load()
            for i, s in enumerate(data["shares"]):
                if s["id"] == share.id:
                    data["shares"][i] = share.to_dict()
                    self._save(data)
                    return
        raise NotFoundError("Share not found")

    def delete_share(self, share_id: str) -> None:
        with self._lock:
            data = self._load()
            data["shares"] = [s for s in data["shares"] if s["id"] != share_id]
            data["shareKeys"] = [k for k in data["shareKeys"] if k["shareId"] != share_id]
            self._save(data)

    def share_keys(self, share_id: str) -> List[ShareKey]:
        with self._lock:
            return [ShareKey.from_dict(k) for k in self._load()["shareKeys"] if k["shareId"] == share_id]

    def keys_for_item(self, item_id: str) -> List[ShareKey]:
        with self._lock:
            return [ShareKey.from_dict(k) for k in self._load()["shareKeys"] if k["itemId"] == item_id]

    def upsert_share_key(self, key: ShareKey) -> None:
        with self._lock:
            data = self._load()
            rows = data["shareKeys"]
            for i, k in enumerate(rows):
                if k["shareId"] == key.share_id and k["itemId"] == key.item_id:
                    rows[i] = key.to_dict()
                    break
            else:
                rows.append(key.to_dict())
            self._save(data)


class LocalRepublishQueue(RepublishCollaborator):
    """Holds republish enrollments, one per pointer, newest sequence wins."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def submit_wrapped_signing_key(self, enrollment: RepublishEnrollment) -> bool:
        with self._lock:
            data = _read_json(self.path, {})
            current = data.get(enrollment.pointer_name)
            if current is not None and current["sequence"] > enrollment.sequence:
                logger.warning(f"Refusing enrollment for {enrollment.pointer_name}: older than queued entry")
                return False
            data[enrollment.pointer_name] = enrollment.to_dict()
            _write_json(self.path, data)
        return True

    def enrollments(self) -> List[RepublishEnrollment]:
        with self._lock:
            return [RepublishEnrollment.from_dict(e) for e in _read_json(self.path, {}).values()]

    def record_republished(self, enrollment: RepublishEnrollment) -> None:
        with self._lock:
            data = _read_json(self.path, {})
            data[enrollment.pointer_name] = enrollment.to_dict()
            _write_json(self.path, data)
