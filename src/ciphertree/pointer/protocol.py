"""
Publish/resolve protocol over a mutable naming layer.

Resolution asks the naming layer for a fresh signed record first and falls
back to its cache when that times out or the layer is unreachable. Cached
answers are provisional. Publishing signs ``current + 1`` and retries with a
fresh resolution when the naming layer reports the sequence as stale.
"""
import logging
import threading

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from ciphertree.config import Settings, get_settings
from ciphertree.crypto.signing import SigningKeypair
from ciphertree.errors import (
    ConsistencyError,
    NamingLayerError,
    ResolutionError,
    StaleSequenceError,
    ValidationError,
    VaultError,
)
from ciphertree.pointer.records import (
    SOURCE_CACHE,
    SOURCE_FRESH,
    PointerRecord,
    build_pointer_record,
    derive_pointer_name,
    marshal_record,
    record_from_payload,
    verify_pointer_record,
)
from ciphertree.utils.codec import validate_resolution_payload

logger = logging.getLogger(__name__)


class NamingLayer(ABC):
    """Boundary to the mutable naming layer.

    Resolution methods return the raw JSON object (``{value, sequence}`` plus
    optional base64 signature fields) or None when the name is unknown.
    """

    @abstractmethod
    def resolve_fresh(self, name: str, timeout: float) -> Dict[str, Any] | None:
        """Raises TimeoutError or NamingLayerError when no answer is available."""

    @abstractmethod
    def resolve_cached(self, name: str) -> Dict[str, Any] | None:
        pass

    @abstractmethod
    def submit(self, name: str, wire_record: bytes) -> None:
        """Raises StaleSequenceError when the sequence does not advance."""


@dataclass
class PublishResult:
    name: str
    record: PointerRecord | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


class PointerClient:
    def __init__(self, naming: NamingLayer, settings: Settings | None = None):
        self.naming = naming
        self.settings = settings or get_settings()
        self._last_seen: Dict[str, int] = {}
        self._lock = threading.Lock()

    def last_seen(self, name: str) -> int | None:
        with self._lock:
            return self._last_seen.get(name)

    def _observe(self, name: str, sequence: int) -> None:
        with self._lock:
            last = self._last_seen.get(name)
            if last is not None and sequence < last:
                raise StaleSequenceError(sequence, last)
            self._last_seen[name] = sequence

    def _bump(self, name: str, sequence: int) -> None:
        with self._lock:
            self._last_seen[name] = max(sequence, self._last_seen.get(name, sequence))

    def _check_bundle(self, record: PointerRecord) -> None:
        if not record.has_signature:
            return
        if not verify_pointer_record(record):
            raise ConsistencyError(f"Pointer record for {record.name} failed signature verification")
        record.verified = True

    def _resolve_fresh(self, name: str) -> PointerRecord | None:
        try:
            raw = self.naming.resolve_fresh(name, self.settings.RESOLVE_TIMEOUT_SECONDS)
        except (TimeoutError, NamingLayerError) as e:
            logger.warning(f"Fresh resolution of {name} unavailable ({e}); falling back to cache")
            return None
        if raw is None:
            return None
        record = record_from_payload(name, validate_resolution_payload(raw), SOURCE_FRESH)
        self._check_bundle(record)
        self._observe(name, record.sequence)
        return record

    def _resolve_cached(self, name: str) -> PointerRecord | None:
        raw = self.naming.resolve_cached(name)
        if raw is None:
            return None
        try:
            record = record_from_payload(name, validate_resolution_payload(raw), SOURCE_CACHE)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed cached record for {name}: {e}")
            return None
        self._check_bundle(record)
        last = self.last_seen(name)
        if last is not None and record.sequence < last:
            logger.warning(f"Ignoring cached record for {name} at {record.sequence} (seen {last})")
            return None
        return record

    def resolve(self, name: str, require_verified: bool = False) -> PointerRecord:
        """Resolve ``name`` to its latest record.

        Raises ConsistencyError for a record whose signature bundle does not
        verify, StaleSequenceError for a fresh answer older than one already
        seen, and ResolutionError when no usable value exists anywhere.
        """
        record = self._resolve_fresh(name)
        if record is None:
            record = self._resolve_cached(name)
        if record is None:
            raise ResolutionError(f"No record found for {name}")
        if require_verified and record.is_provisional:
            raise ConsistencyError(f"Record for {name} is provisional and cannot be trusted")
        logger.debug(f"Resolved {name} -> seq {record.sequence} ({record.source})")
        return record

    def _current_sequence(self, name: str) -> int | None:
        try:
            resolved = self.resolve(name).sequence
        except ResolutionError:
            resolved = None
        except StaleSequenceError as e:
            resolved = e.last_known
        last = self.last_seen(name)
        if resolved is None:
            return last
        return resolved if last is None else max(resolved, last)

    def publish(self, keypair: SigningKeypair, value: str, lifetime_ms: int | None = None) -> PointerRecord:
        name = derive_pointer_name(keypair.public_key)
        lifetime = lifetime_ms if lifetime_ms is not None else self.settings.record_lifetime_ms
        attempts = self.settings.PUBLISH_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            current = self._current_sequence(name)
            sequence = 0 if current is None else current + 1
            record = build_pointer_record(keypair, value, sequence, lifetime)
            try:
                self.naming.submit(name, marshal_record(record))
            except StaleSequenceError as e:
                logger.warning(f"Publish of {name} at seq {sequence} rejected as stale (attempt {attempt}/{attempts})")
                self._bump(name, e.last_known)
                continue
            self._bump(name, sequence)
            logger.info(f"Published {name} seq {sequence}")
            return record
        raise ConsistencyError(f"Could not publish {name} after {attempts} attempts")

    def publish_batch(self, entries: Sequence[Tuple[SigningKeypair, str]]) -> List[PublishResult]:
        """Publish many pointers concurrently. One result per entry, in order."""
        if not entries:
            return []

        def _one(entry: Tuple[SigningKeypair, str]) -> PublishResult:
            keypair, value = entry
            name = derive_pointer_name(keypair.public_key)
            try:
                return PublishResult(name=name, record=self.publish(keypair, value))
            except VaultError as e:
                logger.error(f"Batch publish of {name} failed: {e}")
                return PublishResult(name=name, error=e)

        workers = min(self.settings.PUBLISH_CONCURRENCY, len(entries))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(_one, entries))
        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.warning(f"Batch publish: {failed}/{len(results)} failed")
        return results
