"""
Share grants and lazy revocation.

A grant moves through ``created -> active -> revoked -> pending rotation ->
purged``. Revoking only stamps ``revoked_at``; the item's key is rotated the
next time the owner mutates the item, after which the revoked rows are
deleted for good. Until then a revoked recipient can still read what it
could read before.
"""
import logging
import threading
import uuid

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from ciphertree.crypto.ecies import rewrap_key, wrap_key
from ciphertree.crypto.keys import generate_file_key, generate_folder_key, zeroize
from ciphertree.crypto.signing import SigningKeypair
from ciphertree.errors import NotFoundError, ResolutionError, RevocationRaceError, ShareConflictError, VaultError
from ciphertree.pointer.protocol import PointerClient
from ciphertree.pointer.records import PointerRecord
from ciphertree.storage.base import ContentStore, ShareStore
from ciphertree.utils.dataModels import ITEM_FILE, ITEM_FOLDER, Share, ShareKey
from ciphertree.utils.helper import now_ms

logger = logging.getLogger(__name__)


@dataclass
class ShareChild:
    key_type: str
    item_id: str
    wrapped_key: bytes  # wrapped for the owner


@dataclass
class ShareItem:
    item_type: str
    pointer_name: str
    name: str
    wrapped_key: bytes  # wrapped for the owner
    children: List[ShareChild] = field(default_factory=list)


class RotationTarget(ABC):
    """An item the owner is about to write, as seen by the rotation step."""

    item_type: str
    item_id: str
    pointer_name: str

    @property
    @abstractmethod
    def signing_keypair(self) -> SigningKeypair:
        pass

    @abstractmethod
    def reencrypt(self, new_key: bytearray) -> bytes:
        """Return the item's new blob sealed under ``new_key``.

        Must not publish anything or discard the current key. ``new_key`` is
        wiped once rotation ends; copy it to keep using it.
        """

    def after_publish(self, new_key: bytearray, owner_wrapped_key: bytes, record: PointerRecord) -> None:
        """Runs once the item's own record points at the new blob."""

    def rollback(self) -> None:
        """Undo whatever ``after_publish`` got done before it failed."""


@dataclass
class RotationResult:
    owner_wrapped_key: bytes
    address: str
    record: PointerRecord
    rewrapped: List[str]
    purged: List[str]


class SharingEngine:
    def __init__(self, store: ShareStore, content: ContentStore, pointers: PointerClient):
        self.store = store
        self.content = content
        self.pointers = pointers
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, pointer_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(pointer_name, threading.Lock())

    # ─────────────────────────────────────────────────────────────
    # Grants
    # ─────────────────────────────────────────────────────────────
    def create_share(
        self,
        sharer_id: str,
        recipient_id: str,
        recipient_public_key: bytes,
        owner_private_key: bytes,
        item: ShareItem,
    ) -> Tuple[Share, List[ShareKey]]:
        if sharer_id == recipient_id:
            raise ShareConflictError("Cannot share with yourself")
        existing = self.store.list_shares(sharer_id=sharer_id, recipient_id=recipient_id, pointer_name=item.pointer_name)
        if any(s.is_active for s in existing):
            raise ShareConflictError("Share already exists for this item and recipient")
        # Re-sharing supersedes revoked grants for the same triple
        for stale in existing:
            logger.info(f"Purging revoked share {stale.id} superseded by a new grant")
            self.store.delete_share(stale.id)

        share = Share(
            id=str(uuid.uuid4()),
            sharer_id=sharer_id,
            recipient_id=recipient_id,
            recipient_public_key=bytes(recipient_public_key).hex(),
            item_type=item.item_type,
            pointer_name=item.pointer_name,
            item_name=item.name,
            wrapped_item_key=rewrap_key(item.wrapped_key, owner_private_key, recipient_public_key).hex(),
            created_at=now_ms(),
        )
        keys = [
            ShareKey(
                share_id=share.id,
                key_type=child.key_type,
                item_id=child.item_id,
                wrapped_key=rewrap_key(child.wrapped_key, owner_private_key, recipient_public_key).hex(),
            )
            for child in item.children
        ]
        self.store.add_share(share, keys)
        logger.info(f"Created {item.item_type} share {share.id} with {len(keys)} sub-item keys")
        return share, keys

    def add_share_keys(
        self, share_id: str, sharer_id: str, owner_private_key: bytes, children: List[ShareChild]
    ) -> List[ShareKey]:
        """Grant keys for items created inside an already shared folder."""
        share = self.store.get_share(share_id)
        if share is None or share.sharer_id != sharer_id:
            raise NotFoundError("Share not found")
        if not share.is_active:
            raise ShareConflictError("Share has been revoked")
        recipient = bytes.fromhex(share.recipient_public_key)
        keys = [
            ShareKey(share.id, c.key_type, c.item_id, rewrap_key(c.wrapped_key, owner_private_key, recipient).hex())
            for c in children
        ]
        for key in keys:
            self.store.upsert_share_key(key)
        return keys

    def revoke_share(self, share_id: str, sharer_id: str) -> Share:
        share = self.store.get_share(share_id)
        if share is None or share.sharer_id != sharer_id:
            raise NotFoundError("Share not found")
        lock = self._lock_for(share.pointer_name)
        if not lock.acquire(blocking=False):
            raise RevocationRaceError(f"Item {share.pointer_name} is being rotated; retry the revocation")
        try:
            if share.revoked_at is None:
                share.revoked_at = now_ms()
                self.store.update_share(share)
                logger.info(f"Revoked share {share.id}; rotation deferred to next mutation")
            return share
        finally:
            lock.release()

    def hide_share(self, share_id: str, recipient_id: str) -> Share:
        share = self.store.get_share(share_id)
        if share is None or share.recipient_id != recipient_id:
            raise NotFoundError("Share not found")
        share.hidden_by_recipient = True
        self.store.update_share(share)
        return share

    def rename_item(self, sharer_id: str, pointer_name: str, new_name: str) -> int:
        renamed = 0
        for share in self.store.list_shares(sharer_id=sharer_id, pointer_name=pointer_name):
            share.item_name = new_name
            self.store.update_share(share)
            renamed += 1
        return renamed

    def drop_item_shares(self, sharer_id: str, pointer_names: List[str]) -> List[str]:
        """Delete every grant, active or revoked, on items that left the tree."""
        dropped = []
        for pointer_name in pointer_names:
            for share in self.store.list_shares(sharer_id=sharer_id, pointer_name=pointer_name):
                self.store.delete_share(share.id)
                dropped.append(share.id)
        if dropped:
            logger.info(f"Dropped {len(dropped)} shares on removed items")
        return dropped

    def received_shares(self, recipient_id: str, include_hidden: bool = False) -> List[Share]:
        return [
            s for s in self.store.list_shares(recipient_id=recipient_id)
            if s.is_active and (include_hidden or not s.hidden_by_recipient)
        ]

    def sent_shares(self, sharer_id: str) -> List[Share]:
        return [s for s in self.store.list_shares(sharer_id=sharer_id) if s.is_active]

    def share_keys(self, share_id: str) -> List[ShareKey]:
        return self.store.share_keys(share_id)

    def pending_rotation(self, pointer_name: str) -> List[Share]:
        """Revoked grants on ``pointer_name`` still waiting for a key rotation."""
        revoked = [s for s in self.store.list_shares(pointer_name=pointer_name) if not s.is_active]
        return sorted(revoked, key=lambda s: s.revoked_at)

    # ─────────────────────────────────────────────────────────────
    # Key propagation and rotation
    # ─────────────────────────────────────────────────────────────
    def propagate_key(self, item_id: str, new_key: bytes) -> int:
        """Rewrap ``new_key`` into every active share key that grants ``item_id``."""
        updated = 0
        for key in self.store.keys_for_item(item_id):
            share = self.store.get_share(key.share_id)
            if share is None or not share.is_active:
                continue
            key.wrapped_key = wrap_key(new_key, bytes.fromhex(share.recipient_public_key)).hex()
            self.store.upsert_share_key(key)
            updated += 1
        if updated:
            logger.debug(f"Propagated new key for {item_id} to {updated} share keys")
        return updated

    def on_next_mutation(self, target: RotationTarget, owner_public_key: bytes) -> RotationResult | None:
        """Rotate ``target``'s key if revoked grants are waiting on it.

        Returns None (and does nothing) when there is nothing to rotate. The
        new key is wrapped for the owner and every remaining recipient before
        anything is published. If the target's follow-up step fails, the
        item's record is put back to its previous address and the revoked
        grants stay pending for the next write.
        """
        with self._lock_for(target.pointer_name):
            pending = self.pending_rotation(target.pointer_name)
            if not pending:
                return None
            active = [s for s in self.store.list_shares(pointer_name=target.pointer_name) if s.is_active]
            logger.info(f"Rotating key for {target.pointer_name}: {len(pending)} revoked, {len(active)} active")

            new_key = generate_folder_key() if target.item_type == ITEM_FOLDER else generate_file_key()
            try:
                owner_wrapped = wrap_key(new_key, owner_public_key)
                recipient_keys = {s.id: wrap_key(new_key, bytes.fromhex(s.recipient_public_key)).hex() for s in active}
                blob = target.reencrypt(new_key)
                address = self.content.put(blob)
                previous = self._current_value(target.pointer_name)

                record = self.pointers.publish(target.signing_keypair, address)
                try:
                    target.after_publish(new_key, owner_wrapped, record)
                except Exception:
                    self._roll_back(target, previous)
                    raise

                rewrapped = []
                for share in active:
                    if share.item_type == ITEM_FOLDER:
                        share.wrapped_item_key = recipient_keys[share.id]
                        self.store.update_share(share)
                    else:
                        self.store.upsert_share_key(ShareKey(share.id, ITEM_FILE, target.item_id, recipient_keys[share.id]))
                    rewrapped.append(share.id)
                self.propagate_key(target.item_id, new_key)

                for share in pending:
                    self.store.delete_share(share.id)
            finally:
                zeroize(new_key)

        logger.info(f"Rotation of {target.pointer_name} done; purged {len(pending)} revoked shares")
        return RotationResult(
            owner_wrapped_key=owner_wrapped,
            address=address,
            record=record,
            rewrapped=rewrapped,
            purged=[s.id for s in pending],
        )

    def _current_value(self, pointer_name: str) -> str | None:
        try:
            return self.pointers.resolve(pointer_name).value
        except ResolutionError:
            return None

    def _roll_back(self, target: RotationTarget, previous: str | None) -> None:
        logger.warning(f"Rotation of {target.pointer_name} failed after publish; restoring previous records")
        if previous is not None:
            try:
                self.pointers.publish(target.signing_keypair, previous)
            except VaultError as e:
                logger.error(f"Could not restore {target.pointer_name}: {e}")
        try:
            target.rollback()
        except VaultError as e:
            logger.error(f"Could not restore records under {target.pointer_name}: {e}")
