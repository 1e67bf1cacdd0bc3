import argparse
import functools
import logging
import sys
import uuid

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from ciphertree.config import Settings, get_settings
from ciphertree.crypto.aead import aead_decrypt, aead_encrypt_with_iv, ctr_decrypt, ctr_encrypt
from ciphertree.crypto.ecies import UserKeypair, derive_user_keypair, unwrap_key, wrap_key
from ciphertree.crypto.hash import derive_master_secret
from ciphertree.crypto.keys import (
    generate_ctr_iv,
    generate_file_key,
    generate_folder_key,
    generate_iv,
    scoped_key,
    zeroize,
    zeroize_all,
)
from ciphertree.crypto.signing import (
    SigningKeypair,
    derive_file_signing_keypair,
    derive_vault_signing_keypair,
    generate_signing_keypair,
    signing_keypair_from_seed,
)
from ciphertree.errors import NotFoundError, ValidationError, VaultError
from ciphertree.pointer.protocol import NamingLayer, PointerClient
from ciphertree.pointer.records import PointerRecord
from ciphertree.pointer.republish import RepublishCollaborator, enroll_for_republish
from ciphertree.sharing.engine import RotationTarget, ShareChild, ShareItem, SharingEngine
from ciphertree.storage.local import JsonShareStore, LocalContentStore, LocalNamingLayer
from ciphertree.storage.vault import KdfParams, load_vault, read_header, save_vault
from ciphertree.utils.codec import decrypt_file_metadata, decrypt_folder_metadata, encrypt_metadata, parse_blob
from ciphertree.utils.dataModels import (
    FOLDER_SCHEMA_V2,
    ITEM_FILE,
    ITEM_FOLDER,
    AnyFolderMetadata,
    FileEntry,
    FileMetadata,
    FilePointer,
    FolderEntry,
    FolderMetadata,
    FolderMetadataV2,
    Share,
    ShareKey,
    VaultInner,
)
from ciphertree.utils.helper import guess_mime, iso_from_ms, now_ms, repo_paths, split_path, user_id_for

logger = logging.getLogger(__name__)

Child = Union[FolderEntry, FilePointer, FileEntry]


def _scoped(method):
    """Run a session operation inside its own folder-handle scope."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._scope():
            return method(self, *args, **kwargs)
    return wrapper


@dataclass
class FolderHandle:
    """An opened folder: its key, signing key and decrypted metadata."""
    path: str
    item_id: str
    pointer_name: str
    key: bytearray
    signing: SigningKeypair
    metadata: AnyFolderMetadata
    parent: "FolderHandle | None" = None
    entry: FolderEntry | None = None

    def close(self) -> None:
        zeroize(self.key)
        self.signing.close()


def init_vault(
    repo: Path,
    passphrase: str,
    t_cost: int,
    m_cost_kib: int,
    parallelism: int,
    vault_name: str = "vault.enc",
    force: bool = False,
    settings: Settings | None = None,
) -> str:
    """Create a vault with an empty root folder. Returns the new user id."""
    paths = repo_paths(repo, vault_name)
    repo.mkdir(parents=True, exist_ok=True)
    if paths["vault"].exists() and not force:
        raise VaultError(f"{paths['vault']} exists. Use --force to overwrite.")

    kdf = KdfParams.fresh(t_cost, m_cost_kib, parallelism)
    master = derive_master_secret(passphrase, kdf.salt, t_cost, m_cost_kib, parallelism)
    user = derive_user_keypair(master)
    root_key = generate_folder_key()
    root_signing = derive_vault_signing_keypair(user.private_key)
    try:
        content = LocalContentStore(paths["blobs"])
        pointers = PointerClient(LocalNamingLayer(paths["pointers"]), settings)
        address = content.put(encrypt_metadata(FolderMetadata(), root_key).to_bytes())
        record = pointers.publish(root_signing, address)
        inner = VaultInner(
            user_id=user_id_for(user.public_key),
            root_pointer_name=record.name,
            root_folder_key_encrypted=wrap_key(root_key, user.public_key).hex(),
        )
        save_vault(paths["vault"], kdf, master, inner)
    finally:
        zeroize_all(master, root_key)
        user.close()
        root_signing.close()
    logger.info(f"Initialized vault for user {inner.user_id} at {paths['vault']}")
    return inner.user_id


def unlock(
    repo: Path,
    passphrase: str,
    vault_name: str = "vault.enc",
    settings: Settings | None = None,
    naming: NamingLayer | None = None,
    republisher: Tuple[RepublishCollaborator, bytes] | None = None,
) -> "VaultSession":
    paths = repo_paths(repo, vault_name)
    kdf, _, _, _ = read_header(paths["vault"])
    master = derive_master_secret(passphrase, kdf.salt, kdf.t_cost, kdf.m_cost_kib, kdf.parallelism)
    try:
        inner = load_vault(paths["vault"], master)
    except Exception:
        zeroize(master)
        raise
    return VaultSession(repo, paths, kdf, master, inner, settings=settings, naming=naming, republisher=republisher)


class _FolderRotation(RotationTarget):
    """Folder write that moves the folder and its file records to a new key."""

    def __init__(self, session: "VaultSession", folder: FolderHandle):
        self.session = session
        self.folder = folder
        self.item_type = ITEM_FOLDER
        self.item_id = folder.item_id
        self.pointer_name = folder.pointer_name
        # (file id, current address, address resealed under the new key)
        self._records: List[Tuple[str, str, str]] = []
        self._moved: List[str] = []
        self._saved_key: Tuple[str, int | None] | None = None

    @property
    def signing_keypair(self) -> SigningKeypair:
        return self.folder.signing

    def reencrypt(self, new_key: bytearray) -> bytes:
        s = self.session
        self._records = []
        # File records are sealed under the folder key and must follow it
        for child in self.folder.metadata.children:
            if isinstance(child, FilePointer):
                current = s.pointers.resolve(child.file_meta_pointer_name).value
                meta = decrypt_file_metadata(parse_blob(s.content.get(current)), self.folder.key)
                resealed = s.content.put(encrypt_metadata(meta, new_key).to_bytes())
                self._records.append((child.id, current, resealed))
        return encrypt_metadata(self.folder.metadata, new_key).to_bytes()

    def after_publish(self, new_key: bytearray, owner_wrapped_key: bytes, record: PointerRecord) -> None:
        s = self.session
        for file_id, _, resealed in self._records:
            s._publish_file_address(file_id, resealed)
            self._moved.append(file_id)

        if self.folder.parent is None:
            self._saved_key = (s.inner.root_folder_key_encrypted, None)
            s.inner.root_folder_key_encrypted = owner_wrapped_key.hex()
            save_vault(s.paths["vault"], s.kdf, s._master, s.inner)
        else:
            entry = self.folder.entry
            self._saved_key = (entry.folder_key_encrypted, entry.modified_at)
            entry.folder_key_encrypted = owner_wrapped_key.hex()
            entry.modified_at = now_ms()
            s._commit(self.folder.parent)

        s._enroll(self.folder.signing, record)
        zeroize(self.folder.key)
        self.folder.key = bytearray(new_key)

    def rollback(self) -> None:
        s = self.session
        if self._saved_key is not None:
            wrapped, modified_at = self._saved_key
            if self.folder.parent is None:
                s.inner.root_folder_key_encrypted = wrapped
            else:
                self.folder.entry.folder_key_encrypted = wrapped
                self.folder.entry.modified_at = modified_at
        current = {file_id: address for file_id, address, _ in self._records}
        for file_id in self._moved:
            try:
                s._publish_file_address(file_id, current[file_id])
            except VaultError as e:
                logger.error(f"Could not restore file record {file_id}: {e}")
        self._moved = []


class _FileUpdate(RotationTarget):
    """New file content; the previous version moves into the history."""

    def __init__(self, session: "VaultSession", folder: FolderHandle, pointer: FilePointer,
                 previous: FileMetadata, data: bytes, keypair: SigningKeypair):
        self.session = session
        self.folder = folder
        self.previous = previous
        self.data = data
        self._keypair = keypair
        self.item_type = ITEM_FILE
        self.item_id = pointer.id
        self.pointer_name = pointer.file_meta_pointer_name

    @property
    def signing_keypair(self) -> SigningKeypair:
        return self._keypair

    def reencrypt(self, new_key: bytearray) -> bytes:
        prev = self.previous
        meta = self.session._seal_content(self.data, new_key, prev.encryption_mode, prev.mime_type, prev.created_at)
        meta.version_history = prev.version_history + [prev.current_version()]
        return encrypt_metadata(meta, self.folder.key).to_bytes()


class VaultSession:
    """An unlocked vault. Close it (or use ``with``) to wipe its keys."""

    def __init__(
        self,
        repo: Path,
        paths: Dict[str, Path],
        kdf: KdfParams,
        master: bytearray,
        inner: VaultInner,
        settings: Settings | None = None,
        naming: NamingLayer | None = None,
        republisher: Tuple[RepublishCollaborator, bytes] | None = None,
    ):
        self.repo = repo
        self.paths = paths
        self.kdf = kdf
        self.inner = inner
        self.settings = settings or get_settings()
        self._master = master
        self.user: UserKeypair = derive_user_keypair(master)
        if user_id_for(self.user.public_key) != inner.user_id:
            self.user.close()
            zeroize(master)
            raise VaultError("Vault does not belong to this passphrase")

        self.content = LocalContentStore(paths["blobs"])
        self.naming = naming or LocalNamingLayer(paths["pointers"])
        self.pointers = PointerClient(self.naming, self.settings)
        self.share_store = JsonShareStore(paths["shares"])
        self.sharing = SharingEngine(self.share_store, self.content, self.pointers)
        self.republisher = republisher
        self._handles: List[FolderHandle] = []

    def __enter__(self) -> "VaultSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        for handle in self._handles:
            handle.close()
        self._handles.clear()
        zeroize(self._master)
        self.user.close()

    @property
    def user_id(self) -> str:
        return self.inner.user_id

    @property
    def public_key(self) -> bytes:
        return self.user.public_key

    # ─────────────────────────────────────────────────────────────
    # Fetch / publish plumbing
    # ─────────────────────────────────────────────────────────────
    def _fetch_blob(self, pointer_name: str):
        record = self.pointers.resolve(pointer_name)
        return parse_blob(self.content.get(record.value))

    def _fetch_folder(self, pointer_name: str, key: bytes) -> AnyFolderMetadata:
        return decrypt_folder_metadata(self._fetch_blob(pointer_name), key)

    def _fetch_file_meta(self, pointer_name: str, folder_key: bytes) -> FileMetadata:
        return decrypt_file_metadata(self._fetch_blob(pointer_name), folder_key)

    def _enroll(self, keypair: SigningKeypair, record: PointerRecord) -> None:
        if self.republisher is None:
            return
        collaborator, collaborator_pub = self.republisher
        try:
            enroll_for_republish(collaborator, collaborator_pub, keypair, record)
        except VaultError as e:
            # The record is published either way; only its refresh is lost
            logger.warning(f"Republish enrollment for {record.name} failed: {e}")

    def _publish(self, keypair: SigningKeypair, address: str) -> PointerRecord:
        record = self.pointers.publish(keypair, address)
        self._enroll(keypair, record)
        return record

    def _publish_file_address(self, file_id: str, address: str) -> str:
        try:
            keypair = derive_file_signing_keypair(self.user.private_key, file_id)
        except ValueError as e:
            raise ValidationError(f"Invalid file id {file_id!r}: {e}") from None
        try:
            return self._publish(keypair, address).name
        finally:
            keypair.close()

    def _publish_file_meta(self, file_id: str, meta: FileMetadata, folder_key: bytes) -> str:
        return self._publish_file_address(file_id, self.content.put(encrypt_metadata(meta, folder_key).to_bytes()))

    def _seal_content(self, data: bytes, key: bytes, mode: str, mime_type: str, created_at: int) -> FileMetadata:
        if mode == "CTR":
            iv = generate_ctr_iv()
            ct = ctr_encrypt(key, data, iv)
        else:
            iv = generate_iv()
            ct = aead_encrypt_with_iv(key, data, iv)
        return FileMetadata(
            cid=self.content.put(ct),
            file_key_encrypted=wrap_key(key, self.user.public_key).hex(),
            file_iv=iv.hex(),
            size=len(data),
            mime_type=mime_type,
            created_at=created_at,
            modified_at=now_ms(),
            encryption_mode=mode,
        )

    def _open_content(self, cid: str, key: bytes, iv_hex: str, mode: str) -> bytes:
        ct = self.content.get(cid)
        if mode == "CTR":
            return ctr_decrypt(key, ct, bytes.fromhex(iv_hex))
        return aead_decrypt(key, bytes.fromhex(iv_hex), ct)

    # ─────────────────────────────────────────────────────────────
    # Tree navigation
    # ─────────────────────────────────────────────────────────────
    @contextmanager
    def _scope(self):
        """Close every folder handle opened inside the block on the way out."""
        mark = len(self._handles)
        try:
            yield
        finally:
            for handle in self._handles[mark:]:
                handle.close()
            del self._handles[mark:]

    def _track(self, handle: FolderHandle) -> FolderHandle:
        self._handles.append(handle)
        return handle

    def _root(self) -> FolderHandle:
        key = unwrap_key(bytes.fromhex(self.inner.root_folder_key_encrypted), self.user.private_key)
        signing = derive_vault_signing_keypair(self.user.private_key)
        handle = self._track(FolderHandle("/", self.inner.root_pointer_name, self.inner.root_pointer_name, key, signing, None))
        handle.metadata = self._fetch_folder(handle.pointer_name, key)
        return handle

    def _child_folder(self, parent: FolderHandle, entry: FolderEntry) -> FolderHandle:
        key = unwrap_key(bytes.fromhex(entry.folder_key_encrypted), self.user.private_key)
        with scoped_key(unwrap_key(bytes.fromhex(entry.signing_key_encrypted), self.user.private_key)) as seed:
            signing = signing_keypair_from_seed(seed)
        path = parent.path.rstrip("/") + "/" + entry.name
        handle = self._track(FolderHandle(path, entry.id, entry.pointer_name, key, signing, None, parent, entry))
        handle.metadata = self._fetch_folder(entry.pointer_name, key)
        return handle

    def _open_folder(self, parts: List[str]) -> FolderHandle:
        folder = self._root()
        for name in parts:
            child = folder.metadata.find(name)
            if not isinstance(child, FolderEntry):
                raise NotFoundError(f"No such folder: {name}")
            folder = self._child_folder(folder, child)
        return folder

    def _open_child(self, path: str) -> Tuple[FolderHandle, Child]:
        parts = split_path(path)
        if not parts:
            raise ValidationError("A path below the root is required")
        parent = self._open_folder(parts[:-1])
        child = parent.metadata.find(parts[-1])
        if child is None:
            raise NotFoundError(f"No such item: {path}")
        return parent, child

    def _wrapped_key_of(self, folder: FolderHandle) -> bytes:
        if folder.entry is None:
            return bytes.fromhex(self.inner.root_folder_key_encrypted)
        return bytes.fromhex(folder.entry.folder_key_encrypted)

    # ─────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────
    def _ensure_v2(self, folder: FolderHandle) -> None:
        """Move a legacy v1 folder's inline file entries into file records."""
        if folder.metadata.version == FOLDER_SCHEMA_V2:
            return
        children: List[Union[FolderEntry, FilePointer]] = []
        for child in folder.metadata.children:
            if isinstance(child, FileEntry):
                meta = FileMetadata(
                    cid=child.cid,
                    file_key_encrypted=child.file_key_encrypted,
                    file_iv=child.file_iv,
                    size=child.size,
                    mime_type=child.mime_type,
                    created_at=child.created_at,
                    modified_at=child.modified_at,
                    encryption_mode=child.encryption_mode,
                )
                pointer_name = self._publish_file_meta(child.id, meta, folder.key)
                children.append(FilePointer(child.id, child.name, pointer_name, child.created_at, child.modified_at))
            else:
                children.append(child)
        folder.metadata = FolderMetadataV2(children=children)
        logger.info(f"Upgraded folder {folder.path} to {FOLDER_SCHEMA_V2}")
        self._commit(folder)

    def _commit(self, folder: FolderHandle) -> None:
        """Write ``folder``'s metadata, rotating its key first if a revocation is pending."""
        if self.sharing.on_next_mutation(_FolderRotation(self, folder), self.user.public_key) is None:
            address = self.content.put(encrypt_metadata(folder.metadata, folder.key).to_bytes())
            self._publish(folder.signing, address)

    def _writable_parent(self, path: str) -> Tuple[FolderHandle, str]:
        parts = split_path(path)
        if not parts:
            raise ValidationError("A path below the root is required")
        parent = self._open_folder(parts[:-1])
        self._ensure_v2(parent)
        return parent, parts[-1]

    @_scoped
    def mkdir(self, path: str) -> FolderEntry:
        parent, name = self._writable_parent(path)
        if parent.metadata.find(name) is not None:
            raise ValidationError(f"{name} already exists")
        ts = now_ms()
        key = generate_folder_key()
        signing = generate_signing_keypair()
        try:
            address = self.content.put(encrypt_metadata(FolderMetadata(), key).to_bytes())
            record = self._publish(signing, address)
            entry = FolderEntry(
                id=str(uuid.uuid4()),
                name=name,
                pointer_name=record.name,
                signing_key_encrypted=wrap_key(signing.private_key, self.user.public_key).hex(),
                folder_key_encrypted=wrap_key(key, self.user.public_key).hex(),
                created_at=ts,
                modified_at=ts,
            )
        finally:
            zeroize(key)
            signing.close()
        parent.metadata.children.append(entry)
        self._commit(parent)
        self._grant_to_covering_shares(parent, [ShareChild(ITEM_FOLDER, entry.id, bytes.fromhex(entry.folder_key_encrypted))])
        return entry

    @_scoped
    def add_file(self, path: str, data: bytes, mime_type: str | None = None, mode: str = "GCM") -> FilePointer:
        parent, name = self._writable_parent(path)
        if parent.metadata.find(name) is not None:
            raise ValidationError(f"{name} already exists")
        file_id = str(uuid.uuid4())
        with scoped_key(generate_file_key()) as key:
            meta = self._seal_content(data, key, mode, mime_type or guess_mime(name), now_ms())
        pointer_name = self._publish_file_meta(file_id, meta, parent.key)
        pointer = FilePointer(file_id, name, pointer_name, meta.created_at, meta.modified_at)
        parent.metadata.children.append(pointer)
        self._commit(parent)
        self._grant_to_covering_shares(parent, [ShareChild(ITEM_FILE, file_id, bytes.fromhex(meta.file_key_encrypted))])
        return pointer

    @_scoped
    def update_file(self, path: str, data: bytes) -> FileMetadata:
        parent, name = self._writable_parent(path)
        pointer = parent.metadata.find(name)
        if not isinstance(pointer, FilePointer):
            raise NotFoundError(f"No such file: {path}")
        previous = self._fetch_file_meta(pointer.file_meta_pointer_name, parent.key)
        keypair = derive_file_signing_keypair(self.user.private_key, pointer.id)
        try:
            target = _FileUpdate(self, parent, pointer, previous, data, keypair)
            result = self.sharing.on_next_mutation(target, self.user.public_key)
            if result is None:
                with scoped_key(generate_file_key()) as key:
                    blob = target.reencrypt(key)
                    self._publish(keypair, self.content.put(blob))
                    self.sharing.propagate_key(pointer.id, key)
            else:
                self._enroll(keypair, result.record)
        finally:
            keypair.close()
        pointer.modified_at = now_ms()
        self._commit(parent)
        return self._fetch_file_meta(pointer.file_meta_pointer_name, parent.key)

    @_scoped
    def remove(self, path: str) -> Child:
        parent, name = self._writable_parent(path)
        child = parent.metadata.find(name)
        if child is None:
            raise NotFoundError(f"No such item: {path}")
        shared = self._subtree_pointers(parent, child)
        parent.metadata.children.remove(child)
        self._commit(parent)
        self.sharing.drop_item_shares(self.user_id, shared)
        return child

    @_scoped
    def rename(self, path: str, new_name: str) -> Child:
        if not new_name or "/" in new_name:
            raise ValidationError("Invalid name")
        parent, name = self._writable_parent(path)
        child = parent.metadata.find(name)
        if child is None:
            raise NotFoundError(f"No such item: {path}")
        if parent.metadata.find(new_name) is not None:
            raise ValidationError(f"{new_name} already exists")
        child.name = new_name
        child.modified_at = now_ms()
        self._commit(parent)
        pointer_name = self._pointer_of(child)
        if pointer_name is not None:
            self.sharing.rename_item(self.user_id, pointer_name, new_name)
        return child

    @staticmethod
    def _pointer_of(child: Child) -> str | None:
        if isinstance(child, FolderEntry):
            return child.pointer_name
        if isinstance(child, FilePointer):
            return child.file_meta_pointer_name
        return None

    def _subtree_pointers(self, parent: FolderHandle, child: Child) -> List[str]:
        """Pointer names of ``child`` and everything below it."""
        own = self._pointer_of(child)
        names = [own] if own else []
        if isinstance(child, FolderEntry):
            try:
                folder = self._child_folder(parent, child)
            except VaultError as e:
                logger.warning(f"Could not open {child.name} to collect its shares: {e}")
                return names
            for grandchild in folder.metadata.children:
                names.extend(self._subtree_pointers(folder, grandchild))
        return names

    # ─────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────
    def _describe(self, child: Child, folder_key: bytes) -> Dict[str, Any]:
        row: Dict[str, Any] = {"id": child.id, "name": child.name, "modified": child.modified_at}
        if isinstance(child, FolderEntry):
            row.update(type=ITEM_FOLDER, size=None)
        elif isinstance(child, FileEntry):
            row.update(type=ITEM_FILE, size=child.size, mime=child.mime_type)
        else:
            try:
                meta = self._fetch_file_meta(child.file_meta_pointer_name, folder_key)
                row.update(type=ITEM_FILE, size=meta.size, mime=meta.mime_type, versions=len(meta.version_history) + 1)
            except VaultError as e:
                logger.warning(f"Could not load file record for {child.name}: {e}")
                row.update(type=ITEM_FILE, size=None)
        return row

    @_scoped
    def list_folder(self, path: str = "/") -> List[Dict[str, Any]]:
        folder = self._open_folder(split_path(path))
        return [self._describe(c, folder.key) for c in folder.metadata.children]

    @_scoped
    def read_file(self, path: str, version: int | None = None) -> bytes:
        """Plaintext of a file. ``version`` indexes the history, oldest first."""
        parent, child = self._open_child(path)
        if isinstance(child, FolderEntry):
            raise ValidationError(f"{path} is a folder")
        if isinstance(child, FileEntry):
            source = child
        else:
            meta = self._fetch_file_meta(child.file_meta_pointer_name, parent.key)
            source = meta if version is None else self._history_entry(meta, version)
        with scoped_key(unwrap_key(bytes.fromhex(source.file_key_encrypted), self.user.private_key)) as key:
            return self._open_content(source.cid, key, source.file_iv, source.encryption_mode)

    @staticmethod
    def _history_entry(meta: FileMetadata, version: int):
        if not 0 <= version < len(meta.version_history):
            raise NotFoundError(f"No version {version}")
        return meta.version_history[version]

    # ─────────────────────────────────────────────────────────────
    # Sharing
    # ─────────────────────────────────────────────────────────────
    def _share_children(self, folder: FolderHandle) -> List[ShareChild]:
        children: List[ShareChild] = []
        for child in folder.metadata.children:
            if isinstance(child, FolderEntry):
                children.append(ShareChild(ITEM_FOLDER, child.id, bytes.fromhex(child.folder_key_encrypted)))
                children.extend(self._share_children(self._child_folder(folder, child)))
            elif isinstance(child, FilePointer):
                meta = self._fetch_file_meta(child.file_meta_pointer_name, folder.key)
                children.append(ShareChild(ITEM_FILE, child.id, bytes.fromhex(meta.file_key_encrypted)))
            else:
                children.append(ShareChild(ITEM_FILE, child.id, bytes.fromhex(child.file_key_encrypted)))
        return children

    def _grant_to_covering_shares(self, folder: FolderHandle, children: List[ShareChild]) -> None:
        """Hand keys for new items to every active folder share above them."""
        covering = set()
        handle = folder
        while handle is not None:
            covering.add(handle.pointer_name)
            handle = handle.parent
        for share in self.sharing.sent_shares(self.user_id):
            if share.item_type == ITEM_FOLDER and share.pointer_name in covering:
                self.sharing.add_share_keys(share.id, self.user_id, self.user.private_key, children)

    @_scoped
    def share(self, path: str, recipient_public_key: bytes) -> Share:
        parts = split_path(path)
        if not parts:
            root = self._root()
            item = ShareItem(ITEM_FOLDER, root.pointer_name, "/", self._wrapped_key_of(root), self._share_children(root))
        else:
            parent = self._open_folder(parts[:-1])
            self._ensure_v2(parent)
            child = parent.metadata.find(parts[-1])
            if child is None:
                raise NotFoundError(f"No such item: {path}")
            if isinstance(child, FolderEntry):
                folder = self._child_folder(parent, child)
                item = ShareItem(ITEM_FOLDER, child.pointer_name, child.name, self._wrapped_key_of(folder),
                                 self._share_children(folder))
            else:
                meta = self._fetch_file_meta(child.file_meta_pointer_name, parent.key)
                parent_key = self._wrapped_key_of(parent)
                item = ShareItem(ITEM_FILE, child.file_meta_pointer_name, child.name, parent_key, [
                    ShareChild(ITEM_FILE, child.id, bytes.fromhex(meta.file_key_encrypted)),
                    ShareChild(ITEM_FOLDER, parent.item_id, parent_key),
                ])
        share, _ = self.sharing.create_share(
            self.user_id, user_id_for(recipient_public_key), recipient_public_key, self.user.private_key, item
        )
        return share

    def revoke(self, share_id: str) -> Share:
        return self.sharing.revoke_share(share_id, self.user_id)

    def hide(self, share_id: str) -> Share:
        return self.sharing.hide_share(share_id, self.user_id)

    def sent_shares(self) -> List[Share]:
        return self.sharing.sent_shares(self.user_id)

    def received_shares(self) -> List[Share]:
        return self.sharing.received_shares(self.user_id)

    def _received(self, share_id: str) -> Tuple[Share, Dict[Tuple[str, str], ShareKey]]:
        share = self.share_store.get_share(share_id)
        if share is None or share.recipient_id != self.user_id or not share.is_active:
            raise NotFoundError("Share not found")
        keys = {(k.key_type, k.item_id): k for k in self.sharing.share_keys(share.id)}
        return share, keys

    def _granted(self, keys: Dict[Tuple[str, str], ShareKey], key_type: str, item_id: str) -> bytearray:
        granted = keys.get((key_type, item_id))
        if granted is None:
            raise NotFoundError(f"No key granted for {key_type} {item_id}")
        return unwrap_key(bytes.fromhex(granted.wrapped_key), self.user.private_key)

    def _shared_folder(self, share: Share, keys, parts: List[str]) -> Tuple[AnyFolderMetadata, bytearray]:
        if share.item_type != ITEM_FOLDER:
            raise ValidationError("Not a folder share")
        key = unwrap_key(bytes.fromhex(share.wrapped_item_key), self.user.private_key)
        try:
            meta = self._fetch_folder(share.pointer_name, key)
            for name in parts:
                entry = meta.find(name)
                if not isinstance(entry, FolderEntry):
                    raise NotFoundError(f"No such folder: {name}")
                next_key = self._granted(keys, ITEM_FOLDER, entry.id)
                zeroize(key)
                key = next_key
                meta = self._fetch_folder(entry.pointer_name, key)
        except Exception:
            zeroize(key)
            raise
        return meta, key

    def list_shared(self, share_id: str, path: str = "") -> List[Dict[str, Any]]:
        share, keys = self._received(share_id)
        if share.item_type == ITEM_FILE:
            return [{"id": share.pointer_name, "name": share.item_name, "type": ITEM_FILE}]
        meta, key = self._shared_folder(share, keys, split_path(path))
        with scoped_key(key):
            return [self._describe(c, key) for c in meta.children]

    def read_shared(self, share_id: str, path: str = "") -> bytes:
        share, keys = self._received(share_id)
        if share.item_type == ITEM_FILE:
            file_keys = [k for (kind, _), k in keys.items() if kind == ITEM_FILE]
            if not file_keys:
                raise NotFoundError("No file key granted")
            folder_grant = next((k for (kind, _), k in keys.items() if kind == ITEM_FOLDER), None)
            wrapped_folder = folder_grant.wrapped_key if folder_grant else share.wrapped_item_key
            with scoped_key(unwrap_key(bytes.fromhex(wrapped_folder), self.user.private_key)) as folder_key:
                meta = self._fetch_file_meta(share.pointer_name, folder_key)
            with scoped_key(self._granted(keys, ITEM_FILE, file_keys[0].item_id)) as file_key:
                return self._open_content(meta.cid, file_key, meta.file_iv, meta.encryption_mode)

        parts = split_path(path)
        if not parts:
            raise ValidationError("A file path inside the shared folder is required")
        meta, key = self._shared_folder(share, keys, parts[:-1])
        with scoped_key(key):
            child = meta.find(parts[-1])
            if child is None or isinstance(child, FolderEntry):
                raise NotFoundError(f"No such file: {path}")
            source = child if isinstance(child, FileEntry) else self._fetch_file_meta(child.file_meta_pointer_name, key)
        with scoped_key(self._granted(keys, ITEM_FILE, child.id)) as file_key:
            return self._open_content(source.cid, file_key, source.file_iv, source.encryption_mode)


# ─────────────────────────────────────────────────────────────
# CLI commands
# ─────────────────────────────────────────────────────────────
def open_session(args: argparse.Namespace) -> VaultSession:
    return unlock(Path(args.repo), args.passphrase, args.vault)


def cmd_init(args: argparse.Namespace) -> None:
    repo = Path(args.repo)
    user_id = init_vault(repo, args.passphrase, args.t, args.m, args.p, vault_name=args.vault, force=args.force)
    print(f"[+] Initialized vault at {repo} (user {user_id})")


def cmd_pubkey(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        print(session.public_key.hex())


def cmd_ls(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        rows = session.list_folder(args.path)
    if not rows:
        print("(empty)")
        return
    for row in rows:
        size = "-" if row["size"] is None else f"{row['size']} bytes"
        print(f"{row['type']}\t{row['name']}\t{size}\t{iso_from_ms(row['modified'])}")


def cmd_mkdir(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        session.mkdir(args.path)
    print(f"[+] Created folder {args.path}")


def cmd_add(args: argparse.Namespace) -> None:
    src = Path(args.src)
    if not src.is_file():
        print(f"[!] Not a file: {src}")
        sys.exit(1)
    dest = args.dest or "/" + src.name
    if dest.endswith("/"):
        dest += src.name
    with open_session(args) as session:
        pointer = session.add_file(dest, src.read_bytes(), mode=args.mode)
    print(f"[+] Encrypted and added {src.name} as {dest} (id={pointer.id})")


def cmd_update(args: argparse.Namespace) -> None:
    src = Path(args.src)
    if not src.is_file():
        print(f"[!] Not a file: {src}")
        sys.exit(1)
    with open_session(args) as session:
        meta = session.update_file(args.path, src.read_bytes())
    print(f"[+] Updated {args.path} ({len(meta.version_history)} earlier versions kept)")


def cmd_extract(args: argparse.Namespace) -> None:
    out = Path(args.out)
    with open_session(args) as session:
        plaintext = session.read_file(args.path, version=args.version)
    out.write_bytes(plaintext)
    print(f"[+] Extracted {args.path} -> {out}")
