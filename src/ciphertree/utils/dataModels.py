import base64
import json
import struct

from dataclasses import dataclass, field
from typing import Dict, Any, List, Union

VAULT_MAGIC = b"CTV1"
VAULT_VERSION = 1
VAULT_HDR_FMT = ">4sBIII16s12s"  # magic, ver, t, m, p, salt(16), nonce(12)
VAULT_HDR_SIZE = struct.calcsize(VAULT_HDR_FMT)

FOLDER_SCHEMA_V1 = "v1"
FOLDER_SCHEMA_V2 = "v2"
FILE_SCHEMA_V1 = "v1"

ENCRYPTION_MODES = ("GCM", "CTR")

ITEM_FOLDER = "folder"
ITEM_FILE = "file"


def _dumps(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


@dataclass
class EncryptedBlob:
    """Envelope stored in the content store: hex IV + base64(ct || tag)."""
    iv: str
    data: str

    def to_dict(self) -> Dict[str, str]:
        return {"iv": self.iv, "data": self.data}

    def to_bytes(self) -> bytes:
        return _dumps(self.to_dict())

    @property
    def iv_bytes(self) -> bytes:
        return bytes.fromhex(self.iv)

    @property
    def ciphertext(self) -> bytes:
        return base64.b64decode(self.data, validate=True)


@dataclass
class FolderEntry:
    id: str
    name: str
    pointer_name: str
    signing_key_encrypted: str  # hex, ECIES-wrapped Ed25519 seed
    folder_key_encrypted: str   # hex, ECIES-wrapped folder key
    created_at: int
    modified_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": ITEM_FOLDER,
            "id": self.id,
            "name": self.name,
            "pointerName": self.pointer_name,
            "signingKeyEncrypted": self.signing_key_encrypted,
            "folderKeyEncrypted": self.folder_key_encrypted,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }


@dataclass
class FilePointer:
    """v2 file child: points at the file's own metadata record."""
    id: str
    name: str
    file_meta_pointer_name: str
    created_at: int
    modified_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": ITEM_FILE,
            "id": self.id,
            "name": self.name,
            "fileMetaPointerName": self.file_meta_pointer_name,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }


@dataclass
class FileEntry:
    """v1 file child: file data inline in the folder document."""
    id: str
    name: str
    cid: str
    file_key_encrypted: str
    file_iv: str
    size: int
    mime_type: str
    created_at: int
    modified_at: int
    encryption_mode: str = "GCM"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": ITEM_FILE,
            "id": self.id,
            "name": self.name,
            "cid": self.cid,
            "fileKeyEncrypted": self.file_key_encrypted,
            "fileIv": self.file_iv,
            "size": self.size,
            "mimeType": self.mime_type,
            "encryptionMode": self.encryption_mode,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }


@dataclass
class FolderMetadataV1:
    children: List[Union[FolderEntry, FileEntry]] = field(default_factory=list)
    version: str = FOLDER_SCHEMA_V1

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "children": [c.to_dict() for c in self.children]}

    def find(self, name: str) -> Union[FolderEntry, FileEntry, None]:
        return next((c for c in self.children if c.name == name), None)


@dataclass
class FolderMetadataV2:
    children: List[Union[FolderEntry, FilePointer]] = field(default_factory=list)
    version: str = FOLDER_SCHEMA_V2

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "children": [c.to_dict() for c in self.children]}

    def find(self, name: str) -> Union[FolderEntry, FilePointer, None]:
        return next((c for c in self.children if c.name == name), None)


# Documents are always written as v2; v1 is read-only
FolderMetadata = FolderMetadataV2
AnyFolderMetadata = Union[FolderMetadataV1, FolderMetadataV2]


@dataclass
class VersionEntry:
    cid: str
    file_key_encrypted: str
    file_iv: str
    size: int
    timestamp: int
    encryption_mode: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cid": self.cid,
            "fileKeyEncrypted": self.file_key_encrypted,
            "fileIv": self.file_iv,
            "size": self.size,
            "timestamp": self.timestamp,
            "encryptionMode": self.encryption_mode,
        }


@dataclass
class FileMetadata:
    """Per-file record, encrypted under the parent folder's key."""
    cid: str
    file_key_encrypted: str
    file_iv: str
    size: int
    mime_type: str
    created_at: int
    modified_at: int
    encryption_mode: str = "GCM"
    version_history: List[VersionEntry] = field(default_factory=list)
    version: str = FILE_SCHEMA_V1

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "version": self.version,
            "cid": self.cid,
            "fileKeyEncrypted": self.file_key_encrypted,
            "fileIv": self.file_iv,
            "size": self.size,
            "mimeType": self.mime_type,
            "encryptionMode": self.encryption_mode,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }
        if self.version_history:
            d["versionHistory"] = [v.to_dict() for v in self.version_history]
        return d

    def current_version(self) -> VersionEntry:
        return VersionEntry(
            cid=self.cid,
            file_key_encrypted=self.file_key_encrypted,
            file_iv=self.file_iv,
            size=self.size,
            timestamp=self.modified_at,
            encryption_mode=self.encryption_mode,
        )


@dataclass
class Share:
    id: str
    sharer_id: str
    recipient_id: str
    recipient_public_key: str  # hex
    item_type: str
    pointer_name: str
    item_name: str
    wrapped_item_key: str      # hex
    created_at: int
    hidden_by_recipient: bool = False
    revoked_at: int | None = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sharerId": self.sharer_id,
            "recipientId": self.recipient_id,
            "recipientPublicKey": self.recipient_public_key,
            "itemType": self.item_type,
            "pointerName": self.pointer_name,
            "itemName": self.item_name,
            "wrappedItemKey": self.wrapped_item_key,
            "createdAt": self.created_at,
            "hiddenByRecipient": self.hidden_by_recipient,
            "revokedAt": self.revoked_at,
        }

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "Share":
        return Share(
            id=obj["id"],
            sharer_id=obj["sharerId"],
            recipient_id=obj["recipientId"],
            recipient_public_key=obj["recipientPublicKey"],
            item_type=obj["itemType"],
            pointer_name=obj["pointerName"],
            item_name=obj["itemName"],
            wrapped_item_key=obj["wrappedItemKey"],
            created_at=obj["createdAt"],
            hidden_by_recipient=obj.get("hiddenByRecipient", False),
            revoked_at=obj.get("revokedAt"),
        )


@dataclass
class ShareKey:
    share_id: str
    key_type: str
    item_id: str
    wrapped_key: str  # hex

    def to_dict(self) -> Dict[str, str]:
        return {"shareId": self.share_id, "keyType": self.key_type, "itemId": self.item_id, "wrappedKey": self.wrapped_key}

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "ShareKey":
        return ShareKey(share_id=obj["shareId"], key_type=obj["keyType"], item_id=obj["itemId"], wrapped_key=obj["wrappedKey"])


@dataclass
class VaultInner:
    """Plaintext inside vault.enc: enough to find and open the root folder."""
    user_id: str
    root_pointer_name: str
    root_folder_key_encrypted: str  # hex, wrapped for the user
    version: int = 1

    def to_bytes(self) -> bytes:
        return _dumps({
            "version": self.version,
            "userId": self.user_id,
            "rootPointerName": self.root_pointer_name,
            "rootFolderKeyEncrypted": self.root_folder_key_encrypted,
        })

    @staticmethod
    def from_bytes(b: bytes) -> "VaultInner":
        obj = json.loads(b.decode("utf-8"))
        return VaultInner(
            version=obj.get("version", 1),
            user_id=obj["userId"],
            root_pointer_name=obj["rootPointerName"],
            root_folder_key_encrypted=obj["rootFolderKeyEncrypted"],
        )
