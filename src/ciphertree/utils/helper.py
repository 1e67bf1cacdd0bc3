import datetime as _dt
import mimetypes
import time

from pathlib import Path
from typing import Dict, List

from ciphertree.crypto.hash import sha256_hex

USER_ID_LENGTH = 32


def repo_paths(repo: Path, vault_name: str = "vault.enc") -> Dict[str, Path]:
    return {
        "vault": repo / vault_name,
        "blobs": repo / "blobs",
        "pointers": repo / "pointers",
        "shares": repo / "shares.json",
        "republish": repo / "republish.json",
    }


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(ts_ms: int | None) -> str:
    if ts_ms is None:
        return "-"
    stamp = _dt.datetime.fromtimestamp(ts_ms / 1000, tz=_dt.timezone.utc).replace(microsecond=0)
    return stamp.isoformat().replace("+00:00", "Z")


def user_id_for(public_key: bytes) -> str:
    """Stable user id derived from a user's public key."""
    return sha256_hex(bytes(public_key))[:USER_ID_LENGTH]


def guess_mime(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


def split_path(path: str) -> List[str]:
    """'/a/b/' -> ['a', 'b']; '/' and '' -> []"""
    return [part for part in path.strip().split("/") if part]
