"""
vault.enc: the only per-user file.

Binary layout (big-endian):
    magic     : 4 bytes   -> b"CTV1"
    version   : 1 byte    -> 0x01
    t_cost    : u32
    m_cost    : u32  (KiB)
    parallel  : u32
    salt      : 16 bytes
    nonce     : 12 bytes
    ciphertext: AES-256-GCM(VaultInner JSON) under a key derived from the master secret

The header is authenticated as associated data, so KDF parameters cannot be
downgraded without breaking decryption.
"""
import os
import struct

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from ciphertree.crypto.aead import AES_IV_SIZE, aead_decrypt, aead_encrypt_with_iv
from ciphertree.crypto.hash import derive_context_key
from ciphertree.crypto.keys import scoped_key
from ciphertree.errors import NotFoundError, ValidationError
from ciphertree.utils.dataModels import VAULT_HDR_FMT, VAULT_HDR_SIZE, VAULT_MAGIC, VAULT_VERSION, VaultInner

VAULT_SALT_SIZE = 16
VAULT_KEY_CONTEXT = "vault-file-v1"


@dataclass
class KdfParams:
    t_cost: int
    m_cost_kib: int
    parallelism: int
    salt: bytes

    @staticmethod
    def fresh(t_cost: int, m_cost_kib: int, parallelism: int) -> "KdfParams":
        return KdfParams(t_cost, m_cost_kib, parallelism, os.urandom(VAULT_SALT_SIZE))


def _header(kdf: KdfParams, nonce: bytes) -> bytes:
    return struct.pack(VAULT_HDR_FMT, VAULT_MAGIC, VAULT_VERSION, kdf.t_cost, kdf.m_cost_kib, kdf.parallelism, kdf.salt, nonce)


def save_vault(path: Path, kdf: KdfParams, master_secret: bytes, inner: VaultInner) -> None:
    with scoped_key(derive_context_key(master_secret, VAULT_KEY_CONTEXT)) as key:
        nonce = os.urandom(AES_IV_SIZE)
        header = _header(kdf, nonce)
        ct = aead_encrypt_with_iv(key, inner.to_bytes(), nonce, header)
    tmp = path.with_suffix(".tmp")
    with tmp.open("wb") as f:
        f.write(header)
        f.write(ct)
    os.replace(tmp, path)


def read_header(path: Path) -> Tuple[KdfParams, bytes, bytes, bytes]:
    """Returns (kdf, nonce, header bytes, ciphertext)."""
    if not path.exists():
        raise NotFoundError(f"No vault at {path}")
    data = path.read_bytes()
    if len(data) < VAULT_HDR_SIZE:
        raise ValidationError("vault file is too small or corrupt")
    magic, ver, t, m, p, salt, nonce = struct.unpack(VAULT_HDR_FMT, data[:VAULT_HDR_SIZE])
    if magic != VAULT_MAGIC:
        raise ValidationError("Invalid vault magic")
    if ver != VAULT_VERSION:
        raise ValidationError("Unsupported vault version")
    return KdfParams(t, m, p, salt), nonce, data[:VAULT_HDR_SIZE], data[VAULT_HDR_SIZE:]


def load_vault(path: Path, master_secret: bytes) -> VaultInner:
    _, nonce, header, ct = read_header(path)
    with scoped_key(derive_context_key(master_secret, VAULT_KEY_CONTEXT)) as key:
        plaintext = aead_decrypt(key, nonce, ct, header)
    try:
        return VaultInner.from_bytes(plaintext)
    except (ValueError, KeyError):
        raise ValidationError("Invalid vault contents") from None
