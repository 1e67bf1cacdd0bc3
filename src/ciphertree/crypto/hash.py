from argon2.low_level import hash_secret_raw, Type as Argon2Type
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ciphertree.errors import CryptoError

# Domain separation salt shared by every context-key derivation
HKDF_SALT = b"CipherTree-v1"
CONTEXT_KEY_SIZE = 32


def sha3_512_bytes(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA3_512(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


def sha256_hex(data: bytes) -> str:
    digest = hashes.Hash(hashes.SHA256(), backend=default_backend())
    digest.update(data)
    return digest.finalize().hex()


def derive_master_secret(passphrase: str, salt: bytes, t_cost: int, m_cost_kib: int, parallelism: int) -> bytearray:
    """MasterSecret = Argon2id(SHA3-512(passphrase)) -> 32 bytes"""
    prehash = sha3_512_bytes(passphrase.encode("utf-8"))
    master = hash_secret_raw(
        secret=prehash,
        salt=salt,
        time_cost=t_cost,
        memory_cost=m_cost_kib,
        parallelism=parallelism,
        hash_len=32,
        type=Argon2Type.ID,
    )
    return bytearray(master)


def derive_key(input_key: bytes, salt: bytes, info: bytes, length: int = CONTEXT_KEY_SIZE) -> bytearray:
    """HKDF-SHA256. Raises a generic CryptoError on failure."""
    try:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info, backend=default_backend())
        return bytearray(hkdf.derive(bytes(input_key)))
    except Exception:
        raise CryptoError("Key derivation failed", "DERIVATION_FAILED") from None


def derive_context_key(master_secret: bytes, context_label: str) -> bytearray:
    """Context-scoped 32-byte key. Same master + label always yields the same key,
    so purpose keys can be recovered without persisting them.
    """
    return derive_key(master_secret, HKDF_SALT, context_label.encode("utf-8"))
