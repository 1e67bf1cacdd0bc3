"""
Random key generation and scoped handling of plaintext key material.

Folder and file keys are random, never derived and never shared between
items. Plaintext keys live in bytearrays so they can be overwritten once an
operation is done with them. Python may still hold copies elsewhere (bytes
objects handed to C libraries, interpreter internals), so zeroization here is
best effort.
"""
import os

from contextlib import contextmanager
from typing import Iterator

from ciphertree.crypto.aead import AES_CTR_IV_SIZE, AES_IV_SIZE, AES_KEY_SIZE


def generate_folder_key() -> bytearray:
    return bytearray(os.urandom(AES_KEY_SIZE))


def generate_file_key() -> bytearray:
    # A fresh key per file (and per file version) so equal plaintexts never share a key
    return bytearray(os.urandom(AES_KEY_SIZE))


def generate_iv() -> bytes:
    return os.urandom(AES_IV_SIZE)


def generate_ctr_iv() -> bytes:
    return os.urandom(AES_CTR_IV_SIZE)


def zeroize(buf: bytearray | None) -> None:
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def zeroize_all(*bufs: bytearray | None) -> None:
    for buf in bufs:
        zeroize(buf)


@contextmanager
def scoped_key(material: bytes | bytearray) -> Iterator[bytearray]:
    """Hold key material for the duration of a block, zeroized on every exit path.

    A bytearray passed in is used (and wiped) in place.
    """
    buf = material if isinstance(material, bytearray) else bytearray(material)
    try:
        yield buf
    finally:
        zeroize(buf)
