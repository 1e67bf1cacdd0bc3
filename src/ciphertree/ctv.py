#!/usr/bin/env python3
"""
CipherTree vault (ctv): an end-to-end encrypted folder tree on a
content-addressed store, with per-item keys and revocable sharing.

Key hierarchy:
    passphrase -> Argon2id(SHA3-512) -> master secret (never stored)
    master secret -> HKDF -> secp256k1 user keypair (deterministic)
    user private key -> HKDF -> Ed25519 root pointer key, per-file pointer keys
    folder / file keys: random AES-256, stored only ECIES-wrapped

Repo layout:
  repo/
    vault.enc            # binary header + AES-GCM(root pointer, wrapped root key)
    blobs/<sha256>.bin   # ciphertext only: file content and {iv, data} metadata envelopes
    pointers/            # signed mutable pointer records (name -> content address)
    shares.json          # share grants; every key in it is wrapped to its recipient

Every folder has its own signed pointer, so a change republishes only the
folder it touches (and, after a key rotation, the wrapped key in its parent).

Commands:
  init, pubkey, ls, mkdir, add, update, extract, rm, rename,
  share, revoke, hide, shares, shared-ls, shared-extract
"""
import logging
import sys

from ciphertree.errors import VaultError, user_message
from ciphertree.ui.cli import build_parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except VaultError as e:
        logging.getLogger(__name__).debug("Command failed", exc_info=True)
        print(f"[!] {user_message(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
