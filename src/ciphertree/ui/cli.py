import argparse

from ciphertree.config import get_settings
from ciphertree.utils.core import cmd_add, cmd_extract, cmd_init, cmd_ls, cmd_mkdir, cmd_pubkey, cmd_update
from ciphertree.utils.maintain import (
    cmd_hide,
    cmd_rename,
    cmd_revoke,
    cmd_rm,
    cmd_share,
    cmd_shared_extract,
    cmd_shared_ls,
    cmd_shares,
)


def _vault_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("repo", help="Path to repo directory")
    p.add_argument("--passphrase", required=True)
    p.add_argument("--vault", default="vault.enc", help="Vault file name inside the repo")


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    p = argparse.ArgumentParser(description="CipherTree: end-to-end encrypted folder tree with sharing")
    p.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level (default from CIPHERTREE_LOG_LEVEL)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Initialize vault")
    _vault_args(p_init)
    p_init.add_argument("-t", type=int, default=settings.KDF_T_COST, help="Argon2 time cost (iterations)")
    p_init.add_argument("-m", type=int, default=settings.KDF_M_COST_KIB, help="Argon2 memory (KiB)")
    p_init.add_argument("-p", type=int, default=settings.KDF_PARALLELISM, help="Argon2 parallelism")
    p_init.add_argument("--force", action="store_true", help="Overwrite existing vault file if present")
    p_init.set_defaults(func=cmd_init)

    p_pub = sub.add_parser("pubkey", help="Print this vault's public key (hex) for others to share with")
    _vault_args(p_pub)
    p_pub.set_defaults(func=cmd_pubkey)

    p_ls = sub.add_parser("ls", help="List a folder")
    _vault_args(p_ls)
    p_ls.add_argument("path", nargs="?", default="/", help="Folder path (default: /)")
    p_ls.set_defaults(func=cmd_ls)

    p_mkdir = sub.add_parser("mkdir", help="Create a folder")
    _vault_args(p_mkdir)
    p_mkdir.add_argument("path", help="New folder path")
    p_mkdir.set_defaults(func=cmd_mkdir)

    p_add = sub.add_parser("add", help="Add a file (encrypt)")
    _vault_args(p_add)
    p_add.add_argument("src", help="Plaintext file to add")
    p_add.add_argument("dest", nargs="?", help="Vault path (default: /<file name>)")
    p_add.add_argument("--mode", choices=["GCM", "CTR"], default="GCM", help="Content cipher mode")
    p_add.set_defaults(func=cmd_add)

    p_upd = sub.add_parser("update", help="Replace a file's content, keeping the old version")
    _vault_args(p_upd)
    p_upd.add_argument("path", help="Vault path of the file")
    p_upd.add_argument("src", help="Plaintext file with the new content")
    p_upd.set_defaults(func=cmd_update)

    p_ext = sub.add_parser("extract", help="Decrypt a file")
    _vault_args(p_ext)
    p_ext.add_argument("path", help="Vault path of the file")
    p_ext.add_argument("out", help="Output plaintext path")
    p_ext.add_argument("--version", type=int, help="Earlier version index (0 = oldest)")
    p_ext.set_defaults(func=cmd_extract)

    p_rm = sub.add_parser("rm", help="Remove a file or folder")
    _vault_args(p_rm)
    p_rm.add_argument("path", help="Vault path")
    p_rm.set_defaults(func=cmd_rm)

    p_ren = sub.add_parser("rename", help="Rename a file or folder")
    _vault_args(p_ren)
    p_ren.add_argument("path", help="Vault path")
    p_ren.add_argument("name", help="New name")
    p_ren.set_defaults(func=cmd_rename)

    p_share = sub.add_parser("share", help="Share a file or folder with another user")
    _vault_args(p_share)
    p_share.add_argument("path", help="Vault path ('/' shares the whole tree)")
    p_share.add_argument("recipient", help="Recipient public key (hex, from their `pubkey`)")
    p_share.set_defaults(func=cmd_share)

    p_rev = sub.add_parser("revoke", help="Revoke a share (keys rotate on the next change)")
    _vault_args(p_rev)
    p_rev.add_argument("share_id")
    p_rev.set_defaults(func=cmd_revoke)

    p_hide = sub.add_parser("hide", help="Hide a received share")
    _vault_args(p_hide)
    p_hide.add_argument("share_id")
    p_hide.set_defaults(func=cmd_hide)

    p_shares = sub.add_parser("shares", help="List sent and received shares")
    _vault_args(p_shares)
    p_shares.set_defaults(func=cmd_shares)

    p_sls = sub.add_parser("shared-ls", help="List a received folder share")
    _vault_args(p_sls)
    p_sls.add_argument("share_id")
    p_sls.add_argument("path", nargs="?", default="", help="Sub-folder inside the share")
    p_sls.set_defaults(func=cmd_shared_ls)

    p_sext = sub.add_parser("shared-extract", help="Decrypt a file from a received share")
    _vault_args(p_sext)
    p_sext.add_argument("share_id")
    p_sext.add_argument("out", help="Output plaintext path")
    p_sext.add_argument("--path", default="", help="File path inside a folder share")
    p_sext.set_defaults(func=cmd_shared_extract)

    return p
