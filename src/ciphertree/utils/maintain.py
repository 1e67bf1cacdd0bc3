import argparse

from pathlib import Path

from ciphertree.errors import ValidationError
from ciphertree.utils.core import open_session
from ciphertree.utils.dataModels import Share
from ciphertree.utils.helper import iso_from_ms


def _parse_public_key(text: str) -> bytes:
    try:
        return bytes.fromhex(text.strip())
    except ValueError:
        raise ValidationError("Recipient public key must be hex") from None


def _share_line(share: Share, peer: str) -> str:
    status = "active" if share.is_active else f"revoked {iso_from_ms(share.revoked_at)}"
    return f"{share.id}\t{share.item_type}\t{share.item_name}\t{peer}\t{status}"


def cmd_rm(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        child = session.remove(args.path)
    print(f"[+] Removed {args.path} (id={child.id})")


def cmd_rename(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        child = session.rename(args.path, args.name)
    print(f"[+] Renamed id={child.id} -> {args.name}")


def cmd_share(args: argparse.Namespace) -> None:
    recipient = _parse_public_key(args.recipient)
    with open_session(args) as session:
        share = session.share(args.path, recipient)
    print(f"[+] Shared {args.path} as share id={share.id}")


def cmd_revoke(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        session.revoke(args.share_id)
    # Keys rotate lazily; the revoked recipient keeps read access until then
    print(f"[+] Revoked share {args.share_id}; keys rotate on the next change to the item")


def cmd_hide(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        session.hide(args.share_id)
    print(f"[+] Hid share {args.share_id}")


def cmd_shares(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        sent = session.sent_shares()
        received = session.received_shares()
    print("sent:")
    for share in sent:
        print("  " + _share_line(share, share.recipient_id))
    print("received:")
    for share in received:
        print("  " + _share_line(share, share.sharer_id))
    if not sent and not received:
        print("(none)")


def cmd_shared_ls(args: argparse.Namespace) -> None:
    with open_session(args) as session:
        rows = session.list_shared(args.share_id, args.path)
    if not rows:
        print("(empty)")
        return
    for row in rows:
        size = "-" if row.get("size") is None else f"{row['size']} bytes"
        print(f"{row['type']}\t{row['name']}\t{size}")


def cmd_shared_extract(args: argparse.Namespace) -> None:
    out = Path(args.out)
    with open_session(args) as session:
        plaintext = session.read_shared(args.share_id, args.path)
    out.write_bytes(plaintext)
    print(f"[+] Extracted shared item -> {out}")
