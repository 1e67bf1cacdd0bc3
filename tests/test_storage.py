"""Tests for the vault file, local stores, settings and the CLI."""

import sys

import pytest

from pydantic import ValidationError as SettingsError

from ciphertree import ctv
from ciphertree.config import Settings
from ciphertree.crypto.hash import sha256_hex
from ciphertree.errors import CryptoError, NotFoundError, ValidationError
from ciphertree.storage.local import JsonShareStore, LocalContentStore
from ciphertree.storage.vault import KdfParams, load_vault, read_header, save_vault
from ciphertree.ui.cli import build_parser
from ciphertree.utils.dataModels import Share, ShareKey, VaultInner


@pytest.fixture
def inner():
    return VaultInner(user_id="ab" * 16, root_pointer_name="broot", root_folder_key_encrypted="00ff")


@pytest.fixture
def master():
    return bytes(range(32))


class TestVaultFile:
    """Tests for vault.enc."""

    def test_roundtrip(self, tmp_path, inner, master):
        path = tmp_path / "vault.enc"
        kdf = KdfParams.fresh(3, 1024, 2)
        save_vault(path, kdf, master, inner)

        header_kdf, nonce, header, _ = read_header(path)
        assert (header_kdf.t_cost, header_kdf.m_cost_kib, header_kdf.parallelism) == (3, 1024, 2)
        assert header_kdf.salt == kdf.salt
        assert len(nonce) == 12
        assert header.startswith(b"CTV1")
        assert load_vault(path, master) == inner

    def test_wrong_master_secret(self, tmp_path, inner, master):
        path = tmp_path / "vault.enc"
        save_vault(path, KdfParams.fresh(1, 8, 1), master, inner)
        with pytest.raises(CryptoError):
            load_vault(path, bytes(32))

    def test_kdf_downgrade_detected(self, tmp_path, inner, master):
        path = tmp_path / "vault.enc"
        save_vault(path, KdfParams.fresh(4, 1024, 2), master, inner)
        data = bytearray(path.read_bytes())
        data[5:9] = (1).to_bytes(4, "big")
        path.write_bytes(bytes(data))
        assert read_header(path)[0].t_cost == 1
        with pytest.raises(CryptoError):
            load_vault(path, master)

    def test_bad_magic_and_truncation(self, tmp_path, inner, master):
        path = tmp_path / "vault.enc"
        save_vault(path, KdfParams.fresh(1, 8, 1), master, inner)
        data = path.read_bytes()

        path.write_bytes(b"XXXX" + data[4:])
        with pytest.raises(ValidationError):
            read_header(path)
        path.write_bytes(data[:10])
        with pytest.raises(ValidationError):
            read_header(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(NotFoundError):
            read_header(tmp_path / "absent.enc")


class TestContentStore:
    """Tests for the content-addressed blob store."""

    def test_put_is_content_addressed(self, tmp_path):
        store = LocalContentStore(tmp_path / "blobs")
        address = store.put(b"ciphertext")
        assert address == sha256_hex(b"ciphertext")
        assert store.put(b"ciphertext") == address
        assert store.get(address) == b"ciphertext"

    def test_missing_and_malformed_addresses(self, tmp_path):
        store = LocalContentStore(tmp_path / "blobs")
        with pytest.raises(NotFoundError):
            store.get("ab" * 32)
        with pytest.raises(ValidationError):
            store.get("../vault.enc")


class TestShareStore:
    """Tests for the JSON share store."""

    def _share(self, share_id="s1", recipient="r1"):
        return Share(share_id, "u1", recipient, "04aa", "folder", "bdocs", "docs", "ff", 1)

    def test_filters_and_cascade_delete(self, tmp_path):
        store = JsonShareStore(tmp_path / "shares.json")
        store.add_share(self._share("s1", "r1"), [ShareKey("s1", "file", "f1", "aa")])
        store.add_share(self._share("s2", "r2"), [ShareKey("s2", "file", "f1", "bb")])

        assert [s.id for s in store.list_shares(recipient_id="r2")] == ["s2"]
        assert len(store.list_shares(pointer_name="bdocs")) == 2
        assert len(store.keys_for_item("f1")) == 2

        store.delete_share("s1")
        assert store.get_share("s1") is None
        assert [k.share_id for k in store.keys_for_item("f1")] == ["s2"]

    def test_upsert_replaces_key_for_same_item(self, tmp_path):
        store = JsonShareStore(tmp_path / "shares.json")
        store.add_share(self._share(), [ShareKey("s1", "file", "f1", "aa")])
        store.upsert_share_key(ShareKey("s1", "file", "f1", "cc"))
        store.upsert_share_key(ShareKey("s1", "file", "f2", "dd"))
        keys = {k.item_id: k.wrapped_key for k in store.share_keys("s1")}
        assert keys == {"f1": "cc", "f2": "dd"}

    def test_update_missing_share(self, tmp_path):
        store = JsonShareStore(tmp_path / "shares.json")
        with pytest.raises(NotFoundError):
            store.update_share(self._share())


class TestSettings:
    """Tests for environment-driven settings."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CIPHERTREE_PUBLISH_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("CIPHERTREE_LOG_LEVEL", " debug ")
        settings = Settings()
        assert settings.PUBLISH_MAX_ATTEMPTS == 7
        assert settings.LOG_LEVEL == "DEBUG"

    def test_lifetimes(self):
        settings = Settings()
        assert settings.record_lifetime_ms == 24 * 60 * 60 * 1000
        assert settings.republish_lifetime_ms == 2 * settings.record_lifetime_ms

    def test_rejects_zero_attempts(self):
        with pytest.raises(SettingsError):
            Settings(PUBLISH_MAX_ATTEMPTS=0)


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["ctv", *argv])
    ctv.main()


class TestCli:
    """Tests for the ctv command line."""

    def test_parser_defaults(self):
        args = build_parser().parse_args(["extract", "repo", "/a.txt", "out.txt", "--passphrase", "pw"])
        assert args.vault == "vault.enc"
        assert args.version is None
        assert args.func.__name__ == "cmd_extract"

    def test_add_and_extract(self, monkeypatch, capsys, tmp_path):
        repo = str(tmp_path / "repo")
        src = tmp_path / "plain.txt"
        src.write_bytes(b"through the cli")
        out = tmp_path / "out.txt"

        run_cli(monkeypatch, "init", repo, "--passphrase", "pw", "-t", "1", "-m", "8", "-p", "1")
        run_cli(monkeypatch, "mkdir", repo, "/docs", "--passphrase", "pw")
        run_cli(monkeypatch, "add", repo, str(src), "/docs/", "--passphrase", "pw")
        run_cli(monkeypatch, "ls", repo, "/docs", "--passphrase", "pw")
        run_cli(monkeypatch, "extract", repo, "/docs/plain.txt", str(out), "--passphrase", "pw")

        assert out.read_bytes() == b"through the cli"
        assert "plain.txt" in capsys.readouterr().out

    def test_errors_exit_without_details(self, monkeypatch, capsys, tmp_path):
        repo = str(tmp_path / "repo")
        run_cli(monkeypatch, "init", repo, "--passphrase", "pw", "-t", "1", "-m", "8", "-p", "1")
        capsys.readouterr()
        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch, "ls", repo, "--passphrase", "wrong")
        assert exc.value.code == 1
        assert capsys.readouterr().out.strip() == "[!] Operation failed"
