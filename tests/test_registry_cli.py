"""
Tests for the registry maintainer CLI.
"""

import json
import sys
import types

import pytest

import cli


@pytest.fixture
def workspace(tmp_path, manifest_body, monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda level=None: None)
    manifest = tmp_path / "registry.json"
    manifest.write_text(json.dumps(manifest_body(sequence=4)), encoding="utf-8")
    return tmp_path


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["cantonconnect-registry", *argv])
    return cli.asyncio.run(cli.main())


def _keypair(directory):
    private_path = next(directory.glob("registry-*.key"))
    public_key = next(directory.glob("registry-*.pub")).read_text(encoding="utf-8").strip()
    return private_path, public_key


class TestRegistryCli:

    def test_keygen_sign_verify(self, workspace, monkeypatch, capsys):
        keys = workspace / "keys"
        assert _run(monkeypatch, "keygen", "--out-dir", str(keys)) == 0
        private_path, public_key = _keypair(keys)
        assert oct(private_path.stat().st_mode & 0o777) == "0o600"

        signed = workspace / "signed.json"
        assert _run(
            monkeypatch, "sign", str(workspace / "registry.json"), "--key", str(private_path), "-o", str(signed)
        ) == 0
        assert len(json.loads(signed.read_text(encoding="utf-8"))["signatures"]) == 1

        capsys.readouterr()
        assert _run(monkeypatch, "verify", str(signed), "--public-key", public_key) == 0
        out = capsys.readouterr().out
        assert "Registry verified (stable #4)" in out
        assert "w1" in out

    def test_append_keeps_other_signatures(self, workspace, monkeypatch):
        _run(monkeypatch, "keygen", "--out-dir", str(workspace / "a"))
        _run(monkeypatch, "keygen", "--out-dir", str(workspace / "b"))
        key_a, public_a = _keypair(workspace / "a")
        key_b, public_b = _keypair(workspace / "b")
        signed = workspace / "signed.json"

        _run(monkeypatch, "sign", str(workspace / "registry.json"), "--key", str(key_a), "-o", str(signed))
        _run(monkeypatch, "sign", str(signed), "--key", str(key_b), "-o", str(signed), "--append")

        assert _run(
            monkeypatch, "verify", str(signed),
            "--public-key", public_a, "--public-key", public_b, "--required", "2",
        ) == 0

    def test_verify_with_wrong_key_fails(self, workspace, monkeypatch, capsys, public_key):
        _run(monkeypatch, "keygen", "--out-dir", str(workspace / "keys"))
        private_path, _ = _keypair(workspace / "keys")
        signed = workspace / "signed.json"
        _run(monkeypatch, "sign", str(workspace / "registry.json"), "--key", str(private_path), "-o", str(signed))

        capsys.readouterr()
        assert _run(monkeypatch, "verify", str(signed), "--public-key", public_key) == 1
        assert "INVALID_SIGNATURE" in capsys.readouterr().out

    def test_sign_refuses_invalid_manifest(self, workspace, monkeypatch, capsys):
        bad = workspace / "bad.json"
        bad.write_text(json.dumps({"metadata": {}, "wallets": []}), encoding="utf-8")
        _run(monkeypatch, "keygen", "--out-dir", str(workspace / "keys"))
        private_path, _ = _keypair(workspace / "keys")

        assert _run(monkeypatch, "sign", str(bad), "--key", str(private_path)) == 1
        assert "Invalid manifest" in capsys.readouterr().out

    def test_no_command_prints_help(self, workspace, monkeypatch, capsys):
        assert _run(monkeypatch) == 0
        assert "keygen" in capsys.readouterr().out

    def test_wallets_lists_published_registry(
        self, workspace, monkeypatch, capsys, build_verifier, fetcher_factory, make_manifest
    ):
        fetcher = fetcher_factory([make_manifest(sequence=7)])
        monkeypatch.setattr(cli, "_verifier", lambda keys, required, channel: build_verifier(fetcher))

        assert _run(monkeypatch, "wallets") == 0
        out = capsys.readouterr().out
        assert "Registry verified (stable #7)" in out
        assert "Wallet w1" in out
        assert len(fetcher.calls) == 1

    def test_conformance_exit_codes(self, workspace, monkeypatch, capsys, adapter_factory):
        module = types.ModuleType("cli_wallet_pkg")
        module.GoodAdapter = adapter_factory
        module.UndeclaredRestore = adapter_factory(capabilities=("connect",))
        monkeypatch.setitem(sys.modules, "cli_wallet_pkg", module)

        assert _run(monkeypatch, "conformance", "cli_wallet_pkg:GoodAdapter") == 0
        assert "❌" not in capsys.readouterr().out

        assert _run(monkeypatch, "conformance", "cli_wallet_pkg:UndeclaredRestore") == 1
        assert "❌ restore implemented iff declared" in capsys.readouterr().out

        assert _run(monkeypatch, "conformance", "cli_wallet_pkg:Missing") == 1
        assert "has no attribute" in capsys.readouterr().out
