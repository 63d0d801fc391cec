"""Tests for the pop-auth command line."""

from __future__ import annotations

from pathlib import Path

import pytest

from pop_auth.audit import LOG_NAME, STATE_NAME, append_event
from pop_auth.cli import main
from pop_auth.codec import b64url_decode
from pop_auth.proof import verify_proof


def test_gen_secret(capsys) -> None:
    assert main(["gen-secret"]) == 0
    out = capsys.readouterr().out.strip()
    name, _, value = out.partition("=")
    assert name == "HMAC_KEY"
    assert len(b64url_decode(value)) == 32


def test_verify_audit_ok(tmp_path: Path, capsys) -> None:
    head = append_event({"event": "x"}, directory=tmp_path)
    rc = main(["verify-audit", str(tmp_path / LOG_NAME), "--state", str(tmp_path / STATE_NAME)])
    assert rc == 0
    out = capsys.readouterr().out
    assert "OK" in out
    assert f"last_hash={head}" in out


def test_verify_audit_detects_tampering(tmp_path: Path, capsys) -> None:
    append_event({"event": "x", "result": "accepted"}, directory=tmp_path)
    log = tmp_path / LOG_NAME
    log.write_text(log.read_text().replace("accepted", "denied"))
    assert main(["verify-audit", str(log)]) == 1
    assert "FAIL" in capsys.readouterr().err


def test_verify_audit_state_mismatch(tmp_path: Path, capsys) -> None:
    append_event({"event": "x"}, directory=tmp_path)
    state = tmp_path / STATE_NAME
    state.write_text("0" * 64 + "\n")
    assert main(["verify-audit", str(tmp_path / LOG_NAME), "--state", str(state)]) == 1
    assert "State mismatch" in capsys.readouterr().err


def test_verify_audit_missing_state(tmp_path: Path, capsys) -> None:
    append_event({"event": "x"}, directory=tmp_path)
    assert main(["verify-audit", str(tmp_path / LOG_NAME), "--state", str(tmp_path / "nope")]) == 1


@pytest.mark.anyio
async def test_sign_proof(tmp_path: Path, capsys) -> None:
    key = tmp_path / "proof.pem"
    url = "https://api.example.com/api/session"
    assert main(["sign-proof", "--key", str(key), "GET", url]) == 0
    proof = capsys.readouterr().out.strip()
    assert key.exists()

    result = await verify_proof(proof, "GET", url)
    assert result.valid is True

    # same key file, same thumbprint
    assert main(["sign-proof", "--key", str(key), "GET", url]) == 0
    again = await verify_proof(capsys.readouterr().out.strip(), "GET", url)
    assert again.thumbprint == result.thumbprint


def test_sign_proof_rejects_bad_url(tmp_path: Path, capsys) -> None:
    assert main(["sign-proof", "--key", str(tmp_path / "k.pem"), "GET", "/relative"]) == 2
    assert "error" in capsys.readouterr().err
