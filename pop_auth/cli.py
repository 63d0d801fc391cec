"""
pop-auth command line.

  pop-auth gen-secret
      Print a fresh HMAC_KEY (base64url of 32 random bytes).

  pop-auth verify-audit [LOG] [--state STATE]
      Verify the hash chain of the audit log (and optionally that the state
      file points at its last line).

  pop-auth sign-proof --key KEY.pem METHOD URL [--nonce N] [--access-token T]
      Print a DPoP proof for one request, e.g. for use with curl. The key
      file is created on first use.

Exit codes:
- 0: OK
- 1: Verification failed
- 2: Usage error
"""

from __future__ import annotations

import argparse
import secrets
import sys
from pathlib import Path
from typing import List, Optional

from .audit import chain_head, log_path, verify_log_chain
from .client import FileKeyRepository, init_client
from .codec import b64url_encode
from .errors import InvalidMethod
from .keys import HMAC_ENV_KEY, SECRET_BYTE_LENGTH
from .proof import create_proof


def _gen_secret(args: argparse.Namespace) -> int:
    print(f"{HMAC_ENV_KEY}={b64url_encode(secrets.token_bytes(SECRET_BYTE_LENGTH))}")
    return 0


def _verify_audit(args: argparse.Namespace) -> int:
    path: Path = args.log or log_path()
    try:
        ok = verify_log_chain(path)
    except OSError as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    if not ok:
        print("FAIL", file=sys.stderr)
        print(f"hash chain broken: {path}", file=sys.stderr)
        return 1

    last_hash = chain_head(path)
    if args.state is not None:
        if not args.state.exists():
            print("FAIL", file=sys.stderr)
            print(f"State file not found: {args.state}", file=sys.stderr)
            return 1
        state_val = args.state.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            print("FAIL", file=sys.stderr)
            print(f"State mismatch: state={state_val} log_last={last_hash}", file=sys.stderr)
            return 1

    print("OK")
    if last_hash:
        print(f"last_hash={last_hash}")
    return 0


def _sign_proof(args: argparse.Namespace) -> int:
    key = init_client(FileKeyRepository(args.key))
    try:
        proof = create_proof(
            key,
            args.method,
            args.url,
            nonce=args.nonce,
            access_token=args.access_token,
        )
    except (InvalidMethod, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    print(proof)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pop-auth", description="DPoP proofs and passkey challenge tooling.")
    sub = p.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("gen-secret", help="Print a new HMAC_KEY value.")
    gen.set_defaults(func=_gen_secret)

    ver = sub.add_parser("verify-audit", help="Verify audit log integrity.")
    ver.add_argument(
        "log",
        type=Path,
        nargs="?",
        default=None,
        help="Path to audit JSONL file (default: $AUDIT_DIR/verification_audit.jsonl)",
    )
    ver.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/verification_audit.state)",
    )
    ver.set_defaults(func=_verify_audit)

    sig = sub.add_parser("sign-proof", help="Sign a DPoP proof for one request.")
    sig.add_argument("--key", type=Path, required=True, help="PEM file holding the proof key pair")
    sig.add_argument("--nonce", default=None)
    sig.add_argument("--access-token", default=None)
    sig.add_argument("method")
    sig.add_argument("url")
    sig.set_defaults(func=_sign_proof)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
