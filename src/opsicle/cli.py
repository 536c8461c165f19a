"""Command line utilities for Opsicle operators."""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import getpass
import logging
import sys
from pathlib import Path
from typing import Sequence

from .certificates import CertificateBundle, describe_key_usage, generate_ca, issue_leaf, verify_leaf
from .config import TotpConfig
from .exceptions import OpsicleError
from .observability import configure_logging
from .passwords import PasswordHasher
from .totp import TotpEngine, generate_secret, render_qr

PROG = "opsicle"

logger = logging.getLogger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return args.func(args)
    except OpsicleError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROG, description="Opsicle operator utilities")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    totp = sub.add_parser("totp", help="TOTP helpers").add_subparsers(dest="totp_command", required=True)
    secret = totp.add_parser("secret", help="Generate a new base32 TOTP secret")
    secret.set_defaults(func=_cmd_totp_secret)
    codes = totp.add_parser("codes", help="Print upcoming codes for a secret, one per minute")
    codes.add_argument("--secret", required=True, help="Base32 secret")
    codes.add_argument("--validity", type=int, default=5, help="Minutes of codes to print")
    codes.set_defaults(func=_cmd_totp_codes)
    qr = totp.add_parser("qr", help="Render the provisioning QR code of a secret")
    qr.add_argument("--secret", required=True, help="Base32 secret")
    qr.add_argument("--account", required=True, help="Account label, usually the user's email")
    qr.add_argument("--issuer", default=TotpConfig().issuer)
    qr.set_defaults(func=_cmd_totp_qr)

    password = sub.add_parser("password", help="Password hash helpers").add_subparsers(
        dest="password_command", required=True
    )
    hash_ = password.add_parser("hash", help="Print the argon2id hash of a password")
    hash_.add_argument("--password", help="Password to hash; prompted for when omitted")
    hash_.set_defaults(func=_cmd_password_hash)
    check = password.add_parser("check", help="Check a password against an encoded hash")
    check.add_argument("--hash", dest="encoded", required=True, help="Encoded argon2id hash")
    check.add_argument("--password", help="Password to check; prompted for when omitted")
    check.set_defaults(func=_cmd_password_check)

    ca = sub.add_parser("ca", help="Certificate authority helpers").add_subparsers(dest="ca_command", required=True)
    ca_create = ca.add_parser("create", help="Create a self-signed CA for an org")
    ca_create.add_argument("--code", required=True, help="Org code; the CA common name is <code>-ca")
    ca_create.add_argument("--name", required=True, help="Org name used as the subject organisation")
    ca_create.add_argument("--out", default=".", help="Directory to write <code>-ca.crt and <code>-ca.key into")
    ca_create.add_argument("--key-bits", type=int, default=4096)
    ca_create.add_argument("--days", type=int, default=365)
    ca_create.set_defaults(func=_cmd_ca_create)

    cert = sub.add_parser("cert", help="Leaf certificate helpers").add_subparsers(dest="cert_command", required=True)
    cert_create = cert.add_parser("create", help="Issue a leaf certificate from a CA on disk")
    cert_create.add_argument("--ca-cert", required=True)
    cert_create.add_argument("--ca-key", required=True)
    cert_create.add_argument("--name", required=True, help="Common name and output file stem")
    cert_create.add_argument("--dns", action="append", default=[], help="DNS subject alternative name")
    cert_create.add_argument("--ip", action="append", default=[], help="IP subject alternative name")
    cert_create.add_argument("--client", action="store_true", help="Issue a client instead of a server certificate")
    cert_create.add_argument("--out", default=".")
    cert_create.add_argument("--key-bits", type=int, default=2048)
    cert_create.add_argument("--days", type=int, default=180)
    cert_create.set_defaults(func=_cmd_cert_create)
    cert_check = cert.add_parser("check", help="Verify a leaf certificate against a CA")
    cert_check.add_argument("--ca-cert", required=True)
    cert_check.add_argument("--cert", required=True)
    cert_check.set_defaults(func=_cmd_cert_check)

    return parser


def _cmd_totp_secret(args: argparse.Namespace) -> int:
    print(generate_secret())
    return 0


def _cmd_totp_codes(args: argparse.Namespace) -> int:
    engine = TotpEngine()
    for entry in engine.token_sequence(args.secret, dt.timedelta(minutes=args.validity)):
        print(f"{entry.at.strftime('%H:%M:%S')} {entry.code}")
    return 0


def _cmd_totp_qr(args: argparse.Namespace) -> int:
    engine = TotpEngine(TotpConfig(issuer=args.issuer))
    uri = engine.provisioning_uri(args.secret, args.account)
    print(uri)
    print(render_qr(uri), end="")
    return 0


def _cmd_password_hash(args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else getpass.getpass("password: ")
    print(asyncio.run(PasswordHasher().hash(password)))
    return 0


def _cmd_password_check(args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else getpass.getpass("password: ")
    matched = asyncio.run(PasswordHasher().verify(args.encoded, password))
    print("match" if matched else "mismatch")
    return 0 if matched else 1


def _cmd_ca_create(args: argparse.Namespace) -> int:
    bundle = generate_ca(
        common_name=f"{args.code}-ca",
        organization=[args.name],
        key_bits=args.key_bits,
        validity=dt.timedelta(days=args.days),
    )
    cert_path, key_path = _write_bundle(Path(args.out), f"{args.code}-ca", bundle)
    print(f"wrote {cert_path}")
    print(f"wrote {key_path}")
    return 0


def _cmd_cert_create(args: argparse.Namespace) -> int:
    ca = CertificateBundle(cert_pem=Path(args.ca_cert).read_bytes(), key_pem=Path(args.ca_key).read_bytes())
    bundle = issue_leaf(
        ca,
        common_name=args.name,
        dns_names=args.dns,
        ip_addresses=args.ip,
        is_client=args.client,
        key_bits=args.key_bits,
        validity=dt.timedelta(days=args.days),
        not_after=ca.not_after,
    )
    cert_path, key_path = _write_bundle(Path(args.out), args.name, bundle)
    print(f"wrote {cert_path}")
    print(f"wrote {key_path}")
    return 0


def _cmd_cert_check(args: argparse.Namespace) -> int:
    leaf_pem = Path(args.cert).read_bytes()
    valid = verify_leaf(leaf_pem, Path(args.ca_cert).read_bytes())
    print(f"usage: {', '.join(describe_key_usage(leaf_pem)) or 'none'}")
    print("valid" if valid else "invalid")
    return 0 if valid else 1


def _write_bundle(directory: Path, stem: str, bundle: CertificateBundle) -> tuple[Path, Path]:
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / f"{stem}.crt"
    key_path = directory / f"{stem}.key"
    if cert_path.exists() or key_path.exists():
        raise SystemExit(f"refusing to overwrite {cert_path} or {key_path}")
    cert_path.write_bytes(bundle.cert_pem)
    key_path.write_bytes(bundle.key_pem)
    key_path.chmod(0o600)
    logger.debug("wrote certificate bundle %s", stem)
    return cert_path, key_path


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
