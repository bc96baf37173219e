from __future__ import annotations

import argparse
import sys
from typing import Any, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sitepkg.cli import add_logging_arguments, load_settings
from sitepkg.errors import SitepkgError
from sitepkg.keysource import put_new_secret_value
from sitepkg.log import get_logger, setup_logging
from sitepkg.sealedbox import new_keyfile

logger = get_logger(__name__)


def cmd_new_keyfile(path: str, force: bool = False) -> str:
    """Write a freshly generated key to ``path``.

    Args:
        path: Keyfile to create, mode 0600.
        force: Replace an existing file instead of failing.

    Returns:
        The new key's fingerprint.
    """
    with new_keyfile(path, overwrite=force) as key:
        fpr = key.fingerprint()
    logger.info("created keyfile", path=path, fpr=fpr)
    return fpr


def cmd_new_secret_value(secret_id: str, force: bool = False, client: Any = None) -> str:
    """Store a freshly generated key as the secret's current value.

    Args:
        secret_id: Secret ARN or name; the secret must already exist.
        force: Replace a value already staged as AWSCURRENT.
        client: Secrets Manager client; a default boto3 client when None.
    """
    if client is None:
        client = boto3.client("secretsmanager")
    return put_new_secret_value(client, secret_id, force=force)


def main(argv: List[str] | None = None):
    settings = load_settings()
    ap = argparse.ArgumentParser(prog="sitepkgmgr", description="Manage sitepkg keys")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("new-keyfile", help="Generate a new keyfile")
    p.add_argument("path")
    p.add_argument("--force", action="store_true", help="overwrite an existing keyfile")
    add_logging_arguments(p, settings)

    p = sub.add_parser("new-secret-value", help="Populate an AWS Secrets Manager secret with a new key")
    p.add_argument("secret_id", metavar="SECRET_ID")
    p.add_argument("--force", action="store_true", help="replace the current secret value")
    add_logging_arguments(p, settings)

    args = ap.parse_args(argv)
    try:
        setup_logging(args.log_level, args.log_file, args.json_log_level, args.json_log_file)
        if args.cmd == "new-keyfile":
            cmd_new_keyfile(args.path, force=args.force)
        elif args.cmd == "new-secret-value":
            cmd_new_secret_value(args.secret_id, force=args.force)
        else:
            raise RuntimeError("Unknown command")
    except (SitepkgError, OSError, ValueError, RuntimeError, BotoCoreError, ClientError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
