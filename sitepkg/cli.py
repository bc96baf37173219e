from __future__ import annotations

import argparse
import os
import sys
import tarfile
from contextlib import ExitStack, contextmanager
from typing import Any, Iterator, List, Optional, Tuple

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from sitepkg import config
from sitepkg.codec import Codec
from sitepkg.errors import SitepkgError
from sitepkg.keysource import load_key
from sitepkg.log import setup_logging
from sitepkg.manifest import OWNERSHIP_STRATEGIES, Manifest, load
from sitepkg.pipeline import Pipeline, PipelineResult
from sitepkg.storage import StorageRouter, needs_http, needs_s3

HTTP_TIMEOUT = 60.0


def _resolve_root(root: Optional[str]) -> str:
    """Absolute extraction/creation root; the working directory when unset."""
    return os.path.abspath(root) if root else os.getcwd()


def _load_manifest(manifest: Optional[str], root: str, *, ignore_missing: bool, ownership: str) -> Manifest:
    if not manifest:
        raise SitepkgError("manifest not specified")
    if ownership not in OWNERSHIP_STRATEGIES:
        raise SitepkgError(f"unknown ownership strategy: {ownership}")
    return load(manifest, root, ignore_missing=ignore_missing, ownership=OWNERSHIP_STRATEGIES[ownership]())


@contextmanager
def _open_pipeline(
    tarball: str,
    *,
    root: Optional[str],
    manifest: Optional[str],
    compression: Optional[str],
    keyfile: Optional[str],
    key_secret: Optional[str],
    ignore_missing: bool,
    ownership: str,
    s3_client: Any,
    secrets_client: Any,
    http_client: Optional[httpx.Client],
) -> Iterator[Tuple[Manifest, Pipeline]]:
    """Load the manifest and assemble a pipeline; the key is closed on exit."""
    if not tarball:
        raise SitepkgError("tarball not specified")
    m = _load_manifest(manifest, _resolve_root(root), ignore_missing=ignore_missing, ownership=ownership)
    codec = Codec.from_name(compression)

    with ExitStack() as stack:
        if s3_client is None and needs_s3(tarball):
            s3_client = boto3.client("s3")
        if secrets_client is None and key_secret and not keyfile:
            secrets_client = boto3.client("secretsmanager")
        if http_client is None and needs_http(tarball):
            http_client = stack.enter_context(httpx.Client(follow_redirects=True, timeout=HTTP_TIMEOUT))

        key = load_key(keyfile=keyfile, secret_id=key_secret, secrets_client=secrets_client)
        if key is not None:
            stack.enter_context(key)

        storage = StorageRouter(s3_client=s3_client, http_client=http_client)
        yield m, Pipeline(storage, key=key, codec=codec)


def cmd_create(
    tarball: str,
    *,
    manifest: Optional[str],
    root: Optional[str] = None,
    compression: Optional[str] = None,
    keyfile: Optional[str] = None,
    key_secret: Optional[str] = None,
    ignore_missing: bool = False,
    s3_client: Any = None,
    secrets_client: Any = None,
) -> PipelineResult:
    """Archive the manifest's paths under ``root`` and store them at ``tarball``.

    Args:
        tarball: Destination path or URL (file://, s3://).
        manifest: Path of the manifest file, one relative path per line.
        root: Directory the manifest's relative paths are resolved against.
        compression: "none" (default), "gzip" or "zstd".
        keyfile: Seal the tarball with the 32-byte key in this file.
        key_secret: Seal with the key held in this Secrets Manager secret.
        ignore_missing: Skip manifest paths that do not exist.
    """
    with _open_pipeline(
        tarball,
        root=root,
        manifest=manifest,
        compression=compression,
        keyfile=keyfile,
        key_secret=key_secret,
        ignore_missing=ignore_missing,
        ownership="name",
        s3_client=s3_client,
        secrets_client=secrets_client,
        http_client=None,
    ) as (m, pipeline):
        return pipeline.create(m, tarball)


def cmd_extract(
    tarball: str,
    *,
    manifest: Optional[str],
    root: Optional[str] = None,
    compression: Optional[str] = None,
    keyfile: Optional[str] = None,
    key_secret: Optional[str] = None,
    ignore_missing: bool = False,
    ignore_missing_tarball: bool = False,
    ownership: str = "name",
    s3_client: Any = None,
    secrets_client: Any = None,
    http_client: Optional[httpx.Client] = None,
) -> Optional[PipelineResult]:
    """Restore the manifest's paths under ``root`` from ``tarball``.

    Args:
        tarball: Source path or URL (file://, s3://, http(s)://).
        ignore_missing_tarball: Succeed without doing anything when the
            tarball does not exist.
        ownership: "name" (look up archived user/group names), "numeric"
            (use archived ids) or "skip" (do not chown).

    The remaining arguments mirror ``cmd_create``.
    """
    with _open_pipeline(
        tarball,
        root=root,
        manifest=manifest,
        compression=compression,
        keyfile=keyfile,
        key_secret=key_secret,
        ignore_missing=ignore_missing,
        ownership=ownership,
        s3_client=s3_client,
        secrets_client=secrets_client,
        http_client=http_client,
    ) as (m, pipeline):
        return pipeline.extract(m, tarball, ignore_missing_tarball=ignore_missing_tarball)


def load_settings() -> config.Settings:
    """Environment defaults for the command line; exits on invalid values."""
    try:
        return config.get_settings()
    except ValidationError as e:
        print(f"Error: invalid SITEPKG_* environment: {e}", file=sys.stderr)
        sys.exit(2)


def add_logging_arguments(ap: argparse.ArgumentParser, settings: config.Settings) -> None:
    ap.add_argument("--log-level", default=settings.log_level, help="set log level")
    ap.add_argument("--log-file", default=settings.log_file, help="log to file")
    ap.add_argument("--json-log-level", default=settings.json_log_level, help="set JSON log level")
    ap.add_argument("--json-log-file", default=settings.json_log_file, help="log JSON to file")


def main(argv: List[str] | None = None):
    settings = load_settings()
    ap = argparse.ArgumentParser(
        prog="sitepkg",
        description="Package and restore site packages",
        epilog="Every flag defaults to the matching SITEPKG_* environment variable.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    for name, help_text in (("create", "Create a tarball from the manifest"), ("extract", "Extract a tarball using the manifest")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--root", "--chroot", dest="root", default=settings.root, help="act relative directory (default: cwd)")
        p.add_argument("--manifest", default=settings.manifest, help="manifest path")
        p.add_argument("--tarball", default=settings.tarball, help="tarball path or URL")
        p.add_argument(
            "--compression",
            choices=["none", "gzip", "zstd"],
            default=settings.compression,
            help="whole-tarball compression (default: none)",
        )
        p.add_argument("--keyfile", default=settings.keyfile, help="encrypt/decrypt using this keyfile")
        p.add_argument(
            "--key-secret",
            default=settings.key_secret,
            help="encrypt/decrypt using the key stored in this AWS Secrets Manager secret (ARN or name)",
        )
        p.add_argument(
            "--ignore-missing",
            action="store_true",
            default=settings.ignore_missing,
            help="ignore manifest paths missing from the filesystem (create) or the tarball (extract)",
        )
        if name == "extract":
            p.add_argument(
                "--ignore-missing-tarball",
                action="store_true",
                default=settings.ignore_missing_tarball,
                help="succeed without extracting anything when the tarball does not exist",
            )
            p.add_argument(
                "--ownership",
                choices=sorted(OWNERSHIP_STRATEGIES),
                default=settings.ownership,
                help="how to pick the owner of extracted files (default: name)",
            )
        add_logging_arguments(p, settings)

    args = ap.parse_args(argv)
    try:
        setup_logging(args.log_level, args.log_file, args.json_log_level, args.json_log_file)
        common = dict(
            manifest=args.manifest,
            root=args.root,
            compression=args.compression,
            keyfile=args.keyfile,
            key_secret=args.key_secret,
            ignore_missing=args.ignore_missing,
        )
        if args.cmd == "create":
            cmd_create(args.tarball, **common)
        elif args.cmd == "extract":
            cmd_extract(
                args.tarball,
                ignore_missing_tarball=args.ignore_missing_tarball,
                ownership=args.ownership,
                **common,
            )
        else:
            raise RuntimeError("Unknown command")
    except (SitepkgError, OSError, ValueError, RuntimeError, tarfile.TarError, httpx.HTTPError, BotoCoreError, ClientError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
