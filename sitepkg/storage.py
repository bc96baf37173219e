"""Where tarballs are written to and read from.

Locations are plain paths, ``file://`` URLs, ``s3://bucket/key`` URLs or
(read only) ``http(s)://`` URLs. A location that does not exist is always
reported as ``FileNotFoundError``, whatever the backend.

Remote clients (boto3 S3 client, ``httpx.Client``) are created by the caller
and handed to the backends; nothing here caches a client globally.
"""

from __future__ import annotations

import io
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Optional, Tuple
from urllib.parse import urlparse

import httpx
from botocore.exceptions import ClientError

from .constants import COPY_BUFSIZE
from .errors import StorageError
from .hashutil import HashingReader, HashingWriter
from .log import get_logger

logger = get_logger(__name__)


class Storage(ABC):
    @abstractmethod
    def create(self, location: str, stream: BinaryIO) -> None:
        """Store everything readable from ``stream`` at ``location``."""

    @abstractmethod
    def open(self, location: str) -> BinaryIO:
        """Open ``location`` for reading.

        Raises:
            FileNotFoundError: nothing is stored at ``location``.
        """


def local_path(location: str) -> str:
    u = urlparse(location)
    if u.scheme == "file":
        # file://dir/name is relative: the "host" is the first path element
        return os.path.join(u.netloc, u.path.lstrip("/")) if u.netloc else u.path
    return location


def bucket_key(location: str) -> Tuple[str, str]:
    u = urlparse(location)
    return u.netloc, u.path.lstrip("/")


class LocalStorage(Storage):
    """Files on the local filesystem.

    ``create`` writes a temporary file next to the destination and renames it
    into place, so readers never observe a partially written tarball.
    """

    def create(self, location: str, stream: BinaryIO) -> None:
        path = local_path(location)
        directory = os.path.dirname(os.path.abspath(path))
        fd, tmp = tempfile.mkstemp(prefix=".sitepkg-", suffix=".tmp", dir=directory)
        try:
            with open(fd, "wb") as fh:
                wh = HashingWriter(fh)
                while True:
                    buf = stream.read(COPY_BUFSIZE)
                    if not buf:
                        break
                    wh.write(buf)
            os.chmod(tmp, 0o644)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("wrote", path=path, bytes=wh.count, SHA256=wh.hexdigest())

    def open(self, location: str) -> BinaryIO:
        path = local_path(location)
        logger.debug("open", path=path)
        return open(path, "rb")


class S3Storage(Storage):
    """Objects in S3 (or any S3-compatible service) via an injected boto3 client."""

    def __init__(self, client: Any):
        self.client = client

    def create(self, location: str, stream: BinaryIO) -> None:
        bucket, key = bucket_key(location)
        hr = HashingReader(stream)
        body = hr.read()
        attrs = {"bucket": bucket, "key": key, "bytes": hr.count, "SHA256": hr.hexdigest()}
        logger.debug("putting object", **attrs)
        resp = self.client.put_object(
            Bucket=bucket,
            Key=key,
            Body=body,
            ChecksumSHA256=hr.b64digest(),
        )
        attrs["VersionId"] = resp.get("VersionId")
        logger.debug("put object", **attrs)

    def open(self, location: str) -> BinaryIO:
        bucket, key = bucket_key(location)
        attrs = {"bucket": bucket, "key": key}
        logger.debug("get object", **attrs)
        try:
            resp = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchKey":
                raise FileNotFoundError(f"object not found: {location}") from e
            raise
        attrs["VersionId"] = resp.get("VersionId")
        logger.debug("get object successful", **attrs)
        return resp["Body"]


class HTTPStorage(Storage):
    """Read-only access to tarballs published over HTTP(S)."""

    def __init__(self, client: httpx.Client):
        self.client = client

    def create(self, location: str, stream: BinaryIO) -> None:
        raise StorageError(f"unimplemented URL scheme: {urlparse(location).scheme}")

    def open(self, location: str) -> BinaryIO:
        logger.debug("GET", url=location)
        resp = self.client.get(location)
        if resp.status_code == 404:
            raise FileNotFoundError(f"not found: {location}")
        resp.raise_for_status()
        return io.BytesIO(resp.content)


class StorageRouter(Storage):
    """Dispatch each location to the backend for its URL scheme."""

    def __init__(self, *, s3_client: Any = None, http_client: Optional[httpx.Client] = None):
        self.local = LocalStorage()
        self.s3 = S3Storage(s3_client) if s3_client is not None else None
        self.http = HTTPStorage(http_client) if http_client is not None else None

    def backend(self, location: str) -> Storage:
        scheme = urlparse(location).scheme
        if scheme in ("", "file"):
            return self.local
        if scheme == "s3":
            if self.s3 is None:
                raise StorageError(f"no S3 client configured for: {location}")
            return self.s3
        if scheme in ("http", "https"):
            if self.http is None:
                raise StorageError(f"no HTTP client configured for: {location}")
            return self.http
        raise StorageError(f"unsupported URL scheme: {scheme}")

    def create(self, location: str, stream: BinaryIO) -> None:
        self.backend(location).create(location, stream)

    def open(self, location: str) -> BinaryIO:
        return self.backend(location).open(location)


def needs_s3(*locations: Optional[str]) -> bool:
    return any(loc and urlparse(loc).scheme == "s3" for loc in locations)


def needs_http(*locations: Optional[str]) -> bool:
    return any(loc and urlparse(loc).scheme in ("http", "https") for loc in locations)
