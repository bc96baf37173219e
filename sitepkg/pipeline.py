from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .codec import Codec
from .constants import CODEC_NONE
from .hashutil import HashingReader, sha256_hex
from .log import get_logger
from .manifest import CreateReport, ExtractReport, Manifest
from .sealedbox import Box, Key, seal
from .storage import Storage

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    location: str
    size: int
    sha256: str
    report: Union[CreateReport, ExtractReport]


class Pipeline:
    """Archive -> compress -> seal on the way out; the exact inverse on the way in.

    Compression and encryption are independent: without a codec the archive
    bytes are stored as-is, without a key nothing is sealed. The key is
    borrowed, not owned; the caller keeps closing it.
    """

    def __init__(self, storage: Storage, key: Optional[Key] = None, codec: Optional[Codec] = None):
        self.storage = storage
        self.key = key
        self.codec = codec if codec is not None else Codec(CODEC_NONE)

    def pack(self, manifest: Manifest) -> Tuple[bytes, CreateReport]:
        """Produce the bytes that ``create`` would store."""
        buf = io.BytesIO()
        report = manifest.create(buf)
        data = buf.getvalue()
        logger.debug("created archive", bytes=len(data), entries=len(report.written))

        if self.codec.enabled:
            n = len(data)
            data = self.codec.compress(data)
            logger.debug("compressed", codec=self.codec.name, bytes_in=n, bytes_out=len(data))

        if self.key is not None:
            data = seal(self.key, data).to_bytes()
            logger.debug("sealed", fpr=self.key.fingerprint(), bytes=len(data))
        return data, report

    def unpack(self, manifest: Manifest, data: bytes) -> ExtractReport:
        """Reverse ``pack`` and extract the result through ``manifest``."""
        if self.key is not None:
            data = Box.from_bytes(data).open(self.key)
            logger.debug("opened box", fpr=self.key.fingerprint(), bytes=len(data))
        if self.codec.enabled:
            data = self.codec.decompress(data)
            logger.debug("decompressed", codec=self.codec.name, bytes=len(data))
        return manifest.extract(io.BytesIO(data))

    def create(self, manifest: Manifest, location: str) -> PipelineResult:
        data, report = self.pack(manifest)
        digest = sha256_hex(data)
        attrs = {"tarball": location, "bytes": len(data), "SHA256": digest}
        logger.info("writing tarball", **attrs)
        self.storage.create(location, io.BytesIO(data))
        return PipelineResult(location=location, size=len(data), sha256=digest, report=report)

    def extract(
        self,
        manifest: Manifest,
        location: str,
        ignore_missing_tarball: bool = False,
    ) -> Optional[PipelineResult]:
        """Fetch ``location`` and restore it.

        Returns None, without touching the filesystem, when the tarball does
        not exist and ``ignore_missing_tarball`` is set.
        """
        try:
            fh = self.storage.open(location)
        except FileNotFoundError:
            if ignore_missing_tarball:
                logger.info("ignoring missing tarball", tarball=location)
                return None
            raise
        try:
            hr = HashingReader(fh)
            data = hr.read()
        finally:
            fh.close()
        attrs = {"tarball": location, "bytes": hr.count, "SHA256": hr.hexdigest()}
        logger.info("read tarball", **attrs)

        report = self.unpack(manifest, data)
        return PipelineResult(location=location, size=hr.count, sha256=hr.hexdigest(), report=report)
