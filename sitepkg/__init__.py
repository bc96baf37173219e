"""
sitepkg: package a site's files into a single tarball and restore them.

Features:

- Manifest-driven archives: only the listed paths are stored, directories never recurse.
- Ownership and permission bits (setuid/setgid/sticky included) round-trip.
- Optional whole-tarball compression (gzip or zstd).
- Optional sealing with AES-256-GCM under a keyfile or an AWS Secrets Manager key.
- Tarballs live on local disk, in S3, or (read only) behind HTTP(S).

The CLI front ends are sitepkg.cli (create/extract) and sitepkg.mgr (key management).
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "manifest",
    "sealedbox",
    "codec",
    "storage",
    "pipeline",
]
