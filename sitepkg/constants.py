# Sealed box wire format
BOX_MAGIC = bytes([0xCE, 0x3A])
ALG_AES256_GCM = 1

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
FINGERPRINT_SIZE = 7  # bytes of SHA-256(key) shown in logs

KEYFILE_MODE = 0o600


# Whole-stream codec IDs
CODEC_NONE = 0
CODEC_GZIP = 1
CODEC_ZSTD = 2

CODEC_NAMES = {
    "none": CODEC_NONE,
    "gzip": CODEC_GZIP,
    "zstd": CODEC_ZSTD,
}

DEFAULT_GZIP_LEVEL = 6
DEFAULT_ZSTD_LEVEL = 3


# Environment
ENV_PREFIX = "SITEPKG_"

COPY_BUFSIZE = 64 * 1024
