"""Key material from keyfiles and AWS Secrets Manager.

The Secrets Manager client is created by the caller (see ``cli``) and passed
in. Secret values are the raw 32 key bytes stored as ``SecretBinary``.
"""

from __future__ import annotations

from typing import Any, Optional

from botocore.exceptions import ClientError

from .errors import SitepkgError, UnusableKeyError
from .log import get_logger
from .sealedbox import Key, key_from_bytes, load_keyfile, new_key

logger = get_logger(__name__)

CURRENT_STAGE = "AWSCURRENT"


def key_from_secret(client: Any, secret_id: str) -> Key:
    """Fetch the current secret value and wrap it as a key."""
    attrs = {"secret": secret_id}
    logger.debug("fetching key", **attrs)
    resp = client.get_secret_value(SecretId=secret_id)
    attrs["version"] = resp.get("VersionId")
    logger.debug("fetched secret value", **attrs)

    data = resp.get("SecretBinary")
    if data is None:
        raise UnusableKeyError(f"secret has no binary value: {secret_id}")
    key = key_from_bytes(data)
    attrs["fpr"] = key.fingerprint()
    logger.info("fetched key", **attrs)
    return key


def current_version(client: Any, secret_id: str) -> Optional[str]:
    """Version id staged as AWSCURRENT, or None when the secret has no value yet."""
    try:
        ds = client.describe_secret(SecretId=secret_id)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
            raise SitepkgError(f"secret not found: {secret_id}") from e
        raise
    for version, stages in (ds.get("VersionIdsToStages") or {}).items():
        if CURRENT_STAGE in stages:
            return version
    return None


def put_new_secret_value(client: Any, secret_id: str, force: bool = False) -> str:
    """Generate a fresh key and store it as the secret's new current value.

    Refuses to replace an existing current value unless ``force`` is set.
    Returns the new version id.
    """
    attrs = {"secret": secret_id}
    logger.debug("populating secretsmanager secret value", **attrs)

    current = current_version(client, secret_id)
    if current is None:
        logger.debug("no secret versions", **attrs)
    elif force:
        logger.warning("overwriting current secret value", **attrs, version=current)
    else:
        raise SitepkgError(f"refusing to overwrite current secret value; {secret_id}: {current}")

    with new_key() as key:
        attrs["fpr"] = key.fingerprint()
        logger.info("generated new key", **attrs)
        resp = client.put_secret_value(SecretId=secret_id, SecretBinary=key.to_bytes())

    version = resp.get("VersionId")
    logger.info("created new secret value", **attrs, version=version)
    return version


def load_key(
    keyfile: Optional[str] = None,
    secret_id: Optional[str] = None,
    secrets_client: Any = None,
) -> Optional[Key]:
    """Load the configured key, if any; a keyfile wins over a secret."""
    if keyfile:
        key = load_keyfile(keyfile)
        logger.info("loaded keyfile", path=keyfile, fpr=key.fingerprint())
        return key
    if secret_id:
        if secrets_client is None:
            raise SitepkgError(f"no Secrets Manager client configured for: {secret_id}")
        return key_from_secret(secrets_client, secret_id)
    return None
