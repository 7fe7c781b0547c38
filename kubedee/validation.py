"""Cluster name validation.

Names end up as container hostnames and as part of the LXD network
interface name, so only a strict character set is accepted.
"""

import re

from kubedee.exceptions import InvalidNameError
from kubedee.logging_config import get_logger
from kubedee.models.cluster import ClusterName

logger = get_logger(__name__)

RAW_NAME_PATTERN = re.compile(r"[A-Za-z0-9_.-]{1,50}")
ALLOWED_PATTERN = "[[:alnum:]-]{1,50}"


def normalize_name(raw: str) -> str:
    """Replace dots and underscores with hyphens, e.g. 'v1.8.4' -> 'v1-8-4'."""
    return raw.replace(".", "-").replace("_", "-")


def validate_name(raw: str) -> ClusterName:
    """Validate and normalize a user-supplied cluster name.

    Args:
        raw: The unvalidated name

    Returns:
        The validated ClusterName

    Raises:
        InvalidNameError: If the name contains disallowed characters or is too long
    """
    if raw is None or not RAW_NAME_PATTERN.fullmatch(raw):
        raise InvalidNameError(f"Invalid name (only '{ALLOWED_PATTERN}' allowed): {raw}")

    name = normalize_name(raw)
    if name != raw:
        logger.warning(f"Normalized name '{raw}' -> '{name}'")

    return ClusterName(raw=raw, value=name, normalized=name != raw)
