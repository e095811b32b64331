"""Small helpers for turning engine identifiers into readable log text."""

from typing import Dict, Optional

# Checked in order; the first non-empty value wins.
FRIENDLY_NAME_LABELS = (
    "org.opencontainers.image.title",
    "org.label-schema.name",
    "com.docker.compose.service",
    "io.portainer.access.control",
    "name",
)


def short_id(engine_id: str) -> str:
    """Return the 12-character short form of an ID, safe for any length."""
    if engine_id.startswith("sha256:"):
        engine_id = engine_id[len("sha256:"):]
    return engine_id[:12]


def get_image_friendly_name(labels: Optional[Dict[str, str]]) -> str:
    """Find a human-readable name in image labels, or '' if there is none."""
    if not labels:
        return ""
    for key in FRIENDLY_NAME_LABELS:
        value = labels.get(key)
        if value:
            return value
    return ""


def format_bytes(size: int) -> str:
    """Format a byte count using binary units, e.g. ``1.5 MiB``."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}iB"
