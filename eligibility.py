"""Decide whether a container may be touched by the updater."""

from models import ContainerRecord, UpdateDecision

AUTOUPDATE_LABEL = "com.harborbuddy.autoupdate"


def match_pattern(image: str, pattern: str) -> bool:
    """Match an image reference against an allow/deny pattern.

    Supports:
    - ``*`` matches everything
    - ``nginx:1.25`` exact match
    - ``nginx:*`` or ``ghcr.io/org/*`` prefix match (trailing ``*``)
    - ``*:latest`` suffix match (leading ``*``)

    There is no other wildcard syntax; anything else is compared literally.
    """
    if pattern == "*":
        return True
    if image == pattern:
        return True
    if pattern.endswith("*"):
        return image.startswith(pattern[:-1])
    if pattern.startswith("*"):
        return image.endswith(pattern[1:])
    return False


def decide(container: ContainerRecord, updates_config) -> UpdateDecision:
    """Return whether ``container`` is eligible for updates, and why.

    The opt-out label wins over everything, then deny patterns, then the
    allow list (only when it is non-empty).
    """
    if container.labels.get(AUTOUPDATE_LABEL) == "false":
        return UpdateDecision(False, f"label {AUTOUPDATE_LABEL}=false")

    for pattern in updates_config.deny_images:
        if match_pattern(container.image, pattern):
            return UpdateDecision(False, f"matches deny pattern: {pattern}")

    if updates_config.allow_images:
        if not any(match_pattern(container.image, p) for p in updates_config.allow_images):
            return UpdateDecision(False, "does not match any allow pattern")

    return UpdateDecision(True, "eligible for updates")
