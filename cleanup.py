"""Image cleanup sweep: remove old dangling (or all unused) images."""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from docker_api import DockerAPIError
from errors import CycleCancelled
from models import ImageRecord
from names import format_bytes, short_id


@dataclass
class CleanupReport:
    total: int = 0
    removed: int = 0
    skipped: int = 0
    reclaimed: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_eligible_for_cleanup(image: ImageRecord, cleanup_config, now: datetime, log) -> bool:
    """Old enough, and dangling when the sweep is restricted to dangling images."""
    min_age = timedelta(hours=cleanup_config.min_age_hours)
    if image.created is not None:
        age = now - image.created
        if age < min_age:
            log.debug(f"Image is too new (age: {age}, min: {min_age})")
            return False
    if cleanup_config.dangling_only and not image.dangling:
        log.debug("Image is not dangling")
        return False
    return True


def run_cleanup(config, engine, log, cancel: Optional[threading.Event] = None,
                dry_run: bool = False,
                now: Callable[[], datetime] = _utcnow) -> CleanupReport:
    """Remove images selected by ``config.cleanup``.

    Raises ``DockerAPIError`` if images cannot be listed and ``CycleCancelled``
    if ``cancel`` is set.  Images the engine refuses to remove (in use,
    already gone) are counted as skipped.
    """
    cleanup_config = config.cleanup
    report = CleanupReport()
    log.info("Starting image cleanup")

    try:
        if cleanup_config.dangling_only:
            log.debug("Listing only dangling images")
            images = engine.list_dangling_images()
        else:
            log.debug("Listing all images")
            images = engine.list_images()
    except DockerAPIError as e:
        log.error(f"Failed to list images: {e}")
        raise

    report.total = len(images)
    log.info(f"Found {len(images)} images")
    current = now()

    for image in images:
        if cancel is not None and cancel.is_set():
            log.warning("Cleanup interrupted")
            raise CycleCancelled("cleanup interrupted")

        tags = ",".join(image.repo_tags) if image.repo_tags else "none"
        image_log = log.bind(image_id=short_id(image.id), image=tags)

        if not is_eligible_for_cleanup(image, cleanup_config, current, image_log):
            report.skipped += 1
            continue

        size = format_bytes(image.size)
        if dry_run:
            image_log.info(f"[DRY RUN] Would remove image (size: {size})")
            report.skipped += 1
            continue

        image_log.info(f"Removing image (size: {size})")
        try:
            removed = engine.remove_image(image.id)
        except DockerAPIError as e:
            image_log.error(f"Failed to remove image: {e}")
            report.skipped += 1
            continue
        if not removed:
            image_log.debug("Image is in use or already gone, skipping")
            report.skipped += 1
            continue

        image_log.info(f"Successfully removed image. Reclaimed {size}")
        report.removed += 1
        report.reclaimed += image.size

    log.info(
        f"Cleanup complete: {report.removed} removed, {report.skipped} skipped, "
        f"{report.total} total. Total space reclaimed: {format_bytes(report.reclaimed)}"
    )
    return report
