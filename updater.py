"""One update cycle: discover, check in parallel, apply one at a time.

Phase 1 is read-only traffic (list, pull, compare) and runs in a small worker
pool; results come back to a single collector through futures.  Phase 2
mutates the engine and is serialized so there is never more than one swap
in flight.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import selfupdate
from docker_api import DockerAPIError
from eligibility import decide
from errors import CycleCancelled, ReplaceError, ReplaceWarning, SelfUpdateError
from models import ContainerRecord, ImageRecord, ReplaceRequest, UpdateCandidate
from names import get_image_friendly_name, short_id
from pull_cache import PullCache
from replacer import ContainerReplacer

MAX_CHECK_WORKERS = 5
COLLECT_POLL_SECONDS = 0.5


@dataclass
class CycleReport:
    """Counters and outcomes of one update cycle."""
    total: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    updated_containers: List[str] = field(default_factory=list)
    failed_containers: List[str] = field(default_factory=list)
    handoff: Optional[selfupdate.SelfUpdateHandoff] = None
    duration: float = 0.0

    @property
    def self_update_requested(self) -> bool:
        return self.handoff is not None


def _raise_if_cancelled(cancel: Optional[threading.Event], log, message: str) -> None:
    if cancel is not None and cancel.is_set():
        log.warning(message)
        raise CycleCancelled(message)


def pull_error_hint(error: Exception) -> str:
    """A short operator hint for a failed pull."""
    text = str(error)
    if "404" in text:
        return "Image not found"
    if "401" in text or "403" in text:
        return "Authentication failed - check registry credentials"
    return "Check image name spelling and registry credentials"


def check_for_update(engine, container: ContainerRecord, pull_cache: PullCache, log,
                     dry_run: bool = False,
                     cancel: Optional[threading.Event] = None) -> Optional[ImageRecord]:
    """Pull the container's image reference and compare image ids.

    Returns the pulled image when it differs from the one the container runs,
    None when the container is current (or in dry-run mode, where nothing is
    pulled and the answer is unknown).
    """
    if dry_run:
        log.info(
            f"[DRY RUN] Skipping image pull for {container.image}. "
            f"Cannot determine if update is available without pulling."
        )
        return None

    def fetch() -> ImageRecord:
        log.debug(f"Pulling image {container.image}")
        return engine.pull_image(container.image)

    image, hit = pull_cache.get_or_fetch(container.image, fetch, cancel)
    if hit:
        log.debug(f"Using cached pull result for {container.image}")

    if image.id == container.image_id:
        log.debug(f"Image IDs match: {short_id(container.image_id)}")
        return None

    display = get_image_friendly_name(image.labels) or short_id(image.id)
    log.info(
        f"Update found: {container.image} "
        f"(current {short_id(container.image_id)}, new {display})"
    )
    return image


def update_container(engine, container: ContainerRecord, stop_timeout: float, log,
                     clock: Callable[[], float] = time.time) -> str:
    """Recreate ``container`` (a full record) on its freshly pulled image.

    Returns the new container id.  Raises ``DockerAPIError`` if the new
    container cannot be created and ``ReplaceError`` if the swap was rolled
    back.  A ``ReplaceWarning`` is logged and treated as success.
    """
    if not container.is_full:
        raise ValueError(f"refusing to replace {container.name} from a shallow record")

    log.info(f"Recreating container {container.name} on {container.image}")
    new_id = engine.create_container_like(container, container.image)

    replacer = ContainerReplacer(engine, log, clock=clock)
    try:
        replacer.replace(ReplaceRequest(container.id, new_id, container.name, int(stop_timeout)))
    except ReplaceWarning as e:
        log.warning(str(e))
    except ReplaceError as e:
        if e.new_untouched:
            # Never renamed or started; drop it so the next cycle can reuse the name
            try:
                engine.remove_container(new_id)
                log.info(f"Removed unused new container {short_id(new_id)}")
            except DockerAPIError as rm_err:
                log.error(f"Could not remove unused new container {short_id(new_id)}: {rm_err}")
        raise

    log.info(
        f"Container replacement successful: {container.name} "
        f"(old {short_id(container.id)}, new {short_id(new_id)})"
    )
    return new_id


def run_cycle(config, engine, log, cancel: Optional[threading.Event] = None,
              is_self: Callable[[str], bool] = selfupdate.is_self,
              clock: Callable[[], float] = time.time) -> CycleReport:
    """Run one full update pass.

    ``config`` is a ``Config``; ``log`` a ``ContextLogger`` already bound to
    the cycle.  Raises ``DockerAPIError`` if containers cannot be listed and
    ``CycleCancelled`` if ``cancel`` is set; every per-container problem is
    logged and counted instead.
    """
    updates = config.updates
    started = time.monotonic()
    report = CycleReport()
    log.info("Starting update cycle")

    try:
        containers = engine.list_containers()
    except DockerAPIError as e:
        log.error(f"Failed to list containers: {e} "
                  f"(hint: ensure Docker daemon is running and socket is accessible)")
        raise

    report.total = len(containers)
    log.info(f"Checking {len(containers)} containers for updates...")

    candidates = _check_phase(engine, containers, updates, log, cancel, report)

    if candidates and not updates.dry_run:
        log.info(f"Found {len(candidates)} containers to update. Applying updates...")
        _apply_phase(engine, candidates, updates, log, cancel, report, is_self, clock)

    report.duration = time.monotonic() - started
    log.info(
        f"Update cycle complete: {report.updated} updated, {report.skipped} skipped, "
        f"{report.errored} errors, {report.total} total (taken {report.duration:.3f}s)"
    )
    return report


def _check_phase(engine, containers: List[ContainerRecord], updates, log,
                 cancel: Optional[threading.Event], report: CycleReport) -> List[UpdateCandidate]:
    pull_cache = PullCache()
    pool = ThreadPoolExecutor(max_workers=MAX_CHECK_WORKERS, thread_name_prefix="update-check")
    futures = {}
    candidates: List[UpdateCandidate] = []

    try:
        for container in containers:
            _raise_if_cancelled(cancel, log, "Update cycle interrupted")

            decision = decide(container, updates)
            if not decision.eligible:
                log.debug(
                    f"Skipping container {container.name} "
                    f"({short_id(container.id)}): {decision.reason}"
                )
                report.skipped += 1
                continue

            container_log = log.bind(container_id=short_id(container.id),
                                     container_name=container.name)
            future = pool.submit(check_for_update, engine, container, pull_cache,
                                 container_log, updates.dry_run, cancel)
            futures[future] = (container, container_log)

        pending = set(futures)
        while pending:
            _raise_if_cancelled(cancel, log, "Update cycle interrupted")
            done, pending = wait(pending, timeout=COLLECT_POLL_SECONDS,
                                 return_when=FIRST_COMPLETED)
            for future in done:
                container, container_log = futures[future]
                try:
                    image = future.result()
                except DockerAPIError as e:
                    container_log.error(
                        f"Failed to check for updates: {e} (hint: {pull_error_hint(e)})"
                    )
                    report.errored += 1
                    report.failed_containers.append(container.name)
                    continue
                if image is None:
                    report.skipped += 1
                else:
                    candidates.append(UpdateCandidate(container, image, container_log))
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    return candidates


def _apply_phase(engine, candidates: List[UpdateCandidate], updates, log,
                 cancel: Optional[threading.Event], report: CycleReport,
                 is_self: Callable[[str], bool], clock: Callable[[], float]) -> None:
    for index, candidate in enumerate(candidates):
        _raise_if_cancelled(cancel, log, "Update cycle interrupted during application")

        container_log = candidate.log
        name = candidate.container.name

        # The container list is shallow; recreating needs the full config
        try:
            container = engine.inspect_container(candidate.container.id)
        except DockerAPIError as e:
            container_log.error(f"Failed to inspect container for update: {e}")
            report.errored += 1
            report.failed_containers.append(name)
            continue

        if is_self(container.id):
            container_log.info("Self-update detected! Triggering helper...")
            try:
                report.handoff = selfupdate.trigger(engine, container, container.image,
                                                    container_log, clock=clock)
            except SelfUpdateError as e:
                container_log.error(f"Failed to trigger self-update: {e}")
                report.errored += 1
                report.failed_containers.append(name)
                continue
            report.updated += 1
            report.updated_containers.append(name)
            remaining = len(candidates) - index - 1
            if remaining:
                log.info(f"Deferring {remaining} remaining update(s) until after the self-update")
            return

        try:
            update_container(engine, container, updates.stop_timeout, container_log, clock)
        except (DockerAPIError, ReplaceError, ValueError) as e:
            container_log.error(f"Failed to update container: {e}")
            report.errored += 1
            report.failed_containers.append(name)
            continue

        report.updated += 1
        report.updated_containers.append(name)
