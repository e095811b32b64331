"""Self-update: replacing the container HarborBuddy itself runs in.

A process cannot rename or remove its own container, so the running agent
starts a short-lived helper container (a clone of itself running in updater
mode), asks its caller to exit, and the helper recreates the agent from the
outside once it has stopped.

The helper path has no rollback.  By the time it recreates the agent the
original container has been removed, so any failure there is terminal and is
logged at CRITICAL.
"""

import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from docker_api import DockerAPIError
from eligibility import AUTOUPDATE_LABEL
from errors import CycleCancelled, SelfUpdateError
from log_setup import get_logger
from models import ContainerRecord
from names import short_id

HELPER_COMMAND = "harborbuddy"
MEMBERSHIP_FILES = ("/proc/self/cgroup", "/proc/self/mountinfo")

UPDATER_POLL_INTERVAL = 1.0
UPDATER_TIMEOUT = 5 * 60


@dataclass(frozen=True)
class SelfUpdateHandoff:
    """Returned once the helper is running; the caller must now exit."""
    helper_id: str
    helper_name: str
    target_id: str
    new_image: str


def check_is_self(target_id: str, hostname: str, cgroup_content: str) -> bool:
    """Decide whether ``target_id`` is the container this process runs in.

    The engine sets a container's hostname to its short id, so a non-empty
    hostname that prefixes the id is a match.  The id appearing in our own
    cgroup membership is the more reliable second signal.  Empty inputs never
    match: every string starts with and contains the empty string.
    """
    if not target_id:
        return False
    if hostname and len(target_id) >= 12 and target_id.startswith(hostname):
        return True
    return target_id in cgroup_content


def _read_membership(paths: Iterable[str]) -> str:
    content = []
    for path in paths:
        try:
            content.append(Path(path).read_text())
        except OSError:
            continue
    return "\n".join(content)


def is_self(container_id: str, hostname: Optional[str] = None,
            membership_files: Iterable[str] = MEMBERSHIP_FILES) -> bool:
    """Check ``container_id`` against this process's hostname and cgroup data."""
    if hostname is None:
        hostname = socket.gethostname()
    return check_is_self(container_id, hostname, _read_membership(membership_files))


def helper_entrypoint(target_id: str, new_image: str) -> List[str]:
    return [
        HELPER_COMMAND,
        "--updater-mode",
        "--target-container-id", target_id,
        "--new-image", new_image,
    ]


def trigger(engine, self_record: ContainerRecord, new_image: str, log,
            clock: Callable[[], float] = time.time) -> SelfUpdateHandoff:
    """Start the helper container that will recreate ``self_record``.

    ``self_record`` must be a full (inspected) record.  Raises
    ``SelfUpdateError`` if the helper cannot be created or started; in that
    case the agent must keep running.
    """
    log.info("Self-Update: Triggering helper process...")
    helper_name = f"{self_record.name}-updater-{int(clock())}"

    try:
        helper_id = engine.create_helper_container(
            self_record, new_image, helper_name,
            helper_entrypoint(self_record.id, new_image),
            labels={AUTOUPDATE_LABEL: "false"},
        )
    except DockerAPIError as e:
        raise SelfUpdateError(f"failed to create helper: {e}") from e

    log.info(f"Self-Update: Helper {helper_name} ({short_id(helper_id)}) created. Starting...")
    try:
        engine.start_container(helper_id)
    except DockerAPIError as e:
        try:
            engine.remove_container(helper_id)
        except DockerAPIError as rm_err:
            log.warning(f"Self-Update: could not remove unstarted helper {helper_name}: {rm_err}")
        raise SelfUpdateError(f"failed to start helper: {e}") from e

    log.info("Self-Update: Helper started. Shutting down self to allow update to proceed.")
    return SelfUpdateHandoff(helper_id, helper_name, self_record.id, new_image)


def _wait_for_stop(engine, target_id: str, cancel: Optional[threading.Event],
                   poll_interval: float, timeout: float, log) -> None:
    deadline = time.monotonic() + timeout
    while True:
        try:
            info = engine.inspect_container(target_id)
        except DockerAPIError as e:
            raise SelfUpdateError(f"failed to inspect target {target_id}: {e}") from e
        if not info.running:
            return
        log.debug(f"Updater: Target {short_id(target_id)} is still running...")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SelfUpdateError(f"timeout waiting for target {target_id} to stop")
        wait = min(poll_interval, remaining)
        if cancel is not None:
            if cancel.wait(wait):
                raise CycleCancelled("updater cancelled while waiting for target to stop")
        else:
            time.sleep(wait)


def run_updater(engine, target_id: str, new_image: str,
                cancel: Optional[threading.Event] = None,
                poll_interval: float = UPDATER_POLL_INTERVAL,
                timeout: float = UPDATER_TIMEOUT, log=None) -> str:
    """Recreate ``target_id`` on ``new_image`` once it has stopped.

    Runs inside the helper container.  Returns the new container's id.
    Raises ``SelfUpdateError`` on timeout or any engine failure; there is no
    rollback once the old container has been removed.
    """
    log = log or get_logger(role="updater", target_id=short_id(target_id))
    log.info("Updater: Started. Waiting for target to stop...")

    try:
        _wait_for_stop(engine, target_id, cancel, poll_interval, timeout, log)

        log.info("Updater: Target stopped. Inspecting configuration...")
        try:
            old = engine.inspect_container(target_id)
        except DockerAPIError as e:
            raise SelfUpdateError(f"failed to inspect stopped target: {e}") from e

        log.info(f"Updater: Removing old container {old.name}...")
        try:
            engine.remove_container(target_id)
        except DockerAPIError as e:
            raise SelfUpdateError(f"failed to remove old container: {e}") from e

        log.info("Updater: Creating new container...")
        try:
            new_id = engine.create_container_like(old, new_image)
        except DockerAPIError as e:
            raise SelfUpdateError(f"failed to create new container: {e}") from e

        log.info(f"Updater: Renaming new container to {old.name}...")
        try:
            engine.rename_container(new_id, old.name)
        except DockerAPIError as e:
            try:
                engine.remove_container(new_id)
            except DockerAPIError as rm_err:
                log.error(f"Updater: could not remove unnamed new container: {rm_err}")
            raise SelfUpdateError(f"failed to rename new container: {e}") from e

        log.info("Updater: Starting new container...")
        try:
            engine.start_container(new_id)
        except DockerAPIError as e:
            raise SelfUpdateError(f"failed to start new container: {e}") from e
    except SelfUpdateError as e:
        log.critical(
            f"Updater: self-update of {short_id(target_id)} failed and cannot be "
            f"rolled back: {e}"
        )
        raise

    log.info("Updater: Update complete. Exiting.")
    return new_id
