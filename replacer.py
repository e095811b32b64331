"""Blue-green container swap with ordered compensation.

The swap is an explicit list of steps.  Each step may carry an ``undo``
(run when a *later* step fails) and a ``cleanup`` (run when the step itself
fails).  On failure at step k the driver runs step k's cleanup, then the
undo of steps k-1..1 in reverse order, so after compensation exactly one of
the old and new containers is serving under the target name.

Removing the old container is the last step and is never compensated: by
then the new container is serving, so a failure there is a ``ReplaceWarning``
rather than a ``ReplaceError``.
"""

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from docker_api import DockerAPIError
from errors import ReplaceError, ReplaceWarning
from models import ReplaceRequest
from names import short_id

Action = Callable[[], None]


@dataclass
class SwapStep:
    description: str
    action: Action
    undo: Optional[Action] = None
    undo_description: str = ""
    cleanup: Optional[Action] = None
    cleanup_description: str = ""
    touches_new: bool = False


def backup_name(target_name: str, now: Optional[float] = None) -> str:
    """Temporary name for the old container while the new one takes over."""
    return f"{target_name}-old-{int(time.time() if now is None else now)}"


class ContainerReplacer:
    """Swap an old container for an already-created new one.

    ``engine`` is a ``DockerClient`` (or anything with the same container
    methods); ``log`` is a ``ContextLogger``.
    """

    def __init__(self, engine, log, clock: Callable[[], float] = time.time):
        self.engine = engine
        self.log = log
        self.clock = clock

    def plan(self, request: ReplaceRequest, backup: str) -> List[SwapStep]:
        """Return the compensable steps of the swap (everything but the final removal)."""
        engine = self.engine
        old, new, target = request.old_id, request.new_id, request.target_name
        stop_timeout = int(request.stop_timeout)

        return [
            SwapStep(
                description="stop old container",
                action=lambda: engine.stop_container(old, stop_timeout),
                undo=lambda: engine.start_container(old),
                undo_description="restart old container",
            ),
            SwapStep(
                description=f"rename old container to backup name {backup}",
                action=lambda: engine.rename_container(old, backup),
                undo=lambda: engine.rename_container(old, target),
                undo_description=f"rename old container back to {target}",
            ),
            SwapStep(
                description=f"rename new container to {target}",
                action=lambda: engine.rename_container(new, target),
                undo=lambda: engine.remove_container(new),
                undo_description="remove new container",
                touches_new=True,
            ),
            SwapStep(
                description="start new container",
                action=lambda: engine.start_container(new),
                cleanup=lambda: engine.stop_container(new, stop_timeout),
                cleanup_description="stop new container",
                touches_new=True,
            ),
        ]

    def replace(self, request: ReplaceRequest) -> None:
        """Run the swap.

        Raises ``ReplaceError`` after rolling back when any of the first four
        steps fails, and ``ReplaceWarning`` when only the removal of the old
        (backup-named) container fails.
        """
        log = self.log.bind(old_id=short_id(request.old_id), new_id=short_id(request.new_id))
        backup = backup_name(request.target_name, self.clock())
        steps = self.plan(request, backup)

        done: List[SwapStep] = []
        for step in steps:
            log.debug(f"Swap: {step.description}")
            try:
                step.action()
            except DockerAPIError as e:
                log.error(f"Swap failed to {step.description}: {e}; rolling back")
                rollback_errors = self._compensate(request, step, done, log)
                new_untouched = not any(s.touches_new for s in done + [step])
                raise ReplaceError(step.description, e, rollback_errors, new_untouched) from e
            done.append(step)

        try:
            self.engine.remove_container(request.old_id)
        except DockerAPIError as e:
            raise ReplaceWarning(backup, e) from e
        log.debug(f"Swap: removed old container {backup}")

    def _compensate(self, request: ReplaceRequest, failed: SwapStep,
                    done: List[SwapStep], log) -> List[str]:
        """Best-effort rollback; returns descriptions of compensations that failed."""
        actions = []
        if failed.cleanup is not None:
            actions.append((failed.cleanup_description, failed.cleanup))
        for step in reversed(done):
            if step.undo is not None:
                actions.append((step.undo_description, step.undo))

        errors: List[str] = []
        for description, action in actions:
            try:
                action()
                log.info(f"Rollback: {description}")
            except DockerAPIError as e:
                log.error(f"Rollback: could not {description}: {e}")
                errors.append(f"{description}: {e}")

        if errors:
            log.critical(
                f"Rollback incomplete for {request.target_name}; "
                f"manual intervention may be required"
            )
        return errors
