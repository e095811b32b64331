"""Plain data records passed between the engine client and the update engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class ContainerRecord:
    """A container as seen by the engine.

    Records built from the container list are *shallow*: ``config``,
    ``host_config`` and ``networks`` are None.  Only an explicit inspect
    produces a *full* record that can be used to recreate the container.
    """
    id: str
    name: str
    image: str
    image_id: str
    labels: Dict[str, str] = field(default_factory=dict)
    running: bool = True
    created: Optional[datetime] = None
    config: Optional[Dict[str, Any]] = None
    host_config: Optional[Dict[str, Any]] = None
    networks: Optional[Dict[str, Any]] = None

    @property
    def is_full(self) -> bool:
        return self.config is not None and self.host_config is not None


@dataclass
class ImageRecord:
    """An image as reported by the engine."""
    id: str
    repo_tags: List[str] = field(default_factory=list)
    dangling: bool = False
    created: Optional[datetime] = None
    size: int = 0
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateDecision:
    eligible: bool
    reason: str


@dataclass
class UpdateCandidate:
    """An eligible container whose freshly pulled image differs from its own."""
    container: ContainerRecord
    image: ImageRecord
    log: Any


@dataclass(frozen=True)
class ReplaceRequest:
    old_id: str
    new_id: str
    target_name: str
    stop_timeout: int
