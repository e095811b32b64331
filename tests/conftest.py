"""Shared fixtures for harborbuddy tests."""

import logging
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from config import Config
from docker_api import DockerAPIError, DockerClient
from log_setup import LOGGER_NAME, get_logger
from models import ContainerRecord, ImageRecord

OLD_IMAGE_ID = "sha256:" + "a" * 64
NEW_IMAGE_ID = "sha256:" + "b" * 64


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_container(name="web", image="nginx:latest", image_id=OLD_IMAGE_ID,
                   labels=None, full=False, container_id=None, running=True):
    """Build a ContainerRecord; ``full=True`` gives it inspect-level config."""
    container_id = container_id or (name.encode().hex() + "0" * 64)[:64]
    record = ContainerRecord(
        id=container_id,
        name=name,
        image=image,
        image_id=image_id,
        labels=labels or {},
        running=running,
    )
    if full:
        record.config = {
            "Image": image,
            "Hostname": container_id[:12],
            "Env": ["PATH=/usr/bin", "HOSTNAME=" + container_id[:12], "FOO=bar"],
            "Labels": dict(labels or {}),
        }
        record.host_config = {"NetworkMode": "bridge", "RestartPolicy": {"Name": "unless-stopped"}}
        record.networks = {"bridge": {"Aliases": None, "NetworkID": "n1", "IPAddress": "172.17.0.2"}}
    return record


def make_image(image_id=NEW_IMAGE_ID, tags=None, dangling=False, created=None,
               size=1024, labels=None):
    return ImageRecord(
        id=image_id,
        repo_tags=tags if tags is not None else ["nginx:latest"],
        dangling=dangling,
        created=created,
        size=size,
        labels=labels or {},
    )


def api_error(status=500, message="boom", operation=""):
    return DockerAPIError(status, message, operation)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_logger():
    """Undo handler and level changes made by setup_logging."""
    logger = logging.getLogger(LOGGER_NAME)
    handlers = list(logger.handlers)
    level, propagate = logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def engine():
    """A Mock with the DockerClient interface; every call succeeds by default."""
    mock = Mock(spec=DockerClient)
    mock.list_containers.return_value = []
    mock.list_images.return_value = []
    mock.list_dangling_images.return_value = []
    mock.remove_image.return_value = True
    mock.create_container_like.return_value = "f" * 64
    mock.create_helper_container.return_value = "e" * 64
    return mock


@pytest.fixture
def log():
    return get_logger(cycle_id="testcyc1")


@pytest.fixture
def config():
    """Default configuration with updates and cleanup enabled."""
    return Config()


@pytest.fixture
def fixed_now():
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
