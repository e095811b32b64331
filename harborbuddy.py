#!/usr/bin/env python3
"""
HarborBuddy - keeps running Docker containers on the latest image for their tag

Checks each opted-in container's image reference, pulls it, and when the
registry has a newer image recreates the container with the same settings.
Can also remove old dangling images and update its own container through a
short-lived helper.
"""

import argparse
import logging
import os
import sys
import threading
from pathlib import Path
from typing import List, Optional

from config import apply_env_overrides, load_config, parse_duration, validate
from docker_api import DockerAPIError, DockerClient
from errors import ConfigError, CycleCancelled, SelfUpdateError
from log_setup import get_logger, setup_logging
from scheduler import RunOutcome, Scheduler, install_signal_handlers
from selfupdate import run_updater

__version__ = "0.5.0"

DEFAULT_CONFIG_PATH = "/config/harborbuddy.json"
LOG_DIRECTORIES = ("/logs", "/config")
LOG_FILE_NAME = "harborbuddy.log"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harborbuddy",
        description="Automatic Docker container updater with image cleanup"
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('HARBORBUDDY_CONFIG', DEFAULT_CONFIG_PATH),
        help=f'Path to configuration JSON file (env: HARBORBUDDY_CONFIG, default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--interval',
        help='Check interval, e.g. 30m or 1h30m (overrides config)'
    )
    parser.add_argument(
        '--schedule-time',
        help='Run daily at HH:MM; takes precedence over any check interval (overrides config)'
    )
    parser.add_argument(
        '--timezone',
        help='IANA timezone for --schedule-time, e.g. Europe/Berlin (overrides config)'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single update and cleanup cycle and exit'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Log what would be done without changing anything'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        type=str.lower,
        help='Logging level (overrides config)'
    )
    parser.add_argument(
        '--cleanup-only',
        action='store_true',
        help='Only remove old images, then exit'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    # Used by the self-update helper container
    parser.add_argument('--updater-mode', action='store_true', help=argparse.SUPPRESS)
    parser.add_argument('--target-container-id', help=argparse.SUPPRESS)
    parser.add_argument('--new-image', help=argparse.SUPPRESS)
    return parser


def default_log_file(directories=LOG_DIRECTORIES) -> str:
    """First writable mounted directory's log path, or '' for console only."""
    for directory in directories:
        path = Path(directory)
        if path.is_dir() and os.access(path, os.W_OK):
            return str(path / LOG_FILE_NAME)
    return ""


def apply_cli_overrides(config, args):
    """Command line flags win over the config file and environment."""
    if args.interval:
        try:
            config.updates.check_interval = parse_duration(args.interval)
        except ValueError as e:
            raise ConfigError(f"invalid --interval: {e}") from e
    if args.schedule_time:
        config.updates.schedule_time = args.schedule_time
    if args.timezone:
        config.updates.timezone = args.timezone
    if args.dry_run:
        config.updates.dry_run = True
    if args.log_level:
        config.log.level = args.log_level
    if args.once:
        config.run_once = True
    if args.cleanup_only:
        config.cleanup_only = True
    return config


def run_updater_mode(args) -> int:
    """Entry point of the self-update helper container."""
    setup_logging("info")
    log = get_logger(role="updater")
    if not args.target_container_id or not args.new_image:
        log.error("--updater-mode requires --target-container-id and --new-image")
        return 1

    stop_event = threading.Event()
    install_signal_handlers(stop_event, log)
    try:
        engine = DockerClient()
        run_updater(engine, args.target_container_id, args.new_image, cancel=stop_event)
    except (SelfUpdateError, CycleCancelled, DockerAPIError, ValueError) as e:
        log.error(f"Updater failed: {e}")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.updater_mode:
        return run_updater_mode(args)

    try:
        config = load_config(args.config)
        apply_env_overrides(config)
        apply_cli_overrides(config, args)
        validate(config)
    except ConfigError as e:
        setup_logging("info")
        logging.getLogger("harborbuddy").error(f"Failed to load configuration: {e}")
        return 1

    log_file = config.log.file or default_log_file()
    setup_logging(config.log.level, config.log.json, log_file,
                  config.log.max_size, config.log.max_backups)
    log = get_logger()
    log.info(f"HarborBuddy {__version__} starting (config: {args.config})")
    if config.updates.dry_run:
        log.info("Dry-run mode enabled: no changes will be made")

    try:
        engine = DockerClient(config.docker.host, config.docker.tls,
                              config.docker.cert_path, config.docker.key_path,
                              config.docker.ca_path)
        engine.ping()
    except (DockerAPIError, ValueError) as e:
        log.error(f"Failed to connect to Docker at {config.docker.host}: {e}")
        return 1
    log.info(f"Connected to Docker at {config.docker.host}")

    stop_event = threading.Event()
    install_signal_handlers(stop_event, log)

    try:
        outcome = Scheduler(config, engine, stop_event).run()
    except ConfigError as e:
        log.error(f"Invalid configuration: {e}")
        return 1
    except (DockerAPIError, SelfUpdateError) as e:
        log.error(f"Cycle failed: {e}")
        return 1

    if outcome is RunOutcome.SELF_UPDATE:
        log.info("Exiting for self-update")
    else:
        log.info("HarborBuddy stopped")
    return 0


if __name__ == '__main__':
    sys.exit(main())
