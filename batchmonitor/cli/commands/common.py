"""Helpers shared by CLI commands."""

import logging
from argparse import Namespace

from batchmonitor.config import MonitorConfig, load_config


def configure_logging(args: Namespace) -> None:
    log_level = getattr(logging, args.log_level.upper())
    if getattr(args, 'debug', False):
        log_level = logging.DEBUG
    elif getattr(args, 'quiet', False):
        log_level = logging.ERROR
    elif getattr(args, 'verbose', False):
        log_level = logging.DEBUG

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_config(args: Namespace) -> MonitorConfig:
    """Load the config file (if any) and apply command-line overrides."""
    config = load_config(args.config)
    return config.with_overrides(
        state_dir=getattr(args, 'state_dir', None),
        scripts_dir=getattr(args, 'scripts_dir', None),
        logs_dir=getattr(args, 'logs_dir', None),
        timeout_sec=getattr(args, 'timeout', None),
    )
