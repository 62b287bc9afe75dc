"""Read-only commands over stored executions."""

import json
import logging
from argparse import Namespace

from batchmonitor.exceptions import ConfigValidationError, ExecutionNotFound
from batchmonitor.state import ExecutionStore, LogKind

from .common import build_config, configure_logging


logger = logging.getLogger(__name__)


def _open_store(args: Namespace) -> ExecutionStore:
    config = build_config(args)
    return ExecutionStore(config.state_dir)


def list_executions(args: Namespace) -> int:
    configure_logging(args)
    try:
        store = _open_store(args)
    except ConfigValidationError as e:
        logger.error(str(e))
        return e.exit_code

    for execution in store.list_all():
        started = execution.start_time.isoformat() if execution.start_time else "-"
        print(f"{execution.id}  {execution.status.value:<9}  {execution.progress:5.1f}%  "
              f"{started}  {execution.script_path}")
    return 0


def show_execution(args: Namespace) -> int:
    configure_logging(args)
    try:
        store = _open_store(args)
    except ConfigValidationError as e:
        logger.error(str(e))
        return e.exit_code

    execution = store.find(args.execution_id)
    if execution is None:
        logger.error(str(ExecutionNotFound(args.execution_id)))
        return 1

    print(json.dumps(execution.to_dict(), indent=2))
    return 0


def show_logs(args: Namespace) -> int:
    configure_logging(args)
    try:
        store = _open_store(args)
    except ConfigValidationError as e:
        logger.error(str(e))
        return e.exit_code

    if store.find(args.execution_id) is None:
        logger.error(str(ExecutionNotFound(args.execution_id)))
        return 1

    kind = LogKind(args.kind.upper()) if args.kind else None
    entries = store.list_by_execution(args.execution_id, kind)
    if kind is None and not args.all:
        entries = [entry for entry in entries if entry.kind != LogKind.SYSTEM]

    for entry in entries:
        print(f"{entry.timestamp.isoformat()} [{entry.kind.value}] {entry.message}")
    return 0
