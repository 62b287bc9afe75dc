"""Run command implementation."""

import logging
from argparse import Namespace
from typing import Callable, Optional

from batchmonitor.exceptions import ConfigValidationError
from batchmonitor.notify import Subscription
from batchmonitor.service import BatchExecutionService
from batchmonitor.state import Execution, ExecutionStatus

from .common import build_config, configure_logging


logger = logging.getLogger(__name__)


EXIT_CODES = {
    ExecutionStatus.COMPLETED: 0,
    ExecutionStatus.FAILED: 1,
    # Same code timeout(1) uses
    ExecutionStatus.TIMED_OUT: 124,
}

WATCH_POLL_SEC = 0.2


def _print_event(payload: dict) -> bool:
    """Print one event; returns True for a terminal status event."""
    if "message" in payload:
        print(f"[{payload['kind']}] {payload['message']}", flush=True)
    elif "progress" in payload:
        print(f"[PROGRESS] {payload['progress']:.1f}%", flush=True)
    elif "status" in payload:
        print(f"[STATUS] {payload['status']}", flush=True)
        return ExecutionStatus(payload["status"]).is_terminal
    return False


def watch_execution(subscription: Subscription, execution_id: str,
                    is_finished: Callable[[], bool]) -> None:
    """Print console and progress events for one execution until it is terminal.

    ``is_finished`` covers the case where the terminal event was dropped
    because the subscription queue overflowed.
    """
    while True:
        event = subscription.get(timeout=WATCH_POLL_SEC)
        if event is None:
            if is_finished():
                break
            continue

        _topic, payload = event
        if payload.get("execution_id") != execution_id:
            continue
        if _print_event(payload):
            break

    # Whatever was published alongside the terminal status
    for _topic, payload in subscription.drain():
        if payload.get("execution_id") == execution_id:
            _print_event(payload)


def print_summary(execution: Execution) -> None:
    print(f"Execution {execution.id}: {execution.status.value}")
    if execution.exit_code is not None:
        print(f"  exit code: {execution.exit_code}")
    print(f"  progress: {execution.progress:.1f}%")
    if execution.output_file_path:
        print(f"  output: {execution.output_file_path}")
    if execution.error_message:
        print(f"  error: {execution.error_message}")


def run_script(args: Namespace) -> int:
    """
    Start one script run and block until it reaches a terminal state.

    Returns 0 on COMPLETED, 1 on FAILED, 124 on TIMED_OUT.
    """
    configure_logging(args)

    try:
        config = build_config(args)
    except ConfigValidationError as e:
        for error in e.errors:
            logger.error(f"Validation error: {error.message}")
        return e.exit_code

    service = BatchExecutionService(config)
    subscription: Optional[Subscription] = None
    try:
        if args.watch:
            # Subscribe first; events published earlier are not replayed
            subscription = service.subscribe([
                config.topics.status,
                config.topics.progress,
                config.topics.console,
            ])

        execution = service.start_execution(args.script, args.params)
        logger.info(f"Created new execution: {execution.id}")

        try:
            if subscription is not None:
                watch_execution(
                    subscription,
                    execution.id,
                    lambda: service.get_execution(execution.id).status.is_terminal,
                )
            final = service.wait(execution.id)
        except KeyboardInterrupt:
            logger.warning(f"Interrupted, cancelling execution {execution.id}")
            service.cancel(execution.id)
            final = service.wait(execution.id)

        print_summary(final)
        return EXIT_CODES.get(final.status, 1)

    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
    finally:
        if subscription is not None:
            subscription.close()
        service.shutdown(wait=True)
