"""CLI command handlers."""

from .run import run_script
from .query import list_executions, show_execution, show_logs

__all__ = ['run_script', 'list_executions', 'show_execution', 'show_logs']
