"""Debug utilities for benchfleet."""

import os
from typing import Any

# Global debug state
_debug_enabled = False


def set_debug(enabled: bool) -> None:
    """Set global debug state."""
    global _debug_enabled
    _debug_enabled = enabled

    # Child processes (ssh wrappers) inherit the flag
    if enabled:
        os.environ["BENCHFLEET_DEBUG"] = "1"
    else:
        os.environ.pop("BENCHFLEET_DEBUG", None)


def is_debug_enabled() -> bool:
    """Check if debug mode is enabled."""
    global _debug_enabled

    if not _debug_enabled and os.getenv("BENCHFLEET_DEBUG", "").lower() in (
        "1",
        "true",
        "yes",
    ):
        _debug_enabled = True

    return _debug_enabled


def _get_task_prefix() -> str:
    """Return "[task] " when called from inside a parallel task."""
    from .run.parallel_executor import get_current_task_name

    task_name = get_current_task_name()
    if task_name:
        return f"[{task_name}] "
    return ""


def debug_print(message: str, **kwargs: Any) -> None:
    """Print debug message if debug mode is enabled."""
    if is_debug_enabled():
        prefix = _get_task_prefix()
        print(f"{prefix}[DEBUG] {message}", **kwargs)


def debug_log_command(command: str, timeout: float | None = None) -> None:
    """Log command execution details if debug mode is enabled."""
    if timeout:
        debug_print(f"Command ({timeout}s): {command}")
    else:
        debug_print(f"Command: {command}")


def debug_log_result(
    success: bool, stdout: str | None = None, stderr: str | None = None
) -> None:
    """Log command result details if debug mode is enabled."""
    debug_print(f"Command success: {success}")
    if stdout:
        debug_print(f"Stdout: {stdout}")
    if stderr:
        debug_print(f"Stderr: {stderr}")
