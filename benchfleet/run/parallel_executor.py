"""Thread-safe fan-out of per-instance work with tagged output."""

from __future__ import annotations

import re
import sys
import threading
import time
import traceback
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any

OutputCallback = Callable[[str], None]
Task = Callable[[OutputCallback], Any]

# Module-level executor reference for thread-local task identification
# Used by debug.py to get the current task name for proper output tagging
_current_executor: ParallelExecutor | None = None


def get_current_task_name() -> str | None:
    """
    Get the current task name from thread-local storage.

    Returns:
        The current task name if running within a ParallelExecutor task,
        None otherwise (sequential execution or not within a task).
    """
    if _current_executor is None:
        return None
    return getattr(_current_executor._thread_local, "current_task", None)


class ParallelExecutor:
    """Runs one task per instance and keeps each task's output attributable.

    Tasks receive an output callback instead of printing: every line is
    prefixed with ``[<task>]`` on the console and buffered for the task's log
    file. With ``max_workers=1`` tasks run one after another in submission
    order, which is the default sequential mode.
    """

    # Maximum number of lines to keep in memory per task buffer
    MAX_BUFFER_LINES = 50000

    def __init__(self, max_workers: int = 1, stream: Any = None):
        self.max_workers = max(1, max_workers)
        self.stream = stream

        self.output_buffers: dict[str, list[str]] = {}
        self.status: dict[str, str] = {}
        self.start_times: dict[str, float] = {}
        self.finish_times: dict[str, float] = {}
        self.results: dict[str, Any] = {}
        self.errors: dict[str, BaseException] = {}

        self._state_lock = threading.Lock()
        self._print_lock = threading.Lock()
        self._buffer_overflow: dict[str, bool] = {}
        self._thread_local = threading.local()

    def execute(
        self,
        tasks: dict[str, Task],
        phase_name: str,
        log_dir: Path | str | None = None,
    ) -> dict[str, Any]:
        """
        Run all tasks and wait for every one of them.

        A task that raises does not affect the others: its result is None and
        the exception is kept in ``errors``.

        Returns:
            Task name -> return value (None for failed tasks)
        """
        global _current_executor

        if not tasks:
            return {}

        _current_executor = self
        self._reset_state(tasks)
        self._print_line("")
        self._print_line(f"== {phase_name} ==")

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                future_to_name = {
                    pool.submit(self._wrap_task, name, task): name
                    for name, task in tasks.items()
                }
                for future in as_completed(future_to_name):
                    name = future_to_name[future]
                    try:
                        result = future.result()
                    except Exception as exc:
                        with self._state_lock:
                            self.results[name] = None
                            self.errors[name] = exc
                            self.status[name] = f"Failed: {exc}"[:200]
                            self.finish_times[name] = time.time()
                        self._record_line(name, f"[status] Failed: {exc}")
                    else:
                        with self._state_lock:
                            self.results[name] = result
                            self.status[name] = "Completed"
                            self.finish_times[name] = time.time()
                        self._record_line(name, "[status] Completed")
        finally:
            _current_executor = None

        log_paths = self._write_logs(phase_name, log_dir)
        self._print_summary(phase_name, log_paths)
        return dict(self.results)

    def _wrap_task(self, name: str, task: Task) -> Any:
        self._thread_local.current_task = name
        with self._state_lock:
            self.start_times[name] = time.time()
            self.status[name] = "Running"
        try:
            return task(self.create_output_callback(name))
        except Exception:
            for line in traceback.format_exc().strip().splitlines():
                self._record_line(name, f"[stderr] {line}")
            raise
        finally:
            self._thread_local.current_task = None

    def create_output_callback(self, task_name: str) -> OutputCallback:
        """Return a callback that records lines for ``task_name``."""

        def callback(message: str) -> None:
            self._record_line(task_name, message)

        return callback

    # Internal helpers -------------------------------------------------

    def _reset_state(self, tasks: dict[str, Task]) -> None:
        current = time.time()
        self.output_buffers = {name: [] for name in tasks}
        self.status = dict.fromkeys(tasks, "Pending")
        self.start_times = dict.fromkeys(tasks, current)
        self.finish_times = {}
        self.results = {}
        self.errors = {}
        self._buffer_overflow = dict.fromkeys(tasks, False)

    def _record_line(self, name: str, message: str) -> None:
        clean = message.rstrip("\n\r")

        with self._state_lock:
            buffer = self.output_buffers.setdefault(name, [])
            if len(buffer) < self.MAX_BUFFER_LINES:
                buffer.append(clean)
            elif not self._buffer_overflow.get(name, False):
                buffer.append(
                    f"[WARNING: Output buffer limit reached ({self.MAX_BUFFER_LINES} lines), truncating further output]"
                )
                self._buffer_overflow[name] = True

        # Remote scripts may already tag their own lines
        prefix = f"[{name}]"
        if clean.startswith(prefix):
            line = clean
        elif clean:
            line = f"{prefix} {clean}"
        else:
            line = prefix
        self._print_line(line)

    def _write_logs(
        self, phase_name: str, base_log_dir: Path | str | None
    ) -> dict[str, Path]:
        if not base_log_dir:
            return {}

        log_paths: dict[str, Path] = {}
        try:
            phase_dir = Path(base_log_dir) / self._slugify(phase_name)
            phase_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._print_line(f"Warning: Failed to create log directory: {e}")
            return {}

        for name, lines in self.output_buffers.items():
            path = phase_dir / f"{self._slugify(name)}.log"
            try:
                path.write_text("\n".join(lines) + "\n" if lines else "", encoding="utf-8")
            except OSError as e:
                self._print_line(f"Warning: Failed to write log for {name}: {e}")
                continue
            log_paths[name] = path
        return log_paths

    def _print_summary(self, phase_name: str, log_paths: dict[str, Path]) -> None:
        self._print_line(f"== {phase_name} Summary ==")
        for name in sorted(self.status):
            finish = self.finish_times.get(name, time.time())
            elapsed = finish - self.start_times.get(name, finish)
            self._print_line(f"- {name}: {self.status[name]} ({elapsed:.1f}s)")
            path = log_paths.get(name)
            if path:
                self._print_line(f"  log: {path}")
        self._print_line("")

    def _print_line(self, text: str) -> None:
        target = self.stream or sys.stdout
        with self._print_lock:
            target.write(text + "\n")
            target.flush()

    @staticmethod
    def _slugify(value: str) -> str:
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", value).strip("-").lower()
        return slug or "task"
