"""Wait on several long running tasks at once with a live progress display.

Each ``Waiter`` runs its wait function on its own thread. The calling
thread owns the display and is the only reader of waiter state; a waiter
only writes its own state, under its own lock.
"""
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn

logger = logging.getLogger("ocnectl.waiter")

console = Console(stderr=True)

REDRAW_INTERVAL = 0.5

# Returns (message, percent complete) where percent is None for tasks without progress
MessageFunc = Callable[[], Tuple[str, Optional[float]]]


class WaiterState(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Waiter:
    """One task to wait on."""

    def __init__(self, message: str, wait_function: Callable[..., Any], *args: Any,
                 message_function: Optional[MessageFunc] = None):
        self.message = message
        self.wait_function = wait_function
        self.args = args
        self.message_function = message_function
        self.error: Optional[BaseException] = None
        self.result: Any = None
        self._state = WaiterState.RUNNING
        self._lock = threading.Lock()

    @property
    def state(self) -> WaiterState:
        with self._lock:
            return self._state

    def _finish(self, state: WaiterState, result: Any = None, error: Optional[BaseException] = None) -> None:
        with self._lock:
            self._state = state
            self.result = result
            self.error = error

    def run(self) -> None:
        try:
            result = self.wait_function(*self.args)
        except Exception as e:
            logger.debug("%s failed: %s", self.message, e)
            self._finish(WaiterState.FAILED, error=e)
        else:
            self._finish(WaiterState.SUCCEEDED, result=result)

    def describe(self) -> Tuple[str, Optional[float]]:
        if self.message_function is None:
            return self.message, None
        try:
            return self.message_function()
        except Exception as e:
            logger.debug("Progress for %s unavailable: %s", self.message, e)
            return self.message, None


def wait_for(waiters: List[Waiter], quiet: bool = False) -> bool:
    """Run every waiter to completion.

    Args:
        waiters: Tasks to wait on
        quiet: Do not draw progress

    Returns:
        bool: True if any waiter failed
    """
    threads = [threading.Thread(target=w.run, name=f"waiter-{i}", daemon=True) for i, w in enumerate(waiters)]
    for t in threads:
        t.start()

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        disable=quiet,
        transient=False,
    )
    task_ids = {}
    with progress:
        for w in waiters:
            task_ids[id(w)] = progress.add_task(w.message, total=None)

        pending = list(waiters)
        while pending:
            for w in list(pending):
                task_id = task_ids[id(w)]
                state = w.state
                message, percent = w.describe()
                if state is WaiterState.RUNNING:
                    if percent is not None:
                        progress.update(task_id, description=message, total=100, completed=percent)
                    else:
                        progress.update(task_id, description=message)
                    continue

                pending.remove(w)
                if state is WaiterState.SUCCEEDED:
                    progress.update(task_id, description=f"[green]✓[/green] {w.message}", total=100, completed=100)
                else:
                    progress.update(task_id, description=f"[red]✗ {w.message}: {w.error}[/red]")
                progress.stop_task(task_id)
            if pending:
                time.sleep(REDRAW_INTERVAL)

    for t in threads:
        t.join()

    return any(w.state is WaiterState.FAILED for w in waiters)
