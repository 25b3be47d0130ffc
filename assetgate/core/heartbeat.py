"""
Heartbeat scheduler - drives the cache's periodic sync and flush tasks.
"""

import threading
import time
from typing import Callable, Dict

from ..util.logging import logger


class Heartbeat:
    """
    Cooperative periodic task loop.

    Tasks are checked every `tick` seconds and run when their interval has
    elapsed, using time.monotonic() for timing. A failing task is logged and
    retried at its next interval; it never stops the loop.
    """

    def __init__(self, name: str = "heartbeat", tick: float = 0.1, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.tick = tick
        self._clock = clock
        self.tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
        self.running = False
        self.shutdown_event = threading.Event()
        self._thread = None
        self._tasks_lock = threading.Lock()

    def register_task(self, name: str, interval_sec: float, func: Callable, run_immediately: bool = True):
        """
        Register a task to be executed periodically.

        Args:
            name: Unique task identifier
            interval_sec: How often to run this task in seconds
            func: Function to call
            run_immediately: Run on the first cycle instead of after one interval
        """
        if not callable(func):
            raise ValueError(f"Task function must be callable: {func}")

        if interval_sec <= 0:
            raise ValueError(f"Interval must be > 0 seconds: {interval_sec}")

        with self._tasks_lock:
            self.tasks[name] = {
                "func": func,
                "interval": interval_sec,
                "last_run": None if run_immediately else self._clock()
            }

        logger.debug(f"Registered heartbeat task '{name}' (every {interval_sec}s)")

    def unregister_task(self, name: str):
        """Remove a task from the registry."""
        with self._tasks_lock:
            self.tasks.pop(name, None)

    def list_tasks(self):
        """Return list of registered task names."""
        with self._tasks_lock:
            return list(self.tasks.keys())

    def should_run_task(self, name: str, task_info: Dict) -> bool:
        """Check if a task should run this cycle."""
        if task_info["last_run"] is None:
            return True  # Run immediately if never run

        elapsed = self._clock() - task_info["last_run"]
        return elapsed >= task_info["interval"]

    def run_task(self, name: str, task_info: Dict):
        """Execute a task and record timing."""
        start_time = self._clock()
        try:
            task_info["func"]()
        except Exception as e:
            end_time = self._clock()
            task_info["last_run"] = end_time
            logger.log_heartbeat_task(name, start_time, end_time, "failed", {"error": str(e)[:200]})
            raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}")

        end_time = self._clock()
        task_info["last_run"] = end_time
        logger.log_heartbeat_task(name, start_time, end_time)

    def run_pending(self):
        """One scheduling pass over all tasks."""
        with self._tasks_lock:
            due = [(name, info) for name, info in self.tasks.items() if self.should_run_task(name, info)]

        for name, task_info in due:
            try:
                self.run_task(name, task_info)
            except RuntimeError as e:
                # Error isolation - log error but continue loop
                logger.warning(f"Heartbeat '{self.name}': {e}")

    def run(self):
        """Blocking loop until stop() is called."""
        logger.info(f"Starting heartbeat '{self.name}' with tasks {self.list_tasks()}")
        try:
            while self.running and not self.shutdown_event.is_set():
                self.run_pending()
                self.shutdown_event.wait(self.tick)
        finally:
            self.running = False
            logger.info(f"Heartbeat '{self.name}' stopped")

    def start(self):
        """Run the loop on a daemon thread."""
        if self.running:
            raise RuntimeError("Heartbeat already running")

        self.running = True
        self.shutdown_event.clear()
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Stop the loop and wait for the current pass to finish."""
        if not self.running:
            return

        self.running = False
        self.shutdown_event.set()

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def reset_task(self, name: str):
        """Reset a task's last_run time to force execution on the next pass."""
        with self._tasks_lock:
            if name in self.tasks:
                self.tasks[name]["last_run"] = None

    def get_status(self):
        """Return current heartbeat status for monitoring."""
        with self._tasks_lock:
            return {
                "status": "running" if self.running else "stopped",
                "tasks": {
                    name: {
                        "interval_sec": info["interval"],
                        "last_run": info["last_run"],
                        "next_run": info["last_run"] + info["interval"] if info["last_run"] is not None else None
                    }
                    for name, info in self.tasks.items()
                }
            }
