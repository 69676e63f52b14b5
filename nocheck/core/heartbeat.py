"""
Heartbeat: cooperative periodic scheduler for the core's sweeps.

Registered tasks (drain retry, overdue action plans, stale cross validations)
run on their own interval inside one loop; a failing task is logged and the
loop continues.
"""

import time
import threading
from typing import Callable, Dict, Optional

from .config import is_heartbeat_enabled, validate_heartbeat_config
from ..util.logging import logger


# sweep name -> {"func", "interval", "last_run"}; last_run is a monotonic timestamp
tasks: Dict[str, Dict] = {}
running = False
shutdown_event: Optional[threading.Event] = None

TICK_SECONDS = 0.5


def _check_config():
    problems = validate_heartbeat_config()
    if problems:
        raise ValueError(f"Heartbeat configuration invalid: {problems}")


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Add a sweep to the registry, replacing any sweep with the same name.

    The sweep runs on the first tick after registration and then every
    ``interval_sec`` seconds.
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func!r}")
    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second, got {interval_sec}")
    _check_config()

    tasks[name] = {"func": func, "interval": interval_sec, "last_run": None}
    logger.info(f"Heartbeat sweep '{name}' scheduled every {interval_sec}s")


def unregister_task(name: str):
    if tasks.pop(name, None) is not None:
        logger.info(f"Heartbeat sweep '{name}' removed")


def list_tasks():
    return list(tasks)


def register_core_tasks(core, interval_sec: int):
    """Register the standard sweeps of a ChecklistCore."""
    register_task("drain_queue", interval_sec, core.drain_queue)
    register_task("sweep_overdue_action_plans", interval_sec, core.sweep_overdue_action_plans)
    register_task("expire_stale_cross_validations", interval_sec, core.expire_stale_cross_validations)


def start():
    """Run the sweep loop in the calling thread until stop() is called."""
    global running, shutdown_event

    if not is_heartbeat_enabled():
        logger.info("HEARTBEAT_ENABLED is false; sweep loop not started")
        return
    if running:
        raise RuntimeError("Heartbeat already running")
    _check_config()

    running = True
    shutdown_event = threading.Event()
    logger.info(f"Sweep loop starting: {', '.join(tasks) or 'no tasks'}")

    try:
        while running and not shutdown_event.is_set():
            _tick()
            shutdown_event.wait(TICK_SECONDS)
    except KeyboardInterrupt:
        logger.info("Sweep loop interrupted")
    finally:
        running = False
        logger.info("Sweep loop exited")


def _tick():
    for name, task_info in list(tasks.items()):
        if not running:
            break
        if not should_run_task(name, task_info):
            continue
        try:
            run_task(name, task_info)
        except RuntimeError as e:
            logger.error(f"Heartbeat sweep '{name}' raised: {e}")


def stop():
    """Ask a running loop to exit after the current tick."""
    global running

    if not running:
        return
    running = False
    if shutdown_event is not None:
        shutdown_event.set()
    logger.info("Sweep loop stop requested")


def should_run_task(name: str, task_info: Dict) -> bool:
    last_run = task_info["last_run"]
    if last_run is None:
        return True
    return time.monotonic() - last_run >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """
    Call one sweep and stamp its last_run.

    A failing sweep is stamped too, so it waits a full interval before the
    next attempt. Its exception is re-raised as RuntimeError.
    """
    began = time.monotonic()
    try:
        result = task_info["func"]()
    except Exception as e:
        finished = task_info["last_run"] = time.monotonic()
        logger.log_heartbeat_task(name, began, finished, "failed", {"error": str(e)[:200]})
        raise RuntimeError(f"Sweep '{name}' failed after {finished - began:.2f}s: {e}") from e

    finished = task_info["last_run"] = time.monotonic()
    logger.log_heartbeat_task(name, began, finished, "success", {"result": repr(result)[:100]})
    return result


def reset_task(name: str):
    """Make a sweep due on the next tick."""
    if name in tasks:
        tasks[name]["last_run"] = None


def get_status():
    """Snapshot of the loop and its sweeps, for the health endpoint."""
    if not is_heartbeat_enabled():
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false"}

    def describe(info):
        last_run = info["last_run"]
        return {
            "interval_sec": info["interval"],
            "last_run": last_run,
            "next_run": None if last_run is None else last_run + info["interval"],
        }

    return {
        "status": "running" if running else "stopped",
        "tasks": {name: describe(info) for name, info in tasks.items()},
    }
