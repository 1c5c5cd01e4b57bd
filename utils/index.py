"""
Nextcloud Plugin Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import logging
import time
from typing import Callable
from packaging import version

# Debug flag for verbose logging, switched on from the root config
DEBUG = False

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def log_message(message, level="INFO"):
    """
    Log a message through the unified update logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logging.getLogger("nextcloud_updates").log(_LEVELS.get(level, logging.INFO), message)


def debug_log(message: str):
    """Debug logging that only shows when DEBUG=True."""
    if DEBUG:
        log_message(message, "DEBUG")


def set_debug(enabled: bool):
    global DEBUG
    DEBUG = bool(enabled)


def log_step_start(name: str):
    """Mark the beginning of an orchestration step."""
    log_message(f">>> Starting: {name}")


def log_step_end(name: str, status: str = ""):
    """Mark the end of an orchestration step, optionally with its outcome."""
    if status:
        log_message(f"<<< Finished: {name} ({status})")
    else:
        log_message(f"<<< Finished: {name}")


def wait_for(check: Callable[[], bool], description: str, max_attempts: int = 30,
             interval: float = 2, sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Poll a readiness check at a fixed interval.

    Args:
        check: Callable returning True once the dependency is ready
        description: Human readable name used in log lines
        max_attempts: Upper bound on the number of polls
        interval: Seconds to sleep between polls
        sleep: Sleep function (injectable for tests)

    Returns:
        bool: True if the check passed within the bound, False otherwise.
        Exhaustion is logged as a warning and never raises.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            if check():
                log_message(f"{description} is ready")
                return True
        except Exception as e:
            debug_log(f"{description} readiness check raised: {e}")

        log_message(f"{description} is unavailable - attempt {attempt} of {max_attempts}")
        if attempt < max_attempts:
            sleep(interval)

    log_message(f"{description} did not become ready in time", "WARNING")
    return False


def compare_versions(version1: str, version2: str) -> int:
    """
    Compare two Nextcloud version strings (e.g. "29.0.4.1").

    Returns:
        int: -1 if version1 < version2, 0 if equal or unparseable, 1 if version1 > version2
    """
    try:
        v1, v2 = version.parse(str(version1)), version.parse(str(version2))
    except version.InvalidVersion as e:
        debug_log(f"Cannot compare versions '{version1}' and '{version2}': {e}")
        return 0
    if v1 < v2:
        return -1
    if v1 > v2:
        return 1
    return 0
