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
along with this program. If not, see <https://www.gnu.org/licenses/>.
"""

import os
import importlib
import traceback
from typing import List

# Import shared utilities
from .utils.index import log_message, debug_log

MODULES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "modules")

# Re-export utilities for easy access by submodules
__all__ = [
    'log_message',
    'run_update',
    'list_modules'
]


def list_modules() -> List[str]:
    """Names of the component modules that expose main(args)."""
    names = []
    for item in sorted(os.listdir(MODULES_PATH)):
        if os.path.isfile(os.path.join(MODULES_PATH, item, "index.py")):
            names.append(item)
    log_message(f"Available modules: {', '.join(names)}")
    return names


def run_update(module_path, args=None, callback=None):
    """
    Run a single component module.

    Args:
        module_path (str): Import path to the module or module name
        args (list, optional): Arguments to pass to the module's main function
        callback (callable, optional): Function to call when the module completes

    Returns:
        Any: Result from the module's main function, None on failure
    """
    result = None
    try:
        # Handle both full import paths and simple module names
        if "." not in module_path:
            # Simple module name - look in modules subdirectory
            module_path = f"modules.{module_path}"

        # Use relative import from current package
        mod = importlib.import_module(f".{module_path}", package=__name__)
        if hasattr(mod, 'main'):
            log_message(f"Running module: {module_path}")
            result = mod.main(args)
            log_message(f"Completed module: {module_path}")
        else:
            log_message(f"Module {module_path} has no main(args) function.", "ERROR")
    except Exception as e:
        log_message(f"Error running module {module_path}: {e}", "ERROR")
        debug_log(traceback.format_exc())

    if callback and callable(callback):
        callback(module_path, result)

    return result
