"""
Nextcloud Plugin Update Management System - Migrations Module
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

import os
import datetime
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional, Tuple
from nextcloud_updates.utils.index import log_message
from nextcloud_updates.utils.moduleUtils import get_section
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.state_manager import StateStore, StateStoreError, MIGRATION_ORDINAL

# ordinal -> (description, action)
StepRegistry = Dict[int, Tuple[str, Callable[[], bool]]]


class MigrationError(Exception):
    """Custom exception for migration operation failures."""
    pass


class MigrationRunner:
    """
    Ordinal-gated one-time migration steps.

    The persisted ordinal names the last step that completed. Each run
    applies ordinal+1, ordinal+2, ... for as long as a step exists, advancing
    the ordinal only after a step succeeds. The first failure ends the run;
    the next update cycle retries the same step.
    """

    def __init__(self, config: Dict[str, Any], state: StateStore, runner: CommandRunner,
                 steps: Optional[StepRegistry] = None):
        migrations_config = get_section(config, "migrations")
        self.state = state
        self.runner = runner
        self.steps: StepRegistry = dict(steps or {})
        self.scripts_dir = Path(migrations_config.get("dir", "/root/migrations"))
        self.script_timeout = float(migrations_config.get("script_timeout", 600))
        self.log_file = Path(get_section(config, "state").get("migration_log",
                                                                "/var/log/nextcloud-updates/migrations.log"))

    def _log_migration(self, message: str, level: str = "INFO"):
        """Log message to both unified system logger and migration-specific log file."""
        log_message(message, level)

        try:
            timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, 'a') as f:
                f.write(f"[{timestamp}] [{level}] {message}\n")
        except OSError:
            # Don't fail if migration log file write fails
            pass

    def _script_path(self, ordinal: int) -> Path:
        return self.scripts_dir / f"{ordinal}.sh"

    def has_step(self, ordinal: int) -> bool:
        return ordinal in self.steps or self._script_path(ordinal).is_file()

    def _execute_migration_script(self, script_path: Path) -> None:
        self._log_migration(f"Executing migration script: {script_path.name}")
        if not os.access(script_path, os.X_OK):
            os.chmod(script_path, 0o755)

        result = self.runner.run([str(script_path)], timeout=self.script_timeout)
        if result.stdout:
            self._log_migration(f"Migration output:\n{result.stdout.rstrip()}")
        if result.stderr:
            self._log_migration(f"Migration stderr:\n{result.stderr.rstrip()}", "WARNING")
        if result.returncode != 0:
            raise MigrationError(f"{script_path.name} failed with return code {result.returncode}")

    def _execute(self, ordinal: int) -> None:
        if ordinal in self.steps:
            description, action = self.steps[ordinal]
            self._log_migration(f"Running migration {ordinal}: {description}")
            if not action():
                raise MigrationError(f"migration {ordinal} ({description}) reported failure")
            return
        self._execute_migration_script(self._script_path(ordinal))

    def current_ordinal(self) -> int:
        """Persisted ordinal, initialised to 0 on first use."""
        if self.state.get(MIGRATION_ORDINAL) is None:
            self.state.set(MIGRATION_ORDINAL, 0)
            return 0
        return self.state.get_int(MIGRATION_ORDINAL, 0)

    def run_migrations(self) -> Dict[str, Any]:
        """
        Apply every pending step in ordinal order.

        Returns:
            dict: success flag, starting and final ordinal, applied ordinals and
            the failed ordinal (None when nothing failed)
        """
        self._log_migration("Running database migrations...")
        try:
            start = self.current_ordinal()
        except StateStoreError as e:
            self._log_migration(f"Cannot read migration ordinal: {e}", "ERROR")
            return {"success": False, "error": str(e), "applied": [], "failed": None}

        current = start
        applied: List[int] = []
        failed = None
        while self.has_step(current + 1):
            target = current + 1
            self._log_migration(f"* [migrate] Migrating from {current} to {target}.")
            try:
                self._execute(target)
                self.state.set(MIGRATION_ORDINAL, target)
            except Exception as e:
                self._log_migration(f"ERROR - Fail to run migrations: {e}", "ERROR")
                self._log_migration(f"Migration {target} will retry on next update cycle", "ERROR")
                failed = target
                break
            current = target
            applied.append(target)
            self._log_migration(f"* [migrate] Migration {current} done.")

        if not applied and failed is None:
            self._log_migration(f"No pending migrations (at {current})")

        return {
            "success": failed is None,
            "start_ordinal": start,
            "final_ordinal": current,
            "applied": applied,
            "failed": failed,
        }


def main(args=None):
    """
    Main entry point for migrations module.

    Args:
        args: List of arguments (supports '--check')

    Returns:
        dict: Status and results of the migration operation
    """
    from nextcloud_updates.modules.sequencer import create_sequencer
    from nextcloud_updates.utils.moduleUtils import load_root_config

    if args is None:
        args = []

    try:
        sequencer = create_sequencer(load_root_config())
        runner = sequencer.migrations
        if "--check" in args:
            ordinal = runner.current_ordinal()
            pending = 0
            while runner.has_step(ordinal + pending + 1):
                pending += 1
            log_message(f"Migrations status: at {ordinal}, {pending} pending")
            return {"success": True, "ordinal": ordinal, "pending_migrations": pending}
        return sequencer.run_migrations()
    except Exception as e:
        log_message(f"Migrations module failed: {e}", "ERROR")
        return {"success": False, "error": str(e)}


if __name__ == "__main__":
    import sys
    result = main(sys.argv[1:])
    if not result.get("success", False):
        sys.exit(1)
