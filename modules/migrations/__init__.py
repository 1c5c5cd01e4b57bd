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

"""
Migrations Module - One-Time Plugin Evolution

Key Features:
- Sequential execution: step N+1 runs only after step N succeeded
- Automatic retry: a failed step leaves the ordinal alone for the next cycle
- State tracking: the ordinal lives in the state store
  (/root/migrations/current_migration.txt by default)
- Two action sources: built-in Python steps registered by ordinal, then
  <migrations dir>/<N>.sh scripts (10 minute timeout)

Built-in steps:
- 1: Initial setup (certificates, redis/fail2ban, database, cron, default apps)
- 2: PostgreSQL backend (initdb, enable, start)
"""

from .index import MigrationRunner, MigrationError, main
from .steps import StepContext, builtin_steps

__all__ = [
    'MigrationRunner',
    'MigrationError',
    'StepContext',
    'builtin_steps',
    'main'
]
