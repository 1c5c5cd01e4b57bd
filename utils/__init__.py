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

"""
Utilities for the update orchestration system.

This module provides common utilities used by the update modules.
"""

from .index import log_message, debug_log, log_step_start, log_step_end, wait_for, compare_versions
from .moduleUtils import load_root_config, build_config, get_section
from .commands import CommandRunner
from .services import ServiceManager
from .occ import OccClient
from .state_manager import (
    StateStore,
    FileStateStore,
    MemoryStateStore,
    StateStoreError,
    LAST_BACKUP,
    MIGRATION_ORDINAL
)
from .lock import UpgradeLock, LockError
from .records import (
    BackendType,
    SSLState,
    ConversionMethod,
    ConversionOutcome,
    ConversionAttempt,
    BackupRecord,
    DatabaseCredentials,
    CredentialsError,
    load_credentials
)

__all__ = [
    'log_message',
    'debug_log',
    'log_step_start',
    'log_step_end',
    'wait_for',
    'compare_versions',
    'load_root_config',
    'build_config',
    'get_section',
    'CommandRunner',
    'ServiceManager',
    'OccClient',
    'StateStore',
    'FileStateStore',
    'MemoryStateStore',
    'StateStoreError',
    'LAST_BACKUP',
    'MIGRATION_ORDINAL',
    'UpgradeLock',
    'LockError',
    'BackendType',
    'SSLState',
    'ConversionMethod',
    'ConversionOutcome',
    'ConversionAttempt',
    'BackupRecord',
    'DatabaseCredentials',
    'CredentialsError',
    'load_credentials'
]
