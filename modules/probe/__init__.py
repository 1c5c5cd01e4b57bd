"""
Nextcloud Plugin Update Management System - Database Probe
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
Probe Module - Database Backend Classification

Order of authority:
1. dbtype in Nextcloud's config.php
2. <service>_enable="YES" flags in rc.conf
3. live `service <name> status`
4. none (fresh install)
"""

from .index import DatabaseProbe, main

__all__ = [
    'DatabaseProbe',
    'main'
]
