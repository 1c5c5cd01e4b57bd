"""
Nextcloud Plugin Update Management System - Backup Producer
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
Backup Module - Pre-update Backups

Each run creates <backup.root>/pre_update_backup_<YYYYmmdd_HHMMSS>/ holding:
- nextcloud-config/      copy of Nextcloud's config directory
- letsencrypt/           certificate tree, if any
- ssl_state.txt          none | self-signed | letsencrypt | custom-ssl
- nc_url_scheme.txt      http | https
- jail_options.env       only when it sets ALLOW_INSECURE_ACCESS
- nextcloud_pg.sql / nextcloud_mysql.sql   logical dump (may be empty)
- database_type.txt      none | mysql | postgresql
- migration_state.txt    migration ordinal at backup time
- backup.json            manifest of all of the above
"""

from .index import BackupProducer, create_backup_producer, main

__all__ = [
    'BackupProducer',
    'create_backup_producer',
    'main'
]
