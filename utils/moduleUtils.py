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
Configuration helpers shared by every update module.

The root index.json carries metadata, the debug flag and one config section per
concern. Values missing from the file fall back to the defaults below so a
damaged config never blocks an upgrade.
"""

import os
import copy
import json
from typing import Dict, Any, Optional
from .index import log_message

ROOT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "index.json")

DEFAULT_CONFIG: Dict[str, Any] = {
    "metadata": {
        "schema_version": "1.0.0",
        "module_name": "nextcloud_updates",
    },
    "debug": False,
    "config": {
        "nextcloud": {
            "install_dir": "/usr/local/www/nextcloud",
            "config_file": "/usr/local/www/nextcloud/config/config.php",
            "config_dir": "/usr/local/www/nextcloud/config",
            "web_user": "www",
            "php_bin": "php",
            "status_url": "http://localhost/status.php",
            "default_apps": ["contacts", "calendar", "notes", "deck"],
        },
        "database": {
            "name": "nextcloud",
            "default_user": "dbadmin",
            "host": "localhost",
            "port": "5432",
            "user_file": "/root/dbuser",
            "password_file": "/root/dbpassword",
            "name_file": "/root/dbname",
            "postgres_user": "postgres",
            "core_tables": ["oc_users", "oc_appconfig"],
            "pg_data_glob": "/var/db/postgres/data*",
            "pg_rc_script": "/usr/local/etc/rc.d/postgresql",
            "initdb_flags": "--auth-local=trust --auth-host=trust",
        },
        "state": {
            "last_backup_file": "/root/last_pre_update_backup",
            "migration_ordinal_file": "/root/migrations/current_migration.txt",
            "migration_log": "/var/log/nextcloud-updates/migrations.log",
            "lock_file": "/var/run/nextcloud-updates.lock",
            "lock_timeout": 7200,
        },
        "backup": {
            "root": "/root",
            "prefix": "pre_update_backup_",
            "legacy_patterns": ["pre_update_backup_*", "mysql_backup_*"],
            "mysql_dump_names": ["nextcloud_mysql.sql", "nextcloud.sql"],
        },
        "ssl": {
            "letsencrypt_dir": "/usr/local/etc/letsencrypt",
            "cert_path": "/usr/local/etc/letsencrypt/live/truenas",
            "nginx_https_conf": "/usr/local/etc/nginx/conf.d/nextcloud.https.conf",
            "jail_options_file": "/root/jail_options.env",
            "self_signed_command": ["generate_self_signed_tls_certificates"],
        },
        "services": {
            "rc_conf": "/etc/rc.conf",
            "managed": ["php_fpm", "redis", "postgresql", "nginx", "fail2ban"],
            "restart_if_running": ["mysql-server"],
            "web": ["nginx", "php_fpm"],
            "aliases": {
                "php_fpm": ["php_fpm", "php-fpm"],
            },
            "rcvars": {
                "php_fpm": "php_fpm",
                "php-fpm": "php_fpm",
                "mysql-server": "mysql",
                "postgresql": "postgresql",
                "redis": "redis",
                "nginx": "nginx",
                "fail2ban": "fail2ban",
            },
        },
        "wait": {
            "max_attempts": 30,
            "interval": 2,
        },
        "migrations": {
            "dir": "/root/migrations",
            "script_timeout": 600,
        },
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_root_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the root index.json merged over the built-in defaults.

    Args:
        config_path: Optional explicit path, defaults to the package index.json

    Returns:
        dict: Complete configuration; defaults alone if loading fails
    """
    path = config_path or ROOT_CONFIG_PATH
    try:
        with open(path, 'r') as f:
            return _deep_merge(DEFAULT_CONFIG, json.load(f))
    except FileNotFoundError:
        log_message(f"Root config not found at {path}, using defaults", "WARNING")
    except Exception as e:
        log_message(f"Failed to load root config {path}: {e}", "WARNING")
    return copy.deepcopy(DEFAULT_CONFIG)


def build_config(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Return the defaults with the given overrides merged in."""
    return _deep_merge(DEFAULT_CONFIG, overrides)


def get_section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Get one section of the ``config`` object, falling back to defaults."""
    section = config.get("config", {}).get(name)
    if section is None:
        return copy.deepcopy(DEFAULT_CONFIG["config"].get(name, {}))
    return section


def conditional_config_return(result_dict: dict, config_data: dict, root_config: Optional[dict] = None) -> dict:
    """
    Conditionally add config to result based on the debug flag.

    Args:
        result_dict: The result dictionary to potentially add config to
        config_data: The configuration data to add if debug is enabled
        root_config: Root configuration, loaded from disk when omitted

    Returns:
        dict: Result dictionary with config added if debug is enabled
    """
    root_config = root_config if root_config is not None else load_root_config()
    if root_config.get("debug", False):
        result_dict["config"] = config_data
    return result_dict

