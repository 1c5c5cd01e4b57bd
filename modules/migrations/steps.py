"""
Nextcloud Plugin Update Management System - Built-in Migration Steps
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

import time
from functools import partial
from dataclasses import dataclass
from typing import Callable, Dict, Any, Optional
from nextcloud_updates.utils.index import log_message, log_step_start, log_step_end, wait_for
from nextcloud_updates.utils.moduleUtils import get_section
from nextcloud_updates.utils.services import ServiceManager
from nextcloud_updates.utils.occ import OccClient
from nextcloud_updates.utils.records import BackupRecord, BackendType, SSLState
from nextcloud_updates.modules.ssl import SSLManager
from nextcloud_updates.modules.converter.postgres import PostgresAdmin
from .index import StepRegistry


@dataclass
class StepContext:
    """Collaborators shared by the built-in steps."""
    config: Dict[str, Any]
    services: ServiceManager
    occ: OccClient
    postgres: PostgresAdmin
    ssl: SSLManager
    record: Optional[BackupRecord] = None
    sleep: Callable[[float], None] = time.sleep

    def wait(self, check: Callable[[], bool], description: str) -> bool:
        wait_config = get_section(self.config, "wait")
        return wait_for(check, description,
                        max_attempts=int(wait_config.get("max_attempts", 30)),
                        interval=float(wait_config.get("interval", 2)),
                        sleep=self.sleep)


CACHE_SETTINGS = [
    (("redis", "host"), "localhost", None),
    (("redis", "port"), "6379", "integer"),
    (("memcache.local",), "\\OC\\Memcache\\APCu", None),
    (("memcache.distributed",), "\\OC\\Memcache\\Redis", None),
    (("memcache.locking",), "\\OC\\Memcache\\Redis", None),
]


def _ensure_certificates(ctx: StepContext) -> None:
    if ctx.record is not None and ctx.record.ssl_state == SSLState.NONE:
        log_message("HTTP-only installation, not generating certificates")
        return
    if ctx.ssl.fullchain.exists():
        log_message("TLS certificates present, keeping them")
        return
    log_message("Generating self-signed TLS certificates...")
    ctx.ssl.generate_self_signed()


def _start_postgres(ctx: StepContext) -> bool:
    ctx.postgres.ensure_initialized(ctx.services)
    log_message("PostgreSQL is enabled, starting service...")
    ctx.services.start("postgresql")
    return ctx.wait(ctx.postgres.is_ready, "PostgreSQL")


def _start_mysql(ctx: StepContext) -> bool:
    ctx.services.start("mysql-server")
    return ctx.wait(lambda: ctx.services.status("mysql-server"), "MySQL")


def _bring_up_database(ctx: StepContext) -> None:
    services = ctx.services
    if services.status("postgresql"):
        log_message("PostgreSQL already running")
        services.restart("postgresql")
    elif services.status("mysql-server"):
        log_message("MySQL detected, configuring MySQL...")
        services.enable("mysql-server")
        _start_mysql(ctx)
    elif services.is_enabled("postgresql"):
        _start_postgres(ctx)
    elif services.is_enabled("mysql-server"):
        log_message("MySQL is enabled, starting service...")
        _start_mysql(ctx)
    else:
        log_message("No database service enabled in rc.conf", "WARNING")


def _configure_cache(ctx: StepContext) -> None:
    log_message("Configuring Redis cache...")
    for keys, value, value_type in CACHE_SETTINGS:
        if ctx.occ.get_system(*keys) == value:
            continue
        ctx.occ.set_system(*keys, value=value, value_type=value_type)


def initial_setup(ctx: StepContext) -> bool:
    """Certificates, redis/fail2ban, database bring-up, cron, cache settings and default apps."""
    log_step_start("Migration 1: Initial setup")

    _ensure_certificates(ctx)
    for service in ("redis", "fail2ban"):
        log_message(f"Enabling {service} service...")
        ctx.services.enable(service)

    _bring_up_database(ctx)

    for service in ("redis", "fail2ban"):
        ctx.services.start(service)

    log_message("Configuring Nextcloud background jobs...")
    if not ctx.occ.background_cron():
        log_step_end("Migration 1: Initial setup", "failed")
        return False

    _configure_cache(ctx)

    for app in get_section(ctx.config, "nextcloud").get("default_apps", []):
        log_message(f"Installing {app} app...")
        ctx.occ.install_app(app)

    log_step_end("Migration 1: Initial setup")
    return True


def postgresql_backend(ctx: StepContext) -> bool:
    """PostgreSQL becomes the plugin's database: initialised, enabled and running."""
    log_step_start("Migration 2: PostgreSQL backend")

    ctx.postgres.ensure_initialized(ctx.services)
    ctx.services.enable("postgresql")
    if not ctx.services.status("postgresql"):
        log_message("Starting PostgreSQL service...")
        ctx.services.start("postgresql")
    ready = ctx.wait(ctx.postgres.is_ready, "PostgreSQL")

    if ctx.record is not None and ctx.record.backend == BackendType.MYSQL:
        log_message("Detected upgrade from MySQL installation, data conversion follows")

    log_step_end("Migration 2: PostgreSQL backend", "completed" if ready else "PostgreSQL not ready")
    return ready


def builtin_steps(ctx: StepContext) -> StepRegistry:
    return {
        1: ("Initial setup", partial(initial_setup, ctx)),
        2: ("PostgreSQL backend", partial(postgresql_backend, ctx)),
    }
