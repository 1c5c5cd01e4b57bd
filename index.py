#!/usr/bin/env python3
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

import os
import sys
import json
import argparse
import logging
from . import run_update, list_modules
from .utils.index import log_message, set_debug
from .utils.moduleUtils import load_root_config
from .utils.lock import LockError
from .utils.records import CredentialsError
from .modules.sequencer import create_sequencer


def setup_logging():
    """
    Log to stdout only; the plugin's shell hooks own file redirection.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)
    logging.info("=" * 80)
    logging.info("NEXTCLOUD UPDATE SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info(f"Python Version: {sys.version}")
    logging.info("=" * 80)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nextcloud plugin update orchestrator")
    parser.add_argument("--config", metavar="PATH", default=None,
                        help="Path to index.json (default: the packaged one)")

    operations = parser.add_mutually_exclusive_group(required=True)
    operations.add_argument("--pre-update", action="store_true",
                            help="Back up and prepare for the package upgrade")
    operations.add_argument("--post-update", action="store_true",
                            help="Restore, migrate and repair after the package upgrade")
    operations.add_argument("--migrate", action="store_true",
                            help="Apply pending migration steps only")
    operations.add_argument("--convert", action="store_true",
                            help="Convert the MySQL data into PostgreSQL")
    operations.add_argument("--detect", action="store_true",
                            help="Print the detected database backend")
    operations.add_argument("--backup", action="store_true",
                            help="Create a backup without upgrading")
    operations.add_argument("--status", action="store_true",
                            help="Show backend, migration state, last backup and status.php")
    operations.add_argument("--module", nargs=argparse.REMAINDER, metavar="NAME [ARGS]",
                            help="Run one module's main(args)")

    parser.add_argument("--force-sql-fallback", action="store_true",
                        help="With --convert: skip occ db:convert-type")
    parser.add_argument("--dump", metavar="PATH", default=None,
                        help="With --convert: MySQL dump to import")
    return parser


def _print_result(result):
    print(json.dumps(result, indent=2, default=str))


def main(argv=None):
    """
    Main entry point for the update orchestrator.

    Exit codes: 0 on success or deliberate no-op, 1 on a failed conversion,
    missing database credentials or a held upgrade lock, 130 on interrupt.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        setup_logging()
        config = load_root_config(args.config)
        set_debug(config.get("debug", False))

        if args.module is not None:
            if not args.module:
                list_modules()
                sys.exit(0)
            result = run_update(args.module[0], args.module[1:])
            _print_result(result)
            sys.exit(0 if isinstance(result, dict) and result.get("success", False) else 1)

        sequencer = create_sequencer(config)

        if args.detect:
            backend = sequencer.probe.detect_backend()
            print(backend.value)
            sys.exit(0)

        elif args.backup:
            with sequencer.lock.hold("backup"):
                record = sequencer.backup.create_backup()
            _print_result(record.to_dict())
            sys.exit(0)

        elif args.status:
            _print_result(sequencer.status())
            sys.exit(0)

        elif args.pre_update:
            sequencer.run_pre_update()
            log_message("Pre-update completed")
            sys.exit(0)

        elif args.post_update:
            result = sequencer.run_post_update()
            if result.get("backup_dir"):
                log_message(f"Your backup is still available at: {result['backup_dir']}")
            log_message("Post-update completed")
            sys.exit(0)

        elif args.migrate:
            result = sequencer.run_migrations()
            if not result.get("success"):
                log_message("Some migrations failed and will retry on the next update", "WARNING")
            sys.exit(0)

        elif args.convert:
            result = sequencer.convert(dump_path=args.dump, force_offline=args.force_sql_fallback)
            sys.exit(0 if result["success"] else 1)

    except CredentialsError as e:
        log_message(f"ERROR: {e}", "ERROR")
        sys.exit(1)
    except LockError as e:
        log_message(str(e), "ERROR")
        sys.exit(1)
    except KeyboardInterrupt:
        log_message("Update process interrupted by user", "WARNING")
        sys.exit(130)
    except Exception as e:
        log_message(f"Unhandled error in update process: {e}", "ERROR")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
