"""
Nextcloud Plugin Update Management System - SSL State
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

import re
import shutil
from pathlib import Path
from typing import Dict, Any, Optional
from nextcloud_updates.utils.index import log_message, debug_log
from nextcloud_updates.utils.moduleUtils import load_root_config, get_section, conditional_config_return
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.nextcloud_config import read_config_value
from nextcloud_updates.utils.records import (
    BackupRecord,
    SSLState,
    SSL_STATE_FILE,
    URL_SCHEME_FILE,
    CERTIFICATES_DIR_NAME,
    JAIL_OPTIONS_NAME
)

LETSENCRYPT_ISSUER = re.compile(r"Let's Encrypt|ISRG Root", re.IGNORECASE)
INSECURE_ACCESS_KEY = "ALLOW_INSECURE_ACCESS"


class SSLManager:
    """
    Snapshot and restore of the jail's TLS setup across an upgrade.

    The certificate tree itself is opaque here; issuance is left to the
    plugin's helper command named in ``ssl.self_signed_command``.
    """

    def __init__(self, config: Dict[str, Any], runner: CommandRunner):
        ssl_config = get_section(config, "ssl")
        self.runner = runner
        self.nextcloud_config_file = get_section(config, "nextcloud").get("config_file")
        self.letsencrypt_dir = Path(ssl_config.get("letsencrypt_dir", "/usr/local/etc/letsencrypt"))
        self.cert_path = Path(ssl_config.get("cert_path", "/usr/local/etc/letsencrypt/live/truenas"))
        self.nginx_https_conf = Path(ssl_config.get("nginx_https_conf", ""))
        self.jail_options_file = Path(ssl_config.get("jail_options_file", "/root/jail_options.env"))
        self.self_signed_command = list(ssl_config.get("self_signed_command", []))

    @property
    def fullchain(self) -> Path:
        return self.cert_path / "fullchain.pem"

    def _issuer(self) -> str:
        result = self.runner.run(["openssl", "x509", "-in", str(self.fullchain), "-issuer", "-noout"])
        if result.returncode != 0:
            debug_log(f"openssl could not read {self.fullchain}: {result.stderr.strip()}")
            return ""
        return result.stdout.strip()

    def detect_state(self) -> SSLState:
        if self.fullchain.exists():
            if LETSENCRYPT_ISSUER.search(self._issuer()):
                return SSLState.LETSENCRYPT
            if (self.cert_path / "root.cer").exists():
                return SSLState.SELF_SIGNED
        if self.nginx_https_conf.name and self.nginx_https_conf.exists():
            return SSLState.CUSTOM_SSL
        return SSLState.NONE

    def detect_url_scheme(self) -> str:
        url = read_config_value(self.nextcloud_config_file, "overwrite.cli.url")
        if isinstance(url, str) and url.lower().startswith("https://"):
            return "https"
        return "http"

    def snapshot(self, backup_dir: str) -> Dict[str, Any]:
        """
        Capture SSL state, URL scheme, certificates and jail options.

        Returns:
            dict: ssl_state, url_scheme, certificates_dir, jail_options_file
        """
        target = Path(backup_dir)
        state = self.detect_state()
        scheme = self.detect_url_scheme()
        (target / SSL_STATE_FILE).write_text(f"{state.value}\n")
        (target / URL_SCHEME_FILE).write_text(f"{scheme}\n")
        log_message(f"SSL state: {state.value}, URL scheme: {scheme}")

        snapshot = {
            "ssl_state": state,
            "url_scheme": scheme,
            "certificates_dir": None,
            "jail_options_file": None,
        }

        # the state above stands even when the copies below fail
        if self.letsencrypt_dir.is_dir():
            certificates = target / CERTIFICATES_DIR_NAME
            try:
                shutil.copytree(self.letsencrypt_dir, certificates, symlinks=True)
                snapshot["certificates_dir"] = str(certificates)
                log_message(f"Copied certificate tree to {certificates}")
            except OSError as e:
                log_message(f"Could not copy certificate tree: {e}", "WARNING")

        jail_options = self._jail_options_text()
        if jail_options and INSECURE_ACCESS_KEY in jail_options:
            jail_copy = target / JAIL_OPTIONS_NAME
            try:
                shutil.copy2(self.jail_options_file, jail_copy)
                snapshot["jail_options_file"] = str(jail_copy)
            except OSError as e:
                log_message(f"Could not copy {self.jail_options_file}: {e}", "WARNING")

        return snapshot

    def _jail_options_text(self) -> Optional[str]:
        try:
            return self.jail_options_file.read_text()
        except OSError:
            return None

    def generate_self_signed(self) -> bool:
        if not self.self_signed_command:
            log_message("No self-signed certificate command configured", "WARNING")
            return False
        log_message("Generating self-signed certificates")
        result = self.runner.run(self.self_signed_command)
        if result.returncode != 0:
            log_message(f"Self-signed certificate generation failed: {result.stderr.strip()}", "WARNING")
            return False
        return True

    def _restore_certificates(self, record: BackupRecord) -> bool:
        if record.certificates_dir and Path(record.certificates_dir).is_dir():
            self.letsencrypt_dir.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(record.certificates_dir, self.letsencrypt_dir, symlinks=True, dirs_exist_ok=True)
            log_message(f"Restored certificates from {record.certificates_dir}")
            return True
        log_message("Backup holds no certificates, generating self-signed ones", "WARNING")
        return self.generate_self_signed()

    def _restore_jail_options(self, record: BackupRecord) -> None:
        if record.jail_options_file and Path(record.jail_options_file).is_file():
            shutil.copy2(record.jail_options_file, self.jail_options_file)
            log_message(f"Restored {self.jail_options_file}")

    def _ensure_insecure_access(self) -> None:
        # An explicit operator choice already in the file is left alone
        text = self._jail_options_text()
        if text is not None and INSECURE_ACCESS_KEY in text:
            return
        self.jail_options_file.parent.mkdir(parents=True, exist_ok=True)
        prefix = text if text and text.endswith("\n") else (f"{text}\n" if text else "")
        self.jail_options_file.write_text(f"{prefix}{INSECURE_ACCESS_KEY}=true\n")
        log_message(f"Added {INSECURE_ACCESS_KEY}=true to {self.jail_options_file}")

    def restore(self, record: Optional[BackupRecord]) -> bool:
        """
        Put the SSL setup back the way the backup found it.

        HTTP-only installs stay HTTP-only and never get certificates; an
        unrecognised marker or a missing certificate tree falls back to
        self-signed material.
        """
        if record is None:
            if self.fullchain.exists():
                log_message("No backup record, keeping existing certificates")
                return True
            log_message("No backup record and no certificates present", "WARNING")
            return self.generate_self_signed()

        self._restore_jail_options(record)

        if record.ssl_state is None:
            log_message("Unrecognised SSL state in backup, generating self-signed certificates", "WARNING")
            return self.generate_self_signed()

        if record.ssl_state == SSLState.NONE:
            log_message("Backup was HTTP-only, keeping HTTP-only mode")
            self._ensure_insecure_access()
            return True

        log_message(f"Restoring SSL state '{record.ssl_state.value}'")
        return self._restore_certificates(record)


def main(args=None):
    """
    Main entry point for the ssl module.

    Returns:
        dict: {"success": True, "ssl_state": ..., "url_scheme": ...}
    """
    config = load_root_config()
    manager = SSLManager(config, CommandRunner())
    result = {
        "success": True,
        "ssl_state": manager.detect_state().value,
        "url_scheme": manager.detect_url_scheme(),
    }
    return conditional_config_return(result, get_section(config, "ssl"), config)


if __name__ == "__main__":
    print(main())
