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

import requests
from typing import Dict, Any, Optional
from .index import log_message


def check_status_endpoint(url: str, timeout: float = 10, verify: bool = False) -> Optional[Dict[str, Any]]:
    """
    Query Nextcloud's status.php.

    Args:
        url: Full URL of status.php
        timeout: Request timeout in seconds
        verify: Verify TLS certificates (self-signed setups are common)

    Returns:
        dict: Parsed status reply, or None if the endpoint is unreachable
    """
    try:
        response = requests.get(url, timeout=timeout, verify=verify)
        response.raise_for_status()
        status = response.json()
    except requests.RequestException as e:
        log_message(f"Status endpoint {url} unreachable: {e}", "WARNING")
        return None
    except ValueError as e:
        log_message(f"Status endpoint {url} returned invalid JSON: {e}", "WARNING")
        return None

    log_message(
        f"Nextcloud status: installed={status.get('installed')} "
        f"maintenance={status.get('maintenance')} "
        f"needsDbUpgrade={status.get('needsDbUpgrade')} "
        f"version={status.get('versionstring', 'unknown')}"
    )
    return status
