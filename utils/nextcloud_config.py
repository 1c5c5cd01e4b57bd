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
Access to Nextcloud's config.php.

Reads pick single scalar entries out of the PHP array with a regular
expression. Writes go through PHP itself (``php -r``) so the array is
re-exported with ``var_export`` exactly as Nextcloud writes it.
"""

import re
import json
from pathlib import Path
from typing import Dict, Any, Iterable, Optional, Union
from .commands import CommandRunner
from .index import log_message

_SCALAR = r"""'(?P<key>{key})'\s*=>\s*(?:'(?P<str>(?:[^'\\]|\\.)*)'|(?P<bare>true|false|-?\d+(?:\.\d+)?))"""

_PHP_REWRITE = r'''
$configFile = getenv("NC_CONFIG_PATH");
if (!file_exists($configFile)) { fwrite(STDERR, "missing config\n"); exit(1); }
include $configFile;
$config = isset($CONFIG) ? $CONFIG : array();
$updates = json_decode(getenv("NC_CONFIG_UPDATES"), true);
$removals = json_decode(getenv("NC_CONFIG_REMOVALS"), true);
foreach ($updates as $key => $value) { $config[$key] = $value; }
foreach ($removals as $key) { unset($config[$key]); }
$content = "<?php\n\$CONFIG = " . var_export($config, true) . ";\n";
if (file_put_contents($configFile, $content) === false) { exit(1); }
'''


def read_config_value(config_file: str, key: str) -> Optional[Union[str, bool, int, float]]:
    """
    Read one scalar entry from config.php.

    Returns:
        str for quoted values, bool/int/float for bare literals, None if the
        file or key is missing
    """
    try:
        text = Path(config_file).read_text()
    except OSError:
        return None

    match = re.search(_SCALAR.format(key=re.escape(key)), text)
    if not match:
        return None
    if match.group("str") is not None:
        return match.group("str").replace("\\'", "'").replace("\\\\", "\\")
    bare = match.group("bare")
    if bare in ("true", "false"):
        return bare == "true"
    return float(bare) if "." in bare else int(bare)


def write_config_values(runner: CommandRunner, config_file: str, updates: Dict[str, Any],
                        removals: Iterable[str] = (), php_bin: str = "php") -> bool:
    """
    Set and remove top-level keys in config.php.

    Returns:
        bool: True if PHP rewrote the file
    """
    if not Path(config_file).exists():
        log_message(f"Nextcloud config not found at {config_file}, nothing to update", "WARNING")
        return False

    env = {
        "NC_CONFIG_PATH": config_file,
        "NC_CONFIG_UPDATES": json.dumps(updates),
        "NC_CONFIG_REMOVALS": json.dumps(list(removals)),
    }
    result = runner.run([php_bin, "-r", _PHP_REWRITE], env=env)
    if result.returncode != 0:
        log_message(f"Failed to rewrite {config_file}: {result.stderr.strip()}", "ERROR")
        return False

    changed = ", ".join(sorted(k for k in updates if k != "dbpassword"))
    log_message(f"Updated Nextcloud config: {changed or 'no keys set'}")
    return True
