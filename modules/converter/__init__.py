"""
Nextcloud Plugin Update Management System - MySQL to PostgreSQL Converter
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

from .index import DatabaseConverter, create_converter, main
from .postgres import PostgresAdmin, ConversionError
from .rewrite import RewriteContext, rewrite_lines, rewrite_dump

__all__ = [
    'DatabaseConverter',
    'create_converter',
    'PostgresAdmin',
    'ConversionError',
    'RewriteContext',
    'rewrite_lines',
    'rewrite_dump',
    'main'
]
