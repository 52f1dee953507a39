"""
Gate persistence module.

This module contains the database implementation for gate run storage.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on gate_common for domain models and interfaces,
and is used by gate_controller, gate_server and gate_admin.
"""

from .sqlite_repository import SQLiteGateRunRepository

__all__ = ["SQLiteGateRunRepository"]
