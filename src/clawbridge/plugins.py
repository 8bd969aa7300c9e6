"""Plugin framework: Protocol-based plugin system with entry point discovery.

Plugins supply the collaborators this package leaves external, most
importantly the :class:`~clawbridge.models.MessageProcessor` that answers
messages and scheduled prompts.
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Protocol, runtime_checkable

import click
from pydantic_settings import BaseSettings

from clawbridge.db import DbConnection, apply_migration
from clawbridge.models import MessageProcessor, SessionClearer

log = logging.getLogger(__name__)


@runtime_checkable
class ClawBridgePlugin(Protocol):
    """Protocol that all clawbridge plugins must satisfy."""

    def register_commands(self, group: click.Group) -> None:
        """Register CLI commands with the Click group."""
        ...

    def get_db_migrations(self) -> list[str]:
        """Return SQL statements for database migrations."""
        ...

    def get_processor(self) -> MessageProcessor | None:
        """Return the callable that generates replies, if this plugin has one."""
        ...

    def get_session_clearer(self) -> SessionClearer | None:
        """Return the callable that resets a group's conversation session."""
        ...

    def get_config_class(self) -> type[BaseSettings] | None:
        """Return a Pydantic Settings class for plugin configuration."""
        ...


class ClawBridgePluginBase:
    """Base class with default no-op implementations for all plugin methods."""

    def register_commands(self, group: click.Group) -> None:
        pass

    def get_db_migrations(self) -> list[str]:
        return []

    def get_processor(self) -> MessageProcessor | None:
        return None

    def get_session_clearer(self) -> SessionClearer | None:
        return None

    def get_config_class(self) -> type[BaseSettings] | None:
        return None


def load_plugins() -> list[ClawBridgePlugin]:
    plugins: list[ClawBridgePlugin] = []
    for ep in entry_points(group="clawbridge.plugins"):
        try:
            plugin_cls = ep.load()
            plugin = plugin_cls()
            plugins.append(plugin)
            log.debug("Loaded plugin %r from %s", ep.name, ep.value)
        except Exception:
            log.exception("Failed to load plugin %r", ep.name)
    return plugins


def run_db_migrations(db: DbConnection, plugins: list[ClawBridgePlugin]) -> None:
    """Apply plugin DDL.  Only "column already exists" is tolerated."""
    for plugin in plugins:
        for sql in plugin.get_db_migrations():
            if apply_migration(db, sql):
                log.debug("Applied migration from %s", type(plugin).__name__)
    db.commit()


def find_processor(plugins: list[ClawBridgePlugin]) -> MessageProcessor | None:
    for plugin in plugins:
        processor = plugin.get_processor()
        if processor is not None:
            return processor
    return None


def find_session_clearer(plugins: list[ClawBridgePlugin]) -> SessionClearer | None:
    for plugin in plugins:
        clearer = plugin.get_session_clearer()
        if clearer is not None:
            return clearer
    return None
