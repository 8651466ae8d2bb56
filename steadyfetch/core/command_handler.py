"""Command Handler: Orchestrates CLI command execution.

Receives commands from the main entry point (main.py) and delegates the work
to the data-access components of a DataAccessContext, reporting results and
failures through the UserInterface.
"""

import logging
import re
from datetime import datetime
from typing import Callable, Optional

import yaml

from steadyfetch.core.context import DataAccessContext
from steadyfetch.domain.interfaces.user_interface import UserInterface

logger = logging.getLogger(__name__)

CLEARABLE_TIERS = ("memory", "session", "local", "offline", "all")


def _format_timestamp(value: Optional[float]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


class CommandHandler:
    """Handles incoming commands and delegates to the data-access context."""

    def __init__(self, context_factory: Callable[[], DataAccessContext], ui: UserInterface):
        """Initializes the CommandHandler.

        Args:
            context_factory: Builds the context on first use.
            ui: Where results and errors are shown.
        """
        self._context_factory = context_factory
        self._context: Optional[DataAccessContext] = None
        self.ui = ui

    @property
    def context(self) -> DataAccessContext:
        if self._context is None:
            self._context = self._context_factory()
        return self._context

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None

    async def handle_stats(self) -> None:
        """Handles the 'stats' command."""
        logger.info("Handling 'stats' command.")
        try:
            cache_stats = self.context.cache_store.get_stats()
            sizes = await self.context.cache_store.get_size()
            offline_stats = await self.context.offline_cache.get_cache_stats()
        except Exception as e:
            logger.error(f"Failed to collect statistics: {e}", exc_info=True)
            self.ui.display_error(f"Failed to collect statistics: {e}")
            return

        self.ui.display_table(
            "Cache tiers",
            ["Tier", "Bytes"],
            [[tier, size] for tier, size in sizes.items()],
        )
        self.ui.display_table(
            "Memory tier",
            ["Metric", "Value"],
            [
                ["entries", cache_stats.size],
                ["hits", cache_stats.hits],
                ["misses", cache_stats.misses],
                ["evictions", cache_stats.evictions],
                ["oldest", _format_timestamp(cache_stats.oldest_entry)],
                ["newest", _format_timestamp(cache_stats.newest_entry)],
            ],
        )
        self.ui.display_table(
            "Offline cache",
            ["Metric", "Value"],
            [
                ["items", offline_stats.item_count],
                ["bytes", offline_stats.total_size],
                ["oldest", _format_timestamp(offline_stats.oldest_item)],
                ["pending sync", offline_stats.pending_sync],
            ]
            + [[f"category: {name}", count] for name, count in sorted(offline_stats.categories.items())],
        )

    async def handle_clear_cache(self, tier: str = "all") -> None:
        """Handles the 'clear-cache' command."""
        tier = tier.lower()
        logger.info(f"Handling 'clear-cache' command for tier: {tier}")
        if tier not in CLEARABLE_TIERS:
            self.ui.display_error(f"Invalid cache tier '{tier}'. Choose one of: {', '.join(CLEARABLE_TIERS)}")
            return
        try:
            if tier in ("memory", "session", "local", "all"):
                await self.context.cache_store.clear(tier)
            if tier in ("offline", "all"):
                await self.context.offline_cache.clear_cache()
            self.ui.display_info(f"Cache cleared ({tier}).")
        except Exception as e:
            logger.error(f"Failed to clear cache ({tier}): {e}", exc_info=True)
            self.ui.display_error(f"Failed to clear cache: {e}")

    async def handle_invalidate(self, pattern: str, regex: bool = False) -> None:
        """Handles the 'invalidate' command."""
        logger.info(f"Handling 'invalidate' command for pattern: {pattern} (regex={regex})")
        try:
            compiled = re.compile(pattern) if regex else pattern
        except re.error as e:
            self.ui.display_error(f"Invalid regular expression '{pattern}': {e}")
            return
        try:
            removed = await self.context.cache_store.invalidate(compiled)
        except Exception as e:
            logger.error(f"Invalidation failed for '{pattern}': {e}", exc_info=True)
            self.ui.display_error(f"Invalidation failed: {e}")
            return
        self.ui.display_info(f"Invalidated {removed} cache entr{'y' if removed == 1 else 'ies'} matching '{pattern}'.")

    async def handle_queue(self) -> None:
        """Handles the 'queue' command (lists deferred mutations)."""
        logger.info("Handling 'queue' command.")
        try:
            entries = await self.context.offline_cache.pending_sync_entries()
        except Exception as e:
            logger.error(f"Failed to read the sync queue: {e}", exc_info=True)
            self.ui.display_error(f"Failed to read the sync queue: {e}")
            return
        self.ui.display_table(
            "Sync queue",
            ["Id", "Operation", "Attempts", "Queued at", "Metadata"],
            [
                [entry.id, entry.operation, entry.attempts, _format_timestamp(entry.timestamp), entry.metadata or ""]
                for entry in entries
            ],
        )

    async def handle_sync(self) -> None:
        """Handles the 'sync' command (replays deferred mutations)."""
        logger.info("Handling 'sync' command.")
        try:
            report = await self.context.offline_cache.process_sync_queue()
        except Exception as e:
            logger.error(f"Sync replay failed: {e}", exc_info=True)
            self.ui.display_error(f"Sync replay failed: {e}")
            return
        message = (
            f"Replayed {report.replayed}, failed {report.failed}, "
            f"skipped {report.skipped}, remaining {report.remaining}."
        )
        if report.failed or report.skipped:
            self.ui.display_warning(message)
        else:
            self.ui.display_info(message)

    async def handle_preference(self, key: str, value: Optional[str] = None) -> None:
        """Handles the 'pref' command: shows a preference, or sets it when a value is given.

        Values are parsed as YAML scalars, so 'true', '3' and '0.5' keep their types.
        """
        try:
            offline_cache = self.context.offline_cache
            if value is None:
                current = await offline_cache.get_preference(key)
                if current is None:
                    self.ui.display_warning(f"Preference '{key}' is not set.")
                else:
                    self.ui.display_output(f"{key} = {current!r}")
                return
            try:
                parsed = yaml.safe_load(value)
            except yaml.YAMLError:
                parsed = value
            await offline_cache.set_preference(key, parsed)
            self.ui.display_info(f"Preference '{key}' set to {parsed!r}.")
        except Exception as e:
            logger.error(f"Preference command failed for '{key}': {e}", exc_info=True)
            self.ui.display_error(f"Preference command failed: {e}")
