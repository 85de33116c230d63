"""Runtime context shared by the record stores.

The context bundles the parsed configuration with a live workbook handle and
the lock that serialises record I/O. Store modules never touch ``openpyxl``
directly; they hand blocking callables to :func:`run_record_io`, which runs
them in a worker thread so every read or write is an ``await`` point for the
reconciliation engine.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION
from .exceptions import StoreWriteFailure


T = TypeVar("T")

# Errors raised by openpyxl or the sheet helpers that mean "the store said no".
RECORD_STORE_ERRORS = (OSError, KeyError, IllegalCharacterError)


@dataclass(eq=False)
class RuntimeContext:
    """Container for configuration and workbook references used by the stores.

    ``workbook`` is swapped for a fresh copy from disk when a write has to be
    rolled back, so stores must read it through the context on every call.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the record store performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the stores.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def rollback_context(context: RuntimeContext) -> None:
    """Replace the live workbook with the copy last saved to disk.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    context.workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.warning("Discarded unsaved changes; reloaded workbook '%s'", context.settings.data_file)


async def run_record_io(
    context: RuntimeContext,
    func: Callable[..., T],
    *args: Any,
    operation: str,
    key: str,
    write: bool = False,
) -> T:
    """Run one blocking record operation off the event loop.

    ``func`` receives the live workbook as its first argument followed by
    ``args``. Only one record operation touches the workbook at a time. Writes
    are saved to disk straight away when ``AutoSave`` is enabled, so a
    completed write survives a crash of the calling process.

    With ``AutoSave`` on, a write that fails, including its save, is rolled
    back to the last saved workbook. A :class:`StoreWriteFailure` therefore
    means nothing was written and the same change can be tried again.

    Args:
        context (RuntimeContext): Context owning the workbook and lock.
        func (Callable): Blocking helper from :mod:`data_manager`.
        *args: Positional arguments forwarded to ``func``.
        operation (str): Short verb used in failure messages ("update",
            "delete", ...).
        key (str): Identifier of the record being touched.
        write (bool): Whether ``func`` mutates the workbook.

    Returns:
        Whatever ``func`` returns.

    Raises:
        StoreWriteFailure: If the record layer raises one of
            ``RECORD_STORE_ERRORS``.
    """
    rollback = write and context.settings.autosave

    def _call() -> T:
        try:
            result = func(context.workbook, *args)
            if rollback:
                persist_context(context)
        except RECORD_STORE_ERRORS:
            if rollback:
                try:
                    rollback_context(context)
                except OSError as reload_exc:
                    log.error("Could not reload workbook after failed %s: %s", operation, reload_exc)
            raise
        return result

    async with context.lock:
        try:
            return await asyncio.to_thread(_call)
        except RECORD_STORE_ERRORS as exc:
            log.error("Record store failed to %s '%s': %s", operation, key, exc)
            raise StoreWriteFailure(operation, key, exc) from exc
