from __future__ import annotations

import logging

from .errors import DiagnosticsError
from .models import Message, StageResult

logger = logging.getLogger(__name__)


def format_message(message: Message) -> str:
    """Render a diagnostic with its position, e.g. ``line 4 (12-18): unknown type``."""
    position = ""
    if message.line is not None:
        position = f"line {message.line}"
        if message.from_ is not None or message.to is not None:
            position += f" ({message.from_ if message.from_ is not None else '?'}-{message.to if message.to is not None else '?'})"
        position += ": "
    return f"{position}{message.text}"


def surface_diagnostics(label: str, result: StageResult) -> None:
    """Log model-reported warnings, then errors; any error fails the unit of work.

    Called only after the unit's side effects are applied.

    Raises:
        DiagnosticsError: If the result carries at least one error.
    """
    for warning in result.warnings:
        logger.warning("%s: %s", label, format_message(warning))
    for error in result.errors:
        logger.error("%s: %s", label, format_message(error))
    if result.errors:
        raise DiagnosticsError(label, len(result.errors))
