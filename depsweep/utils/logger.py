"""Terminal-safe logging for depsweep.

Detects terminal encoding, provides ASCII alternatives for the few Unicode
glyphs depsweep prints, and routes the standard ``logging`` tree through
Rich.
"""
import locale
import logging
import sys

from rich.logging import RichHandler

# Unicode to ASCII icon mapping for terminals without UTF-8
ICON_MAP = {
    '✓': '[OK]',
    '✔': '[OK]',
    '✗': '[FAIL]',
    '⚠': '[WARN]',
    '⚠️': '[WARN]',
    '→': '->',
    '←': '<-',
    '…': '...',
    '•': '*',
    '🧹': '[depsweep]',
    '📦': '[pkg]',
    '🔍': '[search]',
    '🛡': '[protected]',
    '🛡️': '[protected]',
    '❓': '[?]',
}


def detect_terminal_encoding() -> str:
    """Detect the terminal's encoding capability.

    Returns:
        str: Terminal encoding ('utf-8', 'cp1252', 'ascii', etc.)
    """
    if hasattr(sys.stdout, 'encoding') and sys.stdout.encoding:
        return sys.stdout.encoding.lower()

    try:
        return locale.getpreferredencoding().lower()
    except (AttributeError, ValueError):
        return 'ascii'


def is_utf8_capable() -> bool:
    """Check if the terminal can handle UTF-8 Unicode characters."""
    return detect_terminal_encoding().replace('-', '').replace('_', '') == 'utf8'


def sanitize_for_terminal(text: str) -> str:
    """Replace Unicode icons with ASCII equivalents if the terminal lacks UTF-8.

    Args:
        text: Text potentially containing Unicode icons

    Returns:
        str: Sanitized text safe for current terminal
    """
    if is_utf8_capable():
        return text

    sanitized = text
    for unicode_char, ascii_replacement in ICON_MAP.items():
        sanitized = sanitized.replace(unicode_char, ascii_replacement)
    return sanitized


def configure_logging(level: str = "WARNING", console=None) -> logging.Logger:
    """Attach a Rich handler to the ``depsweep`` logger tree.

    Library modules only call ``logging.getLogger(__name__)``; handlers are
    installed here, by the CLI.

    Args:
        level: Log level name
        console: Rich console to log through (defaults to a stderr SafeConsole)

    Returns:
        The configured ``depsweep`` logger
    """
    if console is None:
        from .safe_console import SafeConsole
        console = SafeConsole(stderr=True)

    logger = logging.getLogger("depsweep")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger
