"""Tree-sitter front-end for JavaScript/TypeScript dialects."""
import re
import threading
from pathlib import Path
from typing import Optional, Tuple

import tree_sitter_javascript as tsjavascript
import tree_sitter_typescript as tstypescript
from tree_sitter import Language, Parser, Tree

from .models import JS, JSX, TS, TSX

EMBEDDED_EXTENSIONS = ('.vue', '.svelte')

SCRIPT_BLOCK_RE = re.compile(
    r'<script\b(?P<attrs>[^>]*)>(?P<body>.*?)</script\s*>',
    re.IGNORECASE | re.DOTALL,
)
LANG_ATTR_RE = re.compile(r'''\blang\s*=\s*["']?(?P<lang>[\w-]+)''', re.IGNORECASE)

_LANG_TO_DIALECT = {
    'ts': TS,
    'typescript': TS,
    'tsx': TSX,
    'jsx': JSX,
    'js': JS,
    'javascript': JS,
}

_thread_state = threading.local()


class LanguageParser:
    """Dialect-aware parser using tree-sitter v0.22+ API.

    tree-sitter parsers are not thread-safe; use ``for_dialect`` to get an
    instance owned by the calling thread.
    """

    SUPPORTED_EXTENSIONS = {
        '.js': JS,
        '.mjs': JS,
        '.cjs': JS,
        '.jsx': JSX,
        '.ts': TS,
        '.mts': TS,
        '.cts': TS,
        '.tsx': TSX,
    }

    def __init__(self, dialect: str):
        """Initialize parser for a dialect.

        Args:
            dialect: One of 'js', 'jsx', 'ts', 'tsx'

        Raises:
            ValueError: If dialect is not supported
        """
        self.dialect = dialect
        self.parser = self._create_parser()

    def _create_parser(self) -> Parser:
        """Build a Parser with Parser(Language(capsule)).

        The JavaScript grammar covers JSX; TSX needs its own grammar since
        ``<T>x`` casts and JSX are ambiguous.
        """
        if self.dialect in (JS, JSX):
            lang = Language(tsjavascript.language())
        elif self.dialect == TS:
            lang = Language(tstypescript.language_typescript())
        elif self.dialect == TSX:
            lang = Language(tstypescript.language_tsx())
        else:
            raise ValueError(f"Unsupported dialect: {self.dialect}")
        return Parser(lang)

    def parse(self, source: bytes) -> Tree:
        return self.parser.parse(source)

    @classmethod
    def for_dialect(cls, dialect: str) -> "LanguageParser":
        """Return the calling thread's parser for ``dialect``."""
        parsers = getattr(_thread_state, 'parsers', None)
        if parsers is None:
            parsers = _thread_state.parsers = {}
        parser = parsers.get(dialect)
        if parser is None:
            parser = parsers[dialect] = cls(dialect)
        return parser


def is_source_path(path: Path) -> bool:
    suffix = path.suffix.lower()
    return suffix in LanguageParser.SUPPORTED_EXTENSIONS or suffix in EMBEDDED_EXTENSIONS


def dialect_for(path: Path) -> Optional[str]:
    """Dialect implied by a file's extension (embedded files default to js)."""
    suffix = path.suffix.lower()
    if suffix in EMBEDDED_EXTENSIONS:
        return JS
    return LanguageParser.SUPPORTED_EXTENSIONS.get(suffix)


def extract_script_blocks(text: str) -> Tuple[str, str]:
    """Pull the ``<script>`` blocks out of a Vue or Svelte component.

    Everything outside the blocks is replaced by its newlines only, so
    line numbers in the result match the component file.

    Returns:
        Tuple of (script source, dialect)
    """
    pieces = []
    dialect = None
    cursor = 0
    for match in SCRIPT_BLOCK_RE.finditer(text):
        gap = text[cursor:match.start('body')]
        pieces.append('\n' * gap.count('\n') or ' ')
        pieces.append(match.group('body'))
        cursor = match.end('body')

        lang = LANG_ATTR_RE.search(match.group('attrs'))
        block_dialect = _LANG_TO_DIALECT.get(lang.group('lang').lower(), JS) if lang else JS
        if dialect is None or block_dialect in (TS, TSX):
            dialect = block_dialect
    return ''.join(pieces), dialect or JS


def prepare_source(path: Path, raw: bytes) -> Tuple[bytes, str]:
    """Return the parseable bytes and dialect for a source file.

    Raises:
        UnicodeDecodeError: If an embedded component is not valid UTF-8
    """
    if path.suffix.lower() in EMBEDDED_EXTENSIONS:
        script, dialect = extract_script_blocks(raw.decode('utf-8'))
        return script.encode('utf-8'), dialect
    return raw, dialect_for(path) or JS
