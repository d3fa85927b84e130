"""Project traversal: source and configuration candidates."""
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import pathspec

from depsweep.errors import ManifestError
from .models import Diagnostic
from .parser import dialect_for, is_source_path

logger = logging.getLogger(__name__)

DEFAULT_IGNORES = (
    'node_modules/',
    'dist/',
    'coverage/',
    'build/',
    '.git/',
    '*.log',
    '*.lock',
)

CONFIG_SUFFIXES = frozenset({'.json', '.yaml', '.yml', '.js', '.cjs', '.mjs', '.ts', '.cts', '.mts'})
CONFIG_NAME_RE = re.compile(r'\.(config|rc)(\.|\b)')
NOT_CONFIG = frozenset({'.npmrc', '.nvmrc', '.yarnrc', '.node-version'})
BINARY_PROBE_BYTES = 8192


@dataclass(frozen=True)
class ScanCandidate:
    path: Path
    rel_path: str
    dialect: Optional[str] = None


@dataclass
class ScanResult:
    """Ordered source and config candidates for one project root."""
    root: Path
    sources: List[ScanCandidate] = field(default_factory=list)
    configs: List[ScanCandidate] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


def is_config_file(path: Path) -> bool:
    """Whether a file looks like tool configuration.

    Basename contains 'config', starts with '.', is package.json or has a
    `.config`/`.rc` segment; restricted to JSON, YAML, JS-module and
    extensionless rc files.
    """
    name = path.name
    lowered = name.lower()
    if lowered == 'package.json':
        return True
    if lowered in NOT_CONFIG or lowered.startswith('.env'):
        return False

    suffix = path.suffix.lower()
    if suffix:
        if suffix not in CONFIG_SUFFIXES:
            return False
    elif not lowered.endswith('rc'):
        return False

    return 'config' in lowered or lowered.startswith('.') or bool(CONFIG_NAME_RE.search(lowered))


def is_binary(path: Path) -> bool:
    with open(path, 'rb') as f:
        return b'\0' in f.read(BINARY_PROBE_BYTES)


def build_ignore_spec(root: Path, ignore_patterns: Iterable[str] = ()) -> pathspec.PathSpec:
    """Default ignores, the root .gitignore and caller patterns as one spec."""
    lines = list(DEFAULT_IGNORES)
    gitignore = root / '.gitignore'
    if gitignore.is_file():
        try:
            lines.extend(gitignore.read_text(encoding='utf-8').splitlines())
        except (IOError, OSError, UnicodeDecodeError):
            logger.debug("Failed to read %s", gitignore)
    lines.extend(ignore_patterns)
    return pathspec.GitIgnoreSpec.from_lines(lines)


class SourceScanner:
    """Enumerate the files the extractors should look at.

    Read-only. Symlinked directories are followed once; a directory seen
    twice (by device and inode) is skipped.
    """

    def __init__(self, root: Path, ignore_patterns: Iterable[str] = (),
                 exclude_dirs: Iterable[Path] = (), max_file_bytes: Optional[int] = None):
        """Initialize scanner.

        Args:
            root: Project root directory
            ignore_patterns: gitignore-style globs relative to root
            exclude_dirs: Directories scanned separately (workspace members)
            max_file_bytes: Skip files larger than this
        """
        self.root = Path(root)
        self.spec = build_ignore_spec(self.root, ignore_patterns)
        self.exclude_dirs = {Path(d).resolve() for d in exclude_dirs}
        self.max_file_bytes = max_file_bytes

    def _rel(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def scan(self) -> ScanResult:
        """Walk the project.

        Raises:
            ManifestError: If the root is not a readable directory
        """
        try:
            root_stat = os.stat(self.root)
            os.listdir(self.root)
        except OSError as e:
            raise ManifestError(f"Project root is unreadable: {e.strerror or e}", self.root) from e
        if not self.root.is_dir():
            raise ManifestError("Project root is not a directory", self.root)

        result = ScanResult(root=self.root)
        visited = {(root_stat.st_dev, root_stat.st_ino)}

        def on_error(error: OSError):
            result.diagnostics.append(Diagnostic(
                kind='unreadable',
                file_path=self._rel(Path(error.filename)) if error.filename else '.',
                message=str(error.strerror or error),
            ))

        for dirpath, dirnames, filenames in os.walk(self.root, followlinks=True, onerror=on_error):
            current = Path(dirpath)

            kept = []
            for dirname in sorted(dirnames):
                child = current / dirname
                if self.spec.match_file(self._rel(child) + '/'):
                    continue
                if child.resolve() in self.exclude_dirs:
                    continue
                try:
                    st = os.stat(child)
                except OSError:
                    continue
                key = (st.st_dev, st.st_ino)
                if key in visited:
                    logger.debug("Skipping symlink cycle at %s", child)
                    continue
                visited.add(key)
                kept.append(dirname)
            dirnames[:] = kept

            for filename in sorted(filenames):
                self._consider(current / filename, result)

        return result

    def _consider(self, path: Path, result: ScanResult):
        rel_path = self._rel(path)
        if self.spec.match_file(rel_path):
            return

        source = is_source_path(path)
        config = is_config_file(path)
        if not source and not config:
            return

        try:
            if not path.is_file():
                return
            size = path.stat().st_size
            if is_binary(path):
                logger.debug("Skipping binary file %s", rel_path)
                return
        except OSError as e:
            result.diagnostics.append(Diagnostic('unreadable', rel_path, str(e.strerror or e)))
            return

        if self.max_file_bytes is not None and size > self.max_file_bytes:
            logger.warning("Skipping %s: %d bytes exceeds the size limit", rel_path, size)
            result.diagnostics.append(Diagnostic(
                'skipped', rel_path, f"{size} bytes exceeds the {self.max_file_bytes} byte limit"))
            return

        if source:
            result.sources.append(ScanCandidate(path, rel_path, dialect_for(path)))
        if config:
            result.configs.append(ScanCandidate(path, rel_path))
