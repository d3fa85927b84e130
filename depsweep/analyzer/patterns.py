"""Segment-based matching of module specifiers against declared dependencies.

Everything here is pure: no I/O, no mutation after construction. The
matcher is shared read-only by all workers.
"""
import fnmatch
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .models import PARSE_FAILURE, IndeterminateReference
from .registry import FrameworkRegistry

TYPES_SCOPE = "@types/"

PACKAGE_NAME_RE = re.compile(r'^(?:@[\w.~-]+/)?[\w~-][\w.~-]*$')
URL_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*://')

NODE_BUILTINS = frozenset({
    "assert", "async_hooks", "buffer", "child_process", "cluster", "console",
    "constants", "crypto", "dgram", "diagnostics_channel", "dns", "domain",
    "events", "fs", "http", "http2", "https", "inspector", "module", "net",
    "os", "path", "perf_hooks", "process", "punycode", "querystring",
    "readline", "repl", "stream", "string_decoder", "sys", "test", "timers",
    "tls", "trace_events", "tty", "url", "util", "v8", "vm", "wasi",
    "worker_threads", "zlib",
})

# matched_by tags
LITERAL = "literal"
SUBPATH = "subpath"
TYPES = "types"
FAMILY = "family"
CONVENTION = "convention"
BIN = "bin"


def _package_of_part(part: str) -> Optional[str]:
    part = part.split('?', 1)[0].strip()
    if not part or part[0] in './#' or URL_RE.match(part) or part.startswith(('data:', 'virtual:')):
        return None
    if part.startswith('node:'):
        part = part[len('node:'):]

    segments = part.split('/')
    if part.startswith('@'):
        if len(segments) < 2 or not segments[1]:
            return None
        name = f"{segments[0]}/{segments[1]}"
    else:
        name = segments[0]
    return name if PACKAGE_NAME_RE.match(name) else None


def package_names(specifier: str) -> List[str]:
    """Package names referenced by a module specifier.

    Webpack loader chains (``style-loader!css-loader!./a.css``) name
    several packages; everything else names at most one.

    Args:
        specifier: Raw specifier as written in source

    Returns:
        Package names in order of appearance, without duplicates
    """
    names: List[str] = []
    for part in specifier.split('!'):
        if part in ('', '-'):
            continue
        name = _package_of_part(part)
        if name and name not in names:
            names.append(name)
    return names


def package_name(specifier: str) -> Optional[str]:
    """The package a plain specifier resolves to, or None."""
    names = package_names(specifier)
    return names[-1] if names else None


def types_target(name: str) -> Optional[str]:
    """Map ``@types/x`` to ``x`` and ``@types/a__b`` to ``@a/b``."""
    if not name.startswith(TYPES_SCOPE):
        return None
    target = name[len(TYPES_SCOPE):]
    if not target:
        return None
    if '__' in target:
        scope, _, rest = target.partition('__')
        return f"@{scope}/{rest}"
    return target


def types_package_for(name: str) -> str:
    """Inverse of ``types_target``."""
    if name.startswith('@'):
        scope, _, rest = name[1:].partition('/')
        return f"{TYPES_SCOPE}{scope}__{rest}"
    return f"{TYPES_SCOPE}{name}"


@dataclass(frozen=True)
class PatternSet:
    """Forms that count as usage of one dependency."""
    name: str
    types_target: Optional[str] = None
    family: Tuple[str, ...] = ()

    @property
    def subpath_prefix(self) -> str:
        return self.name + '/'

    @property
    def covers_builtins(self) -> bool:
        return self.name == "@types/node"

    def match(self, specifier: str) -> Optional[str]:
        """Return how ``specifier`` matches this dependency, or None."""
        for pkg in package_names(specifier):
            how = self.match_package(pkg, specifier)
            if how:
                return how
        return None

    def match_package(self, pkg: str, specifier: Optional[str] = None) -> Optional[str]:
        if pkg == self.name:
            if specifier is not None and specifier.split('?', 1)[0].strip().startswith(self.subpath_prefix):
                return SUBPATH
            return LITERAL
        if self.types_target and pkg == self.types_target:
            return TYPES
        if self.covers_builtins and pkg in NODE_BUILTINS:
            return TYPES
        for pattern in self.family:
            if fnmatch.fnmatchcase(pkg, pattern):
                return FAMILY
        return None

    def is_plausible_prefix(self, prefix: str) -> bool:
        """Whether a specifier starting with ``prefix`` could name this dependency."""
        if not prefix:
            return True
        if prefix[0] in './#' or URL_RE.match(prefix):
            return False
        if prefix.startswith('node:'):
            return self.covers_builtins
        targets = [self.name]
        if self.types_target:
            targets.append(self.types_target)
        for target in targets:
            if target.startswith(prefix) or prefix.startswith(target + '/'):
                return True
        for pattern in self.family:
            head = re.split(r'[*?\[]', pattern, maxsplit=1)[0]
            if head.startswith(prefix) or prefix.startswith(head):
                return True
        return False


def build_pattern_set(name: str, frameworks: Optional[FrameworkRegistry] = None) -> PatternSet:
    """Derive the PatternSet for a dependency name.

    Family patterns come only from the framework registry entry whose core
    is ``name``, so they are never attributed to another dependency.
    """
    family = frameworks.family_of(name) if frameworks is not None else ()
    return PatternSet(name=name, types_target=types_target(name), family=family)


class PatternMatcher:
    """Maps specifiers and tokens to the declared dependencies they name."""

    def __init__(
        self,
        dependency_names: Iterable[str],
        frameworks: Optional[FrameworkRegistry] = None,
        bin_names: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.names: Tuple[str, ...] = tuple(sorted(set(dependency_names)))
        self.pattern_sets: Dict[str, PatternSet] = {
            name: build_pattern_set(name, frameworks) for name in self.names
        }

        self._by_package: Dict[str, List[str]] = {}
        self._builtin_owners: List[str] = []
        self._families: List[Tuple[str, str]] = []
        for name, pset in self.pattern_sets.items():
            self._by_package.setdefault(name, []).append(name)
            if pset.types_target:
                self._by_package.setdefault(pset.types_target, []).append(name)
            if pset.covers_builtins:
                self._builtin_owners.append(name)
            for pattern in pset.family:
                self._families.append((pattern, name))

        self._bins: Dict[str, List[str]] = {}
        for dep, bins in (bin_names or {}).items():
            if dep not in self.pattern_sets:
                continue
            for bin_name in bins:
                self._bins.setdefault(bin_name, []).append(dep)

    def __contains__(self, name: str) -> bool:
        return name in self.pattern_sets

    def pattern_set(self, name: str) -> PatternSet:
        return self.pattern_sets[name]

    def match_specifier(self, specifier: str) -> List[Tuple[str, str]]:
        """All (dependency, matched_by) pairs a specifier counts for."""
        found: Dict[str, str] = {}
        for pkg in package_names(specifier):
            for dep in self._candidates(pkg):
                if dep in found:
                    continue
                how = self.pattern_sets[dep].match_package(pkg, specifier)
                if how:
                    found[dep] = how
        return sorted(found.items())

    def _candidates(self, pkg: str) -> List[str]:
        candidates = list(self._by_package.get(pkg, ()))
        if pkg in NODE_BUILTINS:
            candidates.extend(self._builtin_owners)
        for pattern, dep in self._families:
            if dep != pkg and fnmatch.fnmatchcase(pkg, pattern):
                candidates.append(dep)
        return candidates

    def match_token(self, token: str) -> List[Tuple[str, str]]:
        """Match a whole string found in a config value or script.

        Only the literal name, a subpath of it, or an installed bin name
        counts. Family and types expansion is left to source imports.
        """
        token = token.strip()
        found: Dict[str, str] = {}
        if token in self.pattern_sets:
            found[token] = LITERAL
        else:
            pkg = package_name(token)
            if pkg in self.pattern_sets and token.startswith(pkg + '/'):
                found[pkg] = SUBPATH
        for dep in self._bins.get(token, ()):
            found.setdefault(dep, BIN)
        return sorted(found.items())

    def plausible_targets(self, marker: IndeterminateReference) -> Set[str]:
        """Dependencies an unresolved reference could plausibly name."""
        if marker.kind == PARSE_FAILURE:
            targets: Set[str] = set()
            for candidate in marker.candidates:
                targets.update(dep for dep, _ in self.match_specifier(candidate))
                targets.update(dep for dep, _ in self.match_token(candidate))
            return targets
        return {
            name for name, pset in self.pattern_sets.items()
            if pset.is_plausible_prefix(marker.static_prefix)
        }
