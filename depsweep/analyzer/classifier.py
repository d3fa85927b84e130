"""Turns aggregated usage evidence into per-dependency verdicts."""
import fnmatch
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .models import (
    INDETERMINATE,
    PACKAGE_REQUIREMENT,
    PROTECTED,
    UNUSED,
    USED,
    WORKSPACE_CROSS_REFERENCE,
    Dependency,
    IndeterminateReference,
    dependency_sort_key,
)
from .patterns import PatternMatcher
from .registry import ProtectionRegistry

logger = logging.getLogger(__name__)

SAFE_LIST_REASON = "safe list"
RETAINED = (USED, PROTECTED, INDETERMINATE)


class SafeList:
    """User-supplied names or glob patterns that must be kept."""

    def __init__(self, entries: Iterable[str] = ()):
        self.exact: Set[str] = set()
        self.patterns: List[str] = []
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            if any(ch in entry for ch in '*?['):
                self.patterns.append(entry)
            else:
                self.exact.add(entry)

    def __contains__(self, name: str) -> bool:
        return name in self.exact or any(fnmatch.fnmatchcase(name, p) for p in self.patterns)


class ProtectionClassifier:
    """Applies the verdict rules in precedence order.

    1. registry or safe-list match (unless aggressive) -> protected
    2. direct usage -> used
    3. used by a workspace member, declared by the root -> used
    4. required by a retained dependency -> used (to a fixpoint)
    5. a plausible indeterminate reference -> indeterminate
    6. otherwise -> unused
    """

    def __init__(self, registry: ProtectionRegistry, safe_list: Iterable[str] = (),
                 aggressive: bool = False):
        self.registry = registry
        self.safe_list = SafeList(safe_list)
        self.aggressive = aggressive

    def mark_protection(self, dependency: Dependency):
        """Fill in the protection fields without deciding a verdict."""
        reason = self.registry.reason_for(dependency.name)
        dependency.is_protected = reason is not None
        dependency.is_safe = dependency.name in self.safe_list
        if dependency.is_safe:
            dependency.protection_reason = SAFE_LIST_REASON
        elif reason:
            dependency.protection_reason = reason

    def classify(
        self,
        dependencies: Mapping[str, Dependency],
        cross_references: Optional[Mapping[str, List[str]]] = None,
        requirements: Optional[Mapping[str, Iterable[str]]] = None,
        markers: Iterable[IndeterminateReference] = (),
        matcher: Optional[PatternMatcher] = None,
    ) -> Dict[str, str]:
        """Decide a verdict for every dependency.

        Args:
            dependencies: Aggregated dependencies, mutated in place
            cross_references: Root dependency -> workspace members using it
            requirements: Installed dependency -> packages it requires
            markers: Indeterminate references from all scanned files
            matcher: Matcher used to decide which markers are plausible

        Returns:
            Dict mapping dependency name to verdict
        """
        cross_references = cross_references or {}
        requirements = {k: set(v) for k, v in (requirements or {}).items()}
        ordered = sorted(dependencies.values(), key=lambda d: dependency_sort_key(d.name))

        plausible: Set[str] = set()
        if matcher is not None:
            for marker in markers:
                plausible.update(matcher.plausible_targets(marker))

        for dependency in ordered:
            dependency.verdict = None
            self.mark_protection(dependency)
            if (dependency.is_protected or dependency.is_safe) and not self.aggressive:
                dependency.verdict = PROTECTED
            elif dependency.usage_count > 0:
                dependency.verdict = USED
            elif cross_references.get(dependency.name):
                dependency.verdict = USED
                dependency.evidence_kinds.add(WORKSPACE_CROSS_REFERENCE)

        changed = True
        while changed:
            changed = False
            retained = [d.name for d in ordered if d.verdict in RETAINED]
            for dependency in ordered:
                if dependency.verdict not in (None, INDETERMINATE):
                    continue
                requirers = {
                    name for name in retained
                    if name != dependency.name and dependency.name in requirements.get(name, ())
                }
                if requirers:
                    dependency.verdict = USED
                    dependency.required_by = requirers
                    dependency.evidence_kinds.add(PACKAGE_REQUIREMENT)
                    changed = True
                elif dependency.verdict is None and dependency.name in plausible:
                    dependency.verdict = INDETERMINATE
                    changed = True

        for dependency in ordered:
            if dependency.verdict is None:
                dependency.verdict = UNUSED

        verdicts = {d.name: d.verdict for d in ordered}
        logger.debug("Classified %d dependencies", len(verdicts))
        return verdicts
