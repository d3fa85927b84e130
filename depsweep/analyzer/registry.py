"""Protection and framework registries for dependency classification."""
import fnmatch
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from depsweep.errors import RegistryLoadError

logger = logging.getLogger(__name__)

RULES_DIR = Path(__file__).parent.parent / "rules"
PROJECT_CATEGORY = "project"


def _is_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


def _read_rules(path: Path, section: str) -> Tuple[str, dict]:
    """Read a versioned rules file and return (version, section)."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (IOError, OSError) as e:
        raise RegistryLoadError(f"Cannot read rules file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise RegistryLoadError(f"Malformed rules file {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get(section), dict):
        raise RegistryLoadError(f"Rules file {path} has no '{section}' mapping")
    return str(data.get("version", "")), data[section]


class ProtectionRegistry:
    """Category -> names/glob patterns that are never auto-flagged unused.

    Instances are read-only after construction. Per-project additions go
    through ``derive`` and produce a new registry.
    """

    def __init__(self, categories: Mapping[str, Iterable[str]], version: str = ""):
        self.version = version
        self._exact: Dict[str, str] = {}
        self._globs: List[Tuple[str, str]] = []

        for category, names in categories.items():
            for name in names:
                if not isinstance(name, str) or not name:
                    raise RegistryLoadError(f"Invalid entry {name!r} in category '{category}'")
                if _is_glob(name):
                    self._globs.append((name, category))
                else:
                    self._exact.setdefault(name, category)

        self._categories = {
            category: tuple(names) for category, names in categories.items()
        }

    @classmethod
    def from_file(cls, path: Path) -> "ProtectionRegistry":
        version, categories = _read_rules(path, "categories")
        for category, names in categories.items():
            if not isinstance(names, list):
                raise RegistryLoadError(f"Category '{category}' in {path} must be a list")
        registry = cls(categories, version=version)
        logger.debug("Loaded protection registry %s (%d entries)", version, len(registry))
        return registry

    def __len__(self) -> int:
        return len(self._exact) + len(self._globs)

    @property
    def categories(self) -> Dict[str, Tuple[str, ...]]:
        return dict(self._categories)

    def category_of(self, name: str) -> Optional[str]:
        """Return the category protecting ``name``, or None."""
        if name in self._exact:
            return self._exact[name]
        for pattern, category in self._globs:
            if fnmatch.fnmatchcase(name, pattern):
                return category
        return None

    def reason_for(self, name: str) -> Optional[str]:
        category = self.category_of(name)
        return category.replace('_', ' ') if category else None

    def is_protected(self, name: str) -> bool:
        return self.category_of(name) is not None

    def derive(self, extra: Iterable[str]) -> "ProtectionRegistry":
        """Return a run-scoped copy with ``extra`` added under 'project'."""
        extra = [name for name in extra if name]
        if not extra:
            return self
        categories = {k: list(v) for k, v in self._categories.items()}
        categories.setdefault(PROJECT_CATEGORY, []).extend(extra)
        return ProtectionRegistry(categories, version=self.version)


@dataclass(frozen=True)
class FrameworkRule:
    """A framework core and the names that count as its usage."""
    core: str
    family: Tuple[str, ...] = ()
    config_files: Tuple[str, ...] = ()


class FrameworkRegistry:
    """Framework cores, their naming families and their config file names."""

    def __init__(self, rules: Iterable[FrameworkRule], version: str = ""):
        self.version = version
        self._rules: Dict[str, FrameworkRule] = {rule.core: rule for rule in rules}

    @classmethod
    def from_file(cls, path: Path) -> "FrameworkRegistry":
        version, frameworks = _read_rules(path, "frameworks")
        rules = []
        for core, spec in frameworks.items():
            if not isinstance(spec, dict):
                raise RegistryLoadError(f"Framework '{core}' in {path} must be an object")
            rules.append(FrameworkRule(
                core=core,
                family=tuple(spec.get("family", [])),
                config_files=tuple(spec.get("config_files", [])),
            ))
        return cls(rules, version=version)

    def __contains__(self, core: str) -> bool:
        return core in self._rules

    def get(self, core: str) -> Optional[FrameworkRule]:
        return self._rules.get(core)

    def family_of(self, core: str) -> Tuple[str, ...]:
        rule = self._rules.get(core)
        return rule.family if rule else ()

    def tools_for_config_file(self, basename: str) -> List[str]:
        """Cores whose config file naming matches ``basename``."""
        return sorted(
            core for core, rule in self._rules.items()
            if any(fnmatch.fnmatchcase(basename, pattern) for pattern in rule.config_files)
        )


_lock = threading.Lock()
_protection_registry: Optional[ProtectionRegistry] = None
_framework_registry: Optional[FrameworkRegistry] = None


def get_protection_registry() -> ProtectionRegistry:
    """Get or load the process-wide protection registry.

    Raises:
        RegistryLoadError: If the bundled rules cannot be loaded
    """
    global _protection_registry
    with _lock:
        if _protection_registry is None:
            _protection_registry = ProtectionRegistry.from_file(RULES_DIR / "protected.json")
        return _protection_registry


def get_framework_registry() -> FrameworkRegistry:
    """Get or load the process-wide framework registry."""
    global _framework_registry
    with _lock:
        if _framework_registry is None:
            _framework_registry = FrameworkRegistry.from_file(RULES_DIR / "frameworks.json")
        return _framework_registry
