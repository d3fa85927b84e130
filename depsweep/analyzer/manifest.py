"""package.json loading, workspace expansion and installed-package metadata."""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from depsweep.errors import ManifestError
from .models import CATEGORY_SECTIONS

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"
REQUIREMENT_SECTIONS = ("dependencies", "peerDependencies", "optionalDependencies")


@dataclass(frozen=True)
class InstalledPackage:
    """What node_modules says about an installed dependency."""
    name: str
    bins: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProjectManifest:
    """An immutable view of one package.json."""
    path: Path
    name: str
    version: str = ""
    dependencies: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    scripts: Mapping[str, str] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)
    workspace_patterns: Tuple[str, ...] = ()
    members: Tuple["ProjectManifest", ...] = ()
    installed: Mapping[str, InstalledPackage] = field(default_factory=dict)
    protected_extra: Tuple[str, ...] = ()

    @property
    def root(self) -> Path:
        return self.path.parent

    @property
    def is_workspace_root(self) -> bool:
        return bool(self.workspace_patterns)

    def declared(self) -> List[Tuple[str, str, str]]:
        """(name, category, version range) for every declared dependency.

        A name declared in several sections keeps the first category in
        runtime, build, peer, optional order.
        """
        seen = {}
        for category, _ in CATEGORY_SECTIONS:
            for name, version_range in self.dependencies.get(category, {}).items():
                if name not in seen:
                    seen[name] = (name, category, version_range)
        return list(seen.values())

    def declared_names(self) -> List[str]:
        return [name for name, _, _ in self.declared()]

    def bin_names(self) -> Dict[str, Tuple[str, ...]]:
        return {name: pkg.bins for name, pkg in self.installed.items() if pkg.bins}

    def requirements(self) -> Dict[str, Tuple[str, ...]]:
        return {name: pkg.requires for name, pkg in self.installed.items()}


def _read_json_object(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ManifestError("package.json not found", path) from e
    except (IOError, OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Cannot read package.json: {e}", path) from e
    except json.JSONDecodeError as e:
        raise ManifestError(f"Malformed package.json: {e}", path) from e

    if not isinstance(data, dict):
        raise ManifestError(
            f"package.json must be a JSON object, got {type(data).__name__}", path)
    return data


def _dependency_map(data: Mapping[str, Any], section: str, path: Path) -> Dict[str, str]:
    value = data.get(section)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestError(f"'{section}' must be an object", path)
    return {str(name): str(version) for name, version in value.items()}


def workspace_patterns(data: Mapping[str, Any], path: Path) -> Tuple[str, ...]:
    """Normalize ``workspaces`` (a list, or ``{"packages": [...]}``)."""
    workspaces = data.get("workspaces")
    if workspaces is None:
        return ()
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages", [])
    if not isinstance(workspaces, list) or not all(isinstance(p, str) for p in workspaces):
        raise ManifestError("'workspaces' must be a list of globs or {packages: [...]}", path)
    return tuple(workspaces)


def expand_workspaces(root: Path, patterns: Tuple[str, ...]) -> List[Path]:
    """Member directories (holding a package.json) matched by the globs.

    Patterns prefixed with ``!`` exclude. Results are sorted.
    """
    included, excluded = set(), set()
    for pattern in patterns:
        target = excluded if pattern.startswith('!') else included
        pattern = pattern.lstrip('!').rstrip('/')
        if not pattern:
            continue
        for candidate in root.glob(pattern):
            if 'node_modules' in candidate.relative_to(root).parts:
                continue
            if candidate.is_dir() and (candidate / MANIFEST_NAME).is_file():
                target.add(candidate.resolve())
    root = root.resolve()
    return sorted(d for d in included - excluded if d != root)


def read_installed(root: Path, names: List[str]) -> Dict[str, InstalledPackage]:
    """Read node_modules metadata for declared dependencies.

    Looks in ``root/node_modules`` and then in every ancestor's, the way
    Node resolves hoisted packages. Missing or unreadable entries are
    skipped.
    """
    search_dirs = [d / "node_modules" for d in [root, *root.parents]]
    search_dirs = [d for d in search_dirs if d.is_dir()]
    installed = {}
    for name in names:
        for modules_dir in search_dirs:
            pkg_json = modules_dir / name / MANIFEST_NAME
            if not pkg_json.is_file():
                continue
            try:
                with open(pkg_json, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (IOError, OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.debug("Skipping unreadable %s: %s", pkg_json, e)
                break
            if isinstance(data, dict):
                installed[name] = InstalledPackage(
                    name=name,
                    bins=_bin_names(name, data.get("bin")),
                    requires=_requirements(data),
                )
            break
    return installed


def _bin_names(name: str, bin_field: Any) -> Tuple[str, ...]:
    if isinstance(bin_field, str):
        return (name.split('/')[-1],)
    if isinstance(bin_field, dict):
        return tuple(sorted(str(k) for k in bin_field))
    return ()


def _requirements(data: Mapping[str, Any]) -> Tuple[str, ...]:
    names = set()
    for section in REQUIREMENT_SECTIONS:
        value = data.get(section)
        if isinstance(value, dict):
            names.update(str(k) for k in value)
    return tuple(sorted(names))


def load_manifest(path: str | Path, load_members: bool = True) -> ProjectManifest:
    """Load a package.json (or the one in a directory).

    Args:
        path: package.json path or its directory
        load_members: Expand and load workspace members

    Returns:
        ProjectManifest

    Raises:
        ManifestError: If the manifest (or a member's) is missing or malformed
    """
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_NAME
    path = path.resolve()
    data = _read_json_object(path)

    dependencies = {
        category: _dependency_map(data, section, path)
        for category, section in CATEGORY_SECTIONS
    }

    scripts = data.get("scripts") or {}
    if not isinstance(scripts, dict):
        raise ManifestError("'scripts' must be an object", path)

    patterns = workspace_patterns(data, path)
    members: Tuple[ProjectManifest, ...] = ()
    if load_members and patterns:
        members = tuple(
            load_manifest(member_dir, load_members=False)
            for member_dir in expand_workspaces(path.parent, patterns)
        )

    protected_extra: Tuple[str, ...] = ()
    own_config = data.get("depsweep")
    if isinstance(own_config, dict) and isinstance(own_config.get("protected"), list):
        protected_extra = tuple(str(p) for p in own_config["protected"])

    names = []
    for category_map in dependencies.values():
        names.extend(n for n in category_map if n not in names)

    manifest = ProjectManifest(
        path=path,
        name=str(data.get("name") or path.parent.name),
        version=str(data.get("version") or ""),
        dependencies=dependencies,
        scripts={str(k): str(v) for k, v in scripts.items()},
        raw=data,
        workspace_patterns=patterns,
        members=members,
        installed=read_installed(path.parent, names),
        protected_extra=protected_extra,
    )
    logger.debug("Loaded %s: %d dependencies, %d members", path, len(names), len(members))
    return manifest


def find_manifest(start: str | Path) -> Path:
    """Find the package.json to analyze for a directory.

    Walks up to the nearest package.json. If an enclosing package.json
    declares workspaces that include it, that workspace root wins.

    Raises:
        ManifestError: If no package.json exists at or above ``start``
    """
    start = Path(start).resolve()
    if start.is_file():
        start = start.parent

    nearest = None
    for directory in [start, *start.parents]:
        candidate = directory / MANIFEST_NAME
        if candidate.is_file():
            nearest = candidate
            break
    if nearest is None:
        raise ManifestError("No package.json found", start)

    for directory in nearest.parent.parents:
        candidate = directory / MANIFEST_NAME
        if not candidate.is_file():
            continue
        try:
            data = _read_json_object(candidate)
            patterns = workspace_patterns(data, candidate)
        except ManifestError:
            continue
        if patterns and nearest.parent.resolve() in expand_workspaces(directory, patterns):
            logger.info("Monorepo workspace detected at %s", directory)
            return candidate.resolve()
    return nearest.resolve()
