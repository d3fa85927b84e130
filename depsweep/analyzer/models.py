"""Shared data model for the usage resolution engine."""
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

# Reference kinds
STATIC_IMPORT = "staticImport"
REQUIRE_CALL = "requireCall"
DYNAMIC_IMPORT = "dynamicImport"
TYPE_ONLY_IMPORT = "typeOnlyImport"
CONFIG_REFERENCE = "configReference"
SCRIPT_REFERENCE = "scriptReference"
WORKSPACE_CROSS_REFERENCE = "workspaceCrossReference"
PACKAGE_REQUIREMENT = "packageRequirement"

AST_REFERENCE_KINDS = (STATIC_IMPORT, REQUIRE_CALL, DYNAMIC_IMPORT, TYPE_ONLY_IMPORT)

# Verdicts
USED = "used"
UNUSED = "unused"
PROTECTED = "protected"
INDETERMINATE = "indeterminate"

# Dependency categories, in declaration precedence order
RUNTIME = "runtime"
BUILD = "build"
PEER = "peer"
OPTIONAL = "optional"

CATEGORY_SECTIONS = (
    (RUNTIME, "dependencies"),
    (BUILD, "devDependencies"),
    (PEER, "peerDependencies"),
    (OPTIONAL, "optionalDependencies"),
)

# Dialects
JS = "js"
JSX = "jsx"
TS = "ts"
TSX = "tsx"

# Indeterminate marker kinds
DYNAMIC_REQUIRE = "dynamicRequire"
PARSE_FAILURE = "parseFailure"


def dependency_sort_key(name: str) -> Tuple[str, str]:
    """Sort scoped and unscoped names together, ignoring the leading '@'."""
    return (name.lstrip("@").casefold(), name)


@dataclass(frozen=True)
class ImportReference:
    """A module specifier found in a source file."""
    specifier: str
    kind: str
    line: int


@dataclass(frozen=True)
class IndeterminateReference:
    """A specifier that could not be resolved statically.

    Attached to a file, never to a dependency. ``static_prefix`` is the
    literal head of an interpolated template (``lodash/`` for
    ``import(`lodash/${name}`)``). ``candidates`` lists the quoted
    package-like strings of a file that failed to parse.
    """
    line: int
    kind: str
    expression: str
    static_prefix: str = ""
    candidates: Tuple[str, ...] = ()
    file_path: str = ""


@dataclass(frozen=True)
class ParseOutcome:
    ok: bool
    reason: str = ""
    line: Optional[int] = None


PARSE_OK = ParseOutcome(ok=True)


@dataclass(frozen=True)
class FileExtraction:
    """Everything the extractor learned from one file's content.

    Path-agnostic so it can be cached by content fingerprint. Iterating
    yields the import references and can be repeated.
    """
    references: Tuple[ImportReference, ...] = ()
    markers: Tuple[IndeterminateReference, ...] = ()
    outcome: ParseOutcome = PARSE_OK

    def __iter__(self) -> Iterator[ImportReference]:
        return iter(self.references)

    def to_dict(self) -> dict:
        return {
            "references": [[r.specifier, r.kind, r.line] for r in self.references],
            "markers": [
                {
                    "line": m.line,
                    "kind": m.kind,
                    "expression": m.expression,
                    "static_prefix": m.static_prefix,
                    "candidates": list(m.candidates),
                }
                for m in self.markers
            ],
            "outcome": {
                "ok": self.outcome.ok,
                "reason": self.outcome.reason,
                "line": self.outcome.line,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileExtraction":
        outcome = data.get("outcome", {})
        return cls(
            references=tuple(
                ImportReference(specifier=s, kind=k, line=l)
                for s, k, l in data.get("references", [])
            ),
            markers=tuple(
                IndeterminateReference(
                    line=m["line"],
                    kind=m["kind"],
                    expression=m["expression"],
                    static_prefix=m.get("static_prefix", ""),
                    candidates=tuple(m.get("candidates", ())),
                )
                for m in data.get("markers", [])
            ),
            outcome=ParseOutcome(
                ok=outcome.get("ok", True),
                reason=outcome.get("reason", ""),
                line=outcome.get("line"),
            ),
        )


@dataclass(frozen=True)
class SourceFile:
    path: Path
    rel_path: str
    fingerprint: str
    dialect: str
    outcome: ParseOutcome = PARSE_OK


@dataclass(frozen=True)
class UsageRecord:
    """One piece of evidence that a dependency is used."""
    dependency_name: str
    file_path: str
    kind: str
    line: Optional[int] = None
    specifier: Optional[str] = None
    matched_by: Optional[str] = None  # 'literal', 'subpath', 'types', 'family', 'convention', 'bin'

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.dependency_name, self.file_path, self.kind)


@dataclass(frozen=True)
class Diagnostic:
    kind: str  # 'parseFailure', 'configParseError', 'unreadable', 'indeterminate'
    file_path: str
    message: str
    line: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "file": self.file_path,
            "line": self.line,
            "message": self.message,
        }


@dataclass
class Dependency:
    """A declared dependency and the evidence gathered for it."""
    name: str
    manifest_path: str
    category: str
    version_range: str = ""
    is_protected: bool = False
    is_safe: bool = False
    protection_reason: Optional[str] = None
    usage_count: int = 0
    used_in_files: Set[str] = field(default_factory=set)
    evidence_kinds: Set[str] = field(default_factory=set)
    required_by: Set[str] = field(default_factory=set)
    verdict: Optional[str] = None


@dataclass(frozen=True)
class VerdictRecord:
    name: str
    verdict: str
    usage_count: int
    used_in_files: Tuple[str, ...]
    evidence_kinds: Tuple[str, ...]
    category: str
    protection_reason: Optional[str] = None
    required_by: Tuple[str, ...] = ()

    @classmethod
    def from_dependency(cls, dependency: Dependency) -> "VerdictRecord":
        return cls(
            name=dependency.name,
            verdict=dependency.verdict or INDETERMINATE,
            usage_count=dependency.usage_count,
            used_in_files=tuple(sorted(dependency.used_in_files)),
            evidence_kinds=tuple(sorted(dependency.evidence_kinds)),
            category=dependency.category,
            protection_reason=dependency.protection_reason,
            required_by=tuple(sorted(dependency.required_by, key=dependency_sort_key)),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "verdict": self.verdict,
            "usageCount": self.usage_count,
            "usedInFiles": list(self.used_in_files),
            "evidenceKinds": list(self.evidence_kinds),
            "category": self.category,
            "protectionReason": self.protection_reason,
            "requiredBy": list(self.required_by),
        }


@dataclass
class AnalysisReport:
    """Verdicts for one manifest, plus the reports of its workspace members."""
    package_name: str
    manifest_path: str
    verdicts: List[VerdictRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    members: List["AnalysisReport"] = field(default_factory=list)
    files_scanned: int = 0

    def by_name(self) -> Dict[str, VerdictRecord]:
        return {v.name: v for v in self.verdicts}

    def verdict_of(self, name: str) -> Optional[str]:
        record = self.by_name().get(name)
        return record.verdict if record else None

    def names_with(self, verdict: str) -> List[str]:
        return [v.name for v in self.verdicts if v.verdict == verdict]

    def to_dict(self) -> dict:
        return {
            "package": self.package_name,
            "manifest": self.manifest_path,
            "filesScanned": self.files_scanned,
            "verdicts": [v.to_dict() for v in self.verdicts],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "members": [m.to_dict() for m in self.members],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)
