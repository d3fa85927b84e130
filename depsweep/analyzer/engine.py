"""Dependency usage resolution: orchestration and aggregation.

Phases:
1. Load the manifest (and workspace members)
2. Scan for source and config candidates
3. Map: extract each file in the worker pool (pure, cached by fingerprint)
4. Reduce: fold the per-file results into the usage map, single-threaded
5. Classify every declared dependency
"""
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from depsweep.config import get_config
from depsweep.errors import ConfigParseError
from .cache import UsageCache, fingerprint
from .classifier import ProtectionClassifier
from .config_parser import ConfigParser
from .coordinator import ConcurrencyCoordinator, MemoryMonitor
from .extractor import ImportExtractor, failed_extraction
from .manifest import MANIFEST_NAME, ProjectManifest, load_manifest
from .models import (
    PARSE_FAILURE,
    WORKSPACE_CROSS_REFERENCE,
    AnalysisReport,
    Dependency,
    Diagnostic,
    FileExtraction,
    IndeterminateReference,
    SourceFile,
    UsageRecord,
    VerdictRecord,
    dependency_sort_key,
)
from .parser import prepare_source
from .patterns import PatternMatcher
from .registry import (
    FrameworkRegistry,
    ProtectionRegistry,
    get_framework_registry,
    get_protection_registry,
)
from .scanner import ScanCandidate, SourceScanner
from .workspace import WorkspaceGraph

logger = logging.getLogger(__name__)

SOURCE_TASK = "source"
CONFIG_TASK = "config"


@dataclass(frozen=True)
class AnalysisOptions:
    """Run-scoped knobs. None means "use the environment configuration"."""
    aggressive: bool = False
    safe_list: Tuple[str, ...] = ()
    ignore_patterns: Tuple[str, ...] = ()
    max_workers: Optional[int] = None
    cache_dir: Optional[Path] = None
    memory_limit_mb: Optional[int] = None
    max_file_bytes: Optional[int] = None


@dataclass(frozen=True)
class FileResult:
    """Everything one worker task learned about one file."""
    rel_path: str
    source: Optional[SourceFile] = None
    records: Tuple[UsageRecord, ...] = ()
    markers: Tuple[IndeterminateReference, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()


@dataclass
class ProjectEvidence:
    """Merged evidence for one project root."""
    records: List[UsageRecord] = field(default_factory=list)
    markers: List[IndeterminateReference] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    files_scanned: int = 0

    def records_by_dependency(self) -> Dict[str, List[UsageRecord]]:
        grouped: Dict[str, List[UsageRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.dependency_name, []).append(record)
        return grouped


def merge_results(results: Iterable[FileResult], evidence: Optional[ProjectEvidence] = None) -> ProjectEvidence:
    """Fold worker results, in order, into deduplicated evidence.

    Records are unique per (dependency, file, kind); the first occurrence
    is kept.
    """
    evidence = evidence or ProjectEvidence()
    seen = {record.key for record in evidence.records}
    for result in results:
        for record in result.records:
            if record.key not in seen:
                seen.add(record.key)
                evidence.records.append(record)
        evidence.markers.extend(result.markers)
        evidence.diagnostics.extend(result.diagnostics)
    return evidence


def aggregate(manifest: ProjectManifest, records: Iterable[UsageRecord]) -> Dict[str, Dependency]:
    """Build Dependency objects for a manifest from direct usage records."""
    dependencies = {
        name: Dependency(
            name=name,
            manifest_path=str(manifest.path),
            category=category,
            version_range=version_range,
        )
        for name, category, version_range in manifest.declared()
    }
    for record in records:
        dependency = dependencies.get(record.dependency_name)
        if dependency is None:
            continue
        dependency.usage_count += 1
        dependency.used_in_files.add(record.file_path)
        dependency.evidence_kinds.add(record.kind)
    return dependencies


def _marker_diagnostic(marker: IndeterminateReference) -> Diagnostic:
    if marker.kind == PARSE_FAILURE:
        return Diagnostic('parseFailure', marker.file_path, marker.expression, marker.line)
    message = f"unresolved {marker.kind} specifier: {marker.expression}"
    if marker.static_prefix:
        message += f" (prefix '{marker.static_prefix}')"
    return Diagnostic('indeterminate', marker.file_path, message, marker.line)


def _diagnostic_key(diagnostic: Diagnostic):
    return (diagnostic.file_path, diagnostic.line or 0, diagnostic.kind, diagnostic.message)


class UsageEngine:
    """Resolves which declared dependencies a project actually uses."""

    def __init__(
        self,
        options: Optional[AnalysisOptions] = None,
        registry: Optional[ProtectionRegistry] = None,
        frameworks: Optional[FrameworkRegistry] = None,
        cache: Optional[UsageCache] = None,
    ):
        """Initialize the engine.

        Args:
            options: Run options; unset fields fall back to get_config()
            registry: Protection registry (defaults to the bundled one)
            frameworks: Framework registry (defaults to the bundled one)
            cache: Usage cache to share across runs

        Raises:
            RegistryLoadError: If a bundled registry cannot be loaded
        """
        self.options = options or AnalysisOptions()
        config = get_config()
        self.registry = registry if registry is not None else get_protection_registry()
        self.frameworks = frameworks if frameworks is not None else get_framework_registry()

        self.max_workers = self.options.max_workers or config.max_workers
        self.max_file_bytes = self.options.max_file_bytes or config.max_file_bytes
        memory_limit = self.options.memory_limit_mb or config.memory_limit_mb

        self._owns_cache = cache is None
        self.cache = cache if cache is not None else UsageCache(self.options.cache_dir or config.cache_dir)
        self.coordinator = ConcurrencyCoordinator(self.max_workers, MemoryMonitor(memory_limit))
        self.extractor = ImportExtractor()

    def close(self):
        if self._owns_cache:
            self.cache.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def analyze(self, path: str | Path) -> AnalysisReport:
        """Analyze the project whose package.json is at (or in) ``path``.

        Raises:
            ManifestError: If the manifest is missing or malformed, or the
                project root is unreadable
        """
        manifest = load_manifest(path)
        registry = self.registry.derive(manifest.protected_extra)
        classifier = ProtectionClassifier(
            registry, safe_list=self.options.safe_list, aggressive=self.options.aggressive)
        logger.info("Analyzing %s (%d dependencies, %d workspace members)",
                    manifest.path, len(manifest.declared()), len(manifest.members))

        root_names = manifest.declared_names()
        root_evidence = self._collect(manifest, root_names, exclude_dirs=[m.root for m in manifest.members])

        graph = WorkspaceGraph()
        member_reports = []
        member_markers: List[IndeterminateReference] = []
        for member in manifest.members:
            rel_dir = member.root.relative_to(manifest.root).as_posix()
            member_names = member.declared_names()
            evidence = self._collect(member, sorted(set(member_names) | set(root_names)))
            member_markers.extend(
                dataclasses.replace(m, file_path=f"{rel_dir}/{m.file_path}") for m in evidence.markers)

            graph.add_member(member.name, rel_dir, member_names)
            for dep, records in evidence.records_by_dependency().items():
                graph.add_usage(member.name, dep, (f"{rel_dir}/{r.file_path}" for r in records))

            member_reports.append(self._report(member, evidence, classifier))

        cross_references = graph.cross_references(root_names)
        report = self._report(
            manifest,
            root_evidence,
            classifier,
            cross_references=cross_references,
            extra_markers=member_markers,
        )
        report.members = member_reports
        return report

    def _report(
        self,
        manifest: ProjectManifest,
        evidence: ProjectEvidence,
        classifier: ProtectionClassifier,
        cross_references: Optional[Dict[str, List[str]]] = None,
        extra_markers: Sequence[IndeterminateReference] = (),
    ) -> AnalysisReport:
        dependencies = aggregate(manifest, evidence.records)
        cross_references = cross_references or {}
        for name in cross_references:
            if name in dependencies:
                dependencies[name].evidence_kinds.add(WORKSPACE_CROSS_REFERENCE)

        matcher = PatternMatcher(dependencies, self.frameworks, manifest.bin_names())
        classifier.classify(
            dependencies,
            cross_references=cross_references,
            requirements=manifest.requirements(),
            markers=[*evidence.markers, *extra_markers],
            matcher=matcher,
        )

        verdicts = [
            VerdictRecord.from_dependency(dependencies[name])
            for name in sorted(dependencies, key=dependency_sort_key)
        ]
        return AnalysisReport(
            package_name=manifest.name,
            manifest_path=str(manifest.path),
            verdicts=verdicts,
            diagnostics=sorted(evidence.diagnostics, key=_diagnostic_key),
            files_scanned=evidence.files_scanned,
        )

    def _collect(self, manifest: ProjectManifest, names: Sequence[str],
                 exclude_dirs: Iterable[Path] = ()) -> ProjectEvidence:
        """Scan one project root and merge the evidence for ``names``."""
        scan = SourceScanner(
            manifest.root,
            ignore_patterns=self.options.ignore_patterns,
            exclude_dirs=exclude_dirs,
            max_file_bytes=self.max_file_bytes,
        ).scan()
        matcher = PatternMatcher(names, self.frameworks, manifest.bin_names())
        config_parser = ConfigParser(matcher, self.frameworks)

        tasks = [(SOURCE_TASK, c) for c in scan.sources]
        tasks.extend(
            (CONFIG_TASK, c) for c in scan.configs
            if c.path.resolve() != manifest.path
        )

        def run(task):
            task_kind, candidate = task
            if task_kind == SOURCE_TASK:
                return self._process_source(candidate, matcher)
            return self._process_config(candidate, config_parser)

        def recover(task, error: Exception) -> FileResult:
            _, candidate = task
            logger.warning("Failed to analyze %s: %s", candidate.rel_path, error)
            return self._failed_result(candidate, f"internal error: {error}")

        results = self.coordinator.map(run, tasks, on_error=recover)

        evidence = ProjectEvidence(diagnostics=list(scan.diagnostics), files_scanned=len(scan.sources))
        manifest_records = config_parser.parse_manifest_data(manifest.raw, MANIFEST_NAME)
        merge_results([FileResult(MANIFEST_NAME, records=tuple(manifest_records))], evidence)
        merge_results(results, evidence)
        logger.info("Scanned %s: %d sources, %d configs, %d usage records",
                    manifest.root, len(scan.sources), len(scan.configs), len(evidence.records))
        return evidence

    def _extraction_for(self, candidate: ScanCandidate) -> Tuple[Optional[SourceFile], FileExtraction]:
        try:
            raw = candidate.path.read_bytes()
        except (IOError, OSError) as e:
            return None, failed_extraction(f"unreadable: {e.strerror or e}", "")

        file_fingerprint = fingerprint(raw)
        try:
            source, dialect = prepare_source(candidate.path, raw)
        except UnicodeDecodeError:
            extraction = failed_extraction("not valid UTF-8", raw.decode('utf-8', errors='replace'))
            dialect = candidate.dialect
        else:
            key = f"{dialect}:{fingerprint(source)}"
            extraction = self.cache.get(key)
            if extraction is None:
                extraction = self.extractor.extract(source, dialect)
                self.cache.put(key, extraction)

        return SourceFile(
            path=candidate.path,
            rel_path=candidate.rel_path,
            fingerprint=file_fingerprint,
            dialect=dialect,
            outcome=extraction.outcome,
        ), extraction

    def _process_source(self, candidate: ScanCandidate, matcher: PatternMatcher) -> FileResult:
        source_file, extraction = self._extraction_for(candidate)
        return self._to_result(candidate, source_file, extraction, matcher)

    def _to_result(self, candidate: ScanCandidate, source_file: Optional[SourceFile],
                   extraction: FileExtraction, matcher: Optional[PatternMatcher]) -> FileResult:
        records = []
        if matcher is not None:
            for reference in extraction:
                for dep, how in matcher.match_specifier(reference.specifier):
                    records.append(UsageRecord(
                        dependency_name=dep,
                        file_path=candidate.rel_path,
                        kind=reference.kind,
                        line=reference.line,
                        specifier=reference.specifier,
                        matched_by=how,
                    ))

        markers = tuple(
            dataclasses.replace(marker, file_path=candidate.rel_path)
            for marker in extraction.markers
        )
        return FileResult(
            rel_path=candidate.rel_path,
            source=source_file,
            records=tuple(records),
            markers=markers,
            diagnostics=tuple(_marker_diagnostic(m) for m in markers),
        )

    def _process_config(self, candidate: ScanCandidate, config_parser: ConfigParser) -> FileResult:
        try:
            records = config_parser.parse_config_file(candidate.path, candidate.rel_path)
        except ConfigParseError as e:
            logger.debug("Config parse error: %s", e)
            return FileResult(
                rel_path=candidate.rel_path,
                diagnostics=(Diagnostic('configParseError', candidate.rel_path, e.reason),),
            )
        return FileResult(rel_path=candidate.rel_path, records=tuple(records))

    def _failed_result(self, candidate: ScanCandidate, reason: str) -> FileResult:
        try:
            text = candidate.path.read_text(encoding='utf-8', errors='replace')
        except (IOError, OSError):
            text = ""
        return self._to_result(candidate, None, failed_extraction(reason, text), None)


def analyze_project(
    path: str | Path,
    aggressive: bool = False,
    safe_list: Iterable[str] = (),
    ignore_patterns: Iterable[str] = (),
    max_workers: Optional[int] = None,
    cache: Optional[UsageCache] = None,
    cache_dir: Optional[Path] = None,
) -> AnalysisReport:
    """Analyze one project and return its report.

    Args:
        path: package.json or the directory holding it
        aggressive: Judge protected dependencies on evidence alone
        safe_list: Names or globs that must never be reported unused
        ignore_patterns: Extra gitignore-style patterns
        max_workers: Worker pool size (defaults to DEPSWEEP_MAX_WORKERS)
        cache: Usage cache to reuse across calls
        cache_dir: Directory for a persistent cache when ``cache`` is not given

    Returns:
        AnalysisReport with one verdict per declared dependency
    """
    options = AnalysisOptions(
        aggressive=aggressive,
        safe_list=tuple(safe_list),
        ignore_patterns=tuple(ignore_patterns),
        max_workers=max_workers,
        cache_dir=cache_dir,
    )
    with UsageEngine(options, cache=cache) as engine:
        return engine.analyze(path)
