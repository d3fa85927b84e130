"""Shared fixtures: throwaway npm projects written under tmp_path."""
import json
from pathlib import Path

import pytest

from depsweep.analyzer.cache import UsageCache
from depsweep.analyzer.engine import AnalysisOptions, UsageEngine

FIXTURES_DIR = Path(__file__).parent / 'fixtures'


def write_project(root: Path, manifest: dict, files: dict = None) -> Path:
    """Write package.json plus ``files`` (relative path -> text or bytes)."""
    root.mkdir(parents=True, exist_ok=True)
    (root / 'package.json').write_text(json.dumps(manifest, indent=2), encoding='utf-8')
    for rel_path, content in (files or {}).items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding='utf-8')
    return root


@pytest.fixture
def make_project(tmp_path):
    """Factory writing a project into a fresh directory under tmp_path."""
    counter = {'n': 0}

    def factory(manifest: dict, files: dict = None, name: str = None) -> Path:
        counter['n'] += 1
        return write_project(tmp_path / (name or f"project{counter['n']}"), manifest, files)

    return factory


@pytest.fixture
def analyze():
    """Run the engine with a private in-memory cache and a small pool."""
    def run(path, cache=None, **options):
        options.setdefault('max_workers', 2)
        with UsageEngine(AnalysisOptions(**options), cache=cache if cache is not None else UsageCache()) as engine:
            return engine.analyze(path)

    return run
