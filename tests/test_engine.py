"""End-to-end tests for the usage resolution engine.

Each test writes a small npm project and checks the verdict for every
declared dependency, the evidence behind it, and the diagnostics.
"""

import json

import pytest

from depsweep.analyzer.cache import UsageCache
from depsweep.analyzer.engine import AnalysisOptions, UsageEngine, analyze_project
from depsweep.analyzer.models import (
    CONFIG_REFERENCE,
    DYNAMIC_IMPORT,
    INDETERMINATE,
    PACKAGE_REQUIREMENT,
    PROTECTED,
    REQUIRE_CALL,
    SCRIPT_REFERENCE,
    UNUSED,
    USED,
    WORKSPACE_CROSS_REFERENCE,
)
from depsweep.analyzer.registry import ProtectionRegistry
from depsweep.errors import ManifestError

from conftest import FIXTURES_DIR


class TestScenarios:
    """The reference scenarios for the engine."""

    def test_require_marks_only_lodash_used(self, make_project, analyze):
        """Scenario A: only lodash is referenced."""
        project = make_project(
            {'name': 'a', 'dependencies': {'lodash': '^4.17.21', 'react': '^18.2.0', 'unused-package': '1.0.0'}},
            {'index.js': "const _ = require('lodash');\n"},
        )
        report = analyze(project)

        assert {v.name: v.verdict for v in report.verdicts} == {
            'lodash': USED, 'react': UNUSED, 'unused-package': UNUSED}
        lodash = report.by_name()['lodash']
        assert lodash.usage_count == 1
        assert lodash.used_in_files == ('index.js',)
        assert lodash.evidence_kinds == (REQUIRE_CALL,)

    def test_dynamic_import_then(self, make_project, analyze):
        """Scenario B: import('axios').then(fn) counts as usage."""
        project = make_project(
            {'name': 'b', 'dependencies': {'axios': '^1.6.0'}},
            {'src/api.js': "import('axios').then(fn);\n"},
        )
        axios = analyze(project).by_name()['axios']

        assert axios.verdict == USED
        assert axios.evidence_kinds == (DYNAMIC_IMPORT,)

    def test_typescript_protected(self, make_project, analyze):
        """Scenario C: an unreferenced typescript is protected, not unused."""
        project = make_project(
            {'name': 'c', 'devDependencies': {'typescript': '^5.4.0'}},
            {'src/index.js': "export const x = 1;\n"},
        )
        report = analyze(project)

        assert report.verdict_of('typescript') == PROTECTED
        assert report.by_name()['typescript'].protection_reason == 'build tools'
        assert report.names_with(UNUSED) == []

    def test_workspace_cross_reference(self, analyze):
        """Scenario D: the root's shared-lib is used by its members."""
        report = analyze(FIXTURES_DIR / 'monorepo')

        shared = report.by_name()['shared-lib']
        assert shared.verdict == USED
        assert shared.usage_count == 0
        assert shared.evidence_kinds == (WORKSPACE_CROSS_REFERENCE,)
        assert report.verdict_of('left-pad') == UNUSED
        assert report.verdict_of('typescript') == PROTECTED

        members = {m.package_name: m for m in report.members}
        assert set(members) == {'@acme/app', '@acme/lib'}
        assert members['@acme/app'].verdict_of('react') == USED
        assert members['@acme/app'].verdict_of('moment') == UNUSED
        assert members['@acme/lib'].verdict_of('chalk') == USED
        assert members['@acme/app'].verdict_of('shared-lib') is None

    def test_variable_import_is_indeterminate(self, make_project, analyze):
        """Scenario E: import(pkgNameVariable) blocks unused verdicts."""
        project = make_project(
            {'name': 'e', 'dependencies': {'lodash': '^4.17.21', 'moment': '^2.29.4'},
             'devDependencies': {'typescript': '^5.4.0'}},
            {'src/loader.js': "export async function load(pkgName) {\n  return import(pkgName);\n}\n"},
        )
        report = analyze(project)

        assert report.names_with(UNUSED) == []
        assert report.verdict_of('lodash') == INDETERMINATE
        assert report.verdict_of('moment') == INDETERMINATE
        assert report.verdict_of('typescript') == PROTECTED
        assert [(d.kind, d.file_path, d.line) for d in report.diagnostics] == [
            ('indeterminate', 'src/loader.js', 2)]


class TestDeterminism:
    """Test idempotence and independence from scheduling."""

    @pytest.fixture
    def project(self, make_project):
        files = {f'src/module{i}.js': f"import x{i} from 'lodash/get';\nexport default x{i};\n" for i in range(12)}
        files.update({
            'src/app.ts': "import type { Moment } from 'moment';\nimport express from 'express';\n",
            'src/lazy.js': "const locale = require('dayjs/locale/' + lang);\n",
            '.eslintrc.json': '{"plugins": ["react"]}',
        })
        return make_project({
            'name': 'determinism',
            'dependencies': {'lodash': '4', 'moment': '2', 'express': '4', 'dayjs': '1', 'zod': '3'},
            'devDependencies': {'eslint-plugin-react': '7', '@babel/core': '7'},
        }, files)

    def test_idempotent_json(self, project, analyze):
        assert analyze(project).to_json() == analyze(project).to_json()

    def test_worker_count_independent(self, project, analyze):
        single = analyze(project, max_workers=1)
        many = analyze(project, max_workers=8)

        assert single.to_json() == many.to_json()
        assert single.by_name()['lodash'].usage_count == 12

    def test_verdicts(self, project, analyze):
        report = analyze(project)

        assert {v.name: v.verdict for v in report.verdicts} == {
            'lodash': USED,
            'moment': USED,
            'express': USED,
            'dayjs': INDETERMINATE,
            'zod': UNUSED,
            'eslint-plugin-react': USED,
            '@babel/core': PROTECTED,
        }
        assert report.by_name()['eslint-plugin-react'].evidence_kinds == (CONFIG_REFERENCE,)

    def test_scope_insensitive_order(self, project, analyze):
        names = [v.name for v in analyze(project).verdicts]
        assert names == ['@babel/core', 'dayjs', 'eslint-plugin-react', 'express', 'lodash', 'moment', 'zod']

    def test_report_json_shape(self, project, analyze):
        data = json.loads(analyze(project).to_json())

        assert data['package'] == 'determinism'
        assert data['filesScanned'] == 14
        assert set(data['verdicts'][0]) == {
            'name', 'verdict', 'usageCount', 'usedInFiles', 'evidenceKinds',
            'category', 'protectionReason', 'requiredBy',
        }

    def test_monotonic(self, make_project, analyze):
        """Adding a file never turns a used dependency unused."""
        manifest = {'name': 'm', 'dependencies': {'lodash': '4', 'zod': '3'}}
        before = analyze(make_project(manifest, {'a.js': "import 'lodash';\n"}))
        after = analyze(make_project(manifest, {'a.js': "import 'lodash';\n", 'b.js': "import 'zod';\n"}))

        assert before.verdict_of('lodash') == after.verdict_of('lodash') == USED
        assert (before.verdict_of('zod'), after.verdict_of('zod')) == (UNUSED, USED)


class TestOptions:
    """Test aggressive mode, safe lists and project protection."""

    def test_aggressive(self, make_project, analyze):
        project = make_project({'name': 'x', 'devDependencies': {'typescript': '5', 'jest': '29'}},
                               {'package-lock.json': '{}'})
        report = analyze(project, aggressive=True)
        assert report.names_with(UNUSED) == ['jest', 'typescript']

    def test_safe_list_glob(self, make_project, analyze):
        project = make_project({'name': 'x', 'dependencies': {'@company/ui': '1', 'left-pad': '1'}})
        report = analyze(project, safe_list=('@company/*',))

        assert report.verdict_of('@company/ui') == PROTECTED
        assert report.by_name()['@company/ui'].protection_reason == 'safe list'
        assert report.verdict_of('left-pad') == UNUSED

    def test_project_protection(self, make_project, analyze):
        project = make_project({
            'name': 'x',
            'dependencies': {'polyfill-intl': '1'},
            'depsweep': {'protected': ['polyfill-*']},
        })
        record = analyze(project).by_name()['polyfill-intl']
        assert (record.verdict, record.protection_reason) == (PROTECTED, 'project')

    def test_ignore_patterns(self, make_project, analyze):
        project = make_project({'name': 'x', 'dependencies': {'jquery': '3'}},
                               {'legacy/old.js': "require('jquery');\n"})

        assert analyze(project).verdict_of('jquery') == USED
        assert analyze(project, ignore_patterns=('legacy/',)).verdict_of('jquery') == UNUSED


class TestEvidenceSources:
    """Test evidence that does not come from import statements."""

    def test_scripts(self, make_project, analyze):
        project = make_project({'name': 'x', 'scripts': {'start': 'serve -s build'}, 'dependencies': {'serve': '14'}})
        serve = analyze(project).by_name()['serve']

        assert serve.verdict == USED
        assert serve.evidence_kinds == (SCRIPT_REFERENCE,)
        assert serve.used_in_files == ('package.json',)

    def test_package_requirement(self, make_project, analyze):
        project = make_project(
            {'name': 'x', 'dependencies': {'react-dom': '18', 'scheduler': '0.23'}},
            {
                'src/index.js': "import { createRoot } from 'react-dom/client';\n",
                'node_modules/react-dom/package.json': json.dumps(
                    {'name': 'react-dom', 'dependencies': {'scheduler': '^0.23.0'}}),
            },
        )
        scheduler = analyze(project).by_name()['scheduler']

        assert scheduler.verdict == USED
        assert scheduler.evidence_kinds == (PACKAGE_REQUIREMENT,)
        assert scheduler.required_by == ('react-dom',)

    def test_family_scoped_to_core(self, make_project, analyze):
        """react-router-dom credits the react core, never react-router."""
        project = make_project(
            {'name': 'x', 'dependencies': {'react': '18', 'react-router': '6'}},
            {'src/index.js': "import { BrowserRouter } from 'react-router-dom';\n"},
        )
        report = analyze(project)

        assert report.verdict_of('react') == USED
        assert report.verdict_of('react-router') == UNUSED

    def test_vue_component(self, make_project, analyze):
        project = make_project(
            {'name': 'x', 'dependencies': {'pinia': '2'}},
            {'src/App.vue': '<template><div/></template>\n<script setup>\nimport { defineStore } from "pinia";\n</script>\n'},
        )
        assert analyze(project).verdict_of('pinia') == USED


class TestFailures:
    """Test recovery from per-file problems and fatal errors."""

    def test_parse_failure(self, make_project, analyze):
        project = make_project(
            {'name': 'x', 'dependencies': {'moment': '2', 'lodash': '4'}},
            {'src/broken.js': "import { from 'moment';\nconst = ;\n"},
        )
        report = analyze(project)

        assert report.verdict_of('moment') == INDETERMINATE
        assert report.verdict_of('lodash') == UNUSED
        assert [(d.kind, d.file_path) for d in report.diagnostics] == [('parseFailure', 'src/broken.js')]

    def test_malformed_config(self, make_project, analyze):
        project = make_project(
            {'name': 'x', 'dependencies': {'lodash': '4'}},
            {'.babelrc': '{"presets": [', 'index.js': "import 'lodash';\n"},
        )
        report = analyze(project)

        assert report.verdict_of('lodash') == USED
        assert [(d.kind, d.file_path) for d in report.diagnostics] == [('configParseError', '.babelrc')]

    def test_oversized_file(self, make_project, analyze):
        project = make_project(
            {'name': 'x', 'dependencies': {'lodash': '4'}},
            {'bundle.js': "import 'lodash';\n" + "// padding\n" * 100},
        )
        report = analyze(project, max_file_bytes=200)

        assert report.verdict_of('lodash') == UNUSED
        assert [d.kind for d in report.diagnostics] == ['skipped']

    def test_missing_manifest(self, tmp_path, analyze):
        with pytest.raises(ManifestError):
            analyze(tmp_path)

    def test_malformed_manifest(self, tmp_path, analyze):
        (tmp_path / 'package.json').write_text('{"dependencies": ', encoding='utf-8')
        with pytest.raises(ManifestError):
            analyze(tmp_path)


class TestCacheReuse:
    """Test the shared usage cache across runs."""

    def test_identical_files_share_an_entry(self, make_project, analyze):
        cache = UsageCache()
        project = make_project(
            {'name': 'x', 'dependencies': {'lodash': '4'}},
            {'a.js': "import 'lodash';\n", 'b.js': "import 'lodash';\n"},
        )
        first = analyze(project, cache=cache)
        assert len(cache) == 1

        second = analyze(project, cache=cache)
        assert cache.stats()['hits'] >= 2
        assert first.to_json() == second.to_json()
        assert second.by_name()['lodash'].used_in_files == ('a.js', 'b.js')

    def test_empty_cache_is_filled_not_replaced(self, make_project):
        """Identical sources are parsed once, into the cache the caller passed."""
        cache = UsageCache()
        project = make_project(
            {'name': 'x', 'dependencies': {'lodash': '4'}},
            {'a.js': "import 'lodash';\n", 'b.js': "import 'lodash';\n"},
        )

        with UsageEngine(AnalysisOptions(max_workers=1), cache=cache) as engine:
            assert engine.cache is cache
            report = engine.analyze(project)

        assert len(cache) == 1
        assert cache.stats()['misses'] == 1
        assert cache.stats()['hits'] == 1
        assert report.by_name()['lodash'].verdict == USED

    def test_persistent_cache(self, make_project, tmp_path):
        project = make_project({'name': 'x', 'dependencies': {'lodash': '4'}}, {'a.js': "import 'lodash';\n"})
        cache_dir = tmp_path / 'cache'

        first = analyze_project(project, max_workers=2, cache_dir=cache_dir)
        with UsageCache(cache_dir) as cache:
            assert cache.stats()['entries'] == 1
        second = analyze_project(project, max_workers=2, cache_dir=cache_dir)

        assert first.to_json() == second.to_json()


class TestCustomRegistries:
    """Test registries passed to the engine by the caller."""

    def test_empty_protection_registry_is_honored(self, make_project):
        project = make_project({'name': 'x', 'devDependencies': {'typescript': '^5.0.0'}}, {'index.js': "\n"})

        with UsageEngine(AnalysisOptions(max_workers=1), registry=ProtectionRegistry({}),
                         cache=UsageCache()) as engine:
            report = engine.analyze(project)

        assert report.by_name()['typescript'].verdict == UNUSED

    def test_custom_protection_registry(self, make_project):
        project = make_project(
            {'name': 'x', 'dependencies': {'left-pad': '1.0.0', 'typescript': '^5.0.0'}},
            {'index.js': "\n"},
        )
        registry = ProtectionRegistry({'house_rules': ['left-pad']})

        with UsageEngine(AnalysisOptions(max_workers=1), registry=registry, cache=UsageCache()) as engine:
            verdicts = engine.analyze(project).by_name()

        assert verdicts['left-pad'].verdict == PROTECTED
        assert verdicts['typescript'].verdict == UNUSED
