"""Integration tests for config_parser.py.

Tests the supported configuration sources against real-world fixtures:
1. .eslintrc.json (ESLint shorthand for plugins and shareable configs)
2. babel.config.json (Babel preset/plugin shorthand)
3. jest.config.js (JS-module config, object literals and whole strings)
4. tsconfig.json (JSONC, compilerOptions.types, importHelpers)
5. .stylelintrc.yml (YAML)
6. webpack.config.js (loaders in rule `use` lists)
7. package.json scripts, tool sections and lint-staged
"""

import pytest
from pathlib import Path

from depsweep.analyzer.config_parser import (
    ConfigParser,
    expand_convention,
    strip_jsonc,
    tokenize_command,
)
from depsweep.analyzer.models import CONFIG_REFERENCE, SCRIPT_REFERENCE
from depsweep.analyzer.patterns import BIN, CONVENTION, LITERAL, PatternMatcher
from depsweep.analyzer.registry import get_framework_registry
from depsweep.errors import ConfigParseError


# Fixture directory
FIXTURES_DIR = Path(__file__).parent / 'fixtures' / 'config_files'


def make_parser(names, bin_names=None):
    frameworks = get_framework_registry()
    return ConfigParser(PatternMatcher(names, frameworks, bin_names), frameworks)


def parse_fixture(filename, names):
    return make_parser(names).parse_config_file(FIXTURES_DIR / filename, filename)


def names_of(records):
    return {r.dependency_name for r in records}


class TestESLintConfig:
    """Test .eslintrc.json parsing."""

    DECLARED = [
        'eslint', 'eslint-config-airbnb', 'eslint-plugin-react', 'eslint-config-prettier',
        '@typescript-eslint/eslint-plugin', '@typescript-eslint/parser', 'lodash',
    ]

    def test_eslintrc_exists(self):
        """Verify test fixture exists."""
        assert (FIXTURES_DIR / '.eslintrc.json').exists(), ".eslintrc.json fixture is missing"

    def test_shorthand_expansion(self):
        """Shareable configs and plugins are found through ESLint's naming convention."""
        records = parse_fixture('.eslintrc.json', self.DECLARED)

        assert names_of(records) == {
            'eslint',
            'eslint-config-airbnb',
            'eslint-plugin-react',
            'eslint-config-prettier',
            '@typescript-eslint/eslint-plugin',
            '@typescript-eslint/parser',
        }
        assert all(r.kind == CONFIG_REFERENCE for r in records)
        assert all(r.file_path == '.eslintrc.json' for r in records)

    def test_config_file_credits_tool(self):
        """A file named after a tool is evidence for the tool itself."""
        records = parse_fixture('.eslintrc.json', self.DECLARED)
        eslint = [r for r in records if r.dependency_name == 'eslint']
        assert eslint[0].matched_by == CONVENTION
        assert eslint[0].specifier == '.eslintrc.json'

    def test_parser_literal_and_line(self):
        records = parse_fixture('.eslintrc.json', self.DECLARED)
        parser = [r for r in records if r.dependency_name == '@typescript-eslint/parser']
        assert parser[0].matched_by == LITERAL
        assert parser[0].line == 3


class TestBabelConfig:
    """Test babel.config.json parsing."""

    def test_presets_and_plugins(self):
        declared = [
            '@babel/core', '@babel/preset-env', '@babel/preset-react',
            'babel-plugin-transform-runtime', 'core-js',
        ]
        records = parse_fixture('babel.config.json', declared)

        assert names_of(records) == {
            '@babel/core',
            '@babel/preset-env',
            '@babel/preset-react',
            'babel-plugin-transform-runtime',
        }

    def test_preset_option_keys_are_not_names(self):
        """Keys of option objects nested in a preset entry are not dependency names."""
        records = parse_fixture('babel.config.json', ['targets', 'node'])
        assert records == []


class TestJestConfig:
    """Test jest.config.js parsing."""

    def test_js_module_config(self):
        declared = ['jest', 'jest-environment-jsdom', 'ts-jest', '@testing-library/jest-dom', 'enzyme']
        records = parse_fixture('jest.config.js', declared)

        assert names_of(records) == {'jest', 'jest-environment-jsdom', 'ts-jest', '@testing-library/jest-dom'}

    def test_environment_convention(self):
        records = parse_fixture('jest.config.js', ['jest-environment-jsdom'])
        assert [r.matched_by for r in records] == [CONVENTION]
        assert records[0].specifier == 'jsdom'


class TestTsconfig:
    """Test tsconfig.json parsing (JSON with comments)."""

    def test_types_and_helpers(self):
        declared = ['typescript', '@types/node', '@types/jest', 'tslib', '@types/lodash']
        records = parse_fixture('tsconfig.json', declared)

        assert names_of(records) == {'typescript', '@types/node', '@types/jest', 'tslib'}

    def test_strip_jsonc_keeps_strings(self):
        """Comment markers inside strings survive."""
        text = '{"paths": {"@/*": ["src/*"]}, // note\n "a": "http://x", /* c */ "b": [1,],}'
        assert strip_jsonc(text).replace(' ', '').replace('\n', '') == \
            '{"paths":{"@/*":["src/*"]},"a":"http://x","b":[1]}'


class TestOtherFormats:
    """Test YAML and webpack configs, and malformed files."""

    def test_stylelint_yaml(self):
        records = parse_fixture('.stylelintrc.yml', ['stylelint', 'stylelint-config-standard', 'stylelint-order'])
        assert names_of(records) == {'stylelint', 'stylelint-config-standard', 'stylelint-order'}

    def test_webpack_loaders(self):
        declared = ['webpack', 'style-loader', 'css-loader', 'html-webpack-plugin', 'sass-loader']
        records = parse_fixture('webpack.config.js', declared)
        assert names_of(records) == {'webpack', 'style-loader', 'css-loader', 'html-webpack-plugin'}

    def test_malformed_json_raises(self):
        with pytest.raises(ConfigParseError) as excinfo:
            parse_fixture('broken.json', ['react'])
        assert 'invalid JSON' in excinfo.value.reason


class TestManifestSections:
    """Test package.json scripts and tool sections."""

    @pytest.fixture
    def manifest_data(self):
        return {
            'name': 'web',
            'dependencies': {'react': '^18.0.0'},
            'scripts': {
                'build': 'tsc -p . && webpack --mode production',
                'lint': 'eslint src',
            },
            'eslintConfig': {'extends': 'react-app'},
            'lint-staged': {'*.js': ['prettier --write', 'eslint --fix']},
        }

    def test_scripts(self, manifest_data):
        parser = make_parser(['typescript', 'webpack', 'react'], bin_names={'typescript': ('tsc', 'tsserver')})
        records = parser.parse_manifest_data(manifest_data)

        scripts = [r for r in records if r.kind == SCRIPT_REFERENCE]
        assert {(r.dependency_name, r.matched_by) for r in scripts} == {('typescript', BIN), ('webpack', LITERAL)}
        assert 'scripts.build: webpack' in {r.specifier for r in scripts}

    def test_dependency_maps_not_scanned(self, manifest_data):
        """Declaring a dependency is never evidence of using it."""
        records = make_parser(['react']).parse_manifest_data(manifest_data)
        assert records == []

    def test_tool_sections(self, manifest_data):
        records = make_parser(['eslint', 'eslint-config-react-app', 'prettier']).parse_manifest_data(manifest_data)

        assert names_of(records) == {'eslint', 'eslint-config-react-app', 'prettier'}
        lint_staged = [r for r in records if r.specifier and r.specifier.startswith('lint-staged[')]
        assert {r.dependency_name for r in lint_staged} == {'eslint', 'prettier'}


class TestHelpers:
    """Test tokenizing and naming-convention helpers."""

    def test_tokenize_command(self):
        assert tokenize_command('node_modules/.bin/jest --coverage && NODE_ENV=test mocha') == \
            ['jest', 'NODE_ENV', 'test', 'mocha']

    @pytest.mark.parametrize('tool,key,value,expected', [
        ('eslint', 'extends', 'airbnb', ['eslint-config-airbnb']),
        ('eslint', 'extends', 'eslint-config-airbnb', ['eslint-config-airbnb']),
        ('eslint', 'extends', 'plugin:vue/recommended', ['eslint-plugin-vue']),
        ('eslint', 'plugins', '@typescript-eslint', ['@typescript-eslint/eslint-plugin']),
        ('eslint', 'extends', 'eslint:recommended', []),
        ('@babel/core', 'presets', 'env', ['babel-preset-env']),
        ('@babel/core', 'plugins', 'module:metro-react-native-babel-preset', ['metro-react-native-babel-preset']),
        ('jest', 'testEnvironment', 'node', ['jest-environment-node']),
        ('typescript', 'types', 'babel__core', ['@types/babel__core']),
        ('prettier', 'plugins', 'anything', []),
    ])
    def test_expand_convention(self, tool, key, value, expected):
        assert expand_convention(tool, key, value) == expected
