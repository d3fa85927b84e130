"""Configuration and script reference scanning.

Build tools, linters and test runners are often wired up only through
configuration: a Babel preset, an ESLint plugin, a Jest environment, a CLI
invoked from an npm script. None of these leave an import trace, so this
module reads the configuration formats themselves (JSON, YAML, JS-module
configs and the tool sections of package.json) and reports every declared
dependency named in a usage position.

Supported Patterns:
- Usage keys: plugins, presets, extends, parser, loader(s), use, alias,
  transform, testEnvironment, setupFiles*, reporters, require, types, ...
- Tool naming conventions (ESLint, Babel, Jest, tsconfig)
- package.json scripts and lint-staged commands
- Config files named after a tool (webpack.config.js, .eslintrc, ...)
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Tuple

import yaml
from tree_sitter import Node

from depsweep.errors import ConfigParseError
from .models import CONFIG_REFERENCE, SCRIPT_REFERENCE, UsageRecord
from .parser import LanguageParser, dialect_for
from .patterns import CONVENTION, PatternMatcher, types_package_for
from .registry import FrameworkRegistry

logger = logging.getLogger(__name__)

USAGE_KEYS = frozenset({
    'plugins', 'plugin', 'presets', 'preset', 'extends', 'parser', 'loader',
    'loaders', 'use', 'alias', 'transform', 'testEnvironment', 'testRunner',
    'runner', 'setupFiles', 'setupFilesAfterEnv', 'globalSetup',
    'globalTeardown', 'reporters', 'require', 'types', 'jsxImportSource',
    'processors', 'processor', 'customSyntax', 'snapshotSerializers',
    'resolver', 'moduleNameMapper', 'environment', 'ui', 'spec',
    'importSource', 'compiler', 'framework', 'builder', 'renderer',
})

JSON_SUFFIXES = ('.json', '.jsonc', '.json5')
YAML_SUFFIXES = ('.yaml', '.yml')
JS_SUFFIXES = ('.js', '.cjs', '.mjs', '.ts', '.cts', '.mts')

# package.json sections holding tool configuration, mapped to the tool
TOOL_SECTIONS = {
    'eslintConfig': 'eslint',
    'prettier': 'prettier',
    'stylelint': 'stylelint',
    'babel': '@babel/core',
    'jest': 'jest',
    'lint-staged': 'lint-staged',
    'commitlint': '@commitlint/cli',
    'nodemonConfig': 'nodemon',
    'mocha': 'mocha',
    'ava': 'ava',
    'xo': 'xo',
    'postcss': 'postcss',
    'browserslist': None,
}

JSONC_TOKEN_RE = re.compile(r'("(?:\\.|[^"\\])*")|//[^\n]*|/\*.*?\*/', re.DOTALL)
TRAILING_COMMA_RE = re.compile(r'("(?:\\.|[^"\\])*")|,(\s*[}\]])')
SCRIPT_SPLIT_RE = re.compile(r'[\s;&|()<>=`"\']+')
BIN_PATH_RE = re.compile(r'^(?:\./)?node_modules/\.bin/')


def strip_jsonc(text: str) -> str:
    """Remove comments and trailing commas outside of string literals."""
    text = JSONC_TOKEN_RE.sub(lambda m: m.group(1) or '', text)
    return TRAILING_COMMA_RE.sub(lambda m: m.group(1) or m.group(2), text)


def load_jsonc(text: str) -> Any:
    return json.loads(strip_jsonc(text))


def tokenize_command(command: str) -> List[str]:
    """Split a shell command into candidate tool tokens."""
    tokens = []
    for token in SCRIPT_SPLIT_RE.split(command):
        token = BIN_PATH_RE.sub('', token.strip())
        if token and not token.startswith('-'):
            tokens.append(token)
    return tokens


def _eslint_names(kind: str, value: str) -> List[str]:
    """Expand ESLint shorthand (`react`, `plugin:react/x`, `@scope/x`)."""
    if value.startswith('eslint:'):
        return []
    if value.startswith('plugin:'):
        kind = 'plugin'
        value = value[len('plugin:'):]
        if value.startswith('@'):
            scope, _, rest = value.partition('/')
            value = scope if not rest or '/' not in rest else f"{scope}/{rest.split('/')[0]}"
        else:
            value = value.split('/')[0]

    prefix = 'eslint-plugin' if kind == 'plugin' else 'eslint-config'
    if value.startswith('@'):
        scope, _, rest = value.partition('/')
        if not rest:
            return [f"{scope}/{prefix}"]
        rest = rest.split('/')[0]
        if rest.startswith(prefix):
            return [f"{scope}/{rest}"]
        return [f"{scope}/{prefix}-{rest}", f"{scope}/{rest}"]
    head = value.split('/')[0]
    if head.startswith(prefix):
        return [head]
    return [f"{prefix}-{head}"]


def _babel_names(kind: str, value: str) -> List[str]:
    """Expand Babel shorthand (`env`, `@babel/env`, `module:x`)."""
    if value.startswith('module:'):
        return [value[len('module:'):]]
    prefix = 'babel-preset' if kind in ('presets', 'preset') else 'babel-plugin'
    short = 'preset' if kind in ('presets', 'preset') else 'plugin'
    if value.startswith('@'):
        scope, _, rest = value.partition('/')
        if not rest:
            return [f"{scope}/{prefix}"]
        if rest.startswith(short + '-'):
            return [value]
        return [f"{scope}/{short}-{rest}", f"{scope}/{prefix}-{rest}"]
    if value.startswith(prefix):
        return [value]
    return [f"{prefix}-{value}"]


def expand_convention(tool: Optional[str], key: Optional[str], value: str) -> List[str]:
    """Package names implied by a tool's shorthand for ``value`` under ``key``."""
    if not tool or not key or not value:
        return []
    if tool == 'eslint' and key in ('plugins', 'plugin', 'extends'):
        return _eslint_names('plugin' if key.startswith('plugin') else 'config', value)
    if tool == '@babel/core' and key in ('plugins', 'plugin', 'presets', 'preset'):
        return _babel_names(key, value)
    if tool == 'jest':
        if key in ('testEnvironment', 'environment') and '/' not in value:
            return [f"jest-environment-{value}"]
        if key in ('runner', 'testRunner') and '/' not in value:
            return [f"jest-runner-{value}", f"jest-{value}"]
    if tool == 'typescript' and key == 'types':
        return [types_package_for(value)]
    if tool == 'stylelint' and key == 'extends' and not value.startswith(('stylelint-', '@', '.')):
        return [f"stylelint-config-{value}"]
    return []


class ConfigParser:
    """Parse configuration files to extract dependency references."""

    def __init__(self, matcher: PatternMatcher, frameworks: FrameworkRegistry):
        """Initialize config parser.

        Args:
            matcher: Matcher over the declared dependency names
            frameworks: Registry mapping config file names to tools
        """
        self.matcher = matcher
        self.frameworks = frameworks

    def parse_config_file(self, path: Path, rel_path: str) -> List[UsageRecord]:
        """Scan one configuration file.

        Args:
            path: File on disk
            rel_path: Project-relative path recorded on the usage records

        Returns:
            configReference records

        Raises:
            ConfigParseError: If the file is unreadable or malformed
        """
        try:
            text = path.read_text(encoding='utf-8')
        except (IOError, OSError, UnicodeDecodeError) as e:
            raise ConfigParseError(rel_path, f"unreadable: {e}") from e

        name = path.name
        tools = self.frameworks.tools_for_config_file(name)
        records = self._tool_file_records(tools, rel_path)

        if name == 'package.json':
            data = self._load_json(text, rel_path)
            if isinstance(data, dict):
                records.extend(self.parse_manifest_data(data, rel_path))
            return records

        suffix = path.suffix.lower()
        if suffix in JS_SUFFIXES:
            walker = _Walker(self.matcher, tools[0] if tools else None, rel_path, text)
            for data in self._load_js_objects(text, path, rel_path, walker):
                walker.walk(data)
            return records + walker.records

        if suffix in YAML_SUFFIXES:
            data = self._load_yaml(text, rel_path)
        elif suffix in JSON_SUFFIXES:
            data = self._load_json(text, rel_path)
        else:
            # extensionless rc files are JSON or YAML
            try:
                data = load_jsonc(text)
            except json.JSONDecodeError:
                data = self._load_yaml(text, rel_path)

        walker = _Walker(self.matcher, tools[0] if tools else None, rel_path, text)
        walker.walk(data)
        return records + walker.records

    def parse_manifest_data(self, data: Mapping[str, Any], rel_path: str = 'package.json') -> List[UsageRecord]:
        """Scan the tool sections and scripts of a package.json object.

        Dependency maps are never scanned.
        """
        text = json.dumps(data, indent=2)
        records: List[UsageRecord] = []
        for section, tool in TOOL_SECTIONS.items():
            if section not in data:
                continue
            records.extend(self._tool_file_records([tool] if tool else [], rel_path))
            value = data[section]
            if section == 'lint-staged':
                records.extend(self.scan_lint_staged(value, rel_path))
                continue
            walker = _Walker(self.matcher, tool, rel_path, text)
            walker.walk(value)
            records.extend(walker.records)

        scripts = data.get('scripts')
        if isinstance(scripts, Mapping):
            records.extend(self.scan_scripts(scripts, rel_path))
        return records

    def scan_scripts(self, scripts: Mapping[str, Any], rel_path: str = 'package.json') -> List[UsageRecord]:
        """scriptReference records for tools invoked from npm scripts."""
        records = []
        for script_name, command in scripts.items():
            if not isinstance(command, str):
                continue
            for token in tokenize_command(command):
                for dep, how in self.matcher.match_token(token):
                    records.append(UsageRecord(
                        dependency_name=dep,
                        file_path=rel_path,
                        kind=SCRIPT_REFERENCE,
                        specifier=f"scripts.{script_name}: {token}",
                        matched_by=how,
                    ))
        return records

    def scan_lint_staged(self, section: Any, rel_path: str = 'package.json') -> List[UsageRecord]:
        if not isinstance(section, Mapping):
            return []
        commands = {}
        for pattern, value in section.items():
            if isinstance(value, str):
                commands[f"lint-staged[{pattern}]"] = value
            elif isinstance(value, list):
                for index, item in enumerate(value):
                    if isinstance(item, str):
                        commands[f"lint-staged[{pattern}][{index}]"] = item
        records = self.scan_scripts(commands, rel_path)
        return [
            UsageRecord(r.dependency_name, r.file_path, r.kind, r.line,
                        r.specifier.replace('scripts.', '', 1), r.matched_by)
            for r in records
        ]

    def _tool_file_records(self, tools: Iterable[str], rel_path: str) -> List[UsageRecord]:
        records = []
        for tool in tools:
            if tool in self.matcher:
                records.append(UsageRecord(
                    dependency_name=tool,
                    file_path=rel_path,
                    kind=CONFIG_REFERENCE,
                    specifier=Path(rel_path).name,
                    matched_by=CONVENTION,
                ))
        return records

    @staticmethod
    def _load_json(text: str, rel_path: str) -> Any:
        try:
            return load_jsonc(text)
        except json.JSONDecodeError as e:
            raise ConfigParseError(rel_path, f"invalid JSON: {e}") from e

    @staticmethod
    def _load_yaml(text: str, rel_path: str) -> Any:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigParseError(rel_path, f"invalid YAML: {e}") from e

    @staticmethod
    def _load_js_objects(text: str, path: Path, rel_path: str, walker: "_Walker") -> List[Any]:
        """Convert the outermost object literals of a JS config to plain data.

        Every string literal in the file is also offered to ``walker`` as a
        whole-string candidate.
        """
        source = text.encode('utf-8')
        tree = LanguageParser.for_dialect(dialect_for(path) or 'js').parse(source)
        if tree.root_node.has_error:
            raise ConfigParseError(rel_path, "syntax error in JS config")

        def get_text(node) -> str:
            return source[node.start_byte:node.end_byte].decode('utf-8')

        objects = []
        stack = [tree.root_node]
        while stack:
            node = stack.pop()
            if node.type in ('string', 'template_string'):
                value = _js_literal(node, get_text)
                if isinstance(value, str):
                    walker.add_whole_string(value, node.start_point[0] + 1)
            if node.type == 'object' and not _inside_object(node):
                objects.append(_js_literal(node, get_text))
            stack.extend(reversed(node.named_children))
        return objects


def _inside_object(node: Node) -> bool:
    parent = node.parent
    while parent is not None:
        if parent.type == 'object':
            return True
        parent = parent.parent
    return False


def _js_literal(node: Node, get_text) -> Any:
    """Plain-data view of a JS literal; non-literal expressions become None."""
    node_type = node.type
    if node_type == 'string':
        return get_text(node)[1:-1]
    if node_type == 'template_string':
        if any(c.type == 'template_substitution' for c in node.named_children):
            return None
        return get_text(node)[1:-1]
    if node_type in ('true', 'false'):
        return node_type == 'true'
    if node_type == 'array':
        return [_js_literal(child, get_text) for child in node.named_children if child.type != 'comment']
    if node_type == 'object':
        data = {}
        for child in node.named_children:
            if child.type == 'pair':
                key_node = child.child_by_field_name('key')
                value_node = child.child_by_field_name('value')
                if key_node is None or value_node is None:
                    continue
                key = get_text(key_node)
                if key_node.type == 'string':
                    key = key[1:-1]
                data[key] = _js_literal(value_node, get_text)
            elif child.type == 'shorthand_property_identifier':
                data[get_text(child)] = None
        return data
    if node_type in ('parenthesized_expression', 'satisfies_expression', 'as_expression'):
        inner = node.named_children[0] if node.named_child_count else None
        return _js_literal(inner, get_text) if inner is not None else None
    return None


class _Walker:
    """Walks plain config data and collects configReference records."""

    def __init__(self, matcher: PatternMatcher, tool: Optional[str], rel_path: str, text: str):
        self.matcher = matcher
        self.tool = tool
        self.rel_path = rel_path
        self.text = text
        self.records: List[UsageRecord] = []

    def _line_of(self, value: str) -> Optional[int]:
        index = self.text.find(value)
        return self.text.count('\n', 0, index) + 1 if index >= 0 else None

    def _emit(self, matches: Iterable[Tuple[str, str]], value: str, line: Optional[int]):
        for dep, how in matches:
            self.records.append(UsageRecord(
                dependency_name=dep,
                file_path=self.rel_path,
                kind=CONFIG_REFERENCE,
                line=line,
                specifier=value,
                matched_by=how,
            ))

    def add_whole_string(self, value: str, line: Optional[int] = None):
        self._emit(self.matcher.match_token(value), value, line or self._line_of(value))

    def _add_usage_value(self, key: Optional[str], value: str):
        line = self._line_of(value)
        self._emit(self.matcher.match_token(value), value, line)
        for name in expand_convention(self.tool, key, value):
            self._emit(
                [(dep, CONVENTION) for dep, _ in self.matcher.match_token(name)],
                value,
                line,
            )

    def walk(self, data: Any, key: Optional[str] = None, usage: bool = False):
        """Walk ``data``; ``usage`` is set below a usage key.

        Keys of a mapping that is the direct value of a usage key are names
        too (`plugins: {react: ...}`). Mappings nested deeper are options.
        """
        stack = [(data, key, usage, usage)]
        while stack:
            node, node_key, in_usage, direct = stack.pop()
            if isinstance(node, str):
                if self.tool == 'lint-staged':
                    for token in tokenize_command(node):
                        self._emit(self.matcher.match_token(token), token, self._line_of(token))
                elif in_usage:
                    self._add_usage_value(node_key, node)
                else:
                    self.add_whole_string(node)
            elif isinstance(node, bool):
                if node and self.tool == 'typescript' and node_key == 'importHelpers':
                    self._emit(
                        [(dep, CONVENTION) for dep, _ in self.matcher.match_token('tslib')],
                        'importHelpers',
                        self._line_of('importHelpers'),
                    )
            elif isinstance(node, list):
                for item in reversed(node):
                    stack.append((item, node_key, in_usage, False))
            elif isinstance(node, dict):
                for child_key, value in reversed(list(node.items())):
                    if not isinstance(child_key, str):
                        continue
                    if in_usage and direct:
                        self._add_usage_value(node_key, child_key)
                        stack.append((value, node_key, False, False))
                    else:
                        is_usage_key = child_key in USAGE_KEYS
                        stack.append((value, child_key, is_usage_key, is_usage_key))
