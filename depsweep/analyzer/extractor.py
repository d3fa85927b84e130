"""Import extraction from JavaScript/TypeScript syntax trees.

Walks a tree-sitter tree iteratively and yields every module specifier the
file references, tagged with how it was referenced. Specifiers that cannot
be resolved without running the code produce indeterminate markers instead.
"""
import logging
import re
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from tree_sitter import Node, Tree

from depsweep.errors import ParsePartialFailure

from .models import (
    DYNAMIC_IMPORT,
    DYNAMIC_REQUIRE,
    PARSE_FAILURE,
    REQUIRE_CALL,
    STATIC_IMPORT,
    TYPE_ONLY_IMPORT,
    FileExtraction,
    ImportReference,
    IndeterminateReference,
    ParseOutcome,
)
from .parser import LanguageParser, prepare_source
from .patterns import package_names

logger = logging.getLogger(__name__)

TRIPLE_SLASH_TYPES_RE = re.compile(r'^///\s*<reference\s+types\s*=\s*["\']([^"\']+)["\']')
JSX_IMPORT_SOURCE_RE = re.compile(r'@jsxImportSource\s+(\S+)')
QUOTED_RE = re.compile(r'''(["'`])((?:@[\w.~-]+/)?[\w~-][\w.~/-]*)\1''')

TYPE_CONTEXTS = frozenset({
    'type_annotation', 'type_alias_declaration', 'type_query', 'type_arguments',
    'interface_declaration', 'ambient_declaration', 'generic_type', 'lookup_type',
})
STATEMENT_TYPES = frozenset({'import_statement', 'export_statement', 'call_expression'})
MAX_EXPRESSION_CHARS = 120

Extracted = Union[ImportReference, IndeterminateReference]


def _line(node: Node) -> int:
    return node.start_point[0] + 1


def _first_error_line(root: Node) -> Optional[int]:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == 'ERROR' or node.is_missing:
            return _line(node)
        if node.has_error:
            stack.extend(reversed(node.children))
    return None


def failure_candidates(text: str) -> Tuple[str, ...]:
    """Quoted package-like strings in the raw text of an unparseable file."""
    found = set()
    for match in QUOTED_RE.finditer(text):
        value = match.group(2)
        if package_names(value):
            found.add(value)
    return tuple(sorted(found))


def failed_extraction(reason: str, text: str, line: Optional[int] = None) -> FileExtraction:
    """Extraction result for a file that could not be parsed."""
    marker = IndeterminateReference(
        line=line or 1,
        kind=PARSE_FAILURE,
        expression=reason,
        candidates=failure_candidates(text),
    )
    return FileExtraction(
        references=(),
        markers=(marker,),
        outcome=ParseOutcome(ok=False, reason=reason, line=line),
    )


class ImportExtractor:
    """Collects import references from one source buffer at a time."""

    def extract(self, source: bytes, dialect: str) -> FileExtraction:
        """Extract references and markers from source bytes.

        Args:
            source: Parseable source (embedded scripts already extracted)
            dialect: One of 'js', 'jsx', 'ts', 'tsx'

        Returns:
            FileExtraction; on syntax errors or undecodable input the
            outcome is failed and there are no references
        """
        try:
            text = source.decode('utf-8')
        except UnicodeDecodeError:
            return failed_extraction(
                "not valid UTF-8", source.decode('utf-8', errors='replace'))

        try:
            tree = self.parse(source, dialect)
        except ParsePartialFailure as e:
            logger.debug("Parse failure: %s", e)
            return failed_extraction(e.reason, text, e.line)

        references: List[ImportReference] = []
        markers: List[IndeterminateReference] = []
        for item in self.iter_references(tree.root_node, source):
            if isinstance(item, ImportReference):
                references.append(item)
            else:
                markers.append(item)
        return FileExtraction(references=tuple(references), markers=tuple(markers))

    def parse(self, source: bytes, dialect: str) -> Tree:
        """Parse source bytes into a syntax tree.

        Raises:
            ParsePartialFailure: If the tree contains syntax errors
        """
        tree = LanguageParser.for_dialect(dialect).parse(source)
        if tree.root_node.has_error:
            line = _first_error_line(tree.root_node)
            reason = f"syntax error at line {line}" if line else "syntax error"
            raise ParsePartialFailure(reason, line)
        return tree

    def extract_file(self, file_path: Path) -> FileExtraction:
        """Read, prepare and extract one file."""
        try:
            raw = Path(file_path).read_bytes()
        except (IOError, OSError) as e:
            return failed_extraction(f"unreadable: {e.strerror or e}", "")
        try:
            source, dialect = prepare_source(Path(file_path), raw)
        except UnicodeDecodeError:
            return failed_extraction(
                "not valid UTF-8", raw.decode('utf-8', errors='replace'))
        return self.extract(source, dialect)

    def iter_references(self, root_node: Node, source: bytes) -> Iterator[Extracted]:
        """Yield references and markers in document order.

        A new iterator is created on every call, so the sequence can be
        re-walked.
        """
        def get_text(node) -> str:
            return source[node.start_byte:node.end_byte].decode('utf-8')

        stack = [root_node]
        while stack:
            node = stack.pop()
            node_type = node.type

            if node_type == 'import_statement':
                yield from self._import_statement(node, get_text)
            elif node_type == 'export_statement':
                source_node = node.child_by_field_name('source')
                if source_node is not None:
                    kind = TYPE_ONLY_IMPORT if self._is_type_only(node, 'export_clause', 'export_specifier') else STATIC_IMPORT
                    yield ImportReference(self._string_value(source_node, get_text), kind, _line(node))
            elif node_type == 'call_expression':
                item = self._call_expression(node, get_text)
                if item is not None:
                    yield item
            elif node_type == 'comment':
                yield from self._comment(node, get_text)
            elif node.child_count and node.children[0].type == 'import' and node_type not in STATEMENT_TYPES:
                # TypeScript import types: `let x: import('pkg').Foo`
                for child in node.named_children:
                    if child.type == 'string':
                        yield ImportReference(self._string_value(child, get_text), TYPE_ONLY_IMPORT, _line(node))
                        break

            stack.extend(reversed(node.named_children))

    @staticmethod
    def _string_value(node: Node, get_text) -> str:
        return get_text(node)[1:-1]

    @staticmethod
    def _has_type_keyword(node: Node) -> bool:
        return any(child.type in ('type', 'typeof') and not child.is_named for child in node.children)

    def _is_type_only(self, node: Node, clause_type: str, specifier_type: str) -> bool:
        """``import type``/``export type``, or a clause where every specifier is a type."""
        if self._has_type_keyword(node):
            return True

        clause = None
        for child in node.named_children:
            if child.type == clause_type:
                clause = child
                break
        if clause is None:
            return False

        if clause_type == 'import_clause':
            named = [c for c in clause.named_children if c.type == 'named_imports']
            if len(named) != 1 or len(clause.named_children) != 1:
                return False
            clause = named[0]

        specifiers = [c for c in clause.named_children if c.type == specifier_type]
        return bool(specifiers) and all(self._has_type_keyword(s) for s in specifiers)

    def _import_statement(self, node: Node, get_text) -> Iterator[ImportReference]:
        type_only = self._is_type_only(node, 'import_clause', 'import_specifier')
        source_node = node.child_by_field_name('source')
        if source_node is not None:
            kind = TYPE_ONLY_IMPORT if type_only else STATIC_IMPORT
            yield ImportReference(self._string_value(source_node, get_text), kind, _line(node))
            return

        # TypeScript `import x = require('pkg')`
        for child in node.named_children:
            if child.type == 'import_require_clause':
                required = child.child_by_field_name('source')
                if required is None:
                    required = next((c for c in child.named_children if c.type == 'string'), None)
                if required is not None:
                    kind = TYPE_ONLY_IMPORT if type_only else REQUIRE_CALL
                    yield ImportReference(self._string_value(required, get_text), kind, _line(node))

    def _call_expression(self, node: Node, get_text) -> Optional[Extracted]:
        function_node = node.child_by_field_name('function')
        args_node = node.child_by_field_name('arguments')
        if function_node is None or args_node is None:
            return None

        if function_node.type == 'import':
            kind = TYPE_ONLY_IMPORT if self._in_type_context(node) else DYNAMIC_IMPORT
            marker_kind = DYNAMIC_IMPORT
        elif function_node.type == 'identifier' and get_text(function_node) == 'require':
            kind, marker_kind = REQUIRE_CALL, DYNAMIC_REQUIRE
        elif function_node.type == 'member_expression':
            callee = get_text(function_node).replace(' ', '')
            if callee == 'require.resolve':
                kind, marker_kind = REQUIRE_CALL, DYNAMIC_REQUIRE
            elif callee == 'import.meta.resolve':
                kind, marker_kind = DYNAMIC_IMPORT, DYNAMIC_IMPORT
            else:
                return None
        else:
            return None

        args = [a for a in args_node.named_children if a.type != 'comment']
        if not args:
            return None
        return self._specifier_argument(args[0], kind, marker_kind, get_text)

    @staticmethod
    def _in_type_context(node: Node) -> bool:
        parent = node.parent
        while parent is not None:
            if parent.type in TYPE_CONTEXTS:
                return True
            if parent.type in ('statement_block', 'program', 'arrow_function', 'function_declaration'):
                return False
            parent = parent.parent
        return False

    def _specifier_argument(self, arg: Node, kind: str, marker_kind: str, get_text) -> Extracted:
        """Resolve a call argument to a reference, or a marker if it is computed."""
        line = _line(arg)
        if arg.type == 'string':
            return ImportReference(self._string_value(arg, get_text), kind, line)

        if arg.type == 'template_string':
            substitutions = [c for c in arg.named_children if c.type == 'template_substitution']
            if not substitutions:
                return ImportReference(self._string_value(arg, get_text), kind, line)
            prefix = get_text(arg)[1:substitutions[0].start_byte - arg.start_byte]
            return self._marker(arg, marker_kind, prefix, get_text)

        if arg.type == 'binary_expression':
            left = arg
            while left is not None and left.type == 'binary_expression':
                left = left.child_by_field_name('left')
            prefix = ''
            if left is not None and left.type == 'string':
                prefix = self._string_value(left, get_text)
            return self._marker(arg, marker_kind, prefix, get_text)

        return self._marker(arg, marker_kind, '', get_text)

    @staticmethod
    def _marker(arg: Node, kind: str, prefix: str, get_text) -> IndeterminateReference:
        expression = get_text(arg)
        if len(expression) > MAX_EXPRESSION_CHARS:
            expression = expression[:MAX_EXPRESSION_CHARS] + '...'
        return IndeterminateReference(
            line=_line(arg),
            kind=kind,
            expression=expression,
            static_prefix=prefix,
        )

    @staticmethod
    def _comment(node: Node, get_text) -> Iterator[ImportReference]:
        text = get_text(node)
        match = TRIPLE_SLASH_TYPES_RE.match(text)
        if match:
            yield ImportReference(match.group(1), TYPE_ONLY_IMPORT, _line(node))
            return
        match = JSX_IMPORT_SOURCE_RE.search(text)
        if match:
            yield ImportReference(match.group(1).rstrip('*/').strip(), STATIC_IMPORT, _line(node))
