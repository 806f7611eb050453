"""
Tree-sitter parser producing code graph entities and relationships.

Supports: Python, JavaScript, TypeScript (including TSX).

Entity ids are a pure function of ``(package, file path, kind, name)`` so an
unchanged file always re-parses to the same ids.  Call and inheritance
targets that are not defined in the same file are emitted unresolved (with
``target_name`` set); :class:`~agent_recall.graph.store.GraphStore` resolves
them by name when the graph is stored.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Language mapping
# ---------------------------------------------------------------------------

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
}

_JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts")


def detect_language(file_path: str) -> Optional[str]:
    """Return the tree-sitter language name for *file_path*, or None if unsupported."""
    ext = os.path.splitext(file_path)[1].lower()
    if file_path.endswith(".d.ts"):
        return None
    return EXTENSION_TO_LANGUAGE.get(ext)


# ---------------------------------------------------------------------------
# Graph vocabulary
# ---------------------------------------------------------------------------

class EntityKind:
    FUNCTION = "function"
    CLASS = "class"
    TYPE = "type"
    INTERFACE = "interface"
    VARIABLE = "variable"
    FILE = "file"

    ALL = (FUNCTION, CLASS, TYPE, INTERFACE, VARIABLE, FILE)


class RelType:
    CALLS = "calls"
    IMPORTS = "imports"
    EXPORTS = "exports"
    EXTENDS = "extends"
    IMPLEMENTS = "implements"
    DEFINES = "defines"

    ALL = (CALLS, IMPORTS, EXPORTS, EXTENDS, IMPLEMENTS, DEFINES)


def entity_id(package: str, file_path: str, kind: str, name: str) -> str:
    return f"{package}:{file_path}:{kind}:{name}"


def file_entity_id(package: str, file_path: str) -> str:
    return f"{package}:file:{file_path}"


def external_id(module: str) -> str:
    return f"external:{module}"


# ---------------------------------------------------------------------------
# Data classes returned by the parser
# ---------------------------------------------------------------------------

@dataclass
class GraphEntity:
    id: str
    kind: str
    name: str
    file_path: str
    line_number: int
    exported: bool
    package: str


@dataclass
class GraphRelationship:
    """A directed edge.  ``to_id`` is None while the target is unresolved."""
    from_id: str
    to_id: Optional[str]
    type: str
    file_path: str
    target_name: Optional[str] = None
    target_kinds: tuple[str, ...] = ()

    def key(self) -> tuple:
        return (self.from_id, self.to_id or f"?{self.target_name}", self.type)


@dataclass
class FileGraph:
    """Everything extracted from a single source file."""
    path: str
    language: str
    entities: list[GraphEntity] = field(default_factory=list)
    relationships: list[GraphRelationship] = field(default_factory=list)
    parse_error: Optional[str] = None


@dataclass
class ParseResult:
    package: str
    entities: list[GraphEntity] = field(default_factory=list)
    relationships: list[GraphRelationship] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    stats: dict = field(default_factory=dict)

    def entity_count_for(self, file_path: str) -> int:
        return sum(1 for e in self.entities if e.file_path == file_path)

    def to_dict(self) -> dict:
        return {
            "package": self.package,
            "entities": [asdict(e) for e in self.entities],
            "relationships": [
                {
                    "from": r.from_id,
                    "to": r.to_id,
                    "type": r.type,
                    "file_path": r.file_path,
                    "target_name": r.target_name,
                    "target_kinds": list(r.target_kinds),
                }
                for r in self.relationships
            ],
            "files": self.files,
            "stats": self.stats,
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "ParseResult":
        return cls(
            package=data["package"],
            entities=[GraphEntity(**e) for e in data.get("entities", [])],
            relationships=[
                GraphRelationship(
                    from_id=r["from"],
                    to_id=r.get("to"),
                    type=r["type"],
                    file_path=r.get("file_path", ""),
                    target_name=r.get("target_name"),
                    target_kinds=tuple(r.get("target_kinds") or ()),
                )
                for r in data.get("relationships", [])
            ],
            files=list(data.get("files", [])),
            stats=dict(data.get("stats", {})),
        )


@dataclass
class PackageInfo:
    name: str
    path: str
    exclude_dirs: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Language → (tree-sitter Language object) lookup
# ---------------------------------------------------------------------------

def _get_lang_func(language: str):
    """Return the tree-sitter language() function for *language*, or None."""
    try:
        if language == "python":
            import tree_sitter_python as m  # type: ignore
            return m.language
        elif language == "javascript":
            import tree_sitter_javascript as m  # type: ignore
            return m.language
        elif language == "typescript":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_typescript
        elif language == "tsx":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_tsx
    except ImportError:
        logger.debug("No tree-sitter grammar installed for %s", language)
    return None


# Cache Language objects to avoid repeated construction
_LANG_CACHE: dict[str, object] = {}
_PARSER_CACHE: dict[str, object] = {}


def _get_ts_language(language: str):
    """Return the tree_sitter.Language object for *language*, or None."""
    if language in _LANG_CACHE:
        return _LANG_CACHE[language]
    try:
        import tree_sitter as ts  # type: ignore
        func = _get_lang_func(language)
        if func is None:
            return None
        lang_obj = ts.Language(func())
        _LANG_CACHE[language] = lang_obj
        return lang_obj
    except Exception as exc:
        logger.debug("Cannot load tree-sitter language %s: %s", language, exc)
        return None


def _get_ts_parser(language: str):
    """Return a tree-sitter Parser configured for *language*, or None."""
    if language in _PARSER_CACHE:
        return _PARSER_CACHE[language]
    try:
        import tree_sitter as ts  # type: ignore
        lang_obj = _get_ts_language(language)
        if lang_obj is None:
            return None
        parser = ts.Parser(lang_obj)
        _PARSER_CACHE[language] = parser
        return parser
    except Exception as exc:
        logger.warning("Cannot create tree-sitter parser for %s: %s", language, exc)
        return None


def _safe_query_matches(lang_obj, query_src: str, node) -> list[dict]:
    """
    Execute query safely, splitting on blank lines to try each sub-pattern.

    Returns a flat list of capture dicts: [{capture_name: [Node]}].
    """
    if lang_obj is None or node is None:
        return []
    import tree_sitter as ts  # type: ignore
    sub_patterns = [p.strip() for p in query_src.strip().split("\n\n") if p.strip()]
    all_results: list[dict] = []
    for pattern in sub_patterns:
        try:
            q = ts.Query(lang_obj, pattern)
            qc = ts.QueryCursor(q)
            for _pat_idx, caps in qc.matches(node):
                all_results.append(caps)
        except Exception as exc:
            logger.debug("Skipping query pattern: %s", exc)
    return all_results


# ---------------------------------------------------------------------------
# Language-specific tree-sitter queries
# ---------------------------------------------------------------------------

_JS_CALLS = """\
(call_expression function: (identifier) @call.name)

(call_expression function: (member_expression
  property: (property_identifier) @call.method))

(new_expression constructor: (identifier) @call.name)
"""

_JS_IMPORTS = """\
(import_statement source: (string) @import.mod)

(export_statement source: (string) @import.mod)

(call_expression
  function: (identifier) @req.keyword
  arguments: (arguments (string) @import.mod))
"""

_JS_FUNCTIONS = """\
(function_declaration
  name: (identifier) @func.name) @func.def

(generator_function_declaration
  name: (identifier) @func.name) @func.def

(method_definition
  name: (property_identifier) @func.name) @func.def

(variable_declarator
  name: (identifier) @func.name
  value: (arrow_function)) @func.def

(variable_declarator
  name: (identifier) @func.name
  value: (function_expression)) @func.def
"""

_TS_QUERIES = {
    "functions": _JS_FUNCTIONS,
    "classes": """\
(class_declaration
  name: (type_identifier) @class.name) @class.def

(abstract_class_declaration
  name: (type_identifier) @class.name) @class.def
""",
    "interfaces": """\
(interface_declaration
  name: (type_identifier) @iface.name) @iface.def
""",
    "types": """\
(type_alias_declaration
  name: (type_identifier) @type.name) @type.def
""",
    "imports": _JS_IMPORTS,
    "calls": _JS_CALLS,
}

_QUERIES: dict[str, dict[str, str]] = {
    "python": {
        "functions": """\
(function_definition
  name: (identifier) @func.name) @func.def
""",
        "classes": """\
(class_definition
  name: (identifier) @class.name
  superclasses: (argument_list)? @class.bases) @class.def
""",
        "imports": """\
(import_statement (dotted_name) @import.mod)

(import_statement (aliased_import name: (dotted_name) @import.mod))

(import_from_statement
  module_name: (dotted_name) @import.mod)

(import_from_statement
  module_name: (relative_import) @import.mod)
""",
        "calls": """\
(call function: (identifier) @call.name)

(call function: (attribute attribute: (identifier) @call.method))
""",
    },
    "javascript": {
        "functions": _JS_FUNCTIONS,
        "classes": """\
(class_declaration
  name: (identifier) @class.name) @class.def
""",
        "imports": _JS_IMPORTS,
        "calls": _JS_CALLS,
    },
    "typescript": _TS_QUERIES,
    "tsx": _TS_QUERIES,
}


# ---------------------------------------------------------------------------
# Node text helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def _first_node(caps: dict, *keys: str):
    """Return the first Node found under any of *keys* in a capture dict."""
    for k in keys:
        nodes = caps.get(k)
        if nodes:
            return nodes[0]
    return None


def _type_name(raw: str) -> str:
    """``Base[T]`` / ``Repo<User>`` / ``pkg.Base`` → the bare referenced name."""
    raw = re.split(r"[\[<(]", raw.strip(), maxsplit=1)[0]
    return raw.strip()


def _strip_quotes(raw: str) -> str:
    return raw.strip().strip("\"'`")


# ---------------------------------------------------------------------------
# Structural helpers
# ---------------------------------------------------------------------------

def _find_parent_class(
    fn_start_row: int,
    fn_end_row: int,
    class_ranges: list[tuple[int, int, str]],
) -> Optional[str]:
    """Return name of the tightest enclosing class, or None."""
    best: Optional[tuple[int, int, str]] = None
    for c_start, c_end, c_name in class_ranges:
        if c_start <= fn_start_row and c_end >= fn_end_row:
            if best is None or (c_end - c_start) < (best[1] - best[0]):
                best = (c_start, c_end, c_name)
    return best[2] if best else None


def _build_line_owner_map(spans: list[tuple[int, int, str]]) -> dict[int, str]:
    """Map each source row to the id of the innermost enclosing function."""
    line_map: dict[int, str] = {}
    # Process widest span first so inner spans overwrite outer ones
    for start, end, owner in sorted(spans, key=lambda s: s[1] - s[0], reverse=True):
        for row in range(start, end + 1):
            line_map[row] = owner
    return line_map


def _is_python_top_level(def_node) -> bool:
    parent = def_node.parent
    if parent is not None and parent.type == "decorated_definition":
        parent = parent.parent
    return parent is not None and parent.type == "module"


def _js_exported(def_node) -> bool:
    parent = def_node.parent
    if def_node.type == "variable_declarator" and parent is not None:
        parent = parent.parent
    return parent is not None and parent.type == "export_statement"


def _python_all(root) -> Optional[set[str]]:
    """Names listed in a module-level ``__all__``, or None if absent."""
    for stmt in root.named_children:
        if stmt.type != "expression_statement" or not stmt.named_children:
            continue
        assign = stmt.named_children[0]
        if assign.type != "assignment":
            continue
        left = assign.child_by_field_name("left")
        right = assign.child_by_field_name("right")
        if _text(left) != "__all__" or right is None:
            continue
        return {
            _strip_quotes(_text(item))
            for item in right.named_children
            if item.type == "string"
        }
    return None


def _python_variables(root) -> list[tuple[str, int]]:
    """Module-level ``NAME = ...`` assignments as ``(name, row)``."""
    found: list[tuple[str, int]] = []
    for stmt in root.named_children:
        if stmt.type != "expression_statement" or not stmt.named_children:
            continue
        assign = stmt.named_children[0]
        if assign.type != "assignment":
            continue
        left = assign.child_by_field_name("left")
        if left is not None and left.type == "identifier":
            name = _text(left)
            if name and name != "__all__":
                found.append((name, assign.start_point[0]))
    return found


def _js_variables(root) -> list[tuple[str, int, bool]]:
    """Top-level non-function ``const``/``let``/``var`` as ``(name, row, exported)``."""
    found: list[tuple[str, int, bool]] = []
    for stmt in root.named_children:
        exported = False
        decl = stmt
        if stmt.type == "export_statement":
            exported = True
            decl = stmt.child_by_field_name("declaration")
            if decl is None:
                continue
        if decl.type not in ("lexical_declaration", "variable_declaration"):
            continue
        for declarator in decl.named_children:
            if declarator.type != "variable_declarator":
                continue
            name_node = declarator.child_by_field_name("name")
            value = declarator.child_by_field_name("value")
            if name_node is None or name_node.type != "identifier":
                continue
            if value is not None and value.type in ("arrow_function", "function_expression", "function"):
                continue
            found.append((_text(name_node), declarator.start_point[0], exported))
    return found


def _js_export_clause_names(root) -> set[str]:
    """Local names exported through ``export { a, b as c }``."""
    names: set[str] = set()
    for stmt in root.named_children:
        if stmt.type != "export_statement":
            continue
        for child in stmt.named_children:
            if child.type != "export_clause":
                continue
            for spec in child.named_children:
                if spec.type == "export_specifier":
                    local = spec.child_by_field_name("name")
                    if local is not None:
                        names.add(_text(local))
    return names


def _heritage(def_node, language: str) -> tuple[list[str], list[str]]:
    """Return ``(extends, implements)`` type names for a class/interface node."""
    extends: list[str] = []
    implements: list[str] = []
    for child in def_node.children:
        if child.type == "class_heritage":
            for sub in child.children:
                if sub.type == "extends_clause":
                    value = sub.child_by_field_name("value")
                    targets = [value] if value is not None else sub.named_children[:1]
                    extends.extend(_type_name(_text(n)) for n in targets)
                elif sub.type == "implements_clause":
                    implements.extend(_type_name(_text(n)) for n in sub.named_children)
                elif sub.type in ("identifier", "member_expression"):
                    extends.append(_type_name(_text(sub)))
        elif child.type == "extends_type_clause":
            extends.extend(_type_name(_text(n)) for n in child.named_children)
    return [e for e in extends if e], [i for i in implements if i]


def _python_bases(bases_node) -> list[str]:
    if bases_node is None:
        return []
    bases: list[str] = []
    for arg in bases_node.named_children:
        if arg.type == "keyword_argument":
            continue
        name = _type_name(_text(arg))
        if name and name != "object":
            bases.append(name)
    return bases


# ---------------------------------------------------------------------------
# Import resolution
# ---------------------------------------------------------------------------

def _norm(path: str) -> str:
    return os.path.normpath(path).replace(os.sep, "/")


def _resolve_js_import(module: str, rel_path: str, package_root: str) -> Optional[str]:
    if not module.startswith("."):
        return None
    base = _norm(os.path.join(os.path.dirname(rel_path), module))
    if base.startswith(".."):
        return None
    stem, ext = os.path.splitext(base)
    candidates: list[str] = []
    if ext in _JS_EXTENSIONS:
        candidates.append(base)
        # ESM-style "./x.js" pointing at "./x.ts"
        candidates.extend(stem + e for e in _JS_EXTENSIONS)
    else:
        candidates.extend(base + e for e in _JS_EXTENSIONS)
        candidates.extend(f"{base}/index{e}" for e in _JS_EXTENSIONS)
    for candidate in candidates:
        if os.path.isfile(os.path.join(package_root, candidate)):
            return candidate
    return None


def _resolve_python_import(module: str, rel_path: str, package_root: str) -> Optional[str]:
    if module.startswith("."):
        dots = len(module) - len(module.lstrip("."))
        base_dir = os.path.dirname(rel_path)
        for _ in range(dots - 1):
            base_dir = os.path.dirname(base_dir)
        rest = module[dots:].replace(".", "/")
        base = _norm(os.path.join(base_dir, rest)) if rest else _norm(base_dir or ".")
        roots = [""]
    else:
        base = module.replace(".", "/")
        roots = ["", "src/"]
    if base.startswith(".."):
        return None
    for root in roots:
        for candidate in (f"{root}{base}.py", f"{root}{base}/__init__.py"):
            candidate = _norm(candidate)
            if os.path.isfile(os.path.join(package_root, candidate)):
                return candidate
    return None


def _resolve_import(language: str, module: str, rel_path: str,
                    package_root: Optional[str]) -> Optional[str]:
    if package_root is None:
        return None
    if language == "python":
        return _resolve_python_import(module, rel_path, package_root)
    return _resolve_js_import(module, rel_path, package_root)


# ---------------------------------------------------------------------------
# Main public parse functions
# ---------------------------------------------------------------------------

class _FileBuilder:
    """Accumulates de-duplicated entities and relationships for one file."""

    def __init__(self, package: str, rel_path: str, language: str) -> None:
        self.package = package
        self.rel_path = rel_path
        self.file_id = file_entity_id(package, rel_path)
        self.graph = FileGraph(path=rel_path, language=language)
        self._entity_ids: set[str] = set()
        self._rel_keys: set[tuple] = set()
        self.by_name: dict[str, list[GraphEntity]] = {}
        self.add_entity(EntityKind.FILE, rel_path, 0, False, entity_id_=self.file_id)

    def add_entity(self, kind: str, name: str, row: int, exported: bool,
                   entity_id_: Optional[str] = None) -> Optional[GraphEntity]:
        eid = entity_id_ or entity_id(self.package, self.rel_path, kind, name)
        if eid in self._entity_ids:
            return None
        self._entity_ids.add(eid)
        entity = GraphEntity(
            id=eid,
            kind=kind,
            name=name,
            file_path=self.rel_path,
            line_number=row + 1 if kind != EntityKind.FILE else 0,
            exported=exported,
            package=self.package,
        )
        self.graph.entities.append(entity)
        if kind != EntityKind.FILE:
            self.by_name.setdefault(name, []).append(entity)
            short = name.rsplit(".", 1)[-1]
            if short != name:
                self.by_name.setdefault(short, []).append(entity)
            self.add_rel(self.file_id, eid, RelType.DEFINES)
            if exported:
                self.add_rel(self.file_id, eid, RelType.EXPORTS)
        return entity

    def add_rel(self, from_id: str, to_id: Optional[str], rel_type: str,
                target_name: Optional[str] = None,
                target_kinds: tuple[str, ...] = ()) -> None:
        rel = GraphRelationship(
            from_id=from_id,
            to_id=to_id,
            type=rel_type,
            file_path=self.rel_path,
            target_name=target_name if to_id is None else None,
            target_kinds=target_kinds if to_id is None else (),
        )
        if rel.key() in self._rel_keys:
            return
        self._rel_keys.add(rel.key())
        self.graph.relationships.append(rel)

    def link_by_name(self, from_id: str, name: str, rel_type: str,
                     kinds: tuple[str, ...]) -> None:
        """Link to a same-file entity called *name*, else leave it unresolved."""
        local = [e for e in self.by_name.get(name, []) if e.kind in kinds]
        exact = [e for e in local if e.name == name]
        target = (exact or local or [None])[0]
        if target is not None:
            self.add_rel(from_id, target.id, rel_type)
        else:
            self.add_rel(from_id, None, rel_type, target_name=name, target_kinds=kinds)


def parse_source(
    source_bytes: bytes,
    language: str,
    rel_path: str,
    package: str,
    package_root: Optional[str] = None,
) -> FileGraph:
    """
    Parse raw source bytes into graph entities and relationships.

    Parameters
    ----------
    source_bytes:
        Raw bytes of the source code.
    language:
        One of ``python``, ``javascript``, ``typescript``, ``tsx``.
    rel_path:
        File path relative to the package root, ``/``-separated.
    package:
        Package name used in entity ids.
    package_root:
        Package directory; needed only to resolve relative imports to files.

    Returns
    -------
    FileGraph
        Always includes the file entity, even when parsing fails.
    """
    builder = _FileBuilder(package, rel_path, language)

    ts_parser = _get_ts_parser(language)
    if ts_parser is None:
        builder.graph.parse_error = "tree-sitter parser unavailable for this language"
        return builder.graph
    try:
        tree = ts_parser.parse(source_bytes)
    except Exception as exc:
        builder.graph.parse_error = f"Parse error: {exc}"
        return builder.graph

    root = tree.root_node
    lang_obj = _get_ts_language(language)
    queries = _QUERIES.get(language, {})
    is_python = language == "python"

    if is_python:
        dunder_all = _python_all(root)

        def exported_name(def_node, name: str) -> bool:
            if not _is_python_top_level(def_node):
                return False
            if dunder_all is not None:
                return name in dunder_all
            return not name.startswith("_")
    else:
        clause_names = _js_export_clause_names(root)

        def exported_name(def_node, name: str) -> bool:
            return _js_exported(def_node) or name in clause_names

    # ------------------------------------------------------------------ classes
    class_ranges: list[tuple[int, int, str]] = []
    heritage: list[tuple[str, list[str], list[str]]] = []
    for caps in _safe_query_matches(lang_obj, queries.get("classes", ""), root):
        def_node = _first_node(caps, "class.def")
        name = _text(_first_node(caps, "class.name"))
        if def_node is None or not name:
            continue
        entity = builder.add_entity(
            EntityKind.CLASS, name, def_node.start_point[0], exported_name(def_node, name)
        )
        class_ranges.append((def_node.start_point[0], def_node.end_point[0], name))
        if entity is None:
            continue
        if is_python:
            heritage.append((entity.id, _python_bases(_first_node(caps, "class.bases")), []))
        else:
            extends, implements = _heritage(def_node, language)
            heritage.append((entity.id, extends, implements))

    # ------------------------------------------------- interfaces / type aliases
    for caps in _safe_query_matches(lang_obj, queries.get("interfaces", ""), root):
        def_node = _first_node(caps, "iface.def")
        name = _text(_first_node(caps, "iface.name"))
        if def_node is None or not name:
            continue
        entity = builder.add_entity(
            EntityKind.INTERFACE, name, def_node.start_point[0], exported_name(def_node, name)
        )
        if entity is not None:
            extends, _ = _heritage(def_node, language)
            heritage.append((entity.id, extends, []))

    for caps in _safe_query_matches(lang_obj, queries.get("types", ""), root):
        def_node = _first_node(caps, "type.def")
        name = _text(_first_node(caps, "type.name"))
        if def_node is None or not name:
            continue
        builder.add_entity(
            EntityKind.TYPE, name, def_node.start_point[0], exported_name(def_node, name)
        )

    # ---------------------------------------------------------------- functions
    function_spans: list[tuple[int, int, str]] = []
    for caps in _safe_query_matches(lang_obj, queries.get("functions", ""), root):
        def_node = _first_node(caps, "func.def")
        name = _text(_first_node(caps, "func.name"))
        if def_node is None or not name:
            continue
        start, end = def_node.start_point[0], def_node.end_point[0]
        parent_class = _find_parent_class(start, end, class_ranges)
        if parent_class and (def_node.type == "method_definition" or is_python):
            qualified = f"{parent_class}.{name}"
            exported = False
        else:
            qualified = name
            exported = exported_name(def_node, name)
        entity = builder.add_entity(EntityKind.FUNCTION, qualified, start, exported)
        fid = entity.id if entity else entity_id(package, rel_path, EntityKind.FUNCTION, qualified)
        function_spans.append((start, end, fid))

    # ---------------------------------------------------------------- variables
    if is_python:
        for name, row in _python_variables(root):
            builder.add_entity(
                EntityKind.VARIABLE, name, row,
                (name in dunder_all) if dunder_all is not None else not name.startswith("_"),
            )
    else:
        for name, row, exported in _js_variables(root):
            builder.add_entity(EntityKind.VARIABLE, name, row, exported or name in clause_names)

    # ------------------------------------------------------ extends / implements
    for owner_id, extends, implements in heritage:
        for base in extends:
            builder.link_by_name(owner_id, base.rsplit(".", 1)[-1], RelType.EXTENDS,
                                 (EntityKind.CLASS, EntityKind.INTERFACE))
        for iface in implements:
            builder.link_by_name(owner_id, iface.rsplit(".", 1)[-1], RelType.IMPLEMENTS,
                                 (EntityKind.INTERFACE, EntityKind.CLASS))

    # ----------------------------------------------------------------- imports
    for caps in _safe_query_matches(lang_obj, queries.get("imports", ""), root):
        keyword = _first_node(caps, "req.keyword")
        if keyword is not None and _text(keyword) != "require":
            continue
        module = _strip_quotes(_text(_first_node(caps, "import.mod")))
        if not module:
            continue
        target = _resolve_import(language, module, rel_path, package_root)
        to_id = file_entity_id(package, target) if target else external_id(module)
        builder.add_rel(builder.file_id, to_id, RelType.IMPORTS)

    # -------------------------------------------------------------------- calls
    owners = _build_line_owner_map(function_spans)
    for caps in _safe_query_matches(lang_obj, queries.get("calls", ""), root):
        callee_node = _first_node(caps, "call.name", "call.method")
        callee = _text(callee_node)
        if not callee:
            continue
        caller = owners.get(callee_node.start_point[0], builder.file_id)
        builder.link_by_name(caller, callee, RelType.CALLS,
                             (EntityKind.FUNCTION, EntityKind.CLASS))

    return builder.graph


def parse_file(abs_path: str, rel_path: str, package: str,
               package_root: Optional[str] = None) -> FileGraph:
    """
    Parse a single source file.

    Handles read and parse errors gracefully: on failure the returned
    FileGraph has ``parse_error`` set and contains only the file entity.
    """
    language = detect_language(abs_path)
    if language is None:
        graph = _FileBuilder(package, rel_path, "unknown").graph
        graph.parse_error = "Unsupported file extension"
        return graph
    try:
        with open(abs_path, "rb") as fh:
            source_bytes = fh.read()
    except OSError as exc:
        graph = _FileBuilder(package, rel_path, language).graph
        graph.parse_error = f"Cannot read file: {exc}"
        return graph
    return parse_source(source_bytes, language, rel_path, package, package_root)


# ---------------------------------------------------------------------------
# Package discovery and file walking
# ---------------------------------------------------------------------------

_MANIFESTS = ("package.json", "pyproject.toml", "setup.py")
_PACKAGE_CONTAINERS = ("packages", "apps")

_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    "vendor", "venv", "env",
    "target", "coverage", "out",
    "eggs", "tests", "__tests__", "test",
})

_TEST_FILE_PATTERNS = (
    "*.test.*", "*.spec.*", "test_*.py", "*_test.py", "conftest.py",
)


def _manifest_name(directory: str) -> Optional[str]:
    """Return the package name declared by *directory*'s manifest, or None."""
    pkg_json = os.path.join(directory, "package.json")
    if os.path.isfile(pkg_json):
        try:
            with open(pkg_json, encoding="utf-8") as fh:
                name = json.load(fh).get("name")
            if name:
                return str(name)
        except (OSError, ValueError, AttributeError):
            logger.debug("Unreadable package.json in %s", directory)
    for manifest, pattern in (
        ("pyproject.toml", r'^\s*name\s*=\s*["\']([^"\']+)["\']'),
        ("setup.py", r'name\s*=\s*["\']([^"\']+)["\']'),
    ):
        path = os.path.join(directory, manifest)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, encoding="utf-8") as fh:
                match = re.search(pattern, fh.read(), re.MULTILINE)
        except OSError:
            continue
        if match:
            return match.group(1)
    return None


def _has_manifest(directory: str) -> bool:
    return any(os.path.isfile(os.path.join(directory, m)) for m in _MANIFESTS)


def discover_packages(root: str) -> list[PackageInfo]:
    """
    Enumerate package boundaries under *root*.

    Every direct child of ``packages/`` and ``apps/`` holding a manifest is a
    package; so is *root* itself when it has one (its scan then skips the
    container directories).  A root without any manifest is treated as one
    package named after the directory.
    """
    root = os.path.abspath(root)
    found: list[PackageInfo] = []
    for container in _PACKAGE_CONTAINERS:
        container_path = os.path.join(root, container)
        if not os.path.isdir(container_path):
            continue
        for entry in sorted(os.listdir(container_path)):
            path = os.path.join(container_path, entry)
            if os.path.isdir(path) and _has_manifest(path):
                found.append(PackageInfo(name=_manifest_name(path) or entry, path=path))

    if _has_manifest(root) or not found:
        excluded = tuple(c for c in _PACKAGE_CONTAINERS if found)
        name = _manifest_name(root) or os.path.basename(root)
        found.insert(0, PackageInfo(name=name, path=root, exclude_dirs=excluded))

    seen: set[str] = set()
    unique: list[PackageInfo] = []
    for pkg in found:
        if pkg.name in seen:
            logger.warning("Duplicate package name %s at %s; skipping", pkg.name, pkg.path)
            continue
        seen.add(pkg.name)
        unique.append(pkg)
    return unique


def _load_gitignore_patterns(directory: str) -> list[str]:
    gi_path = os.path.join(directory, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip().rstrip("/")
            if line and not line.startswith(("#", "!")):
                patterns.append(line)
    return patterns


def _is_ignored(rel_path: str, patterns: list[str]) -> bool:
    name = os.path.basename(rel_path)
    return any(
        fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel_path, p) for p in patterns
    )


def find_source_files(package_path: str, exclude_dirs: Iterable[str] = ()) -> list[str]:
    """
    Return absolute paths of parseable, non-test source files under *package_path*.

    Skips build output, dependency and test directories, hidden directories,
    test files and anything matched by the package's ``.gitignore``.
    """
    package_path = os.path.abspath(package_path)
    excluded = set(exclude_dirs)
    gi_patterns = _load_gitignore_patterns(package_path)
    results: list[str] = []

    for dirpath, dirnames, filenames in os.walk(package_path, topdown=True):
        at_root = dirpath == package_path
        dirnames[:] = [
            d for d in dirnames
            if d not in _SKIP_DIRS
            and not d.startswith(".")
            and not (at_root and d in excluded)
            and not _is_ignored(
                _norm(os.path.relpath(os.path.join(dirpath, d), package_path)), gi_patterns
            )
        ]
        for fname in filenames:
            if detect_language(fname) is None:
                continue
            if any(fnmatch.fnmatch(fname, p) for p in _TEST_FILE_PATTERNS):
                continue
            abs_path = os.path.join(dirpath, fname)
            if _is_ignored(_norm(os.path.relpath(abs_path, package_path)), gi_patterns):
                continue
            results.append(abs_path)

    return sorted(results)


def parse_package(
    path: str,
    name: str,
    files: Optional[Iterable[str]] = None,
    exclude_dirs: Iterable[str] = (),
) -> ParseResult:
    """
    Parse every source file of a package, or only *files*.

    Parameters
    ----------
    path:
        Package root directory.
    name:
        Package name used in entity ids.
    files:
        Optional subset of files (absolute, or relative to *path*).
    exclude_dirs:
        Top-level directories to skip when walking the whole package.

    Returns
    -------
    ParseResult
        Entities and relationships of all parsed files, plus ``stats``.
    """
    start = time.time()
    path = os.path.abspath(path)
    if files is None:
        targets = find_source_files(path, exclude_dirs)
    else:
        targets = [f if os.path.isabs(f) else os.path.join(path, f) for f in files]

    result = ParseResult(package=name)
    errors = 0
    for abs_path in targets:
        rel_path = _norm(os.path.relpath(abs_path, path))
        graph = parse_file(abs_path, rel_path, name, path)
        if graph.parse_error:
            errors += 1
            logger.warning("Parse error in %s: %s", rel_path, graph.parse_error)
        result.files.append(rel_path)
        result.entities.extend(graph.entities)
        result.relationships.extend(graph.relationships)

    result.stats = {
        "files": len(result.files),
        "entities": len(result.entities),
        "relationships": len(result.relationships),
        "errors": errors,
        "elapsed_ms": int((time.time() - start) * 1000),
    }
    return result
