"""
Tree-sitter symbol and import extraction for the code index.

Supports: TypeScript (.ts/.mts/.cts), TSX, JavaScript (.js/.jsx/.mjs/.cjs)
and Python (.py/.pyi).

Uses tree-sitter >= 0.22 API with individual language packages.  Each
top-level declaration is extracted on its own: a construct that cannot be
handled is recorded as a non-fatal error and the rest of the file is still
indexed.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data classes returned by the parsers
# ---------------------------------------------------------------------------

SYMBOL_KINDS = (
    "function", "class", "interface", "type", "enum",
    "const", "variable", "method", "property",
)


@dataclass(frozen=True)
class ParsedSymbol:
    """A declaration extracted from source code."""
    name: str
    kind: str
    line: int
    end_line: int
    exported: bool = False
    is_default: bool = False
    scope: Optional[str] = None       # enclosing class / namespace
    signature: Optional[str] = None


@dataclass(frozen=True)
class ParsedImport:
    """One imported binding.  ``imported_name`` is ``"*"`` for side-effect
    and namespace imports."""
    imported_name: str
    source_path: str
    line: int
    local_name: Optional[str] = None
    is_default: bool = False
    is_namespace: bool = False
    is_type: bool = False


@dataclass
class ParseResult:
    """Everything extracted from a single file."""
    language: str
    symbols: list[ParsedSymbol] = field(default_factory=list)
    imports: list[ParsedImport] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors)


# ---------------------------------------------------------------------------
# Grammar loading
# ---------------------------------------------------------------------------

# Cache Language objects to avoid repeated construction; parsers are
# per-thread since a tree-sitter Parser must not be shared across threads.
_LANG_CACHE: dict[str, object] = {}
_LANG_LOCK = threading.Lock()
_local = threading.local()


def _load_language(grammar: str):
    import tree_sitter as ts  # type: ignore

    if grammar == "typescript":
        import tree_sitter_typescript as m  # type: ignore
        return ts.Language(m.language_typescript())
    if grammar == "tsx":
        import tree_sitter_typescript as m  # type: ignore
        return ts.Language(m.language_tsx())
    if grammar == "javascript":
        import tree_sitter_javascript as m  # type: ignore
        return ts.Language(m.language())
    if grammar == "python":
        import tree_sitter_python as m  # type: ignore
        return ts.Language(m.language())
    raise ValueError(f"unknown grammar {grammar!r}")


def _get_ts_language(grammar: str):
    """Return the cached tree_sitter.Language for *grammar*."""
    with _LANG_LOCK:
        if grammar not in _LANG_CACHE:
            _LANG_CACHE[grammar] = _load_language(grammar)
        return _LANG_CACHE[grammar]


def _get_ts_parser(grammar: str):
    """Return this thread's tree-sitter Parser for *grammar*."""
    cache = getattr(_local, "parsers", None)
    if cache is None:
        cache = _local.parsers = {}
    if grammar not in cache:
        import tree_sitter as ts  # type: ignore
        cache[grammar] = ts.Parser(_get_ts_language(grammar))
    return cache[grammar]


# ---------------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def _line(node) -> int:
    return node.start_point[0] + 1


def _end_line(node) -> int:
    return node.end_point[0] + 1


def _has_token(node, token: str) -> bool:
    """True if *node* has a direct (anonymous) child token *token*."""
    return any(child.type == token for child in node.children)


def _string_value(node) -> str:
    raw = _text(node).strip()
    for prefix in ("r", "b", "u", "f", "rb", "br"):
        if raw.lower().startswith(prefix) and raw[len(prefix):len(prefix) + 1] in "\"'":
            raw = raw[len(prefix):]
            break
    for q in ('"""', "'''", '"', "'", "`"):
        if raw.startswith(q) and raw.endswith(q) and len(raw) >= 2 * len(q):
            return raw[len(q):-len(q)]
    return raw


def _syntax_errors(root, limit: int = 20) -> list[str]:
    """Describe ERROR and MISSING nodes as ``"line N: ..."`` strings."""
    if not root.has_error:
        return []
    errors: list[str] = []
    stack = [root]
    while stack and len(errors) < limit:
        node = stack.pop()
        if node.type == "ERROR":
            snippet = " ".join(_text(node).split())[:40]
            errors.append(f"line {_line(node)}: syntax error near {snippet!r}")
            continue
        if node.is_missing:
            errors.append(f"line {_line(node)}: missing {node.type!r}")
            continue
        if node.has_error:
            stack.extend(reversed(node.children))
    return errors


# ---------------------------------------------------------------------------
# ECMAScript (TypeScript / TSX / JavaScript) extraction
# ---------------------------------------------------------------------------

_FUNCTION_VALUES = {
    "arrow_function", "function_expression", "function", "generator_function",
}
_FUNCTION_DECLS = {"function_declaration", "generator_function_declaration"}
_CLASS_DECLS = {"class_declaration", "abstract_class_declaration", "class"}
_NAMESPACE_DECLS = {"internal_module", "module"}


def _ecma_signature(node) -> Optional[str]:
    """``<T>(params): Ret`` for functions, methods and arrow functions."""
    params = node.child_by_field_name("parameters")
    if params is None:
        single = node.child_by_field_name("parameter")
        params_text = f"({_text(single)})" if single is not None else "()"
    else:
        params_text = _text(params)
    type_params = node.child_by_field_name("type_parameters")
    ret = node.child_by_field_name("return_type")
    sig = _text(type_params) + params_text + _text(ret)
    return " ".join(sig.split()) or None


def _type_annotation(node) -> Optional[str]:
    ann = node.child_by_field_name("type")
    if ann is None:
        return None
    return " ".join(_text(ann).lstrip(":").split()) or None


class _EcmaExtractor:
    """Walks one ECMAScript syntax tree."""

    def __init__(self) -> None:
        self.symbols: list[ParsedSymbol] = []
        self.imports: list[ParsedImport] = []
        self.errors: list[str] = []
        self._exported_names: set[str] = set()
        self._default_names: set[str] = set()

    def run(self, root) -> None:
        self._statements(root.named_children, scope=None)
        self._apply_export_clauses()

    # -- statements ------------------------------------------------------

    def _statements(self, nodes, scope: Optional[str]) -> None:
        for node in nodes:
            try:
                self._statement(node, scope)
            except Exception as exc:
                msg = f"line {_line(node)}: cannot extract {node.type}: {exc}"
                logger.debug(msg)
                self.errors.append(msg)

    def _statement(self, node, scope, exported=False, is_default=False) -> None:
        t = node.type
        if t == "import_statement":
            self._import(node)
        elif t == "export_statement":
            self._export(node, scope)
        elif t in _FUNCTION_DECLS:
            self._add(node, "function", scope, exported, is_default,
                      signature=_ecma_signature(node))
        elif t in _CLASS_DECLS:
            self._class(node, scope, exported, is_default)
        elif t == "interface_declaration":
            self._add(node, "interface", scope, exported, is_default)
        elif t == "type_alias_declaration":
            value = node.child_by_field_name("value")
            self._add(node, "type", scope, exported, is_default,
                      signature=" ".join(_text(value).split()) or None)
        elif t == "enum_declaration":
            self._add(node, "enum", scope, exported, is_default)
        elif t in ("lexical_declaration", "variable_declaration"):
            self._variables(node, scope, exported)
        elif t == "ERROR":
            # Recover declarations swallowed by a syntax error.
            self._statements(node.named_children, scope)
        elif t == "ambient_declaration":
            for child in node.named_children:
                self._statement(child, scope, exported, is_default)
        elif t in _NAMESPACE_DECLS:
            self._namespace(node, scope)
        elif t == "expression_statement":
            child = node.named_children[0] if node.named_children else None
            if child is None:
                return
            if child.type in _NAMESPACE_DECLS:
                self._namespace(child, scope)
            elif self._is_require(child):
                self.imports.append(ParsedImport(
                    imported_name="*", source_path=self._require_source(child), line=_line(node),
                ))

    def _add(self, node, kind, scope, exported, is_default, signature=None, name=None) -> None:
        if name is None:
            name_node = node.child_by_field_name("name")
            name = _text(name_node) if name_node is not None else ("default" if is_default else "")
        if not name:
            return
        self.symbols.append(ParsedSymbol(
            name=name,
            kind=kind,
            line=_line(node),
            end_line=_end_line(node),
            exported=exported,
            is_default=is_default,
            scope=scope,
            signature=signature,
        ))

    def _namespace(self, node, scope) -> None:
        name = _string_value(node.child_by_field_name("name"))
        body = node.child_by_field_name("body")
        if body is None:
            return
        inner = f"{scope}.{name}" if scope else name
        self._statements(body.named_children, scope=inner)

    # -- exports ---------------------------------------------------------

    def _export(self, node, scope) -> None:
        is_default = _has_token(node, "default")
        decl = node.child_by_field_name("declaration")
        if decl is not None:
            self._statement(decl, scope, exported=True, is_default=is_default)
            return
        if node.child_by_field_name("source") is not None:
            # Re-export: refers to symbols defined elsewhere.
            return
        value = node.child_by_field_name("value")
        if value is not None and is_default:
            if value.type == "identifier":
                self._exported_names.add(_text(value))
                self._default_names.add(_text(value))
            elif value.type in _FUNCTION_VALUES:
                self._add(value, "function", scope, True, True, signature=_ecma_signature(value))
            elif value.type in _CLASS_DECLS:
                self._class(value, scope, True, True)
            return
        for child in node.named_children:
            if child.type != "export_clause":
                continue
            for spec in child.named_children:
                if spec.type != "export_specifier":
                    continue
                local = _text(spec.child_by_field_name("name"))
                alias = _text(spec.child_by_field_name("alias"))
                self._exported_names.add(local)
                if alias == "default":
                    self._default_names.add(local)

    def _apply_export_clauses(self) -> None:
        if not self._exported_names:
            return
        self.symbols = [
            dataclasses.replace(
                s, exported=True, is_default=s.is_default or s.name in self._default_names,
            )
            if s.scope is None and s.name in self._exported_names and not s.exported
            else s
            for s in self.symbols
        ]

    # -- classes ---------------------------------------------------------

    def _class(self, node, scope, exported, is_default) -> None:
        name_node = node.child_by_field_name("name")
        name = _text(name_node) if name_node is not None else ("default" if is_default else "")
        if not name:
            return
        self._add(node, "class", scope, exported, is_default, name=name)
        body = node.child_by_field_name("body")
        if body is None:
            return
        member_scope = f"{scope}.{name}" if scope else name
        for member in body.named_children:
            try:
                self._member(member, member_scope)
            except Exception as exc:
                msg = f"line {_line(member)}: cannot extract member of {name}: {exc}"
                logger.debug(msg)
                self.errors.append(msg)

    def _member(self, node, scope) -> None:
        t = node.type
        if t in ("method_definition", "abstract_method_signature"):
            accessor = _has_token(node, "get") or _has_token(node, "set")
            if accessor and _has_token(node, "set"):
                # The getter already records the property.
                return
            kind = "property" if accessor else "method"
            sig = _type_annotation_of_return(node) if accessor else _ecma_signature(node)
            self._add(node, kind, scope, False, False, signature=sig)
        elif t in ("public_field_definition", "field_definition"):
            name_node = node.child_by_field_name("name") or node.child_by_field_name("property")
            self._add(node, "property", scope, False, False,
                      signature=_type_annotation(node), name=_text(name_node))

    # -- variables -------------------------------------------------------

    def _variables(self, node, scope, exported) -> None:
        is_const = node.children[0].type == "const" if node.children else False
        for decl in node.named_children:
            if decl.type != "variable_declarator":
                continue
            name_node = decl.child_by_field_name("name")
            value = decl.child_by_field_name("value")
            if value is not None and self._is_require(value):
                self._require_import(name_node, value)
                continue
            if name_node is None or name_node.type != "identifier":
                continue
            if value is not None and value.type in _FUNCTION_VALUES:
                kind, sig = "function", _ecma_signature(value)
            else:
                kind, sig = ("const" if is_const else "variable"), _type_annotation(decl)
            self.symbols.append(ParsedSymbol(
                name=_text(name_node),
                kind=kind,
                line=_line(decl),
                end_line=_end_line(decl),
                exported=exported,
                scope=scope,
                signature=sig,
            ))

    # -- imports ---------------------------------------------------------

    @staticmethod
    def _is_require(node) -> bool:
        if node.type != "call_expression":
            return False
        func = node.child_by_field_name("function")
        args = node.child_by_field_name("arguments")
        return (
            func is not None and _text(func) == "require"
            and args is not None and args.named_child_count == 1
            and args.named_children[0].type in ("string", "template_string")
        )

    @staticmethod
    def _require_source(call) -> str:
        return _string_value(call.child_by_field_name("arguments").named_children[0])

    def _require_import(self, name_node, call) -> None:
        source = self._require_source(call)
        line = _line(call)
        if name_node is not None and name_node.type == "identifier":
            self.imports.append(ParsedImport(
                imported_name="default", source_path=source, line=line,
                local_name=_text(name_node), is_default=True,
            ))
        elif name_node is not None and name_node.type == "object_pattern":
            for prop in name_node.named_children:
                if prop.type == "shorthand_property_identifier_pattern":
                    self.imports.append(ParsedImport(
                        imported_name=_text(prop), source_path=source, line=line,
                        local_name=_text(prop),
                    ))
                elif prop.type == "pair_pattern":
                    key = prop.child_by_field_name("key")
                    val = prop.child_by_field_name("value")
                    self.imports.append(ParsedImport(
                        imported_name=_text(key), source_path=source, line=line,
                        local_name=_text(val),
                    ))

    def _import(self, node) -> None:
        line = _line(node)
        type_only = _has_token(node, "type")
        source_node = node.child_by_field_name("source")
        clause = None
        for child in node.named_children:
            if child.type == "import_clause":
                clause = child
            elif child.type == "import_require_clause":
                # TypeScript: import x = require('y')
                ident = child.named_children[0]
                src = child.child_by_field_name("source")
                self.imports.append(ParsedImport(
                    imported_name="default", source_path=_string_value(src), line=line,
                    local_name=_text(ident), is_default=True, is_type=type_only,
                ))
                return
        if source_node is None:
            return
        source = _string_value(source_node)
        if clause is None:
            self.imports.append(ParsedImport(imported_name="*", source_path=source, line=line))
            return
        for child in clause.named_children:
            if child.type == "identifier":
                self.imports.append(ParsedImport(
                    imported_name="default", source_path=source, line=line,
                    local_name=_text(child), is_default=True, is_type=type_only,
                ))
            elif child.type == "namespace_import":
                ident = child.named_children[-1] if child.named_children else None
                self.imports.append(ParsedImport(
                    imported_name="*", source_path=source, line=line,
                    local_name=_text(ident) or None, is_namespace=True, is_type=type_only,
                ))
            elif child.type == "named_imports":
                for spec in child.named_children:
                    if spec.type != "import_specifier":
                        continue
                    name = _string_value(spec.child_by_field_name("name"))
                    alias = spec.child_by_field_name("alias")
                    self.imports.append(ParsedImport(
                        imported_name=name, source_path=source, line=line,
                        local_name=_text(alias) if alias is not None else name,
                        is_type=type_only or _has_token(spec, "type"),
                    ))


def _type_annotation_of_return(node) -> Optional[str]:
    ret = node.child_by_field_name("return_type")
    if ret is None:
        return None
    return " ".join(_text(ret).lstrip(":").split()) or None


# ---------------------------------------------------------------------------
# Python extraction
# ---------------------------------------------------------------------------

_CONST_RE = re.compile(r"^_?[A-Z][A-Z0-9_]*$")
_PROPERTY_DECORATORS = {"property", "cached_property", "functools.cached_property"}


class _PythonExtractor:
    """Walks one Python syntax tree."""

    def __init__(self) -> None:
        self.symbols: list[ParsedSymbol] = []
        self.imports: list[ParsedImport] = []
        self.errors: list[str] = []
        self._all: Optional[set[str]] = None

    def run(self, root) -> None:
        self._all = self._find_all(root)
        self._block(root.named_children, scope=None, type_only=False)

    def _exported(self, name: str, scope: Optional[str]) -> bool:
        if scope is not None:
            return False
        if self._all is not None:
            return name in self._all
        return not name.startswith("_")

    @staticmethod
    def _find_all(root) -> Optional[set[str]]:
        names: Optional[set[str]] = None
        for stmt in root.named_children:
            if stmt.type != "expression_statement" or not stmt.named_children:
                continue
            expr = stmt.named_children[0]
            if expr.type not in ("assignment", "augmented_assignment"):
                continue
            if _text(expr.child_by_field_name("left")) != "__all__":
                continue
            right = expr.child_by_field_name("right")
            if right is None or right.type not in ("list", "tuple"):
                continue
            values = {_string_value(s) for s in right.named_children if s.type == "string"}
            if expr.type == "assignment":
                names = values
            else:
                names = (names or set()) | values
        return names

    # -- statements ------------------------------------------------------

    def _block(self, nodes, scope, type_only) -> None:
        for node in nodes:
            try:
                self._statement(node, scope, type_only)
            except Exception as exc:
                msg = f"line {_line(node)}: cannot extract {node.type}: {exc}"
                logger.debug(msg)
                self.errors.append(msg)

    def _statement(self, node, scope, type_only) -> None:
        t = node.type
        if t == "function_definition":
            self._function(node, scope, [])
        elif t == "class_definition":
            self._class(node, scope)
        elif t == "decorated_definition":
            defn = node.child_by_field_name("definition")
            decorators = [
                _text(d).lstrip("@").strip() for d in node.named_children if d.type == "decorator"
            ]
            if defn is not None and defn.type == "function_definition":
                self._function(defn, scope, decorators)
            elif defn is not None and defn.type == "class_definition":
                self._class(defn, scope)
        elif t == "expression_statement":
            for child in node.named_children:
                if child.type == "assignment":
                    self._assignment(child, scope)
        elif t in ("import_statement", "import_from_statement"):
            self._import(node, type_only)
        elif t == "if_statement":
            checking = _text(node.child_by_field_name("condition")) in (
                "TYPE_CHECKING", "typing.TYPE_CHECKING",
            )
            self._nested(node.child_by_field_name("consequence"), scope, type_only or checking)
            for alt in node.children_by_field_name("alternative"):
                if alt.type == "elif_clause":
                    self._nested(alt.child_by_field_name("consequence"), scope, type_only)
                else:
                    self._nested(alt.child_by_field_name("body"), scope, type_only)
        elif t == "ERROR":
            self._block(node.named_children, scope, type_only)
        elif t in ("try_statement", "with_statement"):
            for child in node.named_children:
                if child.type == "block":
                    self._nested(child, scope, type_only)
                elif child.type in ("except_clause", "except_group_clause",
                                    "else_clause", "finally_clause"):
                    for sub in child.named_children:
                        if sub.type == "block":
                            self._nested(sub, scope, type_only)

    def _nested(self, block, scope, type_only) -> None:
        if block is not None:
            self._block(block.named_children, scope, type_only)

    def _function(self, node, scope, decorators: list[str]) -> None:
        name = _text(node.child_by_field_name("name"))
        if any(d.endswith((".setter", ".deleter")) for d in decorators):
            return
        if scope is None:
            kind = "function"
        elif any(d in _PROPERTY_DECORATORS for d in decorators):
            kind = "property"
        else:
            kind = "method"
        params = _text(node.child_by_field_name("parameters"))
        ret = node.child_by_field_name("return_type")
        sig = params + (f" -> {_text(ret)}" if ret is not None else "")
        self.symbols.append(ParsedSymbol(
            name=name,
            kind=kind,
            line=_line(node),
            end_line=_end_line(node),
            exported=self._exported(name, scope),
            scope=scope,
            signature=" ".join(sig.split()) or None,
        ))

    def _class(self, node, scope) -> None:
        name = _text(node.child_by_field_name("name"))
        supers = node.child_by_field_name("superclasses")
        self.symbols.append(ParsedSymbol(
            name=name,
            kind="class",
            line=_line(node),
            end_line=_end_line(node),
            exported=self._exported(name, scope),
            scope=scope,
            signature=_text(supers) or None,
        ))
        body = node.child_by_field_name("body")
        if body is not None:
            inner = f"{scope}.{name}" if scope else name
            self._block(body.named_children, inner, False)

    def _assignment(self, node, scope) -> None:
        left = node.child_by_field_name("left")
        if left is None or left.type != "identifier":
            return
        name = _text(left)
        if name == "__all__":
            return
        ann = node.child_by_field_name("type")
        self.symbols.append(ParsedSymbol(
            name=name,
            kind="const" if _CONST_RE.match(name) else "variable",
            line=_line(node),
            end_line=_end_line(node),
            exported=self._exported(name, scope),
            scope=scope,
            signature=_text(ann) or None,
        ))

    def _import(self, node, type_only) -> None:
        line = _line(node)
        if node.type == "import_statement":
            for name_node in node.children_by_field_name("name"):
                if name_node.type == "aliased_import":
                    module = _text(name_node.child_by_field_name("name"))
                    local = _text(name_node.child_by_field_name("alias"))
                else:
                    module = local = _text(name_node)
                self.imports.append(ParsedImport(
                    imported_name="*", source_path=module, line=line,
                    local_name=local, is_namespace=True, is_type=type_only,
                ))
            return

        module = _text(node.child_by_field_name("module_name"))
        if any(child.type == "wildcard_import" for child in node.named_children):
            self.imports.append(ParsedImport(
                imported_name="*", source_path=module, line=line,
                is_namespace=True, is_type=type_only,
            ))
            return
        for name_node in node.children_by_field_name("name"):
            if name_node.type == "aliased_import":
                name = _text(name_node.child_by_field_name("name"))
                local = _text(name_node.child_by_field_name("alias"))
            else:
                name = local = _text(name_node)
            self.imports.append(ParsedImport(
                imported_name=name, source_path=module, line=line,
                local_name=local, is_type=type_only,
            ))


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

class LanguageParser:
    """
    Base class: parse a file's text into a :class:`ParseResult`.

    Subclasses set ``language`` (stored in the index), ``grammar`` (the
    tree-sitter grammar) and ``extensions``.
    """

    language = ""
    grammar = ""
    extensions: tuple[str, ...] = ()

    def _extractor(self):
        raise NotImplementedError

    def parse(self, path: str, content) -> ParseResult:
        """
        Extract symbols and imports from *content*.

        Parameters
        ----------
        path:
            File path, used only in log messages.
        content:
            Source text (``str``) or raw bytes.

        Returns
        -------
        ParseResult
            ``errors`` lists non-fatal problems; a grammar that cannot be
            loaded yields a result with no symbols and one error.
        """
        source = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        result = ParseResult(language=self.language)
        try:
            tree = _get_ts_parser(self.grammar).parse(source)
        except Exception as exc:
            logger.warning("Cannot parse %s with tree-sitter %s: %s", path, self.grammar, exc)
            result.errors.append(f"tree-sitter {self.grammar} unavailable: {exc}")
            return result

        root = tree.root_node
        extractor = self._extractor()
        extractor.run(root)
        result.symbols = extractor.symbols
        result.imports = extractor.imports
        result.errors = _syntax_errors(root) + extractor.errors
        if result.errors:
            logger.debug("%s: %d parse errors", path, len(result.errors))
        return result


class TypeScriptParser(LanguageParser):
    language = "typescript"
    grammar = "typescript"
    extensions = (".ts", ".mts", ".cts")

    def _extractor(self):
        return _EcmaExtractor()


class TsxParser(TypeScriptParser):
    language = "tsx"
    grammar = "tsx"
    extensions = (".tsx",)


class JavaScriptParser(LanguageParser):
    language = "javascript"
    grammar = "javascript"
    extensions = (".js", ".jsx", ".mjs", ".cjs")

    def _extractor(self):
        return _EcmaExtractor()


class PythonParser(LanguageParser):
    language = "python"
    grammar = "python"
    extensions = (".py", ".pyi")

    def _extractor(self):
        return _PythonExtractor()


_PARSERS: tuple[LanguageParser, ...] = (
    TypeScriptParser(), TsxParser(), JavaScriptParser(), PythonParser(),
)

EXTENSION_TO_PARSER: dict[str, LanguageParser] = {
    ext: parser for parser in _PARSERS for ext in parser.extensions
}

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(EXTENSION_TO_PARSER)


def parser_for_path(path: str) -> Optional[LanguageParser]:
    """Return the parser for *path*'s extension, or None if unsupported."""
    return EXTENSION_TO_PARSER.get(os.path.splitext(path)[1].lower())


def parse_source(path: str, content) -> ParseResult:
    """Parse *content* with the parser selected by *path*'s extension."""
    parser = parser_for_path(path)
    if parser is None:
        from ..errors import ParseError
        raise ParseError(path, "unsupported file extension")
    return parser.parse(path, content)
