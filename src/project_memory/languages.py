"""Language table for symbol extraction.

Each supported language pairs a grammar from ``tree-sitter-language-pack``
with a query whose outer capture name is the symbol kind and whose ``@name``
capture is the symbol name. Extensions that are not in the table resolve to
``UNSUPPORTED``, which the indexer treats as "no symbols".
"""

import logging
import os
import threading

from pydantic import BaseModel
from tree_sitter import Parser, Query
from tree_sitter_language_pack import get_language

logger = logging.getLogger(__name__)


class LanguageSpec(BaseModel):
    name: str
    query: str = ""

    @property
    def supported(self) -> bool:
        return bool(self.query)


UNSUPPORTED = LanguageSpec(name="")


PYTHON_QUERY = """
(function_definition name: (identifier) @name) @function
(class_definition name: (identifier) @name) @class
(module
  (expression_statement
    (assignment left: (identifier) @name) @const)
  (#match? @name "^[A-Z][A-Z0-9_]*$"))
"""

RUST_QUERY = """
(function_item name: (identifier) @name) @function
(function_signature_item name: (identifier) @name) @function
(struct_item name: (type_identifier) @name) @struct
(enum_item name: (type_identifier) @name) @enum
(trait_item name: (type_identifier) @name) @trait
(impl_item type: (_) @name) @impl
(type_item name: (type_identifier) @name) @type_alias
(const_item name: (identifier) @name) @const
(static_item name: (identifier) @name) @const
(mod_item name: (identifier) @name) @module
"""

GO_QUERY = """
(function_declaration name: (identifier) @name) @function
(method_declaration name: (field_identifier) @name) @method
(type_spec name: (type_identifier) @name type: (struct_type)) @struct
(type_spec name: (type_identifier) @name type: (interface_type)) @interface
(type_alias name: (type_identifier) @name) @type_alias
(const_spec name: (identifier) @name) @const
"""

JAVASCRIPT_QUERY = """
(function_declaration name: (identifier) @name) @function
(generator_function_declaration name: (identifier) @name) @function
(class_declaration name: (identifier) @name) @class
(method_definition name: (property_identifier) @name) @method
(lexical_declaration
  (variable_declarator name: (identifier) @name value: (arrow_function))) @function
"""

TYPESCRIPT_QUERY = """
(function_declaration name: (identifier) @name) @function
(class_declaration name: (type_identifier) @name) @class
(abstract_class_declaration name: (type_identifier) @name) @class
(method_definition name: (property_identifier) @name) @method
(interface_declaration name: (type_identifier) @name) @interface
(type_alias_declaration name: (type_identifier) @name) @type_alias
(enum_declaration name: (identifier) @name) @enum
(lexical_declaration
  (variable_declarator name: (identifier) @name value: (arrow_function))) @function
"""

C_QUERY = """
(function_definition
  declarator: (function_declarator declarator: (identifier) @name)) @function
(struct_specifier name: (type_identifier) @name body: (field_declaration_list)) @struct
(enum_specifier name: (type_identifier) @name body: (enumerator_list)) @enum
(type_definition declarator: (type_identifier) @name) @type_alias
"""

CPP_QUERY = """
(function_definition
  declarator: (function_declarator declarator: (identifier) @name)) @function
(function_definition
  declarator: (function_declarator declarator: (qualified_identifier) @name)) @function
(function_definition
  declarator: (function_declarator declarator: (field_identifier) @name)) @method
(class_specifier name: (type_identifier) @name body: (field_declaration_list)) @class
(struct_specifier name: (type_identifier) @name body: (field_declaration_list)) @struct
(enum_specifier name: (type_identifier) @name body: (enumerator_list)) @enum
(namespace_definition name: (namespace_identifier) @name) @module
(type_definition declarator: (type_identifier) @name) @type_alias
"""

JAVA_QUERY = """
(class_declaration name: (identifier) @name) @class
(interface_declaration name: (identifier) @name) @interface
(enum_declaration name: (identifier) @name) @enum
(method_declaration name: (identifier) @name) @method
(constructor_declaration name: (identifier) @name) @method
"""

RUBY_QUERY = """
(class name: (constant) @name) @class
(module name: (constant) @name) @module
(method name: (_) @name) @function
(singleton_method name: (_) @name) @method
"""

LANGUAGES: dict[str, LanguageSpec] = {
    "python": LanguageSpec(name="python", query=PYTHON_QUERY),
    "rust": LanguageSpec(name="rust", query=RUST_QUERY),
    "go": LanguageSpec(name="go", query=GO_QUERY),
    "javascript": LanguageSpec(name="javascript", query=JAVASCRIPT_QUERY),
    "typescript": LanguageSpec(name="typescript", query=TYPESCRIPT_QUERY),
    "tsx": LanguageSpec(name="tsx", query=TYPESCRIPT_QUERY),
    "c": LanguageSpec(name="c", query=C_QUERY),
    "cpp": LanguageSpec(name="cpp", query=CPP_QUERY),
    "java": LanguageSpec(name="java", query=JAVA_QUERY),
    "ruby": LanguageSpec(name="ruby", query=RUBY_QUERY),
}

EXTENSIONS: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".go": "go",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".hh": "cpp",
    ".hpp": "cpp",
    ".hxx": "cpp",
    ".java": "java",
    ".rb": "ruby",
}

# Parsers are not safe to share across threads; queries are.
_local = threading.local()
_queries: dict[str, Query] = {}


def language_for_path(path: str) -> LanguageSpec:
    ext = os.path.splitext(path)[1].lower()
    name = EXTENSIONS.get(ext)
    if name is None:
        return UNSUPPORTED
    return LANGUAGES.get(name, UNSUPPORTED)


def register_language(spec: LanguageSpec, extensions: list[str]) -> None:
    """Add or replace a language and route ``extensions`` to it."""
    LANGUAGES[spec.name] = spec
    for ext in extensions:
        EXTENSIONS[ext if ext.startswith(".") else f".{ext}"] = spec.name
    _local.__dict__.get("parsers", {}).pop(spec.name, None)
    _queries.pop(spec.name, None)


def get_parser(spec: LanguageSpec) -> Parser:
    parsers = _local.__dict__.setdefault("parsers", {})
    if spec.name not in parsers:
        parsers[spec.name] = Parser(get_language(spec.name))
    return parsers[spec.name]


def get_query(spec: LanguageSpec) -> Query:
    if spec.name not in _queries:
        _queries[spec.name] = Query(get_language(spec.name), spec.query)
    return _queries[spec.name]
