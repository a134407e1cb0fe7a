"""
Completion context classification.

Regex heuristics over the document text, not a parser. Known approximations:
- Quote parity ignores escaped quotes, so ``'it\\'s'`` reads as inside a string
- ``//`` inside a string literal marks the cursor as inside a comment
- Multi-line template literals and nested comments are not tracked
- in_function stops at the first line closing a block without opening one,
  so a cursor after a nested block can read as outside its function

``extract_context(text, position)`` is the only entry point the rest of the
system depends on.
"""
import re
from collections import OrderedDict
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, List, Optional, Sequence

from codeintel.core.logging import get_logger
from codeintel.models.completion import (
    CompletionContext,
    CompletionKind,
    FunctionInfo,
    ImportInfo,
    Position,
    SemanticContext,
    SymbolInfo,
    SymbolKind,
    SyntaxContext,
    UsagePattern,
    VariableInfo,
)
from codeintel.models.requests import ProjectContext

logger = get_logger(__name__)

SURROUNDING_LINES = 5
AVAILABLE_TYPES = ["string", "number", "boolean", "object", "array", "function"]

MEMBER_ACCESS_RE = re.compile(r"\w+\.\s*$")
FUNCTION_CALL_RE = re.compile(r"\w+\(\s*$")
VARIABLE_DECLARATION_RE = re.compile(r"(const|let|var)\s+\w+\s*=\s*$")
IMPORT_STATEMENT_RE = re.compile(r"import\s*\{\s*\w*$")
TYPE_ANNOTATION_RE = re.compile(r":\s*$")
KEYWORD_RE = re.compile(r"^\s*\w*$")

FUNCTION_START_RE = re.compile(r"function\s+\w+|=>\s*{|\w+\s*\([^)]*\)\s*{")
CLASS_RE = re.compile(r"class\s+(\w+)")

IMPORT_FROM_RE = re.compile(r"""^import\s+.*?from\s+['"]([^'"]+)['"];?$""", re.MULTILINE)
PY_IMPORT_RE = re.compile(r"^\s*import\s+([\w.]+)(?:\s+as\s+\w+)?\s*$", re.MULTILINE)
PY_FROM_IMPORT_RE = re.compile(r"^\s*from\s+([\w.]+)\s+import\s+", re.MULTILINE)
IMPORTED_MODULE_RE = re.compile(r"""import\s+(?:(\w+)|{([^}]+)})\s+from\s+['"]([^'"]+)['"];?""")
FUNCTION_DECL_RE = re.compile(
    r"(?:function\s+|const\s+|let\s+)(\w+)\s*(?:=\s*)?(?:async\s+)?(?:function\s*)?\([^)]*\)"
)
VARIABLE_DECL_RE = re.compile(r"(const|let|var)\s+(\w+)(?:\s*:\s*([\w.<>\[\]|]+))?")
RETURN_RE = re.compile(r"return\s+$")
ASSIGNMENT_RE = re.compile(r"(\w+)\s*=\s*$")
RETURN_TYPE_RE = re.compile(r"\)\s*:\s*([\w.<>\[\]|]+)\s*{|\)\s*->\s*([\w.\[\], ]+?)\s*:")

BUILTIN_SYMBOLS = {
    "javascript": [
        SymbolInfo(
            name="console",
            type="Console",
            kind=SymbolKind.VARIABLE,
            scope="global",
            documentation="The console object provides access to the browser's debugging console.",
        ),
        SymbolInfo(
            name="setTimeout",
            type="(callback: Function, delay: number) => number",
            kind=SymbolKind.FUNCTION,
            scope="global",
            documentation="Sets a timer which executes a function once the timer expires.",
        ),
    ],
}
BUILTIN_SYMBOLS["typescript"] = BUILTIN_SYMBOLS["javascript"]


def _line_of(text: str, index: int) -> int:
    return text.count("\n", 0, index)


def classify_completion_kind(before_cursor: str) -> CompletionKind:
    """Completion kind from the text between line start and cursor."""
    if MEMBER_ACCESS_RE.search(before_cursor):
        return CompletionKind.MEMBER_ACCESS
    if FUNCTION_CALL_RE.search(before_cursor):
        return CompletionKind.FUNCTION_CALL
    if VARIABLE_DECLARATION_RE.search(before_cursor):
        return CompletionKind.VARIABLE_DECLARATION
    if IMPORT_STATEMENT_RE.search(before_cursor):
        return CompletionKind.IMPORT_STATEMENT
    if TYPE_ANNOTATION_RE.search(before_cursor):
        return CompletionKind.TYPE_ANNOTATION
    if KEYWORD_RE.search(before_cursor) and "." not in before_cursor:
        return CompletionKind.KEYWORD
    return CompletionKind.GENERIC_EXPRESSION


def is_in_string(before_cursor: str) -> bool:
    return any(before_cursor.count(quote) % 2 == 1 for quote in ("'", '"', "`"))


def is_in_comment(before_cursor: str, lines: Sequence[str], line: int) -> bool:
    if "//" in before_cursor:
        return True
    preceding = "\n".join(lines[:line] + [before_cursor])
    return preceding.count("/*") > preceding.count("*/")


def is_in_function(lines: Sequence[str], line: int) -> bool:
    for i in range(min(line, len(lines) - 1), -1, -1):
        text = lines[i]
        if FUNCTION_START_RE.search(text):
            return True
        if "}" in text and "{" not in text:
            return False
    return False


def is_in_class(lines: Sequence[str], line: int) -> bool:
    return any(CLASS_RE.search(lines[i]) for i in range(min(line, len(lines) - 1), -1, -1))


def is_in_block(lines: Sequence[str], line: int) -> bool:
    depth = 0
    for i in range(min(line, len(lines) - 1), -1, -1):
        depth += lines[i].count("{") - lines[i].count("}")
    return depth > 0


def analyze_syntax(lines: Sequence[str], position: Position) -> SyntaxContext:
    current = lines[position.line] if position.line < len(lines) else ""
    before_cursor = current[: position.character]
    after_cursor = current[position.character:]

    preceding = before_cursor.split()
    following = after_cursor.split()

    return SyntaxContext(
        in_string=is_in_string(before_cursor),
        in_comment=is_in_comment(before_cursor, list(lines), position.line),
        in_function=is_in_function(lines, position.line),
        in_class=is_in_class(lines, position.line),
        in_block=is_in_block(lines, position.line),
        preceding_token=preceding[-1] if preceding else None,
        following_token=following[0] if following else None,
        indentation_level=len(current) - len(current.lstrip()),
    )


def parse_imports(text: str) -> List[str]:
    modules = [m.group(1) for m in IMPORT_FROM_RE.finditer(text)]
    modules.extend(m.group(1) for m in PY_IMPORT_RE.finditer(text))
    modules.extend(m.group(1) for m in PY_FROM_IMPORT_RE.finditer(text))
    return modules


def parse_imported_modules(text: str) -> List[ImportInfo]:
    imported: List[ImportInfo] = []
    for match in IMPORTED_MODULE_RE.finditer(text):
        default_name, named, module = match.groups()
        if default_name:
            imported.append(ImportInfo(module=module, imports=[default_name], is_default=True))
        elif named:
            names = [name.strip() for name in named.split(",") if name.strip()]
            imported.append(ImportInfo(module=module, imports=names, is_default=False))
    return imported


def extract_functions(text: str) -> List[FunctionInfo]:
    return [
        FunctionInfo(name=m.group(1), line=_line_of(text, m.start()))
        for m in FUNCTION_DECL_RE.finditer(text)
    ]


def extract_variables(text: str, cursor_line: int) -> List[VariableInfo]:
    variables: List[VariableInfo] = []
    for match in VARIABLE_DECL_RE.finditer(text):
        line = _line_of(text, match.start())
        if line <= cursor_line:
            variables.append(
                VariableInfo(name=match.group(2), line=line, type=match.group(3) or "unknown")
            )
    return variables


def enclosing_return_type(lines: Sequence[str], line: int) -> Optional[str]:
    for i in range(min(line, len(lines) - 1), -1, -1):
        match = RETURN_TYPE_RE.search(lines[i])
        if match:
            return (match.group(1) or match.group(2)).strip()
    return None


def enclosing_scope(lines: Sequence[str], line: int) -> List[str]:
    """Scope chain, outermost first: global, then enclosing class."""
    for i in range(min(line, len(lines) - 1), -1, -1):
        match = CLASS_RE.search(lines[i])
        if match:
            return ["global", match.group(1)]
    return ["global"]


def expected_type_at(
    before_cursor: str,
    variables: Sequence[VariableInfo],
    semantic: SemanticContext,
) -> Optional[str]:
    if RETURN_RE.search(before_cursor):
        return semantic.expected_return_type
    match = ASSIGNMENT_RE.search(before_cursor)
    if match:
        for variable in reversed(variables):
            if variable.name == match.group(1) and variable.type != "unknown":
                return variable.type
    return None


class CompletionContextClassifier:
    """
    Builds a CompletionContext for a cursor position.

    Keeps one process-wide piece of state: accepted-completion usage patterns
    per file, an LRU bounded by ``usage_pattern_capacity`` files.
    """

    def __init__(self, usage_pattern_capacity: int = 1000):
        self.usage_pattern_capacity = usage_pattern_capacity
        self._usage_patterns: "OrderedDict[str, List[UsagePattern]]" = OrderedDict()
        self._lock = Lock()

    def builtin_symbols(self, language: str) -> List[SymbolInfo]:
        return list(BUILTIN_SYMBOLS.get(language.lower(), []))

    def local_symbols(
        self,
        functions: Iterable[FunctionInfo],
        variables: Iterable[VariableInfo],
    ) -> List[SymbolInfo]:
        symbols: List[SymbolInfo] = []
        seen = set()
        for fn in functions:
            if fn.name not in seen:
                seen.add(fn.name)
                symbols.append(SymbolInfo(name=fn.name, kind=SymbolKind.FUNCTION, scope="local"))
        for var in variables:
            if var.name not in seen:
                seen.add(var.name)
                symbols.append(
                    SymbolInfo(name=var.name, type=var.type, kind=SymbolKind.VARIABLE, scope="local")
                )
        return symbols

    def imported_symbols(self, imported: Iterable[ImportInfo]) -> List[SymbolInfo]:
        symbols: List[SymbolInfo] = []
        for info in imported:
            for name in info.imports:
                # "a as b" binds b
                local_name = name.split(" as ")[-1].strip()
                symbols.append(
                    SymbolInfo(
                        name=local_name,
                        kind=SymbolKind.MODULE if info.is_default else SymbolKind.VARIABLE,
                        scope="imported",
                        documentation=f"Imported from {info.module}",
                    )
                )
        return symbols

    def extract_context(
        self,
        text: str,
        position: Position,
        file: str = "untitled",
        project_context: Optional[ProjectContext] = None,
        symbols: Optional[Sequence[SymbolInfo]] = None,
    ) -> CompletionContext:
        """
        Classify the cursor position in ``text``.

        ``symbols`` are caller-supplied candidates (e.g. from a language
        server); locally declared, imported and built-in symbols are added.
        Inside strings and comments the candidate list is empty.
        """
        lines = text.split("\n")
        line = min(position.line, max(len(lines) - 1, 0))
        current = lines[line] if lines else ""
        before_cursor = current[: position.character]

        completion_type = classify_completion_kind(before_cursor)
        syntax = analyze_syntax(lines, Position(line=line, character=position.character))

        imported_modules = parse_imported_modules(text)
        semantic = SemanticContext(
            expected_return_type=enclosing_return_type(lines, line),
            available_types=list(AVAILABLE_TYPES),
            imported_modules=imported_modules,
        )

        functions = extract_functions(text)
        variables = extract_variables(text, line)
        expected_type = expected_type_at(before_cursor, variables, semantic)

        language = project_context.language if project_context else "typescript"
        candidates: List[SymbolInfo] = list(symbols or [])
        candidates.extend(self.local_symbols(functions, variables))
        candidates.extend(self.imported_symbols(imported_modules))
        candidates.extend(self.builtin_symbols(language))
        if syntax.in_string or syntax.in_comment:
            candidates = []

        start = max(0, line - SURROUNDING_LINES)
        surrounding = "\n".join(lines[start: line + SURROUNDING_LINES + 1])

        context = CompletionContext(
            current_file=file,
            cursor_position=position,
            surrounding_code=surrounding,
            imports=parse_imports(text),
            functions=functions,
            variables=variables,
            scope=enclosing_scope(lines, line),
            completion_type=completion_type,
            expected_type=expected_type,
            available_symbols=candidates,
            recent_usage=self.get_usage_patterns(file),
            syntax_context=syntax,
            semantic_context=semantic,
        )

        logger.debug(
            "completion_context_extracted",
            file=file,
            line=position.line,
            character=position.character,
            completion_type=completion_type.value,
            symbol_count=len(candidates),
            in_string=syntax.in_string,
            in_comment=syntax.in_comment,
        )
        return context

    def update_usage_patterns(self, file: str, symbol: str, context: str, accepted: bool) -> None:
        """Record an accepted completion; rejections leave patterns untouched."""
        if not accepted:
            return
        now = datetime.now(timezone.utc)
        with self._lock:
            patterns = self._usage_patterns.pop(file, [])
            for pattern in patterns:
                if pattern.symbol == symbol:
                    pattern.frequency += 1
                    pattern.last_used = now
                    pattern.context = context
                    break
            else:
                patterns.append(UsagePattern(symbol=symbol, frequency=1, last_used=now, context=context))
            self._usage_patterns[file] = patterns
            while len(self._usage_patterns) > self.usage_pattern_capacity:
                evicted, _ = self._usage_patterns.popitem(last=False)
                logger.debug("usage_patterns_evicted", file=evicted)
            total = len(patterns)

        logger.debug("usage_patterns_updated", file=file, symbol=symbol, total_patterns=total)

    def get_usage_patterns(self, file: str) -> List[UsagePattern]:
        """Patterns for ``file``, most frequent first, then most recent."""
        with self._lock:
            patterns = [p.model_copy() for p in self._usage_patterns.get(file, [])]
        patterns.sort(key=lambda p: (p.frequency, p.last_used), reverse=True)
        return patterns

    def clear_cache(self) -> None:
        with self._lock:
            self._usage_patterns.clear()
        logger.debug("context_classifier_cache_cleared")
