"""
Tests for the regex-based completion context classifier.
"""
import pytest

from codeintel.models.completion import CompletionKind, Position, SemanticContext, SymbolInfo, SymbolKind, VariableInfo
from codeintel.models.requests import ProjectContext
from codeintel.services.completion.context import (
    CompletionContextClassifier,
    classify_completion_kind,
    enclosing_return_type,
    enclosing_scope,
    expected_type_at,
    extract_functions,
    extract_variables,
    is_in_comment,
    is_in_function,
    is_in_string,
    parse_imported_modules,
    parse_imports,
)

DOCUMENT = "\n".join([
    "import React from 'react';",
    "import { useState, useEffect as effect } from 'react';",
    "",
    "function add(a, b) {",
    "  return a + b;",
    "}",
    "",
    "const total: number = add(1, 2);",
    "let name = 'x';",
    "const r = add(",
])


@pytest.mark.parametrize(
    "before_cursor, expected",
    [
        ("console.", CompletionKind.MEMBER_ACCESS),
        ("user.  ", CompletionKind.MEMBER_ACCESS),
        ("add(", CompletionKind.FUNCTION_CALL),
        ("const x = ", CompletionKind.VARIABLE_DECLARATION),
        ("import { use", CompletionKind.IMPORT_STATEMENT),
        ("let x: ", CompletionKind.TYPE_ANNOTATION),
        ("  ret", CompletionKind.KEYWORD),
        ("a + b", CompletionKind.GENERIC_EXPRESSION),
    ],
)
def test_classify_completion_kind(before_cursor, expected):
    assert classify_completion_kind(before_cursor) == expected


def test_is_in_string():
    assert is_in_string("const s = 'abc")
    assert is_in_string('const s = "abc')
    assert is_in_string("const s = `abc")
    assert not is_in_string("const s = 'abc' + ")


def test_is_in_comment_line_comment():
    assert is_in_comment("x = 1 // note", ["x = 1 // note"], 0)


def test_is_in_comment_block_comment_spans_lines():
    lines = ["/* start", "still inside"]
    assert is_in_comment("still", lines, 1)

    closed = ["/* done */", "code"]
    assert not is_in_comment("code", closed, 1)


def test_is_in_comment_ignores_text_after_cursor():
    line = "value /* trailing */"
    assert not is_in_comment("value ", [line], 0)


def test_is_in_function():
    assert is_in_function(["function f() {", "  x"], 1)
    assert is_in_function(["const f = () => {", "  x"], 1)
    assert not is_in_function(["const a = 1;", "a"], 1)
    assert not is_in_function(["function f() {", "}", "x"], 2)


def test_parse_imports():
    assert parse_imports("import React from 'react';") == ["react"]
    assert parse_imports("import os\nfrom typing import List\n") == ["os", "typing"]


def test_parse_imported_modules():
    modules = parse_imported_modules(DOCUMENT)

    assert modules[0].module == "react"
    assert modules[0].imports == ["React"]
    assert modules[0].is_default is True
    assert modules[1].imports == ["useState", "useEffect as effect"]
    assert modules[1].is_default is False


def test_extract_functions_and_variables():
    functions = extract_functions(DOCUMENT)
    assert [(f.name, f.line) for f in functions] == [("add", 3)]

    variables = extract_variables(DOCUMENT, cursor_line=8)
    assert [(v.name, v.line, v.type) for v in variables] == [("total", 7, "number"), ("name", 8, "unknown")]


def test_enclosing_return_type():
    assert enclosing_return_type(["function f(): string {", "  return "], 1) == "string"
    assert enclosing_return_type(["def f(x) -> int:", "    return "], 1) == "int"
    assert enclosing_return_type(["function f() {", "  return "], 1) is None


def test_expected_type_at():
    semantic = SemanticContext(expected_return_type="string")
    variables = [VariableInfo(name="total", line=0, type="number")]

    assert expected_type_at("  return ", variables, semantic) == "string"
    assert expected_type_at("total = ", variables, semantic) == "number"
    assert expected_type_at("other = ", variables, semantic) is None


def test_enclosing_scope():
    assert enclosing_scope(["class Cart {", "  add() {", "    x"], 2) == ["global", "Cart"]
    assert enclosing_scope(["const x = 1;"], 0) == ["global"]


class TestExtractContext:

    def test_function_call_context(self):
        classifier = CompletionContextClassifier()
        context = classifier.extract_context(DOCUMENT, Position(line=9, character=len("const r = add(")), file="app.ts")

        assert context.current_file == "app.ts"
        assert context.completion_type == CompletionKind.FUNCTION_CALL
        assert context.imports == ["react", "react"]
        names = [s.name for s in context.available_symbols]
        assert names[:5] == ["add", "total", "name", "r", "React"]
        assert "useState" in names
        assert "effect" in names
        assert "console" in names
        scopes = {s.name: s.scope for s in context.available_symbols}
        assert scopes["add"] == "local"
        assert scopes["React"] == "imported"
        assert scopes["console"] == "global"

    def test_caller_symbols_come_first(self):
        classifier = CompletionContextClassifier()
        extra = SymbolInfo(name="fromServer", kind=SymbolKind.FUNCTION, scope="global")
        context = classifier.extract_context("x", Position(line=0, character=1), symbols=[extra])

        assert context.available_symbols[0].name == "fromServer"

    def test_no_candidates_inside_strings(self):
        classifier = CompletionContextClassifier()
        context = classifier.extract_context("const s = 'hel", Position(line=0, character=14))

        assert context.syntax_context.in_string is True
        assert context.available_symbols == []

    def test_no_candidates_inside_comments(self):
        classifier = CompletionContextClassifier()
        context = classifier.extract_context("// add", Position(line=0, character=6))

        assert context.syntax_context.in_comment is True
        assert context.available_symbols == []

    def test_python_project_has_no_js_builtins(self):
        classifier = CompletionContextClassifier()
        context = classifier.extract_context(
            "x",
            Position(line=0, character=1),
            project_context=ProjectContext(project_id="p", language="python"),
        )

        assert "console" not in [s.name for s in context.available_symbols]

    def test_surrounding_code_window(self):
        text = "\n".join(f"line{i}" for i in range(20))
        context = CompletionContextClassifier().extract_context(text, Position(line=10, character=0))

        assert context.surrounding_code.split("\n") == [f"line{i}" for i in range(5, 16)]

    def test_position_past_end_is_clamped(self):
        context = CompletionContextClassifier().extract_context("abc", Position(line=7, character=2))
        assert context.completion_type == CompletionKind.KEYWORD

    def test_includes_recent_usage_for_file(self):
        classifier = CompletionContextClassifier()
        classifier.update_usage_patterns("app.ts", "add", "add(1, 2)", accepted=True)

        context = classifier.extract_context(DOCUMENT, Position(line=9, character=14), file="app.ts")
        assert [p.symbol for p in context.recent_usage] == ["add"]


class TestUsagePatterns:

    def test_accepted_completions_accumulate(self):
        classifier = CompletionContextClassifier()
        classifier.update_usage_patterns("a.ts", "add", "ctx", accepted=True)
        classifier.update_usage_patterns("a.ts", "add", "ctx2", accepted=True)
        classifier.update_usage_patterns("a.ts", "sum", "ctx", accepted=True)

        patterns = classifier.get_usage_patterns("a.ts")
        assert [(p.symbol, p.frequency) for p in patterns] == [("add", 2), ("sum", 1)]
        assert patterns[0].context == "ctx2"

    def test_rejections_are_ignored(self):
        classifier = CompletionContextClassifier()
        classifier.update_usage_patterns("a.ts", "add", "ctx", accepted=False)
        assert classifier.get_usage_patterns("a.ts") == []

    def test_files_are_evicted_least_recently_used_first(self):
        classifier = CompletionContextClassifier(usage_pattern_capacity=2)
        classifier.update_usage_patterns("a.ts", "x", "", accepted=True)
        classifier.update_usage_patterns("b.ts", "x", "", accepted=True)
        classifier.update_usage_patterns("a.ts", "y", "", accepted=True)
        classifier.update_usage_patterns("c.ts", "x", "", accepted=True)

        assert classifier.get_usage_patterns("b.ts") == []
        assert len(classifier.get_usage_patterns("a.ts")) == 2
        assert len(classifier.get_usage_patterns("c.ts")) == 1

    def test_returned_patterns_are_copies(self):
        classifier = CompletionContextClassifier()
        classifier.update_usage_patterns("a.ts", "add", "", accepted=True)
        classifier.get_usage_patterns("a.ts")[0].frequency = 99

        assert classifier.get_usage_patterns("a.ts")[0].frequency == 1

    def test_clear_cache(self):
        classifier = CompletionContextClassifier()
        classifier.update_usage_patterns("a.ts", "add", "", accepted=True)
        classifier.clear_cache()
        assert classifier.get_usage_patterns("a.ts") == []
