"""Tests for template rendering, expression evaluation and the code sandbox."""

import pytest

from flowengine.errors import SandboxError, TemplateError
from flowengine.graph.code_sandbox import CodeSandbox, safe_eval, safe_exec
from flowengine.graph.template import TemplateScope, render, render_value, resolve_reference


@pytest.fixture
def scope():
    return TemplateScope(
        input={"text": "hello", "items": [1, 2, 3]},
        variables={"lang": "fr"},
        trigger={"message": "Where is my order?"},
        meta={"run_id": "run_1"},
        node_outputs={"llm-1": {"text": "summary"}, "rag": {"query": "q"}},
    )


class TestResolveReference:
    def test_scopes(self, scope):
        assert resolve_reference("input.text", scope) == "hello"
        assert resolve_reference("$variables.lang", scope) == "fr"
        assert resolve_reference("trigger.message", scope) == "Where is my order?"
        assert resolve_reference("$meta.run_id", scope) == "run_1"

    def test_node_output_with_and_without_output_segment(self, scope):
        assert resolve_reference("llm-1.output.text", scope) == "summary"
        assert resolve_reference("llm-1.text", scope) == "summary"

    def test_list_index(self, scope):
        assert resolve_reference("input.items.1", scope) == 2

    def test_missing_keys_resolve_to_none(self, scope):
        assert resolve_reference("input.nope.deeper", scope) is None
        assert resolve_reference("ghost.output", scope) is None


class TestRender:
    def test_mixed_text(self, scope):
        assert render("Say {{ input.text }} in {{ $variables.lang }}", scope) == "Say hello in fr"

    def test_missing_reference_renders_empty(self, scope):
        assert render("[{{ input.missing }}]", scope) == "[]"

    def test_structures_are_json_encoded(self, scope):
        assert render("Items: {{ input.items }}", scope) == "Items: [1, 2, 3]"

    def test_single_placeholder_keeps_raw_value(self, scope):
        assert render_value("{{ input }}", scope) == {"text": "hello", "items": [1, 2, 3]}
        assert render_value("{{ len(input.items) }}", scope) == 3

    def test_expressions(self, scope):
        assert render("{{ upper(input.text) }}", scope) == "HELLO"
        assert render("{{ nodes['llm-1']['text'] }}", scope) == "summary"
        assert render("{{ rag.output['query'] }}", scope) == "q"

    def test_aliases_inside_string_literals_are_kept(self, scope):
        assert render_value("{{ $variables.lang + ' not $variables.lang' }}", scope) == (
            "fr not $variables.lang"
        )

    def test_text_without_placeholders_is_untouched(self, scope):
        assert render("plain {text}", scope) == "plain {text}"

    def test_bad_expression_raises(self, scope):
        with pytest.raises(TemplateError):
            render("{{ input.text + }}", scope)

    def test_unknown_name_raises(self, scope):
        with pytest.raises(TemplateError):
            render("{{ secret_value * 2 }}", scope)


class TestSafeEval:
    def test_compound_expressions(self):
        assert safe_eval("{'n': len(x), 'first': x[0]}", {"x": [4, 5]}) == {"n": 2, "first": 4}
        assert safe_eval("'a' if flag else 'b'", {"flag": False}) == "b"

    def test_dunder_access_is_blocked(self):
        with pytest.raises(TemplateError, match="Blocked"):
            safe_eval("x.__class__", {"x": 1})


class TestCodeSandbox:
    def test_return_value_is_output(self):
        sandbox = CodeSandbox()
        assert sandbox.run("return {'n': len(input['items'])}", input={"items": [1, 2]}) == {
            "n": 2
        }

    def test_result_variable_is_returned(self):
        code = "total = 0\nfor item in input:\n    total += item\nresult = total * 2"
        assert safe_exec(code, input=[1, 2, 3]) == 12

    def test_sees_variables_trigger_and_nodes(self):
        code = "return [variables['lang'], trigger['message'], nodes['a']['text']]"
        assert safe_exec(
            code,
            variables={"lang": "en"},
            trigger={"message": "hi"},
            nodes={"a": {"text": "x"}},
        ) == ["en", "hi", "x"]

    def test_json_and_math_helpers(self):
        assert safe_exec("return json.loads(input)['a'] + math.floor(2.7)", input='{"a": 1}') == 3

    @pytest.mark.parametrize(
        "code",
        [
            "import os\nreturn os.getcwd()",
            "return open('/etc/passwd').read()",
            "return input.__class__",
            "return getattr(input, 'x')",
            "class A:\n    pass",
        ],
    )
    def test_unsafe_code_is_rejected(self, code):
        with pytest.raises(SandboxError, match="rejected"):
            safe_exec(code, input={})

    def test_runtime_error_becomes_sandbox_error(self):
        with pytest.raises(SandboxError, match="ZeroDivisionError"):
            safe_exec("return 1 / 0")

    def test_syntax_error(self):
        with pytest.raises(SandboxError, match="Code error"):
            safe_exec("return (")

    def test_validate_reports_violations(self):
        assert CodeSandbox().validate("return 1") == []
        assert CodeSandbox().validate("import sys") == ["Import is not allowed"]
