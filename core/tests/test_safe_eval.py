"""Tests for the sandboxed expression evaluator."""

import pytest

from pathway.graph.safe_eval import ExpressionError, SafeExpressionEvaluator, safe_eval


class TestExpressions:
    """Supported expression forms."""

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("elpaLevel < 3", True),
            ("elpaLevel >= 3", False),
            ("1 <= elpaLevel <= 2", True),
            ("score * 2 + 1", 151),
            ("learningStyle == 'visual' and score > 50", True),
            ("'math' in interests", True),
            ("'art' not in interests", True),
            ("len(interests) == 2", True),
            ("max(score, 90)", 90),
            ("student['name']", "Ana"),
            ("student.name", "Ana"),
            ("student.missing", None),
            ("'yes' if score > 70 else 'no'", "yes"),
            ("learningStyle.upper()", "VISUAL"),
        ],
    )
    def test_evaluates(self, expression, expected):
        namespace = {
            "elpaLevel": 2,
            "score": 75,
            "learningStyle": "visual",
            "interests": ["math", "science"],
            "student": {"name": "Ana"},
        }
        assert safe_eval(expression, namespace) == expected

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("elpaLevel === 2", True),
            ("elpaLevel !== 2", False),
            ("elpaLevel > 1 && score < 50", False),
            ("elpaLevel > 1 || score < 50", True),
            ("!done", True),
            ("done === false", True),
            ("missing === null", True),
            ("interests.length", 2),
        ],
    )
    def test_builder_operator_spellings(self, expression, expected):
        namespace = {"elpaLevel": 2, "score": 75, "done": False, "missing": None, "interests": ["a", "b"]}
        assert safe_eval(expression, namespace) == expected

    @pytest.mark.parametrize(
        "expression,namespace",
        [
            ('greeting == "Hi!"', {"greeting": "Hi!"}),
            ('topic == "R&&D"', {"topic": "R&&D"}),
            ("answer === 'yes || no'", {"answer": "yes || no"}),
            ('note !== "a === b" && done', {"note": "x", "done": True}),
            (r'quote == "say \"wow!\""', {"quote": 'say "wow!"'}),
        ],
    )
    def test_string_literals_keep_operator_characters(self, expression, namespace):
        assert safe_eval(expression, namespace) is True

    def test_custom_functions(self):
        evaluator = SafeExpressionEvaluator(functions={"double": lambda x: x * 2})
        assert evaluator.evaluate("double(score)", {"score": 4}) == 8


class TestSandbox:
    """Anything outside the whitelist is rejected with ExpressionError."""

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('echo hi')",
            "open('/etc/passwd')",
            "(lambda: 1)()",
            "[x for x in range(3)]",
            "score.__class__",
            "2 ** 1000",
            "print('hi')",
        ],
    )
    def test_rejects_unsafe_constructs(self, expression):
        with pytest.raises(ExpressionError):
            safe_eval(expression, {"score": 1})

    def test_unknown_name(self):
        with pytest.raises(ExpressionError, match="not defined"):
            safe_eval("nope > 1", {})

    def test_syntax_error(self):
        with pytest.raises(ExpressionError, match="Syntax error"):
            safe_eval("score >", {"score": 1})

    def test_empty_expression(self):
        with pytest.raises(ExpressionError):
            safe_eval("   ", {})

    def test_too_long(self):
        with pytest.raises(ExpressionError, match="too long"):
            safe_eval("1 + " * 400 + "1", {})

    def test_type_errors_are_wrapped(self):
        with pytest.raises(ExpressionError):
            safe_eval("elpaLevel < 3", {"elpaLevel": None})

    def test_repetition_is_capped(self):
        assert safe_eval("'ab' * 3") == "ababab"
        assert safe_eval("[0] * 2") == [0, 0]
        with pytest.raises(ExpressionError, match="longer than"):
            safe_eval('"a" * 300000000')
        with pytest.raises(ExpressionError, match="longer than"):
            safe_eval("50000 * words", {"words": ["x"]})
