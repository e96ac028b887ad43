# tests/test_predicates.py
import pytest

from stageflow.errors import ConfigurationError
from stageflow.predicates import (
    And,
    Not,
    Or,
    RefEquals,
    RefMatches,
    SourceEquals,
    TagPresent,
    VarDefined,
    VarEquals,
    compile_expression,
)


def test_ref_equality_compiles_to_typed_node(make_ctx):
    p = compile_expression('$CI_COMMIT_REF_NAME == "master"')
    assert p == RefEquals("master")
    assert p.evaluate(make_ctx("master"))
    assert not p.evaluate(make_ctx("main"))


def test_regex_match_is_a_search(make_ctx):
    p = compile_expression("$CI_COMMIT_REF_NAME =~ /release/")
    assert isinstance(p, RefMatches)
    assert p.evaluate(make_ctx("feature/release-notes"))
    assert not p.evaluate(make_ctx("main"))


def test_regex_flags(make_ctx):
    p = compile_expression("$CI_COMMIT_MESSAGE =~ /\\[SKIP DOCS\\]/i")
    assert p.evaluate(make_ctx(message="fix: typo [skip docs]"))
    assert not p.evaluate(make_ctx(message="fix: typo"))


def test_source_and_tag(make_ctx):
    assert compile_expression('$CI_PIPELINE_SOURCE == "web"') == SourceEquals("web")
    assert compile_expression('"web" == $CI_PIPELINE_SOURCE') == SourceEquals("web")

    tag = compile_expression("$CI_COMMIT_TAG")
    assert tag == TagPresent()
    assert tag.evaluate(make_ctx("v1.2.0", is_tag=True))
    assert not tag.evaluate(make_ctx("main"))


def test_branch_variable_is_undefined_on_tags(make_ctx):
    p = compile_expression("$CI_COMMIT_BRANCH")
    assert p.evaluate(make_ctx("main"))
    assert not p.evaluate(make_ctx("v1.0", is_tag=True))


def test_and_binds_tighter_than_or(make_ctx):
    p = compile_expression('$A == "1" || $B == "1" && $C == "1"')
    assert isinstance(p, Or)
    assert isinstance(p.items[1], And)
    assert p.evaluate(make_ctx(variables={"A": "1", "B": "0", "C": "0"}))
    assert not p.evaluate(make_ctx(variables={"A": "0", "B": "1", "C": "0"}))


def test_parentheses_override_precedence(make_ctx):
    p = compile_expression('($A == "1" || $B == "1") && $C == "1"')
    assert isinstance(p, And)
    assert not p.evaluate(make_ctx(variables={"A": "1", "C": "0"}))
    assert p.evaluate(make_ctx(variables={"B": "1", "C": "1"}))


def test_negations_and_null(make_ctx):
    ne = compile_expression('$PIPELINE != "nightly"')
    assert ne == Not(VarEquals("PIPELINE", "nightly"))
    assert ne.evaluate(make_ctx(variables={"PIPELINE": "weekly"}))

    nm = compile_expression("$CI_COMMIT_REF_NAME !~ /^docs-/")
    assert nm.evaluate(make_ctx("main"))
    assert not nm.evaluate(make_ctx("docs-fix"))

    is_null = compile_expression("$PIPELINE == null")
    assert is_null == Not(VarDefined("PIPELINE"))
    assert is_null.evaluate(make_ctx())
    assert not is_null.evaluate(make_ctx(variables={"PIPELINE": "x"}))


def test_empty_variable_counts_as_undefined(make_ctx):
    p = compile_expression("$FLAG")
    assert not p.evaluate(make_ctx(variables={"FLAG": ""}))
    assert p.evaluate(make_ctx(variables={"FLAG": "1"}))


def test_braced_variables(make_ctx):
    p = compile_expression('${CI_COMMIT_REF_NAME} == "main"')
    assert p == RefEquals("main")


@pytest.mark.parametrize(
    "text",
    [
        "",
        '$A ==',
        '$A == "x" &&',
        '"x"',
        '$A === "x"',
        '$A =~ "not-a-regex"',
        '$A =~ /[unclosed/',
        '($A == "x"',
        '$A == "unterminated',
        "$A =~ /x/q",
    ],
)
def test_malformed_expressions_are_configuration_errors(text):
    with pytest.raises(ConfigurationError) as exc:
        compile_expression(text)
    assert exc.value.kind == "bad_expression"
