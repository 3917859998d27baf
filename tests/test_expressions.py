"""Tests for step argument values and condition expressions."""

from agent_workflows.expressions import (
    ListValue,
    Literal,
    MapValue,
    ParamRef,
    args_to_raw,
    is_truthy,
    parse_args,
    parse_condition,
    parse_value,
    resolve_args,
)


class TestValues:
    def test_reference_is_parsed_once(self):
        assert parse_value("${env}") == ParamRef("env")
        assert parse_value(" ${env} ") == ParamRef("env")

    def test_partial_reference_is_literal(self):
        assert parse_value("deploy-${env}") == Literal("deploy-${env}")
        assert parse_value(3) == Literal(3)

    def test_nested_values(self):
        value = parse_value({"args": ["--target", "${target}"], "env": {"MODE": "${mode}"}})
        assert isinstance(value, MapValue)
        resolved = value.resolve({"target": "prod", "mode": "fast"})
        assert resolved == {"args": ["--target", "prod"], "env": {"MODE": "fast"}}
        assert isinstance(parse_value(["a"]), ListValue)

    def test_unresolved_reference_keeps_literal_form(self):
        args = parse_args({"path": "${path}", "depth": 2})
        assert resolve_args(args, {}) == {"path": "${path}", "depth": 2}
        assert resolve_args(args, {"path": "src"}) == {"path": "src", "depth": 2}

    def test_resolution_keeps_parameter_type(self):
        args = parse_args({"count": "${count}"})
        assert resolve_args(args, {"count": 5}) == {"count": 5}

    def test_to_raw_restores_document_form(self):
        raw = {"command": "npm test", "path": "${path}", "extra": ["${a}", 1]}
        assert args_to_raw(parse_args(raw)) == raw


class TestConditions:
    def test_blank_means_no_condition(self):
        assert parse_condition(None) is None
        assert parse_condition("  ") is None

    def test_truthiness(self):
        cond = parse_condition("${deploy}")
        assert cond.kind == "truthy"
        assert cond.evaluate({"deploy": True})
        assert not cond.evaluate({"deploy": "false"})
        assert not cond.evaluate({})

    def test_bare_name_and_negation(self):
        assert parse_condition("deploy").evaluate({"deploy": "yes"})
        assert parse_condition("!deploy").evaluate({})
        assert not parse_condition("not deploy").evaluate({"deploy": 1})

    def test_equality(self):
        cond = parse_condition("env == 'prod'")
        assert cond.evaluate({"env": "prod"})
        assert not cond.evaluate({"env": "dev"})
        assert parse_condition("${env} != prod").evaluate({"env": "dev"})

    def test_missing_parameter_in_comparison(self):
        assert not parse_condition("env == prod").evaluate({})
        assert parse_condition("env != prod").evaluate({})

    def test_numeric_comparisons(self):
        assert parse_condition("replicas > 2").evaluate({"replicas": 3})
        assert parse_condition("replicas <= 2").evaluate({"replicas": "2"})
        assert not parse_condition("replicas >= 5").evaluate({"replicas": "many"})
        assert parse_condition("count == 3").evaluate({"count": 3})

    def test_boolean_equality(self):
        assert parse_condition("enabled == true").evaluate({"enabled": True})
        assert not parse_condition("enabled == true").evaluate({"enabled": False})

    def test_constants(self):
        assert parse_condition("true").evaluate({})
        assert not parse_condition("FALSE").evaluate({"anything": 1})

    def test_unrecognised_expression_always_runs(self):
        cond = parse_condition("a && b")
        assert cond.kind == "opaque"
        assert cond.evaluate({})
        assert str(cond) == "a && b"

    def test_is_truthy(self):
        assert is_truthy("on")
        assert not is_truthy("Off")
        assert not is_truthy(0)
        assert is_truthy([1])
