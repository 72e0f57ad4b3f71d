"""
Unit tests for the declaration expression tree
"""
import pytest

from stackctl.models.exceptions import ParseError, UndefinedReferenceError
from stackctl.models.expressions import (
    UNKNOWN, ListExpr, Literal, MapExpr, Reference, Template,
    evaluate, iter_references, parse_string, parse_value, resolve_path, substitute_variables
)


class TestParsing:
    """Test cases for parse_string and parse_value"""

    def test_plain_string_is_literal(self):
        assert parse_string("hello") == Literal("hello")

    def test_whole_reference_keeps_type(self):
        """A string that is only an interpolation becomes a bare Reference"""
        expr = parse_string("${aws_s3_bucket.site.arn}")

        assert isinstance(expr, Reference)
        assert expr.address == "aws_s3_bucket.site"
        assert expr.path == ("arn",)
        assert not expr.is_variable

    def test_template_with_variable_and_resource(self):
        expr = parse_string("${var.name}-${aws_s3_bucket.site.id}/x")

        assert isinstance(expr, Template)
        assert expr.parts[0] == Reference("var", "var.name")
        assert expr.parts[1] == "-"
        assert expr.parts[2] == Reference("resource", "aws_s3_bucket.site", ("id",))
        assert expr.parts[3] == "/x"

    def test_escaped_interpolation(self):
        assert parse_string("cost: $${price}") == Literal("cost: ${price}")

    def test_nested_path(self):
        expr = parse_string("${var.capacity.min}")

        assert expr.variable_name == "capacity"
        assert expr.path == ("min",)

    @pytest.mark.parametrize("text", [
        "${aws_s3_bucket.site}",
        "${}",
        "${var}",
        "${bad ref.x.y}",
        "unterminated ${var.x",
    ])
    def test_malformed_references(self, text):
        with pytest.raises(ParseError):
            parse_string(text, "main.stack.yaml:3:5")

    def test_parse_error_carries_location(self):
        with pytest.raises(ParseError) as exc_info:
            parse_string("${aws_s3_bucket.site}", "main.stack.yaml:3:5")

        assert exc_info.value.location == "main.stack.yaml:3:5"
        assert str(exc_info.value).startswith("main.stack.yaml:3:5:")

    def test_parse_value_walks_containers(self):
        expr = parse_value({"a": ["${var.x}", 1], "b": {"c": True}})

        assert isinstance(expr, MapExpr)
        assert isinstance(expr.items["a"], ListExpr)
        assert expr.items["a"].items[1] == Literal(1)
        assert expr.items["b"].items["c"] == Literal(True)


class TestEvaluation:
    """Test cases for evaluate, references and substitution"""

    def test_iter_references_in_source_order(self):
        expr = parse_value({
            "origin": "${b.site.domain}",
            "aliases": ["${var.alias}", "static-${c.cert.arn}"],
        })

        assert [str(r) for r in iter_references(expr)] == ["b.site.domain", "var.alias", "c.cert.arn"]

    def test_evaluate_template(self):
        expr = parse_string("https://${cdn.main.domain_name}/")
        values = {"cdn.main": {"domain_name": "d111.cloudfront.net"}}

        result = evaluate(expr, lambda ref: values[ref.address][ref.path[0]])

        assert result == "https://d111.cloudfront.net/"

    def test_evaluate_template_with_unknown_is_unknown(self):
        expr = parse_string("prefix-${b.site.id}")

        assert evaluate(expr, lambda ref: UNKNOWN) is UNKNOWN

    def test_evaluate_keeps_non_string_values(self):
        expr = parse_value({"count": "${g.web.size}", "flags": ["${g.web.on}"]})

        result = evaluate(expr, lambda ref: 3 if ref.path == ("size",) else False)

        assert result == {"count": 3, "flags": [False]}

    def test_substitute_variables(self):
        expr = parse_value({
            "bucket": "${var.name}-site",
            "size": "${var.size}",
            "origin": "${b.site.arn}",
        })

        result = substitute_variables(expr, {"name": "demo", "size": 2})

        assert result.items["bucket"] == Literal("demo-site")
        assert result.items["size"] == Literal(2)
        assert isinstance(result.items["origin"], Reference)

    def test_substitute_missing_variable_path(self):
        expr = parse_string("${var.capacity.max}")

        with pytest.raises(UndefinedReferenceError):
            substitute_variables(expr, {"capacity": {"min": 1}})

    def test_resolve_path_indexes_lists(self):
        assert resolve_path({"a": [{"b": 7}]}, ("a", "0", "b")) == 7
        with pytest.raises(KeyError):
            resolve_path({"a": []}, ("a", "0"))
