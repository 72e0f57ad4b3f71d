"""
Unit tests for the Declaration Loader
"""
import pytest

from conftest import load_config
from stackctl.models.enums import VariableType
from stackctl.models.exceptions import ParseError, UndefinedReferenceError, ValidationError
from stackctl.models.expressions import Literal, Reference
from stackctl.services.loader import DeclarationLoader

SITE = """
provider: fake
variables:
  name:
    type: string
  replicas:
    type: number
    default: 1
resources:
  test_bucket:
    site:
      config:
        name: "${var.name}-site"
  test_policy:
    public:
      config:
        bucket: "${test_bucket.site.id}"
  test_cdn:
    main:
      config:
        origin: "${test_bucket.site.domain_name}"
        copies: "${var.replicas}"
      depends_on:
        - test_policy.public
outputs:
  url:
    value: "https://${test_cdn.main.domain_name}"
    description: Site URL
"""


class TestDeclarationLoader:
    """Test cases for DeclarationLoader"""

    def test_load_resources_in_declaration_order(self):
        config = load_config(SITE, {"name": "demo"})

        assert config.provider == "fake"
        assert config.addresses == ["test_bucket.site", "test_policy.public", "test_cdn.main"]
        assert config.sources == ["main.stack.yaml"]

    def test_variables_substituted(self):
        config = load_config(SITE, {"name": "demo"})

        bucket = config.get_resource("test_bucket.site")
        cdn = config.get_resource("test_cdn.main")
        assert bucket.config.items["name"] == Literal("demo-site")
        assert cdn.config.items["copies"] == Literal(1)
        assert config.variables["replicas"].type == VariableType.NUMBER

    def test_dependencies_inferred_from_references(self):
        """Explicit depends_on edges come first, then references in source order"""
        config = load_config(SITE, {"name": "demo"})

        assert config.get_resource("test_policy.public").dependencies() == ["test_bucket.site"]
        assert config.get_resource("test_cdn.main").dependencies() == ["test_policy.public", "test_bucket.site"]

    def test_output_keeps_resource_reference(self):
        config = load_config(SITE, {"name": "demo"})

        output = config.outputs["url"]
        assert output.description == "Site URL"
        assert output.value.parts[1] == Reference("resource", "test_cdn.main", ("domain_name",))

    def test_default_provider(self):
        config = load_config("resources:\n  test_bucket:\n    a:\n      config:\n        name: a\n")

        assert config.provider == "aws"

    def test_variable_precedence(self):
        """default < environment < var file < -var"""
        text = """
variables:
  a: {type: string, default: from-default}
  b: {type: string, default: from-default}
  c: {type: string, default: from-default}
  d: {type: string, default: from-default}
"""
        loader = DeclarationLoader(environ={
            "STACKCTL_VAR_b": "from-env",
            "STACKCTL_VAR_c": "from-env",
            "STACKCTL_VAR_d": "from-env",
        })

        config = loader.load_documents(
            [("main.stack.yaml", text)],
            [("vars.yaml", "c: from-file\nd: from-file\n")],
            {"d": "from-cli"}
        )

        assert [config.variables[n].value for n in "abcd"] == ["from-default", "from-env", "from-file", "from-cli"]

    def test_string_values_coerced_to_declared_type(self):
        text = """
variables:
  count: {type: number}
  enabled: {type: bool}
  zones: {type: list}
"""
        config = load_config(text, {"count": "3", "enabled": "true", "zones": "[a, b]"})

        assert config.variables["count"].value == 3
        assert config.variables["enabled"].value is True
        assert config.variables["zones"].value == ["a", "b"]

    def test_missing_variable_value(self):
        with pytest.raises(ValidationError) as exc_info:
            load_config(SITE)

        assert "name" in exc_info.value.message

    def test_mistyped_variable_value(self):
        with pytest.raises(ValidationError):
            load_config("variables:\n  count: {type: number}\n", {"count": "many"})

    def test_unknown_cli_variable(self):
        with pytest.raises(ValidationError):
            load_config(SITE, {"name": "demo", "nope": "x"})

    def test_load_directory_uses_default_var_file(self, tmp_path):
        (tmp_path / "site.stack.yaml").write_text(SITE)
        (tmp_path / "stackctl.vars.yaml").write_text("name: from-file\n")
        (tmp_path / "notes.yaml").write_text("not: a declaration\n")

        config = DeclarationLoader(environ={}).load_directory(str(tmp_path))

        assert config.variables["name"].value == "from-file"
        assert config.sources == [str(tmp_path / "site.stack.yaml")]

    def test_load_directory_merges_files(self, tmp_path):
        (tmp_path / "a.stack.yaml").write_text("resources:\n  test_bucket:\n    a:\n      config: {name: a}\n")
        (tmp_path / "b.stack.yaml").write_text(
            "resources:\n  test_policy:\n    b:\n      config: {bucket: '${test_bucket.a.id}'}\n"
        )

        config = DeclarationLoader(environ={}).load_directory(str(tmp_path))

        assert config.addresses == ["test_bucket.a", "test_policy.b"]

    def test_empty_directory(self, tmp_path):
        with pytest.raises(ParseError):
            DeclarationLoader(environ={}).load_directory(str(tmp_path))


class TestDeclarationErrors:
    """Malformed declarations are reported with their location"""

    def test_invalid_yaml(self):
        with pytest.raises(ParseError) as exc_info:
            load_config("resources:\n  test_bucket: [unclosed\n")

        assert exc_info.value.location.startswith("main.stack.yaml:")

    def test_unknown_top_level_key(self):
        with pytest.raises(ParseError) as exc_info:
            load_config("\nresource:\n  x: 1\n")

        assert exc_info.value.location == "main.stack.yaml:2:1"

    def test_unknown_resource_attribute(self):
        with pytest.raises(ParseError) as exc_info:
            load_config("resources:\n  test_bucket:\n    a:\n      configs: {}\n")

        assert "configs" in exc_info.value.message
        assert exc_info.value.location == "main.stack.yaml:4:7"

    def test_duplicate_key(self):
        with pytest.raises(ParseError) as exc_info:
            load_config("resources:\n  test_bucket:\n    a:\n      config: {name: x, name: y}\n")

        assert "Duplicate key 'name'" in exc_info.value.message

    def test_duplicate_resource_across_documents(self):
        loader = DeclarationLoader(environ={})
        doc = "resources:\n  test_bucket:\n    a:\n      config: {name: a}\n"

        with pytest.raises(ParseError) as exc_info:
            loader.load_documents([("one.stack.yaml", doc), ("two.stack.yaml", doc)])

        assert "one.stack.yaml:3:5" in exc_info.value.message

    def test_undeclared_resource_reference(self):
        with pytest.raises(UndefinedReferenceError) as exc_info:
            load_config("resources:\n  test_policy:\n    p:\n      config: {bucket: '${test_bucket.nope.id}'}\n")

        assert exc_info.value.reference == "test_bucket.nope.id"
        assert exc_info.value.location == "main.stack.yaml:4:24"

    def test_undeclared_variable_reference(self):
        with pytest.raises(UndefinedReferenceError) as exc_info:
            load_config("resources:\n  test_bucket:\n    a:\n      config: {name: '${var.missing}'}\n")

        assert exc_info.value.reference == "var.missing"

    def test_undeclared_depends_on(self):
        with pytest.raises(UndefinedReferenceError):
            load_config("resources:\n  test_bucket:\n    a:\n      depends_on: [test_cdn.main]\n")

    def test_depends_on_must_be_addresses(self):
        with pytest.raises(ParseError):
            load_config("resources:\n  test_bucket:\n    a:\n      depends_on: [main]\n")

    def test_lifecycle_options(self):
        config = load_config(
            "resources:\n  test_bucket:\n    a:\n      lifecycle: {create_before_destroy: true}\n"
        )

        lifecycle = config.get_resource("test_bucket.a").lifecycle
        assert lifecycle.create_before_destroy is True
        assert lifecycle.prevent_destroy is False

    def test_output_requires_value(self):
        with pytest.raises(ParseError):
            load_config("outputs:\n  url:\n    description: missing\n")
