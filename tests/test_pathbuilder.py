"""Tests for path template compilation and rendering."""

from __future__ import annotations

import pytest

from bmcsecretsync.backend.pathbuilder import PathTemplateBuilder, PathVariables
from bmcsecretsync.errors import ConfigurationError, TemplateExecutionError, TemplateSyntaxError
from bmcsecretsync.models import DEFAULT_PATH_TEMPLATE


class TestRender:
    """Tests for PathTemplateBuilder.render."""

    def test_default_template(self):
        builder = PathTemplateBuilder(DEFAULT_PATH_TEMPLATE)
        path = builder.render(
            PathVariables(region="us-east-1", hostname="host1", username="admin")
        )
        assert path == "bmc/us-east-1/host1/admin"

    def test_custom_template_reorders_fields(self):
        builder = PathTemplateBuilder("infra/{{.Username}}@{{.Hostname}}")
        path = builder.render(PathVariables(region="eu", hostname="h", username="root"))
        assert path == "infra/root@h"

    def test_literal_only_template(self):
        builder = PathTemplateBuilder("static/path")
        assert builder.render(PathVariables()) == "static/path"

    def test_whitespace_inside_action(self):
        builder = PathTemplateBuilder("bmc/{{ .Region }}")
        assert builder.render(PathVariables(region="ap")) == "bmc/ap"

    def test_empty_values_produce_empty_segments(self):
        builder = PathTemplateBuilder(DEFAULT_PATH_TEMPLATE)
        assert builder.render(PathVariables()) == "bmc///"

    def test_render_is_repeatable(self):
        builder = PathTemplateBuilder(DEFAULT_PATH_TEMPLATE)
        a = builder.render(PathVariables(region="r1", hostname="h1", username="u1"))
        b = builder.render(PathVariables(region="r2", hostname="h2", username="u2"))
        assert a == "bmc/r1/h1/u1"
        assert b == "bmc/r2/h2/u2"

    def test_unknown_field_fails_at_render(self):
        builder = PathTemplateBuilder("bmc/{{.Datacenter}}")
        with pytest.raises(TemplateExecutionError, match="Datacenter"):
            builder.render(PathVariables(region="r"))

    def test_template_property(self):
        assert PathTemplateBuilder("a/{{.Region}}").template == "a/{{.Region}}"


class TestCompile:
    """Tests for template syntax checking at construction."""

    def test_unclosed_action(self):
        with pytest.raises(TemplateSyntaxError, match="unclosed action"):
            PathTemplateBuilder("bmc/{{.Region")

    def test_empty_action(self):
        with pytest.raises(TemplateSyntaxError):
            PathTemplateBuilder("bmc/{{}}")

    def test_action_without_dot(self):
        with pytest.raises(TemplateSyntaxError, match="unexpected action"):
            PathTemplateBuilder("bmc/{{Region}}")

    def test_syntax_error_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            PathTemplateBuilder("{{ | }}")
