"""Tests for template loading and rendering."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from ralph.templates import (
    PACKAGED_TEMPLATE_DIR,
    MissingRequiredVariable,
    PartialNotFound,
    TemplateError,
    TemplateMetadata,
    TemplateNotFound,
    TemplateRenderer,
    check_templates,
    extract_partial_refs,
    resolve_partials,
    substitute,
)

RUN_VARIABLES = {
    "PINNED_CONTEXT": "pinned",
    "SPEC_PATH": "specs/my-feature.md",
    "LABEL": "my-feature",
    "MOLECULE_ID": "epic-1",
    "ISSUE_ID": "task-1",
    "TITLE": "Do a thing",
    "DESCRIPTION": "Details",
    "EXIT_SIGNALS": "",
}


@pytest.fixture
def renderer(template_dir: Path) -> TemplateRenderer:
    return TemplateRenderer(
        search_path=[template_dir],
        metadata=TemplateMetadata.load(template_dir),
        environ={},
    )


class TestPartials:
    """Tests for partial inlining."""

    def test_partial_preserves_line_structure(self, tmp_path: Path):
        """Inlining a multi-line partial adds and removes no blank lines."""
        (tmp_path / "p.md").write_text("line1\nline2")
        assert resolve_partials("A\n{{> p}}\nB", tmp_path) == "A\nline1\nline2\nB"

    def test_partial_trailing_newline_stripped(self, tmp_path: Path):
        (tmp_path / "p.md").write_text("line1\nline2\n")
        assert resolve_partials("A\n{{> p}}\nB", tmp_path) == "A\nline1\nline2\nB"

    def test_missing_partial_raises(self, tmp_path: Path):
        with pytest.raises(PartialNotFound) as exc_info:
            resolve_partials("{{> nope}}", tmp_path)
        assert exc_info.value.name == "nope"

    def test_absent_partial_dir_is_noop(self, tmp_path: Path):
        content = "A\n{{> p}}\nB"
        assert resolve_partials(content, tmp_path / "missing") == content

    def test_nested_partials_resolved(self, tmp_path: Path):
        (tmp_path / "outer.md").write_text("start {{> inner}} end")
        (tmp_path / "inner.md").write_text("deep")
        assert resolve_partials("{{> outer}}", tmp_path) == "start deep end"

    def test_partial_cycle_raises(self, tmp_path: Path):
        (tmp_path / "a.md").write_text("{{> b}}")
        (tmp_path / "b.md").write_text("{{> a}}")
        with pytest.raises(TemplateError, match="cycle"):
            resolve_partials("{{> a}}", tmp_path)

    def test_extract_partial_refs(self):
        refs = extract_partial_refs("{{> one}} {{>two}} {{> one}}")
        assert refs == ["one", "two"]


class TestSubstitute:
    """Tests for placeholder substitution."""

    def test_single_pass(self):
        """Substituted values are not scanned again."""
        result = substitute("{{A}} {{B}}", {"A": "{{B}}", "B": "b"})
        assert result == "{{B}} b"

    def test_unknown_placeholders_left(self):
        assert substitute("{{A}} {{OTHER}}", {"A": "x"}) == "x {{OTHER}}"

    def test_value_with_regex_characters(self):
        assert substitute("{{A}}", {"A": r"\1 $& \g<0>"}) == r"\1 $& \g<0>"


class TestTemplateRenderer:
    """Tests for TemplateRenderer."""

    def test_render(self, renderer: TemplateRenderer):
        result = renderer.render("greet", {"NAME": "Ann"})
        assert result == "Hello Ann\nline1\nline2\nBye Ann\n"

    def test_missing_required_variable(self, renderer: TemplateRenderer):
        with pytest.raises(MissingRequiredVariable) as exc_info:
            renderer.render("greet", {})
        assert exc_info.value.names == ["NAME"]
        assert exc_info.value.name == "NAME"

    def test_environment_fallback(self, template_dir: Path):
        renderer = TemplateRenderer(
            search_path=[template_dir],
            metadata=TemplateMetadata.load(template_dir),
            environ={"NAME": "Env"},
        )
        assert renderer.render("greet").startswith("Hello Env\n")

    def test_caller_value_beats_environment(self, template_dir: Path):
        renderer = TemplateRenderer(
            search_path=[template_dir],
            metadata=TemplateMetadata.load(template_dir),
            environ={"NAME": "Env"},
        )
        assert renderer.render("greet", {"NAME": "Caller"}).startswith("Hello Caller\n")

    def test_default_applied(self, renderer: TemplateRenderer):
        values = renderer.resolve_variables("greet", {"NAME": "Ann"})
        assert values["MOOD"] == "calm"

    def test_undefined_declared_variable_is_required(self, template_dir: Path):
        (template_dir / "templates.yaml").write_text("greet:\n  - NAME\n  - UNDEFINED\n")
        renderer = TemplateRenderer(
            search_path=[template_dir],
            metadata=TemplateMetadata.load(template_dir),
            environ={},
        )
        with pytest.raises(MissingRequiredVariable) as exc_info:
            renderer.render("greet", {"NAME": "Ann"})
        assert exc_info.value.names == ["UNDEFINED"]

    def test_template_not_found(self, renderer: TemplateRenderer):
        with pytest.raises(TemplateNotFound):
            renderer.render("nope", {})

    def test_search_path_order(self, template_dir: Path, tmp_path: Path):
        local = tmp_path / "local"
        local.mkdir()
        (local / "greet.md").write_text("Local {{NAME}}")
        renderer = TemplateRenderer(
            search_path=[local, template_dir],
            metadata=TemplateMetadata.load(template_dir),
            environ={},
        )
        assert renderer.render("greet", {"NAME": "Ann"}) == "Local Ann"

    def test_from_dirs_prefers_local_template(self, tmp_path: Path):
        ralph_dir = tmp_path / "ralph"
        (ralph_dir / "template").mkdir(parents=True)
        (ralph_dir / "template" / "run.md").write_text("custom {{ISSUE_ID}}")
        renderer = TemplateRenderer.from_dirs(ralph_dir)
        assert renderer.find("run") == ralph_dir / "template" / "run.md"

    def test_available(self, renderer: TemplateRenderer):
        assert renderer.available() == ["greet"]


class TestPackagedTemplates:
    """Tests for the templates shipped with the package."""

    def test_run_requires_variables(self):
        renderer = TemplateRenderer(environ={})
        with pytest.raises(MissingRequiredVariable) as exc_info:
            renderer.render("run", {})
        assert "LABEL" in exc_info.value.names
        assert "SPEC_PATH" in exc_info.value.names

    def test_run_renders_all_declared_variables(self):
        renderer = TemplateRenderer(environ={})
        result = renderer.render("run", RUN_VARIABLES)

        assert "task-1" in result
        assert "specs/my-feature.md" in result
        assert "RALPH_COMPLETE" in result
        assert "{{>" not in result
        for name in renderer.metadata.declared("run"):
            assert "{{" + name + "}}" not in result
        assert not re.search(r"\{\{[A-Z_]+\}\}", result)

    def test_packaged_metadata(self):
        metadata = TemplateMetadata.load(PACKAGED_TEMPLATE_DIR)
        assert "ISSUE_ID" in metadata.declared("run")
        assert metadata.variables["LABEL"].required is True
        assert metadata.variables["PINNED_CONTEXT"].default == ""


class TestCheckTemplates:
    """Tests for the template check."""

    def test_packaged_templates_valid(self):
        results = check_templates(TemplateRenderer(environ={}))
        assert results
        assert all(r.ok for r in results), [r.error for r in results if not r.ok]

    def test_missing_partial_reported(self, template_dir: Path, renderer: TemplateRenderer):
        (template_dir / "partial" / "footer.md").unlink()
        results = check_templates(renderer)
        assert len(results) == 1
        assert not results[0].ok
        assert "footer" in results[0].error

    def test_empty_render_reported(self, template_dir: Path, renderer: TemplateRenderer):
        (template_dir / "blank.md").write_text("\n")
        results = {r.name: r for r in check_templates(renderer)}
        assert not results["blank"].ok
        assert results["greet"].ok
