from __future__ import annotations

import json
import os

import pytest

from cookbook_ingest.services.prompt_store import PromptCatalog, get_prompt, has_prompt, prompt_prefix, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "ingest.extract.repair",
        error="Expecting ',' delimiter",
        previous_response='{"name": "Soup"',
        schema="{}",
    )
    assert "Expecting ',' delimiter" in prompt
    assert '{"name": "Soup"' in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_names_missing_value():
    with pytest.raises(KeyError, match="Missing template value"):
        render_prompt("ingest.extract.repair", error="boom")


def test_prompt_keys_must_point_at_strings():
    assert has_prompt("ingest.extract.system")
    assert has_prompt("ingest.extract") is False
    with pytest.raises(TypeError):
        get_prompt("ingest.extract")


def test_prompt_prefix_honors_known_overrides_only():
    assert prompt_prefix("ingest.extract", None, "Ingest.Extract") == "ingest.extract"
    assert prompt_prefix("ingest.extract", {"Ingest.Extract": "ingest.normalize"}, "Ingest.Extract") == (
        "ingest.normalize"
    )
    assert prompt_prefix("ingest.extract", {"Ingest.Extract": "nope.prompts"}, "Ingest.Extract") == "ingest.extract"


def test_catalog_reloads_when_file_changes(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"greet": {"user": "Hello $name"}}), encoding="utf-8")
    catalog = PromptCatalog(path)
    assert catalog.render("greet.user", name="cook") == "Hello cook"

    path.write_text(json.dumps({"greet": {"user": "Hi $name"}}), encoding="utf-8")
    os.utime(path, ns=(path.stat().st_atime_ns, path.stat().st_mtime_ns + 1_000_000))
    assert catalog.render("greet.user", name="cook") == "Hi cook"


def test_catalog_must_be_an_object(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError, match="must be a JSON object"):
        PromptCatalog(path).get("anything")
