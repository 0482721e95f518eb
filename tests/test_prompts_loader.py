from pathlib import Path

import pytest

from storygen.pipeline.registry import STAGES
from storygen.prompts import loader
from storygen.regeneration.resolver import CHANGE_ANALYST_ROLE
from storygen.services.generation import prompt_name_for_role


def test_every_role_has_a_prompt():
    roles = [stage.role for stage in STAGES] + [CHANGE_ANALYST_ROLE]
    for role in roles:
        assert loader.has_prompt(prompt_name_for_role(role)), role


def test_list_prompts_domain():
    names = loader.list_prompts(domain="pipeline")
    assert "prompt_screenwriter" in names
    assert "prompt_script_supervisor" in names


def test_render_prompt_includes_shared():
    rendered = loader.render_prompt(
        "prompt_showrunner",
        premise="A courier loses a lantern.",
        options="{}",
    )
    assert "GLOBAL CONSTRAINTS" in rendered
    assert "A courier loses a lantern." in rendered


def test_render_prompt_validates_required_variables():
    with pytest.raises(ValueError, match="premise"):
        loader.render_prompt("prompt_showrunner", validate=True, options="{}")


def test_screenwriter_clarifications_are_optional_text():
    context = {
        "bible": "{}",
        "characters": "[]",
        "locations": "[]",
        "items": "[]",
        "options": "{}",
    }
    without = loader.render_prompt("prompt_screenwriter", validate=True, clarifications="", **context)
    with_answers = loader.render_prompt(
        "prompt_screenwriter",
        validate=True,
        clarifications='[{"question": "Where?", "answer": "The rooftop"}]',
        **context,
    )
    assert "The rooftop" in with_answers
    assert "The rooftop" not in without


def test_extract_template_variables_skips_loop_targets():
    template = "{{ a }} {% for x in things %}{{ x }}{% endfor %}{% if flag %}{% endif %}"
    assert loader.extract_template_variables(template) == {"a", "things", "flag"}


def test_invalid_template_raises_and_is_not_silently_ignored():
    target_dir = Path(loader.__file__).resolve().parent / "v1" / "utility"
    bad_file = target_dir / "bad_template_for_test.yaml"
    bad_file.write_text("bad_prompt: '{% if foo %} missing endif'\n")

    try:
        loader.clear_cache()
        with pytest.raises(ValueError):
            loader.get_prompt("bad_prompt")
    finally:
        bad_file.unlink()
        loader.clear_cache()
