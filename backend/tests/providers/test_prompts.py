import pytest

from tryon.providers.base import Category
from tryon.providers.prompts import DEFAULT_TEMPLATE, PROMPT_TEMPLATES, build_prompt

pytestmark = pytest.mark.unit


def test_every_category_has_a_template():
    assert set(PROMPT_TEMPLATES) == set(Category)


def test_style_modifier_appended():
    assert build_prompt(Category.UPPER_BODY, "sporty").prompt.endswith(" in sporty style")


def test_unknown_style_ignored():
    assert build_prompt(Category.DRESSES, "gothic").prompt == PROMPT_TEMPLATES[Category.DRESSES].prompt


def test_unknown_category_uses_default():
    assert build_prompt("hats").prompt == DEFAULT_TEMPLATE.prompt
