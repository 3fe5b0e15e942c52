"""Category prompt templates for prompt-driven try-on models."""

from dataclasses import dataclass

from tryon.providers.base import Category


@dataclass(frozen=True)
class PromptTemplate:
    prompt: str
    negative_prompt: str


PROMPT_TEMPLATES: dict[str, PromptTemplate] = {
    Category.UPPER_BODY: PromptTemplate(
        prompt=(
            "Wear the upper body outfit in the second image as a virtual try-on "
            "on the upper body of the person in the first image."
        ),
        negative_prompt="blurry, low quality, distorted, unrealistic, cartoon",
    ),
    Category.LOWER_BODY: PromptTemplate(
        prompt=(
            "Wear the lower body outfit in the second image as a virtual try-on "
            "on the lower body of the person in the first image."
        ),
        negative_prompt="blurry, low quality, distorted, unrealistic, cartoon, cropped",
    ),
    Category.DRESSES: PromptTemplate(
        prompt=(
            "Wear the full outfit in the second image as a virtual try-on "
            "on the full body of the person in the first image."
        ),
        negative_prompt="blurry, low quality, distorted, unrealistic, cartoon, poorly fitted",
    ),
}

DEFAULT_TEMPLATE = PromptTemplate(
    prompt="A person wearing clothing, professional fashion photography, high quality",
    negative_prompt="blurry, low quality, distorted, unrealistic",
)

STYLE_MODIFIERS: dict[str, str] = {
    "casual": " in casual style",
    "formal": " in formal style",
    "sporty": " in sporty style",
    "elegant": " in elegant style",
}


def build_prompt(category: str, style: str | None = None) -> PromptTemplate:
    """Return the category template with an optional style suffix (unknown styles are ignored)."""
    template = PROMPT_TEMPLATES.get(category, DEFAULT_TEMPLATE)
    modifier = STYLE_MODIFIERS.get(style or "", "")
    return PromptTemplate(prompt=template.prompt + modifier, negative_prompt=template.negative_prompt)
