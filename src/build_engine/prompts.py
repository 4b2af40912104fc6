"""Prompt builders for stage generation and resumed generation."""

import json
from typing import Any, Dict, Optional

from src.build_engine.artifact_store import LIST_KEY, STAGE_ARTIFACT_TYPE, ArtifactStore
from src.domain.schema import StageName

JSON_API_SYSTEM_PROMPT = (
    "You are a JSON API. Output ONLY valid JSON in a code block. Never include explanatory text."
)

GENERATING_STAGES = tuple(STAGE_ARTIFACT_TYPE)


class PromptError(Exception):
    """Raised when a prompt is requested for a stage that does not generate content."""
    pass


def _names(items) -> str:
    return ", ".join(getattr(item, "name", "") or getattr(item, "title", "") for item in items)


def build_stage_prompt(stage: StageName, store: ArtifactStore) -> str:
    """Base generation prompt of a stage, built from the data gathered so far.

    Raises:
        PromptError: If the stage is not generated by the model.
    """
    idea = store.idea or "(no idea provided)"
    if stage == StageName.USERS:
        prompt = f'Generate user personas for this product idea: "{idea}"'
        demographics = ", ".join(f"{key}: {value}" for key, value in store.demographics.items() if value)
        if demographics:
            prompt += f"\nTarget Demographics: {demographics}"
        return prompt + (
            "\n\nOUTPUT FORMAT: Return ONLY a JSON code block:\n```json\n"
            '{"personas": [{"id": "1", "name": "Name", "age": "Age", "occupation": "Job", '
            '"backstory": "Description..."}]}\n```'
        )
    if stage == StageName.FEATURES:
        prompt = f'Generate features for this product idea: "{idea}"'
        if store.personas:
            prompt += f"\nTarget Users: {_names(store.personas)}"
        return prompt + (
            "\n\nOUTPUT FORMAT: Return ONLY a JSON code block:\n```json\n"
            '{"features": [{"name": "Feature", "description": "Benefit", "score": 8, '
            '"frequency": "Daily", "priority": "Must-Have", "personas": ["User"]}]}\n```'
        )
    if stage == StageName.STORIES:
        prompt = f'Generate user stories for this product: "{idea}"'
        if store.features:
            prompt += f"\nFeatures: {_names(store.features)}"
        return prompt + (
            "\n\nOUTPUT FORMAT: Return ONLY a JSON code block:\n```json\n"
            '{"stories": [{"title": "Story", "description": "Desc", "requirements": ["Req"], '
            '"clarifyingQuestions": ["Q?"]}]}\n```'
        )
    if stage == StageName.DESIGN:
        features = _names(store.features) or "Core features"
        stories = ", ".join(story.title for story in store.stories) or "Standard workflows"
        return (
            "Generate key screens for this product:\n\n"
            f"PRODUCT: {idea}\n"
            f"FEATURES: {features}\n"
            f"USER STORIES: {stories}\n\n"
            "Generate 5-8 essential screens. For each screen provide:\n"
            "- name: Screen name\n"
            "- purpose: What the user achieves here\n"
            "- uiElements: Key UI components (3-5 items)\n"
            "- userActions: What the user can do (2-4 items)\n\n"
            "OUTPUT FORMAT: Return ONLY a JSON code block:\n```json\n"
            '{"screens": [{"name": "Screen Name", "purpose": "What user achieves", '
            '"uiElements": ["Header", "Form", "Button"], "userActions": ["Submit form", "Navigate"]}]}\n```'
        )
    raise PromptError(f"Stage '{stage.value}' is not generated by the model.")


def partial_item_count(stage: StageName, partial_content: Optional[Dict[str, Any]]) -> int:
    """Number of artifacts of the stage's kind in a partial stage document."""
    update_type = STAGE_ARTIFACT_TYPE.get(stage)
    if not partial_content or update_type is None:
        return 0
    items = partial_content.get(LIST_KEY[update_type])
    return len(items) if isinstance(items, list) else 0


def build_resume_context(partial_content: Optional[Dict[str, Any]], item_count: int) -> str:
    """Instruction listing already generated items. Empty when nothing was saved."""
    if not partial_content or item_count <= 0:
        return ""
    return (
        "\n\nIMPORTANT: Continue from where you left off. "
        f"The following {item_count} items have already been generated and saved:\n"
        f"{json.dumps(partial_content, indent=2)}\n\n"
        "Please generate ADDITIONAL items to complete the task. "
        "Do NOT regenerate the items shown above."
    )


def build_resume_prompt(
    stage: StageName,
    store: ArtifactStore,
    partial_content: Optional[Dict[str, Any]],
    item_count: Optional[int] = None,
) -> str:
    """Prompt resuming a failed generation without repeating saved items.

    Args:
        stage: Stage whose generation failed.
        store: Artifact store holding the inputs of the stage.
        partial_content: Stage document saved before the failure.
        item_count: Reported partial item count (defaults to counting partial_content).
    """
    existing = partial_item_count(stage, partial_content)
    count = existing if item_count is None else item_count
    try:
        prompt = build_stage_prompt(stage, store)
    except PromptError:
        prompt = f"Generate content for the {stage.value} stage. Return ONLY valid JSON."
    if existing > 0:
        prompt += (
            f"\n\nNOTE: {existing} items already exist. "
            "Generate additional items to reach the target count."
        )
    context = build_resume_context(partial_content, count)
    return prompt + ("\n" + context if context else "")
