"""Prompt registry for brand stages and business-plan sections."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Dict, List, Optional


PROMPTSET_VERSION = "bp_v1"

SYSTEM_PROMPT = (
    "You are a senior brand strategist with more than ten years of experience. "
    "Answer with valid JSON only, no markdown fences and no commentary."
)


@dataclass(frozen=True)
class StageDefinition:
    key: str
    name: str
    module: str
    order: int
    prompt_id: str
    prompt_version: str
    instructions: str

    @property
    def prompt_set_version(self) -> str:
        return f"{self.prompt_id}@{self.prompt_version}"


_DEFAULT_INSTRUCTIONS = '{action} the deliverable for this stage. Schema: {"title": "...", "content": "..."}'

STAGE_CATALOGUE: Dict[str, StageDefinition] = {
    definition.key: definition
    for definition in (
        StageDefinition(
            key="naming",
            name="Naming",
            module="A",
            order=1,
            prompt_id="naming-v1",
            prompt_version="0.1.0",
            instructions=(
                "{action} 5 naming options for the brand. For each option include name (max two words), "
                'rationale (1-2 sentences) and domainHints (2-3 domains). Schema: {"items": [{"name": "...", '
                '"rationale": "...", "domainHints": ["..."]}], "notes": "..."}'
            ),
        ),
        StageDefinition(
            key="manifesto",
            name="Brand Manifesto",
            module="A",
            order=2,
            prompt_id="manifesto-v1",
            prompt_version="0.1.0",
            instructions=(
                '{action} the brand manifesto. Schema: {"title": "...", "content": "...", "values": ["..."]}'
            ),
        ),
        StageDefinition(
            key="voice",
            name="Brand Voice",
            module="A",
            order=3,
            prompt_id="voice-v1",
            prompt_version="0.1.0",
            instructions=(
                '{action} the brand voice guide. Schema: {"traits": ["..."], "do": ["..."], "dont": ["..."], '
                '"examples": ["..."]}'
            ),
        ),
        StageDefinition(
            key="tagline",
            name="Tagline",
            module="A",
            order=4,
            prompt_id="tagline-v1",
            prompt_version="0.1.0",
            instructions='{action} 5 tagline options. Schema: {"items": [{"tagline": "...", "rationale": "..."}]}',
        ),
        StageDefinition(
            key="palette",
            name="Color Palette",
            module="B",
            order=5,
            prompt_id="default-v1",
            prompt_version="0.1.0",
            instructions=_DEFAULT_INSTRUCTIONS,
        ),
        StageDefinition(
            key="typography",
            name="Typography",
            module="B",
            order=6,
            prompt_id="default-v1",
            prompt_version="0.1.0",
            instructions=_DEFAULT_INSTRUCTIONS,
        ),
        StageDefinition(
            key="logo",
            name="Logo",
            module="B",
            order=7,
            prompt_id="default-v1",
            prompt_version="0.1.0",
            instructions=_DEFAULT_INSTRUCTIONS,
        ),
        StageDefinition(
            key="visual_identity",
            name="Visual Identity",
            module="B",
            order=8,
            prompt_id="default-v1",
            prompt_version="0.1.0",
            instructions=_DEFAULT_INSTRUCTIONS,
        ),
    )
}


BUSINESS_PLAN_SECTION_KEYS = (
    "EXECUTIVE_SUMMARY",
    "PROBLEM",
    "SOLUTION",
    "MARKET",
    "COMPETITION",
    "GO_TO_MARKET",
    "OPERATIONS",
    "FINANCIALS",
    "RISKS",
)

SECTION_GUIDANCE: Dict[str, str] = {
    "EXECUTIVE_SUMMARY": "Summarize the business plan in concise, executive-level terms.",
    "PROBLEM": "Describe the core customer problem and why it matters.",
    "SOLUTION": "Explain the proposed solution and how it addresses the problem.",
    "MARKET": "Provide a clear market analysis with size and segments.",
    "COMPETITION": "Summarize the competitive landscape and differentiation.",
    "GO_TO_MARKET": "Outline go-to-market strategy, channels, and milestones.",
    "OPERATIONS": "Describe operational plan, resources, and key assumptions.",
    "FINANCIALS": "Provide high-level financial assumptions and projections.",
    "RISKS": "List key risks and mitigation strategies.",
}


def is_valid_stage_key(stage_key: str) -> bool:
    return stage_key in STAGE_CATALOGUE


def get_stage_definition(stage_key: str) -> StageDefinition:
    definition = STAGE_CATALOGUE.get(stage_key)
    if definition is None:
        raise KeyError(f"Unknown stage key: {stage_key}")
    return definition


def build_stage_messages(
    *,
    stage_key: str,
    project_name: str,
    is_regenerate: bool,
) -> List[Dict[str, str]]:
    definition = get_stage_definition(stage_key)
    action = "Regenerate" if is_regenerate else "Generate"
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Project: {project_name or 'Unknown'}\n"
                f"Stage: {definition.name} ({definition.key})\n"
                + definition.instructions.replace("{action}", action)
            ),
        },
    ]


def parse_stage_output(raw: str) -> Dict[str, Any]:
    """Parse model output as a JSON object, falling back to ``{"raw": text}``."""

    cleaned = (raw or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
        cleaned = cleaned.strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        return {"raw": raw}
    if not isinstance(parsed, dict):
        return {"raw": raw}
    return parsed


def resolve_section_keys(requested: Optional[List[str]]) -> List[str]:
    """Keep requested keys that belong to the template, in template order; default to all."""

    wanted = {str(key).strip().upper() for key in (requested or [])}
    selected = [key for key in BUSINESS_PLAN_SECTION_KEYS if key in wanted]
    return selected or list(BUSINESS_PLAN_SECTION_KEYS)


def build_business_plan_messages(
    *,
    section_key: str,
    project_name: str,
    project_description: str,
    plan_version: int,
) -> List[Dict[str, str]]:
    guidance = SECTION_GUIDANCE.get(section_key, "")
    return [
        {
            "role": "system",
            "content": (
                "You are a senior strategy consultant producing a business plan section. "
                "Write concise, structured output suitable for executives. "
                "Do not include prompts or system instructions in the output."
            ),
        },
        {
            "role": "user",
            "content": (
                f"Project: {project_name or 'Unknown'}\n"
                f"Description: {project_description or 'N/A'}\n"
                f"Plan Version: {plan_version}\n"
                f"Section: {section_key}\n"
                f"Guidance: {guidance}\n"
                "Return the section as plain text."
            ),
        },
    ]
