"""Preset tiers: token estimates, output caps and billing multipliers."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Dict


PRESET_LEVELS = ("fast", "balanced", "quality")
DEFAULT_PRESET = "balanced"

PRESET_MULTIPLIERS: Dict[str, float] = {
    "fast": 1.0,
    "balanced": 1.5,
    "quality": 2.0,
}


@dataclass(frozen=True)
class PresetConfig:
    max_output_tokens: int
    estimated_tokens: int


_GENERIC_PRESETS: Dict[str, PresetConfig] = {
    "fast": PresetConfig(max_output_tokens=1000, estimated_tokens=650),
    "balanced": PresetConfig(max_output_tokens=2000, estimated_tokens=1500),
    "quality": PresetConfig(max_output_tokens=4000, estimated_tokens=3000),
}

_STAGE_PRESETS: Dict[str, Dict[str, PresetConfig]] = {
    "naming": {
        "fast": PresetConfig(max_output_tokens=800, estimated_tokens=550),
        "balanced": PresetConfig(max_output_tokens=1500, estimated_tokens=1150),
        "quality": PresetConfig(max_output_tokens=3000, estimated_tokens=2450),
    },
    "voice": {
        "fast": PresetConfig(max_output_tokens=1500, estimated_tokens=1000),
        "balanced": PresetConfig(max_output_tokens=3000, estimated_tokens=2400),
        "quality": PresetConfig(max_output_tokens=6000, estimated_tokens=4800),
    },
    "visual_identity": {
        "fast": PresetConfig(max_output_tokens=2000, estimated_tokens=1200),
        "balanced": PresetConfig(max_output_tokens=4000, estimated_tokens=3000),
        "quality": PresetConfig(max_output_tokens=8000, estimated_tokens=6000),
    },
}


def is_valid_preset(preset: str) -> bool:
    return preset in PRESET_LEVELS


def normalize_preset(preset: str | None) -> str:
    normalized = (preset or DEFAULT_PRESET).strip().lower()
    if not is_valid_preset(normalized):
        raise ValueError(f"Unsupported preset: {preset}")
    return normalized


def preset_config(stage_key: str, preset: str) -> PresetConfig:
    normalized = normalize_preset(preset)
    return _STAGE_PRESETS.get(stage_key, _GENERIC_PRESETS)[normalized]


def preset_multiplier(preset: str) -> float:
    return PRESET_MULTIPLIERS.get((preset or "").strip().lower(), 1.0)


def billed_tokens(raw_total_tokens: int, preset: str) -> int:
    """Raw tokens scaled by the preset multiplier, rounded up."""

    if raw_total_tokens <= 0:
        return 0
    return math.ceil(raw_total_tokens * preset_multiplier(preset))


def estimate_tokens(stage_key: str, preset: str) -> int:
    return preset_config(stage_key, preset).estimated_tokens


def max_output_tokens(stage_key: str, preset: str) -> int:
    return preset_config(stage_key, preset).max_output_tokens
