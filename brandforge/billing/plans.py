"""Plan catalogue loading."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict

import yaml

from brandforge.core.config import get_settings


DEFAULT_PLAN = "BASIC"


def _resolve_plan_path() -> Path:
    settings = get_settings()
    configured = Path(settings.plans_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_plans() -> Dict[str, Dict[str, int]]:
    plan_path = _resolve_plan_path()
    with plan_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid plans file format")

    plans: Dict[str, Dict[str, int]] = {}
    for plan_name, plan_limits in content.items():
        if not isinstance(plan_name, str) or not isinstance(plan_limits, dict):
            continue
        normalized_limits: Dict[str, int] = {}
        for key, value in plan_limits.items():
            if isinstance(key, str) and isinstance(value, int):
                normalized_limits[key] = value
        plans[plan_name.upper()] = normalized_limits
    return plans


def get_plan(plan_name: str) -> Dict[str, int]:
    plans = load_plans()
    normalized = (plan_name or DEFAULT_PLAN).strip().upper()
    plan = plans.get(normalized)
    if plan is None:
        raise ValueError(f"Plan is not configured: {normalized}")
    return plan


def plan_token_limit(plan_name: str) -> int:
    plan = get_plan(plan_name)
    if "monthly_token_limit" not in plan:
        raise ValueError(f"Limit key is not configured in plan '{plan_name}': monthly_token_limit")
    return int(plan["monthly_token_limit"])


def plan_can_purchase_addons(plan_name: str) -> bool:
    return bool(get_plan(plan_name).get("can_purchase_addons", 0))
