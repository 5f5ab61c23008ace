from __future__ import annotations

import logging
import math
import random
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import AssessmentInput, AssessmentResult, Factor, RiskLevel

logger = logging.getLogger(__name__)


MITIGATION_STRATEGIES: tuple[str, ...] = (
    "Implement comprehensive testing in staging environment",
    "Schedule change during off-peak hours",
    "Prepare detailed rollback plan",
    "Monitor system metrics closely during implementation",
    "Have key stakeholders on standby during deployment",
)

DEFAULT_RULES: dict[str, Any] = {
    "change_type": {
        "server-migration": 3,
        "security-patch": 2,
        "software-update": 1,
    },
    # Bands are checked in order; "above" is a strict lower bound.
    "affected_systems": {
        "bands": [
            {"above": 10, "weight": 3},
            {"above": 5, "weight": 2},
        ],
        "default": 1,
    },
    "urgency": {"high": 3, "medium": 2, "low": 1},
    "rollback_complexity": {"hard": 3, "medium": 2, "easy": 1},
    "tiers": [
        {"above": 10, "level": "Critical"},
        {"above": 8, "level": "High"},
        {"above": 6, "level": "Medium"},
    ],
    "default_tier": "Low",
    "confidence": {"base": 85.0, "spread": 10.0},
    "strategies": list(MITIGATION_STRATEGIES),
}


def _rule_table_path() -> Path:
    """
    Resolve data/risk_rules.yaml regardless of the current working directory.
    Assumes repo layout:
      <repo_root>/data/risk_rules.yaml
      <repo_root>/src/acms/engine.py
    """
    repo_root = Path(__file__).resolve().parents[2]
    return repo_root / "data" / "risk_rules.yaml"


@lru_cache(maxsize=8)
def load_rule_table(path: Optional[str] = None) -> dict[str, Any]:
    rules_path = Path(path) if path else _rule_table_path()
    if not rules_path.exists():
        logger.info("Rule table not found at %s, using built-in rules", rules_path)
        return DEFAULT_RULES

    with rules_path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError:
            logger.warning("Rule table %s is not valid YAML, using built-in rules", rules_path)
            return DEFAULT_RULES

    # Expected shape: same top-level keys as DEFAULT_RULES; anything missing falls back.
    if not isinstance(data, dict):
        return DEFAULT_RULES
    return {**DEFAULT_RULES, **data}


def _band_weight(value: int, table: dict[str, Any]) -> int:
    for band in table.get("bands", []):
        if value > band["above"]:
            return int(band["weight"])
    return int(table.get("default", 1))


def _risk_level(score: int, rules: dict[str, Any]) -> RiskLevel:
    for tier in rules["tiers"]:
        if score > tier["above"]:
            return RiskLevel(tier["level"])
    return RiskLevel(rules["default_tier"])


def score_factors(change: AssessmentInput, rules: Optional[dict[str, Any]] = None) -> list[Factor]:
    """
    One contribution per input. The raw score is their sum.
    """
    rules = rules or load_rule_table()

    change_type = change.change_type.value
    urgency = change.urgency.value
    rollback = change.rollback_complexity.value

    return [
        Factor(
            code="TYPE",
            message=f"Change type: {change_type}",
            weight=int(rules["change_type"].get(change_type, 1)),
        ),
        Factor(
            code="SYSTEMS",
            message=f"Affects {change.affected_systems} system(s)",
            weight=_band_weight(change.affected_systems, rules["affected_systems"]),
        ),
        Factor(
            code="URGENCY",
            message=f"Urgency: {urgency}",
            weight=int(rules["urgency"].get(urgency, 1)),
        ),
        Factor(
            code="ROLLBACK",
            message=f"Rollback complexity: {rollback}",
            weight=int(rules["rollback_complexity"].get(rollback, 1)),
        ),
    ]


def assess_change(
    change: AssessmentInput,
    rng: Optional[random.Random] = None,
    rules: Optional[dict[str, Any]] = None,
) -> AssessmentResult:
    """
    Fixed weighted-sum lookup. Confidence is cosmetic and has no bearing
    on the tier.
    """
    rules = rules or load_rule_table()
    rng = rng or random.Random()

    factors = score_factors(change, rules)
    score = sum(f.weight for f in factors)
    level = _risk_level(score, rules)

    conf = rules["confidence"]
    base, spread = float(conf["base"]), float(conf["spread"])
    # base + spread itself is excluded; float rounding can otherwise reach it.
    confidence = min(base + rng.random() * spread, math.nextafter(base + spread, base))

    return AssessmentResult(
        risk_level=level,
        risk_score=score,
        confidence=confidence,
        strategies=list(rules["strategies"]),
        factors=factors,
    )


def risk_color(level: Any) -> str:
    value = level.value if isinstance(level, RiskLevel) else str(level)
    return {
        "Critical": "red",
        "High": "orange",
        "Medium": "yellow",
        "Low": "green",
    }.get(value, "white")
