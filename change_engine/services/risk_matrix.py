"""
Risk Matrix Evaluator

Turns per-impact-category sub-scores into a 0–100 risk score and resolves
the score to a risk level through the matrix thresholds.

Pure functions over the matrix document (``RiskMatrix.to_dict()`` shape);
nothing here touches the database.

Usage:
    from change_engine.services.risk_matrix import evaluate_risk

    result = evaluate_risk(matrix, {"business_impact": 80, "user_impact": 40},
                           fallback_level="medium")
    # -> RiskAssessment(score=40.0, level="low", controls={...}, warnings=[])
"""

from __future__ import annotations

import ast
import logging
import math
import operator
from dataclasses import dataclass, field

from change_engine.core.exceptions import ConfigurationError
from change_engine.models.change_settings import RISK_LEVELS, risk_rank

logger = logging.getLogger(__name__)

SCORE_MIN = 0.0
SCORE_MAX = 100.0


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class RiskAssessment:
    """Outcome of one evaluation."""
    score: float
    level: str
    controls: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    method: str | None = None
    matrix_id: int | None = None
    matrix_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "risk_score": self.score,
            "risk_level": self.level,
            "controls": self.controls,
            "warnings": self.warnings,
            "calculation_method": self.method,
            "risk_matrix_id": self.matrix_id,
            "risk_matrix": self.matrix_name,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def evaluate_risk(matrix: dict | None, impact_scores: dict | None,
                  fallback_level: str = "medium") -> RiskAssessment:
    """Score *impact_scores* against *matrix* and resolve the level.

    With no matrix the evaluator does not fail: the fallback level is
    returned with score 0 and a warning.
    """
    if not matrix:
        msg = "No active risk matrix; using fallback risk level"
        logger.warning(msg, extra={"fallback_level": fallback_level})
        return RiskAssessment(score=0.0, level=fallback_level, warnings=[msg])

    method = matrix.get("calculation_method") or "weighted_average"
    subscores = _subscores(matrix, impact_scores or {})

    if method == "weighted_average":
        raw = sum(subscores[c["category"]] * float(c.get("weight") or 0)
                  for c in matrix.get("impact_categories") or [])
    elif method == "highest_impact":
        raw = max(subscores.values(), default=0.0)
    elif method == "custom":
        raw = evaluate_formula(matrix.get("custom_formula"), subscores)
    else:
        raise ConfigurationError(
            f"Unknown calculation method {method!r}",
            resource="RiskMatrix", resource_id=matrix.get("id"),
        )

    score = round(_clamp(raw), 2)
    level = resolve_level(matrix, score)
    if level is None:
        level = fallback_level
    return RiskAssessment(
        score=score,
        level=level,
        controls=required_controls(matrix, level),
        method=method,
        matrix_id=matrix.get("id"),
        matrix_name=matrix.get("name"),
    )


def resolve_level(matrix: dict, score: float) -> str | None:
    """Highest level whose lowest category threshold is ≤ *score*.

    Levels are walked low → critical. For each level the lowest threshold
    across impact categories counts; an exact tie picks the higher level.
    When no threshold is met the lowest level defined in the matrix wins.
    Returns None only for a matrix without levels.
    """
    defined = sorted(
        {entry.get("level") for entry in matrix.get("risk_levels") or []
         if entry.get("level") in RISK_LEVELS},
        key=risk_rank,
    )
    if not defined:
        return None

    resolved = None
    for level in defined:
        threshold = level_threshold(matrix, level)
        if threshold is not None and score >= threshold:
            resolved = level
    return resolved or defined[0]


def level_threshold(matrix: dict, level: str) -> float | None:
    values = []
    for category in matrix.get("impact_categories") or []:
        value = (category.get("thresholds") or {}).get(level)
        if value is not None:
            values.append(float(value))
    return min(values) if values else None


def required_controls(matrix: dict | None, level: str) -> dict:
    """Controls demanded by *level* in *matrix* (empty when unknown)."""
    if not matrix:
        return {}
    for entry in matrix.get("risk_levels") or []:
        if entry.get("level") == level:
            return {
                "required_approvers": int(entry.get("required_approvers") or 0),
                "auto_approval_allowed": bool(entry.get("auto_approval_allowed")),
                "max_downtime_minutes": entry.get("max_downtime_minutes"),
                "rollback_required": bool(entry.get("rollback_required")),
                "testing_required": bool(entry.get("testing_required")),
                "documentation_required": bool(entry.get("documentation_required")),
                "communication_required": bool(entry.get("communication_required")),
            }
    return {}


# ═════════════════════════════════════════════════════════════════════════════
# Custom formulas
# ═════════════════════════════════════════════════════════════════════════════

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {ast.USub: operator.neg, ast.UAdd: operator.pos}
_FUNCS = {"min": min, "max": max}


def compile_formula(formula: str | None, allowed_names) -> ast.Expression:
    """Parse and vet a custom formula; raise ConfigurationError if unusable."""
    if not formula or not str(formula).strip():
        raise ConfigurationError("Custom calculation method requires a custom_formula",
                                 resource="RiskMatrix")
    try:
        tree = ast.parse(str(formula).strip(), mode="eval")
    except SyntaxError as exc:
        raise ConfigurationError(f"Invalid custom formula: {exc.msg}", resource="RiskMatrix") from exc

    allowed = set(allowed_names)
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            if node.id not in allowed and node.id not in _FUNCS:
                raise ConfigurationError(f"Unknown name {node.id!r} in custom formula",
                                         resource="RiskMatrix")
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCS or node.keywords:
                raise ConfigurationError("Only min() and max() calls are allowed in custom formulas",
                                         resource="RiskMatrix")
        elif isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise ConfigurationError("Only numeric literals are allowed in custom formulas",
                                         resource="RiskMatrix")
        elif isinstance(node, ast.BinOp):
            if type(node.op) not in _BIN_OPS:
                raise ConfigurationError("Unsupported operator in custom formula", resource="RiskMatrix")
        elif isinstance(node, ast.UnaryOp):
            if type(node.op) not in _UNARY_OPS:
                raise ConfigurationError("Unsupported operator in custom formula", resource="RiskMatrix")
        elif not isinstance(node, (ast.Expression, ast.Load, ast.operator, ast.unaryop)):
            raise ConfigurationError(
                f"Unsupported syntax in custom formula: {type(node).__name__}",
                resource="RiskMatrix",
            )
    return tree


def evaluate_formula(formula: str | None, variables: dict) -> float:
    tree = compile_formula(formula, variables.keys())
    try:
        return float(_eval(tree.body, variables))
    except ZeroDivisionError as exc:
        raise ConfigurationError("Custom formula divides by zero", resource="RiskMatrix") from exc


def _eval(node, variables):
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return variables[node.id]
    if isinstance(node, ast.BinOp):
        return _BIN_OPS[type(node.op)](_eval(node.left, variables), _eval(node.right, variables))
    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, variables))
    if isinstance(node, ast.Call):
        args = [_eval(arg, variables) for arg in node.args]
        if not args:
            raise ConfigurationError(f"{node.func.id}() needs at least one argument",
                                     resource="RiskMatrix")
        return _FUNCS[node.func.id](args)
    raise ConfigurationError("Unsupported syntax in custom formula", resource="RiskMatrix")


# ── helpers ──────────────────────────────────────────────────────────────────

def _subscores(matrix: dict, impact_scores: dict) -> dict[str, float]:
    """Clamped sub-score per matrix category; absent, non-numeric or non-finite → 0."""
    result = {}
    for category in matrix.get("impact_categories") or []:
        key = category.get("category")
        if not key:
            continue
        try:
            value = float(impact_scores.get(key) or 0)
        except (TypeError, ValueError):
            value = 0.0
        if not math.isfinite(value):
            value = 0.0
        result[key] = _clamp(value)
    return result


def _clamp(value: float) -> float:
    if math.isnan(value):
        return SCORE_MIN
    return max(SCORE_MIN, min(SCORE_MAX, float(value)))
