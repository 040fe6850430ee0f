from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Pattern

from ..core.logging import get_logger
from .enums import RiskLevel

logger = get_logger(name=__name__)

_LEVEL_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)

_RECOMMENDATIONS = {
    RiskLevel.CRITICAL: "CRITICAL: This operation could cause significant damage. Carefully review before approval.",
    RiskLevel.HIGH: "HIGH RISK: This operation requires careful consideration and may affect system stability.",
    RiskLevel.MEDIUM: "MEDIUM RISK: Standard approval required. Review the operation details.",
    RiskLevel.LOW: "LOW RISK: Safe operation that can typically be auto-approved.",
}


def higher_level(first: RiskLevel, second: RiskLevel) -> RiskLevel:
    return first if _LEVEL_ORDER.index(first) >= _LEVEL_ORDER.index(second) else second


def level_for_score(score: int) -> RiskLevel:
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 50:
        return RiskLevel.HIGH
    if score >= 20:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(slots=True)
class RiskRule:
    pattern: Pattern[str]
    level: RiskLevel
    reason: str
    requires_approval: bool = True

    @classmethod
    def compile(cls, expression: str, level: RiskLevel, reason: str, *, requires_approval: bool = True) -> "RiskRule":
        return cls(
            pattern=re.compile(expression, re.IGNORECASE),
            level=level,
            reason=reason,
            requires_approval=requires_approval,
        )

    def matches(self, command: str) -> bool:
        return self.pattern.search(command) is not None


@dataclass(slots=True)
class RiskAssessment:
    level: RiskLevel
    score: int
    factors: list[str] = field(default_factory=list)
    recommendation: str = ""
    matched_rules: list[RiskRule] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "level": self.level.value,
            "score": self.score,
            "factors": list(self.factors),
            "recommendation": self.recommendation,
        }


DEFAULT_RULES: tuple[RiskRule, ...] = (
    RiskRule.compile(r"rm\s+-rf|rmdir|delete.*\.git|format.*disk", RiskLevel.CRITICAL, "Destructive file system operation"),
    RiskRule.compile(r"chmod\s+777|chown.*root|sudo.*rm", RiskLevel.HIGH, "Elevated permissions required"),
    RiskRule.compile(r"npm\s+install.*-g|yarn.*global|pip.*install.*--user", RiskLevel.MEDIUM, "Global package installation"),
    RiskRule.compile(
        r"drop\s+(database|table|schema)|truncate.*table|delete.*from.*where.*1=1",
        RiskLevel.CRITICAL,
        "Destructive database operation",
    ),
    RiskRule.compile(r"alter\s+(table|database)|create.*index|grant.*all", RiskLevel.HIGH, "Database schema modification"),
    RiskRule.compile(r"curl.*\|\s*sh|wget.*\|\s*bash|ssh.*root@", RiskLevel.CRITICAL, "Remote code execution risk"),
    RiskRule.compile(r"git.*push.*--force|git.*reset.*--hard.*HEAD", RiskLevel.HIGH, "Potentially destructive Git operation"),
    RiskRule.compile(r"docker.*run.*--privileged|docker.*rm.*-f", RiskLevel.HIGH, "Privileged container operation"),
    RiskRule.compile(r"export.*PATH=|unset.*PATH|rm.*\.env", RiskLevel.MEDIUM, "Environment variable modification"),
    RiskRule.compile(r"deploy.*production|push.*main|merge.*master", RiskLevel.HIGH, "Production deployment"),
)


class RiskAssessor:
    """Scores commands against an ordered rule list plus contextual signals.

    The final level is the higher of the strongest matching rule and the level
    implied by the accumulated score, so adding context can raise a level but
    never dilute a critical rule match.
    """

    def __init__(self, rules: Iterable[RiskRule] | None = None, *, extra_rules: Iterable[RiskRule] = ()) -> None:
        base = tuple(rules) if rules is not None else DEFAULT_RULES
        self._rules: tuple[RiskRule, ...] = base + tuple(extra_rules)

    @property
    def rules(self) -> tuple[RiskRule, ...]:
        return self._rules

    def assess(self, command: str, context: str = "") -> RiskAssessment:
        score = 0
        factors: list[str] = []
        matched: list[RiskRule] = []
        rule_level = RiskLevel.LOW

        for rule in self._rules:
            if not rule.matches(command):
                continue
            matched.append(rule)
            score += rule.level.score
            factors.append(rule.reason)
            rule_level = higher_level(rule_level, rule.level)

        lowered_context = context.lower()
        lowered_command = command.lower()
        if "production" in lowered_context or "prod" in lowered_context:
            score += 30
            factors.append("Production environment")
            if rule_level is RiskLevel.LOW:
                rule_level = RiskLevel.MEDIUM
        if "database" in lowered_context or "db" in lowered_context:
            score += 20
            factors.append("Database operation")
        if "sudo" in lowered_command or "root" in lowered_command:
            score += 25
            factors.append("Elevated privileges")

        level = higher_level(rule_level, level_for_score(score))
        assessment = RiskAssessment(
            level=level,
            score=score,
            factors=factors,
            recommendation=_RECOMMENDATIONS[level],
            matched_rules=matched,
        )
        logger.debug("risk_assessed", level=level.value, score=score, factors=factors)
        return assessment

    def requires_approval(self, command: str, level: RiskLevel) -> bool:
        if level in {RiskLevel.CRITICAL, RiskLevel.HIGH}:
            return True
        if level is RiskLevel.LOW:
            return False
        for rule in self._rules:
            if rule.matches(command):
                return rule.requires_approval
        return True


__all__ = [
    "DEFAULT_RULES",
    "RiskAssessment",
    "RiskAssessor",
    "RiskRule",
    "higher_level",
    "level_for_score",
]
