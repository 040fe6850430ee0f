from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from .enums import Persona
from .models import Worker


@dataclass(frozen=True, slots=True)
class PersonaProfile:
    persona: Persona
    display_name: str
    capabilities: tuple[str, ...]
    capacity_multiplier: float


DEFAULT_PROFILES: tuple[PersonaProfile, ...] = (
    PersonaProfile(
        Persona.REQUIREMENTS_ANALYST,
        "Requirements Analyst Master",
        ("stakeholder-analysis", "user-story-creation"),
        1.2,
    ),
    PersonaProfile(
        Persona.UI_UX_DESIGNER,
        "UI/UX Designer Master",
        ("user-experience-design", "interface-design"),
        0.9,
    ),
    PersonaProfile(
        Persona.FRONTEND_DEVELOPER,
        "Frontend Developer Master",
        ("react-development", "typescript", "interface-design"),
        1.1,
    ),
    PersonaProfile(
        Persona.BACKEND_ARCHITECT,
        "Backend Architect Master",
        ("api-design", "database-architecture"),
        1.3,
    ),
    PersonaProfile(Persona.QA_ENGINEER, "QA Engineer Master", ("test-automation",), 1.0),
    PersonaProfile(Persona.SECURITY_ANALYST, "Security Analyst Master", ("security-auditing",), 0.8),
    PersonaProfile(Persona.TECHNICAL_WRITER, "Technical Writer Master", ("documentation",), 0.7),
    PersonaProfile(Persona.DEVOPS_ENGINEER, "DevOps Engineer Master", ("ci-cd-pipelines",), 1.0),
)

CAPABILITY_KEYWORDS: Mapping[str, tuple[str, ...]] = {
    "stakeholder-analysis": ("stakeholder", "user", "business", "requirement", "analysis"),
    "user-story-creation": ("story", "epic", "feature", "user", "need"),
    "user-experience-design": ("ux", "user experience", "wireframe", "prototype", "design"),
    "interface-design": ("ui", "interface", "component", "layout", "design"),
    "react-development": ("react", "component", "jsx", "hook", "state"),
    "typescript": ("typescript", "type", "interface", "generic"),
    "api-design": ("api", "endpoint", "rest", "graphql", "service"),
    "database-architecture": ("database", "sql", "schema", "migration", "query"),
    "test-automation": ("test", "testing", "automation", "spec", "coverage"),
    "security-auditing": ("security", "auth", "encrypt", "vulnerability", "audit"),
    "documentation": ("docs", "documentation", "readme", "guide", "manual"),
    "ci-cd-pipelines": ("ci", "cd", "pipeline", "deploy", "build"),
}


def capability_matches(capability: str, text: str) -> bool:
    """Return True when any keyword of ``capability`` occurs in the lower-cased ``text``."""
    return any(keyword in text for keyword in CAPABILITY_KEYWORDS.get(capability, ()))


def match_capabilities(capabilities: Iterable[str], text: str) -> list[str]:
    lowered = text.lower()
    return [capability for capability in capabilities if capability_matches(capability, lowered)]


def build_default_roster(
    base_capacity: int,
    *,
    profiles: Iterable[PersonaProfile] = DEFAULT_PROFILES,
) -> list[Worker]:
    """Instantiate one worker per persona profile, in declaration order."""
    workers: list[Worker] = []
    for profile in profiles:
        workers.append(
            Worker(
                worker_id=profile.persona.value,
                persona=profile.persona,
                name=profile.display_name,
                capabilities=profile.capabilities,
                capacity=int(round(base_capacity * profile.capacity_multiplier)),
            )
        )
    return workers


__all__ = [
    "CAPABILITY_KEYWORDS",
    "DEFAULT_PROFILES",
    "PersonaProfile",
    "build_default_roster",
    "capability_matches",
    "match_capabilities",
]
