from __future__ import annotations

import asyncio
from typing import Any

from ..core.logging import get_logger
from ..orchestration.enums import ItemKind, Persona
from ..orchestration.roster import match_capabilities
from .base import ExecutionContext, StrategyRegistry

logger = get_logger(name=__name__)


class OutlineStrategy:
    """Produces a structured deliverable outline for a task.

    Real persona logic is pluggable; these defaults record which deliverable
    sections a persona owns and charge the task brief to the worker's window.
    """

    persona: Persona
    sections: tuple[str, ...] = ()

    def __init__(self, persona: Persona, sections: tuple[str, ...]) -> None:
        self.persona = persona
        self.sections = sections

    async def run(self, context: ExecutionContext) -> dict[str, Any]:
        task = context.task
        brief = "\n".join(filter(None, [task.title, task.description, *task.acceptance_criteria]))
        await context.reserve(f"brief:{task.task_id}", ItemKind.INTERFACE, content=brief)
        deliverables: dict[str, list[str]] = {}
        for section in self.sections:
            deliverables[section] = self._draft(section, context)
            await asyncio.sleep(0)
        logger.debug(
            "persona_outline_drafted",
            persona=self.persona.value,
            task_id=task.task_id,
            sections=len(deliverables),
        )
        return {
            "persona": self.persona.value,
            "summary": f"{context.worker.name} drafted {len(deliverables)} sections for '{task.title}'",
            "matched_capabilities": match_capabilities(context.worker.capabilities, task.routing_text),
            "acceptance_criteria": list(task.acceptance_criteria),
            "deliverables": deliverables,
        }

    def _draft(self, section: str, context: ExecutionContext) -> list[str]:
        heading = section.replace("_", " ")
        entries = [f"{heading}: {context.task.title}"]
        entries.extend(f"{heading}: {criterion}" for criterion in context.task.acceptance_criteria)
        return entries


PERSONA_SECTIONS: dict[Persona, tuple[str, ...]] = {
    Persona.REQUIREMENTS_ANALYST: (
        "stakeholders",
        "user_stories",
        "business_rules",
        "risk_assessment",
    ),
    Persona.UI_UX_DESIGNER: (
        "wireframes",
        "user_flows",
        "design_system",
        "prototypes",
        "accessibility_audit",
    ),
    Persona.FRONTEND_DEVELOPER: (
        "components",
        "tests",
        "storybook",
        "documentation",
        "performance",
    ),
    Persona.BACKEND_ARCHITECT: (
        "api_design",
        "database_schema",
        "services",
        "integration",
        "scalability",
    ),
    Persona.QA_ENGINEER: (
        "test_plan",
        "unit_tests",
        "integration_tests",
        "e2e_tests",
        "performance",
    ),
    Persona.SECURITY_ANALYST: (
        "vulnerability_assessment",
        "security_review",
        "compliance_check",
        "penetration_test",
        "recommendations",
    ),
    Persona.TECHNICAL_WRITER: (
        "user_guide",
        "developer_docs",
        "api_docs",
        "tutorials",
        "changelog",
    ),
    Persona.DEVOPS_ENGINEER: (
        "cicd",
        "infrastructure",
        "monitoring",
        "deployment",
        "security",
    ),
}


def build_default_registry() -> StrategyRegistry:
    return StrategyRegistry(OutlineStrategy(persona, sections) for persona, sections in PERSONA_SECTIONS.items())


__all__ = ["OutlineStrategy", "PERSONA_SECTIONS", "build_default_registry"]
