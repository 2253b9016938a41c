"""Skill catalogue: which agent skill runs each pipeline step, and its prompt."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HEAL_SKILL = "flow.heal"

SKILL_FOR_STEP: dict[str, str] = {
    "design": "flow.design",
    "analyze": "flow.analyze",
    "implement": "flow.implement",
    "verify": "flow.verify",
    "merge": "flow.merge",
}
STEP_FOR_SKILL: dict[str, str] = {skill: step for step, skill in SKILL_FOR_STEP.items()}


@dataclass(slots=True, frozen=True)
class SkillSpec:
    name: str
    prompt_file: str
    fallback_prompt: str


SKILLS: dict[str, SkillSpec] = {
    "flow.design": SkillSpec(
        name="flow.design",
        prompt_file="design.md",
        fallback_prompt="Produce the design artifacts for the current phase.",
    ),
    "flow.analyze": SkillSpec(
        name="flow.analyze",
        prompt_file="analyze.md",
        fallback_prompt="Analyze the design artifacts for gaps and inconsistencies.",
    ),
    "flow.implement": SkillSpec(
        name="flow.implement",
        prompt_file="implement.md",
        fallback_prompt="Implement the listed tasks and tick them off in the task document.",
    ),
    "flow.verify": SkillSpec(
        name="flow.verify",
        prompt_file="verify.md",
        fallback_prompt="Verify the implementation against the task document and run the tests.",
    ),
    "flow.merge": SkillSpec(
        name="flow.merge",
        prompt_file="merge.md",
        fallback_prompt="Close the phase and merge the work into the main branch.",
    ),
    HEAL_SKILL: SkillSpec(
        name=HEAL_SKILL,
        prompt_file="heal.md",
        fallback_prompt="Recover from the failure described below.",
    ),
}


def expected_step(skill: str, fallback: str | None = None) -> str | None:
    """Pipeline step a skill's success completes; heal executions keep their own step."""
    return STEP_FOR_SKILL.get(skill, fallback)


@dataclass(slots=True)
class SpawnContext:
    run_id: str
    skill: str
    step: str
    batch_index: int | None = None
    section: str | None = None
    task_ids: list[str] = field(default_factory=list)
    instructions: str = ""
    additional_context: str = ""
    answers: dict[str, Any] = field(default_factory=dict)
    failure_report: str = ""
    resume_session: str | None = None
    heal: bool = False


def load_skill_prompt(skill: str, skills_dir: Path | None = None) -> str:
    spec = SKILLS.get(skill)
    if spec is None:
        raise KeyError(f"Unknown skill: {skill}")
    if skills_dir is not None:
        override = skills_dir / f"{skill}.md"
        if override.is_file():
            return override.read_text(encoding="utf-8").strip()
    try:
        prompt_path = resources.files("flowpilot.skills").joinpath("prompts", spec.prompt_file)
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        logger.debug("No packaged prompt for %s; using fallback", skill)
        return spec.fallback_prompt.strip()


def build_prompt(context: SpawnContext, skills_dir: Path | None = None) -> str:
    parts = [load_skill_prompt(context.skill, skills_dir)]
    parts.append(f"Skill: {context.skill}\nStep: {context.step}\nRun: {context.run_id}")
    if context.instructions:
        parts.append(context.instructions)
    if context.failure_report:
        parts.append(context.failure_report)
    if context.additional_context:
        parts.append(f"## Additional Context\n\n{context.additional_context}")
    if context.answers:
        parts.append(
            "## Answers From The Operator\n\n"
            + json.dumps(context.answers, ensure_ascii=False, indent=2)
        )
    return "\n\n".join(part.strip() for part in parts if part.strip()) + "\n"
