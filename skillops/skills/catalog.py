"""Skill catalog: which skills exist and how each one is priced."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from skillops.config.models import SkillConfig
from skillops.errors import UnknownSkillError


@dataclass(frozen=True, slots=True)
class SkillDefinition:
    """Pricing and limits for one skill.

    Fixed-price skills charge ``credit_cost``. Usage-priced skills reserve
    ``max_credits`` up front and charge the cost reported by the invoker,
    capped at that reservation.
    """

    skill_id: str
    name: str = ""
    credit_cost: int = 0
    pricing: str = "fixed"
    max_credits: int | None = None
    timeout_seconds: float | None = None
    description: str = ""

    @property
    def reservation_amount(self) -> int:
        if self.pricing == "usage":
            return int(self.max_credits or 0)
        return self.credit_cost

    def charge_for(self, reported_cost: int | None, reserved: int) -> tuple[int, str | None]:
        """Return the credits to charge and a billing note when the charge was capped."""
        if self.pricing != "usage":
            return min(self.credit_cost, reserved), None
        cost = max(0, int(reported_cost or 0))
        if cost > reserved:
            return reserved, f"reported cost {cost} exceeded reservation {reserved}; charged {reserved}"
        return cost, None

    @classmethod
    def from_config(cls, config: SkillConfig) -> SkillDefinition:
        return cls(
            skill_id=config.skill_id,
            name=config.name or config.skill_id,
            credit_cost=config.credit_cost,
            pricing=config.pricing,
            max_credits=config.max_credits,
            timeout_seconds=config.timeout_seconds,
            description=config.description,
        )


class SkillCatalog:
    """In-memory registry of skill definitions."""

    def __init__(self, skills: Iterable[SkillDefinition] = ()) -> None:
        self._skills: dict[str, SkillDefinition] = {}
        for skill in skills:
            self.register(skill)

    @classmethod
    def from_config(cls, configs: Iterable[SkillConfig]) -> SkillCatalog:
        return cls(SkillDefinition.from_config(config) for config in configs)

    def register(self, skill: SkillDefinition) -> None:
        if skill.pricing not in ("fixed", "usage"):
            raise ValueError(f"unsupported pricing '{skill.pricing}' for skill '{skill.skill_id}'")
        if skill.credit_cost < 0:
            raise ValueError("credit_cost must be >= 0")
        self._skills[skill.skill_id] = skill

    def get(self, skill_id: str) -> SkillDefinition:
        skill = self._skills.get(skill_id)
        if skill is None:
            raise UnknownSkillError(skill_id)
        return skill

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._skills

    def list(self) -> list[SkillDefinition]:
        return sorted(self._skills.values(), key=lambda skill: skill.skill_id)
