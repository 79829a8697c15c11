"""Skill catalog and invocation adapters."""

from skillops.skills.catalog import SkillCatalog, SkillDefinition
from skillops.skills.http_invoker import HttpSkillInvoker
from skillops.skills.invoker import LocalSkillInvoker, SkillHandler, SkillInvoker, SkillResult

__all__ = [
    "HttpSkillInvoker",
    "LocalSkillInvoker",
    "SkillCatalog",
    "SkillDefinition",
    "SkillHandler",
    "SkillInvoker",
    "SkillResult",
]
