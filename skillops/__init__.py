"""SkillOps: skill execution engine with a credit ledger."""

from skillops.app import SkillOpsApp, build_app

__version__ = "0.1.0"

__all__ = ["SkillOpsApp", "__version__", "build_app"]
