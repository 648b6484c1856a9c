"""Phase step runners."""

from .build import build_step
from .plan import plan_step
from .research import research_step

__all__ = ["research_step", "plan_step", "build_step"]
