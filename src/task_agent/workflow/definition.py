"""The default research -> plan -> build workflow."""

from ..models import AgentConfig, PermissionMode
from .steps import build_step, plan_step, research_step
from .types import StepDefinition


def default_workflow(config: AgentConfig, push: bool = False) -> list[StepDefinition]:
    """Build the three phase definitions.

    Args:
        config: Supplies the model per phase
        push: Push the task branch after each phase commit
    """
    return [
        StepDefinition(
            id="research",
            name="Research",
            agent="research",
            run=research_step,
            model=config.research_model,
            permission_mode=PermissionMode.PLAN,
            commit=True,
            push=push,
        ),
        StepDefinition(
            id="plan",
            name="Planning",
            agent="planning",
            run=plan_step,
            model=config.planning_model,
            permission_mode=PermissionMode.PLAN,
            commit=True,
            push=push,
        ),
        StepDefinition(
            id="build",
            name="Build",
            agent="execution",
            run=build_step,
            model=config.build_model,
            permission_mode=PermissionMode.ACCEPT_EDITS,
            commit=True,
            push=push,
        ),
    ]
