"""Structured planning tool for multi-part requests."""

from typing import Literal

from pydantic import BaseModel, Field

from yari.agent.tools.base import Tool

_STEP_COUNTS = {"simple": 3, "moderate": 5, "complex": 8}
_STEP_ESTIMATES = {"simple": "1-2 hours", "moderate": "2-4 hours", "complex": "4-8 hours"}


class CreatePlanInput(BaseModel):
    objective: str = Field(..., min_length=1, description="The main goal or objective to plan for")
    complexity: Literal["simple", "moderate", "complex"] = "moderate"
    timeframe: str | None = Field(None, description="Expected timeframe for completion")
    constraints: list[str] = Field(default_factory=list, description="Any constraints or limitations")


class PlanStep(BaseModel):
    title: str
    description: str
    estimated_time: str | None = None
    dependencies: list[str] = Field(default_factory=list)


class CreatePlanOutput(BaseModel):
    title: str
    overview: str
    steps: list[PlanStep] = Field(..., min_length=1)
    timeline: str | None = None
    constraints: list[str] = Field(default_factory=list)


class CreatePlanTool(Tool):
    """Break an objective into ordered steps."""

    name = "create_plan"
    description = "Create a structured plan for complex tasks and projects."
    input_model = CreatePlanInput
    output_model = CreatePlanOutput

    async def run(self, params: CreatePlanInput) -> CreatePlanOutput:
        count = _STEP_COUNTS[params.complexity]
        within = f" within {params.timeframe}" if params.timeframe else ""
        steps = [
            PlanStep(
                title=f"Step {i + 1}",
                description=f"Phase {i + 1} of {count} toward: {params.objective}",
                estimated_time=_STEP_ESTIMATES[params.complexity],
                dependencies=[f"Step {i}"] if i > 0 else [],
            )
            for i in range(count)
        ]
        return CreatePlanOutput(
            title=f"Plan: {params.objective}",
            overview=f"{params.complexity.capitalize()} plan to achieve: {params.objective}{within}.",
            steps=steps,
            timeline=params.timeframe or f"{count * 2}-{count * 4} hours",
            constraints=params.constraints,
        )
