"""The terminal tool: the model calls it to hand over its final answer."""

from pydantic import BaseModel, Field

from yari.agent.tools.base import Tool

FINAL_ANSWER_TOOL = "final_answer"


class FinalAnswerInput(BaseModel):
    answer: str = Field(..., min_length=1, description="The comprehensive final answer to the user's question")
    sources: list[str] = Field(default_factory=list, description="Sources and references used")
    confidence: float = Field(..., ge=0, le=100, description="Confidence level in the answer (0-100)")
    follow_up: list[str] = Field(default_factory=list, description="Suggested follow-up questions or actions")


class FinalAnswerOutput(BaseModel):
    answer: str
    sources: list[str]
    confidence: float
    follow_up: list[str]


class FinalAnswerTool(Tool):
    name = FINAL_ANSWER_TOOL
    description = (
        "Provide the final comprehensive answer after completing all necessary "
        "research and analysis. Calling this ends the task."
    )
    input_model = FinalAnswerInput
    output_model = FinalAnswerOutput

    async def run(self, params: FinalAnswerInput) -> FinalAnswerOutput:
        return FinalAnswerOutput(**params.model_dump())
