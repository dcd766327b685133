"""Image generation tool using the OpenAI images API."""

import os
from typing import Literal

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from yari.agent.tools.base import Tool
from yari.errors import ToolExecutionError

OPENAI_IMAGES_ENDPOINT = "https://api.openai.com/v1/images/generations"
PLACEHOLDER_URL = "https://via.placeholder.com/{size}?text=Generated+Image"


class ImageGenInput(BaseModel):
    prompt: str = Field(..., min_length=1, description="Detailed description of the image to generate")
    size: Literal["1024x1024", "1792x1024", "1024x1792"] = "1024x1024"
    style: Literal["natural", "artistic", "photographic"] = "natural"


class ImageGenOutput(BaseModel):
    url: str
    prompt: str
    size: str


class ImageGenTool(Tool):
    """Tool to generate images from a text prompt."""

    name = "generate_image"
    description = "Generate an image from a text description using AI. Returns the image URL."
    input_model = ImageGenInput
    output_model = ImageGenOutput

    def __init__(self, api_key: str | None = None, model: str = "dall-e-3", timeout: float = 60.0):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.model = model
        self.timeout = timeout

    async def run(self, params: ImageGenInput) -> ImageGenOutput:
        logger.info(f"Image generation: {params.prompt[:80]!r}")
        if not self.api_key:
            # No key: placeholder image
            return ImageGenOutput(
                url=PLACEHOLDER_URL.format(size=params.size),
                prompt=params.prompt,
                size=params.size,
            )

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                OPENAI_IMAGES_ENDPOINT,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "prompt": f"{params.style} style: {params.prompt}",
                    "size": params.size,
                    "quality": "standard",
                    "n": 1,
                },
            )
        if response.status_code != 200:
            raise ToolExecutionError(f"OpenAI error {response.status_code}: {response.text[:200]}")

        data = response.json().get("data") or [{}]
        return ImageGenOutput(url=data[0].get("url") or "", prompt=params.prompt, size=params.size)
