"""Receipt segmentation using an OpenAI vision model.

Given a photographed sheet, the segmenter returns the bounding boxes of
every receipt it can see, in reading order, on a 0-1000 normalised
grid. An empty list means the sheet has no detectable receipt. Output
that cannot be parsed into boxes raises :class:`SegmentationError`;
the orchestrator treats that as a whole-job failure.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, List, Optional, Protocol

from openai import APIConnectionError, InternalServerError, OpenAI, RateLimitError
from pydantic import ValidationError

from sheetwise.core.config import settings
from sheetwise.core.errors import CollaboratorUnavailableError, SegmentationError
from sheetwise.models.schemas import Region
from sheetwise.utils.helpers import strip_code_fences
from sheetwise.utils.prompts import get_default_segmentation_prompt

logger = logging.getLogger(__name__)


class ImageSegmenter(Protocol):
    def segment(self, image_data: bytes) -> List[Region]:
        ...


def parse_regions(raw_text: str) -> List[Region]:
    """Parse the model's reply into regions, preserving order."""
    try:
        payload: Any = json.loads(strip_code_fences(raw_text))
    except json.JSONDecodeError as e:
        raise SegmentationError(f"Segmenter did not return valid JSON: {e}") from e
    if not isinstance(payload, list):
        raise SegmentationError("Segmenter response is not a JSON array")
    try:
        return [Region.model_validate(box) for box in payload]
    except ValidationError as e:
        raise SegmentationError(f"Segmenter response is not in the expected bounding box format: {e}") from e


class OpenAISegmenter:
    """Locate receipts on a sheet with a vision-capable chat model."""

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, prompt: Optional[str] = None) -> None:
        self.client = client or OpenAI(api_key=settings.OPENAI_API_KEY)
        self.model = model or settings.SEGMENTATION_MODEL
        self.prompt = prompt or get_default_segmentation_prompt()

    def segment(self, image_data: bytes) -> List[Region]:
        b64 = base64.b64encode(image_data).decode("utf-8")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": self.prompt},
                            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
                        ],
                    }
                ],
            )
        except (APIConnectionError, RateLimitError, InternalServerError) as e:
            raise CollaboratorUnavailableError(f"Segmentation model unavailable: {e}") from e
        raw_text = response.choices[0].message.content or ""
        logger.debug("[segmentation] raw response model=%s: %s", self.model, raw_text)
        regions = parse_regions(raw_text)
        logger.info("[segmentation] model=%s regions=%d", self.model, len(regions))
        return regions
