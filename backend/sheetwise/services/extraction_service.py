"""Receipt field extraction using an OpenAI vision model.

This service turns one cropped receipt image into an
:class:`ExtractedReceipt`. The model is instructed to answer ``{}``
for an image it cannot read; that reply raises
:class:`UnreadableReceiptError`. A reply that is not JSON, lacks the
mandatory ``total`` or otherwise fails schema validation raises
:class:`ExtractionError`. Both are per-receipt failures: the
orchestrator marks the receipt failed and moves on to the next one.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional, Protocol

from openai import APIConnectionError, InternalServerError, OpenAI, RateLimitError
from pydantic import ValidationError

from sheetwise.core.config import settings
from sheetwise.core.errors import CollaboratorUnavailableError, ExtractionError, UnreadableReceiptError
from sheetwise.models.schemas import ExtractedReceipt
from sheetwise.utils.helpers import parse_amount, strip_code_fences
from sheetwise.utils.prompts import get_default_extraction_prompt

logger = logging.getLogger(__name__)


class FieldExtractor(Protocol):
    def extract(self, image_data: bytes) -> ExtractedReceipt:
        ...


def parse_extraction(raw_text: str) -> ExtractedReceipt:
    """Validate the model's reply for one receipt."""
    try:
        payload: Any = json.loads(strip_code_fences(raw_text))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Extractor did not return valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ExtractionError("Extractor response is not a JSON object")
    if not payload or payload.get("unreadable") is True:
        raise UnreadableReceiptError("Receipt image is unreadable")
    total = parse_amount(payload.get("total"))
    if total is None or total == 0:
        raise ExtractionError("Extractor returned no usable total")
    try:
        return ExtractedReceipt.model_validate(payload)
    except ValidationError as e:
        raise ExtractionError(f"Extractor response failed validation: {e}") from e


class OpenAIExtractor:
    """Read merchant, date, items and totals off a single receipt.

    Diagnostic logging of raw model output is at DEBUG level.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, prompt: Optional[str] = None) -> None:
        self.client = client or OpenAI(api_key=settings.OPENAI_API_KEY)
        self.model = model or settings.EXTRACTION_MODEL
        self.prompt = prompt or get_default_extraction_prompt()

    def _image_to_base64(self, data: bytes) -> str:
        """Encode raw image bytes as a base64 string."""
        return base64.b64encode(data).decode("utf-8")

    def extract(self, image_data: bytes) -> ExtractedReceipt:
        b64 = self._image_to_base64(image_data)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
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
            raise CollaboratorUnavailableError(f"Extraction model unavailable: {e}") from e
        raw_text = response.choices[0].message.content or ""
        logger.debug("[extraction] raw response model=%s: %s", self.model, raw_text)
        details = parse_extraction(raw_text)
        logger.info(
            "[extraction] model=%s merchant=%s total=%s items=%d",
            self.model,
            details.merchant_name,
            details.total,
            len(details.items),
        )
        return details
