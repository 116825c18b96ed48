"""Receipt extraction using an OpenAI vision model.

The worker hands over raw image bytes; the service sends them as a data
URL to the Chat Completions API with a JSON schema response format and
validates the reply into :class:`ExtractedReceipt`.  Any failure is
raised as :class:`FetchError` so the worker can record it on the receipt
and let the broker retry.

Diagnostic logging can be enabled by setting ``EXTRACTION_DEBUG=1``.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from receiptsync.core.config import settings
from receiptsync.core.errors import FetchError
from receiptsync.models.schemas import ExtractedReceipt
from receiptsync.utils.prompts import get_default_extraction_prompt

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"


def _guess_media_type(data: bytes, content_type: Optional[str]) -> str:
    if content_type:
        return content_type
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(_PDF_MAGIC):
        return "application/pdf"
    return "image/jpeg"


class ExtractionService:
    """Turns a receipt image into structured fields."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None) -> None:
        self._client = client
        self.model = model or settings.EXTRACTION_MODEL
        self.debug = os.getenv("EXTRACTION_DEBUG", "0").lower() in {"1", "true", "yes"}

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    def _content_part(self, data: bytes, media_type: str) -> dict[str, Any]:
        b64 = base64.b64encode(data).decode("ascii")
        if media_type == "application/pdf":
            return {"type": "file", "file": {"filename": "receipt.pdf", "file_data": f"data:{media_type};base64,{b64}"}}
        return {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{b64}", "detail": "auto"}}

    async def extract(self, data: bytes, content_type: Optional[str] = None) -> ExtractedReceipt:
        media_type = _guess_media_type(data, content_type)
        schema: dict[str, Any] = ExtractedReceipt.model_json_schema()
        if self.debug:
            logger.info("[extraction] start model=%s bytes=%d type=%s", self.model, len(data), media_type)
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": get_default_extraction_prompt()},
                    {
                        "role": "user",
                        "content": [
                            self._content_part(data, media_type),
                            {"type": "text", "text": "Extract the receipt details from this document."},
                        ],
                    },
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "ExtractedReceipt", "schema": schema, "strict": False},
                },
            )
        except OpenAIError as exc:
            logger.warning("[extraction] model call failed model=%s err=%s", self.model, exc)
            raise FetchError(f"Extraction request failed: {exc}") from exc

        text = resp.choices[0].message.content if resp.choices else None
        if not text:
            raise FetchError("Extraction returned an empty response")
        try:
            result = ExtractedReceipt.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise FetchError(f"Extraction returned invalid JSON: {exc}") from exc
        if self.debug:
            logger.info("[extraction] ok vendor=%s amount=%s", result.vendor, result.amount)
        return result


__all__ = ["ExtractionService"]
