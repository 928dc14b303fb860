"""Gemini gateway: manual analysis, step illustration and file download.

The google-genai client is synchronous, so every call runs in a worker
thread under ``asyncio.wait_for``; the event loop stays free for other
requests while a pipeline waits on the provider. Provider errors propagate
unchanged so the retry layer can classify them.
"""

from __future__ import annotations

import asyncio
import base64
import io
from dataclasses import dataclass

import structlog
from google import genai
from google.genai import types
from PIL import Image, UnidentifiedImageError

from assemblychat.config import settings

logger = structlog.get_logger()

DEFAULT_IMAGE_MIME = "image/png"

ANALYSIS_CONFIG = types.GenerateContentConfig(
    temperature=0.2,
    response_mime_type="application/json",
)

IMAGE_CONFIG = types.GenerateContentConfig(
    response_modalities=["TEXT", "IMAGE"],
)


def get_client() -> genai.Client:
    """Create a Gemini client using the configured API key."""
    return genai.Client(api_key=settings.gemini_api_key)


@dataclass(frozen=True)
class FileReference:
    uri: str
    mime_type: str | None = None


def extract_text(response: types.GenerateContentResponse) -> str:
    """Join all text parts of the first candidate."""
    if not response.candidates:
        return ""
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return ""
    return "\n".join(part.text for part in content.parts if part.text is not None)


def _all_parts(response: types.GenerateContentResponse) -> list[types.Part]:
    parts: list[types.Part] = []
    for candidate in response.candidates or []:
        if candidate.content is not None and candidate.content.parts:
            parts.extend(candidate.content.parts)
    return parts


def find_inline_image(response: types.GenerateContentResponse) -> tuple[bytes, str | None] | None:
    """First inline image payload across all candidates, with its declared MIME type."""
    for part in _all_parts(response):
        if part.inline_data is not None and part.inline_data.data:
            return part.inline_data.data, part.inline_data.mime_type
    return None


def find_file_reference(response: types.GenerateContentResponse) -> FileReference | None:
    """First downloadable file reference across all candidates."""
    for part in _all_parts(response):
        if part.file_data is not None and part.file_data.file_uri:
            return FileReference(uri=part.file_data.file_uri, mime_type=part.file_data.mime_type)
    return None


def sniff_image_mime(data: bytes) -> str | None:
    """Detect the MIME type of image bytes, or None if they are not a readable image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        return None
    return Image.MIME.get(fmt) if fmt else None


def to_data_uri(data: bytes, mime_type: str | None = None) -> str:
    """Encode image bytes as a data URI, detecting the MIME type when undeclared."""
    mime = mime_type or sniff_image_mime(data) or DEFAULT_IMAGE_MIME
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class GeminiGateway:
    """Thin async facade over the google-genai client used by the pipeline."""

    def __init__(
        self,
        client: genai.Client | None = None,
        *,
        text_model: str | None = None,
        image_model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._client = client
        self.text_model = text_model or settings.gemini_text_model
        self.image_model = image_model or settings.gemini_image_model
        self._timeout = timeout_seconds or settings.gemini_timeout_seconds

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(settings.gemini_api_key)

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def analyze_manual(self, pdf_bytes: bytes, prompt: str) -> str:
        """Send the PDF and analysis prompt; return the raw response text."""
        contents = [
            types.Part.from_bytes(data=pdf_bytes, mime_type="application/pdf"),
            prompt,
        ]
        logger.info("gemini_analysis_start", model=self.text_model, pdf_bytes=len(pdf_bytes))
        response = await asyncio.wait_for(
            asyncio.to_thread(
                self.client.models.generate_content,
                model=self.text_model,
                contents=contents,
                config=ANALYSIS_CONFIG,
            ),
            timeout=self._timeout,
        )
        text = extract_text(response)
        logger.info("gemini_analysis_done", text_len=len(text))
        return text

    async def generate_image(self, prompt: str) -> types.GenerateContentResponse:
        return await asyncio.wait_for(
            asyncio.to_thread(
                self.client.models.generate_content,
                model=self.image_model,
                contents=prompt,
                config=IMAGE_CONFIG,
            ),
            timeout=self._timeout,
        )

    async def download_file(self, reference: FileReference) -> bytes:
        return await asyncio.wait_for(
            asyncio.to_thread(self.client.files.download, file=reference.uri),
            timeout=self._timeout,
        )
