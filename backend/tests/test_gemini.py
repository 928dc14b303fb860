"""Tests for Gemini response helpers and the gateway (assemblychat/utils/gemini.py).

The gateway tests use a MagicMock client; nothing here touches the network.
"""

import base64
from unittest.mock import MagicMock

import pytest
from google.genai import types

from assemblychat.utils.gemini import (
    ANALYSIS_CONFIG,
    IMAGE_CONFIG,
    FileReference,
    GeminiGateway,
    extract_text,
    find_file_reference,
    find_inline_image,
    sniff_image_mime,
    to_data_uri,
)
from tests.fakes import file_reference_response, image_response, png_bytes, text_only_response


class TestResponseHelpers:
    def test_extract_text_joins_parts(self):
        response = types.GenerateContentResponse(
            candidates=[
                types.Candidate(
                    content=types.Content(
                        role="model", parts=[types.Part(text="{"), types.Part(text="}")]
                    )
                )
            ]
        )
        assert extract_text(response) == "{\n}"

    def test_extract_text_no_candidates(self):
        assert extract_text(types.GenerateContentResponse(candidates=[])) == ""

    def test_find_inline_image(self):
        data = png_bytes()
        found = find_inline_image(image_response(data, mime_type="image/png"))
        assert found == (data, "image/png")

    def test_inline_image_in_later_candidate(self):
        data = png_bytes()
        response = types.GenerateContentResponse(
            candidates=[
                types.Candidate(content=types.Content(role="model", parts=[types.Part(text="hi")])),
                types.Candidate(
                    content=types.Content(
                        role="model",
                        parts=[types.Part.from_bytes(data=data, mime_type="image/png")],
                    )
                ),
            ]
        )
        assert find_inline_image(response) == (data, "image/png")

    def test_no_inline_image_in_text_response(self):
        assert find_inline_image(text_only_response()) is None
        assert find_file_reference(text_only_response()) is None

    def test_find_file_reference(self):
        ref = find_file_reference(file_reference_response("files/abc", "image/jpeg"))
        assert ref == FileReference(uri="files/abc", mime_type="image/jpeg")


class TestDataUri:
    def test_declared_mime(self):
        data = png_bytes()
        uri = to_data_uri(data, "image/webp")
        assert uri.startswith("data:image/webp;base64,")
        assert base64.b64decode(uri.split(",", 1)[1]) == data

    def test_sniffed_mime(self):
        assert to_data_uri(png_bytes()).startswith("data:image/png;base64,")

    def test_unknown_bytes_default_to_png(self):
        assert sniff_image_mime(b"not an image") is None
        assert to_data_uri(b"not an image").startswith("data:image/png;base64,")


class TestGeminiGateway:
    @pytest.mark.asyncio
    async def test_analyze_manual_sends_pdf_and_prompt(self):
        client = MagicMock()
        client.models.generate_content.return_value = text_only_response('{"steps": []}')
        gateway = GeminiGateway(client, text_model="text-model", timeout_seconds=5)

        text = await gateway.analyze_manual(b"%PDF-1.4", "analyze this")

        assert text == '{"steps": []}'
        kwargs = client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "text-model"
        assert kwargs["config"] is ANALYSIS_CONFIG
        pdf_part, prompt = kwargs["contents"]
        assert pdf_part.inline_data.mime_type == "application/pdf"
        assert pdf_part.inline_data.data == b"%PDF-1.4"
        assert prompt == "analyze this"

    @pytest.mark.asyncio
    async def test_generate_image_uses_image_model(self):
        client = MagicMock()
        client.models.generate_content.return_value = image_response()
        gateway = GeminiGateway(client, image_model="image-model", timeout_seconds=5)

        await gateway.generate_image("draw step 1")

        kwargs = client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "image-model"
        assert kwargs["contents"] == "draw step 1"
        assert kwargs["config"] is IMAGE_CONFIG

    @pytest.mark.asyncio
    async def test_download_file(self):
        client = MagicMock()
        client.files.download.return_value = b"bytes"
        gateway = GeminiGateway(client, timeout_seconds=5)
        assert await gateway.download_file(FileReference("files/abc")) == b"bytes"
        client.files.download.assert_called_once_with(file="files/abc")

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self):
        client = MagicMock()
        client.models.generate_content.side_effect = RuntimeError("429 Too Many Requests")
        gateway = GeminiGateway(client, timeout_seconds=5)
        with pytest.raises(RuntimeError, match="Too Many Requests"):
            await gateway.generate_image("prompt")

    def test_configured_with_injected_client(self):
        assert GeminiGateway(MagicMock()).configured

    def test_not_configured_without_key(self, monkeypatch):
        from assemblychat.config import settings

        monkeypatch.setattr(settings, "gemini_api_key", "")
        assert not GeminiGateway().configured
