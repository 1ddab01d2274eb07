"""Unit tests for the Claude vision receipt extractor."""

import base64
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from receiptsync.errors import FileError
from receiptsync.integrations.vision_extractor import (
    ExtractionIncompleteError,
    ExtractionRefusedError,
    VisionExtractor,
    validate_image,
)
from receiptsync.models import ExtractedLineItem, ExtractedReceipt

pytestmark = pytest.mark.unit

IMAGE = b"\xff" * 2048


@pytest.fixture
def api_key():
    """Provide a test API key."""
    return "sk-test-key-12345"


@pytest.fixture
def prompts_dir():
    """Get the prompts directory path."""
    project_root = Path(__file__).parent.parent.parent
    return str(project_root / "prompts")


@pytest.fixture
def extracted():
    return ExtractedReceipt(
        merchant_name="Kedai Runcit Ali",
        date="2025-06-01",
        total_amount=42.5,
        currency="MYR",
        items=[ExtractedLineItem(description="Rice 5kg", amount=42.5)],
        confidence_score=0.9,
    )


def make_response(parsed=None, stop_reason="end_turn"):
    response = MagicMock()
    response.stop_reason = stop_reason
    response.parsed_output = parsed
    response.usage = MagicMock(
        input_tokens=1500,
        output_tokens=200,
        cache_creation_input_tokens=None,
        cache_read_input_tokens=900,
    )
    return response


@pytest.fixture
def extractor(api_key, prompts_dir):
    return VisionExtractor(api_key=api_key, prompts_dir=prompts_dir)


class TestValidateImage:
    @pytest.mark.parametrize(
        "image,media_type,message",
        [
            (b"", "image/jpeg", "empty"),
            (b"x" * 10, "image/jpeg", "too small"),
            (b"x" * (6 * 1024 * 1024), "image/jpeg", "Maximum size is 5MB"),
            (IMAGE, "image/gif", "Unsupported image type"),
        ],
    )
    def test_invalid(self, image, media_type, message):
        with pytest.raises(FileError, match=message):
            validate_image(image, media_type)

    def test_valid(self):
        validate_image(IMAGE, "image/png")


class TestPromptRendering:
    """Test cases for prompt template rendering."""

    def test_init_with_defaults(self, extractor):
        assert extractor.model == "claude-haiku-4-5"
        assert extractor.max_tokens == 2048
        assert extractor.temperature == 0.0

    def test_system_prompt(self, extractor):
        system_prompt, _ = extractor._render_prompts()
        assert "receipt data extraction" in system_prompt.lower()
        assert "json" in system_prompt.lower()
        assert "use MYR" in system_prompt

    def test_user_prompt_includes_file_name(self, extractor):
        _, user_prompt = extractor._render_prompts("lunch.jpg")
        assert "lunch.jpg" in user_prompt
        _, bare_prompt = extractor._render_prompts()
        assert "()" not in bare_prompt


class TestExtraction:
    """Test cases for extraction and error handling."""

    @pytest.mark.asyncio
    async def test_extract_success(self, extractor, extracted, mocker):
        mock_parse = AsyncMock(return_value=make_response(extracted))
        mocker.patch.object(extractor.client.beta.messages, "parse", mock_parse)

        result = await extractor.extract(IMAGE, media_type="image/png", file_name="r.png")

        assert result.receipt == extracted
        assert result.input_tokens == 1500
        assert result.cache_creation_input_tokens == 0
        assert result.cache_read_input_tokens == 900
        assert result.processing_time >= 0

        call_kwargs = mock_parse.call_args.kwargs
        assert call_kwargs["betas"] == ["structured-outputs-2025-11-13"]
        assert call_kwargs["output_format"] == ExtractedReceipt
        assert call_kwargs["system"][0]["cache_control"] == {"type": "ephemeral"}
        image_block = call_kwargs["messages"][0]["content"][0]
        assert image_block["source"]["media_type"] == "image/png"
        assert base64.standard_b64decode(image_block["source"]["data"]) == IMAGE

    @pytest.mark.asyncio
    async def test_max_tokens_override(self, extractor, extracted, mocker):
        mock_parse = AsyncMock(return_value=make_response(extracted))
        mocker.patch.object(extractor.client.beta.messages, "parse", mock_parse)

        await extractor.extract(IMAGE, max_tokens=4096)
        assert mock_parse.call_args.kwargs["max_tokens"] == 4096

    @pytest.mark.asyncio
    async def test_invalid_image_not_sent(self, extractor, mocker):
        mock_parse = AsyncMock()
        mocker.patch.object(extractor.client.beta.messages, "parse", mock_parse)

        with pytest.raises(FileError):
            await extractor.extract(b"tiny")
        mock_parse.assert_not_called()

    @pytest.mark.asyncio
    async def test_refusal(self, extractor, mocker):
        mock_parse = AsyncMock(return_value=make_response(stop_reason="refusal"))
        mocker.patch.object(extractor.client.beta.messages, "parse", mock_parse)

        with pytest.raises(ExtractionRefusedError, match="refused"):
            await extractor.extract(IMAGE)
        assert mock_parse.call_count == 1

    @pytest.mark.asyncio
    async def test_truncated(self, extractor, mocker):
        mock_parse = AsyncMock(return_value=make_response(stop_reason="max_tokens"))
        mocker.patch.object(extractor.client.beta.messages, "parse", mock_parse)

        with pytest.raises(ExtractionIncompleteError, match="truncated"):
            await extractor.extract(IMAGE)

    @pytest.mark.asyncio
    async def test_retry_on_api_error(self, extractor, extracted, mocker):
        """API errors are retried until the third attempt succeeds."""
        mock_parse = AsyncMock(
            side_effect=[Exception("API Error 1"), Exception("API Error 2"), make_response(extracted)]
        )
        mocker.patch.object(extractor.client.beta.messages, "parse", mock_parse)

        result = await extractor.extract(IMAGE)
        assert result.receipt == extracted
        assert mock_parse.call_count == 3
