"""Receipt image extraction with Claude vision and structured outputs."""

import base64
import logging
import time
from pathlib import Path

from anthropic import AsyncAnthropic
from anthropic.types.beta import (
    BetaCacheControlEphemeralParam,
    BetaMessageParam,
    BetaTextBlockParam,
)
from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from receiptsync.errors import FileError, ServerError
from receiptsync.models import ExtractedReceipt, ExtractionResult

logger = logging.getLogger(__name__)

SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/webp")
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MIN_IMAGE_BYTES = 1024


class ExtractionError(ServerError):
    """Base exception for extraction errors."""


class ExtractionRefusedError(ExtractionError):
    """Raised when the model refuses to process the request."""


class ExtractionIncompleteError(ExtractionError):
    """Raised when the response is truncated due to token limits."""


def validate_image(
    image: bytes,
    media_type: str,
    max_bytes: int = MAX_IMAGE_BYTES,
    min_bytes: int = MIN_IMAGE_BYTES,
) -> None:
    """Check an image against the size and type limits.

    Raises:
        FileError: If the image is empty, too small, too large or of an
            unsupported type
    """
    if not image:
        raise FileError("Image file is empty.")
    if len(image) > max_bytes:
        max_mb = max_bytes // (1024 * 1024)
        raise FileError(
            f"Image file too large. Maximum size is {max_mb}MB.",
            details={"size": len(image), "max_size": max_bytes},
        )
    if len(image) < min_bytes:
        raise FileError(
            "Image file too small. Please use a clearer image.",
            details={"size": len(image), "min_size": min_bytes},
        )
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise FileError(
            f"Unsupported image type: {media_type}. Use JPEG, PNG or WebP.",
        )


class VisionExtractor:
    """
    Claude-powered receipt extractor that reads the image directly.

    The image is sent as a base64 image block and the response is parsed
    into an ExtractedReceipt through structured outputs.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5",
        max_tokens: int = 2048,
        temperature: float = 0.0,
        prompts_dir: str | None = None,
        default_currency: str | None = "MYR",
    ) -> None:
        """
        Initialize the vision extractor.

        Args:
            api_key: Anthropic API key
            model: Model to use (default: claude-haiku-4-5)
            max_tokens: Maximum tokens for response (default: 2048)
            temperature: Sampling temperature (default: 0.0 for deterministic)
            prompts_dir: Directory containing Jinja2 templates (default: ./prompts)
            default_currency: Currency assumed when the receipt shows none
        """
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.default_currency = default_currency

        if prompts_dir is None:
            project_root = Path(__file__).parent.parent.parent.parent
            prompts_dir = str(project_root / "prompts")

        self.jinja_env = Environment(
            loader=FileSystemLoader(prompts_dir),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _render_prompts(self, file_name: str | None = None) -> tuple[str, str]:
        system_template = self.jinja_env.get_template("extractor_system.jinja2")
        user_template = self.jinja_env.get_template("extractor_user.jinja2")

        system_prompt = system_template.render(default_currency=self.default_currency)
        user_prompt = user_template.render(FILE_NAME=file_name)

        return system_prompt, user_prompt

    @retry(
        retry=retry_if_not_exception_type((ExtractionError, FileError)),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def extract(
        self,
        image: bytes,
        media_type: str = "image/jpeg",
        file_name: str | None = None,
        max_tokens: int | None = None,
    ) -> ExtractionResult:
        """
        Extract structured receipt data from an image.

        Args:
            image: Raw image bytes
            media_type: MIME type of the image
            file_name: Optional original file name, included in the prompt
            max_tokens: Override default max_tokens if specified

        Returns:
            ExtractionResult containing the validated receipt and usage metadata

        Raises:
            FileError: If the image fails size or type validation
            ExtractionRefusedError: If the model refuses the request
            ExtractionIncompleteError: If response is truncated
        """
        validate_image(image, media_type)
        start_time = time.time()

        system_prompt, user_prompt = self._render_prompts(file_name)
        encoded = base64.standard_b64encode(image).decode("ascii")

        messages: list[BetaMessageParam] = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": media_type,
                            "data": encoded,
                        },
                    },
                    {"type": "text", "text": user_prompt},
                ],
            }
        ]

        response = await self.client.beta.messages.parse(
            model=self.model,
            max_tokens=max_tokens or self.max_tokens,
            temperature=self.temperature,
            betas=["structured-outputs-2025-11-13"],
            system=[
                BetaTextBlockParam(
                    type="text",
                    text=system_prompt,
                    cache_control=BetaCacheControlEphemeralParam(type="ephemeral"),
                )
            ],
            messages=messages,
            output_format=ExtractedReceipt,
        )

        if response.stop_reason == "refusal":
            raise ExtractionRefusedError("Model refused to process the request")

        if response.stop_reason == "max_tokens":
            raise ExtractionIncompleteError(
                "Response truncated due to token limit. Try increasing max_tokens."
            )

        receipt: ExtractedReceipt = response.parsed_output  # type: ignore
        processing_time = time.time() - start_time
        logger.info(
            "[vision] extracted merchant=%s total=%s in %.2fs",
            receipt.merchant_name,
            receipt.total_amount,
            processing_time,
        )

        return ExtractionResult(
            receipt=receipt,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
            cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            processing_time=processing_time,
        )
