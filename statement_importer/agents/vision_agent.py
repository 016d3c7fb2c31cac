"""StatementVisionAgent: reads photographed bank statements with a vision-capable LLM.

The agent sends the image as a base64 data URL next to a fixed extraction prompt, asks for a JSON
object response and validates its shape. It never interprets amounts or dates itself; the
pipeline normalizes them with the locale parsers.
"""

import base64
import json
import mimetypes

import groq
from pydantic import ValidationError

from statement_importer.agents.base import AgentExtraction, BaseAgent
from statement_importer.agents.prompts import USER_PROMPT, USER_PROMPT_LOG_LABEL, VISION_SYSTEM_PROMPT
from statement_importer.core.errors import InputQualityError, TransientError
from statement_importer.core.models import RawDocument
from statement_importer.core.settings import Settings
from statement_importer.core.utils import get_logger, truncate

logger = get_logger("statement-importer.agent")

DEFAULT_MIME_TYPE = "image/jpeg"

_MAGIC_MIME_TYPES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def detect_mime_type(data: bytes, file_name: str | None = None) -> str:
    """Guess an image MIME type from magic bytes, then from the file name."""
    for magic, mime in _MAGIC_MIME_TYPES:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed and guessed.startswith("image/"):
            return guessed
    return DEFAULT_MIME_TYPE


def parse_json_object(raw_output: str) -> dict:
    """Parse the JSON object in an LLM reply, tolerating text around it."""
    try:
        data = json.loads(raw_output)
    except json.JSONDecodeError:
        start, end = raw_output.find("{"), raw_output.rfind("}")
        if start == -1 or end <= start:
            msg = "The vision model did not return a JSON object"
            raise InputQualityError(msg) from None
        try:
            data = json.loads(raw_output[start : end + 1])
        except json.JSONDecodeError as exc:
            msg = f"The vision model returned malformed JSON: {exc}"
            raise InputQualityError(msg) from exc
    if not isinstance(data, dict):
        msg = "The vision model did not return a JSON object"
        raise InputQualityError(msg)
    return data


class StatementVisionAgent(BaseAgent):
    """Agent responsible for LLM-based extraction of photographed statements."""

    def __init__(self, llm_client: object, settings: Settings) -> None:
        """Initialize the StatementVisionAgent with an LLM client and settings."""
        self.llm_client = llm_client
        self.settings = settings

    def _messages(self, document: RawDocument) -> list[dict]:
        mime = detect_mime_type(document.data, document.file_name)
        encoded = base64.b64encode(document.data).decode("ascii")
        return [
            {"role": "system", "content": VISION_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": USER_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}},
                ],
            },
        ]

    def extract(self, document: RawDocument) -> AgentExtraction:
        """Call the vision model and return its validated extraction."""
        logger.info(f"PROMPT: {USER_PROMPT_LOG_LABEL} ({len(document.data)} bytes, {document.file_name})")
        try:
            completion = self.llm_client.chat.completions.create(
                model=self.settings.vision_model,
                messages=self._messages(document),
                temperature=self.settings.vision_temperature,
                max_completion_tokens=self.settings.vision_max_completion_tokens,
                response_format={"type": "json_object"},
            )
        except groq.BadRequestError as exc:
            msg = f"The vision model rejected the image: {exc}"
            logger.exception(msg)
            raise InputQualityError(msg) from exc
        except groq.APIError as exc:
            msg = f"Groq API call failed: {exc}"
            logger.exception(msg)
            raise TransientError(msg) from exc

        raw_output = completion.choices[0].message.content or ""
        logger.info(f"OUTPUT: {truncate(raw_output)}")
        data = parse_json_object(raw_output)
        try:
            extraction = AgentExtraction.model_validate(data)
        except ValidationError as exc:
            msg = f"Invalid response format from the vision model: {exc}"
            raise InputQualityError(msg) from exc
        logger.info(
            f"Vision extraction: {len(extraction.accounts)} accounts, "
            f"{len(extraction.transactions)} transactions, confidence {extraction.confidence}"
        )
        return extraction


def validate_extraction(extraction: AgentExtraction, min_confidence: float) -> None:
    """Reject low-confidence or empty extractions."""
    if extraction.confidence < min_confidence:
        msg = f"Low confidence extraction ({extraction.confidence:g} < {min_confidence:g})"
        raise InputQualityError(msg)
    if not extraction.accounts and not extraction.transactions:
        msg = "No accounts or transactions could be read from the image"
        raise InputQualityError(msg)
