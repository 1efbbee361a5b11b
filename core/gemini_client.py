# core/gemini_client.py
import google.generativeai as genai
from google.generativeai.types import GenerationConfig, HarmCategory, HarmBlockThreshold
from core.config import settings, logger as core_logger
from core.errors import AnalysisError
from core.models import ImageAnalysis, TagStyle
from typing import Dict, Optional
import httpx
import json
import mimetypes
import re
import time

logger = core_logger.getChild("GeminiVision")

# Configuration for generation (can be customized per call)
DEFAULT_GENERATION_CONFIG = GenerationConfig(
    max_output_tokens=500,
)

# Safety settings - adjust as needed, be cautious with NONE
DEFAULT_SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}

TAG_STYLE_INSTRUCTIONS: Dict[TagStyle, str] = {
    TagStyle.NEUTRAL: (
        "Generate a concise list of 5 neutral tags that accurately describe the content, setting, "
        "and main objects in the image. Use short, clear, factual terms. Avoid emotional, opinionated, "
        "or marketing words. Example tags: mountain, sunset, lake, reflection, trees, nature, landscape."
    ),
    TagStyle.PLAYFUL: (
        "Generate 5 playful, expressive tags that describe this image with energy or humor. Feel free "
        "to include slang or short phrases if appropriate. Combine literal and imaginative tags. "
        "Example tags: sunset vibes, wanderlust, weekend chill, good times, nature mood."
    ),
    TagStyle.SEO: (
        "Generate 5 SEO-friendly tags for this image. Use specific, searchable keywords and long-tail "
        "phrases that people might use to find this image online. Include variations of relevant terms "
        "(synonyms, categories, etc.). Avoid hashtags or emojis. Example tags: cozy coffee shop interior, "
        "cafe with warm lighting, people drinking coffee, modern cafe design."
    ),
}

PROMPT_TEMPLATE = """Analyze this image and provide:
1. A detailed, engaging description of what you see (1-2 sentences)
2. {instruction}

Format your response as JSON:
{{
  "description": "Your description here",
  "tags": ["tag1", "tag2", "tag3", "tag4", "tag5"]
}}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def resolve_tag_style(tag_style: str | TagStyle | None) -> TagStyle:
    """Unknown or missing styles fall back to neutral."""
    try:
        return TagStyle(tag_style)
    except ValueError:
        logger.debug(f"Unknown tag style '{tag_style}', using neutral.")
        return TagStyle.NEUTRAL


def build_prompt(tag_style: TagStyle) -> str:
    return PROMPT_TEMPLATE.format(instruction=TAG_STYLE_INSTRUCTIONS[tag_style])


def parse_analysis(text: Optional[str], tag_style: TagStyle) -> ImageAnalysis:
    """Extracts the first JSON object from the model reply."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise AnalysisError("Could not parse AI response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AnalysisError(f"Could not parse AI response: {e}") from e

    tags = payload.get("tags") or []
    if not isinstance(tags, list):
        tags = [tags]
    return ImageAnalysis(
        description=payload.get("description"),
        tags=[str(tag).strip() for tag in tags if str(tag).strip()],
        tag_style=tag_style,
    )


class GeminiVisionClient:
    """
    Captions images with a Gemini model.

    The model never talks to storage itself: the image is fetched through the
    signed URL it is given, so an expired or unreachable URL fails the call.
    """

    def __init__(
        self,
        api_key: str | None = settings.GEMINI_API_KEY,
        model_name: str = settings.GEMINI_VISION_MODEL,
        http_client: httpx.AsyncClient | None = None,
        fetch_timeout: float = settings.IMAGE_FETCH_TIMEOUT,
    ):
        self.configured = False
        self.model = None
        self.model_name = model_name
        self.http_client = http_client
        self.fetch_timeout = fetch_timeout

        if not api_key or api_key == "YOUR_GEMINI_API_KEY_HERE":
            logger.warning("GEMINI_API_KEY not configured. GeminiVisionClient will not function.")
            return

        try:
            genai.configure(api_key=api_key)
            self.model = genai.GenerativeModel(model_name)
            self.configured = True
            logger.info(f"Gemini Vision Client configured successfully (model: {model_name}).")
        except Exception as e:
            logger.error(f"Failed to configure Gemini Vision Client: {e}", exc_info=True)
            self.configured = False

    async def _fetch_image(self, image_url: str) -> tuple[bytes, str]:
        if not image_url or not image_url.lower().startswith("http"):
            raise AnalysisError("Invalid image URL")

        try:
            if self.http_client is not None:
                response = await self.http_client.get(image_url, timeout=self.fetch_timeout)
                response.raise_for_status()
            else:
                async with httpx.AsyncClient(follow_redirects=True, timeout=self.fetch_timeout) as client:
                    response = await client.get(image_url)
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Image URL returned HTTP {e.response.status_code}; it may have expired.", exc_info=False)
            raise AnalysisError(f"Image URL not readable (HTTP {e.response.status_code})") from e
        except httpx.RequestError as e:
            logger.error(f"Network error fetching image for analysis: {e}", exc_info=False)
            raise AnalysisError(f"Image URL unreachable: {e}") from e

        content = response.content
        if not content:
            raise AnalysisError("Image URL returned no content")

        mime_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        if not mime_type.startswith("image/"):
            guessed, _ = mimetypes.guess_type(httpx.URL(image_url).path)
            mime_type = guessed or "image/jpeg"
        return content, mime_type

    async def analyze_image(self, image_url: str, tag_style: str | TagStyle = TagStyle.NEUTRAL) -> ImageAnalysis:
        """Describe and tag the image behind `image_url`. Raises AnalysisError on any failure."""
        if not self.configured:
            logger.error("Attempted analysis with unconfigured Gemini client.")
            raise AnalysisError("Gemini client not configured")

        style = resolve_tag_style(tag_style)
        image_bytes, mime_type = await self._fetch_image(image_url)

        logger.info(f"Analyzing image ({len(image_bytes)} bytes, {mime_type}) with style '{style.value}'...")
        start_time = time.monotonic()
        try:
            response = await self.model.generate_content_async(
                [build_prompt(style), {"mime_type": mime_type, "data": image_bytes}],
                generation_config=DEFAULT_GENERATION_CONFIG,
                safety_settings=DEFAULT_SAFETY_SETTINGS,
            )
        except Exception as e:
            logger.error(f"Gemini vision call failed: {e}", exc_info=False)
            raise AnalysisError(str(e)) from e

        if not response.candidates:
            block_reason = response.prompt_feedback.block_reason.name if response.prompt_feedback else "Unknown"
            logger.warning(f"Gemini response blocked. Reason: {block_reason}")
            raise AnalysisError(f"Content blocked by safety filter: {block_reason}")

        try:
            text = response.text
        except ValueError as e:
            # .text raises when the candidate carries no text part
            raise AnalysisError(f"Empty AI response: {e}") from e

        analysis = parse_analysis(text, style)
        duration = time.monotonic() - start_time
        logger.info(f"Gemini vision analysis took {duration:.2f}s. Tags: {len(analysis.tags)}")
        return analysis

    async def generate_tags(self, image_url: str, tag_style: str | TagStyle = TagStyle.NEUTRAL) -> list[str]:
        return (await self.analyze_image(image_url, tag_style)).tags

    async def generate_description(self, image_url: str) -> Optional[str]:
        return (await self.analyze_image(image_url, TagStyle.NEUTRAL)).description
