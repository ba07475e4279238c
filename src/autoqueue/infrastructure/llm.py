import re
import logging
from typing import List, Optional

import httpx
from openai import (
    AsyncOpenAI,
    APIConnectionError,
    APITimeoutError,
    APIStatusError,
    RateLimitError,
    OpenAIError,
)
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)

from ..config import Settings
from ..core.exceptions import AutoQueueError, GenerationClientError, NetworkError
from ..core.models import (
    EnhancementResponse,
    GenerationRequest,
    GenerationResponse,
    MediaKind,
)

logger = logging.getLogger(__name__)

ENHANCED_VIDEO_SPEC = (
    "Technical specifications: Use cinematic camera movements, dynamic lighting, "
    "and professional color grading. Include specific details about camera angles, "
    "movement speed, and scene transitions. Ensure temporal consistency and realistic "
    "physics. Specify atmosphere, mood, and visual style clearly."
)

ENHANCED_IMAGE_SPEC = (
    "Technical specifications: Use professional photography techniques, optimal "
    "composition rules (rule of thirds, golden ratio), dramatic lighting setup, and "
    "specific artistic style. Include color palette, depth of field, and mood "
    "specification. Ensure photorealistic details and aesthetic appeal."
)

ENHANCE_TEMPERATURE = 0.7
ENHANCE_MAX_TOKENS = 500

API_KEY_REQUIRED = "API key is required"

_LIST_MARKER = re.compile(r'^\s*(?:\d+\s*[.):-]|[-*•])\s+')


def enhanced_spec(media_kind: MediaKind) -> str:
    return ENHANCED_VIDEO_SPEC if media_kind == "video" else ENHANCED_IMAGE_SPEC


def build_system_prompt(request: GenerationRequest) -> str:
    prompt = (
        f"You are an expert prompt engineer for Sora AI {request.media_kind} generation. "
        f"Generate {request.count} unique, highly detailed, and optimized prompts based on "
        f"the user's context."
    )

    if request.enhanced:
        prompt += f"\n\n{enhanced_spec(request.media_kind)}"
        prompt += (
            "\n\nApply these technical specifications to EVERY prompt you generate. "
            "Make each prompt vivid, specific, and production-ready."
        )
    else:
        prompt += (
            f" Each prompt should be specific, vivid, and optimized for "
            f"{request.media_kind} generation."
        )

    prompt += "\n\nReturn only the prompts, one per line, without numbering or additional formatting."
    return prompt


def parse_prompts(content: str) -> List[str]:
    """One prompt per non-empty line; list markers the model added anyway are dropped."""
    prompts = []
    for line in content.splitlines():
        text = _LIST_MARKER.sub("", line.strip()).strip()
        if text:
            prompts.append(text)
    return prompts


class PromptGenerationClient:
    """
    Wrapper around an OpenAI-compatible chat API that produces prompt texts.

    The public methods never raise: failures come back as
    success=False responses so the queue can decide what to do.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._http_client: Optional[httpx.AsyncClient] = None
        self.client: Optional[AsyncOpenAI] = None

        if not settings.api_key:
            logger.info("No API key configured, prompt generation disabled")
            return

        if settings.proxy_url:
            self._http_client = httpx.AsyncClient(
                proxy=settings.proxy_url,
                timeout=httpx.Timeout(settings.http_timeout)
            )

        self.client = AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.api_base_url,
            timeout=settings.http_timeout,
            http_client=self._http_client
        )

    @property
    def available(self) -> bool:
        return self.client is not None

    async def close(self) -> None:
        """Close HTTP client if it exists."""
        if self._http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> 'PromptGenerationClient':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Generate `request.count` prompts for the given context."""
        if not self.available:
            return GenerationResponse(success=False, error=API_KEY_REQUIRED)

        try:
            content = await self._complete(
                build_system_prompt(request),
                request.context,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens
            )
        except AutoQueueError as e:
            logger.error(f"Prompt generation failed: {e}")
            return GenerationResponse(success=False, error=e.message)

        prompts = parse_prompts(content)
        logger.info(f"Generated {len(prompts)} prompts ({request.media_kind}, enhanced={request.enhanced})")
        return GenerationResponse(success=True, prompts=prompts)

    async def enhance_prompt(self, text: str, media_kind: MediaKind = "video") -> EnhancementResponse:
        """Rewrite one prompt with the media-specific technical specification."""
        if not self.available:
            return EnhancementResponse(success=False, enhanced=text, error=API_KEY_REQUIRED)

        system_prompt = (
            f"You are an expert at enhancing prompts for Sora AI {media_kind} generation. "
            f"Take the user's basic prompt and enhance it with specific technical details, "
            f"camera movements (for video), lighting, atmosphere, and visual style. "
            f"{enhanced_spec(media_kind)} Return only the enhanced prompt, nothing else."
        )

        try:
            content = await self._complete(
                system_prompt,
                text,
                temperature=ENHANCE_TEMPERATURE,
                max_tokens=ENHANCE_MAX_TOKENS
            )
        except AutoQueueError as e:
            logger.error(f"Prompt enhancement failed: {e}")
            return EnhancementResponse(success=False, enhanced=text, error=e.message)

        return EnhancementResponse(success=True, enhanced=content.strip() or text)

    async def generate_similar(
        self,
        base_prompt: str,
        count: int,
        media_kind: MediaKind = "video"
    ) -> GenerationResponse:
        """Variations of an existing prompt."""
        if not self.available:
            return GenerationResponse(success=False, error=API_KEY_REQUIRED)

        system_prompt = (
            f"Generate {count} creative variations of the given prompt for Sora AI "
            f"{media_kind} generation. Each variation should maintain the core concept but "
            f"explore different angles, perspectives, styles, or scenarios. "
            f"Return only the prompts, one per line."
        )

        try:
            content = await self._complete(
                system_prompt,
                base_prompt,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens
            )
        except AutoQueueError as e:
            logger.error(f"Similar prompt generation failed: {e}")
            return GenerationResponse(success=False, error=e.message)

        return GenerationResponse(success=True, prompts=parse_prompts(content))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((NetworkError, httpx.TimeoutException)),
        reraise=True
    )
    async def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int
    ) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.settings.model_name,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens
            )
        except (APITimeoutError, APIConnectionError, httpx.TimeoutException) as e:
            raise NetworkError(
                f"Cannot reach generation API: {e}",
                url=self.settings.api_base_url
            ) from e
        except RateLimitError as e:
            raise NetworkError(
                "Rate limit exceeded. Please try again later.",
                url=self.settings.api_base_url,
                status_code=429
            ) from e
        except APIStatusError as e:
            if e.status_code >= 500 or e.status_code == 408:
                raise NetworkError(
                    f"Generation API error: {e.message}",
                    url=self.settings.api_base_url,
                    status_code=e.status_code
                ) from e
            raise GenerationClientError(
                e.message or "API request failed",
                model_name=self.settings.model_name
            ) from e
        except OpenAIError as e:
            raise GenerationClientError(
                f"Generation request failed: {e}",
                model_name=self.settings.model_name
            ) from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            logger.warning(f"Model {self.settings.model_name} returned empty response")
            raise GenerationClientError(
                f"Empty response from model {self.settings.model_name}",
                model_name=self.settings.model_name
            )

        return content
