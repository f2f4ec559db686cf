"""LLM client wrapper for Azure OpenAI API."""
import logging
from dataclasses import dataclass
from typing import Optional

from openai import AzureOpenAI
from config import settings

logger = logging.getLogger("Ledgerline.LLM")

_client = None


@dataclass
class LLMResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


def get_client() -> AzureOpenAI:
    """Get or create Azure OpenAI client singleton."""
    global _client
    if _client is None:
        _client = AzureOpenAI(
            api_key=settings.AZURE_OPENAI_API_KEY,
            azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
            api_version=settings.AZURE_OPENAI_API_VERSION,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )
        logger.info("Azure OpenAI client initialized (endpoint=%s)", settings.AZURE_OPENAI_ENDPOINT)
    return _client


def _build_content(prompt: str, images: Optional[list[str]]) -> list[dict]:
    content = [{"type": "text", "text": prompt}]
    for image_base64 in images or []:
        content.append({
            "type": "image_url",
            "image_url": {"url": f"data:image/png;base64,{image_base64}"},
        })
    return content


def generate_json(
    prompt: str,
    images: Optional[list[str]] = None,
    temperature: float = 0.1,
    max_tokens: int = 4096,
    deployment: str = None,
) -> LLMResponse:
    """
    Send one prompt (plus optional base64 PNG page images) in JSON mode.

    Returns the raw response text with token usage. Parsing is left to the
    caller since each pass recovers from bad JSON differently.
    """
    client = get_client()
    model = deployment or (settings.AZURE_OPENAI_VISION_DEPLOYMENT if images else settings.AZURE_OPENAI_DEPLOYMENT)
    response = client.chat.completions.create(
        model=model,
        messages=[{"role": "user", "content": _build_content(prompt, images)}],
        temperature=temperature,
        max_tokens=max_tokens,
        response_format={"type": "json_object"},
    )
    usage = response.usage
    text = (response.choices[0].message.content or "").strip()
    return LLMResponse(
        text=text or "{}",
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )
