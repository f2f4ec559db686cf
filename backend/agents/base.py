"""Base agent interface for Ledgerline."""
import json
import re
from abc import ABC, abstractmethod
from typing import Optional, Union

from services.llm_client import LLMResponse, generate_json


def parse_llm_json(text: str) -> Union[dict, list]:
    """Parse model JSON, tolerating markdown fences. Raises ValueError on bad JSON."""
    text = (text or "").strip()
    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    return json.loads(text.strip() or "{}")


class BaseAgent(ABC):
    """All agents call the model through ``_generate`` and implement ``run``."""

    temperature: float = 0.1
    max_tokens: int = 4096

    def _generate(
        self,
        prompt: str,
        images: Optional[list[str]] = None,
        temperature: float = None,
        max_tokens: int = None,
    ) -> LLMResponse:
        return generate_json(
            prompt,
            images=images,
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.max_tokens,
        )

    @abstractmethod
    def run(self, *args, **kwargs):
        """Execute the agent. Return type is agent specific."""
        pass
