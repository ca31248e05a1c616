import json
import logging
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from journey_engine.config import OPENAI_API_KEY, OPENAI_MODEL

logger = logging.getLogger(__name__)


def build_decision_messages(prompt: str, option_keys: List[str]) -> List[Dict[str, str]]:
    return [
        {
            "role": "system",
            "content": (
                "You are a marketing automation assistant. Based on the following information "
                "about a contact, choose the best option.\n"
                f"Available options: {json.dumps(option_keys)}\n"
                "Respond with ONLY the option key, nothing else."
            ),
        },
        {"role": "user", "content": prompt},
    ]


class OpenAICompletionClient:
    """AI completion collaborator backed by the OpenAI chat completions API."""

    def __init__(self, api_key: Optional[str] = OPENAI_API_KEY, model: str = OPENAI_MODEL, client: Optional[AsyncOpenAI] = None):
        self.model = model
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def complete(self, messages: List[Dict[str, str]], temperature: float = 0.3) -> str:
        logger.debug(f"[AI] Requesting completion from {self.model}")
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""
