import logging

import aiohttp

from . import config
from .errors import LLMError
from .retry import retry_async

logger = logging.getLogger("personabot.llm")


class LLMClient:
    """OpenAI-compatible chat completions with the persona system prompt."""

    def __init__(self, api_key: str | None = None, api_url: str | None = None, model: str | None = None,
                 persona_prompt: str | None = None, temperature: float | None = None,
                 max_tokens: int = 600, timeout_secs: float | None = None):
        self.api_key = api_key or config.LLM_API_KEY
        self.api_url = api_url or config.LLM_API_URL
        self.model = model or config.LLM_MODEL
        self.persona_prompt = persona_prompt or config.PERSONA_PROMPT
        self.temperature = config.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens
        self.timeout = aiohttp.ClientTimeout(total=timeout_secs or config.LLM_TIMEOUT_SECS)

    def build_messages(self, window, user_text: str) -> list[dict]:
        messages = [{"role": "system", "content": self.persona_prompt}]
        for role, text in window:
            messages.append({"role": role, "content": text})
        messages.append({"role": "user", "content": user_text})
        return messages

    async def _post(self, data: dict) -> str:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.api_url, headers=headers, json=data) as response:
                response.raise_for_status()
                result = await response.json()
        try:
            return result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"unexpected completion payload: {e}") from e

    async def generate_reply(self, session_id: int, window, user_text: str) -> str | None:
        data = {
            "model": self.model,
            "messages": self.build_messages(window, user_text),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            return await retry_async(lambda: self._post(data), label='llm')
        except Exception as e:
            logger.warning(f"LLM request error for {session_id}: {e}")
            return None
