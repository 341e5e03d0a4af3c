"""
LLM providers behind one interface.

The provider is chosen by COGNIVAULT_LLM_PROVIDER at startup. Every call may
raise ProviderUnavailable; callers own the fallback.
"""
import asyncio
import base64
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiohttp

from .errors import ProviderUnavailable
from .logging_config import logger

OCR_PROMPT = (
    "Extract all readable text from this image. Return only the text exactly as it "
    "appears, with no commentary. If there is no readable text, return an empty response."
)


class LLMProvider(ABC):
    name = "abstract"

    @abstractmethod
    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        """Single-turn completion."""

    @abstractmethod
    async def extract_text_from_image(self, data: bytes, mime_type: str) -> Optional[str]:
        """OCR through a vision-capable model. None when the image holds no text."""

    async def close(self) -> None:
        pass


class FallbackLLM(LLMProvider):
    """No model configured: every call fails fast so callers use their fallback."""
    name = "fallback"

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        raise ProviderUnavailable("No LLM provider configured")

    async def extract_text_from_image(self, data: bytes, mime_type: str) -> Optional[str]:
        raise ProviderUnavailable("No vision provider configured")


def _messages(prompt: str, system: Optional[str]) -> List[Dict]:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAILLM(LLMProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str, vision_model: str):
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is not set. Put it in env or .env (server-side only).")
        from openai import OpenAI
        self.client = OpenAI(api_key=api_key)
        self.model = model
        self.vision_model = vision_model

    def _complete(self, model: str, messages: List[Dict]) -> str:
        logger.info("Sent request to OpenAI API", model=model)
        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.2,
        )
        return (response.choices[0].message.content or "").strip()

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        try:
            return await asyncio.to_thread(self._complete, self.model, _messages(prompt, system))
        except Exception as e:
            raise ProviderUnavailable("OpenAI request failed", detail=str(e)) from e

    async def extract_text_from_image(self, data: bytes, mime_type: str) -> Optional[str]:
        data_uri = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": OCR_PROMPT},
                {"type": "image_url", "image_url": {"url": data_uri}},
            ],
        }]
        try:
            text = await asyncio.to_thread(self._complete, self.vision_model, messages)
        except Exception as e:
            raise ProviderUnavailable("OpenAI vision request failed", detail=str(e)) from e
        return text or None


class OllamaLLM(LLMProvider):
    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout_seconds: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _chat(self, messages: List[Dict]) -> str:
        logger.info("Sent request to Ollama model", model=self.model)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(
                f"{self.base_url}/api/chat",
                json={"model": self.model, "messages": messages, "stream": False},
            ) as resp:
                resp.raise_for_status()
                data = await resp.json()
        return (data.get("message", {}).get("content") or "").strip()

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        try:
            return await self._chat(_messages(prompt, system))
        except Exception as e:
            raise ProviderUnavailable("Ollama request failed", detail=str(e)) from e

    async def extract_text_from_image(self, data: bytes, mime_type: str) -> Optional[str]:
        messages = [{
            "role": "user",
            "content": OCR_PROMPT,
            "images": [base64.b64encode(data).decode("ascii")],
        }]
        try:
            text = await self._chat(messages)
        except Exception as e:
            raise ProviderUnavailable("Ollama vision request failed", detail=str(e)) from e
        return text or None


def build_llm_provider(settings) -> LLMProvider:
    """Select the provider named by COGNIVAULT_LLM_PROVIDER."""
    if settings.llm_provider == "openai":
        return OpenAILLM(settings.openai_api_key, settings.openai_model, settings.openai_vision_model)
    if settings.llm_provider == "ollama":
        return OllamaLLM(settings.ollama_url, settings.ollama_model)
    return FallbackLLM()
