"""
OpenAI-compatible chat-completions client over httpx.
"""

import json
import logging
import os
from typing import Any, Dict, Iterator, List, Optional

import httpx

from ..exceptions import TextGenerationError


logger = logging.getLogger(__name__)

ENV_BASE_URL = "TOOLFLOW_LLM_BASE_URL"
ENV_API_KEY = "TOOLFLOW_LLM_API_KEY"
ENV_MODEL = "TOOLFLOW_LLM_MODEL"
DEFAULT_MODEL = "gpt-4o-mini"


class HttpTextGenerator:
    """
    Text generator backed by a ``/chat/completions`` endpoint.

    Implements both ``suggest`` and ``stream`` so the reporter can forward
    summary chunks as they arrive.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout_sec: float = 60.0,
        temperature: float = 0.2,
        system_prompt: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.model = model
        self.temperature = temperature
        self.system_prompt = system_prompt
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_sec),
            transport=transport,
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> Optional["HttpTextGenerator"]:
        """Build from TOOLFLOW_LLM_* variables; None when no base URL is set."""
        env = os.environ if environ is None else environ
        base_url = env.get(ENV_BASE_URL)
        if not base_url:
            return None
        return cls(
            base_url=base_url,
            api_key=env.get(ENV_API_KEY) or None,
            model=env.get(ENV_MODEL) or DEFAULT_MODEL,
        )

    def _messages(self, prompt: str) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _payload(self, prompt: str, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": self._messages(prompt),
            "temperature": self.temperature,
            "stream": stream,
        }

    def suggest(self, prompt: str) -> str:
        try:
            response = self._client.post("/chat/completions", json=self._payload(prompt, False))
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise TextGenerationError(f"Text generation request failed: {e}") from e
        except ValueError as e:
            raise TextGenerationError(f"Text generation returned invalid JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise TextGenerationError("Text generation reply has no message content",
                                      {"reply": str(data)[:500]}) from e
        return content or ""

    def stream(self, prompt: str) -> Iterator[str]:
        """Yield content deltas from a server-sent-events completion."""
        try:
            with self._client.stream("POST", "/chat/completions",
                                     json=self._payload(prompt, True)) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed stream event: {data[:200]}")
                        continue
                    choices = event.get("choices") or [{}]
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        yield delta
        except httpx.HTTPError as e:
            raise TextGenerationError(f"Text generation stream failed: {e}") from e

    def close(self) -> None:
        self._client.close()
