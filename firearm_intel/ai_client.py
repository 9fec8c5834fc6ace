"""
AI completion client.

Wraps the OpenAI async client behind a single call: send a system prompt and
a JSON payload, get back a JSON object constrained by a schema. Anything
that is not a JSON object is reported as AIResponseError.
"""

import asyncio
import json
import logging
import threading
from typing import Optional
from openai import AsyncOpenAI, OpenAIError

from .config import OpenAIConfig, get_openai_config
from .exceptions import AIResponseError, AIServiceError, ConfigurationError

logger = logging.getLogger(__name__)


class AICompletionClient:
    """
    Schema-constrained JSON completions.

    The underlying AsyncOpenAI client holds a connection pool bound to the
    event loop it was first used on, so one is created per running loop.
    Each thread keeps its own, since request threads and the background
    runner each drive their own loop.
    """

    def __init__(self, config: Optional[OpenAIConfig] = None):
        self.config = config or get_openai_config()
        if not self.config.api_key:
            raise ConfigurationError("OPENAI_API_KEY must be set", setting="OPENAI_API_KEY")
        self._local = threading.local()

    def _get_client(self) -> AsyncOpenAI:
        loop = asyncio.get_running_loop()
        local = self._local
        if getattr(local, "loop", None) is not loop:
            local.client = AsyncOpenAI(api_key=self.config.api_key)
            local.loop = loop
        return local.client

    async def complete_json(
        self,
        system_prompt: str,
        payload: dict,
        schema: dict,
        schema_name: str = "result",
        temperature: Optional[float] = None,
    ) -> dict:
        """
        Run one completion and decode its JSON object.

        Args:
            system_prompt: Instructions for the model
            payload: Input document, sent as the user message
            schema: JSON schema the answer must follow
            schema_name: Name of the schema in the request
            temperature: Overrides the configured temperature

        Returns:
            The decoded JSON object

        Raises:
            AIServiceError: If the API call fails
            AIResponseError: If the answer is not a JSON object
        """
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": json.dumps(payload, default=str)},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": schema_name, "schema": schema, "strict": False},
                },
                temperature=self.config.temperature if temperature is None else temperature,
            )
        except OpenAIError as e:
            raise AIServiceError("Completion request failed", cause=e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AIResponseError("Completion returned no content")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise AIResponseError("Completion is not valid JSON", raw=content, cause=e) from e

        if not isinstance(data, dict):
            raise AIResponseError("Completion is not a JSON object", raw=content)

        logger.debug(f"Completion used {getattr(response.usage, 'total_tokens', '?')} tokens")
        return data
