from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.models.openai import OpenAIModel
from pydantic_ai.providers.openai import OpenAIProvider

from .errors import AuthError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TEMPERATURE = 0.1


class Generator(Protocol):
    """Anything that can turn a prompt into a validated instance of ``output_type``."""

    async def generate(self, prompt: str, output_type: Type[M], temperature: float) -> M: ...


class ExtractionAgent:
    """
    Text LLM agent that fills a structured output model from a prompt.

    Uses pydanticAI to bind the Pydantic output model; one agent is built
    lazily per output model and reused.
    """

    system_prompt = (
        "You are a careful information extraction assistant. "
        "Fill the provided schema using only evidence from the supplied text. "
        "If a value is missing or unclear, leave it null. Do not invent data."
    )

    def __init__(self, model_name: Optional[str] = None, api_key: Optional[str] = None):
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise AuthError(
                "OPENAI_API_KEY is required. Set it in your environment or pass api_key explicitly."
            )
        self.model_name = model_name or os.getenv("EXTRACTION_MODEL") or DEFAULT_MODEL
        self._api_key = api_key
        self._model: Optional[OpenAIModel] = None
        self._agents: Dict[Type[BaseModel], Agent[None, Any]] = {}

    @property
    def model(self) -> OpenAIModel:
        if self._model is None:
            self._model = OpenAIModel(self.model_name, provider=OpenAIProvider(api_key=self._api_key))
        return self._model

    def agent_for(self, output_type: Type[M]) -> Agent[None, M]:
        agent = self._agents.get(output_type)
        if agent is None:
            agent = Agent(
                model=self.model,
                output_type=output_type,
                system_prompt=self.system_prompt,
            )
            self._agents[output_type] = agent
        return agent

    async def generate(self, prompt: str, output_type: Type[M], temperature: float) -> M:
        logger.debug("Calling %s for %s", self.model_name, output_type.__name__)
        result = await self.agent_for(output_type).run(
            prompt, model_settings={"temperature": temperature}
        )
        # pydanticAI returns the parsed output as `result.output`
        if isinstance(result.output, output_type):
            return result.output
        return output_type.model_validate(result.output)
