"""Pytest configuration and fixtures."""

from typing import Any, List, Optional

import pytest
from pydantic import BaseModel

from structured_extraction.orchestrator import ExtractionOrchestrator
from structured_extraction.scheduler import ScheduleConfig
from structured_extraction.schema import ExtractorDefinition


class LineItem(BaseModel):
    name: str
    value: float
    description: Optional[str] = None
    confidence: Optional[float] = None


class FakeGenerator:
    """
    Stand-in for the LLM agent.

    Each call pops the next scripted response: a list of item dicts is
    returned as ``{"items": [...]}``, an exception instance is raised.
    Once the script runs out the last response repeats.
    """

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.prompts: List[str] = []
        self.temperatures: List[float] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt, output_type, temperature):
        self.prompts.append(prompt)
        self.temperatures.append(temperature)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return {"items": response}


@pytest.fixture
def fast_schedule() -> ScheduleConfig:
    return ScheduleConfig(min_interval_ms=10, max_retries=2)


@pytest.fixture
def line_item_extractor(fast_schedule: ScheduleConfig) -> ExtractorDefinition:
    """A small extractor that runs with millisecond spacing."""
    return ExtractorDefinition(
        name="test-extractor",
        description="A test extractor",
        output_schema=LineItem,
        build_prompt=lambda text: f"Extract from: {text}",
        schedule=fast_schedule,
    )


@pytest.fixture
def make_orchestrator():
    def _make(*responses: Any, **kwargs: Any) -> ExtractionOrchestrator:
        return ExtractionOrchestrator(FakeGenerator(*responses), **kwargs)

    return _make
