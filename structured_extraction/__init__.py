"""
structured_extraction package for chunked, rate-limited LLM data extraction.

The layout separates document chunking, the call scheduler that spaces and
retries model calls, the pydanticAI generation agent, and orchestration of
per-chunk extraction runs.
"""

__all__ = [
    "errors",
    "scheduler",
    "preprocess",
    "schema",
    "agents",
    "orchestrator",
]
