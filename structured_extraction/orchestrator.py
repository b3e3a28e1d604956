from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
from pydantic import BaseModel

from .agents import DEFAULT_TEMPERATURE, ExtractionAgent, Generator
from .errors import (
    ErrorKind,
    ExtractionCancelledError,
    InvalidInputError,
    wrap_error,
)
from .preprocess import Chunk
from .scheduler import DEFAULT_SCHEDULE, CallScheduler, ScheduleConfig, ScheduleMetrics
from .schema import ExtractorDefinition, build_batch_model

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass(frozen=True)
class ChunkOutcome:
    chunk_index: int
    items: Tuple[Any, ...] = ()
    success: bool = True
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass(frozen=True)
class ExtractionMetrics:
    total_items: int
    items_before_dedup: int
    processing_time_ms: float
    average_confidence: float | None = None


@dataclass(frozen=True)
class OrchestrationResult:
    items: Tuple[Any, ...]
    chunks_processed: int
    chunks_failed: int
    chunk_outcomes: Tuple[ChunkOutcome, ...]
    metrics: ExtractionMetrics
    cancelled: bool = False
    schedule_metrics: ScheduleMetrics = field(default_factory=ScheduleMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [_dump(item) for item in self.items],
            "chunks_processed": self.chunks_processed,
            "chunks_failed": self.chunks_failed,
            "cancelled": self.cancelled,
            "chunk_outcomes": [
                {
                    "chunk_index": outcome.chunk_index,
                    "success": outcome.success,
                    "item_count": len(outcome.items),
                    "error": outcome.error,
                    "error_kind": outcome.error_kind.value if outcome.error_kind else None,
                }
                for outcome in self.chunk_outcomes
            ],
            "metrics": {
                "total_items": self.metrics.total_items,
                "items_before_dedup": self.metrics.items_before_dedup,
                "processing_time_ms": self.metrics.processing_time_ms,
                "average_confidence": self.metrics.average_confidence,
            },
        }


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _dump(item: Any) -> Any:
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    if isinstance(item, Mapping):
        return dict(item)
    return item


def dedup_key(item: Any) -> Hashable:
    """
    Items sharing a description (case and surrounding whitespace ignored) are
    treated as the same item; items without one are compared by content.
    """
    description = _field(item, "description")
    if isinstance(description, str):
        return ("description", description.lower().strip())
    return ("item", json.dumps(_dump(item), sort_keys=True, default=str))


def deduplicate_items(items: Iterable[Any]) -> List[Any]:
    """Keep the first occurrence of each dedup key, preserving order."""
    seen = set()
    unique: List[Any] = []
    for item in items:
        key = dedup_key(item)
        if key not in seen:
            seen.add(key)
            unique.append(item)
    return unique


def average_confidence(items: Sequence[Any]) -> float | None:
    """Mean ``confidence`` of the items, or None unless every item carries a numeric one."""
    if not items:
        return None
    values: List[float] = []
    for item in items:
        value = _field(item, "confidence")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        values.append(float(value))
    return sum(values) / len(values)


class ExtractionOrchestrator:
    """
    Coordinates per-chunk extraction calls for one extractor definition.

    Chunks run strictly in order through a ``CallScheduler``. A failing chunk
    is recorded in its outcome and never stops the rest of the run.
    """

    def __init__(
        self,
        generator: Generator | None = None,
        *,
        api_key: str | None = None,
        model_name: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        on_progress: ProgressCallback | None = None,
        default_schedule: ScheduleConfig = DEFAULT_SCHEDULE,
    ):
        self.generator: Generator = generator or ExtractionAgent(model_name=model_name, api_key=api_key)
        self.temperature = temperature
        self.on_progress = on_progress
        self.default_schedule = default_schedule

    async def extract_single(self, text: str, definition: ExtractorDefinition) -> List[Any]:
        """
        Run one generation call over ``text`` and return the validated items.

        Failures are raised as ``ExtractionError``.
        """
        if not isinstance(text, str):
            raise InvalidInputError("text must be a string", field="text")

        try:
            prompt = definition.build_prompt(text)
            batch_model = build_batch_model(definition)
            batch = await self.generator.generate(prompt, batch_model, self.temperature)
            if not isinstance(batch, batch_model):
                batch = batch_model.model_validate(_dump(batch))
        except Exception as exc:
            wrapped = wrap_error(exc, f'Extraction failed for extractor "{definition.name}"')
            if wrapped is exc:
                raise
            raise wrapped
        return list(batch.items)

    def _validate_request(self, chunks: Iterable[Chunk], definition: ExtractorDefinition) -> List[Chunk]:
        if not isinstance(definition, ExtractorDefinition):
            raise InvalidInputError("definition must be an ExtractorDefinition", field="definition")
        try:
            chunk_list = list(chunks)
        except TypeError:
            raise InvalidInputError("chunks must be an iterable of Chunk", field="chunks") from None

        previous = 0
        for chunk in chunk_list:
            if not isinstance(chunk, Chunk):
                raise InvalidInputError(f"Expected Chunk, got {type(chunk).__name__}", field="chunks")
            if isinstance(chunk.index, bool) or not isinstance(chunk.index, int) or chunk.index <= previous:
                raise InvalidInputError(
                    f"Chunk indices must be strictly increasing integers >= 1 (got {chunk.index!r} after {previous})",
                    field="chunks",
                )
            if not isinstance(chunk.content, str):
                raise InvalidInputError(f"Chunk {chunk.index} content must be a string", field="chunks")
            previous = chunk.index
        return chunk_list

    async def _process_chunk(
        self,
        scheduler: CallScheduler,
        chunk: Chunk,
        definition: ExtractorDefinition,
    ) -> ChunkOutcome:
        try:
            items = await scheduler.execute(
                lambda: self.extract_single(chunk.content, definition),
                f"Chunk {chunk.index} extraction",
            )
        except ExtractionCancelledError:
            raise
        except Exception as exc:
            error = wrap_error(exc)
            logger.exception(
                "Chunk %d extraction failed [%s]: %s", chunk.index, error.kind.value, error.message
            )
            return ChunkOutcome(
                chunk_index=chunk.index,
                success=False,
                error=error.message,
                error_kind=error.kind,
            )

        logger.info("Chunk %d extraction successful (%d items)", chunk.index, len(items))
        return ChunkOutcome(chunk_index=chunk.index, items=tuple(items))

    def _report_progress(self, current: int, total: int, status: str) -> None:
        if self.on_progress is not None:
            self.on_progress(current, total, status)

    async def extract_from_chunks(
        self,
        chunks: Iterable[Chunk],
        definition: ExtractorDefinition,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        scheduler: CallScheduler | None = None,
    ) -> OrchestrationResult:
        """
        Extract every chunk in order, then aggregate and deduplicate the items.

        Setting ``cancel_event`` stops the run before the next chunk (or during
        a scheduler wait); the partial result is returned with ``cancelled`` set.
        """
        chunk_list = self._validate_request(chunks, definition)
        started = time.monotonic()
        if scheduler is None:
            scheduler = CallScheduler(definition.schedule or self.default_schedule, cancel_event=cancel_event)

        total = len(chunk_list)
        logger.info("Starting extraction of %d chunks with %s", total, definition.name)

        outcomes: List[ChunkOutcome] = []
        collected: List[Any] = []
        cancelled = False
        for position, chunk in enumerate(chunk_list, start=1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            self._report_progress(position, total, f"Processing chunk {chunk.index}")
            logger.debug("Processing chunk %d (%d/%d)", chunk.index, position, total)
            try:
                outcome = await self._process_chunk(scheduler, chunk, definition)
            except ExtractionCancelledError:
                cancelled = True
                break
            outcomes.append(outcome)
            collected.extend(outcome.items)

        if cancelled:
            logger.warning("Extraction cancelled after %d of %d chunks", len(outcomes), total)

        unique = deduplicate_items(collected)
        processing_time_ms = (time.monotonic() - started) * 1000
        chunks_failed = sum(1 for outcome in outcomes if not outcome.success)

        logger.info(
            "Extraction complete: %d unique items (%d before dedup), %d chunks, %d failed, %.0fms",
            len(unique),
            len(collected),
            len(outcomes),
            chunks_failed,
            processing_time_ms,
        )
        return OrchestrationResult(
            items=tuple(unique),
            chunks_processed=len(outcomes),
            chunks_failed=chunks_failed,
            chunk_outcomes=tuple(outcomes),
            metrics=ExtractionMetrics(
                total_items=len(unique),
                items_before_dedup=len(collected),
                processing_time_ms=processing_time_ms,
                average_confidence=average_confidence(unique),
            ),
            cancelled=cancelled,
            schedule_metrics=scheduler.get_metrics(),
        )

    def to_dataframe(self, result: OrchestrationResult | Sequence[Any]) -> pd.DataFrame:
        """
        Convert extracted items into a flat DataFrame, one row per item.

        Accepts a full result or the plain item list from ``extract_single``.
        """
        items = result.items if isinstance(result, OrchestrationResult) else result
        return pd.DataFrame([_dump(item) for item in items])

    def to_excel(self, result: OrchestrationResult | Sequence[Any], output_path: Path) -> None:
        """
        Write results to an Excel file with sheets 'items' and 'chunks'.

        A plain item list has no per-chunk outcomes and only gets the 'items' sheet.
        """
        items_df = self.to_dataframe(result)
        chunks_df = None
        if isinstance(result, OrchestrationResult):
            chunks_df = pd.DataFrame(result.to_dict()["chunk_outcomes"])
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing results to %s", output_path)
        with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
            items_df.to_excel(writer, sheet_name="items", index=False)
            if chunks_df is not None:
                chunks_df.to_excel(writer, sheet_name="chunks", index=False)
