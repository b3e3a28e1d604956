import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
import typer

from structured_extraction.errors import ExtractionError
from structured_extraction.orchestrator import ExtractionOrchestrator
from structured_extraction.preprocess import PAGE_DELIMITER, load_document
from structured_extraction.schema import load_extractor

load_dotenv()


app = typer.Typer(add_completion=False)


def _write_json(payload: Any, output: Optional[Path]) -> None:
    text = json.dumps(payload, indent=2, default=str)
    if output is None:
        typer.echo(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    typer.echo(f"Wrote results to {output}")


@app.command()
def extract(
    file: Path = typer.Argument(..., help="Text or PDF file to extract from"),
    extractor: str = typer.Option(
        ...,
        "--extractor",
        "-e",
        help="Registered extractor name or 'package.module:attribute' path",
    ),
    pages: bool = typer.Option(
        False,
        "--pages",
        help=f"Split text on the {PAGE_DELIMITER.strip()} delimiter (not with --chunk-size)",
    ),
    chunk_size: Optional[int] = typer.Option(
        None,
        "--chunk-size",
        help="Split text into chunks of at most this many characters (not with --pages)",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file (.xlsx for Excel, anything else for JSON); prints JSON when omitted",
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """
    Extract structured items from FILE with the chosen extractor.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if output is not None:
        log_path = output.with_suffix(".log")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    logger = logging.getLogger(__name__)

    try:
        definition = load_extractor(extractor)
        chunks = load_document(
            file,
            delimiter=PAGE_DELIMITER if pages else None,
            max_size=chunk_size,
        )
        orchestrator = ExtractionOrchestrator(
            on_progress=lambda current, total, status: typer.echo(f"[{current}/{total}] {status}", err=True),
        )
    except ExtractionError as exc:
        typer.echo(f"{exc.kind.value}: {exc}", err=True)
        raise typer.Exit(code=1)

    chunked = pages or chunk_size is not None or file.suffix.lower() == ".pdf"
    logger.info("Starting extraction using %s (%d chunks)", definition.name, len(chunks))

    if not chunked:
        try:
            items = asyncio.run(orchestrator.extract_single(chunks[0].content, definition))
        except ExtractionError as exc:
            typer.echo(f"Extraction failed: {exc.kind.value}: {exc}", err=True)
            raise typer.Exit(code=1)
        if output is not None and output.suffix.lower() == ".xlsx":
            orchestrator.to_excel(items, output)
            typer.echo(f"Wrote results to {output}")
        else:
            _write_json([item.model_dump(mode="json") for item in items], output)
        return

    result = asyncio.run(orchestrator.extract_from_chunks(chunks, definition))
    for outcome in result.chunk_outcomes:
        status = "ok" if outcome.success else f"{outcome.error_kind.value}: {outcome.error}"
        typer.echo(f"chunk {outcome.chunk_index}: {len(outcome.items)} items ({status})", err=True)

    if output is not None and output.suffix.lower() == ".xlsx":
        orchestrator.to_excel(result, output)
        typer.echo(f"Wrote results to {output}")
    else:
        _write_json(result.to_dict(), output)


def main():
    app()


if __name__ == "__main__":
    main()
