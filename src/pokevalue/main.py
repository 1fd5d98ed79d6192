"""Command-line entrypoint for the card valuation service."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from .config import AppConfig
from .errors import InvalidImage
from .lifecycle import build_manager
from .query import SubmissionQuery
from .store import build_store
from .validation import encode_image_file, validate_image_data_uri

logging.basicConfig(level=logging.INFO)

app = typer.Typer(help="Identify trading cards from photos and estimate their resale value.")


def _read_config(database: Optional[Path], dry_run: Optional[bool], model: Optional[str]) -> AppConfig:
    return AppConfig.from_env(
        Path.cwd(),
        database_path=database,
        dry_run=dry_run,
        api_model=model,
    )


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind."),
    port: int = typer.Option(8000, min=1, help="Port to listen on."),
) -> None:
    """Run the HTTP API (configured through POKEVALUE_* variables)."""

    uvicorn.run("pokevalue.api:create_app", factory=True, host=host, port=port)


@app.command("scan")
def scan(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Photo of the card."),
    database: Optional[Path] = typer.Option(None, help="SQLite file to record the submission in."),
    model: Optional[str] = typer.Option(None, help="Model name to call."),
    dry_run: Optional[bool] = typer.Option(None, help="Return synthetic results instead of calling the model."),
) -> None:
    """Identify and value one card image, waiting for the result."""

    config = _read_config(database, dry_run, model)
    try:
        data_uri = encode_image_file(image)
        validated = validate_image_data_uri(
            data_uri,
            max_bytes=config.max_image_bytes,
            accepted_types=config.accepted_image_types,
        )
    except InvalidImage as exc:
        typer.echo(f"Rejected {image}: {exc}", err=True)
        raise typer.Exit(code=2)
    submission = build_manager(config).submit_and_process(validated.data_uri)
    payload = submission.dict()
    payload.pop("imageDataUri")
    typer.echo(json.dumps(payload, indent=2))
    if submission.status.is_error:
        raise typer.Exit(code=1)


@app.command("show")
def show(
    submission_id: str = typer.Argument(..., help="Submission id returned by the API."),
    database: Optional[Path] = typer.Option(None, help="SQLite file holding submissions."),
    include_image: bool = typer.Option(False, help="Include the image data URI in the output."),
) -> None:
    """Print the current state of a submission."""

    config = _read_config(database, None, None)
    payload = SubmissionQuery(build_store(config)).payload(submission_id)
    if payload is None:
        typer.echo(f"Submission {submission_id} not found.", err=True)
        raise typer.Exit(code=1)
    if not include_image:
        payload.pop("imageDataUri")
    typer.echo(json.dumps(payload, indent=2))


@app.command("purge")
def purge(
    days: Optional[float] = typer.Option(None, min=0, help="Age in days; defaults to POKEVALUE_RETENTION_DAYS."),
    database: Optional[Path] = typer.Option(None, help="SQLite file holding submissions."),
) -> None:
    """Delete finished submissions that have not changed for the retention period."""

    config = _read_config(database, None, None)
    retention = days if days is not None else config.retention_days
    if retention is None:
        typer.echo("No retention period configured; nothing purged.", err=True)
        raise typer.Exit(code=1)
    removed = build_store(config).purge_expired(timedelta(days=retention))
    typer.echo(f"Purged {removed} submission(s).")


if __name__ == "__main__":
    app()
