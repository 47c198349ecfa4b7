"""Command-line interface for Payproof."""

from __future__ import annotations

import asyncio
import json
import mimetypes
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer

from payproof.config import get_settings
from payproof.db import SqlRegistrationStore
from payproof.errors import ExtractionUnavailable, ValidationFailure
from payproof.logging_utils import configure_logging
from payproof.maintenance import sweep_orphaned_blobs
from payproof.models.receipt import ReceiptImage
from payproof.ocr.extractor import ReceiptTextExtractor
from payproof.ocr.parser import CandidateParser
from payproof.ocr.reconciler import select_winners
from payproof.storage import LocalBlobStore

app = typer.Typer(help="Payproof registration intake maintenance commands.")


@app.callback()
def _setup_logging() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, [settings.ocr_remote_api_key or ""])


@app.command("sweep-orphans")
def sweep_orphans(
    grace_hours: Optional[float] = typer.Option(
        None,
        "--grace-hours",
        help="Only delete proofs older than this many hours (defaults to settings).",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without deleting anything."),
) -> None:
    """Delete uploaded payment proofs that no registration references."""

    settings = get_settings()
    hours = settings.orphan_grace_hours if grace_hours is None else grace_hours
    if hours < 0:
        raise typer.BadParameter("--grace-hours must not be negative.")
    report = sweep_orphaned_blobs(
        SqlRegistrationStore(),
        LocalBlobStore(settings.blob_root, public_base_url=settings.blob_public_base_url),
        grace=timedelta(hours=hours),
        dry_run=dry_run,
    )
    verb = "Would delete" if dry_run else "Deleted"
    for key in report.deleted:
        typer.echo(f"{verb} {key}")
    typer.echo(
        f"Scanned {report.scanned} proof(s): {len(report.deleted)} orphaned, "
        f"{report.referenced} referenced, {len(report.kept_recent)} within grace period."
    )


@app.command()
def extract(
    image_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Proof image."),
    pretty: bool = typer.Option(True, "--pretty/--no-pretty", help="Pretty-print output JSON."),
) -> None:
    """Run OCR against a local proof image and print the selected fields."""

    settings = get_settings()
    content_type = mimetypes.guess_type(image_path.name)[0]
    image = ReceiptImage.from_bytes(image_path.read_bytes(), content_type, image_path.name)
    extractor = ReceiptTextExtractor.from_settings(settings)
    try:
        raw = asyncio.run(extractor.extract(image))
    except ValidationFailure as exc:
        typer.secho(f"Rejected: {exc} {exc.errors}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc
    except ExtractionUnavailable as exc:
        typer.secho(f"OCR unavailable: {exc}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1) from exc

    parser = CandidateParser.from_settings(settings)
    result = select_winners(
        parser.parse(raw), raw, min_confidence=settings.min_candidate_confidence
    )
    payload = {
        "status": result.status,
        "manualEntry": result.manual_entry,
        "source": raw.source,
        "fields": {kind.value: result.value(kind) for kind in result.winners},
    }
    typer.echo(json.dumps(payload, indent=2 if pretty else None, sort_keys=pretty))


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the `payproof` console script."""
    app(prog_name="payproof", args=argv)


if __name__ == "__main__":
    main()
