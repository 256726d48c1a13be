"""Shelfmatch command line interface."""

from __future__ import annotations

from pathlib import Path

import typer

app = typer.Typer(help="Match shelf detections against the product catalog", no_args_is_help=True)


def _settings(config: Path):
    from shelfmatch.config import configure_logging, load_settings

    settings = load_settings(config)
    configure_logging(settings.logging)
    return settings


@app.command("import-detections")
def import_detections(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Detections JSON file"),
    db_path: Path | None = typer.Option(None, help="SQLite path (defaults to storage.db_path)"),
    config: Path = typer.Option(Path("configs/default.yaml"), help="App config yaml"),
) -> None:
    """Load detections with extracted attributes and crops into the database."""
    from shelfmatch.ingest.detections import load_detections
    from shelfmatch.storage.store import MatchStore

    settings = _settings(config)
    try:
        detections = load_detections(source)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="source") from exc

    store = MatchStore(db_path or settings.storage.db_path)
    for detection in detections:
        store.upsert_detection(detection)
    typer.echo(f"Imported {len(detections)} detections into {store.db_path}")


@app.command("run")
def run_batch(
    image_id: str | None = typer.Option(None, help="Process every detection of this image"),
    detection_id: list[str] | None = typer.Option(None, "--detection-id", help="Detection id (repeatable)"),
    unresolved_only: bool = typer.Option(False, help="Skip detections that are already resolved"),
    variant: str = typer.Option("visual_only", help="ai_filter or visual_only"),
    concurrency: int | None = typer.Option(None, help="Items processed in parallel"),
    db_path: Path | None = typer.Option(None, help="SQLite path (defaults to storage.db_path)"),
    config: Path = typer.Option(Path("configs/default.yaml"), help="App config yaml"),
) -> None:
    """Run the matching pipeline over a batch of stored detections."""
    from shelfmatch.errors import BatchRequestError, CatalogError, ComparisonError
    from shelfmatch.events.schemas import CompleteEvent, ProgressEvent, StartEvent
    from shelfmatch.pipeline import factory
    from shelfmatch.storage.store import MatchStore

    settings = _settings(config)
    store = MatchStore(db_path or settings.storage.db_path)

    if detection_id:
        detections = []
        for item in detection_id:
            detection = store.get_detection(item)
            if detection is None:
                raise typer.BadParameter(f"Detection not found: {item}", param_hint="--detection-id")
            detections.append(detection)
    else:
        detections = store.list_detections(image_id=image_id, unresolved_only=unresolved_only)

    try:
        pipeline = factory.build_pipeline(settings, store)
    except (CatalogError, ComparisonError) as exc:
        typer.echo(f"Cannot start pipeline: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    complete: CompleteEvent | None = None
    try:
        executor = factory.build_executor(settings, pipeline)
        try:
            events = executor.run(detections, concurrency=concurrency, variant=variant)  # type: ignore[arg-type]
        except BatchRequestError as exc:
            typer.echo(f"Batch rejected: {exc}", err=True)
            raise typer.Exit(code=2) from exc

        for event in events:
            if isinstance(event, StartEvent):
                typer.echo(f"Processing {event.total} detections ({event.variant}, concurrency {event.concurrency})")
            elif isinstance(event, ProgressEvent):
                typer.echo(
                    f"[{event.processed}/{event.total}] #{event.detection_index} {event.detection_id}: "
                    f"{event.status} - {event.message}"
                )
            elif isinstance(event, CompleteEvent):
                complete = event
    finally:
        pipeline.close()

    if complete is not None:
        typer.echo(
            f"Done in {complete.duration_seconds:.1f}s: {complete.success} matched, "
            f"{complete.no_match} no match, {complete.errors} errors"
        )
        if complete.errors:
            raise typer.Exit(code=1)


@app.command("candidates")
def show_candidates(
    detection_id: str = typer.Argument(..., help="Detection identifier"),
    stage: str | None = typer.Option(None, help="Only candidates at this stage"),
    db_path: Path | None = typer.Option(None, help="SQLite path (defaults to storage.db_path)"),
    config: Path = typer.Option(Path("configs/default.yaml"), help="App config yaml"),
) -> None:
    """Print the stored candidates of one detection."""
    from shelfmatch.storage.store import MatchStore

    settings = _settings(config)
    store = MatchStore(db_path or settings.storage.db_path)
    detection = store.get_detection(detection_id)
    if detection is None:
        raise typer.BadParameter(f"Detection not found: {detection_id}", param_hint="detection_id")

    if detection.fully_resolved:
        typer.echo(
            f"{detection.label}: resolved to {detection.selected_candidate_key} "
            f"({detection.selection_method}, {detection.resolution_confidence or 0.0:.2f})"
        )
    else:
        typer.echo(f"{detection.label}: unresolved")

    for candidate in store.list_candidates(detection_id, stage=stage):
        score = "" if candidate.prefilter_score is None else f" score={candidate.prefilter_score:.2f}"
        similarity = "" if candidate.visual_similarity is None else f" visual={candidate.visual_similarity:.2f}"
        verdict = f" {candidate.verdict}" if candidate.verdict else ""
        typer.echo(
            f"  {candidate.rank or '-':>3} {candidate.candidate_key} [{candidate.stage}]{verdict}{score}{similarity}"
            f" {candidate.name or ''}".rstrip()
        )


@app.command("select")
def select_candidate(
    detection_id: str = typer.Argument(..., help="Detection identifier"),
    candidate_key: str = typer.Argument(..., help="Stored candidate to resolve the detection to"),
    db_path: Path | None = typer.Option(None, help="SQLite path (defaults to storage.db_path)"),
    config: Path = typer.Option(Path("configs/default.yaml"), help="App config yaml"),
) -> None:
    """Resolve a detection to a candidate chosen by hand."""
    from shelfmatch.storage.store import MatchStore

    settings = _settings(config)
    store = MatchStore(db_path or settings.storage.db_path)
    if store.get_detection(detection_id) is None:
        raise typer.BadParameter(f"Detection not found: {detection_id}", param_hint="detection_id")
    if store.get_candidate(detection_id, candidate_key) is None:
        raise typer.BadParameter(f"Candidate not found: {candidate_key}", param_hint="candidate_key")

    detection = store.resolve_detection(detection_id, candidate_key, selection_method=None, confidence=None)
    typer.echo(f"{detection.label}: resolved to {candidate_key} (manual)")


@app.command("export")
def export_matched(
    output: Path = typer.Argument(..., dir_okay=False, help="CSV file to write"),
    image_id: str | None = typer.Option(None, help="Only detections of this image"),
    db_path: Path | None = typer.Option(None, help="SQLite path (defaults to storage.db_path)"),
    config: Path = typer.Option(Path("configs/default.yaml"), help="App config yaml"),
) -> None:
    """Write resolved detections and their chosen products to CSV."""
    from shelfmatch.storage.export import export_matched as write_export
    from shelfmatch.storage.export import matched_rows
    from shelfmatch.storage.store import MatchStore

    settings = _settings(config)
    store = MatchStore(db_path or settings.storage.db_path)
    if not matched_rows(store, image_id=image_id):
        typer.echo("No matched products found", err=True)
        raise typer.Exit(code=1)

    count = write_export(store, output, image_id=image_id)
    typer.echo(f"Exported {count} matched products to {output}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind host"),
    port: int = typer.Option(8000, help="Bind port"),
    db_path: Path | None = typer.Option(None, help="SQLite path (defaults to storage.db_path)"),
    config: Path = typer.Option(Path("configs/default.yaml"), help="App config yaml"),
) -> None:
    """Start the matching API server."""
    from shelfmatch.api.app import run_server

    _settings(config)
    run_server(host=host, port=port, db_path=db_path, config_path=config)


if __name__ == "__main__":
    app()
