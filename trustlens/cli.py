"""Command-line interface for TrustLens."""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trustlens import __version__
from trustlens.adapters.providers import RecordedProviderClient
from trustlens.analysis.fusion import FusionEngine
from trustlens.config import PipelineSettings
from trustlens.core.service import AnalysisService
from trustlens.core.store import RecordStore
from trustlens.models import (
    AdapterName,
    AnalysisJob,
    ArtifactSignals,
    EvidenceRecord,
    FusionResult,
    NotificationEndpoint,
    Priority,
    ReviewState,
    Verdict,
    utcnow,
)
from trustlens.output.json_export import JSONExporter, export_results
from trustlens.review.router import ReviewRouter
from trustlens.utils.audit import get_audit_logger
from trustlens.utils.exceptions import OverrideConflict, TrustLensError

console = Console()

VERDICT_COLORS = {
    "GENUINE": "green",
    "SUSPICIOUS": "yellow",
    "FAKE": "red bold",
}

RISK_COLORS = {
    "LOW": "green",
    "MEDIUM": "yellow",
    "HIGH": "red",
    "CRITICAL": "red bold",
}


def print_status(status: str, message: str) -> None:
    """Print a status message with consistent formatting.

    Args:
        status: Status indicator ([OK], [FAIL], [WARN], [INFO], [ERROR])
        message: Message to display
    """
    color_map = {
        "[OK]": "green",
        "[FAIL]": "red",
        "[WARN]": "yellow",
        "[INFO]": "blue",
        "[ERROR]": "red bold",
    }
    color = color_map.get(status, "white")
    console.print(f"[{color}]{status}[/{color}] {message}")


@click.group()
@click.version_option(version=__version__, prog_name="trustlens")
@click.option("-c", "--config", "config_path", type=click.Path(exists=True), help="YAML/JSON settings file")
@click.option("--database", help="Database path or SQLAlchemy URL (overrides settings)")
@click.option("-v", "--verbose", count=True, help="Verbosity level")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], database: Optional[str], verbose: int):
    """TrustLens - evidence-fusion trust scoring for uploaded media.

    Gathers provenance, duplicate, manipulation, web-presence and identity
    evidence for an artifact and fuses it into a verdict with a confidence.
    """
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["database"] = database
    ctx.obj["verbose"] = verbose


def _settings(ctx: click.Context) -> PipelineSettings:
    """Resolve settings once per invocation, exiting on invalid configuration."""
    if "settings" not in ctx.obj:
        try:
            settings = PipelineSettings.load(ctx.obj.get("config_path"))
        except TrustLensError as e:
            print_status("[ERROR]", str(e))
            sys.exit(1)
        if ctx.obj.get("database"):
            settings = settings.model_copy(update={"database": ctx.obj["database"]})
        ctx.obj["settings"] = settings
    return ctx.obj["settings"]


def _store(ctx: click.Context) -> RecordStore:
    return RecordStore(_settings(ctx).database)


def _load_recorded_clients(path: Path) -> Dict[AdapterName, RecordedProviderClient]:
    """Build replay clients from a recorded responses file.

    The file maps adapter names to ``{"default": {...}, "responses": {ref: {...}}}``.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    clients = {}
    for name, recorded in data.items():
        adapter = AdapterName(name)
        clients[adapter] = RecordedProviderClient(
            adapter.value,
            responses=recorded.get("responses"),
            default=recorded.get("default"),
            label=recorded.get("provider", "recorded"),
        )
    return clients


def _print_result(result: FusionResult, title: str = "Fusion Result") -> None:
    verdict = result.effective_verdict.value
    color = VERDICT_COLORS.get(verdict, "white")
    risk_color = RISK_COLORS.get(result.risk_level.value, "white")

    lines = [
        f"[{color}]Verdict: {verdict}[/{color}]"
        + (f" [dim](fused: {result.verdict.value})[/dim]" if result.override else ""),
        f"Score: {result.aggregated_score}/100   Confidence: {result.confidence}%",
        f"[{risk_color}]Risk Level: {result.risk_level.value}[/{risk_color}]",
    ]
    if result.analysis_partial:
        lines.append(f"[yellow][WARN] Partial analysis: {result.partial_reason}[/yellow]")
    lines.append("")
    lines.append(f"[dim]{result.reasoning}[/dim]")
    console.print(Panel("\n".join(lines), title=f"{title}: {result.job_id}", style="bold"))

    table = Table(title="Factors", show_header=True, header_style="bold")
    table.add_column("Factor", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Weight", justify="right")
    for family, score in result.factor_scores.items():
        table.add_row(family.value, f"{score:.1f}", f"{result.applied_weights[family]:.3f}")
    console.print(table)

    for factor in result.risk_factors:
        console.print(f"  [red][!][/red] {factor}")
    for indicator in result.positive_indicators:
        console.print(f"  [green][+][/green] {indicator}")


def _print_evidence(records: List[EvidenceRecord]) -> None:
    table = Table(title=f"Evidence ({len(records)})", show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    table.add_column("Adapter", style="cyan")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Latency", justify="right")
    table.add_column("Reason")

    status_colors = {"SUCCESS": "green", "FAILURE": "red", "SKIPPED": "yellow"}
    for i, record in enumerate(records, 1):
        color = status_colors.get(record.status.value, "white")
        table.add_row(
            str(i),
            record.adapter.value,
            f"[{color}]{record.status.value}[/{color}]",
            record.provider,
            f"{record.latency_ms:.0f} ms",
            record.reason or "-",
        )
    console.print(table)


@main.command()
@click.argument("artifacts", nargs=-1, required=True)
@click.option("--org", "organization_id", required=True, help="Organization submitting the artifacts")
@click.option("--seller", "seller_id", help="Seller whose identity is checked")
@click.option("--priority", type=click.Choice([p.value for p in Priority], case_sensitive=False), default="NORMAL")
@click.option("--responses", type=click.Path(exists=True), help="Recorded provider responses (JSON)")
@click.option("--force-escalation", is_flag=True, help="Always run the expensive checks")
@click.option("--watermark", is_flag=True, help="Upload validation found a watermark")
@click.option("--width", type=int, help="Pixel width")
@click.option("--height", type=int, help="Pixel height")
@click.option("--upscale", type=float, help="Estimated upscale factor")
@click.option("--origin", help="Uploader origin (IP or client id)")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the queues to drain")
@click.option("-f", "--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def analyze(
    ctx: click.Context,
    artifacts: tuple,
    organization_id: str,
    seller_id: Optional[str],
    priority: str,
    responses: Optional[str],
    force_escalation: bool,
    watermark: bool,
    width: Optional[int],
    height: Optional[int],
    upscale: Optional[float],
    origin: Optional[str],
    timeout: Optional[float],
    output_format: str,
):
    """Analyze one or more artifacts.

    ARTIFACTS are storage references of the uploaded artifacts.
    """
    settings = _settings(ctx)
    service = None

    try:
        clients = _load_recorded_clients(Path(responses)) if responses else None
        service = AnalysisService(settings, clients=clients)

        signals = ArtifactSignals(
            width=width,
            height=height,
            watermark_detected=watermark,
            upscale_factor=upscale,
            origin=origin,
        )
        job_ids = []
        for ref in artifacts:
            job = AnalysisJob(
                artifact_ref=ref,
                organization_id=organization_id,
                priority=Priority(priority.upper()),
                seller_id=seller_id,
                signals=signals,
                force_escalation=force_escalation,
            )
            job_ids.append(service.submit(job))

        if output_format == "table":
            console.print(Panel(
                f"[bold]TrustLens Analysis[/bold]\nArtifacts: {len(job_ids)}  Organization: {organization_id}",
                style="blue",
            ))

        drained = service.drain(timeout=timeout, show_progress=output_format == "table")
        results = [service.store.get_fusion_result_for_job(job_id) for job_id in job_ids]

        if output_format == "json":
            click.echo(export_results([r for r in results if r is not None]))
        else:
            for job_id, result in zip(job_ids, results):
                if result is None:
                    print_status("[FAIL]", f"No result for job {job_id}")
                    continue
                _print_result(result)
                if result.report_locator:
                    print_status("[INFO]", f"Report stored at {result.report_locator}")
                console.print()

        if not drained:
            print_status("[WARN]", "Timed out before all queues drained")

        if ctx.obj.get("verbose"):
            health = service.health()
            print_status("[INFO]", f"Queue status: {health['status']}")
            for alert in health["alerts"]:
                print_status("[WARN]", alert)

        if any(r is None for r in results):
            sys.exit(1)

    except TrustLensError as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)
    except (OSError, ValueError) as e:
        print_status("[ERROR]", f"Invalid input: {e}")
        sys.exit(1)
    finally:
        if service is not None:
            service.close()


@main.command()
@click.argument("evidence_file", type=click.Path(exists=True))
@click.option("--submitted-at", help="Submission time (ISO 8601); defaults to the file's value or now")
@click.option("-o", "--output", help="Output file path for JSON report")
@click.option("-f", "--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def evaluate(ctx: click.Context, evidence_file: str, submitted_at: Optional[str], output: Optional[str], output_format: str):
    """Fuse a file of evidence records offline.

    EVIDENCE_FILE is a JSON file with a list of evidence records, or an
    object with "records" and optional "job_id" and "submitted_at".
    """
    settings = _settings(ctx)

    try:
        with open(evidence_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, list):
            data = {"records": data}

        records = [EvidenceRecord.model_validate(r) for r in data.get("records", [])]
        job_id = data.get("job_id") or (records[0].job_id if records else "offline")
        reference = submitted_at or data.get("submitted_at")
        when = datetime.fromisoformat(reference) if reference else utcnow()

        result = FusionEngine(settings).fuse(records, job_id=job_id, submitted_at=when)
    except (OSError, ValueError) as e:
        print_status("[ERROR]", f"Cannot read evidence file: {e}")
        sys.exit(1)

    exporter = JSONExporter(indent=2)
    if output:
        exporter.to_file(result, output, evidence=records)
        print_status("[OK]", f"Report saved to: {output}")
    if output_format == "json":
        click.echo(exporter.to_json(result, evidence=records))
    else:
        _print_result(result)


@main.command()
@click.argument("job_id")
@click.pass_context
def recompute(ctx: click.Context, job_id: str):
    """Re-fuse a job from its stored evidence and compare with the stored result."""
    settings = _settings(ctx)

    try:
        store = _store(ctx)
        job = store.get_job(job_id)
        stored = store.get_fusion_result_for_job(job_id)
        fresh = FusionEngine(settings).fuse(
            store.evidence_for_job(job_id),
            job_id=job_id,
            submitted_at=job.submitted_at,
            escalated=stored.escalated if stored else None,
            suspicion=stored.suspicion_score if stored else None,
        )
    except TrustLensError as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)

    _print_result(fresh, title="Recomputed")

    if stored is None:
        print_status("[WARN]", "Job has no stored result to compare against")
        return

    same = (
        stored.aggregated_score == fresh.aggregated_score
        and stored.verdict == fresh.verdict
        and stored.confidence == fresh.confidence
        and stored.factor_scores == fresh.factor_scores
    )
    if same:
        print_status("[OK]", "Recomputed result matches the stored result")
    else:
        print_status(
            "[FAIL]",
            f"Stored result differs: score {stored.aggregated_score} vs {fresh.aggregated_score}, "
            f"verdict {stored.verdict.value} vs {fresh.verdict.value}",
        )
        sys.exit(1)


@main.command()
@click.argument("job_id")
@click.option("-f", "--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def show(ctx: click.Context, job_id: str, output_format: str):
    """Show a job with its evidence and result."""
    try:
        store = _store(ctx)
        job = store.get_job(job_id)
        evidence = store.evidence_for_job(job_id)
        result = store.get_fusion_result_for_job(job_id)
        ticket = store.get_review_ticket_for_result(result.result_id) if result else None
    except TrustLensError as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)

    if output_format == "json":
        if result is None:
            click.echo(json.dumps({
                "job": job.model_dump(mode="json"),
                "evidence": [r.model_dump(mode="json") for r in evidence],
            }, indent=2))
        else:
            click.echo(JSONExporter(indent=2).to_json(result, job, evidence))
        return

    table = Table(title="Job", show_header=True, header_style="bold")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Job ID", job.job_id)
    table.add_row("Artifact", job.artifact_ref)
    table.add_row("Organization", job.organization_id)
    table.add_row("State", job.state.value)
    table.add_row("Priority", job.priority.value)
    table.add_row("Attempts", str(job.attempt_count))
    table.add_row("Submitted", job.submitted_at.isoformat())
    if job.reanalysis_of:
        table.add_row("Re-analysis of", job.reanalysis_of)
    console.print(table)
    console.print()

    _print_evidence(evidence)
    console.print()

    if result is None:
        print_status("[INFO]", "No fusion result yet")
        return
    _print_result(result)

    if ticket is not None:
        print_status(
            "[INFO]",
            f"Review ticket {ticket.ticket_id}: {ticket.state.value}, priority {ticket.priority.value}, "
            f"due {ticket.sla_deadline.isoformat()}",
        )


@main.command()
@click.option("--state", type=click.Choice(["open", "resolved", "all"]), default="open")
@click.option("--limit", type=int, default=50)
@click.pass_context
def reviews(ctx: click.Context, state: str, limit: int):
    """List review tickets, earliest SLA deadline first."""
    try:
        store = _store(ctx)
        filter_state = None if state == "all" else ReviewState(state.upper())
        tickets = store.list_review_tickets(filter_state, limit=limit)
    except TrustLensError as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)

    if not tickets:
        print_status("[INFO]", "No review tickets")
        return

    now = utcnow()
    table = Table(title=f"Review Tickets ({len(tickets)})", show_header=True, header_style="bold")
    table.add_column("Ticket", style="dim")
    table.add_column("Job", style="cyan")
    table.add_column("Result")
    table.add_column("Priority")
    table.add_column("State")
    table.add_column("SLA Deadline")

    for ticket in tickets:
        overdue = ticket.state == ReviewState.OPEN and ticket.sla_deadline < now
        deadline = ticket.sla_deadline.isoformat()[:19]
        table.add_row(
            ticket.ticket_id[:8],
            ticket.job_id,
            ticket.fusion_result_id,
            "[red]HIGH[/red]" if ticket.priority.value == "HIGH" else ticket.priority.value,
            ticket.state.value,
            f"[red]{deadline} (overdue)[/red]" if overdue else deadline,
        )
    console.print(table)


@main.command()
@click.argument("result_id")
@click.option("--verdict", required=True, type=click.Choice([v.value for v in Verdict], case_sensitive=False))
@click.option("--actor", required=True, help="Administrator making the change")
@click.option("--reason", required=True, help="Justification recorded with the override")
@click.pass_context
def override(ctx: click.Context, result_id: str, verdict: str, actor: str, reason: str):
    """Override the verdict of a fusion result."""
    settings = _settings(ctx)

    try:
        router = ReviewRouter(_store(ctx), settings.review_sla_hours, get_audit_logger())
        record = router.override(result_id, Verdict(verdict.upper()), actor, reason)
    except OverrideConflict as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)
    except TrustLensError as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)

    print_status(
        "[OK]",
        f"Verdict changed {record.prior_verdict.value} -> {record.new_verdict.value} by {record.actor_id}",
    )


@main.group()
def endpoints():
    """Manage webhook notification endpoints."""


@endpoints.command(name="add")
@click.option("--org", "organization_id", required=True, help="Organization receiving notifications")
@click.option("--url", required=True, help="Webhook URL")
@click.option("--secret", help="Shared secret for the HMAC signature header")
@click.pass_context
def endpoints_add(ctx: click.Context, organization_id: str, url: str, secret: Optional[str]):
    """Register a webhook endpoint for an organization."""
    if not url.startswith(("http://", "https://")):
        print_status("[ERROR]", f"Webhook URL must be http(s): {url}")
        sys.exit(1)

    try:
        endpoint = _store(ctx).add_endpoint(
            NotificationEndpoint(organization_id=organization_id, url=url, secret=secret)
        )
    except TrustLensError as e:
        print_status("[ERROR]", str(e))
        sys.exit(1)

    signed = "signed" if secret else "unsigned"
    print_status("[OK]", f"Endpoint {endpoint.endpoint_id} added for {organization_id} ({signed})")


@main.command()
@click.pass_context
def health(ctx: click.Context):
    """Check the database and summarize job and review state."""
    try:
        store = _store(ctx)
        counts = store.count_jobs_by_state()
        open_tickets = store.list_review_tickets(ReviewState.OPEN, limit=1000)
    except TrustLensError as e:
        print_status("[FAIL]", f"Database unavailable: {e}")
        sys.exit(1)

    print_status("[OK]", f"Database reachable: {store.database}")

    table = Table(title="Jobs by State", show_header=True, header_style="bold")
    table.add_column("State", style="cyan")
    table.add_column("Count", justify="right")
    for state, count in sorted(counts.items()):
        table.add_row(state, str(count))
    console.print(table)

    overdue = [t for t in open_tickets if t.sla_deadline < utcnow()]
    print_status("[INFO]", f"Open review tickets: {len(open_tickets)}")
    if overdue:
        print_status("[WARN]", f"{len(overdue)} review ticket(s) past their SLA deadline")
    if counts.get("FAILED", 0) > 10:
        print_status("[WARN]", f"High failure count: {counts['FAILED']} failed jobs")


@main.command()
@click.option("-f", "--format", "output_format", type=click.Choice(["yaml", "json"]), default="yaml")
@click.pass_context
def config(ctx: click.Context, output_format: str):
    """Print the resolved settings."""
    settings = _settings(ctx)
    data = settings.model_dump(mode="json")
    if data["providers"].get("api_key"):
        data["providers"]["api_key"] = "***"

    if output_format == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


if __name__ == "__main__":
    main()
