"""
Command Line Interface for the CI/CD control tower.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.orm import Session

from ..artifacts.store import ArtifactStore
from ..charts.compatibility import get_compatibility, resolve_chart_kind
from ..charts.store import ChartService
from ..config import get_settings
from ..db.base import get_engine, get_session_local, init_database
from ..db.services import AppMetricsService, AppService, CdPipelineService, CiPipelineService
from ..errors import ControlTowerError
from ..history.service import DeploymentTemplateHistoryService
from ..logging_config import configure_logging

app = typer.Typer(help="CI/CD Control Tower - artifacts, chart versions and deployment history")
console = Console()


@app.callback()
def main(
    log_format: Optional[str] = typer.Option(None, help="Log renderer: json or console"),
):
    """Configure logging before any command runs."""
    settings = get_settings()
    if log_format:
        settings = settings.model_copy(update={"log_format": log_format})
    configure_logging(settings)


@contextmanager
def _session() -> Iterator[Session]:
    db = get_session_local()()
    try:
        yield db
    except ControlTowerError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()


def _fmt(value) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(timespec="seconds")
    return str(value)


@app.command("init-db")
def init_db():
    """Create all tables in the configured database."""
    engine = get_engine()
    init_database(engine)
    rprint(Panel.fit(f"🗄️ Database ready at {engine.url}", style="bold blue"))


@app.command()
def artifacts(
    ci_pipeline_id: int = typer.Argument(..., help="CI pipeline id"),
):
    """List the artifacts recorded for a CI pipeline."""
    with _session() as db:
        CiPipelineService(db).require_pipeline(ci_pipeline_id)
        rows = ArtifactStore(db).list_by_pipeline(ci_pipeline_id)
        if not rows:
            console.print(f"No artifacts for CI pipeline {ci_pipeline_id}")
            return

        table = Table(title=f"Artifacts of CI pipeline {ci_pipeline_id}", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Image")
        table.add_column("Digest")
        table.add_column("Parent")
        table.add_column("Source")
        table.add_column("Scanned")
        table.add_column("Created")
        for row in rows:
            table.add_row(
                str(row.id),
                row.image,
                row.image_digest[:19],
                _fmt(row.parent_ci_artifact),
                row.data_source,
                "✅" if row.scanned else "⏳",
                _fmt(row.created_on),
            )
        console.print(table)


@app.command()
def chart(
    app_id: int = typer.Argument(..., help="Application id"),
):
    """Show the chart versions of an application."""
    with _session() as db:
        AppService(db).require_app(app_id)
        charts = ChartService(db).list_for_app(app_id)
        if not charts:
            console.print(f"No chart configured for app {app_id}")
            return

        metrics = AppMetricsService(db).resolve_app_metrics(app_id, None)
        table = Table(title=f"Charts of app {app_id}", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Version", style="green")
        table.add_column("Repo")
        table.add_column("Reference")
        table.add_column("Pointer")
        table.add_column("Updated")
        for row in charts:
            pointer = "latest" if row.latest else "previous" if row.previous else ""
            table.add_row(
                str(row.id),
                row.chart_version,
                row.chart_repo,
                row.reference_template,
                pointer,
                _fmt(row.updated_on),
            )
        console.print(table)
        console.print(f"App metrics: {'🟢 enabled' if metrics else '🔴 disabled'}")


@app.command()
def history(
    cd_pipeline_id: int = typer.Argument(..., help="CD pipeline id"),
    offset: int = typer.Option(0, help="Entries to skip"),
    limit: int = typer.Option(20, help="Maximum entries to show"),
):
    """Show the deployed template history of a CD pipeline."""
    with _session() as db:
        CdPipelineService(db).require_pipeline(cd_pipeline_id)
        items = DeploymentTemplateHistoryService(db).get_deployment_details(cd_pipeline_id, offset, limit)
        if not items:
            console.print(f"No deployments recorded for CD pipeline {cd_pipeline_id}")
            return

        table = Table(title=f"Deployments of CD pipeline {cd_pipeline_id}", show_header=True, header_style="bold magenta")
        table.add_column("History ID", style="cyan")
        table.add_column("Runner")
        table.add_column("Status", style="green")
        table.add_column("Deployed on")
        table.add_column("By")
        for item in items:
            table.add_row(
                str(item.id),
                str(item.wfr_id),
                item.deployment_status,
                _fmt(item.deployed_on),
                _fmt(item.deployed_by),
            )
        console.print(table)


@app.command()
def compat(
    old_kind: str = typer.Argument(..., help="Current reference chart name"),
    new_kind: str = typer.Argument(..., help="Target reference chart name"),
):
    """Check whether an app can move between two reference charts."""
    old = resolve_chart_kind(old_kind)
    new = resolve_chart_kind(new_kind)
    if get_compatibility(old_kind, new_kind):
        console.print(f"✅ {old.value} -> {new.value} is compatible ({old.family.value})")
        return
    for name, kind in ((old_kind, old), (new_kind, new)):
        if kind is None:
            console.print(f"❓ Unknown chart kind: {name}")
    console.print(f"❌ {old_kind} -> {new_kind} is not compatible")
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
