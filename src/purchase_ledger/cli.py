"""Command line interface for the reconciliation service."""

from __future__ import annotations

from typing import Optional

import typer
import uvicorn

from . import crud, intents, ledger, schemas
from .config import Settings, get_settings
from .constants import MovementType
from .database import SessionLocal, init_database
from .exceptions import NotFoundError, ReconciliationError

app = typer.Typer(help="Run and inspect the purchase ledger service.")


def _print_header(title: str) -> None:
    typer.secho(title, bold=True, fg=typer.colors.CYAN)


def _resolve_settings() -> Settings:
    settings = get_settings()
    init_database()
    return settings


@app.command()
def run(
    host: Optional[str] = typer.Option(None, help="Hostname to bind"),
    port: Optional[int] = typer.Option(None, help="Port to expose"),
    reload: Optional[bool] = typer.Option(None, help="Enable auto-reload"),
    log_level: Optional[str] = typer.Option(None, help="Uvicorn log level"),
) -> None:
    """Start the FastAPI service using Uvicorn."""

    settings = _resolve_settings()

    uvicorn.run(
        "purchase_ledger.app:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=settings.reload if reload is None else reload,
        log_level=log_level or settings.log_level,
        factory=True,
    )


@app.command()
def init_db() -> None:
    """Create the database and tables."""

    settings = _resolve_settings()
    typer.echo(f"Database initialised at {settings.sqlalchemy_url}")


@app.command()
def show_paths() -> None:
    """Print out important filesystem paths."""

    settings = _resolve_settings()
    typer.echo(f"Database: {settings.sqlalchemy_url}")
    typer.echo(f"Log directory: {settings.log_dir}")


@app.command()
def stock(variant_id: str = typer.Argument(..., help="Product variant id")) -> None:
    """Show the on-hand quantity of a variant next to its ledger sum."""

    _resolve_settings()
    with SessionLocal() as session:
        try:
            audit = ledger.audit_variant(session, variant_id)
        except NotFoundError as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
    typer.echo(f"On hand: {audit.projected_quantity}")
    typer.echo(f"Ledger:  {audit.ledger_quantity}")


@app.command()
def adjust(
    variant_id: str = typer.Argument(..., help="Product variant id"),
    new_quantity: int = typer.Argument(..., help="Counted on-hand quantity"),
    notes: Optional[str] = typer.Option(None, help="Reason for the adjustment"),
) -> None:
    """Set the on-hand count of a variant, recording an adjustment movement."""

    _resolve_settings()
    with SessionLocal() as session:
        try:
            movement = ledger.adjust_stock(session, variant_id, new_quantity, notes)
        except ReconciliationError as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
    if movement is None:
        typer.echo("Stock already matches; nothing recorded.")
        return
    typer.secho(f"Recorded adjustment of {movement.delta:+d}", fg=typer.colors.GREEN)


@app.command("record-movement")
def record_movement_cmd(
    variant_id: str = typer.Argument(..., help="Product variant id"),
    movement_type: MovementType = typer.Argument(..., help="in, out or adjustment"),
    quantity: int = typer.Argument(..., help="Units moved; adjustments take the sign as direction"),
    notes: Optional[str] = typer.Option(None, help="Reason for the movement"),
) -> None:
    """Record a manual stock movement for a variant."""

    _resolve_settings()
    entry = schemas.StockMovementCreate(
        product_variant_id=variant_id, type=movement_type, quantity=quantity, notes=notes
    )
    with SessionLocal() as session:
        try:
            movement = ledger.record_movements(session, [entry])[0]
        except ReconciliationError as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
    typer.secho(f"Recorded {movement.type} movement of {movement.delta:+d}", fg=typer.colors.GREEN)


@app.command()
def movements(
    variant_id: str = typer.Argument(..., help="Product variant id"),
    limit: int = typer.Option(20, help="Number of movements to show"),
) -> None:
    """List the most recent stock movements of a variant."""

    _resolve_settings()
    with SessionLocal() as session:
        try:
            rows = ledger.list_movements(session, variant_id, limit=limit)
        except NotFoundError as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
    if not rows:
        typer.echo("No movements recorded.")
        return
    _print_header(f"Movements for {variant_id}")
    for row in rows:
        typer.echo(
            f"- #{row.id} {row.created_at:%Y-%m-%d %H:%M} {row.type:<10} {row.delta:+d} "
            f"| {row.reference_type}:{row.reference_id or '-'} | {row.notes or ''}"
        )


@app.command()
def audit(
    show_all: bool = typer.Option(False, "--all", help="Also list variants whose stock is consistent"),
) -> None:
    """Recompute stock from the ledger and report variants that disagree."""

    _resolve_settings()
    with SessionLocal() as session:
        results = ledger.audit_stock(session)

    mismatched = [result for result in results if not result.is_consistent]
    rows = results if show_all else mismatched
    if rows:
        _print_header("Variant | on hand | ledger | difference")
        for row in rows:
            typer.echo(
                f"- {row.product_variant_id} | {row.projected_quantity} | {row.ledger_quantity} | {row.discrepancy:+d}"
            )
    if mismatched:
        typer.secho(f"{len(mismatched)} variant(s) need reconciliation.", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.secho(f"All {len(results)} variant(s) match the ledger.", fg=typer.colors.GREEN)


@app.command("pending-intents")
def pending_intents_cmd() -> None:
    """List operations whose outcome was never recorded."""

    _resolve_settings()
    with SessionLocal() as session:
        pending = intents.pending_intents(session)
        if not pending:
            typer.echo("No pending intents.")
            return
        _print_header("Pending intents")
        for intent in pending:
            purchase = crud.get_purchase(session, intent.purchase_id, include_deleted=True) if intent.purchase_id else None
            state = purchase.payment_status if purchase else "missing"
            typer.echo(
                f"- {intent.key} | {intent.operation} | purchase={intent.purchase_id or '-'} ({state}) "
                f"| since {intent.created_at:%Y-%m-%d %H:%M}"
            )


def main() -> None:
    """Entry-point for console scripts."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
