import asyncio
import typer
import logging
import sys
if sys.platform == "win32":
    # asyncpg needs the selector loop on Windows.
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
from rich.table import Table

from subscription_ledger import create_ledger_client
from subscription_ledger.exceptions import LedgerError
from subscription_ledger.logging import configure as configure_logging
from subscription_ledger.utils.cli_utils import get_rich_console, format_limit


app = typer.Typer(help="CLI for subscription-ledger management.")
logger = logging.getLogger(__name__)
console = get_rich_console()


@app.callback()
def main(log_level: str = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL.")):
    configure_logging(log_level)


@app.command()
def init(seed: bool = typer.Option(True, "--seed/--no-seed", help="Insert the stock plans if missing.")):
    """
    Creates the database tables and seeds the default plans.
    """
    console.rule("[bold cyan]Ledger Initialization[/bold cyan]")

    async def _init():
        client = create_ledger_client()
        try:
            with console.status("Creating PostgreSQL tables...", spinner="dots"):
                await client.create_schema()
            console.log("[bold green]✔[/bold green] Database tables created successfully.")
            if seed:
                created = await client.plans.seed_defaults()
                names = ", ".join(p.name for p in created) or "none, all present"
                console.log(f"[bold green]✔[/bold green] Seeded plans: {names}")
        except LedgerError as e:
            console.log(f"[bold red]✖[/bold red] Initialization FAILED: {e}")
            raise typer.Exit(code=1)
        finally:
            await client.aclose()

    asyncio.run(_init())
    console.print("\n[bold green]✅ Ledger initialized successfully![/bold green]")


@app.command()
def check():
    """Checks connectivity to PostgreSQL and lists the configured payment providers."""
    console.rule("[bold cyan]Connection Check[/bold cyan]")

    async def _check() -> bool:
        client = create_ledger_client()
        try:
            statuses = await client.check_connections()
        finally:
            await client.aclose()
        pg_status = statuses.get("postgres", "unknown error")
        if pg_status == "ok":
            console.print("[bold green]✔[/bold green] PostgreSQL connection: OK")
        else:
            console.print(f"[bold red]✖[/bold red] PostgreSQL connection: FAILED ({pg_status})")
        console.print(f"Payment providers: {statuses.get('providers', 'none')}")
        return pg_status == "ok"

    if not asyncio.run(_check()):
        raise typer.Exit(code=1)


@app.command("plans")
def list_plans(all_plans: bool = typer.Option(False, "--all", help="Include archived plans.")):
    """Prints the plan catalog."""

    async def _plans():
        client = create_ledger_client()
        try:
            return await client.plans.list(include_inactive=all_plans)
        finally:
            await client.aclose()

    plans = asyncio.run(_plans())
    table = Table(title="Plans")
    for column in ("Name", "Billing", "Monthly", "Yearly", "Lifetime", "Forms", "Submissions/form", "Exports", "Default"):
        table.add_column(column)
    for plan in plans:
        exports = "yes" if (plan.can_export_forms or plan.can_export_submissions) else "no"
        table.add_row(
            plan.name if plan.is_active else f"{plan.name} (archived)",
            plan.billing_model.value,
            str(plan.price_monthly),
            str(plan.price_yearly),
            str(plan.price_lifetime),
            format_limit(plan.max_forms),
            format_limit(plan.max_submissions_per_form),
            exports,
            "✔" if plan.is_default else "",
        )
    console.print(table)


@app.command("set-default")
def set_default(name: str = typer.Argument(..., help="Plan name")):
    """Makes PLAN the default plan (and the only one)."""

    async def _set_default():
        client = create_ledger_client()
        try:
            plan = await client.plans.find_by_name(name)
            if plan is None:
                console.print(f"[bold red]✖[/bold red] Plan '{name}' not found")
                raise typer.Exit(code=1)
            await client.plans.set_default(plan.id)
        except LedgerError as e:
            console.print(f"[bold red]✖[/bold red] {e}")
            raise typer.Exit(code=1)
        finally:
            await client.aclose()

    asyncio.run(_set_default())
    console.print(f"[bold green]✔[/bold green] '{name}' is now the default plan")


@app.command()
def expire():
    """Runs one expiry sweep. Meant for cron or any external scheduler."""

    async def _expire():
        client = create_ledger_client()
        try:
            return await client.subscriptions.expire_due()
        finally:
            await client.aclose()

    summary = asyncio.run(_expire())
    console.print(f"Expired: {summary.processed}, failed: {summary.failed}")
    if summary.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
