"""Typer CLI for Meterbridge."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="meterbridge", help="Meterbridge: usage metering and billing reconciliation")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Meterbridge API server."""
    import uvicorn
    from meterbridge.app import create_app
    from meterbridge.common.config import get_settings
    from meterbridge.common.logging import setup_logging

    setup_logging(get_settings().log_level)
    console.print(f"[bold green]Starting Meterbridge on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


async def _with_db(run):
    from meterbridge.deps import get_db

    db = get_db()
    await db.init()
    await db.create_all()
    try:
        return await run()
    finally:
        await db.close()


@app.command()
def sweep(
    limit: int = typer.Option(0, help="Max ledger entries to retry (0 = configured batch size)"),
):
    """Retry pending and failed webhook events once."""
    from meterbridge.common.config import get_settings
    from meterbridge.common.logging import setup_logging
    from meterbridge.deps import get_webhook_dispatcher

    setup_logging(get_settings().log_level)
    report = asyncio.run(_with_db(lambda: get_webhook_dispatcher().retry_sweep(limit or None)))

    table = Table(title="Webhook retry sweep")
    table.add_column("Attempted", justify="right")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_row(str(report.attempted), str(report.completed), str(report.failed))
    console.print(table)
    if report.failed:
        raise typer.Exit(1)


@app.command()
def notify(
    limit: int = typer.Option(50, help="Max notification jobs to send"),
):
    """Send due notification emails once."""
    from meterbridge.common.config import get_settings
    from meterbridge.common.logging import setup_logging
    from meterbridge.deps import get_notification_worker

    setup_logging(get_settings().log_level)
    report = asyncio.run(_with_db(lambda: get_notification_worker().run_once(limit)))
    console.print(
        f"[bold]{report.claimed}[/bold] due: "
        f"[green]{report.sent} sent[/green], [red]{report.failed} failed[/red]"
    )


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Meterbridge server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
