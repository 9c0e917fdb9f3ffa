import asyncio, json, logging
from typing import Optional

import click
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..application.use_cases import TaxScanService, open_service
from ..config import load_settings
from ..domain.errors import TaxScanError
from .formatting import format_amount, format_tax_report

app = typer.Typer(help="taxscan: incremental tax-attribution scanner for ERC-20 launches.")
console = Console()
_state: dict[str, Optional[str]] = {"env_file": None}


@app.callback()
def main(
    log_level: str = typer.Option(
        "INFO", "--log-level", click_type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    ),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file"),
):
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
    _state["env_file"] = env_file


def _run(fn):
    """Open the service, run `fn(service)`, map domain errors to a clean exit."""
    async def inner():
        settings = load_settings(_state["env_file"])
        async with open_service(settings) as svc:
            return await fn(svc)
    try:
        return asyncio.run(inner())
    except (TaxScanError, ValueError) as e:
        console.print(f"[red]error[/]: {escape(str(e))}")
        raise typer.Exit(code=1)


def _print_job(d: dict) -> None:
    console.print_json(json.dumps(d))


@app.command()
def start(
    campaign_id: str,
    target_token: str,
    tax_wallet: Optional[str] = typer.Option(None, help="Defaults to TAXSCAN_TAX_WALLET"),
    start_block: Optional[int] = typer.Option(None, help="Skip launch detection and start here"),
    name: str = "",
    logo_url: str = "",
):
    """Create an incremental scan job starting at the token's launch block."""
    async def go(svc: TaxScanService):
        return await svc.start_scan(campaign_id, target_token, tax_wallet,
                                    start_block=start_block, name=name, logo_url=logo_url)
    _print_job(_run(go).to_dict())


@app.command()
def stop(campaign_id: str):
    async def go(svc: TaxScanService):
        return await svc.stop_scan(campaign_id)
    _print_job(_run(go).to_dict())


@app.command()
def resume(campaign_id: str):
    async def go(svc: TaxScanService):
        return await svc.resume_scan(campaign_id)
    _print_job(_run(go).to_dict())


@app.command()
def delete(campaign_id: str, clear_leaderboard: bool = typer.Option(False, "--clear-leaderboard")):
    async def go(svc: TaxScanService):
        await svc.delete_scan(campaign_id, clear_leaderboard=clear_leaderboard)
    _run(go)
    console.print(f"deleted job [bold]{campaign_id}[/]")


@app.command()
def status(campaign_id: str):
    """Job state plus progress and estimated remaining time."""
    async def go(svc: TaxScanService):
        return await svc.get_job_status(campaign_id)
    _print_job(_run(go).to_dict())


@app.command()
def tick():
    """One scheduler invocation: advance every active job by one work unit."""
    async def go(svc: TaxScanService):
        return await svc.tick()
    res = _run(go)
    table = Table(title=f"head {res.head} • {res.elapsed_s:.2f}s")
    for col in ("campaign", "status", "range", "payers", "valid", "skipped", "note"):
        table.add_column(col)
    for r in res.results:
        rng = f"[{r.block_range.start}, {r.block_range.end})" if r.block_range else "-"
        note = r.error or (f"gaps: {len(r.gaps)}" if r.gaps else "")
        table.add_row(r.campaign_id, r.status, rng, str(r.users_found), str(r.valid_count), str(r.skipped_count), note)
    console.print(table)


@app.command()
def report(token: str, tax_wallet: Optional[str] = None, as_json: bool = typer.Option(False, "--json")):
    """One-shot tax report over the token's whole observation window."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting...", total=100)

        def on_progress(pct: int, msg: str) -> None:
            progress.update(task, completed=pct, description=msg)

        async def go(svc: TaxScanService):
            return await svc.calculate_tax(token, tax_wallet, on_progress=on_progress)
        rep = _run(go)
    if as_json:
        console.print_json(json.dumps({
            "tokenAddress": rep.token,
            "taxWallet": rep.tax_wallet,
            "launchBlock": rep.launch.launch_block,
            "prelaunchBlock": rep.launch.prelaunch_block,
            "scanStartBlock": rep.scan_start_block,
            "scanEndBlock": rep.scan_end_block,
            "blocksScanned": rep.blocks_scanned,
            "totalBlocks": rep.total_blocks,
            "progressPercent": rep.progress_percent,
            "isComplete": rep.is_complete,
            "totalTaxWei": str(rep.total_tax),
            "validTransactions": rep.valid_transactions,
            "skippedTransactions": rep.skipped_transactions,
            "uniquePayers": rep.unique_payers,
            "totalsByPayer": {a: str(v) for a, v in rep.totals_by_payer.items()},
            "leaderboard": [{"address": e.address, "taxPaidWei": str(e.amount)} for e in rep.leaderboard],
            "gaps": [[g.start, g.end] for g in rep.gaps],
            "timestamp": rep.timestamp,
        }))
    else:
        console.print(format_tax_report(rep))


@app.command("launch-block")
def launch_block(token: str):
    async def go(svc: TaxScanService):
        return await svc.locator.locate(token)
    info = _run(go)
    console.print(f"launch={info.launch_block} prelaunch={info.prelaunch_block} "
                  f"deploy={info.deploy_block} source={info.source}")


@app.command()
def leaderboard(campaign_id: str, limit: int = 20):
    async def go(svc: TaxScanService):
        return await svc.leaderboard.ranked(campaign_id, limit), await svc.leaderboard.meta(campaign_id)
    entries, meta = _run(go)
    title = f"{campaign_id}" + (f" • {meta.total_users} payers • {format_amount(meta.total_amount)}" if meta else "")
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("address")
    table.add_column("amount", justify="right")
    for e in entries:
        table.add_row(str(e.rank), e.address, format_amount(e.amount))
    console.print(table)


@app.command()
def rebuild(campaign_id: str):
    """Clear a stopped/finished campaign's leaderboard and replay its scanned range."""
    async def go(svc: TaxScanService):
        return await svc.rebuild_leaderboard(campaign_id)
    res = _run(go)
    console.print(f"rebuilt {campaign_id}: {res.meta.total_users} payers, "
                  f"total {format_amount(res.meta.total_amount)}, scanned to {res.scanned_to}, gaps {len(res.gaps)}")


if __name__ == "__main__":
    app()
