from __future__ import annotations

from decimal import Decimal

from eth_utils import from_wei

from ..application.use_cases import TaxReport


def to_decimal(amount: int, decimals: int = 18) -> Decimal:
    if decimals == 18:
        return Decimal(from_wei(amount, "ether"))
    return Decimal(amount).scaleb(-decimals)


def format_amount(amount: int, decimals: int = 18, places: int = 6) -> str:
    q = Decimal(1).scaleb(-places)
    return f"{to_decimal(amount, decimals).quantize(q):,}"


def format_tax_report(report: TaxReport, *, symbol: str = "VIRTUAL", top: int = 10) -> str:
    lines = [
        f"Tax Report for Token {report.token}",
        "",
        f"Tax Wallet: {report.tax_wallet}",
        f"Launch Block: {report.launch.launch_block} ({report.launch.source})",
        f"Blocks Scanned: {report.blocks_scanned} / {report.total_blocks} ({report.progress_percent}%)",
        "Scan Complete" if report.is_complete else "Scan In Progress (token still in tax period)",
        "",
        f"Total Tax Collected: {format_amount(report.total_tax)} {symbol}",
        f"Valid Tax Transactions: {report.valid_transactions}",
        f"Unique Tax Payers: {report.unique_payers}",
        "",
    ]
    if report.leaderboard:
        lines.append("Top Tax Payers:")
        for e in report.leaderboard[:top]:
            lines.append(f"   {e.rank}. {e.address}: {format_amount(e.amount)} {symbol}")
    if report.gaps:
        lines.append("")
        lines.append("Unscanned gaps: " + ", ".join(f"[{g.start}, {g.end})" for g in report.gaps))
    lines.append("")
    lines.append(f"Report Generated: {report.timestamp}")
    return "\n".join(lines)
