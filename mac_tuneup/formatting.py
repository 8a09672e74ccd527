"""Console-friendly formatting utilities."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:
    from .catalog import HealthReport
    from .executor import ExecutionResult


def format_size(num_bytes: float) -> str:
    """Render a byte count as whole KB, whole MB or one-decimal GB."""
    if num_bytes <= 0:
        return "0B"
    kb = num_bytes / 1024
    if round(kb) < 1024:
        return f"{kb:.0f}KB"
    mb = kb / 1024
    if round(mb) < 1024:
        return f"{mb:.0f}MB"
    return f"{mb / 1024:.1f}GB"


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    lines = []
    lines.append(_format_row(headers, widths))
    lines.append(_format_row(["-" * w for w in widths], widths))
    for row in rows:
        lines.append(_format_row(row, widths))
    return "\n".join(lines)


def format_report(report: HealthReport) -> str:
    metrics = report.metrics
    lines = [
        f"Time: {metrics.timestamp:%Y-%m-%d %H:%M:%S}",
        f"Memory: {format_size(metrics.memory_used)} / {format_size(metrics.memory_total)}",
        f"Disk: {format_size(metrics.disk_used)} / {format_size(metrics.disk_total)} ({metrics.disk_percent:.0f}%)",
        f"Uptime: {metrics.uptime_days:.1f} days",
        "",
    ]
    rows = [
        [
            item.category.value,
            item.name + (" (whitelisted)" if item.whitelisted else ""),
            item.description,
            item.action_key,
            item.tier.value,
        ]
        for item in report.items
    ]
    lines.append(render_table(["Category", "Name", "Description", "Key", "Tier"], rows))
    return "\n".join(lines)


def format_results(results: Iterable[ExecutionResult]) -> str:
    rows = [
        [
            result.action_key,
            result.status.value,
            result.message,
            format_size(result.bytes_freed) if result.bytes_freed else "-",
        ]
        for result in results
    ]
    return render_table(["Key", "Status", "Message", "Freed"], rows) if rows else "Nothing was run."


def _format_row(row: Sequence[str], widths: Sequence[int]) -> str:
    padded = [cell.ljust(width) for cell, width in zip(row, widths)]
    return " | ".join(padded)
