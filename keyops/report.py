from __future__ import annotations

from keyops.drivers import NodeReport, RunReport


def _text(v) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return str(v)


def _node_line(node: NodeReport) -> str:
    r = node.result
    line = f"  {node.endpoint}: succeeded {r.succeeded}, failed {r.failed}"
    if node.skipped:
        line += " (skipped, cancelled)"
    elif node.error is not None:
        line += f" (node error: {node.error})"
    return line


def _sample(errors, limit: int) -> list[str]:
    return [f"    - {_text(key)}: {cause}" for key, cause in errors[:limit]]


def format_summary(report: RunReport, error_sample: int = 5) -> list[str]:
    total = report.total
    lines = [
        f"{report.operation} ({report.mode.value}): processed {total.processed}, "
        f"succeeded {total.succeeded}, failed {total.failed}"
    ]
    for node in report.nodes:
        lines.append(_node_line(node))
        lines.extend(_sample(node.result.errors, error_sample))
    if report.rejected.failed:
        lines.append(f"  not dispatched: {report.rejected.failed}")
        lines.extend(_sample(report.rejected.errors, error_sample))
    for warning in report.warnings:
        lines.append(f"warning: {warning}")
    if report.cancelled:
        lines.append("cancelled before completion")
    return lines
