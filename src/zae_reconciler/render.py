"""
Text rendering for plans and apply outcomes.

This module provides a column-based TableRenderer for box-drawing tables
plus the plan listing and per-node outcome table printed by the CLI.
"""

from __future__ import annotations

import json

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from .graph import ResourceGraph
from .models import Action, ApplyResult, DiffEntry, Plan, StepStatus
from .refs import to_tokens

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.UNCHANGED: " ",
}

STATUS_MARKERS = {
    StepStatus.APPLIED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "-",
}


@dataclass(frozen=True)
class Column:
    """
    One table column.

    Attributes:
        header: Column title
        align: 'l', 'r' or 'c'
        max_width: Cells longer than this are cut and end in "..."
    """

    header: str
    align: str = "l"
    max_width: int | None = None

    def fit(self, value: Any) -> str:
        text = "" if value is None else " ".join(str(value).split())
        if self.max_width is not None and len(text) > self.max_width:
            return text[: max(self.max_width - 3, 0)] + "..."
        return text

    def pad(self, text: str, width: int) -> str:
        if self.align == "r":
            return text.rjust(width)
        if self.align == "c":
            return text.center(width)
        return text.ljust(width)


class TableRenderer:
    """Render rows under a fixed set of columns as a box-drawing table.

    Example output:
        +----------+---------+-------------+
        | Resource | Kind    | Provider ID |
        +----------+---------+-------------+
        | Network  | AWS::.. | vpc-0a1b    |
        +----------+---------+-------------+
    """

    def __init__(self, columns: Sequence[Column | str]) -> None:
        self.columns = [c if isinstance(c, Column) else Column(c) for c in columns]

    def render(self, rows: Iterable[Sequence[Any]]) -> str:
        """Render ``rows``; missing cells are blank and extra cells are dropped."""
        if not self.columns:
            return ""

        cells = [
            [col.fit(row[i] if i < len(row) else None) for i, col in enumerate(self.columns)]
            for row in rows
        ]
        widths = [
            max([len(col.header)] + [len(line[i]) for line in cells])
            for i, col in enumerate(self.columns)
        ]

        separator = "+-" + "-+-".join("-" * w for w in widths) + "-+"

        def line(values: Sequence[str], columns: Sequence[Column]) -> str:
            padded = (col.pad(v, w) for col, v, w in zip(columns, values, widths, strict=True))
            return "| " + " | ".join(padded) + " |"

        headers = [Column(col.header) for col in self.columns]
        lines = [separator, line([c.header for c in self.columns], headers), separator]
        lines.extend(line(values, self.columns) for values in cells)
        lines.append(separator)
        return "\n".join(lines)


OUTCOME_COLUMNS = (
    Column("Resource"),
    Column("Operation"),
    Column("Status"),
    Column("Attempts", align="r"),
    Column("Detail", max_width=100),
)


def render_plan(plan: Plan, show_unchanged: bool = False) -> str:
    """Render the diff of a plan, one line per resource, plus a summary."""
    if plan.is_empty:
        return "No changes. Infrastructure is up-to-date."

    lines: list[str] = []
    for entry in plan.entries:
        if entry.action is Action.UNCHANGED and not show_unchanged:
            continue
        lines.append(_entry_line(entry))

    summary = plan.summary()
    lines.append("")
    lines.append(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )
    return "\n".join(lines)


def _entry_line(entry: DiffEntry) -> str:
    line = f"  {ACTION_SYMBOLS[entry.action]:>3} {entry.name} ({entry.kind})"
    if entry.reasons:
        line += f": {', '.join(entry.reasons)}"
    return line


def render_batches(plan: Plan) -> str:
    """Render plan batches as numbered groups of step keys."""
    if plan.is_empty:
        return "No steps."
    return "\n".join(
        f"Batch {i}: {', '.join(step.key for step in batch)}"
        for i, batch in enumerate(plan.batches, start=1)
    )


def render_graph(graph: ResourceGraph) -> str:
    """Render build order with each node's dependencies."""
    lines = []
    for node in graph:
        deps = ", ".join(node.dependencies) or "-"
        lines.append(f"{node.name} ({node.kind}) <- {deps}")
    return "\n".join(lines)


def render_outcome(result: ApplyResult) -> str:
    """Render one row per step: resource, operation, status, attempts, detail."""
    rows = [
        [
            r.name,
            r.operation.value,
            f"{STATUS_MARKERS[r.status]} {r.status.value}",
            r.attempts,
            r.cause or r.reason,
        ]
        for r in result.results
    ]
    table = TableRenderer(OUTCOME_COLUMNS).render(rows)

    counts = {status: 0 for status in StepStatus}
    for r in result.results:
        counts[r.status] += 1
    footer = (
        f"Applied: {counts[StepStatus.APPLIED]}, "
        f"failed: {counts[StepStatus.FAILED]}, "
        f"skipped: {counts[StepStatus.SKIPPED]}."
    )
    if result.canceled:
        footer += " Run was canceled."
    return f"{table}\n{footer}" if rows else footer


def render_outputs(outputs: dict[str, Any]) -> str:
    """``Name = value`` lines; strings bare, anything else as JSON."""
    lines = ["Outputs:"]
    for name, value in sorted(outputs.items()):
        shown = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
        lines.append(f"  {name} = {shown}")
    return "\n".join(lines)


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    """JSON-serializable form of a plan, for ``--json`` output."""
    return {
        "summary": plan.summary(),
        "changes": [
            {
                "name": e.name,
                "action": e.action.value,
                "kind": e.kind,
                "reasons": list(e.reasons),
                "properties": to_tokens(e.desired.properties) if e.desired else None,
            }
            for e in plan.entries
            if e.action is not Action.UNCHANGED
        ],
        "batches": [
            [{"step": s.key, "requires": sorted(s.requires)} for s in batch]
            for batch in plan.batches
        ],
    }


def outcome_to_dict(result: ApplyResult) -> dict[str, Any]:
    """JSON-serializable form of an apply result."""
    return {
        "ok": result.ok,
        "canceled": result.canceled,
        "serial": result.snapshot.serial,
        "results": [
            {
                "name": r.name,
                "operation": r.operation.value,
                "status": r.status.value,
                "cause": r.cause,
                "reason": r.reason,
                "attempts": r.attempts,
                "duration_seconds": round(r.duration_seconds, 3),
            }
            for r in result.results
        ],
        "nodes": {name: status.value for name, status in sorted(result.by_node().items())},
        "outputs": dict(sorted(result.snapshot.outputs.items())),
    }
