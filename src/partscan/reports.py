"""
Output shaping and reports: console table, JSON, CSV and HTML.

Part of the Partscan SQL Server inventory tool. Licensed under MIT.
"""

import csv
import datetime
import html
import io
import json
from pathlib import Path
from typing import Any, Iterable

from .engine import PartitionFunctionRecord

# (display name, record attribute)
DEFAULT_COLUMNS = [
    ("ComputerName", "computer_name"),
    ("InstanceName", "instance_name"),
    ("SqlInstance", "sql_instance"),
    ("Database", "database"),
    ("CreateDate", "create_date"),
    ("Name", "name"),
    ("NumberOfPartitions", "number_of_partitions"),
]

EXTRA_COLUMNS = [
    ("FunctionId", "function_id"),
    ("RangeType", "range_type"),
    ("ParameterType", "parameter_type"),
    ("ModifyDate", "modify_date"),
    ("RangeValues", "range_values"),
]


def columns_for(all_columns: bool = False) -> list[tuple[str, str]]:
    return DEFAULT_COLUMNS + EXTRA_COLUMNS if all_columns else list(DEFAULT_COLUMNS)


def select_columns(
    records: Iterable[PartitionFunctionRecord], all_columns: bool = False
) -> list[dict[str, Any]]:
    """Project records onto the default display columns (or every column)."""
    columns = columns_for(all_columns)
    return [
        {display: getattr(record, attr) for display, attr in columns}
        for record in records
    ]


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime.datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, tuple):
        return list(value)
    return value


def format_table(rows: list[dict[str, Any]]) -> str:
    """Render projected rows as a fixed-width text table."""
    if not rows:
        return ""
    headers = list(rows[0].keys())
    cells = [[_format_value(row[h]) for h in headers] for row in rows]
    widths = [
        max(len(h), *(len(line[i]) for line in cells)) for i, h in enumerate(headers)
    ]

    lines = [
        "  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip(),
        "  ".join("-" * w for w in widths),
    ]
    for line in cells:
        lines.append("  ".join(c.ljust(w) for c, w in zip(line, widths)).rstrip())
    return "\n".join(lines)


def format_json(rows: list[dict[str, Any]]) -> str:
    data = [{k: _json_value(v) for k, v in row.items()} for row in rows]
    return json.dumps(data, indent=2, default=str)


def format_csv(rows: list[dict[str, Any]]) -> str:
    buf = io.StringIO()
    if rows:
        writer = csv.DictWriter(buf, fieldnames=list(rows[0].keys()), lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: _format_value(v) for k, v in row.items()})
    return buf.getvalue()


def generate_json_report(rows: list[dict[str, Any]], path: Path, failed_instances=()):
    """Write the inventory as JSON with a summary block."""
    data = {
        "run_timestamp": datetime.datetime.now().isoformat(),
        "summary": {
            "partition_functions": len(rows),
            "instances": len({row.get("SqlInstance") for row in rows}),
            "databases": len({(row.get("SqlInstance"), row.get("Database")) for row in rows}),
            "failed_instances": list(failed_instances),
        },
        "partition_functions": [
            {k: _json_value(v) for k, v in row.items()} for row in rows
        ],
    }
    path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")


def generate_csv_report(rows: list[dict[str, Any]], path: Path):
    path.write_text(format_csv(rows), encoding="utf-8")


def generate_html_report(rows: list[dict[str, Any]], path: Path, failed_instances=()):
    """Write a self-contained HTML report."""
    headers = list(rows[0].keys()) if rows else [display for display, _ in DEFAULT_COLUMNS]

    rows_html = []
    for row in rows:
        cells = "".join(f"<td>{html.escape(_format_value(row[h]))}</td>" for h in headers)
        rows_html.append(f"<tr>{cells}</tr>")

    failures_html = ""
    if failed_instances:
        items = "".join(f"<li>{html.escape(str(i))}</li>" for i in failed_instances)
        failures_html = f'<p class="fail">Unreachable instances:</p><ul>{items}</ul>'

    header_html = "".join(f"<th>{html.escape(h)}</th>" for h in headers)
    instances = len({row.get("SqlInstance") for row in rows})

    page = f"""<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>Partscan Partition Function Report</title>
<style>
  body {{ font-family: system-ui, sans-serif; margin: 2rem; background: #fafafa; }}
  h1 {{ color: #333; }}
  .summary {{ font-size: 1.2rem; margin: 1rem 0; }}
  .fail {{ color: #c0392b; }}
  table {{ border-collapse: collapse; width: 100%; margin-top: 1rem; }}
  th, td {{ border: 1px solid #ccc; padding: 8px 12px; text-align: left; vertical-align: top; }}
  th {{ background: #333; color: white; }}
  tr:nth-child(even) {{ background: #f0f0f0; }}
</style></head><body>
<h1>Partition Function Report</h1>
<p class="summary">
  Run: {datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")} &mdash;
  {len(rows)} partition function(s) on {instances} instance(s)
</p>
{failures_html}
<table>
<tr>{header_html}</tr>
{"".join(rows_html)}
</table></body></html>"""
    path.write_text(page, encoding="utf-8")
