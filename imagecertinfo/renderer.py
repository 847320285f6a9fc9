"""Render inventory reports using Jinja2 templates."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from importlib.resources import files as importlib_files
from pathlib import Path

import yaml
from jinja2 import Environment, FileSystemLoader, select_autoescape

from imagecertinfo.dockerhub import format_pull_count
from imagecertinfo.models import ImageRecord, InventorySummary

logger = logging.getLogger(__name__)

# Resolve the templates directory via importlib.resources so it works in
# both editable installs and built wheels / sdists.
_TEMPLATES_REF = importlib_files("imagecertinfo") / "templates"


def _get_jinja_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATES_REF)),
        autoescape=select_autoescape(default=False),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["pulls"] = format_pull_count
    return env


def render_inventory_report(
    records: list[ImageRecord],
    summary: InventorySummary | None = None,
    generated_at: datetime | None = None,
) -> str:
    """Render a Markdown report of the inventory."""
    summary = summary or InventorySummary.from_records(records)
    env = _get_jinja_env()
    template = env.get_template("inventory_report.md.j2")
    return template.render(
        records=sorted(records, key=lambda r: r.name),
        summary=summary,
        generated_at=(generated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M UTC"),
    )


def inventory_data(records: list[ImageRecord], summary: InventorySummary | None = None) -> dict:
    """Plain-data form of the inventory for YAML / JSON output."""
    summary = summary or InventorySummary.from_records(records)
    return {
        "summary": summary.model_dump(mode="json"),
        "records": [r.to_manifest() for r in sorted(records, key=lambda r: r.name)],
    }


def write_report(records: list[ImageRecord], output_dir: Path, output_format: str = "yaml") -> list[str]:
    """Write the Markdown report and a data file to *output_dir*; return the written paths."""
    if output_format not in ("yaml", "json"):
        raise ValueError(f"unsupported output format: {output_format}")
    output_dir.mkdir(parents=True, exist_ok=True)
    summary = InventorySummary.from_records(records)
    written: list[str] = []

    report_path = output_dir / "inventory-report.md"
    report_path.write_text(render_inventory_report(records, summary), encoding="utf-8")
    written.append(str(report_path))
    logger.info("Wrote %s", report_path)

    data = inventory_data(records, summary)
    if output_format == "json":
        data_path = output_dir / "inventory.json"
        data_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    else:
        data_path = output_dir / "inventory.yaml"
        data_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    written.append(str(data_path))
    logger.info("Wrote %s", data_path)

    return written
