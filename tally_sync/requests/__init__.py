"""
XML request templates for the Tally export reports.

Templates are Jinja2 files that render XML requests for the Tally HTTP API.
Dates are rendered in Tally's YYYYMMDD form.
"""
from __future__ import annotations
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Optional
from jinja2 import Template

# Template directory
TEMPLATE_DIR = Path(__file__).parent

# Available templates
TEMPLATES = {
    "report_by_date": "report_by_date.xml.j2",
    "report_by_alter_id": "report_by_alter_id.xml.j2",
    "alter_id_collection": "alter_id_collection.xml.j2",
}


def get_template_path(name: str) -> Path:
    """Get path to a template file."""
    if name not in TEMPLATES:
        raise ValueError(f"Unknown template: {name}. Valid: {list(TEMPLATES.keys())}")
    return TEMPLATE_DIR / TEMPLATES[name]


@lru_cache(maxsize=None)
def load_template(name: str) -> Template:
    """Load and compile a template."""
    return Template(get_template_path(name).read_text(encoding="utf-8"))


def tally_date(d: date) -> str:
    return d.strftime("%Y%m%d")


def render_report_request(
    report: str,
    from_alter_id: int = 0,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    company: Optional[str] = None,
) -> str:
    """
    Render an export request for a report.

    With both dates the date-window template is used, otherwise the
    change-id-only template. Tally returns records whose alter id is
    strictly greater than ``from_alter_id``.
    """
    if (from_date is None) != (to_date is None):
        raise ValueError("from_date and to_date must be given together")

    context = {
        "report": report,
        "company": company,
        "from_alter_id": int(from_alter_id),
    }
    if from_date is not None:
        context["from_date"] = tally_date(from_date)
        context["to_date"] = tally_date(to_date)
        return load_template("report_by_date").render(**context)
    return load_template("report_by_alter_id").render(**context)


def render_alter_id_request(object_type: str, company: Optional[str] = None) -> str:
    """Render a collection export listing the ALTERID of every ``object_type`` object."""
    return load_template("alter_id_collection").render(object_type=object_type, company=company)
