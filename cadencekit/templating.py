"""Placeholder rendering for message templates."""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

_DOUBLE = re.compile(r"\{\{(\w+)\}\}")
# Legacy single-brace form; applied after the double-brace pass.
_SINGLE = re.compile(r"\{(\w+)\}")

LEAD_VARIABLES = ("first_name", "last_name", "company", "title", "email", "linkedin_url")

SAMPLE_LEAD: dict = {
    "first_name": "John",
    "last_name": "Smith",
    "company": "Acme Corp",
    "title": "VP of Sales",
    "email": "john.smith@acme.com",
    "linkedin_url": "https://linkedin.com/in/johnsmith",
}


def render_template(
    template: str, variables: Mapping[str, Any], keep_missing: bool = True
) -> str:
    """Substitute ``{{name}}`` and ``{name}`` placeholders.

    Unknown placeholders are left as written unless ``keep_missing`` is
    false, in which case they are dropped.
    """

    def substitute(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is not None:
            return str(value)
        return match.group(0) if keep_missing else ""

    return _SINGLE.sub(substitute, _DOUBLE.sub(substitute, template))


def lead_variables(lead: Mapping[str, Any]) -> dict:
    """Template variables for a lead; known fields default to empty strings."""
    variables = {name: lead.get(name) or "" for name in LEAD_VARIABLES}
    for key, value in lead.items():
        if key not in variables and value is not None:
            variables[key] = value
    return variables


def render_for_lead(
    template: Optional[str], lead: Mapping[str, Any], keep_missing: bool = True
) -> Optional[str]:
    if template is None:
        return None
    return render_template(template, lead_variables(lead), keep_missing=keep_missing)
