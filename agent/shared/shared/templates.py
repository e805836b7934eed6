"""``{{var}}`` placeholder extraction and rendering for message templates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")

# HubSpot object types in their plural API form, mapped to template prefixes
_OBJECT_PREFIXES = {
    "contacts": "contact",
    "companies": "company",
    "deals": "deal",
}


@dataclass(frozen=True)
class HubSpotVariable:
    name: str  # template variable, e.g. "contact.firstname"
    label: str
    object_type: str  # contact | company | deal
    property: str  # HubSpot internal property name
    example: str


HUBSPOT_VARIABLES: tuple[HubSpotVariable, ...] = (
    HubSpotVariable("contact.firstname", "First Name", "contact", "firstname", "John"),
    HubSpotVariable("contact.lastname", "Last Name", "contact", "lastname", "Doe"),
    HubSpotVariable("contact.email", "Email", "contact", "email", "john@example.com"),
    HubSpotVariable("contact.phone", "Phone", "contact", "phone", "+1234567890"),
    HubSpotVariable("contact.company", "Company Name", "contact", "company", "Acme Inc"),
    HubSpotVariable("contact.jobtitle", "Job Title", "contact", "jobtitle", "CEO"),
    HubSpotVariable("contact.website", "Website", "contact", "website", "www.example.com"),
    HubSpotVariable("contact.city", "City", "contact", "city", "New York"),
    HubSpotVariable("contact.state", "State", "contact", "state", "NY"),
    HubSpotVariable("contact.country", "Country", "contact", "country", "USA"),
    HubSpotVariable("company.name", "Company Name", "company", "name", "Acme Inc"),
    HubSpotVariable("company.domain", "Domain", "company", "domain", "acme.com"),
    HubSpotVariable("company.industry", "Industry", "company", "industry", "Technology"),
    HubSpotVariable("company.employees", "Number of Employees", "company", "numberofemployees", "50"),
    HubSpotVariable("company.revenue", "Annual Revenue", "company", "annualrevenue", "1000000"),
    HubSpotVariable("company.phone", "Phone", "company", "phone", "+1234567890"),
    HubSpotVariable("company.city", "City", "company", "city", "San Francisco"),
    HubSpotVariable("company.state", "State", "company", "state", "CA"),
    HubSpotVariable("deal.name", "Deal Name", "deal", "dealname", "Q1 2024 Contract"),
    HubSpotVariable("deal.amount", "Amount", "deal", "amount", "50000"),
    HubSpotVariable("deal.stage", "Deal Stage", "deal", "dealstage", "negotiation"),
    HubSpotVariable("deal.closedate", "Close Date", "deal", "closedate", "2024-03-31"),
    HubSpotVariable("deal.pipeline", "Pipeline", "deal", "pipeline", "default"),
    HubSpotVariable("deal.probability", "Probability", "deal", "probability", "75"),
)

_CATALOGUE = {v.name: v for v in HUBSPOT_VARIABLES}


def extract_variables(content: str) -> list[str]:
    """Return placeholder names in first-seen order, without duplicates."""
    seen: dict[str, None] = {}
    for match in _PLACEHOLDER_RE.finditer(content or ""):
        seen.setdefault(match.group(1), None)
    return list(seen)


def hubspot_variables(names: list[str]) -> list[HubSpotVariable]:
    """Subset of ``names`` that map onto known HubSpot fields."""
    return [_CATALOGUE[n] for n in names if n in _CATALOGUE]


def _lookup(values: dict[str, Any], path: str) -> Any:
    # A flat dotted key ("metrics.total") wins over traversal
    if path in values:
        return values[path]
    current: Any = values
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _display(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(content: str, variables: dict[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders. Unknown names are left as-is."""

    def _replace(m: re.Match) -> str:
        value = _lookup(variables, m.group(1))
        return _display(value) if value is not None else m.group(0)

    return _PLACEHOLDER_RE.sub(_replace, content or "")


def validate_variables(content: str, values: dict[str, Any]) -> list[str]:
    """Names referenced by ``content`` that ``values`` cannot resolve."""
    return [name for name in extract_variables(content) if _lookup(values, name) is None]


def object_variables(object_type: str, properties: dict[str, Any]) -> dict[str, Any]:
    """Template variables for a CRM object's property bag.

    Properties are exposed both bare (``{{firstname}}``) and under the
    object's prefix (``{{contact.firstname}}``), and catalogue aliases such
    as ``deal.name`` resolve to their underlying property.
    """
    prefix = _OBJECT_PREFIXES.get(object_type, object_type.rstrip("s"))
    scoped = dict(properties)
    for var in HUBSPOT_VARIABLES:
        if var.object_type == prefix and var.property in properties:
            scoped.setdefault(var.name.split(".", 1)[1], properties[var.property])
    variables: dict[str, Any] = dict(properties)
    variables[prefix] = scoped
    return variables
