"""
normalizers/fhir_path.py
------------------------
ClaimBridge — Blue Button Consent Broker — FHIR Tree Accessors
--------------------------------------------------------------
Null-safe helpers shared by the claim normalizers.  Blue Button resources
are deeply nested JSON with inconsistent optionality; every helper here
returns a defined default instead of raising when an intermediate object is
missing or has an unexpected type.

Public API:
    get_path()                  Optional path accessor over dict/list trees.
    as_list()                   Coerce a value to a list (non-lists → []).
    codings()                   CodeableConcept → [{"code", "display"}].
    find_extension()            First extension whose url matches.
    extension_value()           Typed value of the first matching extension.
    index_by_sequence()         {sequence: item} arena for cross references.
    resolve_sequences()         Look sequence numbers up, dropping misses.
    find_adjudication_amount()  Amount of the first adjudication matching a keyword.
    summarize_adjudications()   Standard financial summary for one line item.
    add_summaries()             Element-wise sum of summaries.
    flatten_adjudications()     Financial / denial / unknown breakdown rows.
    denial_reasons()            Denial rows only, UI shape.
    summarize_totals()          claim.total[] keyed by category code.
    summarize_payment()         claim.payment flattened.
    benefit_balances()          claim.benefitBalance[] flattened.
    eob_category()              First recognised eob-type code of a resource.
    ensure_eob()                Guard used by every claim normalizer.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from errors import InvalidClaimShapeError
from schemas import CLAIM_CATEGORIES, EOB_TYPE_SYSTEM

BB_VARIABLES = "https://bluebutton.cms.gov/resources/variables/"
DEFAULT_CURRENCY = "USD"

UNKNOWN = "Unknown"
NOT_PROVIDED = "Not provided"

PathType = Union[str, Sequence[Union[str, int]]]

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _segments(path: PathType) -> List[Union[str, int]]:
    if isinstance(path, str):
        parts: List[Union[str, int]] = []
        for raw in path.split("."):
            parts.append(int(raw) if raw.isdigit() else raw)
        return parts
    return list(path)


def get_path(tree: Any, path: PathType, default: Any = None) -> Any:
    """
    Walk *tree* along *path* and return the value found, or *default*.

    ``path`` is either a dotted string (``"type.0.coding.0.code"``; numeric
    segments index lists) or a sequence of keys/indices.  A missing key, an
    out-of-range index, a segment applied to the wrong container type, or a
    ``None`` value anywhere along the way all yield *default*.
    """
    current = tree
    for seg in _segments(path):
        if isinstance(seg, int):
            if not isinstance(current, list) or not -len(current) <= seg < len(current):
                return default
            current = current[seg]
        else:
            if not isinstance(current, Mapping):
                return default
            current = current.get(seg)
        if current is None:
            return default
    return current


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def codings(concept: Any) -> List[Dict[str, Any]]:
    """Return ``[{"code", "display"}]`` for every coding of a CodeableConcept."""
    return [
        {"code": get_path(c, "code"), "display": get_path(c, "display")}
        for c in as_list(get_path(concept, "coding"))
    ]


def find_extension(extensions: Any, url: str) -> Optional[Dict[str, Any]]:
    """First extension in *extensions* whose ``url`` equals *url* (linear scan)."""
    for ext in as_list(extensions):
        if isinstance(ext, Mapping) and ext.get("url") == url:
            return ext
    return None


_EXTENSION_VALUE_PATHS = (
    "valueCoding.display",
    "valueCoding.code",
    "valueIdentifier.value",
    "valueDate",
    "valueQuantity.value",
    "valueMoney.value",
    "valueString",
    "valueBoolean",
)


def extension_value(extensions: Any, url: str, path: Optional[str] = None, default: Any = None) -> Any:
    """
    Value of the first extension matching *url*.

    With *path* the value is read from exactly that sub-path; otherwise the
    first present of the common ``value[x]`` shapes is returned.
    """
    ext = find_extension(extensions, url)
    if ext is None:
        return default
    if path is not None:
        return get_path(ext, path, default)
    for candidate in _EXTENSION_VALUE_PATHS:
        value = get_path(ext, candidate)
        if value is not None:
            return value
    return default


def bb_extension(extensions: Any, variable: str, path: Optional[str] = None, default: Any = None) -> Any:
    """``extension_value`` for a Blue Button variable name (``carr_num`` …)."""
    return extension_value(extensions, BB_VARIABLES + variable, path, default)


# ---------------------------------------------------------------------------
# Sequence cross-references
# ---------------------------------------------------------------------------

def index_by_sequence(items: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    """Build the ``{sequence: item}`` arena once per claim; first declaration wins."""
    index: Dict[Any, Dict[str, Any]] = {}
    for item in items:
        seq = item.get("sequence")
        if _hashable(seq) and seq not in index:
            index[seq] = item
    return index


def resolve_sequences(index: Mapping[Any, Dict[str, Any]], sequences: Any) -> List[Dict[str, Any]]:
    """Embed the items referenced by *sequences*; unresolved numbers are dropped."""
    return [index[seq] for seq in as_list(sequences) if _hashable(seq) and seq in index]


def _hashable(value: Any) -> bool:
    return isinstance(value, (int, str))


# ---------------------------------------------------------------------------
# Adjudication / financial aggregation
# ---------------------------------------------------------------------------

# Summary field → keyword searched for in adjudication category codes.
FINANCIAL_KEYWORDS = (
    ("submittedAmount", "submitted"),
    ("allowedAmount", "eligible"),
    ("paidToProvider", "paidtoprovider"),
    ("paidToPatient", "paidtopatient"),
    ("nonCoveredAmount", "noncovered"),
    ("deductible", "deductible"),
    ("coinsurance", "coinsurance"),
)


def _squash(text: Any) -> str:
    return _NON_ALNUM.sub("", str(text).lower()) if text is not None else ""


def _category_matches(adjudication: Any, keyword: str) -> bool:
    needle = _squash(keyword)
    for coding in as_list(get_path(adjudication, "category.coding")):
        code = get_path(coding, "code")
        display = get_path(coding, "display")
        if code is not None and keyword.lower() in str(code).lower():
            return True
        if needle and needle in _squash(display):
            return True
    return False


def _number(value: Any, default: float = 0) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def find_adjudication_amount(adjudications: Any, keyword: str) -> Any:
    """
    ``amount.value`` of the first adjudication whose category coding code
    contains *keyword* (case-insensitive); the display text is also checked
    with spaces and punctuation removed.  Defaults to ``0``.
    """
    for adj in as_list(adjudications):
        if _category_matches(adj, keyword):
            return _number(get_path(adj, "amount.value"))
    return 0


def summarize_adjudications(adjudications: Any) -> Dict[str, Any]:
    summary = {
        field: find_adjudication_amount(adjudications, keyword)
        for field, keyword in FINANCIAL_KEYWORDS
    }
    summary["coveredAmount"] = summary["submittedAmount"] - summary["nonCoveredAmount"]
    return summary


def add_summaries(summaries: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Element-wise sum of line-item summaries (all fields 0 when empty)."""
    fields = [f for f, _ in FINANCIAL_KEYWORDS] + ["coveredAmount"]
    total: Dict[str, Any] = {f: 0 for f in fields}
    for summary in summaries:
        for f in fields:
            total[f] = total[f] + summary.get(f, 0)
    return total


def flatten_adjudications(adjudications: Any) -> List[Dict[str, Any]]:
    """
    One ``financial`` row per category coding and one ``denial`` row per
    reason coding; an adjudication with neither yields one ``unknown`` row.
    """
    rows: List[Dict[str, Any]] = []
    for adj in as_list(adjudications):
        amount = _number(get_path(adj, "amount.value"), default=None)
        currency = get_path(adj, "amount.currency", DEFAULT_CURRENCY)
        produced = False
        for coding in as_list(get_path(adj, "category.coding")):
            rows.append({
                "type": "financial",
                "code": get_path(coding, "code"),
                "system": get_path(coding, "system"),
                "label": get_path(coding, "display") or get_path(coding, "code"),
                "amount": amount,
                "currency": currency,
            })
            produced = True
        for coding in as_list(get_path(adj, "reason.coding")):
            rows.append({
                "type": "denial",
                "code": get_path(coding, "code"),
                "system": get_path(coding, "system"),
                "label": get_path(coding, "display") or "Denial Reason",
                "amount": amount,
                "currency": currency,
            })
            produced = True
        if not produced:
            rows.append({
                "type": "unknown",
                "label": "Unknown adjudication",
                "amount": amount,
                "currency": currency,
            })
    return rows


def denial_reasons(breakdown: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"code": row.get("code"), "label": row.get("label"), "system": row.get("system")}
        for row in breakdown
        if row.get("type") == "denial"
    ]


def summarize_totals(claim: Any) -> Dict[str, Dict[str, Any]]:
    """``claim.total[]`` keyed by lowercased category code (``"other"`` if absent)."""
    totals: Dict[str, Dict[str, Any]] = {}
    for total in as_list(get_path(claim, "total")):
        key = str(get_path(total, "category.coding.0.code", "other")).lower()
        totals[key] = {
            "label": get_path(total, "category.coding.0.display", key),
            "amount": _number(get_path(total, "amount.value"), default=None),
            "currency": get_path(total, "amount.currency", DEFAULT_CURRENCY),
        }
    return totals


def summarize_payment(claim: Any) -> Dict[str, Any]:
    return {
        "amount": _number(get_path(claim, "payment.amount.value")),
        "currency": get_path(claim, "payment.amount.currency", DEFAULT_CURRENCY),
        "date": get_path(claim, "payment.date") or get_path(claim, "created"),
        "method": get_path(claim, "payment.type.coding.0.display", UNKNOWN),
    }


def benefit_balances(claim: Any) -> List[Dict[str, Any]]:
    balances = []
    for balance in as_list(get_path(claim, "benefitBalance")):
        financials = []
        for fin in as_list(get_path(balance, "financial")):
            used_money = get_path(fin, "usedMoney.value")
            financials.append({
                "type": get_path(fin, "type.coding.0.display") or get_path(fin, "type.coding.0.code"),
                "typeSystem": get_path(fin, "type.coding.0.system"),
                "amount": used_money if used_money is not None else get_path(fin, "usedUnsignedInt"),
                "currency": get_path(fin, "usedMoney.currency", DEFAULT_CURRENCY),
            })
        balances.append({
            "category": get_path(balance, "category.coding.0.display")
            or get_path(balance, "category.coding.0.code"),
            "financials": financials,
        })
    return balances


# ---------------------------------------------------------------------------
# Resource kind / category guards
# ---------------------------------------------------------------------------

def eob_category(resource: Any) -> Optional[str]:
    """
    Category named by the first eob-type coding whose code is recognised.

    Codings from other systems and unrecognised codes are skipped; returns
    None for non-EOB resources or when no coding qualifies.
    """
    if get_path(resource, "resourceType") != "ExplanationOfBenefit":
        return None
    for coding in as_list(get_path(resource, "type.coding")):
        if get_path(coding, "system") == EOB_TYPE_SYSTEM and get_path(coding, "code") in CLAIM_CATEGORIES:
            return coding["code"]
    return None


def ensure_eob(resource: Any, category: str) -> Dict[str, Any]:
    """
    Return *resource* if it is an ExplanationOfBenefit of *category*.

    Raises:
        InvalidClaimShapeError: wrong resource kind, or the eob-type codings
                                name a different category.
    """
    resource_id = get_path(resource, "id")
    if not isinstance(resource, Mapping) or resource.get("resourceType") != "ExplanationOfBenefit":
        raise InvalidClaimShapeError(
            f"Expected ExplanationOfBenefit, got {get_path(resource, 'resourceType')!r}.",
            resource_id=resource_id,
        )
    found = eob_category(resource)
    if found is not None and found != category:
        raise InvalidClaimShapeError(
            f"Claim is coded {found}, not {category}.", resource_id=resource_id,
        )
    return resource
