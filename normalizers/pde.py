"""
normalizers/pde.py
------------------
ClaimBridge — Blue Button Consent Broker — Part D Event Normalizer
------------------------------------------------------------------
Flattens a PDE (prescription drug event) ExplanationOfBenefit.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from typing import Any, Dict

from normalizers.fhir_path import (
    add_summaries,
    as_list,
    ensure_eob,
    get_path,
    index_by_sequence,
    resolve_sequences,
    summarize_adjudications,
    summarize_payment,
    summarize_totals,
)
from schemas import PDE

NDC_SYSTEM = "http://hl7.org/fhir/sid/ndc"
NA = "NA"


def _billable_period(claim: Dict[str, Any]):
    start = get_path(claim, "billablePeriod.start")
    end = get_path(claim, "billablePeriod.end")
    return f"{start} to {end}" if start and end else None


def _facility(claim: Dict[str, Any]):
    name = get_path(claim, "facility.display")
    if not name:
        return None
    return f"{name} ({get_path(claim, 'facility.identifier.value', '')})"


def _ndc(item: Dict[str, Any]):
    for coding in as_list(get_path(item, "productOrService.coding")):
        if get_path(coding, "system") == NDC_SYSTEM:
            return get_path(coding, "code")
    return None


def normalize_pde(resource: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize one PDE ExplanationOfBenefit.

    Raises:
        InvalidClaimShapeError: *resource* is not a PDE EOB.
    """
    claim = ensure_eob(resource, PDE)

    care_team = [
        {
            "sequence": get_path(team, "sequence"),
            "provider": get_path(team, "provider.display"),
            "role": get_path(team, "role.coding.0.display"),
            "qualification": get_path(team, "qualification.coding.0.display"),
            "identifier": get_path(team, "provider.identifier.value"),
        }
        for team in as_list(claim.get("careTeam"))
    ]
    care_team_index = index_by_sequence(care_team)

    items = []
    for item in as_list(claim.get("item")):
        adjudications = as_list(get_path(item, "adjudication"))
        items.append({
            "id": get_path(item, "sequence"),
            "productOrService": get_path(item, "productOrService.coding.0.display"),
            "productCode": get_path(item, "productOrService.coding.0.code"),
            "ndc": _ndc(item),
            "quantity": get_path(item, "quantity.value"),
            "servicedDate": get_path(item, "servicedDate"),
            "careTeam": resolve_sequences(care_team_index, get_path(item, "careTeamSequence")),
            "financials": summarize_adjudications(adjudications),
        })

    return {
        "id": claim.get("id"),
        "lastUpdated": get_path(claim, "meta.lastUpdated"),
        "status": claim.get("status"),
        "created": claim.get("created"),
        "outcome": claim.get("outcome"),
        "billablePeriod": _billable_period(claim),
        "facility": _facility(claim),
        "careTeam": care_team,
        "infoArray": [
            {
                "id": get_path(info, "sequence"),
                "category": get_path(info, "category.coding.0.display", NA),
                "code": get_path(info, "code.coding.0.display", NA),
            }
            for info in as_list(claim.get("supportingInfo"))
        ],
        "item": items,
        "financials": {
            "summary": add_summaries(i["financials"] for i in items),
            "totals": summarize_totals(claim),
            "payment": summarize_payment(claim),
        },
        "patient": get_path(claim, "patient.reference"),
    }
