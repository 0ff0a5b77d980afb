"""
normalizers/outpatient.py
-------------------------
ClaimBridge — Blue Button Consent Broker — Outpatient Normalizer
---------------------------------------------------------------
Flattens an OUTPATIENT ExplanationOfBenefit.  The billing provider is the
contained resource referenced by ``provider.reference`` (``#org-1`` style).

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from normalizers.fhir_path import (
    NOT_PROVIDED,
    UNKNOWN,
    add_summaries,
    as_list,
    bb_extension,
    benefit_balances,
    denial_reasons,
    ensure_eob,
    extension_value,
    flatten_adjudications,
    get_path,
    index_by_sequence,
    resolve_sequences,
    summarize_adjudications,
    summarize_payment,
    summarize_totals,
)
from schemas import OUTPATIENT

NDC_SYSTEM = "http://hl7.org/fhir/sid/ndc"
PROVIDER_RESOURCE_TYPES = ("Organization", "Practitioner", "PractitionerRole")


def _contained_provider(claim: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    ref = get_path(claim, "provider.reference")
    if not isinstance(ref, str):
        return None
    target = ref.lstrip("#")
    for res in as_list(claim.get("contained")):
        if get_path(res, "id") == target and get_path(res, "resourceType") in PROVIDER_RESOURCE_TYPES:
            return res
    return None


def _billing_provider(provider: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if provider is None:
        return None
    npi = tax_id = None
    for ident in as_list(provider.get("identifier")):
        type_codes = [get_path(c, "code") for c in as_list(get_path(ident, "type.coding"))]
        if npi is None and ("us-npi" in str(get_path(ident, "system", "")) or "npi" in type_codes):
            npi = get_path(ident, "value")
        if tax_id is None and "PRN" in type_codes:
            tax_id = get_path(ident, "value")
    name = provider.get("name")
    if not isinstance(name, str):
        name = get_path(provider, "display", UNKNOWN)
    return {
        "name": name,
        "npi": npi,
        "taxId": tax_id,
        "type": provider.get("resourceType"),
        "active": provider.get("active"),
    }


def _diagnoses(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "sequence": get_path(d, "sequence"),
            "code": get_path(d, "diagnosisCodeableConcept.coding.0.code", UNKNOWN),
            "description": get_path(d, "diagnosisCodeableConcept.coding.0.display", NOT_PROVIDED),
            "type": get_path(d, "type.0.coding.0.display", UNKNOWN),
        }
        for d in as_list(claim.get("diagnosis"))
    ]


def _care_team(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "sequence": get_path(ct, "sequence"),
            "name": get_path(ct, "provider.display", UNKNOWN),
            "npi": get_path(ct, "provider.identifier.value"),
            "role": get_path(ct, "role.coding.0.display"),
            "specialty": get_path(ct, "qualification.coding.0.display"),
        }
        for ct in as_list(claim.get("careTeam"))
    ]


def _line_items(claim: Dict[str, Any], diagnosis_index, care_team_index) -> List[Dict[str, Any]]:
    items = []
    for item in as_list(claim.get("item")):
        ext = get_path(item, "extension")
        adjudications = as_list(get_path(item, "adjudication"))
        breakdown = flatten_adjudications(adjudications)
        items.append({
            "lineNumber": get_path(item, "sequence"),
            "serviceDate": get_path(item, "servicedDate") or get_path(item, "servicedPeriod.start"),
            "serviceCode": get_path(item, "productOrService.coding.0.code"),
            "serviceDescription": get_path(item, "productOrService.coding.0.display"),
            "ndcCode": extension_value(ext, NDC_SYSTEM),
            "quantity": get_path(item, "quantity.value"),
            "revenueCenter": get_path(item, "revenue.coding.0.code"),
            "unitCount": bb_extension(ext, "rev_cntr_unit_cnt"),
            "revenueCenterStatus": bb_extension(ext, "rev_cntr_stus_ind_cd"),
            "diagnoses": resolve_sequences(diagnosis_index, get_path(item, "diagnosisSequence")),
            "providers": resolve_sequences(care_team_index, get_path(item, "careTeamSequence")),
            "financials": {
                "summary": summarize_adjudications(adjudications),
                "breakdown": breakdown,
            },
            "denialReasons": denial_reasons(breakdown),
        })
    return items


def normalize_outpatient(resource: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize one OUTPATIENT ExplanationOfBenefit.

    Raises:
        InvalidClaimShapeError: *resource* is not an OUTPATIENT EOB.
    """
    claim = ensure_eob(resource, OUTPATIENT)

    diagnoses = _diagnoses(claim)
    care_team = _care_team(claim)
    line_items = _line_items(claim, index_by_sequence(diagnoses), index_by_sequence(care_team))

    return {
        "claimInfo": {
            "id": claim.get("id"),
            "type": get_path(claim, "type.coding.0.display", "Outpatient Claim"),
            "status": claim.get("status"),
            "outcome": claim.get("outcome"),
            "servicePeriod": {
                "start": get_path(claim, "billablePeriod.start"),
                "end": get_path(claim, "billablePeriod.end"),
            },
            "receivedDate": get_path(claim, "supportingInfo.0.timingDate"),
            "controlNumber": bb_extension(claim.get("extension"), "fi_doc_clm_cntl_num"),
        },
        "patient": {"reference": get_path(claim, "patient.reference")},
        "providers": {
            "billingProvider": _billing_provider(_contained_provider(claim)),
            "careTeam": care_team,
        },
        "insurance": {
            "payer": get_path(claim, "insurer.identifier.value", "CMS"),
            "coverage": get_path(claim, "insurance.0.coverage.reference"),
        },
        "diagnoses": diagnoses,
        "procedures": [
            {
                "sequence": get_path(p, "sequence"),
                "code": get_path(p, "procedureCodeableConcept.coding.0.code"),
                "description": get_path(p, "procedureCodeableConcept.coding.0.display"),
                "date": get_path(p, "date"),
            }
            for p in as_list(claim.get("procedure"))
        ],
        "lineItems": line_items,
        "financials": {
            "summary": add_summaries(li["financials"]["summary"] for li in line_items),
            "totals": summarize_totals(claim),
            "payment": summarize_payment(claim),
            "benefitBalance": benefit_balances(claim),
        },
        "meta": {
            "lastUpdated": get_path(claim, "meta.lastUpdated"),
            "profile": get_path(claim, "meta.profile.0"),
            "fhirVersion": "R4",
        },
    }
