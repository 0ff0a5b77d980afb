"""
normalizers/carrier.py
----------------------
ClaimBridge — Blue Button Consent Broker — Carrier (Part B) Normalizer
----------------------------------------------------------------------
Flattens a CARRIER ExplanationOfBenefit into the professional-claim record
the UI renders.  Diagnoses and care-team members are declared once per
claim and embedded into each line item through its sequence lists; line
item financials are aggregated from adjudication categories and summed into
the claim-level summary.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from typing import Any, Dict, List

from normalizers.fhir_path import (
    NOT_PROVIDED,
    UNKNOWN,
    add_summaries,
    as_list,
    bb_extension,
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
from schemas import CARRIER

NDC_SYSTEM = "http://hl7.org/fhir/sid/ndc"
_FAR_FUTURE = "9999-12-31"


def _diagnoses(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    diagnoses = []
    for d in as_list(claim.get("diagnosis")):
        description = get_path(d, "diagnosisCodeableConcept.coding.0.display", NOT_PROVIDED)
        diagnoses.append({
            "sequence": get_path(d, "sequence"),
            "code": get_path(d, "diagnosisCodeableConcept.coding.0.code", UNKNOWN),
            "description": str(description).replace('"', ""),
            "type": get_path(d, "type.0.coding.0.display", UNKNOWN),
        })
    return diagnoses


def _care_team(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    members = []
    for ct in as_list(claim.get("careTeam")):
        specialty = None
        for coding in as_list(get_path(ct, "qualification.coding")):
            if "prvdr_spclty" in str(get_path(coding, "system", "")):
                specialty = get_path(coding, "display")
                break
        members.append({
            "sequence": get_path(ct, "sequence"),
            "name": get_path(ct, "provider.display", NOT_PROVIDED),
            "npi": get_path(ct, "provider.identifier.value"),
            "role": get_path(ct, "role.coding.0.display", UNKNOWN),
            "isResponsible": bool(get_path(ct, "responsible", False)),
            "specialty": specialty,
            "participation": bb_extension(get_path(ct, "extension"), "prtcptng_ind_cd", "valueCoding.display"),
        })
    return members


def _line_item(item: Dict[str, Any], diagnosis_index, care_team_index) -> Dict[str, Any]:
    ext = get_path(item, "extension")
    location_ext = get_path(item, "locationCodeableConcept.extension")
    adjudications = as_list(get_path(item, "adjudication"))
    breakdown = flatten_adjudications(adjudications)
    return {
        "lineNumber": get_path(item, "sequence"),
        "serviceDate": get_path(item, "servicedPeriod.start") or get_path(item, "servicedDate"),
        "procedureCode": get_path(item, "productOrService.coding.0.code"),
        "procedureDescription": get_path(item, "productOrService.coding.0.display"),
        "modifiers": [
            {"code": get_path(m, "coding.0.code"), "description": get_path(m, "coding.0.display")}
            for m in as_list(get_path(item, "modifier"))
        ],
        "diagnosisPointers": as_list(get_path(item, "diagnosisSequence")),
        "placeOfService": {
            "code": get_path(item, "locationCodeableConcept.coding.0.code"),
            "description": get_path(item, "locationCodeableConcept.coding.0.display"),
            "state": bb_extension(location_ext, "prvdr_state_cd", "valueCoding.code"),
            "zip": bb_extension(location_ext, "prvdr_zip", "valueCoding.code"),
        },
        "quantity": get_path(item, "quantity.value"),
        "ndcCode": extension_value(
            get_path(item, "productOrService.extension"), NDC_SYSTEM, "valueCoding.code",
        ),
        "extensions": {
            "betosCode": bb_extension(ext, "betos_cd", "valueCoding.display"),
            "processingIndicator": bb_extension(ext, "line_prcsg_ind_cd", "valueCoding.display"),
            "cliaLabNumber": bb_extension(ext, "carr_line_clia_lab_num", "valueIdentifier.value"),
        },
        "diagnoses": resolve_sequences(diagnosis_index, get_path(item, "diagnosisSequence")),
        "careTeam": resolve_sequences(care_team_index, get_path(item, "careTeamSequence")),
        "financials": {
            "summary": summarize_adjudications(adjudications),
            "breakdown": breakdown,
        },
        "denialReasons": denial_reasons(breakdown),
    }


def _test_results(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    results = []
    for obs in as_list(claim.get("contained")):
        if get_path(obs, "resourceType") != "Observation":
            continue
        value = get_path(obs, "valueQuantity.value")
        results.append({
            "testId": get_path(obs, "id"),
            "testName": get_path(obs, "code.coding.0.display", "Unknown Test"),
            "code": get_path(obs, "code.coding.0.code"),
            "result": value if value is not None else get_path(obs, "valueString"),
            "unit": get_path(obs, "valueQuantity.unit"),
        })
    return results


def _received_date(claim: Dict[str, Any]):
    for info in as_list(claim.get("supportingInfo")):
        if get_path(info, "category.coding.0.code") == "clmrecvddate":
            return get_path(info, "timingDate")
    return None


def normalize_carrier(resource: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize one CARRIER ExplanationOfBenefit.

    Line items are ordered by service date; items without one sort last.

    Raises:
        InvalidClaimShapeError: *resource* is not a CARRIER EOB.
    """
    claim = ensure_eob(resource, CARRIER)

    diagnoses = _diagnoses(claim)
    care_team = _care_team(claim)
    diagnosis_index = index_by_sequence(diagnoses)
    care_team_index = index_by_sequence(care_team)

    line_items = [
        _line_item(item, diagnosis_index, care_team_index)
        for item in as_list(claim.get("item"))
        if isinstance(item, dict)
    ]
    line_items.sort(key=lambda li: str(li["serviceDate"] or _FAR_FUTURE))

    ext = claim.get("extension")
    assignment = bb_extension(ext, "asgmntcd", "valueCoding.display")

    return {
        "claimInfo": {
            "id": claim.get("id"),
            "type": get_path(claim, "type.coding.0.display", "Professional Claim"),
            "status": claim.get("status"),
            "outcome": claim.get("outcome"),
            "receivedDate": _received_date(claim),
            "servicePeriod": {
                "start": get_path(claim, "billablePeriod.start"),
                "end": get_path(claim, "billablePeriod.end"),
            },
            "extensions": {
                "carrierNumber": bb_extension(ext, "carr_num", "valueIdentifier.value"),
                "claimControlNumber": bb_extension(ext, "carr_clm_cntl_num", "valueIdentifier.value"),
                "assignmentCode": assignment,
                "claimEntryCode": bb_extension(ext, "carr_clm_entry_cd", "valueCoding.display"),
            },
        },
        "patient": {
            "id": get_path(claim, "patient.reference"),
            "medicareId": get_path(claim, "patient.identifier.value"),
        },
        "providers": {"allMembers": care_team},
        "insurance": {
            "type": "Medicare Part B",
            "payer": {"id": get_path(claim, "insurer.identifier.value"), "name": "Medicare"},
            "isAssigned": assignment == "Assigned claim",
        },
        "diagnoses": diagnoses,
        "lineItems": line_items,
        "financials": {
            "summary": add_summaries(li["financials"]["summary"] for li in line_items),
            "totals": summarize_totals(claim),
            "payment": summarize_payment(claim),
        },
        "testResults": _test_results(claim),
        "meta": {
            "lastUpdated": get_path(claim, "meta.lastUpdated"),
            "profile": get_path(claim, "meta.profile.0"),
        },
    }
