"""
normalizers/inpatient.py
------------------------
ClaimBridge — Blue Button Consent Broker — Inpatient (Part A) Normalizer
------------------------------------------------------------------------
Flattens an INPATIENT ExplanationOfBenefit: facility organization from the
contained resources, clinical detail (diagnoses with present-on-admission
flag, procedures, DRG, discharge status) and revenue-center line items with
adjudication financials.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from normalizers.fhir_path import (
    UNKNOWN,
    add_summaries,
    as_list,
    bb_extension,
    benefit_balances,
    ensure_eob,
    flatten_adjudications,
    get_path,
    index_by_sequence,
    resolve_sequences,
    summarize_adjudications,
    summarize_payment,
    summarize_totals,
)
from schemas import INPATIENT

# supportingInfo category displays that surface as first-class fields.
PRIMARY_PAYER_CATEGORY = "NCH Primary Payer Code (if not Medicare)"
DISCHARGE_STATUS_CATEGORY = "Discharge Status"
DRG_CATEGORY = "Claim Diagnosis Related Group Code (or MS-DRG Code)"
BLOOD_PINTS_CATEGORY = "NCH Blood Pints Furnished Quantity"

_CLAIM_EXTENSIONS = (
    ("claimClass", "nch_near_line_rec_ident_cd", "Part A institutional claim record type"),
    ("actionCode", "fi_clm_actn_cd", "Claim action code"),
    ("nonPaymentReason", "clm_mdcr_non_pmt_rsn_cd", "Reason for Medicare non-payment"),
    ("imeAmount", "ime_op_clm_val_amt", "Indirect Medical Education amount"),
    ("dshAmount", "dsh_op_clm_val_amt", "Disproportionate Share Hospital amount"),
)


def _diagnoses(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "sequence": get_path(d, "sequence"),
            "code": get_path(d, "diagnosisCodeableConcept.coding.0.code"),
            "system": get_path(d, "diagnosisCodeableConcept.coding.0.system"),
            "description": get_path(d, "diagnosisCodeableConcept.coding.0.display"),
            "type": get_path(d, "type.0.coding.0.display", UNKNOWN),
            "typeCode": get_path(d, "type.0.coding.0.code"),
            "presentOnAdmission": bb_extension(get_path(d, "extension"), "clm_poa_ind_sw2"),
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
            "roleCode": get_path(ct, "role.coding.0.code"),
            "specialty": get_path(ct, "qualification.coding.0.display"),
            "specialtyCode": get_path(ct, "qualification.coding.0.code"),
        }
        for ct in as_list(claim.get("careTeam"))
    ]


def _procedures(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    procedures = []
    for p in as_list(claim.get("procedure")):
        date = get_path(p, "date")
        procedures.append({
            "sequence": get_path(p, "sequence"),
            "code": get_path(p, "procedureCodeableConcept.coding.0.code"),
            "system": get_path(p, "procedureCodeableConcept.coding.0.system"),
            "description": get_path(p, "procedureCodeableConcept.coding.0.display"),
            # dateTime → calendar date
            "date": str(date)[:10] if date else None,
        })
    return procedures


def _supporting_info(claim: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = []
    for info in as_list(claim.get("supportingInfo")):
        value = get_path(info, "timingDate")
        if value is None:
            value = get_path(info, "valueQuantity.value")
        if value is None:
            value = get_path(info, "valueString")
        if value is None:
            value = get_path(info, "code.text")
        rows.append({
            "sequence": get_path(info, "sequence"),
            "category": get_path(info, "category.coding.0.display") or get_path(info, "category.coding.0.code"),
            "code": get_path(info, "code.coding.0.display") or get_path(info, "code.coding.0.code"),
            "value": value,
            "unit": get_path(info, "valueQuantity.unit"),
        })
    return rows


def _info_field(rows: List[Dict[str, Any]], category: str, field: str) -> Any:
    for row in rows:
        if row["category"] == category:
            return row[field]
    return None


def _identifier_with_code(org: Dict[str, Any], code: str) -> Optional[str]:
    for ident in as_list(org.get("identifier")):
        for coding in as_list(get_path(ident, "type.coding")):
            if get_path(coding, "code") == code:
                return get_path(ident, "value")
    return None


def _provider_organization(claim: Dict[str, Any]) -> Dict[str, Any]:
    """Prefer a contained Organization carrying an NPI or PRN identifier."""
    organizations = [
        c for c in as_list(claim.get("contained"))
        if get_path(c, "resourceType") == "Organization"
    ]
    chosen: Dict[str, Any] = {}
    for org in organizations:
        if _identifier_with_code(org, "npi") or _identifier_with_code(org, "PRN"):
            chosen = org
            break
    else:
        if organizations:
            chosen = organizations[0]
    return {
        "name": chosen.get("name"),
        "npi": _identifier_with_code(chosen, "npi"),
        "taxId": _identifier_with_code(chosen, "PRN"),
    }


def _line_items(claim: Dict[str, Any], diagnosis_index, care_team_index) -> List[Dict[str, Any]]:
    items = []
    for item in as_list(claim.get("item")):
        adjudications = as_list(get_path(item, "adjudication"))
        items.append({
            "lineNumber": get_path(item, "sequence"),
            "serviceCode": get_path(item, "productOrService.coding.0.code"),
            "serviceDescription": get_path(item, "productOrService.coding.0.display"),
            "revenueCode": get_path(item, "revenue.coding.0.code"),
            "revenueDescription": get_path(item, "revenue.coding.0.display"),
            "location": get_path(item, "locationAddress.state"),
            "quantity": get_path(item, "quantity.value"),
            "unit": get_path(item, "quantity.unit"),
            "modifiers": [
                {"code": get_path(m, "coding.0.code"), "system": get_path(m, "coding.0.system")}
                for m in as_list(get_path(item, "modifier"))
            ],
            "diagnoses": resolve_sequences(diagnosis_index, get_path(item, "diagnosisSequence")),
            "providers": resolve_sequences(care_team_index, get_path(item, "careTeamSequence")),
            "financials": {
                "summary": summarize_adjudications(adjudications),
                "breakdown": flatten_adjudications(adjudications),
            },
        })
    return items


def normalize_inpatient(resource: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize one INPATIENT ExplanationOfBenefit.

    Raises:
        InvalidClaimShapeError: *resource* is not an INPATIENT EOB.
    """
    claim = ensure_eob(resource, INPATIENT)

    diagnoses = _diagnoses(claim)
    care_team = _care_team(claim)
    supporting = _supporting_info(claim)
    line_items = _line_items(claim, index_by_sequence(diagnoses), index_by_sequence(care_team))
    ext = claim.get("extension")

    return {
        "metadata": {
            "resourceType": claim.get("resourceType"),
            "lastUpdated": get_path(claim, "meta.lastUpdated"),
            "profiles": as_list(get_path(claim, "meta.profile")),
            "fhirVersion": "R4",
        },
        "claim": {
            "id": claim.get("id"),
            "status": claim.get("status"),
            "type": get_path(claim, "type.coding.0.display"),
            "typeCode": get_path(claim, "type.coding.0.code"),
            "subtype": get_path(claim, "subType.coding.0.display"),
            "subtypeCode": get_path(claim, "subType.coding.0.code"),
            "use": claim.get("use"),
            "outcome": claim.get("outcome"),
            "created": claim.get("created"),
            "billablePeriod": {
                "start": get_path(claim, "billablePeriod.start"),
                "end": get_path(claim, "billablePeriod.end"),
                "billingCode": bb_extension(get_path(claim, "billablePeriod.extension"), "claim_query_cd"),
            },
            "controlNumber": bb_extension(ext, "fi_doc_clm_cntl_num"),
            "processingDate": bb_extension(ext, "fi_clm_proc_dt"),
            "extensions": {
                name: {"value": bb_extension(ext, variable), "description": description}
                for name, variable, description in _CLAIM_EXTENSIONS
            },
        },
        "patient": {
            "reference": get_path(claim, "patient.reference"),
            "memberId": get_path(claim, "identifier.0.value"),
        },
        "provider": {
            "organization": _provider_organization(claim),
            "facilityType": bb_extension(get_path(claim, "facility.extension"), "clm_fac_type_cd"),
        },
        "insurance": {
            "payer": get_path(claim, "insurer.identifier.value") or "CMS",
            "coverage": get_path(claim, "insurance.0.coverage.reference"),
            "primaryPayerCode": _info_field(supporting, PRIMARY_PAYER_CATEGORY, "value"),
        },
        "clinical": {
            "diagnoses": diagnoses,
            "procedures": _procedures(claim),
            "dischargeStatus": _info_field(supporting, DISCHARGE_STATUS_CATEGORY, "code"),
            "drgCode": _info_field(supporting, DRG_CATEGORY, "code"),
            "bloodPints": _info_field(supporting, BLOOD_PINTS_CATEGORY, "value"),
        },
        "financial": {
            "totals": summarize_totals(claim),
            "payment": summarize_payment(claim),
            "benefitBalances": benefit_balances(claim),
            "summary": add_summaries(li["financials"]["summary"] for li in line_items),
            "lineItems": line_items,
        },
        "careTeam": care_team,
        "supportingInformation": supporting,
    }
