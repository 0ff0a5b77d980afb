"""
normalizers/patient.py
----------------------
Flatten a Blue Button Patient resource into the demographics card shown next
to the claims.  Every absent field reads ``"N/A"``.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

from typing import Any, Dict

from normalizers.fhir_path import bb_extension, get_path

NA = "N/A"


def normalize_patient(patient: Dict[str, Any]) -> Dict[str, Any]:
    deceased_at = get_path(patient, "deceasedDateTime")
    deceased = bool(deceased_at) or get_path(patient, "deceasedBoolean") is True
    return {
        "firstname": get_path(patient, "name.0.given.0", NA),
        "middlename": get_path(patient, "name.0.given.1", NA),
        "lastname": get_path(patient, "name.0.family", NA),
        "birthDate": get_path(patient, "birthDate", NA),
        "gender": get_path(patient, "gender", NA),
        "postalCode": get_path(patient, "address.0.postalCode", NA),
        "state": get_path(patient, "address.0.state", NA),
        "race": bb_extension(get_path(patient, "extension"), "race", "valueCoding.display", NA),
        "deceased": "Yes" if deceased else "No",
        "deceasedDate": deceased_at or NA,
        "id": get_path(patient, "id", NA),
    }
