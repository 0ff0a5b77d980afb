"""
normalizers — per-category ExplanationOfBenefit flatteners.

NORMALIZERS maps each claim category to its pure ``resource -> dict``
function; the classifier dispatches through it.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from normalizers.carrier import normalize_carrier
from normalizers.inpatient import normalize_inpatient
from normalizers.outpatient import normalize_outpatient
from normalizers.patient import normalize_patient
from normalizers.pde import normalize_pde
from schemas import CARRIER, INPATIENT, OUTPATIENT, PDE

NORMALIZERS = {
    CARRIER: normalize_carrier,
    INPATIENT: normalize_inpatient,
    OUTPATIENT: normalize_outpatient,
    PDE: normalize_pde,
}

__all__ = [
    "NORMALIZERS",
    "normalize_carrier",
    "normalize_inpatient",
    "normalize_outpatient",
    "normalize_patient",
    "normalize_pde",
]
