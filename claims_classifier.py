"""
claims_classifier.py
--------------------
ClaimBridge — Blue Button Consent Broker — Claims Classifier
------------------------------------------------------------
Buckets the entries of an ExplanationOfBenefit searchset by claim category
and runs each through its category normalizer.

Routing per entry:
  - resource is an ExplanationOfBenefit and the first eob-type coding with
    a recognised code names CARRIER / INPATIENT / OUTPATIENT / PDE
        → normalized into that bucket
  - anything else (other resource kinds, no type coding, unknown codes)
        → OTHER, unmodified
  - normalizer raises InvalidClaimShapeError (or a data-shape TypeError /
    ValueError / AttributeError / KeyError it did not anticipate)
        → entry dropped, warning logged with the resource id

Empty buckets are omitted.  Output order within a bucket follows the bundle.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from errors import InvalidClaimShapeError
from normalizers import NORMALIZERS
from normalizers.fhir_path import eob_category, get_path
from schemas import OTHER_CATEGORY

logger = logging.getLogger(__name__)


def _entries(bundle: Any) -> List[Any]:
    entries = get_path(bundle, "entry")
    if not isinstance(entries, list):
        logger.warning("ClaimsClassifier: bundle has no entry list, nothing classified.")
        return []
    return entries


def _route(entry: Any) -> str:
    category = eob_category(get_path(entry, "resource"))
    return category or OTHER_CATEGORY


def classify_categories(bundle: Any) -> Dict[str, List[Any]]:
    """
    Bucket assignment only: ``{category: [resource id, ...]}``.

    Ids are reported even for entries a normalizer would later reject.
    """
    buckets: Dict[str, List[Any]] = {}
    for entry in _entries(bundle):
        buckets.setdefault(_route(entry), []).append(get_path(entry, "resource.id"))
    return buckets


def classify(bundle: Any) -> Dict[str, List[Dict[str, Any]]]:
    """
    Classify and normalize every entry of *bundle*.

    Args:
        bundle: FHIR searchset Bundle (``{"entry": [{"resource": {...}}]}``).

    Returns:
        Sparse mapping of category → list.  Normalized claims for the four
        claim categories; raw resources (or the raw entry when it has no
        resource) under ``OTHER``.
    """
    buckets: Dict[str, List[Dict[str, Any]]] = {}
    dropped = 0

    for entry in _entries(bundle):
        resource = get_path(entry, "resource")
        category = _route(entry)

        if category == OTHER_CATEGORY:
            buckets.setdefault(OTHER_CATEGORY, []).append(resource if resource is not None else entry)
            continue

        try:
            normalized = NORMALIZERS[category](resource)
        except InvalidClaimShapeError as exc:
            dropped += 1
            logger.warning(
                "ClaimsClassifier: dropped %s claim %s (%s).",
                category, exc.resource_id or get_path(resource, "id", "<no id>"), exc,
            )
            continue
        except (TypeError, ValueError, AttributeError, KeyError) as exc:
            dropped += 1
            wrapped = InvalidClaimShapeError(
                f"{type(exc).__name__} while normalizing", resource_id=get_path(resource, "id"),
            )
            logger.warning(
                "ClaimsClassifier: dropped %s claim %s (%s).",
                category, wrapped.resource_id or "<no id>", wrapped,
            )
            continue

        buckets.setdefault(category, []).append(normalized)

    logger.info(
        "ClaimsClassifier: classified %s (dropped=%d).",
        {k: len(v) for k, v in buckets.items()} or "{}", dropped,
    )
    return buckets
