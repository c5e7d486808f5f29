"""
identifiers.py
--------------
MTB FHIR Bridge: Identifier Codec
---------------------------------
Derives and validates the stable cross-system correlation keys shared by the
portal and the FHIR repository.

Derived ids embed the patient id so that every id can be checked against the
patient it is submitted for:

    mtb_<patientId>_<timestampMillis>
    followUp_<patientId>_<n>

Conditional URLs address a resource by its (system, value) identifier pair,
never by the server-assigned id:

    DiagnosticReport?identifier=https://cbioportal.org/mtb/|mtb_P1_1620000000000

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import time
from typing import Optional

from errors import InvalidArgument

# Prefix templates, formatted with ``patient_id``.
MTB_PREFIX = "mtb_{patient_id}_"
FOLLOW_UP_PREFIX = "followUp_{patient_id}_"
THERAPY_RECOMMENDATION_PREFIXES = ("{patient_id}_", "mtb_{patient_id}_")


def derive_mtb_id(patient_id: str, issued_at_millis: Optional[int] = None) -> str:
    """
    Return the MTB session id for *patient_id* issued at *issued_at_millis*.

    The id is deterministic so that re-writing the same session revision
    upserts instead of duplicating.  Defaults to the current time.
    """
    if not patient_id:
        raise InvalidArgument("patient_id must not be empty.")
    if issued_at_millis is None:
        issued_at_millis = int(time.time() * 1000)
    if issued_at_millis < 0:
        raise InvalidArgument("issued_at_millis must not be negative.")
    return f"{MTB_PREFIX.format(patient_id=patient_id)}{int(issued_at_millis)}"


def derive_follow_up_id(patient_id: str, seq: int) -> str:
    """Return the follow-up id for the *seq*-th follow-up of *patient_id*."""
    if not patient_id:
        raise InvalidArgument("patient_id must not be empty.")
    if seq < 0:
        raise InvalidArgument("seq must not be negative.")
    return f"{FOLLOW_UP_PREFIX.format(patient_id=patient_id)}{seq}"


def validate_scoped_id(
    value: str,
    patient_id: str,
    expected_prefix_template: str | tuple[str, ...],
) -> bool:
    """
    Check that *value* carries the patient-scoped prefix.

    Args:
        value:                    The id submitted by the caller.
        patient_id:               The patient the request is scoped to.
        expected_prefix_template: One template (or a tuple of alternatives)
                                  containing ``{patient_id}``.

    Returns:
        ``True`` when the prefix matches.

    Raises:
        InvalidArgument: when it does not; forged ids for another patient
                         are rejected before any remote call is made.
    """
    templates = (
        (expected_prefix_template,)
        if isinstance(expected_prefix_template, str)
        else expected_prefix_template
    )
    if not value or not patient_id:
        raise InvalidArgument("Invalid patientId!")
    for template in templates:
        if value.startswith(template.format(patient_id=patient_id)):
            return True
    raise InvalidArgument("Invalid patientId!")


def identifier_token(system: str, value: str) -> str:
    """FHIR token search value ``system|value``."""
    return f"{system}|{value}"


def conditional_url(resource_type: str, system: str, value: str) -> str:
    """Conditional URL matching a resource of *resource_type* by identifier."""
    return f"{resource_type}?identifier={identifier_token(system, value)}"
