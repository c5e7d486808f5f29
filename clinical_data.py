"""
clinical_data.py
----------------
MTB FHIR Bridge: Clinical Data Handlers
---------------------------------------
Static registry mapping a cBioPortal clinical attribute id (``AGE``,
``SEX``, ``CANCER_TYPE`` ...) to the handler that encodes its value into an
Observation ``value[x]`` and decodes it back.

The registry is built once at startup from ``Settings`` and passed to the
builders and readers.  Adding a clinical data type means registering one
more handler; nothing in fhir_mapper.py or fhir_reader.py changes.

Public API:
    ClinicalDataHandler     Protocol-style base class (build / read).
    StringHandler           valueString, stored verbatim.
    AgeHandler              valueQuantity in years (UCUM ``a``).
    SexHandler              valueCodeableConcept, administrative gender.
    ClinicalDataRegistry    attributeId → handler; unknown ids raise
                            ``UnsupportedAttribute``.
    default_registry()      Registry with AGE, SEX and the string attributes.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from errors import UnsupportedAttribute
from fhir_definitions import ADMINISTRATIVE_GENDER_SYSTEM, UCUM_SYSTEM, coding

logger = logging.getLogger(__name__)


class ClinicalDataHandler:
    """Encodes one kind of clinical attribute value."""

    def build(self, value: Optional[str]) -> Dict[str, Any]:
        """Return the Observation ``value[x]`` fields for *value*."""
        raise NotImplementedError

    def read(self, observation: Dict[str, Any]) -> Optional[str]:
        """Return the portal value stored in *observation*."""
        raise NotImplementedError


class StringHandler(ClinicalDataHandler):

    def build(self, value: Optional[str]) -> Dict[str, Any]:
        return {"valueString": value} if value is not None else {}

    def read(self, observation: Dict[str, Any]) -> Optional[str]:
        return observation.get("valueString")


class AgeHandler(ClinicalDataHandler):
    """Age at sample collection, in years."""

    def build(self, value: Optional[str]) -> Dict[str, Any]:
        if value is None:
            return {}
        try:
            years = float(value)
        except ValueError:
            logger.warning("clinical_data: non-numeric AGE %r stored as string.", value)
            return {"valueString": value}
        return {
            "valueQuantity": {
                "value":  int(years) if years.is_integer() else years,
                "unit":   "years",
                "system": UCUM_SYSTEM,
                "code":   "a",
            }
        }

    def read(self, observation: Dict[str, Any]) -> Optional[str]:
        quantity = observation.get("valueQuantity")
        if quantity and quantity.get("value") is not None:
            return "%g" % float(quantity["value"])
        return observation.get("valueString")


class SexHandler(ClinicalDataHandler):
    """Portal sex values (``Male``/``Female``/...) as administrative gender."""

    _GENDERS = {"male": "male", "m": "male", "female": "female", "f": "female"}

    def build(self, value: Optional[str]) -> Dict[str, Any]:
        if value is None:
            return {}
        code = self._GENDERS.get(value.strip().lower(), "unknown")
        return {
            "valueCodeableConcept": {
                "coding": [coding(ADMINISTRATIVE_GENDER_SYSTEM, code, code.capitalize())],
                "text":   value,
            }
        }

    def read(self, observation: Dict[str, Any]) -> Optional[str]:
        concept = observation.get("valueCodeableConcept") or {}
        if concept.get("text"):
            return concept["text"]
        for c in concept.get("coding", []):
            if c.get("system") == ADMINISTRATIVE_GENDER_SYSTEM:
                return c.get("display") or c.get("code")
        return observation.get("valueString")


class ClinicalDataRegistry:
    """attributeId → handler.  Lookups are exact (attribute ids are upper-case in the portal)."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ClinicalDataHandler] = {}

    def register(self, attribute_id: str, handler: ClinicalDataHandler) -> None:
        if attribute_id in self._handlers:
            logger.debug("clinical_data: replacing handler for %s.", attribute_id)
        self._handlers[attribute_id] = handler

    def resolve(self, attribute_id: str) -> ClinicalDataHandler:
        """
        Return the handler for *attribute_id*.

        Raises:
            UnsupportedAttribute: no handler is registered.
        """
        handler = self._handlers.get(attribute_id)
        if handler is None:
            raise UnsupportedAttribute(attribute_id)
        return handler


def default_registry(string_attributes: Iterable[str] = ()) -> ClinicalDataRegistry:
    """Registry with the AGE and SEX handlers plus one ``StringHandler`` per id in *string_attributes*."""
    registry = ClinicalDataRegistry()
    text = StringHandler()
    for attribute_id in string_attributes:
        registry.register(attribute_id, text)
    registry.register("AGE", AgeHandler())
    registry.register("SEX", SexHandler())
    return registry
