"""
schemas.py
----------
MTB FHIR Bridge: Pydantic Data Contracts
----------------------------------------
Pydantic v2 models for the portal-side JSON exchanged with cBioPortal.  They
are ephemeral request/response payloads: created per HTTP call, mapped to
FHIR resources by fhir_mapper.py, rebuilt from FHIR by fhir_reader.py, and
never persisted locally.

Wire conventions
----------------
* Field names are camelCase on the wire (``generalRecommendation``) and
  snake_case in Python; both spellings are accepted on input.
* ``Treatment.ncit_code`` keeps its snake_case wire name, as the portal sends it.
* Unknown fields are ignored.
* Absent booleans stay ``None``; ``to_portal()`` drops them from the output
  rather than emitting ``false``.

Public API
----------
    Mtb, TherapyRecommendation, Reasoning, ClinicalData, GeneticAlteration,
    Treatment, Reference, FollowUp, ResponseCriteria, CbioportalRest,
    Deletions, Presentation, SlideNode, Position, NodeType, Image,
    ImageResponse, to_portal()

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

MTB_STATES = ("DRAFT", "COMPLETED", "ARCHIVED")


class PortalModel(BaseModel):
    """Common configuration for every portal payload."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def to_portal(model: BaseModel) -> Dict[str, Any]:
    """Serialise *model* into the portal's JSON shape."""
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------

class GeneticAlteration(PortalModel):
    """One variant cited as evidence for a therapy recommendation."""

    entrez_gene_id:   Optional[int]   = None
    hugo_symbol:      Optional[str]   = None
    alteration:       Optional[str]   = None
    chromosome:       Optional[str]   = None
    start:            Optional[int]   = None
    end:              Optional[int]   = None
    ref:              Optional[str]   = None
    alt:              Optional[str]   = None
    allele_frequency: Optional[float] = None
    dbsnp:            Optional[str]   = None


class ClinicalData(PortalModel):
    """One clinical attribute value (keyed by cBioPortal attribute id)."""

    sample_id:      Optional[str] = None
    attribute_id:   str
    attribute_name: Optional[str] = None
    value:          Optional[str] = None


class Reasoning(PortalModel):
    clinical_data:       List[ClinicalData]      = Field(default_factory=list)
    genetic_alterations: List[GeneticAlteration] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Therapy recommendation
# ---------------------------------------------------------------------------

class Treatment(PortalModel):
    name:      Optional[str] = None
    ncit_code: Optional[str] = Field(default=None, alias="ncit_code")
    synonyms:  Optional[str] = None


class Reference(PortalModel):
    """A PubMed citation.  ``name`` is the article title."""

    pmid: Optional[int] = None
    name: Optional[str] = None

    @field_validator("pmid", mode="before")
    @classmethod
    def coerce_pmid(cls, v: Any) -> Optional[int]:
        """Accept ints and digit strings; the portal sends both."""
        if v is None or v == "":
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            raise ValueError(f"pmid must be numeric, got {v!r}")


class TherapyRecommendation(PortalModel):
    id:                       str
    author:                   Optional[str]   = None
    comment:                  List[str]       = Field(default_factory=list)
    evidence_level:           Optional[str]   = None
    evidence_level_extension: Optional[str]   = None
    evidence_level_m3_text:   Optional[str]   = None
    treatments:               List[Treatment] = Field(default_factory=list)
    references:               List[Reference] = Field(default_factory=list)
    reasoning:                Reasoning       = Field(default_factory=Reasoning)


# ---------------------------------------------------------------------------
# MTB session
# ---------------------------------------------------------------------------

class Mtb(PortalModel):
    id:                                Optional[str]  = None
    date:                              Optional[str]  = None
    author:                            Optional[str]  = None
    general_recommendation:            Optional[str]  = None
    genetic_counseling_recommendation: Optional[bool] = None
    rebiopsy_recommendation:           Optional[bool] = None
    mtb_state:                         Optional[str]  = None
    samples:                           List[str]      = Field(default_factory=list)
    therapy_recommendations:           List[TherapyRecommendation] = Field(default_factory=list)

    @field_validator("mtb_state", mode="before")
    @classmethod
    def normalise_state(cls, v: Any) -> Optional[str]:
        """Upper-case the lifecycle state and reject anything outside DRAFT/COMPLETED/ARCHIVED."""
        if v is None or v == "":
            return None
        state = str(v).strip().upper()
        if state not in MTB_STATES:
            raise ValueError(f"mtbState must be one of {MTB_STATES}, got {v!r}")
        return state


# ---------------------------------------------------------------------------
# Follow-up
# ---------------------------------------------------------------------------

class ResponseCriteria(PortalModel):
    """RECIST outcome flags at 3, 6 and 12 months."""

    pd3:  bool = False
    sd3:  bool = False
    pr3:  bool = False
    cr3:  bool = False
    pd6:  bool = False
    sd6:  bool = False
    pr6:  bool = False
    cr6:  bool = False
    pd12: bool = False
    sd12: bool = False
    pr12: bool = False
    cr12: bool = False


class FollowUp(PortalModel):
    id:                              Optional[str]                   = None
    therapy_recommendation:          Optional[TherapyRecommendation] = None
    date:                            Optional[str]                   = None
    author:                          Optional[str]                   = None
    comment:                         Optional[str]                   = None
    therapy_recommendation_realized: Optional[bool]                  = None
    side_effect:                     Optional[bool]                  = None
    response:                        ResponseCriteria = Field(default_factory=ResponseCriteria)


# ---------------------------------------------------------------------------
# Request / response envelopes
# ---------------------------------------------------------------------------

class CbioportalRest(PortalModel):
    id:         Optional[str]            = None
    mtbs:       Optional[List[Mtb]]      = None
    follow_ups: Optional[List[FollowUp]] = None


class Deletions(PortalModel):
    mtb:                    List[str] = Field(default_factory=list)
    therapy_recommendation: List[str] = Field(default_factory=list)
    follow_up:              List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

class NodeType(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    HTML = "html"


class Position(PortalModel):
    left: int = 0
    top:  int = 0


class SlideNode(PortalModel):
    id:       str
    position: Position      = Field(default_factory=Position)
    width:    Optional[int] = None
    type:     NodeType
    value:    Optional[str] = None


class Presentation(PortalModel):
    """Patient-scoped slides, in order; each slide an ordered list of nodes."""

    slides: Dict[UUID, List[SlideNode]] = Field(default_factory=dict)

    def image_urls(self) -> List[str]:
        """Values of every image node, i.e. the attachments still in use."""
        return [
            node.value
            for nodes in self.slides.values()
            for node in nodes
            if node.type is NodeType.IMAGE and node.value
        ]


class Image(PortalModel):
    """Uploaded image: ``data`` is a data-URL (``data:image/png;base64,...``) or raw base64."""

    content_type: str
    data:         str


class ImageResponse(PortalModel):
    url:          str
    content_type: str
