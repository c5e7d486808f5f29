"""
fhir_reader.py
--------------
MTB FHIR Bridge: Resource Readers
---------------------------------
Reassembles portal records from an already-fetched FHIR searchset bundle
(matches plus the ``_include`` / ``_revinclude`` neighbours).  Nothing here
performs I/O.

Resources are told apart by profile (decoded into ``fhir_definitions.Profile``)
and by coded sub-elements, never by ``resourceType`` alone: a variant
Observation, a medication-efficacy Observation, a clinical-data Observation
and a RECIST response Observation are four different portal concepts.

Public API:
    ResourceGraph                       index over a searchset bundle.
    read_mtb_sessions()                 → List[Mtb], newest first.
    read_therapy_recommendation()       → TherapyRecommendation.
    read_therapy_recommendations()      every recommendation in a graph.
    read_genetic_alteration()           → GeneticAlteration.
    read_clinical_datum()               → ClinicalData.
    read_follow_ups()                   → List[FollowUp].
    read_references()                   → List[Reference], deduplicated by pmid.
    read_presentation()                 Basic → Presentation.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from clinical_data import ClinicalDataRegistry
from fhir_definitions import (
    CLINICAL_ATTRIBUTE_SYSTEM,
    COMPONENT_ALLELE_FREQUENCY,
    COMPONENT_ALT_ALLELE,
    COMPONENT_AMINO_ACID_CHANGE,
    COMPONENT_CHROMOSOME,
    COMPONENT_DBSNP,
    COMPONENT_EVIDENCE_LEVEL,
    COMPONENT_EXACT_START_END,
    COMPONENT_GENE_STUDIED,
    COMPONENT_MEDICATION_ASSESSED,
    COMPONENT_REF_ALLELE,
    EVIDENCE_LEVEL_EXTENSION_SYSTEM,
    EVIDENCE_LEVEL_SYSTEM,
    HGNC_SYSTEM,
    LOINC_CONFIRMATORY_TESTING,
    LOINC_GENETIC_COUNSELING,
    NCBI_GENE_SYSTEM,
    NCIT_SYSTEM,
    PRESENTATION_FIELD_EXT,
    PRESENTATION_NODE_EXT,
    PUBMED_URL,
    RECIST_CODE_TO_OUTCOME,
    RECOMMENDED_ACTION_EXT,
    RELATED_ARTIFACT_EXT,
    REPORT_STATUS_TO_MTB_STATE,
    SIDE_EFFECT_EXT,
    THERAPY_RECOMMENDATION_PROFILES,
    TREATMENT_SYNONYMS_EXT,
    Profile,
)
from schemas import (
    ClinicalData,
    FollowUp,
    GeneticAlteration,
    Mtb,
    NodeType,
    Position,
    Presentation,
    Reasoning,
    Reference,
    ResponseCriteria,
    SlideNode,
    TherapyRecommendation,
    Treatment,
)
from settings import IdentifierSystems

logger = logging.getLogger(__name__)

Resource = Dict[str, Any]

_STATUS_TO_REALIZED = {"completed": True, "not-taken": False}


# ---------------------------------------------------------------------------
# Graph index
# ---------------------------------------------------------------------------

class ResourceGraph:
    """
    Index over the entries of a searchset bundle.

    References are resolved by ``Type/id`` (relative, absolute or versioned)
    or by ``fullUrl``.  Unresolvable references return ``None``; the server
    did not include the target.
    """

    def __init__(self, bundle: Dict[str, Any]) -> None:
        self._entries: List[Dict[str, Any]] = [
            e for e in bundle.get("entry", []) if e.get("resource")
        ]
        self._index: Dict[str, Resource] = {}
        for entry in self._entries:
            resource = entry["resource"]
            if entry.get("fullUrl"):
                self._index[entry["fullUrl"]] = resource
            if resource.get("id"):
                self._index[f"{resource['resourceType']}/{resource['id']}"] = resource

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, reference: Any) -> Optional[Resource]:
        """Return the resource a Reference (dict) or reference string points at."""
        if isinstance(reference, dict):
            reference = reference.get("reference")
        if not reference:
            return None
        if reference in self._index:
            return self._index[reference]
        ref = reference.split("/_history/", 1)[0]
        parts = ref.rstrip("/").split("/")
        if len(parts) >= 2:
            return self._index.get(f"{parts[-2]}/{parts[-1]}")
        return None

    def resources(self, resource_type: str) -> List[Resource]:
        """Every resource of *resource_type*, matched or included."""
        return [
            e["resource"] for e in self._entries
            if e["resource"].get("resourceType") == resource_type
        ]

    def matches(self, resource_type: str) -> List[Resource]:
        """Resources of *resource_type* returned as search matches (not includes)."""
        return [
            e["resource"] for e in self._entries
            if e["resource"].get("resourceType") == resource_type
            and (e.get("search") or {}).get("mode", "match") == "match"
        ]

    def referrers(self, target: Resource, resource_type: str, field: str) -> List[Resource]:
        """Resources of *resource_type* whose *field* references *target*."""
        found = []
        for resource in self.resources(resource_type):
            refs = resource.get(field)
            if refs is None:
                continue
            if not isinstance(refs, list):
                refs = [refs]
            if any(self.resolve(ref) is target for ref in refs):
                found.append(resource)
        return found


# ---------------------------------------------------------------------------
# Small accessors
# ---------------------------------------------------------------------------

def identifier_value(resource: Resource, system: Optional[str] = None) -> Optional[str]:
    """Value of the identifier with *system*, else of the first identifier."""
    identifiers = resource.get("identifier") or []
    for identifier in identifiers:
        if system is None or identifier.get("system") == system:
            return identifier.get("value")
    return identifiers[0].get("value") if identifiers else None


def _codings(concept: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return list((concept or {}).get("coding") or [])


def _has_code(concept: Optional[Dict[str, Any]], expected: Dict[str, Any]) -> bool:
    return any(
        c.get("system") == expected["system"] and c.get("code") == expected["code"]
        for c in _codings(concept)
    )


def _component_code(component: Dict[str, Any]) -> Optional[str]:
    codings = _codings(component.get("code"))
    return codings[0].get("code") if codings else None


def _first_display(items: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    for item in items or []:
        if item.get("display"):
            return item["display"]
    return None


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------

def read_genetic_alteration(observation: Resource) -> GeneticAlteration:
    """
    Variant Observation → GeneticAlteration.

    Dispatches on the component code; unknown components are ignored.
    """
    fields: Dict[str, Any] = {}
    for component in observation.get("component") or []:
        code = _component_code(component)
        concept = component.get("valueCodeableConcept") or {}

        if code == COMPONENT_GENE_STUDIED:
            for c in _codings(concept):
                if c.get("system") == NCBI_GENE_SYSTEM and c.get("code", "").isdigit():
                    fields["entrez_gene_id"] = int(c["code"])
                    if c.get("display"):
                        fields["hugo_symbol"] = c["display"]
                elif c.get("system") == HGNC_SYSTEM and "hugo_symbol" not in fields:
                    fields["hugo_symbol"] = c.get("display") or c.get("code")
        elif code == COMPONENT_AMINO_ACID_CHANGE:
            codings = _codings(concept)
            fields["alteration"] = concept.get("text") or (codings[0].get("code") if codings else None)
        elif code == COMPONENT_CHROMOSOME:
            fields["chromosome"] = concept.get("text")
        elif code == COMPONENT_REF_ALLELE:
            fields["ref"] = component.get("valueString")
        elif code == COMPONENT_ALT_ALLELE:
            fields["alt"] = component.get("valueString")
        elif code == COMPONENT_ALLELE_FREQUENCY:
            fields["allele_frequency"] = (component.get("valueQuantity") or {}).get("value")
        elif code == COMPONENT_DBSNP:
            codings = _codings(concept)
            fields["dbsnp"] = codings[0].get("code") if codings else None
        elif code == COMPONENT_EXACT_START_END:
            value_range = component.get("valueRange") or {}
            fields["start"] = (value_range.get("low") or {}).get("value")
            fields["end"] = (value_range.get("high") or {}).get("value")

    return GeneticAlteration(**fields)


def read_clinical_datum(
    observation: Resource,
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> ClinicalData:
    """
    Clinical-data Observation → ClinicalData.

    Raises:
        UnsupportedAttribute: the stored attribute has no registered handler.
    """
    code = next(
        c for c in _codings(observation.get("code")) if c.get("system") == CLINICAL_ATTRIBUTE_SYSTEM
    )
    attribute_id = code["code"]
    sample_id = None
    specimen = graph.resolve(observation.get("specimen"))
    if specimen is not None:
        sample_id = identifier_value(specimen, systems.specimen)
    return ClinicalData(
        sample_id=sample_id,
        attribute_id=attribute_id,
        attribute_name=code.get("display"),
        value=registry.resolve(attribute_id).read(observation),
    )


# ---------------------------------------------------------------------------
# Therapy recommendation
# ---------------------------------------------------------------------------

def _read_treatment(concept: Dict[str, Any]) -> Treatment:
    ncit = next((c for c in _codings(concept) if c.get("system") == NCIT_SYSTEM), None)
    synonyms = next(
        (e.get("valueString") for e in concept.get("extension") or []
         if e.get("url") == TREATMENT_SYNONYMS_EXT),
        None,
    )
    return Treatment(
        name=concept.get("text") or (ncit or {}).get("display"),
        ncit_code=(ncit or {}).get("code"),
        synonyms=synonyms,
    )


def _read_citations(observation: Resource) -> List[Reference]:
    references = []
    for extension in observation.get("extension") or []:
        if extension.get("url") != RELATED_ARTIFACT_EXT:
            continue
        artifact = extension.get("valueRelatedArtifact") or {}
        url = artifact.get("url") or ""
        if artifact.get("type") != "citation" or not url.startswith(PUBMED_URL):
            continue
        pmid = url[len(PUBMED_URL):].strip("/")
        if not pmid.isdigit():
            logger.warning("fhir_reader: unparseable citation url %s", url)
            continue
        references.append(Reference(pmid=int(pmid), name=artifact.get("citation")))
    return references


def read_therapy_recommendation(
    observation: Resource,
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> TherapyRecommendation:
    """Medication-efficacy (or legacy therapeutic-implication) Observation → TherapyRecommendation."""
    fields: Dict[str, Any] = {
        "id":      identifier_value(observation, systems.therapy_recommendation),
        "author":  _first_display(observation.get("performer")),
        "comment": [n["text"] for n in observation.get("note") or [] if n.get("text")],
    }

    treatments = []
    for component in observation.get("component") or []:
        code = _component_code(component)
        concept = component.get("valueCodeableConcept") or {}
        if code == COMPONENT_EVIDENCE_LEVEL:
            for c in _codings(concept):
                if c.get("system") == EVIDENCE_LEVEL_SYSTEM:
                    fields["evidence_level"] = c.get("code")
                elif c.get("system") == EVIDENCE_LEVEL_EXTENSION_SYSTEM:
                    fields["evidence_level_extension"] = c.get("code")
            if concept.get("text"):
                fields["evidence_level_m3_text"] = concept["text"]
        elif code == COMPONENT_MEDICATION_ASSESSED:
            treatments.append(_read_treatment(concept))
    fields["treatments"] = treatments
    fields["references"] = _read_citations(observation)

    reasoning = Reasoning()
    for ref in observation.get("derivedFrom") or []:
        source = graph.resolve(ref)
        if source is None:
            logger.debug("fhir_reader: derivedFrom %s not in graph.", ref.get("reference"))
            continue
        if Profile.of(source) is Profile.VARIANT:
            reasoning.genetic_alterations.append(read_genetic_alteration(source))
        elif Profile.of(source) is Profile.CLINICAL_DATUM:
            reasoning.clinical_data.append(read_clinical_datum(source, graph, systems, registry))
    fields["reasoning"] = reasoning

    return TherapyRecommendation(**fields)


def therapy_recommendation_observations(graph: ResourceGraph) -> List[Resource]:
    """Every Observation in *graph* carrying a therapy-recommendation profile."""
    return [
        o for o in graph.resources("Observation")
        if Profile.of(o) in THERAPY_RECOMMENDATION_PROFILES
    ]


def read_therapy_recommendations(
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> List[TherapyRecommendation]:
    """All therapy recommendations in *graph*, one per identifier."""
    by_id: Dict[str, TherapyRecommendation] = {}
    for observation in therapy_recommendation_observations(graph):
        recommendation = read_therapy_recommendation(observation, graph, systems, registry)
        by_id[recommendation.id] = recommendation
    return list(by_id.values())


def read_references(observations: Iterable[Resource]) -> List[Reference]:
    """Citations of *observations*, one per pmid (first title seen wins)."""
    by_pmid: Dict[int, Reference] = {}
    for observation in observations:
        for reference in _read_citations(observation):
            by_pmid.setdefault(reference.pmid, reference)
    return list(by_pmid.values())


# ---------------------------------------------------------------------------
# MTB session
# ---------------------------------------------------------------------------

def _recommendation_tasks(report: Resource, graph: ResourceGraph) -> List[Resource]:
    tasks = []
    for extension in report.get("extension") or []:
        if extension.get("url") == RECOMMENDED_ACTION_EXT:
            task = graph.resolve(extension.get("valueReference"))
            if task is not None:
                tasks.append(task)
    for task in graph.referrers(report, "Task", "focus"):
        if all(task is not t for t in tasks):
            tasks.append(task)
    return [t for t in tasks if Profile.of(t) is Profile.TASK_REC_FOLLOWUP]


def read_mtb(
    report: Resource,
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> Mtb:
    """Genomics-report DiagnosticReport and its neighbours → Mtb."""
    fields: Dict[str, Any] = {
        "id":                     identifier_value(report, systems.mtb),
        "date":                   report.get("effectiveDateTime"),
        "author":                 _first_display(report.get("performer")),
        "general_recommendation": report.get("conclusion"),
        "mtb_state":              REPORT_STATUS_TO_MTB_STATE.get(report.get("status")),
    }

    samples = []
    for ref in report.get("specimen") or []:
        specimen = graph.resolve(ref)
        if specimen is not None:
            samples.append(identifier_value(specimen, systems.specimen))
    fields["samples"] = [s for s in samples if s]

    for task in _recommendation_tasks(report, graph):
        if _has_code(task.get("code"), LOINC_CONFIRMATORY_TESTING):
            fields["rebiopsy_recommendation"] = True
        elif _has_code(task.get("code"), LOINC_GENETIC_COUNSELING):
            fields["genetic_counseling_recommendation"] = True

    recommendations = []
    for ref in report.get("result") or []:
        observation = graph.resolve(ref)
        if observation is None or Profile.of(observation) not in THERAPY_RECOMMENDATION_PROFILES:
            continue
        recommendations.append(read_therapy_recommendation(observation, graph, systems, registry))
    fields["therapy_recommendations"] = recommendations

    return Mtb(**fields)


def read_mtb_sessions(
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> List[Mtb]:
    """Every MTB session in *graph*, sorted by id descending (newest first)."""
    sessions = [
        read_mtb(report, graph, systems, registry)
        for report in graph.matches("DiagnosticReport")
        if Profile.of(report) is Profile.GENOMICS_REPORT
    ]
    return sorted(sessions, key=lambda m: m.id or "", reverse=True)


# ---------------------------------------------------------------------------
# Follow-up
# ---------------------------------------------------------------------------

def _read_response(statement: Resource, graph: ResourceGraph, systems: IdentifierSystems) -> ResponseCriteria:
    flags: Dict[str, bool] = {}
    for observation in graph.referrers(statement, "Observation", "partOf"):
        if Profile.of(observation) is not Profile.RESPONSE:
            continue
        value = identifier_value(observation, systems.response) or ""
        months = value.rsplit("_", 1)[-1]
        if not months.isdigit():
            continue
        for c in _codings(observation.get("valueCodeableConcept")):
            outcome = RECIST_CODE_TO_OUTCOME.get(c.get("code"))
            field = f"{outcome}{months}"
            if outcome and field in ResponseCriteria.model_fields:
                flags[field] = True
    return ResponseCriteria(**flags)


def read_follow_up(
    statement: Resource,
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> FollowUp:
    """MedicationStatement and its response Observations → FollowUp."""
    recommendation = None
    for ref in statement.get("partOf") or []:
        observation = graph.resolve(ref)
        if observation is not None and Profile.of(observation) in THERAPY_RECOMMENDATION_PROFILES:
            recommendation = read_therapy_recommendation(observation, graph, systems, registry)
            break

    side_effect = None
    for extension in statement.get("extension") or []:
        if extension.get("url") == SIDE_EFFECT_EXT:
            side_effect = extension.get("valueBoolean")

    notes = [n["text"] for n in statement.get("note") or [] if n.get("text")]
    return FollowUp(
        id=identifier_value(statement, systems.follow_up),
        therapy_recommendation=recommendation,
        date=statement.get("effectiveDateTime"),
        author=(statement.get("informationSource") or {}).get("display"),
        comment="\n".join(notes) if notes else None,
        therapy_recommendation_realized=_STATUS_TO_REALIZED.get(statement.get("status")),
        side_effect=side_effect,
        response=_read_response(statement, graph, systems),
    )


def read_follow_ups(
    graph: ResourceGraph,
    systems: IdentifierSystems,
    registry: ClinicalDataRegistry,
) -> List[FollowUp]:
    return [
        read_follow_up(statement, graph, systems, registry)
        for statement in graph.matches("MedicationStatement")
        if Profile.of(statement) is Profile.MEDICATION_STATEMENT
    ]


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

def read_presentation(basic: Resource) -> Presentation:
    """
    Presentation Basic → Presentation.

    Slides keep the order in which their first node appears; nodes keep
    their extension order.
    """
    by_url = {url: name for name, url in PRESENTATION_FIELD_EXT.items()}
    slides: Dict[UUID, List[SlideNode]] = {}
    for extension in basic.get("extension") or []:
        if extension.get("url") != PRESENTATION_NODE_EXT:
            continue
        parts: Dict[str, Any] = {}
        for sub in extension.get("extension") or []:
            name = by_url.get(sub.get("url"))
            if name is None:
                continue
            parts[name] = sub.get("valueString", sub.get("valueInteger"))

        node = SlideNode(
            id=parts["node_id"],
            position=Position(left=parts.get("left") or 0, top=parts.get("top") or 0),
            width=parts.get("width"),
            type=NodeType(parts["type"]),
            value=parts.get("value"),
        )
        slides.setdefault(UUID(parts["slide_id"]), []).append(node)
    return Presentation(slides=slides)
