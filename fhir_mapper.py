"""
fhir_mapper.py
--------------
MTB FHIR Bridge: Resource Builders
----------------------------------
Decomposes portal records (MTB session, therapy recommendation, genetic
alteration, clinical datum, follow-up, presentation) into FHIR R4
transaction-bundle entries.

Builders are pure: each returns a list of entries whose first element is the
root resource and never touches the network.  The orchestrator owns exactly
one ``TransactionBundle`` per write and feeds every builder result into it.

Every resource that represents a logical entity is written as a conditional
upsert keyed by its identifier, never by the server id:

    {
        "fullUrl": "urn:uuid:<random>",
        "resource": {...},
        "request": {
            "method": "PUT",
            "url":    "DiagnosticReport?identifier=<system>|<value>"
        }
    }

The server updates the single resource matching the conditional URL, or
creates it when none matches, so writing the same record twice replaces
instead of duplicating.

Public API:
    MappingContext              identifier systems, clinical registry, resolvers.
    TransactionBundle           accumulator; dedupes identical upserts, rewrites references.
    upsert_entry()              conditional PUT entry for a resource.
    delete_entry()              conditional DELETE entry.
    build_patient()             Patient (identifier type MR).
    build_specimen()            Specimen for one sample id.
    build_mtb()                 DiagnosticReport + CarePlan + tasks + recommendations.
    build_therapy_recommendation()  medication-efficacy Observation + med-chg Task.
    build_genetic_alteration()  variant Observation.
    build_clinical_datum()      clinical attribute Observation.
    build_follow_up()           MedicationStatement + RECIST response Observations.
    build_presentation()        Basic carrying slide nodes as extensions.
    build_binary()              Binary POST entry for an image attachment.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from clinical_data import ClinicalDataRegistry
from errors import InvalidArgument
from fhir_definitions import (
    CLINICAL_ATTRIBUTE_SYSTEM,
    COMPONENT_ALLELE_FREQUENCY,
    COMPONENT_ALT_ALLELE,
    COMPONENT_AMINO_ACID_CHANGE,
    COMPONENT_CHROMOSOME,
    COMPONENT_CODES,
    COMPONENT_DBSNP,
    COMPONENT_EVIDENCE_LEVEL,
    COMPONENT_EXACT_START_END,
    COMPONENT_GENE_STUDIED,
    COMPONENT_MEDICATION_ASSESSED,
    COMPONENT_REF_ALLELE,
    DATA_ABSENT_REASON_SYSTEM,
    DBSNP_SYSTEM,
    DIAGNOSTIC_SERVICE_SYSTEM,
    EVIDENCE_LEVEL_EXTENSION_SYSTEM,
    EVIDENCE_LEVEL_SYSTEM,
    HGNC_SYSTEM,
    IDENTIFIER_TYPE_SYSTEM,
    LOINC_CONFIRMATORY_TESTING,
    LOINC_DRUG_EFFICACY,
    LOINC_GENETIC_ANALYSIS_REPORT,
    LOINC_GENETIC_COUNSELING,
    LOINC_GENETIC_VARIANT_PANEL,
    LOINC_PRESENT,
    LOINC_RESPONSE,
    LOINC_VARIANT_ASSESSMENT,
    MEDICATION_CHANGE,
    MTB_STATE_TO_CARE_PLAN_STATUS,
    MTB_STATE_TO_REPORT_STATUS,
    NCBI_GENE_SYSTEM,
    NCIT_SYSTEM,
    OBSERVATION_CATEGORY_SYSTEM,
    PRESENTATION_FIELD_EXT,
    PRESENTATION_NODE_EXT,
    PUBMED_URL,
    RECIST_OUTCOMES,
    RECIST_TIMEPOINTS,
    RECOMMENDED_ACTION_EXT,
    RELATED_ARTIFACT_EXT,
    SIDE_EFFECT_EXT,
    TREATMENT_SYNONYMS_EXT,
    Profile,
    coding,
)
from identifiers import conditional_url
from schemas import (
    ClinicalData,
    FollowUp,
    GeneticAlteration,
    Image,
    Mtb,
    Presentation,
    TherapyRecommendation,
    Treatment,
)
from settings import IdentifierSystems

logger = logging.getLogger(__name__)

Entry = Dict[str, Any]

# Suffixes of the rec-followup task identifiers, appended to the MTB id.
REBIOPSY_SUFFIX = "rebiopsy"
COUNSELING_SUFFIX = "counseling"


class MappingContext:
    """
    Read-only collaborators shared by all builders of one request.

    Args:
        systems:  identifier systems from ``Settings``.
        registry: clinical attribute handlers.
        genes:    optional ``resolvers.GeneResolver`` (HGNC ids, symbols).
        drugs:    optional ``resolvers.DrugResolver`` (NCIT codes).
    """

    def __init__(
        self,
        systems: IdentifierSystems,
        registry: ClinicalDataRegistry,
        genes: Optional[Any] = None,
        drugs: Optional[Any] = None,
    ) -> None:
        self.systems = systems
        self.registry = registry
        self.genes = genes
        self.drugs = drugs


# ---------------------------------------------------------------------------
# Bundle accumulator
# ---------------------------------------------------------------------------

class TransactionBundle:
    """
    The single mutable transaction bundle of one write.

    An upsert of a conditional URL already present is dropped when it carries
    the same resource (e.g. one Specimen reached from the session and from a
    clinical datum); references to the dropped entry's ``fullUrl`` are
    rewritten to the surviving entry when the bundle is serialised.  A second
    upsert with different content raises ``InvalidArgument``: one of the two
    records would otherwise be lost.  Duplicate conditional deletes are dropped.
    """

    def __init__(self) -> None:
        self._entries: List[Entry] = []
        self._by_request: Dict[tuple, Entry] = {}
        self._aliases: Dict[str, str] = {}

    def add(self, entry: Entry) -> str:
        """Add *entry*; return the fullUrl that references to it must use."""
        request = entry.get("request", {})
        key = (request.get("method"), request.get("url"))
        existing = self._by_request.get(key) if request.get("method") in ("PUT", "DELETE") else None

        if existing is not None:
            if key[0] == "PUT" and not self._same_resource(existing, entry):
                raise InvalidArgument(f"Conflicting records for {key[1]}")
            logger.debug("fhir_mapper: duplicate %s %s collapsed.", key[0], key[1])
            if entry.get("fullUrl") and existing.get("fullUrl"):
                self._aliases[entry["fullUrl"]] = existing["fullUrl"]
            return existing.get("fullUrl", "")

        self._entries.append(entry)
        if request.get("method") in ("PUT", "DELETE"):
            self._by_request[key] = entry
        return entry.get("fullUrl", "")

    def _same_resource(self, existing: Entry, entry: Entry) -> bool:
        a = copy.deepcopy(existing.get("resource"))
        b = copy.deepcopy(entry.get("resource"))
        _rewrite_references(a, self._aliases)
        _rewrite_references(b, self._aliases)
        return a == b

    def extend(self, entries: Iterable[Entry]) -> None:
        for entry in entries:
            self.add(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a ``type=transaction`` Bundle with aliased references rewritten."""
        entries = copy.deepcopy(self._entries)
        if self._aliases:
            for entry in entries:
                _rewrite_references(entry.get("resource"), self._aliases)
        return {"resourceType": "Bundle", "type": "transaction", "entry": entries}


def _rewrite_references(node: Any, aliases: Dict[str, str]) -> None:
    if isinstance(node, dict):
        ref = node.get("reference")
        if isinstance(ref, str) and ref in aliases:
            node["reference"] = aliases[ref]
        for value in node.values():
            _rewrite_references(value, aliases)
    elif isinstance(node, list):
        for item in node:
            _rewrite_references(item, aliases)


# ---------------------------------------------------------------------------
# Entry helpers
# ---------------------------------------------------------------------------

def _new_full_url() -> str:
    return f"urn:uuid:{uuid.uuid4()}"


def _meta(profile: Profile) -> Dict[str, Any]:
    return {"profile": [profile.value]}


def _identifier(system: str, value: str) -> Dict[str, Any]:
    return {"system": system, "value": value}


def _ref(full_url: str) -> Dict[str, str]:
    return {"reference": full_url}


def _concept(*codings: Dict[str, Any], text: Optional[str] = None) -> Dict[str, Any]:
    concept: Dict[str, Any] = {"coding": [dict(c) for c in codings]}
    if text:
        concept["text"] = text
    return concept


def _laboratory() -> List[Dict[str, Any]]:
    return [_concept(coding(OBSERVATION_CATEGORY_SYSTEM, "laboratory", "Laboratory"))]


def upsert_entry(resource: Dict[str, Any], system: str, value: str) -> Entry:
    """Conditional-upsert entry: replace the resource carrying ``system|value``, else create it."""
    resource_type = resource["resourceType"]
    return {
        "fullUrl":  _new_full_url(),
        "resource": resource,
        "request": {
            "method": "PUT",
            "url":    conditional_url(resource_type, system, value),
        },
    }


def delete_entry(resource_type: str, system: str, value: str) -> Entry:
    """Conditional-delete entry for every ``resource_type`` carrying ``system|value``."""
    return {
        "request": {
            "method": "DELETE",
            "url":    conditional_url(resource_type, system, value),
        }
    }


def conditional_reference(resource_type: str, system: str, value: str) -> Dict[str, str]:
    """Reference resolved by the server at transaction time."""
    return {"reference": conditional_url(resource_type, system, value)}


# ---------------------------------------------------------------------------
# Patient / Specimen
# ---------------------------------------------------------------------------

def build_patient(patient_id: str, systems: IdentifierSystems) -> List[Entry]:
    """Patient upsert keyed by the portal patient id (identifier type MR)."""
    if not patient_id:
        raise ValueError("patient_id must not be empty.")
    patient = {
        "resourceType": "Patient",
        "meta":         _meta(Profile.PATIENT),
        "identifier": [{
            "use":    "usual",
            "type":   _concept(coding(IDENTIFIER_TYPE_SYSTEM, "MR", "Medical record number")),
            "system": systems.patient,
            "value":  patient_id,
        }],
    }
    return [upsert_entry(patient, systems.patient, patient_id)]


def build_specimen(sample_id: str, patient_ref: str, systems: IdentifierSystems) -> List[Entry]:
    specimen = {
        "resourceType": "Specimen",
        "meta":         _meta(Profile.SPECIMEN),
        "identifier":   [_identifier(systems.specimen, sample_id)],
        "subject":      _ref(patient_ref),
    }
    return [upsert_entry(specimen, systems.specimen, sample_id)]


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------

def variant_identifier(therapy_recommendation_id: str, alteration: GeneticAlteration) -> str:
    entrez = alteration.entrez_gene_id if alteration.entrez_gene_id is not None else ""
    return f"{therapy_recommendation_id}_{entrez}_{alteration.alteration or ''}"


def clinical_datum_identifier(therapy_recommendation_id: str, datum: ClinicalData) -> str:
    if datum.sample_id:
        return f"{therapy_recommendation_id}_{datum.sample_id}_{datum.attribute_id}"
    return f"{therapy_recommendation_id}_{datum.attribute_id}"


def build_genetic_alteration(
    alteration: GeneticAlteration,
    therapy_recommendation_id: str,
    patient_ref: str,
    ctx: MappingContext,
) -> List[Entry]:
    """
    Variant Observation for one genetic alteration.

    Component 48018-6 carries the gene twice: an NCBI Gene coding (entrez id,
    searchable through ``component-value-concept``) and an HGNC coding.  The
    alteration string goes into component 48005-3.
    """
    symbol = alteration.hugo_symbol
    hgnc_id: Optional[str] = None
    if ctx.genes is not None and alteration.entrez_gene_id is not None:
        gene = ctx.genes.lookup(alteration.entrez_gene_id)
        if gene is not None:
            hgnc_id = gene.hgnc_id
            symbol = symbol or gene.symbol

    gene_codings = []
    if alteration.entrez_gene_id is not None:
        gene_codings.append(coding(NCBI_GENE_SYSTEM, str(alteration.entrez_gene_id), symbol))
    if hgnc_id or symbol:
        gene_codings.append(coding(HGNC_SYSTEM, hgnc_id or symbol, symbol))

    components: List[Dict[str, Any]] = []
    if gene_codings:
        components.append(_component(COMPONENT_GENE_STUDIED, valueCodeableConcept=_concept(*gene_codings)))
    if alteration.alteration:
        components.append(_component(
            COMPONENT_AMINO_ACID_CHANGE,
            valueCodeableConcept={"text": alteration.alteration},
        ))
    if alteration.chromosome:
        components.append(_component(
            COMPONENT_CHROMOSOME, valueCodeableConcept={"text": alteration.chromosome},
        ))
    if alteration.ref:
        components.append(_component(COMPONENT_REF_ALLELE, valueString=alteration.ref))
    if alteration.alt:
        components.append(_component(COMPONENT_ALT_ALLELE, valueString=alteration.alt))
    if alteration.allele_frequency is not None:
        components.append(_component(
            COMPONENT_ALLELE_FREQUENCY, valueQuantity={"value": alteration.allele_frequency},
        ))
    if alteration.dbsnp:
        components.append(_component(
            COMPONENT_DBSNP, valueCodeableConcept=_concept(coding(DBSNP_SYSTEM, alteration.dbsnp)),
        ))
    if alteration.start is not None or alteration.end is not None:
        value_range: Dict[str, Any] = {}
        if alteration.start is not None:
            value_range["low"] = {"value": alteration.start}
        if alteration.end is not None:
            value_range["high"] = {"value": alteration.end}
        components.append(_component(COMPONENT_EXACT_START_END, valueRange=value_range))

    value = variant_identifier(therapy_recommendation_id, alteration)
    variant = {
        "resourceType":         "Observation",
        "meta":                 _meta(Profile.VARIANT),
        "identifier":           [_identifier(ctx.systems.therapy_recommendation, value)],
        "status":               "final",
        "category":             _laboratory(),
        "code":                 _concept(LOINC_VARIANT_ASSESSMENT),
        "subject":              _ref(patient_ref),
        "valueCodeableConcept": _concept(LOINC_PRESENT),
        "component":            components,
    }
    return [upsert_entry(variant, ctx.systems.therapy_recommendation, value)]


def build_clinical_datum(
    datum: ClinicalData,
    therapy_recommendation_id: str,
    patient_ref: str,
    ctx: MappingContext,
) -> List[Entry]:
    """
    Observation for one clinical attribute, plus its Specimen when the datum
    is sample-scoped.

    Raises:
        UnsupportedAttribute: no handler is registered for ``attribute_id``.
    """
    handler = ctx.registry.resolve(datum.attribute_id)
    value = clinical_datum_identifier(therapy_recommendation_id, datum)

    observation: Dict[str, Any] = {
        "resourceType": "Observation",
        "meta":         _meta(Profile.CLINICAL_DATUM),
        "identifier":   [_identifier(ctx.systems.therapy_recommendation, value)],
        "status":       "final",
        "code":         _concept(coding(CLINICAL_ATTRIBUTE_SYSTEM, datum.attribute_id, datum.attribute_name)),
        "subject":      _ref(patient_ref),
    }
    observation.update(handler.build(datum.value))

    entries = [upsert_entry(observation, ctx.systems.therapy_recommendation, value)]
    if datum.sample_id:
        specimen = build_specimen(datum.sample_id, patient_ref, ctx.systems)
        observation["specimen"] = _ref(specimen[0]["fullUrl"])
        entries.extend(specimen)
    return entries


def _component(code: str, **value: Any) -> Dict[str, Any]:
    component: Dict[str, Any] = {"code": _concept(COMPONENT_CODES[code])}
    component.update(value)
    return component


# ---------------------------------------------------------------------------
# Therapy recommendation
# ---------------------------------------------------------------------------

def _treatment_concept(treatment: Treatment, ctx: MappingContext) -> Dict[str, Any]:
    ncit = treatment.ncit_code
    if not ncit and ctx.drugs is not None and treatment.name:
        ncit = ctx.drugs.ncit_code(treatment.name)
    concept: Dict[str, Any] = {"coding": []}
    if ncit:
        concept["coding"].append(coding(NCIT_SYSTEM, ncit, treatment.name))
    if treatment.name:
        concept["text"] = treatment.name
    if treatment.synonyms:
        concept["extension"] = [{"url": TREATMENT_SYNONYMS_EXT, "valueString": treatment.synonyms}]
    return concept


def _citation_extension(pmid: int, title: Optional[str]) -> Dict[str, Any]:
    artifact: Dict[str, Any] = {"type": "citation", "url": f"{PUBMED_URL}{pmid}"}
    if title:
        artifact["citation"] = title
    return {"url": RELATED_ARTIFACT_EXT, "valueRelatedArtifact": artifact}


def build_therapy_recommendation(
    recommendation: TherapyRecommendation,
    patient_ref: str,
    ctx: MappingContext,
) -> List[Entry]:
    """
    Medication-efficacy Observation and its medication-change Task, followed
    by the reasoning Observations the recommendation is derived from.

    Returns:
        ``[observation, task, *reasoning]``.
    """
    systems = ctx.systems
    observation: Dict[str, Any] = {
        "resourceType": "Observation",
        "meta":         _meta(Profile.MEDICATION_EFFICACY),
        "identifier":   [_identifier(systems.therapy_recommendation, recommendation.id)],
        "status":       "final",
        "category":     _laboratory(),
        "code":         _concept(LOINC_DRUG_EFFICACY),
        "subject":      _ref(patient_ref),
    }
    if recommendation.author:
        observation["performer"] = [{"display": recommendation.author}]
    if recommendation.comment:
        observation["note"] = [{"text": c} for c in recommendation.comment]

    components: List[Dict[str, Any]] = []
    if (
        recommendation.evidence_level
        or recommendation.evidence_level_extension
        or recommendation.evidence_level_m3_text
    ):
        evidence: Dict[str, Any] = {"coding": []}
        if recommendation.evidence_level:
            evidence["coding"].append(coding(EVIDENCE_LEVEL_SYSTEM, recommendation.evidence_level))
        if recommendation.evidence_level_extension:
            evidence["coding"].append(
                coding(EVIDENCE_LEVEL_EXTENSION_SYSTEM, recommendation.evidence_level_extension)
            )
        if recommendation.evidence_level_m3_text:
            evidence["text"] = recommendation.evidence_level_m3_text
        components.append(_component(COMPONENT_EVIDENCE_LEVEL, valueCodeableConcept=evidence))
    for treatment in recommendation.treatments:
        components.append(_component(
            COMPONENT_MEDICATION_ASSESSED,
            valueCodeableConcept=_treatment_concept(treatment, ctx),
        ))
    if components:
        observation["component"] = components

    extensions = []
    for reference in recommendation.references:
        if reference.pmid is None:
            logger.warning(
                "fhir_mapper: reference without pmid on %s skipped.", recommendation.id
            )
            continue
        extensions.append(_citation_extension(reference.pmid, reference.name))
    if extensions:
        observation["extension"] = extensions

    obs_entry = upsert_entry(observation, systems.therapy_recommendation, recommendation.id)

    task = {
        "resourceType": "Task",
        "meta":         _meta(Profile.TASK_MED_CHG),
        "identifier":   [_identifier(systems.therapy_recommendation, recommendation.id)],
        "status":       "requested",
        "intent":       "proposal",
        "code":         _concept(MEDICATION_CHANGE),
        "for":          _ref(patient_ref),
        "focus":        _ref(obs_entry["fullUrl"]),
    }
    task_entry = upsert_entry(task, systems.therapy_recommendation, recommendation.id)

    reasoning: List[Entry] = []
    derived_from: List[Dict[str, str]] = []
    for alteration in recommendation.reasoning.genetic_alterations:
        built = build_genetic_alteration(alteration, recommendation.id, patient_ref, ctx)
        derived_from.append(_ref(built[0]["fullUrl"]))
        reasoning.extend(built)
    for datum in recommendation.reasoning.clinical_data:
        built = build_clinical_datum(datum, recommendation.id, patient_ref, ctx)
        derived_from.append(_ref(built[0]["fullUrl"]))
        reasoning.extend(built)
    if derived_from:
        observation["derivedFrom"] = derived_from

    return [obs_entry, task_entry] + reasoning


# ---------------------------------------------------------------------------
# MTB session
# ---------------------------------------------------------------------------

def build_mtb(mtb: Mtb, patient_ref: str, ctx: MappingContext) -> List[Entry]:
    """
    Resource graph of one MTB session.

    The DiagnosticReport is the root.  Rebiopsy and genetic counseling
    recommendations become rec-followup Tasks referenced from the report's
    recommended-action extension; a flag that is not set yields a conditional
    DELETE of its Task so that clearing a flag on rewrite removes it.

    Raises:
        ValueError: the session has no id.
    """
    if not mtb.id:
        raise ValueError("MTB session id must be set before mapping.")
    systems = ctx.systems

    report: Dict[str, Any] = {
        "resourceType": "DiagnosticReport",
        "meta":         _meta(Profile.GENOMICS_REPORT),
        "identifier":   [_identifier(systems.mtb, mtb.id)],
        "status":       MTB_STATE_TO_REPORT_STATUS.get(mtb.mtb_state or "", "registered"),
        "category": [
            _concept(coding(DIAGNOSTIC_SERVICE_SYSTEM, "GE", "Genetics")),
            _concept(LOINC_GENETIC_ANALYSIS_REPORT),
        ],
        "code":    _concept(LOINC_GENETIC_VARIANT_PANEL),
        "subject": _ref(patient_ref),
    }
    if mtb.date:
        report["effectiveDateTime"] = mtb.date
    if mtb.author:
        report["performer"] = [{"display": mtb.author}]
    if mtb.general_recommendation:
        report["conclusion"] = mtb.general_recommendation

    report_entry = upsert_entry(report, systems.mtb, mtb.id)
    entries: List[Entry] = [report_entry]

    specimen_refs = []
    for sample_id in mtb.samples:
        specimen = build_specimen(sample_id, patient_ref, systems)
        specimen_refs.append(_ref(specimen[0]["fullUrl"]))
        entries.extend(specimen)
    if specimen_refs:
        report["specimen"] = specimen_refs

    results = []
    activities = []
    for recommendation in mtb.therapy_recommendations:
        built = build_therapy_recommendation(recommendation, patient_ref, ctx)
        results.append(_ref(built[0]["fullUrl"]))
        activities.append({"reference": _ref(built[1]["fullUrl"])})
        entries.extend(built)
    if results:
        report["result"] = results

    actions = []
    for flag, suffix, code in (
        (mtb.rebiopsy_recommendation, REBIOPSY_SUFFIX, LOINC_CONFIRMATORY_TESTING),
        (mtb.genetic_counseling_recommendation, COUNSELING_SUFFIX, LOINC_GENETIC_COUNSELING),
    ):
        task_value = f"{mtb.id}_{suffix}"
        if not flag:
            entries.append(delete_entry("Task", systems.mtb, task_value))
            continue
        task = {
            "resourceType": "Task",
            "meta":         _meta(Profile.TASK_REC_FOLLOWUP),
            "identifier":   [_identifier(systems.mtb, task_value)],
            "status":       "requested",
            "intent":       "proposal",
            "code":         _concept(code),
            "for":          _ref(patient_ref),
            "focus":        _ref(report_entry["fullUrl"]),
        }
        task_entry = upsert_entry(task, systems.mtb, task_value)
        actions.append({"url": RECOMMENDED_ACTION_EXT, "valueReference": _ref(task_entry["fullUrl"])})
        entries.append(task_entry)
    if actions:
        report["extension"] = actions

    care_plan: Dict[str, Any] = {
        "resourceType":   "CarePlan",
        "meta":           _meta(Profile.CARE_PLAN),
        "identifier":     [_identifier(systems.mtb, mtb.id)],
        "status":         MTB_STATE_TO_CARE_PLAN_STATUS.get(mtb.mtb_state or "", "unknown"),
        "intent":         "plan",
        "subject":        _ref(patient_ref),
        "supportingInfo": [_ref(report_entry["fullUrl"])],
    }
    if activities:
        care_plan["activity"] = activities
    entries.append(upsert_entry(care_plan, systems.mtb, mtb.id))

    logger.debug("fhir_mapper: MTB %s → %d entries.", mtb.id, len(entries))
    return entries


# ---------------------------------------------------------------------------
# Follow-up
# ---------------------------------------------------------------------------

_REALIZED_TO_STATUS = {True: "completed", False: "not-taken", None: "unknown"}


def response_identifier(follow_up_id: str, months: int) -> str:
    return f"{follow_up_id}_{months}"


def build_follow_up(follow_up: FollowUp, patient_ref: str, ctx: MappingContext) -> List[Entry]:
    """
    MedicationStatement for a follow-up plus one RECIST response Observation
    per timepoint (3, 6 and 12 months).

    The statement points at its therapy recommendation through conditional
    references; the recommendation must already exist in the repository.
    """
    if not follow_up.id:
        raise ValueError("follow-up id must be set before mapping.")
    systems = ctx.systems
    recommendation = follow_up.therapy_recommendation

    statement: Dict[str, Any] = {
        "resourceType": "MedicationStatement",
        "meta":         _meta(Profile.MEDICATION_STATEMENT),
        "identifier":   [_identifier(systems.follow_up, follow_up.id)],
        "status":       _REALIZED_TO_STATUS[follow_up.therapy_recommendation_realized],
        "subject":      _ref(patient_ref),
    }

    medication: Dict[str, Any] = {"coding": []}
    if recommendation is not None:
        names = []
        for treatment in recommendation.treatments:
            concept = _treatment_concept(treatment, ctx)
            medication["coding"].extend(concept["coding"])
            if treatment.name:
                names.append(treatment.name)
        if names:
            medication["text"] = " + ".join(names)
        statement["partOf"] = [conditional_reference(
            "Observation", systems.therapy_recommendation, recommendation.id,
        )]
        statement["derivedFrom"] = [conditional_reference(
            "Task", systems.therapy_recommendation, recommendation.id,
        )]
    if not medication["coding"] and "text" not in medication:
        medication["text"] = "unknown"
    statement["medicationCodeableConcept"] = medication

    if follow_up.date:
        statement["effectiveDateTime"] = follow_up.date
    if follow_up.author:
        statement["informationSource"] = {"display": follow_up.author}
    if follow_up.comment:
        statement["note"] = [{"text": follow_up.comment}]
    if follow_up.side_effect is not None:
        statement["extension"] = [{"url": SIDE_EFFECT_EXT, "valueBoolean": follow_up.side_effect}]

    statement_entry = upsert_entry(statement, systems.follow_up, follow_up.id)
    entries = [statement_entry]

    for months in RECIST_TIMEPOINTS:
        outcomes = [
            RECIST_OUTCOMES[outcome]
            for outcome in ("pd", "sd", "pr", "cr")
            if getattr(follow_up.response, f"{outcome}{months}")
        ]
        value = response_identifier(follow_up.id, months)
        response: Dict[str, Any] = {
            "resourceType": "Observation",
            "meta":         _meta(Profile.RESPONSE),
            "identifier":   [_identifier(systems.response, value)],
            "status":       "final",
            "code":         _concept(LOINC_RESPONSE),
            "subject":      _ref(patient_ref),
            "partOf":       [_ref(statement_entry["fullUrl"])],
        }
        if outcomes:
            response["valueCodeableConcept"] = _concept(*outcomes, text=f"{months} months")
        else:
            response["dataAbsentReason"] = _concept(
                coding(DATA_ABSENT_REASON_SYSTEM, "unknown", "Unknown")
            )
        entries.append(upsert_entry(response, systems.response, value))

    return entries


# ---------------------------------------------------------------------------
# Presentation / Binary
# ---------------------------------------------------------------------------

def build_presentation(
    presentation: Presentation,
    patient_id: str,
    patient_ref: str,
    systems: IdentifierSystems,
) -> List[Entry]:
    """Basic resource, one ``mtb-presentation-node`` extension per node in slide order."""
    fields = PRESENTATION_FIELD_EXT
    nodes = []
    for slide_id, slide_nodes in presentation.slides.items():
        for node in slide_nodes:
            parts = [
                {"url": fields["slide_id"], "valueString": str(slide_id)},
                {"url": fields["node_id"], "valueString": node.id},
                {"url": fields["left"], "valueInteger": node.position.left},
                {"url": fields["top"], "valueInteger": node.position.top},
            ]
            if node.width is not None:
                parts.append({"url": fields["width"], "valueInteger": node.width})
            parts.append({"url": fields["type"], "valueString": node.type.value})
            if node.value is not None:
                parts.append({"url": fields["value"], "valueString": node.value})
            nodes.append({"url": PRESENTATION_NODE_EXT, "extension": parts})

    basic = {
        "resourceType": "Basic",
        "meta":         _meta(Profile.PRESENTATION),
        "identifier":   [_identifier(systems.patient, patient_id)],
        "code":         {"text": "mtb-presentation"},
        "subject":      _ref(patient_ref),
        "extension":    nodes,
    }
    return [upsert_entry(basic, systems.patient, patient_id)]


def build_binary(image: Image) -> List[Entry]:
    """POST entry creating a Binary from a data-URL or raw base64 payload."""
    data = image.data.split("base64,", 1)[1] if "base64," in image.data else image.data
    binary = {"resourceType": "Binary", "contentType": image.content_type, "data": data}
    return [{
        "fullUrl":  _new_full_url(),
        "resource": binary,
        "request":  {"method": "POST", "url": "Binary"},
    }]
