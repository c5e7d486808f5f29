"""
fhir_definitions.py
-------------------
MTB FHIR Bridge: Profiles, Code Systems and Codes
--------------------------------------------------
Constants shared by the resource builders (fhir_mapper.py) and readers
(fhir_reader.py).

Profiles are decoded into the closed ``Profile`` enumeration before any
dispatch happens, so two resources of the same FHIR type (e.g. a variant
Observation and a medication-efficacy Observation) are told apart by their
semantic role rather than by ``resourceType``.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

_GENOMICS = "http://hl7.org/fhir/uv/genomics-reporting/StructureDefinition"
_PRESENTATION = "http://example.com/StructureDefinition"
_CBIOPORTAL = "https://cbioportal.org/fhir/StructureDefinition"


class Profile(Enum):
    """Canonical profile URLs for every semantic role the bridge writes or reads."""

    GENOMICS_REPORT = f"{_GENOMICS}/genomics-report"
    VARIANT = f"{_GENOMICS}/variant"
    MEDICATION_EFFICACY = f"{_GENOMICS}/medication-efficacy"
    THERAPEUTIC_IMPLICATION = f"{_GENOMICS}/therapeutic-implication"
    TASK_REC_FOLLOWUP = f"{_GENOMICS}/task-rec-followup"
    TASK_MED_CHG = f"{_GENOMICS}/task-med-chg"
    MEDICATION_STATEMENT = f"{_GENOMICS}/medicationstatement"
    SPECIMEN = f"{_GENOMICS}/specimen"
    PRESENTATION = f"{_PRESENTATION}/mtb-presentation"
    PATIENT = f"{_CBIOPORTAL}/mtb-patient"
    CARE_PLAN = f"{_CBIOPORTAL}/mtb-care-plan"
    CLINICAL_DATUM = f"{_CBIOPORTAL}/clinical-datum"
    RESPONSE = f"{_CBIOPORTAL}/recist-response"

    @classmethod
    def from_url(cls, url: Optional[str]) -> Optional["Profile"]:
        """Return the member for *url*, or ``None`` if the URL is not one of ours."""
        for member in cls:
            if member.value == url:
                return member
        return None

    @classmethod
    def of(cls, resource: Dict[str, Any]) -> Optional["Profile"]:
        """First recognised profile declared in ``resource.meta.profile``."""
        for url in (resource.get("meta") or {}).get("profile") or []:
            member = cls.from_url(url)
            if member is not None:
                return member
        return None


# Observations that carry a therapy recommendation.  therapeutic-implication
# is the STU1 name of medication-efficacy; older data still uses it.
THERAPY_RECOMMENDATION_PROFILES = frozenset(
    {Profile.MEDICATION_EFFICACY, Profile.THERAPEUTIC_IMPLICATION}
)

# ---------------------------------------------------------------------------
# Extensions
# ---------------------------------------------------------------------------
RECOMMENDED_ACTION_EXT = f"{_GENOMICS}/RecommendedAction"
RELATED_ARTIFACT_EXT = "http://hl7.org/fhir/StructureDefinition/workflow-relatedArtifact"
SIDE_EFFECT_EXT = f"{_CBIOPORTAL}/side-effect"
TREATMENT_SYNONYMS_EXT = f"{_CBIOPORTAL}/treatment-synonyms"

PRESENTATION_NODE_EXT = f"{_PRESENTATION}/mtb-presentation-node"
PRESENTATION_FIELD_EXT: Dict[str, str] = {
    "slide_id": f"{_PRESENTATION}/mtb-presentation-slide-id",
    "node_id":  f"{_PRESENTATION}/mtb-presentation-node-id",
    "left":     f"{_PRESENTATION}/mtb-presentation-node-left",
    "top":      f"{_PRESENTATION}/mtb-presentation-node-top",
    "width":    f"{_PRESENTATION}/mtb-presentation-node-width",
    "type":     f"{_PRESENTATION}/mtb-presentation-node-type",
    "value":    f"{_PRESENTATION}/mtb-presentation-node-value",
}

# ---------------------------------------------------------------------------
# Code systems
# ---------------------------------------------------------------------------
LOINC_SYSTEM = "http://loinc.org"
NCBI_GENE_SYSTEM = "http://www.ncbi.nlm.nih.gov/gene"
HGNC_SYSTEM = "http://www.genenames.org/geneId"
HGVS_SYSTEM = "http://varnomen.hgvs.org"
DBSNP_SYSTEM = "http://www.ncbi.nlm.nih.gov/projects/SNP"
NCIT_SYSTEM = "http://ncithesaurus-stage.nci.nih.gov"
TBD_CODES_SYSTEM = "http://hl7.org/fhir/uv/genomics-reporting/CodeSystem/TbdCodes"
OBSERVATION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"
DIAGNOSTIC_SERVICE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0074"
IDENTIFIER_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0203"
ADMINISTRATIVE_GENDER_SYSTEM = "http://hl7.org/fhir/administrative-gender"
DATA_ABSENT_REASON_SYSTEM = "http://terminology.hl7.org/CodeSystem/data-absent-reason"
UCUM_SYSTEM = "http://unitsofmeasure.org"
EVIDENCE_LEVEL_SYSTEM = "https://cbioportal.org/evidence/BW/"
EVIDENCE_LEVEL_EXTENSION_SYSTEM = "https://cbioportal.org/evidence/BW/extension/"
CLINICAL_ATTRIBUTE_SYSTEM = "https://cbioportal.org/clinical-attribute/"
RECIST_SYSTEM = "http://ncimeta.nci.nih.gov"

PUBMED_URL = "https://www.ncbi.nlm.nih.gov/pubmed/"


def coding(system: str, code: str, display: Optional[str] = None) -> Dict[str, Any]:
    """Return a FHIR Coding dict, omitting an empty display."""
    result: Dict[str, Any] = {"system": system, "code": code}
    if display:
        result["display"] = display
    return result


# ---------------------------------------------------------------------------
# LOINC codes
# ---------------------------------------------------------------------------
LOINC_GENETIC_ANALYSIS_REPORT = coding(LOINC_SYSTEM, "51969-4", "Genetic analysis report")
LOINC_GENETIC_VARIANT_PANEL = coding(
    LOINC_SYSTEM, "81247-9", "Master HL7 genetic variant reporting panel"
)
LOINC_VARIANT_ASSESSMENT = coding(LOINC_SYSTEM, "69548-6", "Genetic variant assessment")
LOINC_PRESENT = coding(LOINC_SYSTEM, "LA9633-4", "Present")
LOINC_DRUG_EFFICACY = coding(
    LOINC_SYSTEM, "51961-1", "Genetic variation's effect on drug efficacy"
)
LOINC_RESPONSE = coding(LOINC_SYSTEM, "88040-1", "Response to cancer treatment")

LOINC_CONFIRMATORY_TESTING = coding(
    LOINC_SYSTEM, "LA14021-2", "Confirmatory testing recommended"
)
LOINC_GENETIC_COUNSELING = coding(
    LOINC_SYSTEM, "LA14020-4", "Genetic counseling recommended"
)

MEDICATION_CHANGE = coding(TBD_CODES_SYSTEM, "medication-change", "Medication change")

# Observation.component codes.  Readers dispatch on the ``code`` value;
# components with any other code are ignored.
COMPONENT_GENE_STUDIED = "48018-6"
COMPONENT_AMINO_ACID_CHANGE = "48005-3"
COMPONENT_CHROMOSOME = "48001-2"
COMPONENT_REF_ALLELE = "69547-8"
COMPONENT_ALT_ALLELE = "69551-0"
COMPONENT_ALLELE_FREQUENCY = "81258-6"
COMPONENT_DBSNP = "81255-2"
COMPONENT_EXACT_START_END = "exact-start-end"
COMPONENT_EVIDENCE_LEVEL = "93044-6"
COMPONENT_MEDICATION_ASSESSED = "51963-7"

COMPONENT_CODES: Dict[str, Dict[str, Any]] = {
    COMPONENT_GENE_STUDIED:        coding(LOINC_SYSTEM, COMPONENT_GENE_STUDIED, "Gene studied [ID]"),
    COMPONENT_AMINO_ACID_CHANGE:   coding(LOINC_SYSTEM, COMPONENT_AMINO_ACID_CHANGE, "Amino acid change (pHGVS)"),
    COMPONENT_CHROMOSOME:          coding(LOINC_SYSTEM, COMPONENT_CHROMOSOME, "Chromosome [Identifier] in Blood or Tissue by Molecular genetics method"),
    COMPONENT_REF_ALLELE:          coding(LOINC_SYSTEM, COMPONENT_REF_ALLELE, "Genomic ref allele [ID]"),
    COMPONENT_ALT_ALLELE:          coding(LOINC_SYSTEM, COMPONENT_ALT_ALLELE, "Genomic alt allele [ID]"),
    COMPONENT_ALLELE_FREQUENCY:    coding(LOINC_SYSTEM, COMPONENT_ALLELE_FREQUENCY, "Sample variant allelic frequency [NFr]"),
    COMPONENT_DBSNP:               coding(LOINC_SYSTEM, COMPONENT_DBSNP, "Discrete genetic variant"),
    COMPONENT_EXACT_START_END:     coding(TBD_CODES_SYSTEM, COMPONENT_EXACT_START_END, "Variant exact start and end"),
    COMPONENT_EVIDENCE_LEVEL:      coding(LOINC_SYSTEM, COMPONENT_EVIDENCE_LEVEL, "Level of evidence"),
    COMPONENT_MEDICATION_ASSESSED: coding(LOINC_SYSTEM, COMPONENT_MEDICATION_ASSESSED, "Medication assessed [ID]"),
}

# ---------------------------------------------------------------------------
# Status mappings
# ---------------------------------------------------------------------------
MTB_STATE_TO_REPORT_STATUS: Dict[str, str] = {
    "DRAFT":     "partial",
    "COMPLETED": "final",
    "ARCHIVED":  "cancelled",
}
REPORT_STATUS_TO_MTB_STATE: Dict[str, str] = {
    v: k for k, v in MTB_STATE_TO_REPORT_STATUS.items()
}

MTB_STATE_TO_CARE_PLAN_STATUS: Dict[str, str] = {
    "DRAFT":     "draft",
    "COMPLETED": "active",
    "ARCHIVED":  "revoked",
}

# RECIST outcome → NCIt coding.  Keys match the ResponseCriteria flag prefixes.
RECIST_OUTCOMES: Dict[str, Dict[str, Any]] = {
    "pd": coding(RECIST_SYSTEM, "C35571", "Progressive Disease"),
    "sd": coding(RECIST_SYSTEM, "C18213", "Stable Disease"),
    "pr": coding(RECIST_SYSTEM, "C18058", "Partial Remission"),
    "cr": coding(RECIST_SYSTEM, "C4870", "Complete Remission"),
}
RECIST_CODE_TO_OUTCOME: Dict[str, str] = {v["code"]: k for k, v in RECIST_OUTCOMES.items()}
RECIST_TIMEPOINTS = (3, 6, 12)
