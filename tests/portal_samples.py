"""
portal_samples.py
-----------------
MTB FHIR Bridge: Shared test payloads
-------------------------------------
Portal records as cBioPortal sends them, and an ``MtbOrchestrator`` wired to
the in-memory FHIR repository in fake_fhir.py.

Project: MTB FHIR Bridge
"""

import asyncio
import os
import sys
from typing import Any, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from clinical_data import default_registry
from fhir_client import FhirClient
from orchestrator import MtbOrchestrator
from schemas import FollowUp, Mtb, TherapyRecommendation
from settings import Settings

from tests.fake_fhir import FakeFhirServer

PATIENT_ID = "P1"


def recommendation_payload(tr_id: str = "mtb_P1_1000_1", entrez: int = 673) -> dict:
    return {
        "id": tr_id,
        "author": "Dr. Who",
        "comment": ["first line", "second line"],
        "evidenceLevel": "m1A",
        "evidenceLevelExtension": "is",
        "evidenceLevelM3Text": "colorectal",
        "treatments": [
            {"name": "Vemurafenib", "ncit_code": "C64768", "synonyms": "PLX4032"},
            {"name": "Cobimetinib", "ncit_code": "C62452"},
        ],
        "references": [{"pmid": 22663011, "name": "BRAF V600E in melanoma"}],
        "reasoning": {
            "geneticAlterations": [{
                "entrezGeneId": entrez, "hugoSymbol": "BRAF", "alteration": "V600E",
                "chromosome": "7", "start": 140453136, "end": 140453136,
                "ref": "A", "alt": "T", "alleleFrequency": 0.4, "dbsnp": "rs113488022",
            }],
            "clinicalData": [
                {"sampleId": "S1", "attributeId": "CANCER_TYPE", "attributeName": "Cancer Type", "value": "Melanoma"},
                {"attributeId": "AGE", "attributeName": "Age", "value": "63"},
                {"attributeId": "SEX", "value": "Female"},
            ],
        },
    }


def sample_recommendation(**kwargs) -> TherapyRecommendation:
    return TherapyRecommendation.model_validate(recommendation_payload(**kwargs))


def sample_mtb(mtb_id: str = "mtb_P1_1000", tr_id: Optional[str] = None, **overrides) -> Mtb:
    data = {
        "id": mtb_id,
        "date": "2021-05-01",
        "author": "Tumor Board",
        "generalRecommendation": "Continue targeted therapy",
        "geneticCounselingRecommendation": True,
        "rebiopsyRecommendation": True,
        "mtbState": "COMPLETED",
        "samples": ["S1"],
        "therapyRecommendations": [recommendation_payload(tr_id or f"{mtb_id}_1")],
    }
    data.update(overrides)
    return Mtb.model_validate(data)


def sample_follow_up(follow_up_id: str = "followUp_P1_0", tr_id: Optional[str] = "mtb_P1_1000_1", **overrides) -> FollowUp:
    data = {
        "id": follow_up_id,
        "therapyRecommendation": recommendation_payload(tr_id) if tr_id else None,
        "date": "2021-08-01",
        "author": "Dr. Who",
        "comment": "tolerated well",
        "therapyRecommendationRealized": True,
        "sideEffect": False,
        "response": {"sd3": True, "pr6": True, "cr12": True},
    }
    data.update(overrides)
    return FollowUp.model_validate(data)


def make_orchestrator(fake: FakeFhirServer, diagnostics_dir: str = "diagnostics", **kwargs: Any) -> MtbOrchestrator:
    settings = Settings(fhir_base=fake.base_url, diagnostics_dir=diagnostics_dir)
    client = FhirClient(settings.fhir_base, transport=fake.transport())
    registry = default_registry(settings.string_clinical_attributes)
    return MtbOrchestrator(client, settings, registry, **kwargs)


def run(orchestrator: MtbOrchestrator, call):
    """Connect the orchestrator's client, await call(orchestrator), close."""
    async def _run():
        async with orchestrator.client:
            return await call(orchestrator)
    return asyncio.run(_run())
