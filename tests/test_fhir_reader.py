"""
test_fhir_reader.py
-------------------
MTB FHIR Bridge — Test Suite for fhir_reader.py
-----------------------------------------------
Readers are pure; these tests feed hand-built searchset bundles.

Tests cover:
    - ResourceGraph resolves relative, absolute, versioned and fullUrl references
    - matches() excludes included resources
    - Legacy therapeutic-implication observations read as recommendations
    - Reports without the genomics-report profile are ignored
    - Unknown clinical attributes raise on read
    - Included MedicationStatements are not returned as follow-ups
    - Only response-profiled Observations set response flags
    - Reasoning reads only clinical-datum-profiled Observations as clinical data
    - Presentation slides keep first-appearance order

Run:
    pytest tests/test_fhir_reader.py -v --tb=short

Project: MTB FHIR Bridge
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from clinical_data import default_registry
from errors import UnsupportedAttribute
from fhir_definitions import (
    CLINICAL_ATTRIBUTE_SYSTEM,
    PRESENTATION_FIELD_EXT,
    PRESENTATION_NODE_EXT,
    Profile,
)
from fhir_reader import (
    ResourceGraph,
    read_clinical_datum,
    read_follow_ups,
    read_mtb_sessions,
    read_presentation,
    read_therapy_recommendations,
)
from settings import IdentifierSystems

SYSTEMS = IdentifierSystems()
BASE = "http://fhir.test/fhir"


def _entry(resource, mode="match"):
    return {
        "fullUrl": f"{BASE}/{resource['resourceType']}/{resource['id']}",
        "resource": resource,
        "search": {"mode": mode},
    }


def _bundle(*entries):
    return {"resourceType": "Bundle", "type": "searchset", "entry": list(entries)}


# ── ResourceGraph ──────────────────────────────────────────────────────────────

def test_graph_resolves_reference_forms():
    specimen = {"resourceType": "Specimen", "id": "7"}
    graph = ResourceGraph(_bundle(_entry(specimen, "include")))

    assert graph.resolve({"reference": "Specimen/7"}) is specimen
    assert graph.resolve(f"{BASE}/Specimen/7") is specimen
    assert graph.resolve("Specimen/7/_history/3") is specimen
    assert graph.resolve("Specimen/8") is None
    assert graph.resolve(None) is None


def test_graph_matches_excludes_includes():
    a = {"resourceType": "Observation", "id": "1"}
    b = {"resourceType": "Observation", "id": "2"}
    graph = ResourceGraph(_bundle(_entry(a), _entry(b, "include")))
    assert graph.matches("Observation") == [a]
    assert graph.resources("Observation") == [a, b]


def test_graph_referrers():
    statement = {"resourceType": "MedicationStatement", "id": "1"}
    response = {"resourceType": "Observation", "id": "2", "partOf": [{"reference": "MedicationStatement/1"}]}
    other = {"resourceType": "Observation", "id": "3"}
    graph = ResourceGraph(_bundle(_entry(statement), _entry(response, "include"), _entry(other, "include")))
    assert graph.referrers(statement, "Observation", "partOf") == [response]


# ── Recommendations / sessions ─────────────────────────────────────────────────

def test_legacy_therapeutic_implication_is_read():
    observation = {
        "resourceType": "Observation", "id": "1",
        "meta": {"profile": [Profile.THERAPEUTIC_IMPLICATION.value]},
        "identifier": [{"system": SYSTEMS.therapy_recommendation, "value": "P1_1"}],
    }
    found = read_therapy_recommendations(ResourceGraph(_bundle(_entry(observation))), SYSTEMS, default_registry())
    assert [r.id for r in found] == ["P1_1"]


def test_report_without_genomics_profile_is_ignored():
    report = {"resourceType": "DiagnosticReport", "id": "1",
              "identifier": [{"system": SYSTEMS.mtb, "value": "mtb_P1_1"}]}
    assert read_mtb_sessions(ResourceGraph(_bundle(_entry(report))), SYSTEMS, default_registry()) == []


def test_unknown_clinical_attribute_raises_on_read():
    observation = {
        "resourceType": "Observation", "id": "1",
        "code": {"coding": [{"system": CLINICAL_ATTRIBUTE_SYSTEM, "code": "MUTATION_COUNT"}]},
        "valueString": "12",
    }
    with pytest.raises(UnsupportedAttribute):
        read_clinical_datum(observation, ResourceGraph(_bundle()), SYSTEMS, default_registry())


# ── Follow-ups ─────────────────────────────────────────────────────────────────

def test_included_statements_are_not_follow_ups():
    profile = {"profile": [Profile.MEDICATION_STATEMENT.value]}
    matched = {"resourceType": "MedicationStatement", "id": "1", "meta": profile, "status": "not-taken",
               "identifier": [{"system": SYSTEMS.follow_up, "value": "followUp_P1_0"}]}
    included = {"resourceType": "MedicationStatement", "id": "2", "meta": profile,
                "identifier": [{"system": SYSTEMS.follow_up, "value": "followUp_P1_1"}]}
    graph = ResourceGraph(_bundle(_entry(matched), _entry(included, "include")))

    found = read_follow_ups(graph, SYSTEMS, default_registry())

    assert [f.id for f in found] == ["followUp_P1_0"]
    assert found[0].therapy_recommendation_realized is False


def test_only_response_profile_observations_count_as_responses():
    statement = {"resourceType": "MedicationStatement", "id": "1",
                 "meta": {"profile": [Profile.MEDICATION_STATEMENT.value]},
                 "identifier": [{"system": SYSTEMS.follow_up, "value": "followUp_P1_0"}]}

    def response(obs_id, months, profile):
        observation = {
            "resourceType": "Observation", "id": obs_id,
            "identifier": [{"system": SYSTEMS.response, "value": f"followUp_P1_0_{months}"}],
            "partOf": [{"reference": "MedicationStatement/1"}],
            "valueCodeableConcept": {"coding": [{"code": "C18213"}]},
        }
        if profile:
            observation["meta"] = {"profile": [profile.value]}
        return observation

    graph = ResourceGraph(_bundle(
        _entry(statement),
        _entry(response("2", 3, Profile.RESPONSE), "include"),
        _entry(response("3", 6, None), "include"),
    ))

    found = read_follow_ups(graph, SYSTEMS, default_registry())

    assert found[0].response.sd3 is True
    assert not found[0].response.sd6


def test_reasoning_reads_clinical_data_by_profile():
    recommendation = {
        "resourceType": "Observation", "id": "1",
        "meta": {"profile": [Profile.MEDICATION_EFFICACY.value]},
        "identifier": [{"system": SYSTEMS.therapy_recommendation, "value": "P1_1"}],
        "derivedFrom": [{"reference": "Observation/2"}, {"reference": "Observation/3"}],
    }

    def datum(obs_id, attribute_id, profile):
        observation = {
            "resourceType": "Observation", "id": obs_id,
            "code": {"coding": [{"system": CLINICAL_ATTRIBUTE_SYSTEM, "code": attribute_id}]},
            "valueString": "Melanoma",
        }
        if profile:
            observation["meta"] = {"profile": [profile.value]}
        return observation

    graph = ResourceGraph(_bundle(
        _entry(recommendation),
        _entry(datum("2", "CANCER_TYPE", Profile.CLINICAL_DATUM), "include"),
        _entry(datum("3", "ONCOTREE_CODE", None), "include"),
    ))

    found = read_therapy_recommendations(graph, SYSTEMS, default_registry(["CANCER_TYPE", "ONCOTREE_CODE"]))

    assert [d.attribute_id for d in found[0].reasoning.clinical_data] == ["CANCER_TYPE"]


# ── Presentation ───────────────────────────────────────────────────────────────

def _node(slide, node_id, top):
    return {"url": PRESENTATION_NODE_EXT, "extension": [
        {"url": PRESENTATION_FIELD_EXT["slide_id"], "valueString": slide},
        {"url": PRESENTATION_FIELD_EXT["node_id"], "valueString": node_id},
        {"url": PRESENTATION_FIELD_EXT["left"], "valueInteger": 0},
        {"url": PRESENTATION_FIELD_EXT["top"], "valueInteger": top},
        {"url": PRESENTATION_FIELD_EXT["type"], "valueString": "text"},
    ]}


def test_presentation_slide_order():
    second = "00000000-0000-0000-0000-000000000002"
    first = "00000000-0000-0000-0000-000000000001"
    basic = {"resourceType": "Basic", "id": "1", "extension": [
        _node(second, "a", 0), _node(first, "b", 0), _node(second, "c", 50),
    ]}

    presentation = read_presentation(basic)

    assert [str(k) for k in presentation.slides] == [second, first]
    assert [n.id for n in presentation.slides[list(presentation.slides)[0]]] == ["a", "c"]
    assert presentation.slides[list(presentation.slides)[0]][1].position.top == 50
