"""
test_fhir_client.py
-------------------
MTB FHIR Bridge — Test Suite for fhir_client.py
-----------------------------------------------
Uses httpx.MockTransport so no FHIR server is needed.

Tests cover:
    - Calling before connect() raises RuntimeError
    - transaction() rejects non-transaction bundles
    - Non-2xx responses raise FhirAPIError with the raw body
    - Network failures raise UpstreamUnavailable
    - search_all() follows next links and keeps repeated includes once
    - A search cut off at max_pages keeps its pending next link
    - delete_conditional() sends the identifier token
    - delete() ignores 404 / 410 but propagates other errors

Run:
    pytest tests/test_fhir_client.py -v --tb=short

Project: MTB FHIR Bridge
"""

import asyncio
import pytest
import sys
import os

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import UpstreamUnavailable
from fhir_client import FhirAPIError, FhirClient, next_link


BASE = "http://fhir.test/fhir/"


def _run(handler, call):
    """Open a client over *handler*, await call(client), close it."""
    async def run():
        async with FhirClient(BASE, transport=httpx.MockTransport(handler)) as client:
            return await call(client)
    return asyncio.run(run())


# ── Lifecycle / validation ─────────────────────────────────────────────────────

def test_request_before_connect_raises():
    client = FhirClient(BASE)
    with pytest.raises(RuntimeError):
        asyncio.run(client.search("Patient"))


def test_transaction_rejects_non_transaction_bundle():
    handler = lambda request: httpx.Response(200, json={})
    with pytest.raises(ValueError):
        _run(handler, lambda c: c.transaction({"resourceType": "Bundle", "type": "batch"}))


def test_transaction_posts_to_base():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"resourceType": "Bundle", "type": "transaction-response"})

    bundle = {"resourceType": "Bundle", "type": "transaction", "entry": []}
    result = _run(handler, lambda c: c.transaction(bundle))
    assert seen == {"method": "POST", "url": "http://fhir.test/fhir"}
    assert result["type"] == "transaction-response"


# ── Errors ─────────────────────────────────────────────────────────────────────

def test_non_2xx_raises_fhir_api_error_with_body():
    handler = lambda request: httpx.Response(422, text='{"resourceType":"OperationOutcome"}')
    bundle = {"resourceType": "Bundle", "type": "transaction", "entry": []}
    with pytest.raises(FhirAPIError) as exc_info:
        _run(handler, lambda c: c.transaction(bundle))
    assert exc_info.value.status_code == 422
    assert "OperationOutcome" in exc_info.value.body


def test_network_failure_raises_upstream_unavailable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamUnavailable):
        _run(handler, lambda c: c.search("Patient"))


# ── Search ─────────────────────────────────────────────────────────────────────

def test_search_sends_repeated_params():
    """Repeated keys such as _include survive as separate query parameters."""
    seen = {}

    def handler(request):
        seen["params"] = request.url.params.multi_items()
        return httpx.Response(200, json={"resourceType": "Bundle", "type": "searchset"})

    params = [("_include", "DiagnosticReport:result"), ("_include", "DiagnosticReport:specimen")]
    _run(handler, lambda c: c.search("DiagnosticReport", params))
    assert seen["params"] == params


def test_search_all_follows_next_links():
    """Entries from every page are merged; a repeated include is kept once."""
    pages = {
        "/fhir/Observation": {
            "entry": [
                {"fullUrl": "http://fhir.test/fhir/Observation/1", "resource": {"resourceType": "Observation", "id": "1"}},
                {"fullUrl": "http://fhir.test/fhir/Patient/9", "resource": {"resourceType": "Patient", "id": "9"}},
            ],
            "link": [{"relation": "next", "url": "http://fhir.test/fhir?page=2"}],
        },
        "/fhir": {
            "entry": [
                {"fullUrl": "http://fhir.test/fhir/Observation/2", "resource": {"resourceType": "Observation", "id": "2"}},
                {"fullUrl": "http://fhir.test/fhir/Patient/9", "resource": {"resourceType": "Patient", "id": "9"}},
            ],
        },
    }

    def handler(request):
        return httpx.Response(200, json=dict(pages[request.url.path], resourceType="Bundle"))

    result = _run(handler, lambda c: c.search_all("Observation"))
    assert result["total"] == 3
    assert [e["resource"]["id"] for e in result["entry"]] == ["1", "9", "2"]


def test_search_all_stops_at_max_pages():
    def handler(request):
        return httpx.Response(200, json={
            "resourceType": "Bundle",
            "entry": [],
            "link": [{"relation": "next", "url": "http://fhir.test/fhir/loop"}],
        })

    result = _run(handler, lambda c: c.search_all("Observation", max_pages=3))
    assert result["total"] == 0
    assert next_link(result) == "http://fhir.test/fhir/loop"


def test_search_all_complete_result_has_no_next_link():
    def handler(request):
        return httpx.Response(200, json={"resourceType": "Bundle", "entry": []})

    result = _run(handler, lambda c: c.search_all("Observation"))
    assert next_link(result) is None


# ── Deletes ────────────────────────────────────────────────────────────────────

def test_delete_conditional_sends_identifier_token():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["identifier"] = request.url.params.get("identifier")
        return httpx.Response(200, json={})

    _run(handler, lambda c: c.delete_conditional("CarePlan", "https://cbioportal.org/mtb/", "mtb_P1_1"))
    assert seen == {
        "method":     "DELETE",
        "path":       "/fhir/CarePlan",
        "identifier": "https://cbioportal.org/mtb/|mtb_P1_1",
    }


@pytest.mark.parametrize("status", [404, 410])
def test_delete_ignores_already_gone(status):
    handler = lambda request: httpx.Response(status, text="gone")
    assert _run(handler, lambda c: c.delete("Observation", "7")) is None


def test_delete_propagates_conflict():
    handler = lambda request: httpx.Response(409, text="conflict")
    with pytest.raises(FhirAPIError):
        _run(handler, lambda c: c.delete("Observation", "7"))
