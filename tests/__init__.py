"""
tests/
------
MTB FHIR Bridge — Test Package
------------------------------
Test suites for the MTB FHIR Bridge.

Test Modules:
    - test_identifiers.py: id derivation and patient-scoped validation
    - test_clinical_data.py: clinical attribute handlers and registry
    - test_authorization.py: session and role checks
    - test_fhir_client.py: FHIR REST client (paging, errors, deletes)
    - test_fhir_mapper.py: resource builders and the transaction bundle
    - test_fhir_reader.py: resource graph and readers
    - test_orchestrator.py: write/read cycles against fake_fhir.py
    - test_deletion.py: deletion and cascades
    - test_storage.py: S3 image storage
    - test_settings.py: YAML and environment configuration
    - test_resolvers.py: HGNC, OncoKB and PubMed lookups
    - test_main.py: FastAPI routes, error mapping and access control

Helpers:
    - fake_fhir.py: in-memory FHIR R4 server behind httpx.MockTransport
    - portal_samples.py: portal payloads and a wired orchestrator

Run:
    pytest tests/ -v --tb=short
"""
