"""
orchestrator.py
---------------
MTB FHIR Bridge: Transaction Orchestrator
-----------------------------------------
Read and write entry points per portal aggregate: MTB session list,
follow-up list, alteration-keyed lookups, presentation layout and images.

Write path (one call):

    assemble bundle ──► submit ──► success:        done
                                ├─► rejected:       raw response body and the
                                │                   bundle written to
                                │                   <diagnostics_dir>/transaction-error-*.json,
                                │                   TransactionRejected raised
                                └─► network error:  UpstreamUnavailable raised

There is no automatic retry.  A transaction may have been partially applied
by the server, so replay is left to an operator with the diagnostic file.

Read path: one graph-expanding search (``_include`` / ``_revinclude``),
followed by the pure readers in fhir_reader.py.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from clinical_data import ClinicalDataRegistry
from deletion import DeletionCoordinator
from errors import AmbiguousMatch, NotFound, TransactionRejected
from fhir_client import FhirAPIError, FhirClient
from fhir_definitions import NCBI_GENE_SYSTEM
from fhir_mapper import (
    MappingContext,
    TransactionBundle,
    build_binary,
    build_follow_up,
    build_mtb,
    build_patient,
    build_presentation,
)
from fhir_reader import (
    ResourceGraph,
    read_follow_ups,
    read_mtb_sessions,
    read_presentation,
    read_references,
    read_therapy_recommendations,
    therapy_recommendation_observations,
)
from identifiers import (
    FOLLOW_UP_PREFIX,
    MTB_PREFIX,
    derive_follow_up_id,
    derive_mtb_id,
    identifier_token,
    validate_scoped_id,
)
from schemas import (
    Deletions,
    FollowUp,
    GeneticAlteration,
    Image,
    ImageResponse,
    Mtb,
    Presentation,
    Reference,
    TherapyRecommendation,
)
from settings import Settings

logger = logging.getLogger(__name__)

# Graph expansion for MTB reads: report → recommendations → reasoning → specimens,
# plus the tasks that focus on the report.
MTB_GRAPH_PARAMS = [
    ("_include", "DiagnosticReport:result"),
    ("_include", "DiagnosticReport:specimen"),
    ("_include:iterate", "Observation:derived-from"),
    ("_include:iterate", "Observation:specimen"),
    ("_revinclude", "Task:focus"),
]

FOLLOW_UP_GRAPH_PARAMS = [
    ("_include", "MedicationStatement:part-of"),
    ("_include:iterate", "Observation:derived-from"),
    ("_include:iterate", "Observation:specimen"),
    ("_revinclude", "Observation:part-of"),
]

ALTERATION_GRAPH_PARAMS = [
    ("_revinclude", "Observation:derived-from"),
    ("_include:iterate", "Observation:derived-from"),
    ("_include:iterate", "Observation:specimen"),
]


class MtbOrchestrator:
    """
    Args:
        client:   connected ``FhirClient``.
        settings: process settings (identifier systems, diagnostics dir, FHIR base).
        registry: clinical attribute handlers.
        genes:    optional ``resolvers.GeneResolver``.
        drugs:    optional ``resolvers.DrugResolver``.
        pubmed:   optional ``resolvers.PubMedTitleResolver``; without it
                  citations keep whatever title the portal sent.
        storage:  optional ``storage.ObjectStorage``; without it images are
                  stored as FHIR Binary resources.
    """

    def __init__(
        self,
        client: FhirClient,
        settings: Settings,
        registry: ClinicalDataRegistry,
        genes: Optional[Any] = None,
        drugs: Optional[Any] = None,
        pubmed: Optional[Any] = None,
        storage: Optional[Any] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.systems = settings.systems
        self.registry = registry
        self.pubmed = pubmed
        self.storage = storage
        self.ctx = MappingContext(settings.systems, registry, genes=genes, drugs=drugs)
        self.deletions = DeletionCoordinator(client, settings.systems)

    # ── Shared helpers ───────────────────────────────────────────────────────

    async def find_patient(self, patient_id: str) -> Optional[Dict[str, Any]]:
        """
        The Patient carrying ``patient system|patient_id``, or ``None``.

        Raises:
            AmbiguousMatch: more than one Patient carries the identifier.
        """
        bundle = await self.client.search(
            "Patient", [("identifier", identifier_token(self.systems.patient, patient_id))]
        )
        patients = ResourceGraph(bundle).matches("Patient")
        if len(patients) > 1:
            raise AmbiguousMatch(f"{len(patients)} patients carry identifier {patient_id}")
        return patients[0] if patients else None

    def _new_bundle(self, patient_id: str) -> tuple:
        bundle = TransactionBundle()
        patient_ref = bundle.add(build_patient(patient_id, self.systems)[0])
        return bundle, patient_ref

    async def _submit(self, bundle: TransactionBundle, label: str) -> Dict[str, Any]:
        payload = bundle.to_dict()
        try:
            return await self.client.transaction(payload)
        except FhirAPIError as exc:
            path = self._write_diagnostic(label, exc, payload)
            logger.error(
                "orchestrator: %s transaction rejected with HTTP %d (diagnostics: %s)",
                label, exc.status_code, path,
            )
            raise TransactionRejected(exc.status_code, exc.body, path) from exc

    def _write_diagnostic(
        self, label: str, exc: FhirAPIError, payload: Dict[str, Any]
    ) -> Optional[str]:
        """Persist the rejection body and the submitted bundle for manual replay."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        path = os.path.join(
            self.settings.diagnostics_dir,
            f"transaction-error-{stamp}-{uuid.uuid4().hex[:8]}.json",
        )
        try:
            os.makedirs(self.settings.diagnostics_dir, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "operation": label,
                        "status":    exc.status_code,
                        "response":  exc.body,
                        "bundle":    payload,
                    },
                    f,
                    indent=2,
                )
        except OSError as write_exc:
            logger.error("orchestrator: could not write diagnostic file %s: %s", path, write_exc)
            return None
        return path

    async def _resolve_titles(self, references: Iterable[Reference]) -> None:
        """Fill missing citation titles in place, one PubMed call per distinct pmid."""
        if self.pubmed is None:
            return
        titles: Dict[int, Optional[str]] = {}
        for reference in references:
            if reference.pmid is None or reference.name:
                continue
            if reference.pmid not in titles:
                titles[reference.pmid] = await self.pubmed.title(reference.pmid)
            reference.name = titles[reference.pmid]

    async def _new_mtb_id(self, patient_id: str, taken: set) -> str:
        """``mtb_<patientId>_<now>``, bumped by one millisecond while the id is in *taken* or stored."""
        millis = int(time.time() * 1000)
        while True:
            mtb_id = derive_mtb_id(patient_id, millis)
            if mtb_id not in taken:
                bundle = await self.client.search(
                    "DiagnosticReport",
                    [("identifier", identifier_token(self.systems.mtb, mtb_id)), ("_summary", "count")],
                )
                if not (bundle.get("total") or bundle.get("entry")):
                    taken.add(mtb_id)
                    return mtb_id
            millis += 1

    # ── MTB sessions ─────────────────────────────────────────────────────────

    async def get_mtbs(self, patient_id: str) -> List[Mtb]:
        """MTB sessions of *patient_id*, newest first; empty for an unknown patient."""
        patient = await self.find_patient(patient_id)
        if patient is None:
            return []
        bundle = await self.client.search_all(
            "DiagnosticReport",
            [("subject", f"Patient/{patient['id']}")] + MTB_GRAPH_PARAMS,
        )
        return read_mtb_sessions(ResourceGraph(bundle), self.systems, self.registry)

    async def save_mtbs(self, patient_id: str, mtbs: List[Mtb]) -> List[Mtb]:
        """
        Upsert *mtbs* for *patient_id* in one transaction.

        Sessions without an id get ``mtb_<patientId>_<now>``, made unique
        within the payload and against the stored sessions.

        Returns:
            The sessions as written (ids derived, citation titles resolved).

        Raises:
            InvalidArgument:      a session id belongs to another patient.
            UnsupportedAttribute: a clinical datum has no handler.
            TransactionRejected:  the repository refused the bundle.
        """
        mtbs = [m.model_copy(deep=True) for m in mtbs]
        for mtb in mtbs:
            if mtb.id:
                validate_scoped_id(mtb.id, patient_id, MTB_PREFIX)
        taken = {mtb.id for mtb in mtbs if mtb.id}
        for mtb in mtbs:
            if not mtb.id:
                mtb.id = await self._new_mtb_id(patient_id, taken)

        await self._resolve_titles(
            ref for mtb in mtbs for tr in mtb.therapy_recommendations for ref in tr.references
        )

        bundle, patient_ref = self._new_bundle(patient_id)
        for mtb in mtbs:
            bundle.extend(build_mtb(mtb, patient_ref, self.ctx))

        await self._submit(bundle, f"save mtbs {patient_id}")
        logger.info("orchestrator: saved %d MTB session(s) for %s", len(mtbs), patient_id)
        return mtbs

    # ── Follow-ups ───────────────────────────────────────────────────────────

    async def get_follow_ups(self, patient_id: str) -> List[FollowUp]:
        patient = await self.find_patient(patient_id)
        if patient is None:
            return []
        bundle = await self.client.search_all(
            "MedicationStatement",
            [("subject", f"Patient/{patient['id']}")] + FOLLOW_UP_GRAPH_PARAMS,
        )
        return read_follow_ups(ResourceGraph(bundle), self.systems, self.registry)

    async def _stored_follow_up_ids(self, patient_id: str) -> List[str]:
        patient = await self.find_patient(patient_id)
        if patient is None:
            return []
        bundle = await self.client.search_all(
            "MedicationStatement",
            [("subject", f"Patient/{patient['id']}"), ("_elements", "identifier")],
        )
        return [
            identifier["value"]
            for entry in bundle.get("entry", [])
            for identifier in (entry.get("resource") or {}).get("identifier") or []
            if identifier.get("system") == self.systems.follow_up and identifier.get("value")
        ]

    async def save_follow_ups(self, patient_id: str, follow_ups: List[FollowUp]) -> List[FollowUp]:
        """
        Upsert *follow_ups* for *patient_id* in one transaction.

        Follow-ups without an id are numbered after the highest
        ``followUp_<patientId>_<n>`` already stored for the patient or present
        in the payload.
        """
        follow_ups = [f.model_copy(deep=True) for f in follow_ups]
        prefix = FOLLOW_UP_PREFIX.format(patient_id=patient_id)
        for follow_up in follow_ups:
            if follow_up.id:
                validate_scoped_id(follow_up.id, patient_id, FOLLOW_UP_PREFIX)

        if any(not f.id for f in follow_ups):
            used = _sequence_numbers((f.id for f in follow_ups if f.id), prefix)
            used += _sequence_numbers(await self._stored_follow_up_ids(patient_id), prefix)
            next_seq = max(used) + 1 if used else 0
            for follow_up in follow_ups:
                if not follow_up.id:
                    follow_up.id = derive_follow_up_id(patient_id, next_seq)
                    next_seq += 1

        bundle, patient_ref = self._new_bundle(patient_id)
        for follow_up in follow_ups:
            bundle.extend(build_follow_up(follow_up, patient_ref, self.ctx))

        await self._submit(bundle, f"save follow-ups {patient_id}")
        logger.info("orchestrator: saved %d follow-up(s) for %s", len(follow_ups), patient_id)
        return follow_ups

    # ── Alteration lookups ───────────────────────────────────────────────────

    async def _alteration_graph(self, alterations: List[GeneticAlteration]) -> ResourceGraph:
        """
        One search over variant Observations of the given genes, with the
        recommendations derived from them reverse-included.
        """
        entrez = sorted({a.entrez_gene_id for a in alterations if a.entrez_gene_id is not None})
        if not entrez:
            return ResourceGraph({})
        token = ",".join(identifier_token(NCBI_GENE_SYSTEM, str(e)) for e in entrez)
        bundle = await self.client.search_all(
            "Observation", [("component-value-concept", token)] + ALTERATION_GRAPH_PARAMS
        )
        return ResourceGraph(bundle)

    async def get_therapy_recommendations_by_alteration(
        self, alterations: List[GeneticAlteration]
    ) -> List[TherapyRecommendation]:
        graph = await self._alteration_graph(alterations)
        return read_therapy_recommendations(graph, self.systems, self.registry)

    async def get_pmids_by_alteration(self, alterations: List[GeneticAlteration]) -> List[Reference]:
        graph = await self._alteration_graph(alterations)
        return read_references(therapy_recommendation_observations(graph))

    async def get_follow_ups_by_alteration(
        self, alterations: List[GeneticAlteration]
    ) -> List[FollowUp]:
        """Follow-ups of the recommendations previously made for the given genes."""
        graph = await self._alteration_graph(alterations)
        ids = sorted({o["id"] for o in therapy_recommendation_observations(graph) if o.get("id")})
        if not ids:
            return []
        bundle = await self.client.search_all(
            "MedicationStatement",
            [("part-of", ",".join(f"Observation/{i}" for i in ids))] + FOLLOW_UP_GRAPH_PARAMS,
        )
        return read_follow_ups(ResourceGraph(bundle), self.systems, self.registry)

    # ── Deletions ────────────────────────────────────────────────────────────

    async def delete_entries(self, patient_id: str, deletions: Deletions) -> List[str]:
        return await self.deletions.delete_entries(patient_id, deletions)

    # ── Presentation ─────────────────────────────────────────────────────────

    async def load_presentation(self, patient_id: str) -> Presentation:
        """
        Raises:
            NotFound:       no presentation for *patient_id*.
            AmbiguousMatch: more than one presentation carries the identifier.
        """
        bundle = await self.client.search(
            "Basic", [("identifier", identifier_token(self.systems.patient, patient_id))]
        )
        matches = ResourceGraph(bundle).matches("Basic")
        if not matches:
            raise NotFound(f"No presentation for patient {patient_id}")
        if len(matches) > 1:
            raise AmbiguousMatch(f"{len(matches)} presentations for patient {patient_id}")
        return read_presentation(matches[0])

    async def save_presentation(self, patient_id: str, presentation: Presentation) -> None:
        """Upsert the presentation, then prune stored images it no longer uses."""
        bundle, patient_ref = self._new_bundle(patient_id)
        bundle.extend(build_presentation(presentation, patient_id, patient_ref, self.systems))
        await self._submit(bundle, f"save presentation {patient_id}")

        if self.storage is not None:
            await asyncio.to_thread(
                self.storage.remove_unused_images, patient_id, presentation.image_urls()
            )

    async def delete_presentation(self, patient_id: str) -> None:
        try:
            await self.client.delete_conditional("Basic", self.systems.patient, patient_id)
        except FhirAPIError as exc:
            raise TransactionRejected(exc.status_code, exc.body) from exc
        if self.storage is not None:
            await asyncio.to_thread(self.storage.remove_unused_images, patient_id, [])

    async def upload_image(self, patient_id: str, image: Image) -> ImageResponse:
        """
        Store *image* and return its URL: object storage when configured,
        otherwise a FHIR Binary (URL relative to the FHIR base).
        """
        if self.storage is not None:
            url = await asyncio.to_thread(self.storage.upload_image, image, patient_id)
            return ImageResponse(url=url, content_type=image.content_type)

        bundle = TransactionBundle()
        bundle.extend(build_binary(image))
        response = await self._submit(bundle, f"upload image {patient_id}")
        entries = response.get("entry") or [{}]
        location = (entries[0].get("response") or {}).get("location", "")
        location = location.split("/_history/", 1)[0]
        if not location:
            raise TransactionRejected(200, json.dumps(response), None)
        return ImageResponse(url=f"{self.settings.fhir_base}{location}", content_type=image.content_type)


def _sequence_numbers(ids: Iterable[str], prefix: str) -> List[int]:
    """The ``<n>`` of every ``<prefix><n>`` in *ids*."""
    return [int(i[len(prefix):]) for i in ids if i.startswith(prefix) and i[len(prefix):].isdigit()]
