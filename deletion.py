"""
deletion.py
-----------
MTB FHIR Bridge: Deletion Coordinator
-------------------------------------
Deletes MTB sessions, therapy recommendations and follow-ups of one patient.

Every target id is checked against the requesting patient before anything
is deleted, so one forged id fails the whole request with
``InvalidArgument`` and no partial deletion.

Each target is then deleted by conditional DELETE on its identifier,
followed by its dependents:

    MTB session            DiagnosticReport → CarePlan, rec-followup Tasks
    therapy recommendation Observation      → medication-change Task
    follow-up              MedicationStatement → response Observations
                           (the Observations that are part-of the statement,
                           looked up before it is deleted and then deleted
                           one by one by server id)

Targets are independent remote operations with no cross-target atomicity.
A failing primary delete propagates; a failing cascade step is logged and
its siblings still run.  A response search that fails, or that stops before
its last page, is reported as a cascade failure.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable, List, Tuple

from errors import UpstreamUnavailable
from fhir_client import FhirAPIError, FhirClient, next_link
from fhir_mapper import COUNSELING_SUFFIX, REBIOPSY_SUFFIX
from identifiers import (
    FOLLOW_UP_PREFIX,
    MTB_PREFIX,
    THERAPY_RECOMMENDATION_PREFIXES,
    identifier_token,
    validate_scoped_id,
)
from schemas import Deletions
from settings import IdentifierSystems

logger = logging.getLogger(__name__)


class DeletionCoordinator:

    def __init__(self, client: FhirClient, systems: IdentifierSystems, search_pages: int = 100) -> None:
        self.client = client
        self.systems = systems
        self.search_pages = search_pages

    @staticmethod
    def validate(patient_id: str, deletions: Deletions) -> None:
        """Raise ``InvalidArgument`` if any target is not scoped to *patient_id*."""
        for mtb_id in deletions.mtb:
            validate_scoped_id(mtb_id, patient_id, MTB_PREFIX)
        for recommendation_id in deletions.therapy_recommendation:
            validate_scoped_id(recommendation_id, patient_id, THERAPY_RECOMMENDATION_PREFIXES)
        for follow_up_id in deletions.follow_up:
            validate_scoped_id(follow_up_id, patient_id, FOLLOW_UP_PREFIX)

    async def delete_entries(self, patient_id: str, deletions: Deletions) -> List[str]:
        """
        Delete every target in *deletions*.

        Returns:
            Descriptions of cascade steps that failed (empty when all succeeded).

        Raises:
            InvalidArgument:     a target id is not scoped to *patient_id*.
            FhirAPIError:        a primary delete was refused.
            UpstreamUnavailable: the repository could not be reached.
        """
        self.validate(patient_id, deletions)

        failures: List[str] = []
        for mtb_id in deletions.mtb:
            failures.extend(await self.delete_mtb(mtb_id))
        for follow_up_id in deletions.follow_up:
            failures.extend(await self.delete_follow_up(follow_up_id))
        for recommendation_id in deletions.therapy_recommendation:
            failures.extend(await self.delete_therapy_recommendation(recommendation_id))

        logger.info(
            "deletion: patient %s, %d mtb, %d recommendation, %d follow-up target(s), %d cascade failure(s)",
            patient_id, len(deletions.mtb), len(deletions.therapy_recommendation),
            len(deletions.follow_up), len(failures),
        )
        return failures

    async def delete_mtb(self, mtb_id: str) -> List[str]:
        mtb = self.systems.mtb
        await self.client.delete_conditional("DiagnosticReport", mtb, mtb_id)
        return await self._cascade([
            (f"CarePlan {mtb_id}", partial(self.client.delete_conditional, "CarePlan", mtb, mtb_id)),
            (f"Task {mtb_id}_{REBIOPSY_SUFFIX}",
             partial(self.client.delete_conditional, "Task", mtb, f"{mtb_id}_{REBIOPSY_SUFFIX}")),
            (f"Task {mtb_id}_{COUNSELING_SUFFIX}",
             partial(self.client.delete_conditional, "Task", mtb, f"{mtb_id}_{COUNSELING_SUFFIX}")),
        ])

    async def delete_therapy_recommendation(self, recommendation_id: str) -> List[str]:
        system = self.systems.therapy_recommendation
        await self.client.delete_conditional("Observation", system, recommendation_id)
        return await self._cascade([
            (f"Task {recommendation_id}",
             partial(self.client.delete_conditional, "Task", system, recommendation_id)),
        ])

    async def delete_follow_up(self, follow_up_id: str) -> List[str]:
        statements = await self.client.search_all(
            "MedicationStatement", [("identifier", identifier_token(self.systems.follow_up, follow_up_id))]
        )
        statement_ids = [
            e["resource"]["id"] for e in statements.get("entry", [])
            if (e.get("resource") or {}).get("id")
        ]

        failures: List[str] = []
        responses: List[str] = []
        for statement_id in statement_ids:
            try:
                found = await self.client.search_all(
                    "Observation",
                    [("part-of", f"MedicationStatement/{statement_id}")],
                    max_pages=self.search_pages,
                )
            except (FhirAPIError, UpstreamUnavailable) as exc:
                logger.warning("deletion: response search for %s failed: %s", follow_up_id, exc)
                failures.append(f"response search {follow_up_id}")
                continue
            if next_link(found):
                logger.warning("deletion: response search for %s is incomplete", follow_up_id)
                failures.append(f"response search {follow_up_id}")
            responses.extend(
                e["resource"]["id"] for e in found.get("entry", [])
                if (e.get("resource") or {}).get("resourceType") == "Observation"
                and e["resource"].get("id")
            )

        await self.client.delete_conditional("MedicationStatement", self.systems.follow_up, follow_up_id)

        logger.debug("deletion: %d response observation(s) for %s", len(responses), follow_up_id)
        failures.extend(await self._cascade([
            (f"Observation/{i}", partial(self.client.delete, "Observation", i)) for i in responses
        ]))
        return failures

    async def _cascade(self, steps: List[Tuple[str, Callable[[], Any]]]) -> List[str]:
        failures = []
        for label, step in steps:
            try:
                await step()
            except (FhirAPIError, UpstreamUnavailable) as exc:
                logger.warning("deletion: cascade step %s failed: %s", label, exc)
                failures.append(label)
        return failures
