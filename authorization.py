"""
authorization.py
----------------
MTB FHIR Bridge: Authorization Gate
-----------------------------------
Two independent predicates.  When ``login_required`` is set, reads need the
first and every write, delete and permission check needs both.

  1. Session validation.  The caller's ``JSESSIONID`` cookie is forwarded to
     the portal's per-study, per-patient endpoint

         GET <portal_url>api/studies/{studyId}/patients/{patientId}

     Only an upstream 200 grants access; any other status, a network
     failure, or a missing ``studyId`` denies.

  2. Manipulation validation.  The ``X-USERROLES`` header is a serialised
     array-like string (``"StudyA","PatientX"``).  Roles are extracted as
     double-quoted tokens by regular expression.  Access is granted when a
     role, used as a pattern, fully matches the requested study id, or when
     a role equals the requested patient id.  Missing roles or study id deny.

Neither predicate raises: both answer ``True``/``False`` and the HTTP layer
turns ``False`` into 403.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

import httpx

logger = logging.getLogger(__name__)

_ROLE_TOKEN = re.compile(r'"([^"]*)"')


def parse_roles(roles_header: Optional[str]) -> List[str]:
    """Double-quoted tokens of *roles_header*, in order."""
    return _ROLE_TOKEN.findall(roles_header or "")


def role_grants(role: str, study_id: str, patient_id: str) -> bool:
    """True if *role* matches *study_id* as a full-match pattern or equals *patient_id*."""
    if role == patient_id:
        return True
    try:
        return re.fullmatch(role, study_id) is not None
    except re.error:
        logger.warning("authorization: role %r is not a valid pattern, skipped.", role)
        return False


class AuthorizationGate:
    """
    Args:
        portal_url: portal base URL ending in ``/``.
        timeout:    seconds, for the session validation call.
        transport:  optional ``httpx`` transport for tests.
    """

    def __init__(
        self,
        portal_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.portal_url = portal_url if portal_url.endswith("/") else portal_url + "/"
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def validate_session(
        self,
        patient_id: str,
        study_id: Optional[str],
        session_id: Optional[str],
    ) -> bool:
        """Delegate the read check to the portal; only HTTP 200 grants."""
        if not study_id:
            logger.info("authorization: no studyId query parameter, denying.")
            return False

        await self.connect()
        url = f"{self.portal_url}api/studies/{study_id}/patients/{patient_id}"
        headers = {"Accept": "application/json"}
        if session_id:
            headers["Cookie"] = f"JSESSIONID={session_id}"
        try:
            resp = await self._http.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("authorization: portal unreachable (%s), denying.", exc)
            return False

        logger.info("authorization: session check %s → %d", url, resp.status_code)
        return resp.status_code == 200

    def validate_manipulation(
        self,
        patient_id: str,
        study_id: Optional[str],
        roles_header: Optional[str],
        login: Optional[str] = None,
    ) -> bool:
        """Role-grammar check for writes; see the module docstring."""
        logger.info(
            "authorization: manipulation request from %s for patient %s study %s",
            login or "<unknown>", patient_id, study_id,
        )
        if not roles_header or not study_id:
            logger.info("authorization: roles or studyId missing, denying.")
            return False

        for role in parse_roles(roles_header):
            if role_grants(role, study_id, patient_id):
                logger.info("authorization: granted with role %s", role)
                return True

        logger.info("authorization: no matching role, denying.")
        return False
