"""
fhir_client.py
--------------
MTB FHIR Bridge: FHIR R4 Repository Client
------------------------------------------
Async FHIR R4 client for the clinical data repository (HAPI FHIR or any
server supporting transaction bundles, conditional update/delete and
``_include`` / ``_revinclude`` graph expansion).

One client is created at startup and shared by all requests; it holds no
per-request state, so concurrent reuse needs no locking.

Operations:
  * ``transaction()``         POST a ``type=transaction`` Bundle to the base URL.
  * ``search()``              GET ``/<Type>?...``  → searchset Bundle (one page).
  * ``search_all()``          Same, following ``next`` links into one Bundle.
  * ``delete_conditional()``  DELETE ``/<Type>?identifier=<system>|<value>``.
  * ``delete()``              DELETE ``/<Type>/<id>``.

No call is retried.  Non-2xx answers raise ``FhirAPIError`` carrying the raw
body; transport failures and timeouts raise ``errors.UpstreamUnavailable``.

Usage (async context manager):
    async with FhirClient("http://localhost:8080/fhir/") as client:
        bundle = await client.search("Patient", [("identifier", "sys|P1")])

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from errors import UpstreamUnavailable
from identifiers import identifier_token

logger = logging.getLogger(__name__)

_FHIR_JSON = "application/fhir+json"

SearchParams = Sequence[Tuple[str, str]]


class FhirAPIError(Exception):
    """Raised when a FHIR API call returns a non-2xx response."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"FHIR API error {status_code}: {body[:500]}")


class FhirClient:
    """
    Async FHIR R4 REST client.

    Args:
        base_url:  FHIR base URL, e.g. ``http://localhost:8080/fhir/``.
        timeout:   Connect/read timeout in seconds, applied to every call.
        transport: Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": _FHIR_JSON},
            )
            logger.debug("FhirClient: HTTP transport initialised (%s).", self.base_url)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("FhirClient: HTTP transport closed.")

    async def __aenter__(self) -> "FhirClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── Internal request helper ──────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[SearchParams] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Execute a FHIR request and return the parsed JSON body.

        Args:
            method: HTTP method.
            url:    Path relative to the base URL (``"/Patient"``) or an
                    absolute URL (paging links).
            params: Query parameters; a sequence of pairs so that repeated
                    keys such as ``_include`` survive.
            json:   Request body.

        Raises:
            RuntimeError:        ``connect()`` was not called.
            FhirAPIError:        non-2xx status.
            UpstreamUnavailable: network failure or timeout.
        """
        if self._http is None:
            raise RuntimeError(
                "FhirClient is not connected. "
                "Use 'async with FhirClient(...) as client:' or call connect() first."
            )

        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        headers = {"Content-Type": _FHIR_JSON} if json is not None else None

        try:
            resp = await self._http.request(
                method,
                url,
                params=list(params) if params else None,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"FHIR repository unreachable: {exc}") from exc

        if resp.status_code not in range(200, 300):
            raise FhirAPIError(resp.status_code, resp.text)

        return resp.json() if resp.content else {}

    # ── Public API ───────────────────────────────────────────────────────────

    async def transaction(self, bundle: Dict[str, Any]) -> Dict[str, Any]:
        """
        Submit a transaction Bundle and return the transaction-response Bundle.

        The server applies every entry or none of them.

        Raises:
            ValueError:          *bundle* is not a transaction Bundle.
            FhirAPIError:        the server rejected the bundle (e.g. 422).
            UpstreamUnavailable: the server could not be reached.
        """
        if bundle.get("resourceType") != "Bundle" or bundle.get("type") != "transaction":
            raise ValueError("Expected a Bundle with type 'transaction'.")

        logger.debug(
            "FhirClient: POST transaction (%d entries).", len(bundle.get("entry", []))
        )
        response = await self._request("POST", "", json=bundle)
        logger.info(
            "FhirClient: transaction committed (%d entries).",
            len(response.get("entry", [])),
        )
        return response

    async def search(
        self,
        resource_type: str,
        params: Optional[SearchParams] = None,
    ) -> Dict[str, Any]:
        """Search ``/<resource_type>`` and return the first searchset page."""
        logger.debug("FhirClient: GET /%s params=%s", resource_type, params or "<all>")
        return await self._request("GET", f"/{resource_type}", params=params)

    async def search_all(
        self,
        resource_type: str,
        params: Optional[SearchParams] = None,
        max_pages: int = 100,
    ) -> Dict[str, Any]:
        """
        Search and follow ``next`` links, returning one Bundle with every entry.

        Included resources repeated across pages are kept once.  When
        *max_pages* is reached before the last page, the returned Bundle keeps
        the pending ``next`` link so callers can tell it is incomplete.
        """
        page = await self.search(resource_type, params)
        entries: List[Dict[str, Any]] = list(page.get("entry", []))
        seen = {e.get("fullUrl") for e in entries if e.get("fullUrl")}

        pending = None
        for _ in range(max_pages - 1):
            next_url = next_link(page)
            if not next_url:
                break
            page = await self._request("GET", next_url)
            for entry in page.get("entry", []):
                full_url = entry.get("fullUrl")
                if full_url and full_url in seen:
                    continue
                seen.add(full_url)
                entries.append(entry)
        else:
            pending = next_link(page)
            if pending:
                logger.warning(
                    "FhirClient: search /%s truncated after %d pages.",
                    resource_type, max_pages,
                )

        bundle: Dict[str, Any] = {
            "resourceType": "Bundle",
            "type":         "searchset",
            "total":        len(entries),
            "entry":        entries,
        }
        if pending:
            bundle["link"] = [{"relation": "next", "url": pending}]
        return bundle

    async def delete_conditional(self, resource_type: str, system: str, value: str) -> None:
        """Delete every ``resource_type`` whose identifier is ``system|value``."""
        logger.debug("FhirClient: DELETE /%s?identifier=%s|%s", resource_type, system, value)
        await self._request(
            "DELETE",
            f"/{resource_type}",
            params=[("identifier", identifier_token(system, value))],
        )

    async def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete ``resource_type/resource_id``; an already-gone resource is not an error."""
        logger.debug("FhirClient: DELETE /%s/%s", resource_type, resource_id)
        try:
            await self._request("DELETE", f"/{resource_type}/{resource_id}")
        except FhirAPIError as exc:
            if exc.status_code not in (404, 410):
                raise
            logger.debug("FhirClient: %s/%s already gone.", resource_type, resource_id)


def next_link(bundle: Dict[str, Any]) -> Optional[str]:
    for link in bundle.get("link", []):
        if link.get("relation") == "next":
            return link.get("url")
    return None
