"""
resolvers.py
------------
MTB FHIR Bridge: Reference-Data Resolvers
-----------------------------------------
Lookups that complete portal records before they are mapped:

  * ``GeneResolver``          entrez gene id → HGNC id and approved symbol,
                              from the HGNC complete-set TSV export.
  * ``DrugResolver``          drug name → NCIT code, from the OncoKB drug list
                              (JSON array of ``{"drugName", "ncitCode",
                              "synonyms"}``).
  * ``PubMedTitleResolver``   PubMed id → article title via NCBI E-utilities
                              ``esummary``.

The file-backed resolvers are loaded once at startup and are read-only
afterwards.  A missing path yields an empty resolver; lookups then return
``None`` and the builders keep whatever the portal sent.

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import csv
import json
import logging
from typing import Any, Dict, Iterable, NamedTuple, Optional

import httpx

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class GeneInfo(NamedTuple):
    hgnc_id: str
    symbol: str


class GeneResolver:
    """In-memory HGNC table keyed by entrez id."""

    def __init__(self, genes: Optional[Dict[int, GeneInfo]] = None) -> None:
        self._by_entrez: Dict[int, GeneInfo] = dict(genes or {})

    @classmethod
    def from_tsv(cls, path: Optional[str]) -> "GeneResolver":
        """
        Load the HGNC TSV (columns ``hgnc_id``, ``symbol``, ``entrez_id``).

        Rows without an entrez id are skipped.  ``path=None`` returns an
        empty resolver.
        """
        genes: Dict[int, GeneInfo] = {}
        if not path:
            return cls(genes)
        with open(path, "r", encoding="utf-8", newline="") as f:
            for row in csv.DictReader(f, delimiter="\t"):
                entrez = (row.get("entrez_id") or "").strip()
                if not entrez.isdigit():
                    continue
                genes[int(entrez)] = GeneInfo(
                    hgnc_id=(row.get("hgnc_id") or "").strip(),
                    symbol=(row.get("symbol") or "").strip(),
                )
        logger.info("resolvers: loaded %d HGNC genes from %s", len(genes), path)
        return cls(genes)

    def lookup(self, entrez_gene_id: int) -> Optional[GeneInfo]:
        return self._by_entrez.get(int(entrez_gene_id))

    def __len__(self) -> int:
        return len(self._by_entrez)


class DrugResolver:
    """Case-insensitive drug name / synonym → NCIT code."""

    def __init__(self, codes: Optional[Dict[str, str]] = None) -> None:
        self._codes = {k.strip().lower(): v for k, v in (codes or {}).items()}

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "DrugResolver":
        codes: Dict[str, str] = {}
        for record in records:
            code = record.get("ncitCode")
            if not code:
                continue
            for name in [record.get("drugName")] + list(record.get("synonyms") or []):
                if name:
                    codes.setdefault(name, code)
        return cls(codes)

    @classmethod
    def from_json(cls, path: Optional[str]) -> "DrugResolver":
        if not path:
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            resolver = cls.from_records(json.load(f))
        logger.info("resolvers: loaded %d drug names from %s", len(resolver._codes), path)
        return resolver

    def ncit_code(self, name: str) -> Optional[str]:
        return self._codes.get((name or "").strip().lower())


class PubMedTitleResolver:
    """
    Async PubMed title lookup.

    Args:
        url:       esummary endpoint.
        timeout:   seconds, per request.
        transport: optional ``httpx`` transport for tests.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
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

    async def title(self, pmid: int) -> Optional[str]:
        """
        Return the article title for *pmid*, or ``None`` if PubMed has none.

        Raises:
            UpstreamUnavailable: the service could not be reached or answered
                                 with a non-200 status.
        """
        await self.connect()
        try:
            resp = await self._http.get(
                self.url, params={"db": "pubmed", "id": str(pmid), "retmode": "json"}
            )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"PubMed unreachable: {exc}") from exc
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"PubMed answered HTTP {resp.status_code} for {pmid}")

        summary = (resp.json().get("result") or {}).get(str(pmid)) or {}
        title = summary.get("title")
        if not title:
            logger.warning("resolvers: no PubMed title for pmid %s", pmid)
        return title or None
