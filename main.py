"""
main.py
-------
MTB FHIR Bridge: FastAPI server
-------------------------------
HTTP surface consumed by the cBioPortal MTB/follow-up frontend.  Every route
delegates to ``MtbOrchestrator``; error kinds from errors.py are mapped to
status codes by the exception handlers below.

Endpoints:
    GET    /health                            Service health check
    GET    /mtb/{patientId}/permission        202 if the caller may write
    GET    /mtb/{patientId}                   MTB sessions (newest first)
    PUT    /mtb/{patientId}                   Upsert MTB sessions, 201 echo
    DELETE /mtb/{patientId}                   Delete sessions / recommendations / follow-ups
    POST   /mtb/alteration                    Recommendations made for the given genes
    POST   /mtb/alteration/pmid               Citations used for the given genes
    GET    /followup/{patientId}/permission   202 if the caller may write
    GET    /followup/{patientId}              Follow-ups
    PUT    /followup/{patientId}              Upsert follow-ups, 201 echo
    DELETE /followup/{patientId}              Delete follow-ups (same body as /mtb)
    POST   /followup/alteration               Follow-ups of recommendations for the given genes
    POST   /presentation/{patientId}/image    Store an image, 201 ImageResponse
    GET    /presentation/{patientId}          Presentation layout
    POST   /presentation/{patientId}          Save presentation layout
    DELETE /presentation/{patientId}          Delete presentation layout

Access control applies only when ``login_required`` is set: reads need a
valid portal session (``studyId`` query parameter + ``JSESSIONID`` cookie);
writes, deletes and permission checks additionally need a matching role in
``X-USERROLES``.

Run:
    uvicorn main:app --port 3001

Project: MTB FHIR Bridge
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from authorization import AuthorizationGate
from clinical_data import default_registry
from errors import (
    AmbiguousMatch,
    AuthorizationDenied,
    InvalidArgument,
    NotFound,
    TransactionRejected,
    UpstreamUnavailable,
)
from fhir_client import FhirAPIError, FhirClient
from orchestrator import MtbOrchestrator
from resolvers import DrugResolver, GeneResolver, PubMedTitleResolver
from schemas import (
    CbioportalRest,
    Deletions,
    GeneticAlteration,
    Image,
    Presentation,
    to_portal,
)
from settings import Settings, load_settings
from storage import ObjectStorage

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "MTB FHIR Bridge"


# ── Application context ────────────────────────────────────────────────────────

class AppContext:
    """
    Everything a request needs, built once at startup.

    ``clients`` are the objects with async ``connect()`` / ``close()`` that
    the lifespan opens and closes.
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: MtbOrchestrator,
        gate: AuthorizationGate,
        clients: Optional[List[Any]] = None,
    ) -> None:
        self.settings = settings
        self.orchestrator = orchestrator
        self.gate = gate
        self.clients = list(clients or [])

    async def start(self) -> None:
        for client in self.clients:
            await client.connect()

    async def stop(self) -> None:
        for client in reversed(self.clients):
            await client.close()


def build_context(settings: Settings) -> AppContext:
    """Wire the FHIR client, resolvers, storage and gate from *settings*."""
    client = FhirClient(settings.fhir_base, timeout=settings.timeout_s)
    pubmed = PubMedTitleResolver(settings.pubmed_url, timeout=settings.timeout_s)
    gate = AuthorizationGate(settings.portal_url, timeout=settings.timeout_s)
    orchestrator = MtbOrchestrator(
        client,
        settings,
        default_registry(settings.string_clinical_attributes),
        genes=GeneResolver.from_tsv(settings.hgnc_path),
        drugs=DrugResolver.from_json(settings.oncokb_path),
        pubmed=pubmed,
        storage=ObjectStorage.from_settings(settings),
    )
    return AppContext(settings, orchestrator, gate, clients=[client, pubmed, gate])


# ── Access checks ──────────────────────────────────────────────────────────────

async def _require_read(request: Request, patient_id: str) -> None:
    ctx: AppContext = request.app.state.ctx
    if not ctx.settings.login_required:
        return
    granted = await ctx.gate.validate_session(
        patient_id,
        request.query_params.get("studyId"),
        request.cookies.get("JSESSIONID"),
    )
    if not granted:
        raise AuthorizationDenied(f"read access to {patient_id} denied")


async def _require_write(request: Request, patient_id: str) -> None:
    ctx: AppContext = request.app.state.ctx
    if not ctx.settings.login_required:
        return
    await _require_read(request, patient_id)
    granted = ctx.gate.validate_manipulation(
        patient_id,
        request.query_params.get("studyId"),
        request.headers.get("X-USERROLES"),
        request.headers.get("X-USERLOGIN"),
    )
    if not granted:
        raise AuthorizationDenied(f"write access to {patient_id} denied")


# ── Error mapping ──────────────────────────────────────────────────────────────

def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(AuthorizationDenied)
    async def _forbidden(request: Request, exc: AuthorizationDenied) -> Response:
        logger.info("403 %s %s: %s", request.method, request.url.path, exc)
        return Response(status_code=403)

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> Response:
        logger.info("404 %s %s: %s", request.method, request.url.path, exc)
        return PlainTextResponse("not found", status_code=404)

    @app.exception_handler(AmbiguousMatch)
    async def _ambiguous(request: Request, exc: AmbiguousMatch) -> Response:
        logger.error("500 %s %s: %s", request.method, request.url.path, exc)
        return PlainTextResponse("multiple matches for identifier found", status_code=500)

    @app.exception_handler(InvalidArgument)
    async def _invalid(request: Request, exc: InvalidArgument) -> Response:
        logger.warning("422 %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": str(exc)}, status_code=422)

    @app.exception_handler(TransactionRejected)
    async def _rejected(request: Request, exc: TransactionRejected) -> Response:
        logger.error("422 %s %s: %s", request.method, request.url.path, exc)
        return PlainTextResponse("unprocessable entity", status_code=422)

    @app.exception_handler(UpstreamUnavailable)
    async def _upstream(request: Request, exc: UpstreamUnavailable) -> Response:
        logger.error("500 %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": "upstream service unavailable"}, status_code=500)

    @app.exception_handler(FhirAPIError)
    async def _repository(request: Request, exc: FhirAPIError) -> Response:
        logger.error("500 %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": "repository error"}, status_code=500)


# ── FastAPI app ────────────────────────────────────────────────────────────────

def create_app(context: Optional[AppContext] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Args:
        context:  pre-built context (tests); otherwise one is built from
                  *settings* when the app starts.
        settings: defaults to ``load_settings()``.
    """
    settings = context.settings if context is not None else (settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = getattr(app.state, "ctx", None) or build_context(settings)
        app.state.ctx = ctx
        await ctx.start()
        logger.info("%s %s started (FHIR base %s)", SERVICE_NAME, VERSION, settings.fhir_base)
        try:
            yield
        finally:
            await ctx.stop()

    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        description="Maps cBioPortal MTB records to and from a FHIR R4 repository.",
        lifespan=lifespan,
    )
    if context is not None:
        app.state.ctx = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    def _orchestrator(request: Request) -> MtbOrchestrator:
        return request.app.state.ctx.orchestrator

    @app.get("/health")
    def health_check() -> dict:
        """
        Return service health status.

        Returns:
            dict: service, version, status, timestamp.
        """
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ── MTB ────────────────────────────────────────────────────────────────

    @app.get("/mtb/{patient_id}/permission")
    async def mtb_permission(patient_id: str, request: Request) -> Response:
        await _require_write(request, patient_id)
        return Response(status_code=202)

    @app.get("/mtb/{patient_id}")
    async def get_mtbs(patient_id: str, request: Request) -> dict:
        await _require_read(request, patient_id)
        mtbs = await _orchestrator(request).get_mtbs(patient_id)
        return to_portal(CbioportalRest(id=patient_id, mtbs=mtbs))

    @app.put("/mtb/{patient_id}", status_code=201)
    async def put_mtbs(patient_id: str, body: CbioportalRest, request: Request) -> Any:
        await _require_write(request, patient_id)
        await _orchestrator(request).save_mtbs(patient_id, body.mtbs or [])
        return await request.json()

    @app.delete("/mtb/{patient_id}")
    async def delete_mtb_entries(patient_id: str, body: Deletions, request: Request) -> Any:
        await _require_write(request, patient_id)
        await _orchestrator(request).delete_entries(patient_id, body)
        return await request.json()

    @app.post("/mtb/alteration")
    async def mtb_by_alteration(alterations: List[GeneticAlteration], request: Request) -> list:
        found = await _orchestrator(request).get_therapy_recommendations_by_alteration(alterations)
        return [to_portal(r) for r in found]

    @app.post("/mtb/alteration/pmid")
    async def pmids_by_alteration(alterations: List[GeneticAlteration], request: Request) -> list:
        found = await _orchestrator(request).get_pmids_by_alteration(alterations)
        return [to_portal(r) for r in found]

    # ── Follow-up ──────────────────────────────────────────────────────────

    @app.get("/followup/{patient_id}/permission")
    async def follow_up_permission(patient_id: str, request: Request) -> Response:
        await _require_write(request, patient_id)
        return Response(status_code=202)

    @app.get("/followup/{patient_id}")
    async def get_follow_ups(patient_id: str, request: Request) -> dict:
        await _require_read(request, patient_id)
        follow_ups = await _orchestrator(request).get_follow_ups(patient_id)
        return to_portal(CbioportalRest(id=patient_id, follow_ups=follow_ups))

    @app.put("/followup/{patient_id}", status_code=201)
    async def put_follow_ups(patient_id: str, body: CbioportalRest, request: Request) -> Any:
        await _require_write(request, patient_id)
        await _orchestrator(request).save_follow_ups(patient_id, body.follow_ups or [])
        return await request.json()

    @app.delete("/followup/{patient_id}")
    async def delete_follow_up_entries(patient_id: str, body: Deletions, request: Request) -> Any:
        await _require_write(request, patient_id)
        await _orchestrator(request).delete_entries(patient_id, body)
        return await request.json()

    @app.post("/followup/alteration")
    async def follow_ups_by_alteration(alterations: List[GeneticAlteration], request: Request) -> list:
        found = await _orchestrator(request).get_follow_ups_by_alteration(alterations)
        return [to_portal(f) for f in found]

    # ── Presentation ───────────────────────────────────────────────────────

    @app.post("/presentation/{patient_id}/image", status_code=201)
    async def upload_image(patient_id: str, image: Image, request: Request) -> dict:
        await _require_write(request, patient_id)
        stored = await _orchestrator(request).upload_image(patient_id, image)
        return to_portal(stored)

    @app.get("/presentation/{patient_id}")
    async def get_presentation(patient_id: str, request: Request) -> dict:
        await _require_read(request, patient_id)
        presentation = await _orchestrator(request).load_presentation(patient_id)
        return to_portal(presentation)

    @app.post("/presentation/{patient_id}")
    async def save_presentation(patient_id: str, body: Presentation, request: Request) -> Response:
        await _require_write(request, patient_id)
        await _orchestrator(request).save_presentation(patient_id, body)
        return PlainTextResponse("ok")

    @app.delete("/presentation/{patient_id}", status_code=204)
    async def delete_presentation(patient_id: str, request: Request) -> Response:
        await _require_write(request, patient_id)
        await _orchestrator(request).delete_presentation(patient_id)
        return Response(status_code=204)


app = create_app()
