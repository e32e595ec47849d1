"""Registry endpoints consumed by the back-office UI."""

import base64
import binascii
import logging

from fastapi import APIRouter, HTTPException, Query, status

from rentri_client.api.deps import DbSession, Pipeline, RegistroManager, to_http_exception
from rentri_client.config import Environment
from rentri_client.core.certificate_store import CertificateStore
from rentri_client.core.errors import CertificateMissing, RentriError
from rentri_client.core.registro_manager import default_site_code
from rentri_client.core.registry_client import SERVICE_PATHS, RegistryClient
from rentri_client.schemas.certificate import CertificateResponse, CertificateUpload, SiteCodeUpdate
from rentri_client.schemas.registro import (
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
    RegistroResponse,
    TransactionResultResponse,
    TransactionStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ENVIRONMENT_PATTERN = "^(demo|production|prod)$"


# ----------------------------------------------------------------------
# Certificates
# ----------------------------------------------------------------------


@router.post("/certificati", response_model=CertificateResponse, status_code=status.HTTP_201_CREATED)
async def upload_certificate(data: CertificateUpload, db: DbSession):
    """Upload a PKCS#12 bundle and make it the default certificate."""
    try:
        bundle = base64.b64decode(data.bundle_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=400, detail="bundle_base64 is not valid base64") from e

    try:
        return CertificateStore(db).ingest_bundle(
            organization_id=data.organization_id,
            environment=data.environment,
            bundle=bundle,
            password=data.password,
            cf_operatore=data.cf_operatore,
            ragione_sociale=data.ragione_sociale,
            num_iscr_sito=data.num_iscr_sito,
        )
    except RentriError as e:
        raise to_http_exception(e) from e


@router.get("/certificati/active", response_model=CertificateResponse)
async def get_active_certificate(
    db: DbSession,
    organization_id: str = Query(...),
    environment: str = Query("demo", pattern=ENVIRONMENT_PATTERN),
):
    cert = CertificateStore(db).select_certificate(organization_id, environment)
    if cert is None:
        raise to_http_exception(CertificateMissing(f"No active certificate for organization {organization_id}"))
    return cert


@router.get("/certificati/expiring", response_model=list[CertificateResponse])
async def list_expiring_certificates(db: DbSession, days: int = Query(30, ge=0, le=365)):
    return CertificateStore(db).expiring_certificates(days)


@router.put("/certificati/{certificate_id}/sito", response_model=CertificateResponse)
async def set_certificate_site(certificate_id: int, data: SiteCodeUpdate, db: DbSession):
    try:
        return CertificateStore(db).set_site_code(certificate_id, data.num_iscr_sito)
    except RentriError as e:
        raise to_http_exception(e) from e


# ----------------------------------------------------------------------
# Registry lookups
# ----------------------------------------------------------------------


@router.get("/status/{service}")
async def service_status(service: str, pipeline: Pipeline, environment: str = Query("demo", pattern=ENVIRONMENT_PATTERN)):
    """Reachability of one Registry service family."""
    if service not in SERVICE_PATHS:
        raise HTTPException(status_code=404, detail=f"Unknown service: {service}")
    client: RegistryClient = pipeline.client_for(environment)
    try:
        response = await client.get_service_status(service)
    except RentriError as e:
        raise to_http_exception(e) from e
    return {
        "service": service,
        "environment": Environment.parse(environment).value,
        "status": response.status,
        "ok": True,
        "body": response.parsed_json,
    }


@router.get("/codifiche/{tabella}")
async def lookup_codifica(
    tabella: str,
    db: DbSession,
    pipeline: Pipeline,
    organization_id: str = Query(...),
    environment: str = Query("demo", pattern=ENVIRONMENT_PATTERN),
):
    try:
        cert = CertificateStore(db).require_active(organization_id, environment)
        response = await pipeline.client_for(environment).lookup_codifica(tabella, cert)
    except RentriError as e:
        raise to_http_exception(e) from e
    return response.parsed_json


@router.get("/siti")
async def list_sites(
    db: DbSession,
    manager: RegistroManager,
    organization_id: str = Query(...),
    environment: str = Query("demo", pattern=ENVIRONMENT_PATTERN),
    num_iscr: str | None = Query(None, description="Operator registration number"),
):
    try:
        cert = CertificateStore(db).require_active(organization_id, environment)
        sites = await manager.fetch_sites(cert, num_iscr)
    except RentriError as e:
        raise to_http_exception(e) from e
    return {"siti": sites, "default_num_iscr_sito": default_site_code(sites)}


@router.get("/siti/autorizzazioni")
async def site_authorizations(
    db: DbSession,
    manager: RegistroManager,
    organization_id: str = Query(...),
    num_iscr_sito: str = Query(...),
    environment: str = Query("demo", pattern=ENVIRONMENT_PATTERN),
):
    try:
        cert = CertificateStore(db).require_active(organization_id, environment)
        autorizzazioni = await manager.fetch_site_authorizations(cert, num_iscr_sito)
    except RentriError as e:
        raise to_http_exception(e) from e
    return {"num_iscr_sito": num_iscr_sito, "autorizzazioni": autorizzazioni}


# ----------------------------------------------------------------------
# Registri and movements
# ----------------------------------------------------------------------


@router.post("/registri/{registro_id}/create", response_model=RegistroResponse)
async def create_registro(registro_id: int, manager: RegistroManager):
    """Create a local registro on the Registry."""
    try:
        return await manager.create_remote(registro_id)
    except RentriError as e:
        raise to_http_exception(e) from e


@router.post(
    "/registri/{registro_id}/movimenti",
    response_model=PushResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def push_movimenti(registro_id: int, data: PushRequest, pipeline: Pipeline):
    """Transmit movements; confirmation arrives asynchronously."""
    try:
        result = await pipeline.push_movimenti(registro_id, data.movimento_ids)
    except RentriError as e:
        raise to_http_exception(e) from e
    return PushResponse(
        transazione_id=result.transazione_id,
        location=result.location,
        movimenti_trasmessi=len(result.submitted_ids),
        skipped_ids=result.skipped_ids,
        errori_validazione=result.validation_errors,
    )


@router.post("/movimenti/sync", response_model=PullResponse)
async def sync_movimenti(data: PullRequest, pipeline: Pipeline):
    """Pull remote movements into local storage."""
    try:
        summary = await pipeline.pull_movimenti(data.organization_id, data.registro_id)
    except RentriError as e:
        raise to_http_exception(e) from e
    return PullResponse(
        registri_sincronizzati=len(summary.registri),
        movimenti_sincronizzati=summary.total_synced,
        dettagli=summary.registri,
        errori=summary.errors,
    )


# ----------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------


@router.get("/transazioni/{transazione_id}/status", response_model=TransactionStatusResponse)
async def transaction_status(
    transazione_id: str,
    pipeline: Pipeline,
    organization_id: str | None = Query(None),
    environment: str | None = Query(None, pattern=ENVIRONMENT_PATTERN),
):
    try:
        result = await pipeline.check_transaction(transazione_id, organization_id, environment)
    except RentriError as e:
        raise to_http_exception(e) from e
    return TransactionStatusResponse(**vars(result))


@router.get("/transazioni/{transazione_id}/result", response_model=TransactionResultResponse)
async def transaction_result(
    transazione_id: str,
    pipeline: Pipeline,
    organization_id: str | None = Query(None),
    environment: str | None = Query(None, pattern=ENVIRONMENT_PATTERN),
):
    try:
        result = await pipeline.fetch_transaction_result(transazione_id, organization_id, environment)
    except RentriError as e:
        raise to_http_exception(e) from e
    return TransactionResultResponse(**vars(result))
