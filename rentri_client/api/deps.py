"""API dependencies for database access and Registry collaborators."""

import logging
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from rentri_client.core.errors import RentriError
from rentri_client.core.registro_manager import RegistroLifecycleManager
from rentri_client.core.token_signer import TokenSigner
from rentri_client.core.transmission import TransmissionPipeline
from rentri_client.db.database import get_db

logger = logging.getLogger(__name__)


def get_signer(request: Request) -> TokenSigner:
    """Process-wide signer kept on app state so its token cache is shared.

    Args
    ----
        request: FastAPI request object

    Returns
    -------
        TokenSigner instance
    """
    if getattr(request.app.state, "token_signer", None) is None:
        request.app.state.token_signer = TokenSigner()
    return request.app.state.token_signer


def get_transport(request: Request) -> httpx.AsyncBaseTransport | None:
    """Optional httpx transport override (tests install a MockTransport)."""
    return getattr(request.app.state, "registry_transport", None)


DbSession = Annotated[Session, Depends(get_db)]
Signer = Annotated[TokenSigner, Depends(get_signer)]
Transport = Annotated[httpx.AsyncBaseTransport | None, Depends(get_transport)]


def get_pipeline(db: DbSession, signer: Signer, transport: Transport) -> TransmissionPipeline:
    return TransmissionPipeline(db, signer=signer, transport=transport)


def get_registro_manager(db: DbSession, signer: Signer, transport: Transport) -> RegistroLifecycleManager:
    return RegistroLifecycleManager(db, signer=signer, transport=transport)


Pipeline = Annotated[TransmissionPipeline, Depends(get_pipeline)]
RegistroManager = Annotated[RegistroLifecycleManager, Depends(get_registro_manager)]


def to_http_exception(error: RentriError) -> HTTPException:
    """Translate a client error into an HTTPException carrying its detail."""
    if error.status_code >= 500:
        logger.error(f"{type(error).__name__}: {error.message}")
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
