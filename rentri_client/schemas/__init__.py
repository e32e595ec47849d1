"""Pydantic schemas for API request/response validation."""

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

__all__ = [
    "CertificateUpload",
    "CertificateResponse",
    "SiteCodeUpdate",
    "RegistroResponse",
    "PushRequest",
    "PushResponse",
    "PullRequest",
    "PullResponse",
    "TransactionStatusResponse",
    "TransactionResultResponse",
]
