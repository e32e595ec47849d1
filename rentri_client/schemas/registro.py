"""Registro and movement transmission schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RegistroResponse(BaseModel):
    id: int
    organization_id: str
    tipo: str
    environment: str
    rentri_id: str | None = None
    attivita: list[str] = Field(default_factory=list)
    attivita_rec_smalt: list[str] = Field(default_factory=list)
    sync_status: str
    sync_at: datetime | None = None
    sync_error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PushRequest(BaseModel):
    """Schema for submitting movements of a registro."""

    movimento_ids: list[int] = Field(..., description="Local movement ids to transmit")


class PushResponse(BaseModel):
    transazione_id: str = Field(..., description="Registry transaction id")
    location: str | None = Field(None, description="Polling URL returned by the Registry")
    movimenti_trasmessi: int
    skipped_ids: list[int] = Field(default_factory=list)
    errori_validazione: list[dict[str, Any]] = Field(default_factory=list)


class PullRequest(BaseModel):
    organization_id: str = Field(..., min_length=1)
    registro_id: int | None = Field(None, description="Limit the pull to one registro")


class PullResponse(BaseModel):
    registri_sincronizzati: int
    movimenti_sincronizzati: int
    dettagli: list[dict[str, Any]] = Field(default_factory=list)
    errori: list[dict[str, Any]] = Field(default_factory=list)


class TransactionStatusResponse(BaseModel):
    transazione_id: str
    completed: bool
    http_status: int
    location: str | None = None


class TransactionResultResponse(BaseModel):
    transazione_id: str
    esito: dict[str, Any]
    synced: int
    errors: int
