"""Operator certificate schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CertificateUpload(BaseModel):
    """Schema for uploading a PKCS#12 credential bundle."""

    organization_id: str = Field(..., min_length=1, description="Owning organization")
    environment: str = Field("demo", pattern="^(demo|production|prod)$", description="Registry environment")
    bundle_base64: str = Field(..., min_length=1, description="Base64 of the .p12 file")
    password: str = Field(..., description="Bundle password")
    cf_operatore: str = Field(..., min_length=11, max_length=16, description="Operator tax code")
    ragione_sociale: str | None = Field(None, max_length=255, description="Operator legal name")
    num_iscr_sito: str | None = Field(None, description="Site registration code, if known")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "organization_id": "org-1",
                "environment": "demo",
                "bundle_base64": "MIIK...",
                "password": "secret",
                "cf_operatore": "RSSMRA80A01H501U",
                "ragione_sociale": "Autodemolizioni Rossi Srl",
            }
        }
    )


class SiteCodeUpdate(BaseModel):
    num_iscr_sito: str = Field(..., min_length=3, description="Site registration code (OP...-PD00001)")


class CertificateResponse(BaseModel):
    """Certificate metadata. Key material is never returned."""

    id: int
    organization_id: str
    cf_operatore: str
    ragione_sociale: str | None = None
    environment: str
    num_iscr_sito: str | None = None
    subject: str | None = None
    serial_number: str | None = None
    issued_at: datetime
    expires_at: datetime
    is_active: bool
    is_default: bool

    model_config = ConfigDict(from_attributes=True)
