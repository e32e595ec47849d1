"""Core modules for the RENTRI client."""

from rentri_client.core.certificate_store import CertificateStore
from rentri_client.core.movimento_builder import build_movimento_payload, validate_movimento
from rentri_client.core.registro_manager import RegistroLifecycleManager
from rentri_client.core.registry_client import RegistryClient, compute_digest
from rentri_client.core.retry import RetryPolicy
from rentri_client.core.token_signer import TokenCache, TokenSigner
from rentri_client.core.transmission import TransmissionPipeline

__all__ = [
    "CertificateStore",
    "RegistroLifecycleManager",
    "RegistryClient",
    "RetryPolicy",
    "TokenCache",
    "TokenSigner",
    "TransmissionPipeline",
    "build_movimento_payload",
    "compute_digest",
    "validate_movimento",
]
