"""Database module for the RENTRI client."""

from rentri_client.db.database import get_db, init_db
from rentri_client.db.models import Base, Movimento, OperatorCertificate, Registro, Transazione

__all__ = [
    "Base",
    "OperatorCertificate",
    "Registro",
    "Movimento",
    "Transazione",
    "get_db",
    "init_db",
]
