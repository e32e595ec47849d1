"""Registro lifecycle: remote creation and site lookups."""

import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx
from sqlalchemy.orm import Session

from rentri_client.config import Environment
from rentri_client.core.certificate_store import CertificateStore
from rentri_client.core.errors import (
    ConfigurationError,
    NotFoundError,
    ProtocolViolation,
    RegistroAlreadyBound,
    RentriError,
)
from rentri_client.core.registry_client import RegistryClient
from rentri_client.core.token_signer import TokenSigner
from rentri_client.db.models import OperatorCertificate, Registro
from rentri_client.utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ATTIVITA = "Produzione"
AUTHORIZED_ATTIVITA = frozenset({"Recupero", "Smaltimento"})


def operator_code(num_iscr_sito: str) -> str:
    """Operator registration number from a site code (``OP...-PD00001`` → ``OP...``)."""
    code = (num_iscr_sito or "").split("-")[0].strip()
    if not code:
        raise ConfigurationError(f"Invalid site registration code: {num_iscr_sito!r}")
    return code


def harvest_authorization_codes(autorizzazioni: Any) -> list[str]:
    """Collect recovery/disposal codes listed in site authorizations."""
    codes: list[str] = []
    if not isinstance(autorizzazioni, list):
        return codes
    for entry in autorizzazioni:
        if not isinstance(entry, Mapping):
            continue
        values = entry.get("attivita_rec_smalt") or []
        if isinstance(values, str):
            values = [values]
        if entry.get("codice_attivita"):
            values = [*values, entry["codice_attivita"]]
        for value in values:
            if isinstance(value, Mapping):
                value = value.get("codice")
            if value and value not in codes:
                codes.append(str(value))
    return codes


def default_site_code(sites: list[Mapping[str, Any]]) -> str | None:
    """Legal seat if present, else the first site."""
    if not sites:
        return None
    for site in sites:
        if site.get("is_sede_legale"):
            return site.get("num_iscr_sito")
    return sites[0].get("num_iscr_sito")


class RegistroLifecycleManager:
    """Creates registers on the Registry and resolves their activities.

    Args:
        db: Database session
        signer: Token signer
        clients: Pre-built Registry clients per environment
        transport: httpx transport for clients created on demand
    """

    def __init__(
        self,
        db: Session,
        signer: TokenSigner | None = None,
        clients: Mapping[Environment, RegistryClient] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.certificates = CertificateStore(db)
        self.signer = signer or TokenSigner()
        self._clients: dict[Environment, RegistryClient] = dict(clients or {})
        self._transport = transport

    def client_for(self, environment: Environment | str) -> RegistryClient:
        env = Environment.parse(environment)
        if env not in self._clients:
            self._clients[env] = RegistryClient.for_environment(
                env, signer=self.signer, transport=self._transport
            )
        return self._clients[env]

    async def create_remote(self, registro_id: int) -> Registro:
        """Create the register on the Registry and bind its identifier.

        Args:
            registro_id: Local register id

        Returns:
            The Registro, now carrying ``rentri_id``

        Raises:
            NotFoundError: Register does not exist
            RegistroAlreadyBound: Register already has a remote identifier
            ConfigurationError: No certificate or no site code configured
            RegistryRejection / TransportError: Registry call failed; the
                register is marked ``error`` and left unbound
        """
        registro = self.db.get(Registro, registro_id)
        if registro is None:
            raise NotFoundError(f"Registro {registro_id} not found")
        if registro.rentri_id:
            raise RegistroAlreadyBound(
                f"Registro {registro_id} already created remotely",
                detail={"rentri_id": registro.rentri_id},
            )

        cert = self.certificates.require_active(registro.organization_id, registro.environment)
        if not cert.num_iscr_sito:
            raise ConfigurationError(
                "Site registration code (num_iscr_sito) missing on certificate; "
                "configure the local unit before creating registers"
            )

        attivita, codes = await self._resolve_activities(registro, cert)
        payload: dict[str, Any] = {
            "num_iscr_sito": cert.num_iscr_sito,
            "attivita": attivita,
        }
        if registro.descrizione:
            payload["descrizione"] = registro.descrizione
        if codes:
            payload["attivita_rec_smalt"] = codes

        logger.info(f"Creating registro {registro.id} on site {cert.num_iscr_sito} with activities {attivita}")
        try:
            response = await self.client_for(registro.environment).request(
                "POST",
                "anagrafiche",
                "/registri",
                certificate=cert,
                json_body=payload,
                sign_integrity=True,
            )
            body = response.parsed_json if isinstance(response.parsed_json, Mapping) else {}
            rentri_id = body.get("identificativo")
            if not rentri_id:
                logger.error(f"Registro creation answered {response.status} without identificativo")
                raise ProtocolViolation(
                    "Registry did not return a registro identifier",
                    detail={"status": response.status, "body": response.parsed_json or response.text},
                )
        except RentriError as e:
            registro.sync_status = "error"
            registro.sync_error = e.detail if isinstance(e.detail, str) else json.dumps(
                e.detail if e.detail is not None else e.message, ensure_ascii=False, default=str
            )
            registro.sync_at = utcnow()
            self.db.commit()
            logger.error(f"Remote creation of registro {registro.id} failed: {e.message}")
            raise

        registro.rentri_id = rentri_id
        registro.attivita = attivita
        registro.attivita_rec_smalt = codes
        registro.sync_status = "synced"
        registro.sync_error = None
        registro.sync_at = utcnow()
        self.db.commit()
        self.db.refresh(registro)
        logger.info(f"✅ Registro {registro.id} created remotely: {rentri_id}")
        return registro

    async def _resolve_activities(
        self, registro: Registro, cert: OperatorCertificate
    ) -> tuple[list[str], list[str]]:
        codes = list(registro.attivita_rec_smalt or [])
        if registro.attivita:
            attivita = list(registro.attivita)
        else:
            attivita = [DEFAULT_ATTIVITA]
            if codes and registro.tipo in ("carico", "carico_scarico"):
                attivita.append("Recupero")

        if codes or not AUTHORIZED_ATTIVITA.intersection(attivita):
            return attivita, codes

        try:
            autorizzazioni = await self.fetch_site_authorizations(cert)
            codes = harvest_authorization_codes(autorizzazioni)
        except RentriError as e:
            logger.warning(f"Site authorizations unavailable for {cert.num_iscr_sito}: {e.message}")
            codes = []

        if not codes:
            dropped = sorted(AUTHORIZED_ATTIVITA.intersection(attivita))
            attivita = [a for a in attivita if a not in AUTHORIZED_ATTIVITA] or [DEFAULT_ATTIVITA]
            logger.warning(
                f"No authorization codes for registro {registro.id}; dropped activities {dropped}"
            )
        return attivita, codes

    async def fetch_site_authorizations(
        self,
        cert: OperatorCertificate,
        num_iscr_sito: str | None = None,
    ) -> list:
        """Authorizations of a local unit from the Registry."""
        site = num_iscr_sito or cert.num_iscr_sito
        if not site:
            raise ConfigurationError("Site registration code (num_iscr_sito) is required")
        response = await self.client_for(cert.environment).request(
            "GET",
            "anagrafiche",
            f"/operatore/{operator_code(site)}/siti/{site}/autorizzazioni",
            certificate=cert,
        )
        data = response.parsed_json
        return data if isinstance(data, list) else []

    async def fetch_sites(self, cert: OperatorCertificate, num_iscr: str | None = None) -> list[dict]:
        """Local units registered for the operator."""
        operatore = num_iscr or (operator_code(cert.num_iscr_sito) if cert.num_iscr_sito else None)
        if not operatore:
            raise ConfigurationError("Operator registration number is required to list sites")
        response = await self.client_for(cert.environment).request(
            "GET",
            "anagrafiche",
            f"/operatore/{operatore}/siti",
            certificate=cert,
        )
        data = response.parsed_json
        return data if isinstance(data, list) else []
