"""Operator Certificate Store.

Holds operator certificates extracted from PKCS#12 credential bundles and
selects the one to sign with for an (organization, environment) pair.
"""

import logging
from datetime import timedelta

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rentri_client.config import Environment
from rentri_client.core.errors import (
    CertificateExpired,
    CertificateMissing,
    InvalidCredentials,
    NotFoundError,
    RentriError,
)
from rentri_client.db.models import OperatorCertificate
from rentri_client.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


class CertificateStore:
    """Certificate lifecycle service.

    Selection, credential-bundle ingestion, expiry checks and site-code
    configuration for operator certificates.
    """

    def __init__(self, db: Session):
        """Initialize the store.

        Args:
            db: Database session
        """
        self.db = db

    def select_certificate(
        self,
        organization_id: str,
        environment: Environment | str,
    ) -> OperatorCertificate | None:
        """Find the certificate to sign with.

        The active default wins. When no default exists the most recently
        created active certificate is used.

        Args:
            organization_id: Organization that owns the certificate
            environment: Registry environment

        Returns:
            OperatorCertificate, or None if no active certificate exists
        """
        env = Environment.parse(environment)
        base = self.db.query(OperatorCertificate).filter(
            OperatorCertificate.organization_id == organization_id,
            OperatorCertificate.environment == env.value,
            OperatorCertificate.is_active.is_(True),
        )
        cert = (
            base.filter(OperatorCertificate.is_default.is_(True))
            .order_by(OperatorCertificate.created_at.desc(), OperatorCertificate.id.desc())
            .first()
        )
        if cert is None:
            cert = base.order_by(
                OperatorCertificate.created_at.desc(), OperatorCertificate.id.desc()
            ).first()
        return cert

    def require_active(
        self,
        organization_id: str,
        environment: Environment | str,
    ) -> OperatorCertificate:
        """Select a certificate and check it is usable right now.

        Raises:
            CertificateMissing: No active certificate for org+environment
            CertificateExpired: The selected certificate is past ``expires_at``
        """
        env = Environment.parse(environment)
        cert = self.select_certificate(organization_id, env)
        if cert is None:
            raise CertificateMissing(
                f"No active certificate for organization {organization_id} ({env.value})"
            )
        self.ensure_not_expired(cert)
        return cert

    @staticmethod
    def ensure_not_expired(cert: OperatorCertificate) -> None:
        """Raise CertificateExpired if the certificate validity has ended."""
        expires_at = as_utc(cert.expires_at)
        if expires_at <= utcnow():
            logger.warning(f"Certificate {cert.id} expired at {expires_at.isoformat()}")
            raise CertificateExpired(
                f"Certificate expired on {expires_at.date().isoformat()}",
                detail={"certificate_id": cert.id, "expires_at": expires_at.isoformat()},
            )

    def ingest_bundle(
        self,
        organization_id: str,
        environment: Environment | str,
        bundle: bytes,
        password: str,
        cf_operatore: str,
        ragione_sociale: str | None = None,
        num_iscr_sito: str | None = None,
    ) -> OperatorCertificate:
        """Extract a certificate from a PKCS#12 bundle and make it the default.

        Nothing is persisted when extraction fails or the certificate is
        already expired. On success the previous defaults for the same
        organization and environment are cleared in the same transaction.

        Args:
            organization_id: Owning organization
            environment: Registry environment the certificate is issued for
            bundle: Raw ``.p12`` bytes
            password: Bundle password
            cf_operatore: Operator tax code, used as token issuer
            ragione_sociale: Operator legal name
            num_iscr_sito: Site registration code, if already known

        Returns:
            The new OperatorCertificate

        Raises:
            InvalidCredentials: Wrong password or corrupt bundle
            CertificateExpired: Certificate validity already ended
            RentriError: Storage failed, with status 409 when another default was stored concurrently
        """
        env = Environment.parse(environment)
        logger.info(f"Ingesting credential bundle for org={organization_id} env={env.value}")

        try:
            private_key, certificate, additional = pkcs12.load_key_and_certificates(
                bundle, password.encode("utf-8") if password else None
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Credential bundle rejected for org={organization_id}: {e}")
            raise InvalidCredentials("Wrong password or corrupt credential bundle") from e

        if private_key is None or certificate is None:
            raise InvalidCredentials("Credential bundle contains no private key or certificate")

        issued_at = certificate.not_valid_before_utc
        expires_at = certificate.not_valid_after_utc
        if expires_at <= utcnow():
            raise CertificateExpired(
                f"Certificate expired on {expires_at.date().isoformat()}",
                detail={"expires_at": expires_at.isoformat()},
            )

        certificate_pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        chain_pem = "".join(
            c.public_bytes(serialization.Encoding.PEM).decode("ascii") for c in additional or []
        ) or None

        try:
            self._clear_defaults(organization_id, env)

            record = OperatorCertificate(
                organization_id=organization_id,
                cf_operatore=cf_operatore,
                ragione_sociale=ragione_sociale,
                certificate_pem=certificate_pem,
                private_key_pem=private_key_pem,
                ca_chain_pem=chain_pem,
                certificate_password=password,
                environment=env.value,
                num_iscr_sito=num_iscr_sito,
                subject=certificate.subject.rfc4514_string(),
                serial_number=format(certificate.serial_number, "x"),
                issued_at=issued_at,
                expires_at=expires_at,
                is_active=True,
                is_default=True,
            )
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(
                f"Concurrent default certificate for org={organization_id} env={env.value}: {e}"
            )
            raise RentriError(
                "Another certificate became default concurrently; retry the upload",
                status_code=409,
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store certificate for org={organization_id}: {e}", exc_info=True)
            raise RentriError(f"Failed to store certificate: {e}") from e

        logger.info(
            f"✅ Certificate {record.id} activated as default for org={organization_id} "
            f"env={env.value}, expires {expires_at.date().isoformat()}"
        )
        return record

    def _clear_defaults(self, organization_id: str, env: Environment) -> None:
        self.db.query(OperatorCertificate).filter(
            OperatorCertificate.organization_id == organization_id,
            OperatorCertificate.environment == env.value,
            OperatorCertificate.is_default.is_(True),
        ).update({OperatorCertificate.is_default: False}, synchronize_session="fetch")

    def get(self, certificate_id: int) -> OperatorCertificate:
        cert = self.db.get(OperatorCertificate, certificate_id)
        if cert is None:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        return cert

    def set_site_code(self, certificate_id: int, num_iscr_sito: str) -> OperatorCertificate:
        """Configure the site registration code used for register creation."""
        cert = self.get(certificate_id)
        cert.num_iscr_sito = num_iscr_sito.strip()
        self.db.commit()
        self.db.refresh(cert)
        logger.info(f"Certificate {cert.id} bound to site {cert.num_iscr_sito}")
        return cert

    def deactivate(self, certificate_id: int) -> OperatorCertificate:
        """Take a certificate out of selection. Rows are never deleted."""
        cert = self.get(certificate_id)
        cert.is_active = False
        cert.is_default = False
        self.db.commit()
        self.db.refresh(cert)
        logger.info(f"Certificate {cert.id} deactivated")
        return cert

    def expiring_certificates(self, days_threshold: int = 30) -> list[OperatorCertificate]:
        """Active certificates expiring within ``days_threshold`` days.

        Args:
            days_threshold: Look-ahead window in days

        Returns:
            Certificates ordered by expiry, soonest first
        """
        cutoff = utcnow() + timedelta(days=days_threshold)
        return (
            self.db.query(OperatorCertificate)
            .filter(
                OperatorCertificate.is_active.is_(True),
                OperatorCertificate.expires_at <= cutoff,
            )
            .order_by(OperatorCertificate.expires_at.asc())
            .all()
        )


def load_certificate_chain(cert: OperatorCertificate) -> list[x509.Certificate]:
    """Leaf certificate followed by any intermediate certificates."""
    chain = [x509.load_pem_x509_certificate(cert.certificate_pem.encode("ascii"))]
    if cert.ca_chain_pem:
        chain.extend(x509.load_pem_x509_certificates(cert.ca_chain_pem.encode("ascii")))
    return chain
