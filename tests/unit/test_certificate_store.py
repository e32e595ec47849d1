"""
Unit tests for the operator certificate store.

Covers credential-bundle ingestion, default selection per organization and
environment, and expiry checks.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from rentri_client.core.certificate_store import CertificateStore, load_certificate_chain
from rentri_client.core.errors import CertificateExpired, CertificateMissing, InvalidCredentials, RentriError
from rentri_client.db.models import OperatorCertificate
from rentri_client.utils.dates import utcnow
from tests.conftest import BUNDLE_PASSWORD, CF_OPERATORE, ORG_ID
from tests.utils.certificate_helpers import (
    build_pkcs12_bundle,
    generate_expired_certificate,
    generate_test_certificate,
)


def _ingest(store: CertificateStore, bundle: bytes, environment: str = "demo", org: str = ORG_ID):
    return store.ingest_bundle(
        organization_id=org,
        environment=environment,
        bundle=bundle,
        password=BUNDLE_PASSWORD,
        cf_operatore=CF_OPERATORE,
    )


@pytest.mark.unit
class TestBundleIngestion:
    """Credential bundle upload."""

    def test_ingest_creates_active_default_certificate(self, db, p12_bundle, operator_identity):
        cert = _ingest(CertificateStore(db), p12_bundle)

        assert cert.id is not None
        assert cert.is_active is True
        assert cert.is_default is True
        assert cert.environment == "demo"
        assert cert.cf_operatore == CF_OPERATORE
        assert "BEGIN CERTIFICATE" in cert.certificate_pem
        assert "BEGIN PRIVATE KEY" in cert.private_key_pem
        assert cert.serial_number == format(operator_identity[0].serial_number, "x")

    def test_wrong_password_raises_invalid_credentials_and_persists_nothing(self, db, p12_bundle):
        store = CertificateStore(db)

        with pytest.raises(InvalidCredentials):
            store.ingest_bundle(
                organization_id=ORG_ID,
                environment="demo",
                bundle=p12_bundle,
                password="wrong-password",
                cf_operatore=CF_OPERATORE,
            )

        assert db.query(OperatorCertificate).count() == 0

    def test_corrupt_bundle_raises_invalid_credentials(self, db):
        with pytest.raises(InvalidCredentials):
            _ingest(CertificateStore(db), b"not a pkcs12 bundle")

        assert db.query(OperatorCertificate).count() == 0

    def test_expired_certificate_is_rejected_without_persisting(self, db):
        cert, key = generate_expired_certificate()
        bundle = build_pkcs12_bundle(cert, key, BUNDLE_PASSWORD)

        with pytest.raises(CertificateExpired):
            _ingest(CertificateStore(db), bundle)

        assert db.query(OperatorCertificate).count() == 0

    def test_new_upload_supersedes_previous_default(self, db, p12_bundle):
        store = CertificateStore(db)
        first = _ingest(store, p12_bundle)
        second = _ingest(store, p12_bundle)

        db.refresh(first)
        assert first.is_default is False
        assert first.is_active is True
        assert second.is_default is True

        defaults = db.query(OperatorCertificate).filter_by(
            organization_id=ORG_ID, environment="demo", is_default=True, is_active=True
        ).count()
        assert defaults == 1

    def test_defaults_are_tracked_per_environment(self, db, p12_bundle):
        store = CertificateStore(db)
        demo = _ingest(store, p12_bundle, environment="demo")
        prod = _ingest(store, p12_bundle, environment="production")

        db.refresh(demo)
        assert demo.is_default is True
        assert prod.is_default is True
        assert prod.environment == "production"

    def test_legacy_prod_spelling_maps_to_production(self, db, p12_bundle):
        cert = _ingest(CertificateStore(db), p12_bundle, environment="prod")
        assert cert.environment == "production"

    def test_chain_certificates_are_stored_after_leaf(self, db):
        ca_cert, ca_key = generate_test_certificate(common_name="Test CA", is_ca=True)
        leaf, leaf_key = generate_test_certificate(issuer_cert=ca_cert, issuer_key=ca_key)
        bundle = build_pkcs12_bundle(leaf, leaf_key, BUNDLE_PASSWORD, chain=[ca_cert])

        stored = _ingest(CertificateStore(db), bundle)
        chain = load_certificate_chain(stored)

        assert stored.ca_chain_pem is not None
        assert [c.serial_number for c in chain] == [leaf.serial_number, ca_cert.serial_number]


@pytest.mark.unit
class TestSingleDefaultConstraint:
    """The database refuses a second active default per organization and environment."""

    @staticmethod
    def _copy(cert: OperatorCertificate, **overrides) -> OperatorCertificate:
        values = {
            column: getattr(cert, column)
            for column in (
                "organization_id", "cf_operatore", "certificate_pem", "private_key_pem",
                "environment", "issued_at", "expires_at",
            )
        }
        values.update(is_active=True, is_default=True)
        values.update(overrides)
        return OperatorCertificate(**values)

    def test_second_active_default_is_refused(self, db, certificate):
        db.add(self._copy(certificate))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

        assert db.query(OperatorCertificate).filter(OperatorCertificate.is_default.is_(True)).count() == 1

    def test_other_environment_and_inactive_defaults_are_allowed(self, db, certificate):
        db.add(self._copy(certificate, environment="production"))
        db.add(self._copy(certificate, is_active=False))
        db.commit()

        assert db.query(OperatorCertificate).count() == 3

    def test_concurrent_default_upload_is_a_conflict(self, db, p12_bundle, monkeypatch):
        store = CertificateStore(db)
        first = _ingest(store, p12_bundle)
        # another writer skipped clearing the previous default
        monkeypatch.setattr(store, "_clear_defaults", lambda *args, **kwargs: None)

        with pytest.raises(RentriError) as exc_info:
            _ingest(store, p12_bundle)

        assert exc_info.value.status_code == 409
        db.refresh(first)
        assert first.is_default is True
        assert db.query(OperatorCertificate).count() == 1


@pytest.mark.unit
class TestCertificateSelection:
    """Selection of the signing certificate."""

    def test_selection_is_deterministic_and_unique(self, db, p12_bundle):
        store = CertificateStore(db)
        _ingest(store, p12_bundle)
        latest = _ingest(store, p12_bundle)

        for _ in range(3):
            assert store.select_certificate(ORG_ID, "demo").id == latest.id

    def test_selection_falls_back_to_newest_active_without_default(self, db, p12_bundle):
        store = CertificateStore(db)
        older = _ingest(store, p12_bundle)
        newer = _ingest(store, p12_bundle)
        newer.is_default = False
        db.commit()

        selected = store.select_certificate(ORG_ID, "demo")
        assert selected.id == newer.id
        assert selected.id != older.id

    def test_inactive_certificates_are_never_selected(self, db, p12_bundle):
        store = CertificateStore(db)
        cert = _ingest(store, p12_bundle)
        store.deactivate(cert.id)

        assert store.select_certificate(ORG_ID, "demo") is None
        with pytest.raises(CertificateMissing):
            store.require_active(ORG_ID, "demo")

    def test_other_organization_has_no_certificate(self, db, certificate):
        with pytest.raises(CertificateMissing):
            CertificateStore(db).require_active("another-org", "demo")

    def test_require_active_rejects_expired_certificate(self, db, certificate):
        certificate.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

        with pytest.raises(CertificateExpired):
            CertificateStore(db).require_active(ORG_ID, "demo")

    def test_require_active_returns_valid_certificate(self, db, certificate):
        assert CertificateStore(db).require_active(ORG_ID, "demo").id == certificate.id


@pytest.mark.unit
class TestCertificateMaintenance:

    def test_set_site_code(self, db, certificate):
        updated = CertificateStore(db).set_site_code(certificate.id, "  OP999-PD00002 ")
        assert updated.num_iscr_sito == "OP999-PD00002"

    def test_expiring_certificates_uses_threshold(self, db, certificate):
        store = CertificateStore(db)
        assert store.expiring_certificates(days_threshold=30) == []

        certificate.expires_at = utcnow() + timedelta(days=10)
        db.commit()

        expiring = store.expiring_certificates(days_threshold=30)
        assert [c.id for c in expiring] == [certificate.id]
