"""Pytest fixtures for RENTRI client tests."""

import os
from collections.abc import Callable, Generator
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RENTRI_DEFAULT_ENVIRONMENT"] = "demo"

from rentri_client.core.certificate_store import CertificateStore
from rentri_client.core.registro_manager import RegistroLifecycleManager
from rentri_client.core.retry import RetryPolicy
from rentri_client.core.token_signer import TokenSigner
from rentri_client.core.transmission import TransmissionPipeline
from rentri_client.db.database import get_db
from rentri_client.db.models import Base, Movimento, OperatorCertificate, Registro
from rentri_client.main import app
from tests.utils.certificate_helpers import build_pkcs12_bundle, generate_test_certificate
from tests.utils.registry_stub import RegistryStub

ORG_ID = "org-test"
CF_OPERATORE = "RSSMRA80A01H501U"
NUM_ISCR_SITO = "OP10000000001-PD00001"
REGISTRO_RENTRI_ID = "RGTEST0000000000001"
BUNDLE_PASSWORD = "test-password"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="session")
def operator_identity():
    """RSA certificate and key shared across the session (key generation is slow)."""
    return generate_test_certificate(common_name=CF_OPERATORE)


@pytest.fixture(scope="session")
def p12_bundle(operator_identity) -> bytes:
    cert, key = operator_identity
    return build_pkcs12_bundle(cert, key, BUNDLE_PASSWORD)


@pytest.fixture
def certificate(db: Session, p12_bundle: bytes) -> OperatorCertificate:
    """Active default demo certificate with a configured site."""
    return CertificateStore(db).ingest_bundle(
        organization_id=ORG_ID,
        environment="demo",
        bundle=p12_bundle,
        password=BUNDLE_PASSWORD,
        cf_operatore=CF_OPERATORE,
        ragione_sociale="Autodemolizioni Test Srl",
        num_iscr_sito=NUM_ISCR_SITO,
    )


@pytest.fixture
def registro(db: Session) -> Registro:
    """Registro already bound to the Registry."""
    record = Registro(
        organization_id=ORG_ID,
        tipo="carico_scarico",
        environment="demo",
        rentri_id=REGISTRO_RENTRI_ID,
        sync_status="synced",
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


@pytest.fixture
def unbound_registro(db: Session) -> Registro:
    record = Registro(
        organization_id=ORG_ID,
        tipo="carico_scarico",
        environment="demo",
        descrizione="Registro carico/scarico",
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


@pytest.fixture
def make_movimento(db: Session) -> Callable[..., Movimento]:
    """Factory for valid local movements; sequence numbers auto-increment."""
    counter = {"progressivo": 0}

    def _make(registro: Registro, **overrides) -> Movimento:
        counter["progressivo"] += 1
        values = {
            "organization_id": registro.organization_id,
            "registro_id": registro.id,
            "anno": 2025,
            "progressivo": counter["progressivo"],
            "data_ora_registrazione": datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc),
            "causale_operazione": "NP",
            "codice_eer": "160104*",
            "descrizione_eer": "veicoli fuori uso",
            "quantita": 1250.0,
            "unita_misura": "kg",
            "stato_fisico": "S",
            "caratteristiche_pericolo": ["HP14"],
            "sync_status": "pending",
        }
        values.update(overrides)
        movimento = Movimento(**values)
        db.add(movimento)
        db.commit()
        db.refresh(movimento)
        return movimento

    return _make


@pytest.fixture
def stub() -> RegistryStub:
    return RegistryStub()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry policy."""
    return []


@pytest.fixture
def retry_policy(sleeps: list[float]) -> RetryPolicy:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=fake_sleep)


@pytest.fixture
def pipeline(db: Session, stub: RegistryStub, signer: TokenSigner, retry_policy: RetryPolicy) -> TransmissionPipeline:
    return TransmissionPipeline(db, signer=signer, retry_policy=retry_policy, transport=stub.transport)


@pytest.fixture
def manager(db: Session, stub: RegistryStub, signer: TokenSigner) -> RegistroLifecycleManager:
    return RegistroLifecycleManager(db, signer=signer, transport=stub.transport)


@pytest.fixture(scope="function")
def client(db: Session, stub: RegistryStub) -> Generator[TestClient, None, None]:
    """Create a test client with database and Registry overrides."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.state.registry_transport = stub.transport

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
    app.state.registry_transport = None
