"""SQLAlchemy database models."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class OperatorCertificate(Base):
    """Operator certificate extracted from an uploaded credential bundle.

    At most one row per (organization, environment) is both active and
    default. Rows are never deleted; superseded certificates only lose
    ``is_default``.
    """

    __tablename__ = "operator_certificates"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    cf_operatore: Mapped[str] = mapped_column(String(32), nullable=False)
    ragione_sociale: Mapped[str | None] = mapped_column(String(255), nullable=True)

    certificate_pem: Mapped[str] = mapped_column(Text, nullable=False)
    private_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    ca_chain_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Kept for re-deriving the bundle, never sent over the wire
    certificate_password: Mapped[str | None] = mapped_column(String(255), nullable=True)

    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="demo")
    num_iscr_sito: Mapped[str | None] = mapped_column(String(50), nullable=True)

    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    serial_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_operator_certificates_org_env", "organization_id", "environment"),
        # MySQL has no partial indexes; the guard exists on SQLite and PostgreSQL only
        Index(
            "uq_operator_certificates_default",
            "organization_id",
            "environment",
            unique=True,
            sqlite_where=text("is_default AND is_active"),
            postgresql_where=text("is_default AND is_active"),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    def __repr__(self) -> str:
        return (
            f"<OperatorCertificate(id={self.id}, org={self.organization_id}, "
            f"env={self.environment}, default={self.is_default})>"
        )


class Registro(Base):
    """Local register that movements belong to.

    ``rentri_id`` stays ``None`` until the register is created remotely and is
    assigned exactly once.
    """

    __tablename__ = "registri"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    nome: Mapped[str | None] = mapped_column(String(255), nullable=True)
    descrizione: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tipo: Mapped[str] = mapped_column(String(20), nullable=False, default="carico_scarico")  # carico, scarico, carico_scarico
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="demo")

    rentri_id: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    attivita: Mapped[list] = mapped_column(JSON, default=list)
    attivita_rec_smalt: Mapped[list] = mapped_column(JSON, default=list)

    sync_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, synced, error
    sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    movimenti: Mapped[list["Movimento"]] = relationship(back_populates="registro")

    def __repr__(self) -> str:
        return f"<Registro(id={self.id}, rentri_id={self.rentri_id}, status={self.sync_status})>"


class Movimento(Base):
    """One waste (or materials) ledger entry."""

    __tablename__ = "movimenti"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    registro_id: Mapped[int] = mapped_column(ForeignKey("registri.id"), nullable=False, index=True)

    anno: Mapped[int] = mapped_column(Integer, nullable=False)
    progressivo: Mapped[int] = mapped_column(Integer, nullable=False)
    data_ora_registrazione: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    causale_operazione: Mapped[str | None] = mapped_column(String(10), nullable=True)
    tipo_operazione: Mapped[str | None] = mapped_column(String(10), nullable=True)  # carico, scarico

    # Waste
    codice_eer: Mapped[str | None] = mapped_column(String(20), nullable=True)
    descrizione_eer: Mapped[str | None] = mapped_column(String(500), nullable=True)
    stato_fisico: Mapped[str | None] = mapped_column(String(5), nullable=True)
    caratteristiche_pericolo: Mapped[list | None] = mapped_column(JSON, nullable=True)
    provenienza_codice: Mapped[str | None] = mapped_column(String(5), nullable=True)
    destinato_attivita: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Materials (causale M)
    codice_materiale: Mapped[str | None] = mapped_column(String(20), nullable=True)
    descrizione_materiale: Mapped[str | None] = mapped_column(String(500), nullable=True)

    quantita: Mapped[float | None] = mapped_column(Float, nullable=True)
    unita_misura: Mapped[str | None] = mapped_column(String(5), nullable=True)

    riferimento_fir: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Arrival outcome
    esito_accettazione: Mapped[str | None] = mapped_column(String(30), nullable=True)
    quantita_accettata: Mapped[float | None] = mapped_column(Float, nullable=True)
    note_esito: Mapped[str | None] = mapped_column(Text, nullable=True)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    sync_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, in_transmission, synced, error
    rentri_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    transazione_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    registro: Mapped[Registro] = relationship(back_populates="movimenti")

    __table_args__ = (
        UniqueConstraint("registro_id", "anno", "progressivo", name="uq_movimenti_registro_anno_progressivo"),
    )

    def __repr__(self) -> str:
        return (
            f"<Movimento(id={self.id}, {self.anno}/{self.progressivo}, "
            f"causale={self.causale_operazione}, status={self.sync_status})>"
        )


class Transazione(Base):
    """Asynchronous submission accepted by the Registry."""

    __tablename__ = "transazioni"

    id: Mapped[int] = mapped_column(primary_key=True)
    transazione_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    registro_id: Mapped[int] = mapped_column(ForeignKey("registri.id"), nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="demo")
    location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    movimenti_count: Mapped[int] = mapped_column(Integer, default=0)

    stato: Mapped[str] = mapped_column(String(30), default="in_elaborazione")  # in_elaborazione, completata, errore
    esito: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Transazione(id={self.transazione_id}, stato={self.stato})>"
