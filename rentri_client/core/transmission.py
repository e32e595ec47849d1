"""Transmission pipeline: push movements, pull and reconcile, poll transactions."""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rentri_client.config import Environment, get_settings
from rentri_client.core.certificate_store import CertificateStore
from rentri_client.core.errors import (
    BatchRejected,
    MissingTransactionId,
    NotFoundError,
    PushFailed,
    RegistryRejection,
    RentriError,
    ValidationError,
)
from rentri_client.core.movimento_builder import (
    build_movimento_payload,
    map_esito,
    map_remote_movimento,
    validate_movimento,
)
from rentri_client.core.registry_client import RegistryClient
from rentri_client.core.retry import RetryPolicy
from rentri_client.core.token_signer import TokenSigner
from rentri_client.db.models import Movimento, Registro, Transazione
from rentri_client.utils.dates import utcnow

logger = logging.getLogger(__name__)

PUSHABLE_STATUSES = ("pending", "error")


@dataclass
class PushResult:
    transazione_id: str
    location: str | None
    submitted_ids: list[int]
    skipped_ids: list[int] = field(default_factory=list)
    validation_errors: list[dict] = field(default_factory=list)
    attempts: int = 1


@dataclass
class PullSummary:
    registri: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def total_synced(self) -> int:
        return sum(r["movimenti_sincronizzati"] for r in self.registri)


@dataclass
class TransactionStatus:
    transazione_id: str
    completed: bool
    http_status: int
    location: str | None = None


@dataclass
class TransactionResult:
    transazione_id: str
    esito: dict
    synced: int = 0
    errors: int = 0


def _error_text(detail: Any) -> str:
    if isinstance(detail, str):
        return detail
    return json.dumps(detail, ensure_ascii=False, default=str)


class TransmissionPipeline:
    """Orchestrates signing, submission and local sync state for movements.

    Args:
        db: Database session
        signer: Token signer shared by all clients created here
        clients: Pre-built Registry clients per environment
        retry_policy: Policy applied to push submissions
        transport: httpx transport for clients created on demand
    """

    def __init__(
        self,
        db: Session,
        signer: TokenSigner | None = None,
        clients: Mapping[Environment, RegistryClient] | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.settings = get_settings()
        self.certificates = CertificateStore(db)
        self.signer = signer or TokenSigner()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._clients: dict[Environment, RegistryClient] = dict(clients or {})
        self._transport = transport

    def client_for(self, environment: Environment | str) -> RegistryClient:
        env = Environment.parse(environment)
        if env not in self._clients:
            self._clients[env] = RegistryClient.for_environment(
                env, signer=self.signer, transport=self._transport
            )
        return self._clients[env]

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push_movimenti(self, registro_id: int, movimento_ids: list[int]) -> PushResult:
        """Submit movements of a remotely bound register.

        Only ``pending``/``error`` movements are sent; invalid ones are marked
        ``error`` and reported without being sent.

        Returns:
            PushResult with the Registry transaction id and polling location

        Raises:
            BatchRejected: Empty batch, batch too large, register unbound
            CertificateMissing / CertificateExpired: No usable certificate
            ValidationError: Every candidate movement failed validation
            PushFailed: Registry rejected the batch or stayed unreachable
            MissingTransactionId: Accepted response without transaction id
        """
        if not movimento_ids:
            raise BatchRejected("No movement ids given")
        max_batch = self.settings.rentri_max_batch_size
        if len(movimento_ids) > max_batch:
            raise BatchRejected(
                f"Batch of {len(movimento_ids)} movements exceeds the limit of {max_batch}",
                detail={"count": len(movimento_ids), "max": max_batch},
            )

        registro = self.db.get(Registro, registro_id)
        if registro is None:
            raise NotFoundError(f"Registro {registro_id} not found")
        if not registro.rentri_id:
            raise BatchRejected(f"Registro {registro_id} has no remote identifier; create it first")

        requested = set(movimento_ids)
        candidates = (
            self.db.query(Movimento)
            .filter(
                Movimento.id.in_(requested),
                Movimento.registro_id == registro.id,
                Movimento.sync_status.in_(PUSHABLE_STATUSES),
            )
            .order_by(Movimento.anno, Movimento.progressivo)
            .all()
        )
        skipped = sorted(requested - {m.id for m in candidates})
        if skipped:
            logger.info(f"Skipping {len(skipped)} movements already transmitted or not in registro {registro.id}")
        if not candidates:
            raise BatchRejected("No pending movements to transmit", detail={"skipped_ids": skipped})

        cert = self.certificates.require_active(registro.organization_id, registro.environment)

        now = utcnow()
        valid: list[Movimento] = []
        validation_errors: list[dict] = []
        for m in candidates:
            result = validate_movimento(m)
            if result.valid:
                valid.append(m)
                continue
            validation_errors.append({
                "movimento_id": m.id,
                "anno": m.anno,
                "progressivo": m.progressivo,
                "errori": result.errors,
            })
            m.sync_status = "error"
            m.sync_error = "; ".join(result.errors)
            m.sync_at = now
        self.db.commit()

        if not valid:
            logger.warning(f"All {len(candidates)} movements of registro {registro.id} failed validation")
            raise ValidationError("No valid movements to transmit", errors=validation_errors)

        payloads = [build_movimento_payload(m).payload for m in valid]
        client = self.client_for(registro.environment)

        logger.info(f"Transmitting {len(valid)} movements to registro {registro.rentri_id}")
        outcome = await client.request_with_retry(
            self.retry_policy,
            "POST",
            "dati-registri",
            f"/operatore/{registro.rentri_id}/movimenti",
            certificate=cert,
            json_body=payloads,
            sign_integrity=True,
        )

        if not outcome.ok:
            error = outcome.error
            status_code = error.response.status if isinstance(error, RegistryRejection) else 500
            detail = error.detail if error.detail is not None else error.message
            self._mark(valid, "error", sync_error=_error_text(detail))
            logger.error(
                f"Push to registro {registro.rentri_id} failed after {outcome.attempts} attempts "
                f"(status {status_code})"
            )
            raise PushFailed(
                f"Transmission of {len(valid)} movements failed",
                status_code=status_code,
                detail={
                    "status": status_code,
                    "registry_error": detail,
                    "movimenti_trasmessi": len(valid),
                    "movimenti_totali": len(candidates),
                },
                attempts=outcome.attempts,
                validation_errors=validation_errors,
            )

        response = outcome.response
        body = response.parsed_json if isinstance(response.parsed_json, dict) else {}
        transazione_id = body.get("transazione_id")
        if not transazione_id:
            logger.error(
                f"Registry accepted batch for {registro.rentri_id} without transazione_id "
                f"(status {response.status}): {response.text[:500]}"
            )
            self._mark(valid, "error", sync_error="Registry response without transazione_id")
            raise MissingTransactionId(
                "Registry did not return a transaction id",
                detail={"status": response.status, "body": response.parsed_json or response.text},
            )

        try:
            for m in valid:
                m.sync_status = "in_transmission"
                m.transazione_id = transazione_id
                m.sync_error = None
                m.sync_at = utcnow()
            self.db.add(Transazione(
                transazione_id=transazione_id,
                organization_id=registro.organization_id,
                registro_id=registro.id,
                environment=registro.environment,
                location=response.location,
                movimenti_count=len(valid),
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record transaction {transazione_id}: {e}", exc_info=True)
            raise RentriError(f"Transaction {transazione_id} accepted but not recorded: {e}") from e

        logger.info(f"✅ {len(valid)} movements in transmission, transaction {transazione_id}")
        return PushResult(
            transazione_id=transazione_id,
            location=response.location,
            submitted_ids=[m.id for m in valid],
            skipped_ids=skipped,
            validation_errors=validation_errors,
            attempts=outcome.attempts,
        )

    def _mark(self, movimenti: list[Movimento], status: str, sync_error: str | None = None) -> None:
        now = utcnow()
        for m in movimenti:
            m.sync_status = status
            m.sync_error = sync_error
            m.sync_at = now
        self.db.commit()

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull_movimenti(self, organization_id: str, registro_id: int | None = None) -> PullSummary:
        """Reconcile remote movements into local storage.

        Upserts on ``(registro_id, anno, progressivo)``; running it twice on
        unchanged remote data leaves the same rows. Failures for one movement
        or one register are collected and do not stop the others.

        Raises:
            NotFoundError: No remotely bound register matches
        """
        query = self.db.query(Registro).filter(
            Registro.organization_id == organization_id,
            Registro.rentri_id.is_not(None),
        )
        if registro_id is not None:
            query = query.filter(Registro.id == registro_id)
        registri = query.order_by(Registro.id).all()
        if not registri:
            raise NotFoundError("No registro with a remote identifier found")

        summary = PullSummary()
        for registro in registri:
            try:
                count = await self._pull_registro(registro, summary.errors)
            except RentriError as e:
                logger.error(f"Pull of registro {registro.rentri_id} failed: {e.message}")
                summary.errors.append({
                    "registro": registro.rentri_id,
                    "movimento": None,
                    "errore": e.message,
                    "detail": e.detail,
                })
                continue
            summary.registri.append({
                "registro_id": registro.id,
                "registro_rentri_id": registro.rentri_id,
                "movimenti_sincronizzati": count,
            })
            logger.info(f"📊 Registro {registro.rentri_id}: {count} movements synced")
        return summary

    async def _pull_registro(self, registro: Registro, errors: list[dict]) -> int:
        cert = self.certificates.require_active(registro.organization_id, registro.environment)
        client = self.client_for(registro.environment)
        page_size = self.settings.rentri_pull_page_size

        synced = 0
        page = 1
        while True:
            response = await client.request(
                "GET",
                "dati-registri",
                f"/operatore/{registro.rentri_id}/movimenti",
                certificate=cert,
                headers={"Paging-Page": str(page), "Paging-PageSize": str(page_size)},
            )
            items = _page_items(response.parsed_json)
            if not items:
                break

            for remote in items:
                if self._upsert_remote(registro, remote, errors):
                    synced += 1

            page_count = _int_header(response.headers, "Paging-PageCount", 1)
            returned_size = _int_header(response.headers, "Paging-PageSize", page_size)
            if page >= page_count or len(items) < returned_size:
                break
            page += 1
        return synced

    def _upsert_remote(self, registro: Registro, remote: Any, errors: list[dict]) -> bool:
        try:
            if not isinstance(remote, Mapping):
                raise ValidationError(f"Unexpected movement entry: {type(remote).__name__}")
            values = map_remote_movimento(remote)
        except (ValidationError, ValueError, TypeError) as e:
            errors.append({
                "registro": registro.rentri_id,
                "movimento": remote.get("identificativo") if isinstance(remote, Mapping) else None,
                "errore": str(e),
            })
            return False

        try:
            row = (
                self.db.query(Movimento)
                .filter(
                    Movimento.registro_id == registro.id,
                    Movimento.anno == values["anno"],
                    Movimento.progressivo == values["progressivo"],
                )
                .one_or_none()
            )
            if row is None:
                row = Movimento(organization_id=registro.organization_id, registro_id=registro.id)
                self.db.add(row)
            for key, value in values.items():
                setattr(row, key, value)
            row.sync_status = "synced"
            row.sync_error = None
            row.sync_at = utcnow()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Upsert of {values['anno']}/{values['progressivo']} failed: {e}")
            errors.append({
                "registro": registro.rentri_id,
                "movimento": values.get("rentri_id"),
                "errore": str(e),
            })
            return False
        return True

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _transaction_context(
        self,
        transazione_id: str,
        organization_id: str | None,
        environment: Environment | str | None,
    ) -> tuple[Transazione | None, str, Environment]:
        record = (
            self.db.query(Transazione)
            .filter(Transazione.transazione_id == transazione_id)
            .one_or_none()
        )
        if record is not None:
            return record, record.organization_id, Environment.parse(record.environment)
        if organization_id is None:
            raise NotFoundError(f"Transaction {transazione_id} not found")
        return None, organization_id, Environment.parse(environment)

    async def check_transaction(
        self,
        transazione_id: str,
        organization_id: str | None = None,
        environment: Environment | str | None = None,
    ) -> TransactionStatus:
        """Poll ``/dati-registri/v1.0/{id}/status``: 200 in progress, 303 done."""
        record, org_id, env = self._transaction_context(transazione_id, organization_id, environment)
        cert = self.certificates.require_active(org_id, env)
        response = await self.client_for(env).request(
            "GET",
            "dati-registri",
            f"/{transazione_id}/status",
            certificate=cert,
            acceptable_status_codes=(303,),
        )
        completed = response.status == 303
        if record is not None and completed and record.completed_at is None:
            record.stato = "completata"
            record.completed_at = utcnow()
            self.db.commit()
        return TransactionStatus(
            transazione_id=transazione_id,
            completed=completed,
            http_status=response.status,
            location=response.location,
        )

    async def fetch_transaction_result(
        self,
        transazione_id: str,
        organization_id: str | None = None,
        environment: Environment | str | None = None,
    ) -> TransactionResult:
        """Fetch the outcome of a transaction and reconcile its movements.

        Movements matched by ``(anno, progressivo)`` in the result get their
        remote identifier and become ``synced``. Unmatched ones become
        ``synced`` when the result carries no errors, ``error`` otherwise.
        """
        record, org_id, env = self._transaction_context(transazione_id, organization_id, environment)
        cert = self.certificates.require_active(org_id, env)
        response = await self.client_for(env).request(
            "GET",
            "dati-registri",
            f"/{transazione_id}/result",
            certificate=cert,
        )
        esito = map_esito(response.parsed_json if isinstance(response.parsed_json, Mapping) else None)

        identifiers: dict[tuple[int, int], str | None] = {}
        for entry in esito["numero_registrazioni"] + esito["movimenti_validati"]:
            if isinstance(entry, Mapping) and "anno" in entry and "progressivo" in entry:
                identifiers[(int(entry["anno"]), int(entry["progressivo"]))] = entry.get("identificativo")
        failed = bool(esito["errori"]) or esito["stato"] == "errore"

        movimenti = (
            self.db.query(Movimento)
            .filter(
                Movimento.transazione_id == transazione_id,
                Movimento.sync_status == "in_transmission",
            )
            .all()
        )
        result = TransactionResult(transazione_id=transazione_id, esito=esito)
        now = utcnow()
        try:
            for m in movimenti:
                key = (m.anno, m.progressivo)
                if key in identifiers or not failed:
                    m.sync_status = "synced"
                    m.rentri_id = identifiers.get(key) or m.rentri_id
                    m.sync_error = None
                    result.synced += 1
                else:
                    m.sync_status = "error"
                    m.sync_error = _error_text(esito["errori"] or esito["stato"])
                    result.errors += 1
                m.sync_at = now
            if record is not None:
                record.esito = esito
                record.stato = "errore" if failed and not identifiers else "completata"
                record.completed_at = record.completed_at or now
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to reconcile transaction {transazione_id}: {e}", exc_info=True)
            raise RentriError(f"Failed to reconcile transaction {transazione_id}: {e}") from e

        logger.info(
            f"Transaction {transazione_id}: stato={esito['stato']}, "
            f"{result.synced} synced, {result.errors} in error"
        )
        return result


def _page_items(data: Any) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        items = data.get("items") or data.get("movimenti") or []
        return items if isinstance(items, list) else []
    return []


def _int_header(headers: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(headers.get(name, default))
    except (TypeError, ValueError):
        return default
