"""Movement payload builder and validator.

Maps a local movement to the Registry's ``dati-registri`` wire schema and
validates it before submission. Both sides share ``normalize_causale`` so the
rules they apply agree on the cause code.

Wire shape of one movement::

    {
      "riferimenti": {"numero_registrazione": {"anno", "progressivo"},
                      "data_ora_registrazione", "causale_operazione"},
      "rifiuto" | "materiali": {...},
      "integrazione_fir": {"numero_fir"},          # transport causali
      "esito": {"esito_accettazione", ...},        # arrival causali
      "annotazioni": "..."
    }
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rentri_client.core.errors import ValidationError
from rentri_client.utils.dates import isoformat_utc, parse_datetime

logger = logging.getLogger(__name__)

CANONICAL_CAUSALI = ("NP", "DT", "RE", "I", "T*", "TR", "aT", "T*aT", "M")
CAUSALE_ALIASES = {
    "PS": "NP",  # prelievo da sito
    "GI": "I",  # giacenza iniziale
    "T*AT": "T*aT",
    "AT": "aT",
}
TRANSPORT_CAUSALI = frozenset({"aT", "TR", "T*", "T*aT"})
ARRIVAL_CAUSALI = frozenset({"aT", "T*aT"})
SCARICO_CAUSALI = frozenset({"PS", "GI", "T*"})
MATERIALS_CAUSALE = "M"

STATI_FISICI = ("SP", "S", "FP", "L", "VS")
DEFAULT_STATO_FISICO = "S"
PROVENIENZE = ("U", "S")
ESITI_ACCETTAZIONE = ("Accettato", "Rifiutato", "AccettatoParzialmente")
DEFAULT_ESITO = "Accettato"

MAX_NOTE_LENGTH = 500
ANNO_MIN = 1980
ANNO_MAX = 2050
MATERIAL_CODE_PLACEHOLDER = "ND"


@dataclass(frozen=True)
class PayloadDegradation:
    """A value the builder dropped or substituted instead of failing."""

    field: str
    reason: str
    original: Any = None


@dataclass
class MovimentoPayload:
    """Wire payload of one movement plus any degradations applied."""

    payload: dict
    degradations: list[PayloadDegradation] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _get(movimento: Any, name: str, default: Any = None) -> Any:
    if isinstance(movimento, Mapping):
        return movimento.get(name, default)
    return getattr(movimento, name, default)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def normalize_causale(value: str | None) -> str | None:
    """Map legacy local aliases to canonical Registry cause codes.

    Unknown values are returned stripped but otherwise unchanged.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    return CAUSALE_ALIASES.get(raw, raw)


def normalize_stato_fisico(value: str | None) -> str | None:
    if _blank(value):
        return None
    return value.strip().upper()


def hazard_codes(value: Any) -> list[str]:
    """Hazard characteristics as a list, never None."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v) for v in value]


def _registration_timestamp(value: str | datetime | None) -> str | None:
    if value is None or value == "":
        return None
    return isoformat_utc(parse_datetime(value))


def _quantita_block(movimento: Any) -> dict:
    return {
        "valore": _get(movimento, "quantita"),
        "unita_misura": _get(movimento, "unita_misura"),
    }


def build_movimento_payload(movimento: Any) -> MovimentoPayload:
    """Build the wire payload for one local movement.

    Args:
        movimento: ``Movimento`` row or any mapping/object with the same fields

    Returns:
        MovimentoPayload with the payload dict and the degradations applied
    """
    causale = normalize_causale(_get(movimento, "causale_operazione"))
    degradations: list[PayloadDegradation] = []

    riferimenti: dict[str, Any] = {
        "numero_registrazione": {
            "anno": _get(movimento, "anno"),
            "progressivo": _get(movimento, "progressivo"),
        },
    }
    timestamp = _registration_timestamp(_get(movimento, "data_ora_registrazione"))
    if timestamp is not None:
        riferimenti["data_ora_registrazione"] = timestamp
    if causale:
        riferimenti["causale_operazione"] = causale
    payload: dict[str, Any] = {"riferimenti": riferimenti}

    if causale != MATERIALS_CAUSALE:
        rifiuto: dict[str, Any] = {"codice_eer": _get(movimento, "codice_eer")}
        if not _blank(_get(movimento, "descrizione_eer")):
            rifiuto["descrizione_eer"] = _get(movimento, "descrizione_eer")
        rifiuto["stato_fisico"] = (
            normalize_stato_fisico(_get(movimento, "stato_fisico")) or DEFAULT_STATO_FISICO
        )
        rifiuto["quantita"] = _quantita_block(movimento)
        rifiuto["caratteristiche_pericolo"] = hazard_codes(_get(movimento, "caratteristiche_pericolo"))

        provenienza = _get(movimento, "provenienza_codice")
        if provenienza in PROVENIENZE:
            rifiuto["provenienza"] = provenienza
        elif not _blank(provenienza):
            degradations.append(
                PayloadDegradation("provenienza", "not one of U, S; dropped", provenienza)
            )

        if not _blank(_get(movimento, "destinato_attivita")):
            rifiuto["destinato_attivita"] = _get(movimento, "destinato_attivita")
        payload["rifiuto"] = rifiuto
    else:
        codice = _get(movimento, "codice_materiale")
        if _blank(codice):
            codice = _get(movimento, "codice_eer")
        if _blank(codice):
            codice = MATERIAL_CODE_PLACEHOLDER
            degradations.append(
                PayloadDegradation("codice_materiale", "missing; placeholder used", None)
            )
        materiali: dict[str, Any] = {"codice_materiale": codice}
        if not _blank(_get(movimento, "descrizione_materiale")):
            materiali["descrizione_materiale"] = _get(movimento, "descrizione_materiale")
        materiali["quantita"] = _quantita_block(movimento)
        payload["materiali"] = materiali

    if causale in TRANSPORT_CAUSALI and not _blank(_get(movimento, "riferimento_fir")):
        payload["integrazione_fir"] = {"numero_fir": _get(movimento, "riferimento_fir")}

    if causale in ARRIVAL_CAUSALI:
        esito: dict[str, Any] = {
            "esito_accettazione": _get(movimento, "esito_accettazione") or DEFAULT_ESITO,
        }
        if _get(movimento, "quantita_accettata") is not None:
            esito["quantita_accettata"] = _get(movimento, "quantita_accettata")
        if not _blank(_get(movimento, "note_esito")):
            esito["note_esito"] = _get(movimento, "note_esito")[:MAX_NOTE_LENGTH]
        payload["esito"] = esito

    note = _get(movimento, "note")
    if not _blank(note):
        payload["annotazioni"] = note[:MAX_NOTE_LENGTH]

    for d in degradations:
        logger.warning(
            f"Movement {_get(movimento, 'anno')}/{_get(movimento, 'progressivo')}: "
            f"{d.field} {d.reason} (value={d.original!r})"
        )
    return MovimentoPayload(payload=payload, degradations=degradations)


def validate_movimento(movimento: Any) -> ValidationResult:
    """Check mandatory fields for submission.

    All problems are collected. No defaults are applied here; a physical
    state the builder would default is not flagged when absent.
    """
    errors: list[str] = []

    anno = _get(movimento, "anno")
    if not isinstance(anno, int) or not ANNO_MIN <= anno <= ANNO_MAX:
        errors.append(f"anno must be between {ANNO_MIN} and {ANNO_MAX} (got {anno!r})")

    progressivo = _get(movimento, "progressivo")
    if not isinstance(progressivo, int) or progressivo < 1:
        errors.append(f"progressivo must be >= 1 (got {progressivo!r})")

    if _blank(_get(movimento, "data_ora_registrazione")):
        errors.append("data_ora_registrazione is required")

    raw_causale = _get(movimento, "causale_operazione")
    causale = normalize_causale(raw_causale)
    if causale is None:
        errors.append("causale_operazione is required")
    elif causale not in CANONICAL_CAUSALI:
        errors.append(
            f"causale_operazione not valid: {raw_causale!r} (normalized {causale!r}); "
            f"valid values: {', '.join(CANONICAL_CAUSALI)}"
        )

    quantita = _get(movimento, "quantita")
    quantita_ok = isinstance(quantita, (int, float)) and not isinstance(quantita, bool) and quantita > 0

    if causale != MATERIALS_CAUSALE:
        if _blank(_get(movimento, "codice_eer")):
            errors.append("codice_eer is required when causale is not 'M'")
        if not quantita_ok:
            errors.append(f"quantita is required and must be > 0 (got {quantita!r})")
        if _blank(_get(movimento, "unita_misura")):
            errors.append("unita_misura is required")
        stato = normalize_stato_fisico(_get(movimento, "stato_fisico"))
        if stato is not None and stato not in STATI_FISICI:
            errors.append(
                f"stato_fisico not valid: {_get(movimento, 'stato_fisico')!r}; "
                f"valid values: {', '.join(STATI_FISICI)}"
            )
    else:
        if _blank(_get(movimento, "codice_materiale")) and _blank(_get(movimento, "codice_eer")):
            errors.append("codice_materiale (or codice_eer) is required when causale is 'M'")
        if not quantita_ok:
            errors.append(f"quantita is required and must be > 0 (got {quantita!r})")
        if _blank(_get(movimento, "unita_misura")):
            errors.append("unita_misura is required")

    esito = _get(movimento, "esito_accettazione")
    if esito is not None and esito not in ESITI_ACCETTAZIONE:
        errors.append(
            f"esito_accettazione not valid: {esito!r}; valid values: {', '.join(ESITI_ACCETTAZIONE)}"
        )

    return ValidationResult(valid=not errors, errors=errors)


def map_remote_movimento(remote: Mapping[str, Any]) -> dict[str, Any]:
    """Map one Registry movement to local ``Movimento`` column values.

    Raises:
        ValidationError: ``anno`` or ``progressivo`` missing; they form the
            idempotency key and are never defaulted
    """
    riferimenti = remote.get("riferimenti") or {}
    numero = riferimenti.get("numero_registrazione") or {}

    anno = numero.get("anno", remote.get("anno"))
    progressivo = numero.get("progressivo", remote.get("progressivo"))
    if anno is None or progressivo is None:
        raise ValidationError(
            "Remote movement without anno/progressivo",
            errors=["numero_registrazione.anno and numero_registrazione.progressivo are required"],
        )

    raw_causale = riferimenti.get("causale_operazione") or remote.get("causale_operazione")
    causale = normalize_causale(raw_causale)

    rifiuto = remote.get("rifiuto") or {}
    materiali = remote.get("materiali") or {}
    quantita = rifiuto.get("quantita") or materiali.get("quantita") or {}
    fir = remote.get("integrazione_fir") or {}
    esito = remote.get("esito") or {}

    return {
        "anno": int(anno),
        "progressivo": int(progressivo),
        "rentri_id": numero.get("identificativo") or remote.get("identificativo"),
        "data_ora_registrazione": parse_datetime(
            riferimenti.get("data_ora_registrazione") or remote.get("data_ora_registrazione")
        ),
        "causale_operazione": causale,
        "tipo_operazione": "scarico" if (raw_causale or "").strip() in SCARICO_CAUSALI else "carico",
        "codice_eer": rifiuto.get("codice_eer"),
        "descrizione_eer": rifiuto.get("descrizione_eer"),
        "stato_fisico": rifiuto.get("stato_fisico"),
        "caratteristiche_pericolo": hazard_codes(rifiuto.get("caratteristiche_pericolo")),
        "provenienza_codice": rifiuto.get("provenienza"),
        "destinato_attivita": rifiuto.get("destinato_attivita"),
        "codice_materiale": materiali.get("codice_materiale"),
        "descrizione_materiale": materiali.get("descrizione_materiale"),
        "quantita": quantita.get("valore"),
        "unita_misura": quantita.get("unita_misura"),
        "riferimento_fir": fir.get("numero_fir"),
        "esito_accettazione": esito.get("esito_accettazione"),
        "quantita_accettata": esito.get("quantita_accettata"),
        "note_esito": esito.get("note_esito"),
        "note": remote.get("annotazioni"),
    }


def map_esito(esito: Mapping[str, Any] | None) -> dict[str, Any]:
    """Normalize a transaction result from ``/dati-registri/v1.0/{id}/result``."""
    esito = esito or {}
    return {
        "stato": esito.get("stato") or "errore",
        "errori": list(esito.get("errori") or []),
        "movimenti_validati": list(esito.get("movimenti_validati") or []),
        "numero_registrazioni": list(esito.get("numero_registrazioni") or []),
    }
