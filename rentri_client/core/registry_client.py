"""Registry HTTP transport.

One authenticated exchange against a named service family of the Registry
gateway. Response handling follows a simple rule: 2xx, or any status the
caller declares acceptable, is ok; everything else raises
``RegistryRejection`` carrying the full response.
"""

import asyncio
import base64
import hashlib
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from rentri_client.config import Environment, get_settings
from rentri_client.core.errors import (
    ConfigurationError,
    RegistryRejection,
    RentriError,
    TransportError,
)
from rentri_client.core.retry import RetryPolicy
from rentri_client.core.token_signer import INTEGRITY_HEADER, TokenSigner
from rentri_client.db.models import OperatorCertificate

logger = logging.getLogger(__name__)

SERVICE_PATHS = {
    "anagrafiche": "/anagrafiche/v1.0",
    "ca-rentri": "/ca-rentri/v1.0",
    "codifiche": "/codifiche/v1.0",
    "dati-registri": "/dati-registri/v1.0",
    "formulari": "/formulari/v1.0",
    "vidimazione-formulari": "/vidimazione-formulari/v1.0",
}

JSON_CONTENT_TYPE = "application/json"

_UNSET: Any = object()


@dataclass
class RegistryResponse:
    """Outcome of one exchange. ``parsed_json`` is None for empty or non-JSON bodies."""

    status: int
    headers: httpx.Headers
    text: str
    parsed_json: Any = None

    @property
    def location(self) -> str | None:
        return self.headers.get("location")


@dataclass
class RetryOutcome:
    """Result of ``request_with_retry``: a response or the last error."""

    attempts: int
    response: RegistryResponse | None = None
    error: RentriError | None = None

    @property
    def ok(self) -> bool:
        return self.response is not None


def serialize_body(payload: Any) -> bytes:
    """Compact JSON bytes; the exact bytes that are digested, signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_digest(body: bytes) -> str:
    """RFC 3230 ``Digest`` value: ``SHA-256=<base64 of sha256(body)>``."""
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def service_path(service: str, path: str = "") -> str:
    try:
        prefix = SERVICE_PATHS[service]
    except KeyError as e:
        raise ConfigurationError(f"Unknown Registry service: {service}") from e
    if path and not path.startswith("/"):
        path = "/" + path
    return prefix + path


class RegistryClient:
    """Async client for one Registry gateway (one environment).

    Parameters
    ----------
    base_url : str
        Gateway base URL, e.g. ``https://demoapi.rentri.gov.it``
    signer : TokenSigner, optional
        Used to sign bearer tokens and integrity signatures
    audience : str, optional
        JWT audience for this gateway
    timeout : float, optional
        Hard timeout per exchange in seconds
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (``httpx.MockTransport`` in tests)
    """

    def __init__(
        self,
        base_url: str,
        signer: TokenSigner | None = None,
        audience: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        default_headers: Mapping[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.audience = audience
        self.timeout = timeout if timeout is not None else get_settings().rentri_http_timeout_seconds
        self._transport = transport
        self._default_headers = dict(default_headers or {})

    @classmethod
    def for_environment(
        cls,
        environment: Environment | str,
        signer: TokenSigner | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "RegistryClient":
        """Client configured from settings for one environment."""
        settings = get_settings()
        env = Environment.parse(environment)
        return cls(
            base_url=settings.gateway_url(env),
            signer=signer,
            audience=settings.audience(env),
            timeout=settings.rentri_http_timeout_seconds,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        service: str,
        path: str = "",
        *,
        certificate: OperatorCertificate | None = None,
        query: Mapping[str, Any] | None = None,
        json_body: Any = _UNSET,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        acceptable_status_codes: Iterable[int] = (),
        require_auth: bool = True,
        sign_integrity: bool = False,
    ) -> RegistryResponse:
        """Perform one exchange.

        Args:
            method: HTTP method
            service: Service family key of ``SERVICE_PATHS``
            path: Path below the service prefix
            certificate: Operator certificate, required when signing
            query: Query parameters; None values are dropped
            json_body: Body serialized once with ``serialize_body``
            headers: Extra request headers
            timeout: Override of the client timeout
            acceptable_status_codes: Non-2xx statuses treated as ok
            require_auth: Attach ``Authorization: Bearer``
            sign_integrity: Attach ``Digest`` and the integrity signature over the body

        Returns:
            RegistryResponse

        Raises:
            TransportError: Timeout or network failure
            RegistryRejection: Status neither 2xx nor acceptable
            SigningConfigurationMissing: Signing requested without usable material
        """
        url_path = service_path(service, path)
        request_headers = {"Accept": JSON_CONTENT_TYPE, **self._default_headers, **(headers or {})}

        content: bytes | None = None
        if json_body is not _UNSET:
            content = serialize_body(json_body)
            request_headers["Content-Type"] = JSON_CONTENT_TYPE

        if require_auth or sign_integrity:
            if certificate is None or self.signer is None or not self.audience:
                raise ConfigurationError("Signed request without certificate, signer or audience")
        if require_auth:
            token = self.signer.authorization_token(certificate, self.audience)
            request_headers["Authorization"] = f"Bearer {token}"
        if sign_integrity:
            digest = compute_digest(content or b"")
            request_headers["Digest"] = digest
            request_headers[INTEGRITY_HEADER] = self.signer.integrity_signature(
                certificate, self.audience, digest, JSON_CONTENT_TYPE
            )

        params = {k: str(v) for k, v in (query or {}).items() if v is not None}
        effective_timeout = timeout if timeout is not None else self.timeout

        logger.debug(f"{method} {self.base_url}{url_path}")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=effective_timeout,
                transport=self._transport,
            ) as client:
                response = await asyncio.wait_for(
                    client.request(
                        method,
                        url_path,
                        params=params or None,
                        content=content,
                        headers=request_headers,
                    ),
                    timeout=effective_timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"Registry request timed out after {effective_timeout}s: {method} {url_path}")
            raise TransportError(f"Registry request timed out: {method} {url_path}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Registry connection error: {method} {url_path}: {e}")
            raise TransportError(f"Registry connection error: {e}") from e

        result = self._build_response(response)
        acceptable = set(acceptable_status_codes)
        if not (200 <= result.status < 300 or result.status in acceptable):
            raise RegistryRejection(
                f"Registry request failed ({result.status}): {method} {url_path}", result
            )
        return result

    async def request_with_retry(
        self,
        policy: RetryPolicy,
        method: str,
        service: str,
        path: str = "",
        **kwargs: Any,
    ) -> RetryOutcome:
        """Run ``request`` under ``policy``.

        Rejections with a non-retryable status end the loop at once; retryable
        rejections and transport errors wait ``policy.backoff(attempt)`` before
        the next attempt. Never raises for those two error types; the last one
        is returned in the outcome.
        """
        outcome = RetryOutcome(attempts=0)
        for attempt in range(1, policy.max_attempts + 1):
            outcome.attempts = attempt
            try:
                outcome.response = await self.request(method, service, path, **kwargs)
                outcome.error = None
                return outcome
            except RegistryRejection as e:
                outcome.error = e
                if not policy.is_retryable_status(e.response.status):
                    logger.warning(f"Registry rejected attempt {attempt} with {e.response.status}, not retrying")
                    return outcome
            except TransportError as e:
                outcome.error = e

            if attempt < policy.max_attempts:
                delay = policy.backoff(attempt)
                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed ({outcome.error.message}), "
                    f"retrying in {delay:.1f}s"
                )
                await policy.sleep(delay)
        return outcome

    async def get_service_status(self, service: str) -> RegistryResponse:
        """Unauthenticated ``GET /<service>/v1.0/status``.

        Stub environments answer 422, which counts as reachable.
        """
        return await self.request(
            "GET",
            service,
            "/status",
            require_auth=False,
            acceptable_status_codes=(200, 422),
        )

    async def lookup_codifica(
        self,
        tabella: str,
        certificate: OperatorCertificate,
        **params: str,
    ) -> RegistryResponse:
        """Fetch a code table from ``/codifiche/v1.0/lookup``."""
        if not tabella:
            raise ConfigurationError("Parameter 'tabella' is required for codifiche lookup")
        return await self.request(
            "GET",
            "codifiche",
            "/lookup",
            certificate=certificate,
            query={"tabella": tabella, **params},
        )

    @staticmethod
    def _build_response(response: httpx.Response) -> RegistryResponse:
        text = response.text
        parsed = None
        if text:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
        return RegistryResponse(
            status=response.status_code,
            headers=response.headers,
            text=text,
            parsed_json=parsed,
        )
