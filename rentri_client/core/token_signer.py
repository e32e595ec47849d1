"""Signed tokens for Registry requests.

Two JWTs are produced from an operator certificate:

- the bearer authorization token (cached per certificate and audience until
  shortly before it expires), and
- the per-request integrity signature sent as ``Agid-JWT-Signature``, which
  binds the body digest and content type and is never cached.

Both carry the certificate chain in the ``x5c`` header so the Registry can
verify the signer without a separate key exchange.
"""

import base64
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwt
from jose.exceptions import JOSEError

from rentri_client.config import get_settings
from rentri_client.core.certificate_store import load_certificate_chain
from rentri_client.core.errors import SigningConfigurationMissing
from rentri_client.db.models import OperatorCertificate

logger = logging.getLogger(__name__)

INTEGRITY_HEADER = "Agid-JWT-Signature"


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: int


class TokenCache:
    """Authorization tokens keyed by ``(certificate_id, audience)``.

    Tokens signed by different certificates never share a slot, so
    concurrent requests for different operators cannot pick up each other's
    token.
    """

    def __init__(self, refresh_margin: int = 5, clock: Callable[[], float] = time.time):
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._tokens: dict[tuple[int, str], CachedToken] = {}
        self._lock = threading.Lock()

    def get(self, certificate_id: int, audience: str) -> str | None:
        with self._lock:
            cached = self._tokens.get((certificate_id, audience))
        if cached is None:
            return None
        if cached.expires_at - self.refresh_margin <= self._clock():
            return None
        return cached.value

    def put(self, certificate_id: int, audience: str, token: CachedToken) -> None:
        with self._lock:
            self._tokens[(certificate_id, audience)] = token

    def invalidate(self, certificate_id: int | None = None) -> None:
        """Drop cached tokens for one certificate, or all of them."""
        with self._lock:
            if certificate_id is None:
                self._tokens.clear()
                return
            for key in [k for k in self._tokens if k[0] == certificate_id]:
                del self._tokens[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class TokenSigner:
    """Builds authorization tokens and integrity signatures."""

    def __init__(
        self,
        cache: TokenCache | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.rentri_jwt_ttl_seconds
        self._clock = clock
        self.cache = cache if cache is not None else TokenCache(
            refresh_margin=settings.rentri_token_refresh_margin_seconds, clock=clock
        )

    def authorization_token(self, cert: OperatorCertificate, audience: str) -> str:
        """Bearer token for ``cert``, reused until close to expiry.

        Raises:
            SigningConfigurationMissing: Certificate, key or issuer unusable
        """
        cached = self.cache.get(cert.id, audience)
        if cached is not None:
            return cached

        claims = self._base_claims(cert, audience)
        token = self._sign(cert, claims)
        self.cache.put(cert.id, audience, CachedToken(token, claims["exp"]))
        logger.debug(f"Signed authorization token for certificate {cert.id} aud={audience}")
        return token

    def integrity_signature(
        self,
        cert: OperatorCertificate,
        audience: str,
        digest: str,
        content_type: str = "application/json",
    ) -> str:
        """Integrity JWT bound to one request body.

        Args:
            cert: Signing certificate
            audience: Registry audience
            digest: ``SHA-256=<base64>`` value of the exact body bytes sent
            content_type: Content type of the body sent
        """
        claims = self._base_claims(cert, audience)
        claims["signed_headers"] = [
            {"digest": digest},
            {"content-type": content_type},
        ]
        return self._sign(cert, claims)

    def _base_claims(self, cert: OperatorCertificate, audience: str) -> dict:
        if not cert.cf_operatore:
            raise SigningConfigurationMissing(
                f"Certificate {cert.id} has no operator tax code (issuer)"
            )
        now = int(self._clock())
        return {
            "jti": str(uuid.uuid4()),
            "aud": audience,
            "iss": cert.cf_operatore,
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl_seconds,
        }

    def _sign(self, cert: OperatorCertificate, claims: dict) -> str:
        if not cert.certificate_pem or not cert.private_key_pem:
            raise SigningConfigurationMissing(f"Certificate {cert.id} has no certificate or key material")
        try:
            key = serialization.load_pem_private_key(cert.private_key_pem.encode("ascii"), password=None)
            chain = load_certificate_chain(cert)
        except ValueError as e:
            raise SigningConfigurationMissing(f"Certificate {cert.id} material cannot be loaded: {e}") from e

        algorithm = signing_algorithm(key)
        x5c = [
            base64.b64encode(c.public_bytes(serialization.Encoding.DER)).decode("ascii")
            for c in chain
        ]
        try:
            return jwt.encode(
                claims,
                cert.private_key_pem,
                algorithm=algorithm,
                headers={"typ": "JWT", "x5c": x5c},
            )
        except JOSEError as e:
            raise SigningConfigurationMissing(f"Signing failed for certificate {cert.id}: {e}") from e


def signing_algorithm(key) -> str:
    """RS256 for RSA keys, ES256 for EC keys."""
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return "ES256"
    raise SigningConfigurationMissing(f"Unsupported private key type: {type(key).__name__}")
