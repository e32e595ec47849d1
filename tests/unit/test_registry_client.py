"""Unit tests for the Registry HTTP transport and retry loop."""

import base64
import hashlib

import httpx
import pytest
from jose import jwt

from rentri_client.core.errors import ConfigurationError, RegistryRejection, TransportError
from rentri_client.core.registry_client import (
    RegistryClient,
    compute_digest,
    serialize_body,
    service_path,
)
from rentri_client.core.retry import RetryPolicy

BASE_URL = "https://demoapi.rentri.gov.it"
AUDIENCE = "rentrigov.demo.api"


def make_client(stub, signer=None, timeout: float = 5.0) -> RegistryClient:
    return RegistryClient(BASE_URL, signer=signer, audience=AUDIENCE, timeout=timeout, transport=stub.transport)


@pytest.mark.unit
class TestDigest:

    def test_digest_of_empty_body(self):
        assert compute_digest(b"") == "SHA-256=47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="

    def test_digest_matches_serialized_bytes(self):
        body = serialize_body([{"quantita": {"valore": 10.5, "unita_misura": "kg"}, "note": "è"}])
        expected = base64.b64encode(hashlib.sha256(body).digest()).decode()

        assert body == '[{"quantita":{"valore":10.5,"unita_misura":"kg"},"note":"è"}]'.encode("utf-8")
        assert compute_digest(body) == f"SHA-256={expected}"

    def test_service_paths(self):
        assert service_path("dati-registri", "/abc/status") == "/dati-registri/v1.0/abc/status"
        assert service_path("anagrafiche", "registri") == "/anagrafiche/v1.0/registri"
        with pytest.raises(ConfigurationError):
            service_path("fatture", "/x")


@pytest.mark.unit
class TestRequest:

    @pytest.mark.asyncio
    async def test_authenticated_request_carries_bearer_token(self, stub, signer, certificate):
        stub.add("GET", "/anagrafiche/v1.0/operatore/OP1/siti", json_body=[{"num_iscr_sito": "OP1-PD1"}])

        response = await make_client(stub, signer).request(
            "GET", "anagrafiche", "/operatore/OP1/siti", certificate=certificate
        )

        assert response.status == 200
        assert response.parsed_json == [{"num_iscr_sito": "OP1-PD1"}]
        sent = stub.requests[0]
        assert sent.headers["Authorization"].startswith("Bearer ")
        assert "Agid-JWT-Signature" not in sent.headers
        assert "Digest" not in sent.headers

    @pytest.mark.asyncio
    async def test_signed_write_digests_exact_body_sent(self, stub, signer, certificate):
        stub.add("POST", "/anagrafiche/v1.0/registri", json_body={"identificativo": "RG1"})
        payload = {"num_iscr_sito": "OP1-PD1", "attivita": ["Produzione"]}

        await make_client(stub, signer).request(
            "POST", "anagrafiche", "/registri", certificate=certificate, json_body=payload, sign_integrity=True
        )

        sent = stub.requests[0]
        assert sent.content == serialize_body(payload)
        assert sent.headers["Content-Type"] == "application/json"
        assert sent.headers["Digest"] == compute_digest(sent.content)
        claims = jwt.get_unverified_claims(sent.headers["Agid-JWT-Signature"])
        assert claims["signed_headers"][0] == {"digest": sent.headers["Digest"]}

    @pytest.mark.asyncio
    async def test_unauthenticated_request_needs_no_certificate(self, stub):
        stub.add("GET", "/codifiche/v1.0/status", status=422, json_body={"detail": "stub"})

        response = await make_client(stub).get_service_status("codifiche")

        assert response.status == 422
        assert "Authorization" not in stub.requests[0].headers

    @pytest.mark.asyncio
    async def test_signed_request_without_certificate_is_configuration_error(self, stub, signer):
        with pytest.raises(ConfigurationError):
            await make_client(stub, signer).request("GET", "anagrafiche", "/registri")
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_non_acceptable_status_raises_rejection_with_response(self, stub):
        stub.add("GET", "/formulari/v1.0/status", status=400, json_body={"title": "Bad Request"})

        with pytest.raises(RegistryRejection) as exc_info:
            await make_client(stub).request("GET", "formulari", "/status", require_auth=False)

        assert exc_info.value.response.status == 400
        assert exc_info.value.response.parsed_json == {"title": "Bad Request"}
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_acceptable_status_override(self, stub):
        stub.add("GET", "/formulari/v1.0/status", status=404, text="")

        response = await make_client(stub).request(
            "GET", "formulari", "/status", require_auth=False, acceptable_status_codes=[404]
        )
        assert response.status == 404
        assert response.parsed_json is None

    @pytest.mark.asyncio
    async def test_non_json_body_is_tolerated(self, stub):
        stub.add("GET", "/codifiche/v1.0/status", text="OK")

        response = await make_client(stub).request("GET", "codifiche", "/status", require_auth=False)
        assert response.text == "OK"
        assert response.parsed_json is None

    @pytest.mark.asyncio
    async def test_timeout_raises_transport_error(self, stub):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        stub.add_handler("GET", "/codifiche/v1.0/status", timeout)

        with pytest.raises(TransportError):
            await make_client(stub).request("GET", "codifiche", "/status", require_auth=False)

    @pytest.mark.asyncio
    async def test_connection_error_raises_transport_error(self, stub):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        stub.add_handler("GET", "/codifiche/v1.0/status", refused)

        with pytest.raises(TransportError):
            await make_client(stub).request("GET", "codifiche", "/status", require_auth=False)

    @pytest.mark.asyncio
    async def test_query_parameters_drop_none_values(self, stub, signer, certificate):
        stub.add("GET", "/codifiche/v1.0/lookup", json_body=[{"codice": "160104*"}])

        await make_client(stub, signer).lookup_codifica("eer", certificate, filtro="1601")

        params = stub.requests[0].url.params
        assert params["tabella"] == "eer"
        assert params["filtro"] == "1601"


@pytest.mark.unit
class TestRetry:

    PATH = "/dati-registri/v1.0/operatore/RG1/movimenti"

    @pytest.mark.asyncio
    async def test_server_errors_retry_up_to_max_attempts(self, stub, retry_policy, sleeps):
        stub.add("POST", self.PATH, status=503, json_body={"detail": "unavailable"})

        outcome = await make_client(stub).request_with_retry(
            retry_policy, "POST", "dati-registri", "/operatore/RG1/movimenti", json_body=[], require_auth=False
        )

        assert not outcome.ok
        assert outcome.attempts == 3
        assert len(stub.calls("POST", self.PATH)) == 3
        assert sleeps == [1.0, 2.0]
        assert isinstance(outcome.error, RegistryRejection)

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self, stub, retry_policy, sleeps):
        stub.add("POST", self.PATH, status=400, json_body={"errori": ["codice_eer"]})

        outcome = await make_client(stub).request_with_retry(
            retry_policy, "POST", "dati-registri", "/operatore/RG1/movimenti", json_body=[], require_auth=False
        )

        assert outcome.attempts == 1
        assert len(stub.requests) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, stub, retry_policy, sleeps):
        stub.add("POST", self.PATH, status=502)
        stub.add("POST", self.PATH, status=202, json_body={"transazione_id": "TX1"})

        outcome = await make_client(stub).request_with_retry(
            retry_policy, "POST", "dati-registri", "/operatore/RG1/movimenti", json_body=[], require_auth=False
        )

        assert outcome.ok
        assert outcome.attempts == 2
        assert outcome.response.parsed_json == {"transazione_id": "TX1"}
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, stub, retry_policy, sleeps):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        stub.add_handler("POST", self.PATH, refused)

        outcome = await make_client(stub).request_with_retry(
            retry_policy, "POST", "dati-registri", "/operatore/RG1/movimenti", json_body=[], require_auth=False
        )

        assert outcome.attempts == 3
        assert isinstance(outcome.error, TransportError)
        assert len(stub.requests) == 3

    def test_backoff_is_linear(self):
        policy = RetryPolicy(base_delay=1.0)
        assert [policy.backoff(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
        assert policy.is_retryable_status(500)
        assert not policy.is_retryable_status(422)
