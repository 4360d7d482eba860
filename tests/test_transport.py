from __future__ import annotations

import base64
import hashlib
import json
from unittest.mock import MagicMock

import jwt
import pytest
import requests

from loadgen.latency import ERROR, GOOD
from loadgen.wfe.errors import TransportError, UnexpectedStatusError
from loadgen.wfe.nonce import NoncePool
from loadgen.wfe.transport import JWSSigner, SigningTransport, build_session

from conftest import API_BASE, decode_jws, make_response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def nonces(session, latency):
    return NoncePool(session, API_BASE, latency)


@pytest.fixture
def transport(session, nonces, latency):
    return SigningTransport(session, API_BASE, nonces, latency)


def test_signature_verifies_and_carries_nonce_and_jwk(rsa_keys):
    signer = JWSSigner(rsa_keys[0])
    envelope = signer.sign(b'{"resource":"new-reg"}', "nonce-1")

    compact = ".".join([envelope["protected"], envelope["payload"], envelope["signature"]])
    decoded = jwt.api_jws.decode_complete(compact, rsa_keys[0].public_key(), algorithms=["RS256"])

    assert decoded["payload"] == b'{"resource":"new-reg"}'
    assert decoded["header"]["nonce"] == "nonce-1"
    assert decoded["header"]["jwk"] == signer.jwk
    assert decoded["header"]["alg"] == "RS256"
    assert "typ" not in decoded["header"]


def test_thumbprint_is_sha256_of_canonical_jwk(rsa_keys):
    signer = JWSSigner(rsa_keys[0])
    jwk = signer.jwk
    canonical = json.dumps({"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}, separators=(",", ":"))
    expected = base64.urlsafe_b64encode(hashlib.sha256(canonical.encode()).digest()).rstrip(b"=").decode()

    assert signer.thumbprint() == expected


def test_signer_rejects_non_rsa_keys():
    with pytest.raises(TypeError):
        JWSSigner("not a key")


def test_post_harvests_nonce_even_from_error_responses(transport, session, nonces):
    session.request.return_value = make_response(400, {"Replay-Nonce": "from-error"})

    resp = transport.post(f"{API_BASE}/acme/new-reg", b"{}")

    assert resp.status_code == 400
    assert nonces.acquire("/acme/new-reg") == "from-error"


def test_request_failures_become_transport_errors(transport, session):
    session.request.side_effect = requests.ConnectionError("reset")

    with pytest.raises(TransportError):
        transport.get(f"{API_BASE}/acme/cert/1")


def test_nonce_on_a_failed_request_is_kept(transport, session, nonces):
    redirect = make_response(302, {"Replay-Nonce": "carried-by-error"})
    session.request.side_effect = requests.TooManyRedirects("redirect loop", response=redirect)

    with pytest.raises(TransportError):
        transport.post(f"{API_BASE}/acme/new-reg", b"{}")

    assert len(nonces) == 1
    assert nonces.acquire("/acme/new-reg") == "carried-by-error"


def test_sign_and_post_uses_pooled_nonce(transport, session, nonces, rsa_keys):
    nonces.release("pooled")
    session.request.return_value = make_response(201, {"Replay-Nonce": "next"})
    signer = JWSSigner(rsa_keys[1])

    transport.sign_and_post("/acme/new-authz", {"resource": "new-authz"}, signer, expected=201)

    method, url = session.request.call_args.args
    header, payload = decode_jws(session.request.call_args.kwargs["data"])
    assert (method, url) == ("POST", f"{API_BASE}/acme/new-authz")
    assert header["nonce"] == "pooled"
    assert payload == {"resource": "new-authz"}
    assert session.request.call_args.kwargs["headers"]["Content-Type"] == "application/jose+json"
    session.head.assert_not_called()
    assert len(nonces) == 1


def test_timed_post_records_status_mismatch_as_error(transport, session, nonces, latency, rsa_keys):
    nonces.release("pooled")
    session.request.return_value = make_response(500, {"Replay-Nonce": "still-harvested"}, body=b"boom")

    with pytest.raises(UnexpectedStatusError) as excinfo:
        transport.sign_and_post(
            "/acme/new-cert",
            {"resource": "new-cert"},
            JWSSigner(rsa_keys[1]),
            call_class="POST /acme/new-cert",
            expected=201,
        )

    assert excinfo.value.actual == 500
    [record] = latency.records()
    assert (record.call_class, record.state) == ("POST /acme/new-cert", ERROR)
    assert nonces.acquire("/acme/new-cert") == "still-harvested"


def test_timed_get_records_success(transport, session, latency):
    session.request.return_value = make_response(200, body=b"DER")

    transport.get(f"{API_BASE}/acme/cert/1", call_class="GET /acme/cert", expected=200)

    assert [(r.call_class, r.state) for r in latency.records()] == [("GET /acme/cert", GOOD)]


def test_build_session_disables_verification_and_keepalive():
    session = build_session()
    assert session.verify is False
    assert session.headers["Connection"] == "close"
