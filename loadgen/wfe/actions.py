from __future__ import annotations

import logging
import random
import string
import time
from typing import Any, Callable

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..challsrv import ChallengeClient
from .errors import ProtocolError, TransportError
from .registry import Registration, RegistrationStore
from .selector import NEW_AUTHORIZATION, NEW_CERTIFICATE, NEW_REGISTRATION, REVOKE_CERTIFICATE
from .transport import SigningTransport, b64url

LOGGER = logging.getLogger("loadgen.wfe.actions")

NEW_REG_PATH = "/acme/new-reg"
NEW_AUTHZ_PATH = "/acme/new-authz"
NEW_CERT_PATH = "/acme/new-cert"
REVOKE_CERT_PATH = "/acme/revoke-cert"

AUTHZ_POLL_ATTEMPTS = 5
AUTHZ_POLL_INTERVAL_S = 1.0

Action = Callable[[Registration | None], None]


def generate_key(key_size: int) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def random_label(rng: random.Random, length: int = 8) -> str:
    return "".join(rng.choice(string.ascii_lowercase) for _ in range(length))


def build_csr(domain: str, key: rsa.RSAPrivateKey) -> bytes:
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def _location(resp: requests.Response, call_class: str) -> str:
    location = resp.headers.get("Location")
    if not location:
        raise ProtocolError(f"{call_class}: response carried no Location header")
    return location


def _json(resp: requests.Response, call_class: str) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise ProtocolError(f"{call_class}: response body is not JSON") from exc
    if not isinstance(body, dict):
        raise ProtocolError(f"{call_class}: expected a JSON object")
    return body


def _require(registration: Registration | None) -> Registration:
    if registration is None:
        raise ValueError("this action needs an existing registration")
    return registration


class Actions:
    """The weighted protocol calls the dispatcher chooses between."""

    def __init__(
        self,
        transport: SigningTransport,
        registrations: RegistrationStore,
        challenges: ChallengeClient,
        *,
        key_size: int,
        domain_base: str,
        terms_url: str,
        cert_key: rsa.RSAPrivateKey | None = None,
        poll_interval_s: float = AUTHZ_POLL_INTERVAL_S,
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._registrations = registrations
        self._challenges = challenges
        self._key_size = key_size
        self._domain_base = domain_base
        self._terms_url = terms_url
        self._cert_key = cert_key if cert_key is not None else generate_key(key_size)
        self._poll_interval_s = poll_interval_s
        self._rng = rng if rng is not None else random.Random()

    def as_table(self) -> dict[str, Action]:
        return {
            NEW_REGISTRATION: self.new_registration,
            NEW_AUTHORIZATION: self.new_authorization,
            NEW_CERTIFICATE: self.new_certificate,
            REVOKE_CERTIFICATE: self.revoke_certificate,
        }

    def new_registration(self, registration: Registration | None = None) -> None:
        reg = Registration.from_key(generate_key(self._key_size))

        resp = self._transport.sign_and_post(
            NEW_REG_PATH,
            {"resource": "new-reg", "contact": []},
            reg.signer,
            force_fresh=True,
            call_class=f"POST {NEW_REG_PATH}",
            expected=201,
        )
        reg_url = _location(resp, f"POST {NEW_REG_PATH}")

        self._transport.sign_and_post(
            NEW_REG_PATH,
            {"resource": "reg", "agreement": self._terms_url},
            reg.signer,
            url=reg_url,
            call_class="POST /acme/reg",
            expected=202,
        )
        self._registrations.add(reg)

    def new_authorization(self, registration: Registration | None) -> None:
        reg = _require(registration)
        domain = f"{random_label(self._rng)}.{self._domain_base}"

        resp = self._transport.sign_and_post(
            NEW_AUTHZ_PATH,
            {"resource": "new-authz", "identifier": {"type": "dns", "value": domain}},
            reg.signer,
            call_class=f"POST {NEW_AUTHZ_PATH}",
            expected=201,
        )
        authz_url = _location(resp, f"POST {NEW_AUTHZ_PATH}")
        challenge = _http01_challenge(_json(resp, f"POST {NEW_AUTHZ_PATH}"))

        token = challenge["token"]
        key_authorization = f"{token}.{reg.signer.thumbprint()}"
        self._challenges.add_http01(token, key_authorization)
        try:
            self._transport.sign_and_post(
                NEW_AUTHZ_PATH,
                {"resource": "challenge", "type": "http-01", "keyAuthorization": key_authorization},
                reg.signer,
                url=challenge.get("uri") or challenge.get("url"),
                call_class="POST /acme/challenge",
                expected=202,
            )
            status = self._wait_for_authorization(authz_url)
        finally:
            self._withdraw(token)

        if status != "valid":
            raise ProtocolError(f"authorization {authz_url} finished as {status!r}")
        reg.add_authorization(authz_url)

    def new_certificate(self, registration: Registration | None) -> None:
        reg = _require(registration)
        authz_url = self._rng.choice(reg.authorizations())

        resp = self._transport.get(authz_url, call_class="GET /acme/authz", expected=200)
        try:
            domain = _json(resp, "GET /acme/authz")["identifier"]["value"]
        except (KeyError, TypeError) as exc:
            raise ProtocolError(f"authorization {authz_url} has no identifier") from exc

        resp = self._transport.sign_and_post(
            NEW_CERT_PATH,
            {"resource": "new-cert", "csr": b64url(build_csr(domain, self._cert_key))},
            reg.signer,
            call_class=f"POST {NEW_CERT_PATH}",
            expected=201,
        )
        reg.add_certificate(_location(resp, f"POST {NEW_CERT_PATH}"))

    def revoke_certificate(self, registration: Registration | None) -> None:
        reg = _require(registration)
        cert_url = self._rng.choice(reg.certificates())

        resp = self._transport.get(cert_url, call_class="GET /acme/cert", expected=200)
        self._transport.sign_and_post(
            REVOKE_CERT_PATH,
            {"resource": "revoke-cert", "certificate": b64url(resp.content)},
            reg.signer,
            call_class=f"POST {REVOKE_CERT_PATH}",
            expected=200,
        )

    def _wait_for_authorization(self, authz_url: str) -> str:
        status = "pending"
        for _ in range(AUTHZ_POLL_ATTEMPTS):
            if self._poll_interval_s > 0:
                time.sleep(self._poll_interval_s)
            resp = self._transport.get(authz_url, call_class="GET /acme/authz", expected=200)
            status = str(_json(resp, "GET /acme/authz").get("status", "pending"))
            if status != "pending":
                break
        return status

    def _withdraw(self, token: str) -> None:
        try:
            self._challenges.del_http01(token)
        except TransportError as exc:
            LOGGER.debug("Could not withdraw HTTP-01 token %s: %s", token, exc)


def _http01_challenge(authz: dict[str, Any]) -> dict[str, Any]:
    for challenge in authz.get("challenges") or []:
        if isinstance(challenge, dict) and challenge.get("type") == "http-01" and challenge.get("token"):
            if challenge.get("uri") or challenge.get("url"):
                return challenge
    raise ProtocolError("authorization offered no usable http-01 challenge")


__all__ = ["Action", "Actions", "build_csr", "generate_key", "random_label"]
