from __future__ import annotations

import base64
import hashlib
import json
from typing import Any

import jwt
import requests
import urllib3
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from ..latency import LatencyMap
from .errors import TransportError, UnexpectedStatusError
from .nonce import CONNECT_TIMEOUT_S, NONCE_HEADER, NoncePool

JOSE_CONTENT_TYPE = "application/jose+json"


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class JWSSigner:
    """RS256 signer bound to a single account key."""

    algorithm = "RS256"

    def __init__(self, key: rsa.RSAPrivateKey) -> None:
        if not isinstance(key, rsa.RSAPrivateKey):
            raise TypeError(f"unsupported account key type {type(key).__name__}")
        self._key = key
        public_jwk = json.loads(RSAAlgorithm.to_jwk(key.public_key()))
        self._jwk: dict[str, str] = {name: public_jwk[name] for name in ("kty", "n", "e")}

    @property
    def key(self) -> rsa.RSAPrivateKey:
        return self._key

    @property
    def jwk(self) -> dict[str, str]:
        return dict(self._jwk)

    def thumbprint(self) -> str:
        # RFC 7638: required members, sorted, no whitespace
        digest = hashlib.sha256(
            json.dumps(self._jwk, sort_keys=True, separators=(",", ":")).encode("utf-8")
        ).digest()
        return b64url(digest)

    def sign(self, payload: bytes, nonce: str) -> dict[str, str]:
        compact = jwt.api_jws.encode(
            payload,
            self._key,
            algorithm=self.algorithm,
            headers={"typ": None, "jwk": self._jwk, "nonce": nonce},
        )
        protected, encoded_payload, signature = compact.split(".")
        return {"protected": protected, "payload": encoded_payload, "signature": signature}


def build_session() -> requests.Session:
    """HTTP session for load generation: no certificate checks, no keep-alives."""
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    session = requests.Session()
    session.verify = False
    session.headers["Connection"] = "close"
    return session


def check_status(resp: requests.Response, expected: int, call_class: str) -> None:
    if resp.status_code != expected:
        raise UnexpectedStatusError(call_class, expected, resp.status_code, resp.text)


class SigningTransport:
    """Sends JWS-signed requests, feeding every returned nonce back into the pool.

    When a ``call_class`` is given the request itself (not nonce acquisition
    or signing) is timed into the latency map, and an ``expected`` status other
    than the one received tags the call as an error.
    """

    def __init__(
        self,
        session: requests.Session,
        api_base: str,
        nonces: NoncePool,
        latency: LatencyMap,
    ) -> None:
        self._session = session
        self._api_base = api_base.rstrip("/")
        self._nonces = nonces
        self._latency = latency

    @property
    def api_base(self) -> str:
        return self._api_base

    def url_for(self, path: str) -> str:
        return f"{self._api_base}{path}"

    def post(
        self,
        url: str,
        body: bytes,
        call_class: str | None = None,
        expected: int | None = None,
    ) -> requests.Response:
        return self._timed_request(
            "POST",
            url,
            call_class,
            expected,
            data=body,
            headers={"Content-Type": JOSE_CONTENT_TYPE},
        )

    def get(
        self,
        url: str,
        call_class: str | None = None,
        expected: int | None = None,
    ) -> requests.Response:
        return self._timed_request("GET", url, call_class, expected)

    def sign_with_nonce(
        self,
        path: str,
        payload: dict[str, Any],
        signer: JWSSigner,
        force_fresh: bool = False,
    ) -> bytes:
        nonce = self._nonces.acquire(path, force_fresh=force_fresh)
        envelope = signer.sign(json.dumps(payload).encode("utf-8"), nonce)
        return json.dumps(envelope).encode("utf-8")

    def sign_and_post(
        self,
        path: str,
        payload: dict[str, Any],
        signer: JWSSigner,
        force_fresh: bool = False,
        url: str | None = None,
        call_class: str | None = None,
        expected: int | None = None,
    ) -> requests.Response:
        body = self.sign_with_nonce(path, payload, signer, force_fresh=force_fresh)
        return self.post(url or self.url_for(path), body, call_class=call_class, expected=expected)

    def _timed_request(
        self,
        method: str,
        url: str,
        call_class: str | None,
        expected: int | None,
        **kwargs: Any,
    ) -> requests.Response:
        if call_class is None:
            resp = self._request(method, url, **kwargs)
            if expected is not None:
                check_status(resp, expected, f"{method} {url}")
            return resp

        with self._latency.timed(call_class):
            resp = self._request(method, url, **kwargs)
            if expected is not None:
                check_status(resp, expected, call_class)
        return resp

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self._session.request(method, url, timeout=(CONNECT_TIMEOUT_S, None), **kwargs)
        except requests.RequestException as exc:
            # Some failures (redirect loops) still carry a response with a usable nonce
            if exc.response is not None:
                self._harvest(exc.response)
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        self._harvest(resp)
        return resp

    def _harvest(self, resp: requests.Response) -> None:
        nonce = resp.headers.get(NONCE_HEADER)
        if nonce:
            self._nonces.release(nonce)


__all__ = ["JWSSigner", "SigningTransport", "b64url", "build_session", "check_status"]
