from __future__ import annotations

import base64
import json
import os
from typing import Any, Callable

os.environ.setdefault("MPLBACKEND", "Agg")

import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from loadgen.latency import LatencyMap

API_BASE = "http://ca.test"


def make_response(
    status: int = 200,
    headers: dict[str, str] | None = None,
    body: bytes = b"",
    json_body: Any = None,
) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.headers.update(headers or {})
    if json_body is not None:
        body = json.dumps(json_body).encode("utf-8")
    resp._content = body
    resp.encoding = "utf-8"
    return resp


def b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def decode_jws(body: bytes) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return the (protected header, payload) of a flattened JWS request body."""
    envelope = json.loads(body)
    header = json.loads(b64url_decode(envelope["protected"]))
    payload = json.loads(b64url_decode(envelope["payload"]))
    return header, payload


class FakeCA:
    """Duck-typed ``requests.Session`` routing calls to canned responses."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], requests.Response | Callable[..., requests.Response]] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.head_count = 0

    def route(self, method: str, path_or_url: str, response) -> None:
        url = path_or_url if path_or_url.startswith("http") else f"{API_BASE}{path_or_url}"
        self.routes[(method, url)] = response

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append((method, url, kwargs))
        handler = self.routes[(method, url)]
        return handler(**kwargs) if callable(handler) else handler

    def head(self, url: str, **kwargs: Any) -> requests.Response:
        self.head_count += 1
        return make_response(200, {"Replay-Nonce": f"head-nonce-{self.head_count}"})

    def posted(self, url: str) -> list[bytes]:
        return [kwargs["data"] for method, called, kwargs in self.calls if method == "POST" and called == url]


@pytest.fixture(scope="session")
def rsa_keys() -> list[rsa.RSAPrivateKey]:
    return [rsa.generate_private_key(public_exponent=65537, key_size=1024) for _ in range(4)]


@pytest.fixture
def latency() -> LatencyMap:
    return LatencyMap("test run")


@pytest.fixture
def fake_ca() -> FakeCA:
    return FakeCA()
