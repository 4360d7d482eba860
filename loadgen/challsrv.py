"""
HTTP-01 challenge server used alongside the load generator.

Two listeners share one token store: the RPC listener lets the load generator
publish and withdraw key authorizations, and the HTTP-01 listener answers the
validation requests the CA sends to ``/.well-known/acme-challenge/{token}``.
"""

from __future__ import annotations

import logging
import threading

import requests
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .wfe.config import split_address
from .wfe.errors import TransportError

LOGGER = logging.getLogger("loadgen.challsrv")

CHALLENGE_PATH = "/.well-known/acme-challenge"


class ChallengeStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}

    def add(self, token: str, content: str) -> None:
        with self._lock:
            self._tokens[token] = content

    def remove(self, token: str) -> bool:
        with self._lock:
            return self._tokens.pop(token, None) is not None

    def get(self, token: str) -> str | None:
        with self._lock:
            return self._tokens.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class AddHTTP01Request(BaseModel):
    token: str
    content: str


class DelHTTP01Request(BaseModel):
    token: str


def create_rpc_app(store: ChallengeStore) -> FastAPI:
    app = FastAPI(title="loadgen challenge RPC")

    @app.get("/")
    async def root():
        return {"service": "chall-srv", "tokens": len(store)}

    @app.post("/add-http01")
    async def add_http01(req: AddHTTP01Request):
        store.add(req.token, req.content)
        LOGGER.debug("Added HTTP-01 token %s", req.token)
        return {"status": "added"}

    @app.post("/del-http01")
    async def del_http01(req: DelHTTP01Request):
        removed = store.remove(req.token)
        return {"status": "removed" if removed else "absent"}

    return app


def create_http_one_app(store: ChallengeStore) -> FastAPI:
    app = FastAPI(title="loadgen HTTP-01 responder")

    @app.get(CHALLENGE_PATH + "/{token}", response_class=PlainTextResponse)
    async def challenge(token: str):
        content = store.get(token)
        if content is None:
            raise HTTPException(status_code=404, detail="unknown token")
        return content

    return app


def serve(rpc_addr: str, http_one_addr: str, log_level: str = "warning") -> None:
    """Run both listeners until the process is told to stop."""
    store = ChallengeStore()

    http_host, http_port = split_address(http_one_addr)
    http_one = uvicorn.Server(
        uvicorn.Config(create_http_one_app(store), host=http_host, port=http_port, log_level=log_level)
    )
    thread = threading.Thread(target=http_one.run, name="chall-srv-http-01", daemon=True)
    thread.start()

    rpc_host, rpc_port = split_address(rpc_addr)
    rpc = uvicorn.Server(
        uvicorn.Config(create_rpc_app(store), host=rpc_host, port=rpc_port, log_level=log_level)
    )
    LOGGER.info("Challenge server listening: rpc=%s http-01=%s", rpc_addr, http_one_addr)
    try:
        rpc.run()
    finally:
        http_one.should_exit = True
        thread.join(timeout=5.0)


class ChallengeClient:
    """Publishes key authorizations to a running challenge server."""

    def __init__(self, rpc_addr: str, session: requests.Session) -> None:
        self._base = f"http://{rpc_addr}"
        self._session = session

    def add_http01(self, token: str, content: str) -> None:
        self._call("/add-http01", {"token": token, "content": content})

    def del_http01(self, token: str) -> None:
        self._call("/del-http01", {"token": token})

    def _call(self, path: str, payload: dict[str, str]) -> None:
        url = f"{self._base}{path}"
        try:
            resp = self._session.post(url, json=payload, timeout=(3.0, 10.0))
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"challenge server call {url} failed: {exc}") from exc


__all__ = [
    "ChallengeClient",
    "ChallengeStore",
    "create_http_one_app",
    "create_rpc_app",
    "serve",
]
