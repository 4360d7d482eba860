from __future__ import annotations

from dataclasses import dataclass

DEFAULT_API_BASE = "http://localhost:4000"
DEFAULT_RPC_ADDR = "localhost:6060"
DEFAULT_HTTP_ONE_ADDR = "localhost:5002"
DEFAULT_DOMAIN_BASE = "com"
DEFAULT_TERMS_URL = "http://127.0.0.1:4001/terms/v1"


@dataclass(frozen=True)
class LoadConfig:
    """Parameters for a single load generation run against the WFE."""

    api_base: str = DEFAULT_API_BASE
    rpc_addr: str = DEFAULT_RPC_ADDR
    http_one_addr: str = DEFAULT_HTTP_ONE_ADDR
    rate: float = 1.0
    key_size: int = 2048
    domain_base: str = DEFAULT_DOMAIN_BASE
    runtime_seconds: float = 60.0
    terms_url: str = DEFAULT_TERMS_URL
    max_registrations: int = 0

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError("rate must be > 0 calls/second")
        if self.runtime_seconds <= 0:
            raise ValueError("runtime must be > 0 seconds")
        if self.key_size < 1024:
            raise ValueError("key size must be at least 1024 bits")
        if self.max_registrations < 0:
            raise ValueError("max registrations must be >= 0 (0 disables the cap)")
        if not self.api_base.startswith(("http://", "https://")):
            raise ValueError(f"api base {self.api_base!r} must be an http(s) URL")
        for name in ("rpc_addr", "http_one_addr"):
            split_address(getattr(self, name))

    def title(self) -> str:
        return f"WFE -- {self.runtime_seconds:g}s test at {self.rate:g} base actions / second"


def split_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"address {address!r} must be host:port")
    return host or "0.0.0.0", int(port)


__all__ = ["LoadConfig", "split_address"]
