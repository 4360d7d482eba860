from __future__ import annotations

import base64
import binascii
import logging
import random
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import ParseError
from .rwlock import RWLock
from .transport import JWSSigner

LOGGER = logging.getLogger("loadgen.wfe.registry")

SNAPSHOT_KEY = "Registrations"


@dataclass(eq=False)
class Registration:
    """A simulated ACME account and the authorizations/certificates it has collected."""

    key: rsa.RSAPrivateKey
    signer: JWSSigner
    auths: list[str] = field(default_factory=list)
    certs: list[str] = field(default_factory=list)
    lock: RWLock = field(default_factory=RWLock, repr=False)

    @classmethod
    def from_key(cls, key: rsa.RSAPrivateKey) -> "Registration":
        return cls(key=key, signer=JWSSigner(key))

    def add_authorization(self, url: str) -> None:
        with self.lock.write_locked():
            self.auths.append(url)

    def add_certificate(self, url: str) -> None:
        with self.lock.write_locked():
            self.certs.append(url)

    def authorizations(self) -> list[str]:
        with self.lock.read_locked():
            return list(self.auths)

    def certificates(self) -> list[str]:
        with self.lock.read_locked():
            return list(self.certs)

    def has_authorizations(self) -> bool:
        with self.lock.read_locked():
            return bool(self.auths)

    def has_certificates(self) -> bool:
        with self.lock.read_locked():
            return bool(self.certs)

    def to_raw(self) -> dict[str, Any]:
        der = self.key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        with self.lock.read_locked():
            return {
                "certs": list(self.certs),
                "auths": list(self.auths),
                "rawKey": base64.b64encode(der).decode("ascii"),
            }


def registration_from_raw(entry: dict[str, Any]) -> Registration:
    try:
        der = base64.b64decode(entry["rawKey"], validate=True)
        key = serialization.load_der_private_key(der, password=None)
    except (KeyError, TypeError, ValueError, binascii.Error, UnsupportedAlgorithm) as exc:
        raise ParseError(f"undecodable rawKey: {exc}") from exc

    try:
        signer = JWSSigner(key)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"cannot build signer: {exc}") from exc

    auths = entry.get("auths") or []
    certs = entry.get("certs") or []
    if not isinstance(auths, list) or not isinstance(certs, list):
        raise ParseError("auths and certs must be lists of URLs")

    return Registration(
        key=key,
        signer=signer,
        auths=[str(url) for url in auths],
        certs=[str(url) for url in certs],
    )


class RegistrationStore:
    """Append-only set of registrations shared by every in-flight call."""

    def __init__(self, capacity: int = 0) -> None:
        self._capacity = max(capacity, 0)
        self._lock = RWLock()
        self._registrations: list[Registration] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, registration: Registration) -> bool:
        with self._lock.write_locked():
            return self._append(registration)

    def pick_random(self, rng: random.Random | None = None) -> Registration | None:
        rng = rng if rng is not None else random
        with self._lock.read_locked():
            if not self._registrations:
                return None
            return self._registrations[rng.randrange(len(self._registrations))]

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._registrations)

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        with self._lock.read_locked():
            registrations = list(self._registrations)
        return {SNAPSHOT_KEY: [registration.to_raw() for registration in registrations]}

    def restore(self, record: dict[str, Any]) -> int:
        if not isinstance(record, dict) or not isinstance(record.get(SNAPSHOT_KEY, []), list):
            raise ParseError(f"snapshot must be an object holding a {SNAPSHOT_KEY!r} list")

        restored = 0
        with self._lock.write_locked():
            for index, entry in enumerate(record.get(SNAPSHOT_KEY) or []):
                try:
                    registration = registration_from_raw(entry)
                except ParseError as exc:
                    LOGGER.warning("Skipping snapshot entry %d: %s", index, exc)
                    continue
                if self._append(registration):
                    restored += 1
        LOGGER.info("Restored %d registration(s) from snapshot", restored)
        return restored

    def _append(self, registration: Registration) -> bool:
        if self._capacity and len(self._registrations) >= self._capacity:
            LOGGER.debug("Registration store full (%d), dropping registration", self._capacity)
            return False
        self._registrations.append(registration)
        return True


__all__ = ["Registration", "RegistrationStore", "SNAPSHOT_KEY", "registration_from_raw"]
