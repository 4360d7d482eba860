from __future__ import annotations

import contextlib
import itertools
import json
import logging
import random
import threading
from pathlib import Path
from typing import Mapping

import requests

from ..challsrv import ChallengeClient
from ..latency import LatencyMap
from .actions import Action, Actions
from .config import LoadConfig
from .errors import LoadGeneratorError, ParseError
from .nonce import NoncePool
from .process_control import CompanionProcess
from .registry import RegistrationStore
from .selector import DispatchContext, WeightedActionSelector
from .transport import SigningTransport, build_session

LOGGER = logging.getLogger("loadgen.wfe.state")

IDLE = "idle"
RUNNING = "running"
DRAINING = "draining"
STOPPED = "stopped"


class State:
    """Shared load generation state and the rate-controlled dispatch loop.

    Every tick of the loop starts one call on its own thread; the loop never
    waits for calls to finish, so the number of calls in flight is bounded only
    by the rate and the server's latency. At shutdown the loop stops launching
    calls and ``run`` blocks until every in-flight call has completed.
    """

    def __init__(
        self,
        config: LoadConfig,
        *,
        session: requests.Session | None = None,
        latency: LatencyMap | None = None,
        actions: Mapping[str, Action] | None = None,
        selector: WeightedActionSelector | None = None,
        companion: CompanionProcess | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._rate = float(config.rate)
        self._session = session if session is not None else build_session()
        self._rng = rng if rng is not None else random.Random()

        self.latency = latency if latency is not None else LatencyMap(config.title())
        self.nonces = NoncePool(self._session, config.api_base, self.latency)
        self.transport = SigningTransport(self._session, config.api_base, self.nonces, self.latency)
        self.registrations = RegistrationStore(capacity=config.max_registrations)

        self._selector = selector if selector is not None else WeightedActionSelector()
        if actions is None:
            actions = Actions(
                self.transport,
                self.registrations,
                ChallengeClient(config.rpc_addr, self._session),
                key_size=config.key_size,
                domain_base=config.domain_base,
                terms_url=config.terms_url,
                rng=self._rng,
            ).as_table()
        missing = {profile.name for profile in self._selector.profiles} - set(actions)
        if missing:
            raise ValueError(f"no implementation for action(s): {', '.join(sorted(missing))}")
        self._actions = dict(actions)

        self._companion = companion
        self._stop_event = threading.Event()
        self._in_flight_cond = threading.Condition()
        self._in_flight = 0
        self._call_ids = itertools.count(start=1)
        self._dispatched = 0
        self._phase = IDLE

    @property
    def config(self) -> LoadConfig:
        return self._config

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def rate(self) -> float:
        return self._rate

    def set_rate(self, rate: float) -> None:
        """Change the dispatch rate; the next tick of a running loop picks it up."""
        if rate <= 0:
            raise ValueError("rate must be > 0 calls/second")
        self._rate = float(rate)
        LOGGER.info("Dispatch rate set to %.2f calls/second", rate)

    @property
    def in_flight(self) -> int:
        with self._in_flight_cond:
            return self._in_flight

    @property
    def dispatched(self) -> int:
        return self._dispatched

    def run(self) -> None:
        if self._phase != IDLE:
            raise RuntimeError(f"cannot run load generation from phase {self._phase!r}")

        companion = self._companion.running() if self._companion else contextlib.nullcontext()
        with companion:
            self._phase = RUNNING
            self.latency.start()
            LOGGER.info("%s", self.latency.title)

            loop = threading.Thread(target=self._dispatch_loop, name="wfe-dispatch", daemon=True)
            loop.start()
            try:
                self._stop_event.wait(self._config.runtime_seconds)
            except KeyboardInterrupt:
                LOGGER.warning("Interrupted, stopping dispatch early")

            self._phase = DRAINING
            self._stop_event.set()
            loop.join()
            LOGGER.info("Dispatch stopped, waiting for %d in-flight call(s)", self.in_flight)
            self._wait_for_in_flight()
            LOGGER.info("All calls finished (%d dispatched)", self._dispatched)

        self._phase = STOPPED
        self.latency.stop()

    def stop(self) -> None:
        """Stop dispatching before the configured run time has elapsed."""
        self._stop_event.set()

    def save_snapshot(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.registrations.snapshot(), f)
        LOGGER.info("Saved %d registration(s) to %s", len(self.registrations), path)

    def load_snapshot(self, path: Path) -> int:
        try:
            with open(path, encoding="utf-8") as f:
                record = json.load(f)
        except json.JSONDecodeError as exc:
            raise ParseError(f"snapshot {path} is not valid JSON: {exc}") from exc
        return self.registrations.restore(record)

    def dump(self, path: Path) -> None:
        self.latency.dump(path)
        LOGGER.info("Latency report written to %s", path)

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            call_id = next(self._call_ids)
            self._call_started()
            worker = threading.Thread(target=self._send_call, name=f"wfe-call-{call_id}", daemon=True)
            try:
                worker.start()
            except RuntimeError:
                self._call_done()
                LOGGER.exception("Could not start dispatch thread")
            if self._stop_event.wait(timeout=1.0 / self._rate):
                return

    def _send_call(self) -> None:
        try:
            registration = self.registrations.pick_random(self._rng)
            profile = self._selector.select(DispatchContext.for_registration(registration), self._rng)
            self._actions[profile.name](registration)
        except LoadGeneratorError as exc:
            LOGGER.debug("Call failed: %s", exc)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Call raised unexpectedly")
        finally:
            self._call_done()

    def _call_started(self) -> None:
        with self._in_flight_cond:
            self._in_flight += 1
            self._dispatched += 1

    def _call_done(self) -> None:
        with self._in_flight_cond:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._in_flight_cond.notify_all()

    def _wait_for_in_flight(self) -> None:
        with self._in_flight_cond:
            while self._in_flight:
                self._in_flight_cond.wait()


__all__ = ["DRAINING", "IDLE", "RUNNING", "STOPPED", "State"]
