from __future__ import annotations

import contextlib
import logging
import subprocess
import time
from typing import Iterator

import docker
from docker.errors import DockerException
from docker.models.containers import Container

from .errors import ProcessError

LOGGER = logging.getLogger("loadgen.wfe.process")

EXITED_STATUSES = ("exited", "dead")


def challenge_server_args(rpc_addr: str, http_one_addr: str) -> list[str]:
    return ["chall-srv", "--rpc-addr", rpc_addr, "--http-one-addr", http_one_addr]


class CompanionProcess:
    """Start/stop contract for the challenge server that runs beside the load.

    ``start`` failing aborts the run; ``stop`` failing is only reported.
    """

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    @contextlib.contextmanager
    def running(self) -> Iterator[None]:
        self.start()
        try:
            yield
        finally:
            try:
                self.stop()
            except ProcessError as exc:
                LOGGER.error("Error stopping challenge server: %s", exc)


class LocalChallengeServer(CompanionProcess):
    """Challenge server launched as a child process of the load generator."""

    def __init__(
        self,
        binary: str,
        rpc_addr: str,
        http_one_addr: str,
        stop_timeout_seconds: float = 10.0,
    ) -> None:
        self._command = [binary, *challenge_server_args(rpc_addr, http_one_addr)]
        self._stop_timeout_seconds = stop_timeout_seconds
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        LOGGER.info("Starting challenge server: %s", " ".join(self._command))
        try:
            self._process = subprocess.Popen(self._command)
        except OSError as exc:
            raise ProcessError(f"failed to start challenge server: {exc}") from exc

    def stop(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None
        LOGGER.info("Stopping challenge server (pid %d)", process.pid)
        try:
            process.terminate()
            try:
                process.wait(timeout=self._stop_timeout_seconds)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=self._stop_timeout_seconds)
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProcessError(f"failed to stop challenge server: {exc}") from exc


class ContainerChallengeServer(CompanionProcess):
    """Challenge server run in a Docker container on the host network."""

    def __init__(
        self,
        image: str,
        rpc_addr: str,
        http_one_addr: str,
        startup_grace_seconds: float = 10.0,
        client: docker.DockerClient | None = None,
    ) -> None:
        self._image = image
        self._command = challenge_server_args(rpc_addr, http_one_addr)
        self._startup_grace_seconds = startup_grace_seconds
        self._client = client
        self._container: Container | None = None

    def start(self) -> None:
        LOGGER.info("Starting challenge server container from %s", self._image)
        try:
            client = self._client if self._client is not None else docker.from_env()
            self._container = client.containers.run(
                self._image,
                command=self._command,
                name=f"loadgen-chall-srv-{int(time.time())}",
                detach=True,
                network_mode="host",
            )
        except DockerException as exc:
            raise ProcessError(f"failed to start challenge server container: {exc}") from exc
        self._wait_for_startup()

    def stop(self) -> None:
        container = self._container
        if container is None:
            return
        self._container = None
        LOGGER.info("Stopping challenge server container %s", container.name)
        try:
            container.stop(timeout=10)
        except DockerException as exc:
            raise ProcessError(f"failed to stop challenge server container: {exc}") from exc
        finally:
            with contextlib.suppress(DockerException):
                container.remove(force=True)

    def _wait_for_startup(self) -> None:
        deadline = time.time() + self._startup_grace_seconds
        while True:
            state = self._container_state()
            if state.get("Running", False):
                return
            if state.get("Status") in EXITED_STATUSES:
                self._discard_container()
                raise ProcessError(
                    f"challenge server container exited during startup (exit code {state.get('ExitCode')})"
                )
            if time.time() >= deadline:
                break
            time.sleep(0.5)
        LOGGER.warning("Challenge server container may not be running before load starts")

    def _container_state(self) -> dict:
        container = self._container
        if container is None:
            return {}
        with contextlib.suppress(DockerException):
            container.reload()
            return container.attrs.get("State", {})
        return {}

    def _discard_container(self) -> None:
        container, self._container = self._container, None
        if container is not None:
            with contextlib.suppress(DockerException):
                container.remove(force=True)


__all__ = [
    "CompanionProcess",
    "ContainerChallengeServer",
    "LocalChallengeServer",
    "challenge_server_args",
]
