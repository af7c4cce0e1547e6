"""
Container Runtime
=================
Thin adapter over the Docker SDK exposing exactly the primitives the
sandbox executor needs:

    create → start → exec (stream + exit code) → disconnect-network
           → stop → remove

No policy lives here: resource ceilings, network gating and teardown order
are decided by the Build Executor. Every ``docker.errors.DockerException``
is translated into ``InfrastructureError`` so callers deal with a single
failure type for runtime problems.
"""
import codecs
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import docker
from docker.errors import DockerException, ImageNotFound

from app.core.errors import InfrastructureError

logger = logging.getLogger(__name__)

# Keeps the container alive between exec'd phase commands
KEEP_ALIVE_COMMAND = ["sh", "-c", "tail -f /dev/null"]


@contextmanager
def _docker_errors(action: str):
    try:
        yield
    except DockerException as e:
        raise InfrastructureError(f"Docker {action} failed: {e}") from e


class DockerRuntime:
    """
    Container runtime backed by the local Docker daemon.

    The client is created lazily so that constructing the runtime never
    requires a reachable daemon.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None) -> None:
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with _docker_errors("client initialisation"):
                self._client = docker.from_env()
            logger.info("Docker client initialized")
        return self._client

    # ------------------------------------------------------------------
    # Lifecycle primitives
    # ------------------------------------------------------------------
    def create(self, *, image: str, name: str, working_dir: str,
               binds: dict, environment: list[str], dns: list[str],
               network_mode: str, mem_limit: int, memswap_limit: int,
               cpu_period: int, cpu_quota: int,
               cap_drop: list[str], security_opt: list[str],
               labels: Optional[dict] = None) -> str:
        """Create (but do not start) a container. Returns its id."""
        kwargs = dict(
            command=KEEP_ALIVE_COMMAND,
            name=name,
            working_dir=working_dir,
            volumes=binds,
            environment=environment,
            dns=dns,
            network_mode=network_mode,
            mem_limit=mem_limit,
            memswap_limit=memswap_limit,
            cpu_period=cpu_period,
            cpu_quota=cpu_quota,
            cap_drop=cap_drop,
            security_opt=security_opt,
            labels=labels or {},
        )
        with _docker_errors("create"):
            try:
                container = self.client.containers.create(image, **kwargs)
            except ImageNotFound:
                logger.info("Image %s not present locally, pulling", image)
                self.client.images.pull(image)
                container = self.client.containers.create(image, **kwargs)
        return container.id

    def start(self, container_id: str) -> None:
        with _docker_errors("start"):
            self.client.api.start(container_id)

    def exec_stream(self, container_id: str, command: str) -> tuple[str, Iterator[str]]:
        """
        Run ``sh -c <command>`` inside the container.

        Returns
        -------
        (exec_id, chunks)
            ``chunks`` yields decoded combined stdout/stderr as it arrives.
            Read the exit code with ``exec_exit_code`` once exhausted.
        """
        with _docker_errors("exec"):
            exec_id = self.client.api.exec_create(
                container_id, ["sh", "-c", command], stdout=True, stderr=True,
            )["Id"]
            raw = self.client.api.exec_start(exec_id, stream=True)
        return exec_id, self._decode(raw)

    @staticmethod
    def _decode(raw: Iterator[bytes]) -> Iterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        with _docker_errors("exec stream"):
            for chunk in raw:
                text = decoder.decode(chunk)
                if text:
                    yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    def exec_exit_code(self, exec_id: str) -> Optional[int]:
        with _docker_errors("exec inspect"):
            return self.client.api.exec_inspect(exec_id).get("ExitCode")

    def disconnect_network(self, container_id: str, network: str, force: bool = True) -> None:
        with _docker_errors("network disconnect"):
            self.client.api.disconnect_container_from_network(
                container_id, network, force=force,
            )

    def stop(self, container_id: str, grace_seconds: int) -> None:
        with _docker_errors("stop"):
            self.client.api.stop(container_id, timeout=grace_seconds)

    def remove(self, container_id: str, force: bool = True, volumes: bool = True) -> None:
        with _docker_errors("remove"):
            self.client.api.remove_container(container_id, v=volumes, force=force)
