"""Docker container engine backend.

The docker SDK is synchronous, so every control call runs in a thread pool.
Exec output is taken as the raw multiplexed socket
(``exec_start(socket=True)``) and handed to the caller unparsed;
demultiplexing happens in ``sandbox_core.sandbox.demux``.
"""

import asyncio
import socket
import ssl
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, TypeVar

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils.socket import read as socket_read

from sandbox_core.config import DockerConfig
from sandbox_core.exceptions import ContainerEngineError, ContainerNotFoundError
from sandbox_core.observability import get_logger
from sandbox_core.protocols.engine import ContainerInfo, ContainerSpec

logger = get_logger(__name__)

T = TypeVar("T")

READ_SIZE = 4096


def _info(container: Any) -> ContainerInfo:
    return ContainerInfo(
        id=container.id,
        name=container.name,
        status=container.status,
        labels=dict(container.labels or {}),
    )


class DockerExecSession:
    """Raw exec stream backed by the engine's hijacked HTTP socket.

    Plain TCP and unix sockets are switched to non-blocking mode and read on
    the event loop, so an idle stream holds no thread. Other transports (TLS,
    named pipes) are read on the engine's stream pool, which is separate from
    the pool serving control calls.
    """

    def __init__(self, engine: "DockerEngine", exec_id: str, sock: Any) -> None:
        self.exec_id = exec_id
        self._engine = engine
        self._sock = sock
        self._raw = getattr(sock, "_sock", sock)
        self._pending: asyncio.Task[bytes] | None = None
        self._closed = False

    @property
    def non_blocking(self) -> bool:
        return isinstance(self._raw, socket.socket) and not isinstance(self._raw, ssl.SSLSocket)

    async def read(self) -> bytes:
        if self._closed:
            return b""
        try:
            if self.non_blocking:
                data = await self._recv()
            else:
                data = await self._engine._read_stream(socket_read, self._sock, READ_SIZE)
        except OSError as e:
            if self._closed:
                return b""
            raise ContainerEngineError(f"Exec stream read failed: {e}") from e
        return data or b""

    async def _recv(self) -> bytes:
        loop = asyncio.get_running_loop()
        if self._raw.getblocking():
            self._raw.setblocking(False)
        self._pending = loop.create_task(loop.sock_recv(self._raw, READ_SIZE))
        try:
            return await self._pending
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._closed and (current is None or not current.cancelling()):
                return b""
            raise
        finally:
            self._pending = None

    async def exit_code(self) -> int | None:
        info = await self._engine._call(self._engine.client.api.exec_inspect, self.exec_id)
        if info.get("Running"):
            return None
        return info.get("ExitCode")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        pending = self._pending
        if pending is not None and not pending.done():
            # Unregister while the descriptor is still open
            try:
                asyncio.get_running_loop().remove_reader(self._raw.fileno())
            except (OSError, ValueError):
                pass
            pending.cancel()
        try:
            # Wakes a reader blocked in poll() on another thread
            self._raw.shutdown(socket.SHUT_RDWR)
        except (OSError, AttributeError):
            pass
        try:
            self._sock.close()
        except OSError as e:
            logger.debug("Closing exec socket failed", context={"exec_id": self.exec_id, "error": str(e)})


class DockerEngine:
    """Container engine backed by the local Docker daemon."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: int = 60,
        max_workers: int = 16,
        stream_workers: int = 64,
        client: docker.DockerClient | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            base_url: Daemon URL; None reads DOCKER_HOST or the default socket
            timeout: Per-request API timeout in seconds
            max_workers: Thread pool size for blocking SDK calls
            stream_workers: Thread pool size for exec streams that must be read blocking
            client: Pre-built client (connection is made lazily otherwise)
        """
        self._base_url = base_url
        self._timeout = timeout
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docker")
        self._stream_executor = ThreadPoolExecutor(
            max_workers=stream_workers, thread_name_prefix="docker-stream"
        )

    @classmethod
    def from_config(cls, config: DockerConfig) -> "DockerEngine":
        return cls(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_workers=config.max_workers,
            stream_workers=config.stream_workers,
        )

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, connected on first use."""
        if self._client is None:
            try:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
                else:
                    self._client = docker.from_env(timeout=self._timeout)
            except DockerException as e:
                raise ContainerEngineError(f"Cannot connect to Docker: {e}") from e
        return self._client

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(func, *args, **kwargs))

    async def _read_stream(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._stream_executor, partial(func, *args))

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call and translate its errors."""
        try:
            return await self._run(func, *args, **kwargs)
        except NotFound as e:
            raise ContainerNotFoundError(str(e)) from e
        except (APIError, DockerException) as e:
            raise ContainerEngineError(str(e)) from e

    async def create(self, spec: ContainerSpec) -> str:
        volumes = {host: {"bind": path, "mode": "rw"} for host, path in spec.binds.items()}
        container = await self._call(
            self.client.containers.create,
            image=spec.image,
            command=spec.command,
            name=spec.name,
            labels=spec.labels,
            environment=spec.environment,
            volumes=volumes,
            working_dir=spec.working_dir,
            user=spec.user,
            network_mode=spec.network_mode,
            mem_limit=spec.memory_bytes,
            cpu_quota=spec.cpu_quota,
            cpu_period=spec.cpu_period,
            pids_limit=spec.pids_limit,
            cap_drop=["ALL"],
            cap_add=spec.cap_add,
            security_opt=spec.security_opt,
            detach=True,
            tty=False,
            stdin_open=False,
        )
        return container.id

    async def start(self, container_id: str) -> None:
        await self._call(self.client.api.start, container_id)

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        try:
            await self._call(self.client.api.stop, container_id, timeout=timeout)
        except ContainerNotFoundError:
            raise
        except ContainerEngineError as e:
            if "is not running" not in str(e):
                raise

    async def remove(self, container_id: str, force: bool = True) -> None:
        try:
            await self._call(self.client.api.remove_container, container_id, force=force)
        except ContainerNotFoundError:
            logger.debug("Container already removed", context={"container_id": container_id})

    async def inspect(self, container_id_or_name: str) -> ContainerInfo | None:
        try:
            container = await self._call(self.client.containers.get, container_id_or_name)
        except ContainerNotFoundError:
            return None
        return _info(container)

    async def list_containers(self, labels: dict[str, str]) -> list[ContainerInfo]:
        filters = {"label": [f"{key}={value}" for key, value in labels.items()]}
        containers = await self._call(self.client.containers.list, all=True, filters=filters)
        return [_info(c) for c in containers]

    async def exec(
        self,
        container_id: str,
        command: list[str],
        env: dict[str, str] | None = None,
        workdir: str | None = None,
    ) -> DockerExecSession:
        created = await self._call(
            self.client.api.exec_create,
            container_id,
            command,
            stdout=True,
            stderr=True,
            stdin=False,
            tty=False,
            environment=[f"{k}={v}" for k, v in (env or {}).items()],
            workdir=workdir,
        )
        exec_id = created["Id"]
        sock = await self._call(self.client.api.exec_start, exec_id, tty=False, socket=True)
        return DockerExecSession(self, exec_id, sock)

    async def stats(self, container_id: str) -> dict[str, Any]:
        return await self._call(self.client.api.stats, container_id, stream=False)

    async def close(self) -> None:
        """Close the client and shut down the thread pools."""
        if self._client is not None:
            await self._run(self._client.close)
            self._client = None
        self._executor.shutdown(wait=False)
        self._stream_executor.shutdown(wait=False)
