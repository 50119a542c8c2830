"""Docker container lifecycle for the virtual-display browser environment."""
from __future__ import annotations

import asyncio
import io
import logging
import math
import os
import posixpath
import shlex
import tarfile
import time
from typing import Any, Optional

import docker
import requests
from docker.errors import DockerException
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_fixed

from config import DisplayConfig, DockerConfig
from exceptions import (
    CommandError,
    CommandTimeoutError,
    ContainerNotReadyError,
    FileTransferError,
    InitializationError,
)

# coreutils `timeout` exit status when the command ran out of time.
TIMEOUT_EXIT_CODE = 124
KILL_GRACE_SECONDS = 2


def build_provisioning_steps(display: DisplayConfig) -> list[str]:
    """Shell steps that turn a bare Ubuntu image into a browser desktop."""
    return [
        "apt-get update",
        "apt-get install -y wget curl gnupg2 software-properties-common apt-transport-https ca-certificates",
        # Virtual display, input simulation and screenshot utilities
        "apt-get install -y xvfb x11vnc x11-utils xdotool scrot",
        # Chrome runtime libraries
        "apt-get install -y fonts-liberation libasound2 libatk-bridge2.0-0 libdrm2 libxkbcommon0 "
        "libxss1 libgtk-3-0 libxrandr2 libu2f-udev libvulkan1",
        "wget -q -O - https://dl-ssl.google.com/linux/linux_signing_key.pub | apt-key add -",
        'echo "deb [arch=amd64] http://dl.google.com/linux/chrome/deb/ stable main" '
        ">> /etc/apt/sources.list.d/google.list",
        "apt-get update",
        "apt-get install -y google-chrome-stable",
        "mkdir -p /workspace",
        f"nohup Xvfb {display.display} -screen 0 {display.width}x{display.height}x24 > /dev/null 2>&1 &",
    ]


def create_docker_client(docker_host: Optional[str] = None) -> docker.DockerClient:
    """Docker client for the configured daemon, or from the environment."""
    if docker_host:
        return docker.DockerClient(base_url=docker_host)
    return docker.from_env()


class ContainerManager:
    """Creates, provisions, drives and removes one isolated container per run."""

    def __init__(
        self,
        run_id: str,
        config: Optional[DockerConfig] = None,
        display: Optional[DisplayConfig] = None,
        client: Optional[docker.DockerClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.run_id = run_id
        self.config = config or DockerConfig()
        self.display = display or DisplayConfig()
        self.logger = logger or logging.getLogger("container")
        self.container_name = f"{self.config.name_prefix}{run_id}"
        self._client = client
        self.container: Optional[Any] = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = create_docker_client(self.config.docker_host)
        return self._client

    def _ensure_container(self) -> Any:
        if self.container is None:
            raise ContainerNotReadyError(self.container_name)
        return self.container

    async def initialize(self) -> None:
        """Create, start and provision the container."""
        self.logger.info(f"[{self.run_id}] Creating Docker container: {self.container_name}")
        image = self.config.base_image

        try:
            await asyncio.to_thread(self.client.images.pull, image)
        except (DockerException, requests.exceptions.RequestException) as exc:
            # Pull fails offline or without registry access; a local image may still exist.
            self.logger.info(f"[{self.run_id}] Could not pull {image}, continuing: {exc}")

        try:
            self.container = await asyncio.to_thread(
                self.client.containers.create,
                image,
                name=self.container_name,
                command="/bin/bash",
                tty=True,
                stdin_open=True,
                environment={
                    "DISPLAY": self.display.display,
                    "DEBIAN_FRONTEND": "noninteractive",
                },
                working_dir="/workspace",
            )
            await asyncio.to_thread(self.container.start)
        except (DockerException, requests.exceptions.RequestException) as exc:
            await self.cleanup()
            raise InitializationError(
                f"Failed to initialize Docker container: {exc}", execution_mode="docker"
            ) from exc

        self.logger.info(f"[{self.run_id}] Container started successfully")
        await self.provision()
        self.logger.info(f"[{self.run_id}] Docker container initialized successfully")

    async def provision(self) -> None:
        """Run provisioning steps, then confirm the display answers."""
        self.logger.info(f"[{self.run_id}] Setting up container environment...")
        for command in build_provisioning_steps(self.display):
            try:
                self.logger.debug(f"[{self.run_id}] Running: {command}")
                await self.execute(command, timeout=self.config.provision_timeout)
            except (CommandError, CommandTimeoutError) as exc:
                # Several steps are noisy on re-runs; only the readiness check is load-bearing.
                self.logger.warning(
                    f"[{self.run_id}] Step may have failed but continuing: {command} - {exc}"
                )

        if not await self.wait_for_display():
            raise InitializationError(
                f"Virtual display {self.display.display} did not become ready",
                execution_mode="docker",
            )
        self.logger.info(f"[{self.run_id}] Container environment setup completed")

    async def wait_for_display(self) -> bool:
        """Poll xdpyinfo until the X server answers or the retry window closes."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.readiness_attempts),
                wait=wait_fixed(self.config.readiness_wait_seconds),
                reraise=False,
            ):
                with attempt:
                    await self.execute(f"xdpyinfo -display {self.display.display} > /dev/null 2>&1")
        except RetryError as exc:
            self.logger.error(f"[{self.run_id}] Display readiness check failed: {exc.last_attempt.exception()}")
            return False
        return True

    def _run_exec(self, command: str, timeout: float) -> tuple[int, str, str]:
        container = self._ensure_container()
        api = self.client.api
        # The in-container timeout ends the exec so the worker thread is released too.
        seconds = str(max(1, math.ceil(timeout)))
        exec_id = api.exec_create(
            container.id,
            ["timeout", "-k", str(KILL_GRACE_SECONDS), seconds, "bash", "-c", command],
            stdout=True,
            stderr=True,
            environment={"DISPLAY": self.display.display},
        )["Id"]
        # demux=True splits Docker's 8-byte framed stream into (stdout, stderr)
        stdout, stderr = api.exec_start(exec_id, demux=True)
        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return (
            exit_code if exit_code is not None else 0,
            (stdout or b"").decode("utf-8", errors="replace"),
            (stderr or b"").decode("utf-8", errors="replace"),
        )

    async def execute(self, command: str, timeout: Optional[float] = None) -> str:
        """Run a shell command in the container and return its stdout."""
        self._ensure_container()
        timeout = timeout if timeout is not None else self.config.command_timeout
        try:
            exit_code, stdout, stderr = await asyncio.wait_for(
                asyncio.to_thread(self._run_exec, command, timeout), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise CommandTimeoutError(command, timeout) from exc
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise CommandError(command, -1, str(exc)) from exc

        if exit_code == TIMEOUT_EXIT_CODE:
            raise CommandTimeoutError(command, timeout)
        if exit_code != 0:
            raise CommandError(command, exit_code, stderr or stdout)
        return stdout.strip()

    async def get_file(self, path: str) -> str:
        """Return the file at path as a base64 string."""
        if self.container is None:
            raise FileTransferError("Container not initialized", path=path)
        quoted = shlex.quote(path)
        try:
            await self.execute(f"test -f {quoted}")
        except CommandError as exc:
            raise FileTransferError(f"File not found: {path}", path=path) from exc
        try:
            data = await self.execute(f"base64 -w0 {quoted}")
        except (CommandError, CommandTimeoutError) as exc:
            raise FileTransferError(f"Failed to get file {path}: {exc}", path=path) from exc
        return "".join(data.split())

    def _pack(self, name: str, data: bytes) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    async def write_file(self, remote_path: str, data: bytes) -> None:
        """Inject bytes into the container at remote_path."""
        if self.container is None:
            raise FileTransferError("Container not initialized", path=remote_path)
        directory, name = posixpath.split(remote_path)
        try:
            archive = self._pack(name, data)
        except (tarfile.TarError, OSError) as exc:
            raise FileTransferError(f"Failed to package {remote_path}: {exc}", path=remote_path) from exc
        try:
            ok = await asyncio.to_thread(self.container.put_archive, directory or "/", archive)
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise FileTransferError(f"Failed to copy file to container: {exc}", path=remote_path) from exc
        if not ok:
            raise FileTransferError("Container rejected archive", path=remote_path)

    async def put_file(self, local_path: str | os.PathLike[str], remote_path: str) -> None:
        """Copy a local file into the container."""
        try:
            with open(local_path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise FileTransferError(f"Failed to read {local_path}: {exc}", path=str(local_path)) from exc
        await self.write_file(remote_path, data)

    async def is_running(self) -> bool:
        if self.container is None:
            return False
        try:
            await asyncio.to_thread(self.container.reload)
            return self.container.status == "running"
        except Exception:
            return False

    async def get_logs(self, tail: int = 100) -> str:
        if self.container is None:
            return ""
        try:
            raw = await asyncio.to_thread(
                self.container.logs, stdout=True, stderr=True, timestamps=True, tail=tail
            )
            return raw.decode("utf-8", errors="replace")
        except Exception as exc:
            self.logger.error(f"[{self.run_id}] Failed to get container logs: {exc}")
            return ""

    async def cleanup(self) -> None:
        """Stop and remove the container. Safe to call repeatedly."""
        container = self.container
        if container is None:
            return
        self.logger.info(f"[{self.run_id}] Cleaning up Docker container: {self.container_name}")
        try:
            try:
                await asyncio.to_thread(container.stop, timeout=self.config.stop_timeout)
            except Exception as exc:
                self.logger.info(f"[{self.run_id}] Container may already be stopped: {exc}")
            try:
                await asyncio.to_thread(container.remove, force=True)
                self.logger.info(f"[{self.run_id}] Container removed successfully")
            except Exception as exc:
                self.logger.warning(f"[{self.run_id}] Failed to remove container: {exc}")
        finally:
            self.container = None


def cleanup_orphaned_containers(
    client: Optional[docker.DockerClient] = None,
    prefix: str = "computer-use-test-",
    docker_host: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Force-remove containers left behind by crashed runs. Never raises."""
    log = logger or logging.getLogger("container")
    removed = 0
    try:
        client = client or create_docker_client(docker_host)
        containers = client.containers.list(all=True, filters={"name": prefix})
    except Exception as exc:
        log.warning(f"Failed to cleanup orphaned containers: {exc}")
        return 0

    for container in containers:
        name = container.name or ""
        if prefix not in name:
            continue
        try:
            container.remove(force=True)
            removed += 1
            log.info(f"Cleaned up orphaned container: {name}")
        except Exception as exc:
            log.warning(f"Failed to cleanup container {container.id}: {exc}")
    return removed
