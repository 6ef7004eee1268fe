"""
Container redeploy participant.

Rebuilds the service image from the synced source tree and restarts its
container. Redeploying is idempotent, so the check phase always reports
pending work.

Build strategies:
- compose: ``docker compose up -d --build`` (or ``docker-compose``) when a
  compose tool is present and the compose file exists
- build: ``docker build`` followed by ``docker run -d`` with the previous
  container's mounts (or the configured volumes)

Rollback only starts a stopped container; it never restores a previous image.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from selfupdate.errors import ValidationError, VerificationError
from selfupdate.process import ProcessResult, ProcessRunner
from selfupdate.updates.health_check import wait_for_http_healthy
from selfupdate.updates.models import UpdateInfo, UpdateOptions, UpdateResult
from selfupdate.updates.operations import ensure_directory, unique_timestamped_path
from selfupdate.updates.participant import UpdateParticipant


class ContainerState(BaseModel):
    """Observed state of the managed container."""

    exists: bool = False
    running: bool = False
    id: str | None = None
    status: str | None = None
    created: str | None = None
    mounts: list[str] = Field(default_factory=list)


class ImageState(BaseModel):
    """Observed state of the service image."""

    exists: bool = False
    id: str | None = None
    created: str | None = None
    size: int | None = None


class ContainerInfo(UpdateInfo):
    """Check result of the container redeploy participant."""

    runtime_available: bool = True
    container_exists: bool = False
    container_running: bool = False
    image_exists: bool = False
    container: ContainerState = Field(default_factory=ContainerState)
    image: ImageState = Field(default_factory=ImageState)


class ContainerResult(UpdateResult):
    """Apply result of the container redeploy participant."""

    strategy: Literal["compose", "build"] = "build"
    container: ContainerState = Field(default_factory=ContainerState)
    health_check: dict[str, Any] | None = None


def _mount_spec(mount: dict[str, Any]) -> str | None:
    """Convert a ``docker inspect`` mount entry into a ``-v`` spec."""
    destination = mount.get("Destination")
    if not destination:
        return None
    if mount.get("Type") == "bind":
        source = mount.get("Source")
    elif mount.get("Type") == "volume":
        source = mount.get("Name")
    else:
        return None
    if not source:
        return None
    spec = f"{source}:{destination}"
    if mount.get("RW") is False:
        spec += ":ro"
    return spec


class ContainerRedeployParticipant(UpdateParticipant):
    """
    Rebuilds and restarts the service container.

    Example:
        >>> participant = ContainerRedeployParticipant(
        ...     ProcessRunner(), container_name="app", image_name="app:latest"
        ... )
        >>> await participant.pre_update_check()
        >>> result = await participant.update(UpdateOptions())
        >>> result.container.running
        True
    """

    name = "docker"
    triggers_update = False

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        container_name: str,
        image_name: str,
        build_context: Path | str = ".",
        compose_file: str = "docker-compose.yml",
        volumes: list[str] | None = None,
        logs_dir: Path | str = "backups/docker",
        build_timeout: float = 900.0,
        health_url: str | None = None,
        health_timeout: float = 30.0,
    ) -> None:
        super().__init__()
        self.runner = runner
        self.container_name = container_name
        self.image_name = image_name
        self.build_context = Path(build_context)
        self.compose_file = compose_file
        self.volumes = list(volumes or [])
        self.logs_dir = Path(logs_dir)
        self.build_timeout = build_timeout
        self.health_url = health_url
        self.health_timeout = health_timeout
        self._compose_command: list[str] | None = None
        self._strategy_detected = False

    async def _docker(
        self, *args: str, check: bool = True, timeout: float | None = None
    ) -> ProcessResult:
        return await self.runner.run(
            "docker", *args, cwd=self.build_context, check=check, timeout=timeout
        )

    def _require_runtime(self) -> None:
        if self.runner.which("docker") is None:
            raise ValidationError("docker is not installed", details={"command": "docker"})

    async def inspect_container(self) -> ContainerState:
        """Return the current state of the managed container."""
        result = await self._docker(
            "container", "inspect", self.container_name, check=False
        )
        if not result.ok:
            return ContainerState()
        data = json.loads(result.stdout or "[]")
        if not data:
            return ContainerState()
        info = data[0]
        state = info.get("State") or {}
        mounts = [spec for spec in map(_mount_spec, info.get("Mounts") or []) if spec]
        return ContainerState(
            exists=True,
            running=bool(state.get("Running")),
            id=info.get("Id"),
            status=state.get("Status"),
            created=info.get("Created"),
            mounts=mounts,
        )

    async def inspect_image(self) -> ImageState:
        """Return the current state of the service image."""
        result = await self._docker("image", "inspect", self.image_name, check=False)
        if not result.ok:
            return ImageState()
        data = json.loads(result.stdout or "[]")
        if not data:
            return ImageState()
        info = data[0]
        return ImageState(
            exists=True,
            id=info.get("Id"),
            created=info.get("Created"),
            size=info.get("Size"),
        )

    async def _detect_compose(self) -> list[str] | None:
        if not (self.build_context / self.compose_file).is_file():
            return None
        plugin = await self._docker("compose", "version", check=False)
        if plugin.ok:
            return ["docker", "compose"]
        if self.runner.which("docker-compose") is not None:
            standalone = await self.runner.run(
                "docker-compose", "--version", cwd=self.build_context, check=False
            )
            if standalone.ok:
                return ["docker-compose"]
        return None

    async def check_for_updates(self) -> ContainerInfo:
        self._require_runtime()
        container = await self.inspect_container()
        image = await self.inspect_image()
        self.log.info(
            f"Container {self.container_name}: "
            f"{'running' if container.running else 'exists' if container.exists else 'absent'}, "
            f"image {self.image_name}: {'present' if image.exists else 'absent'}"
        )
        return ContainerInfo(
            participant=self.name,
            has_update=True,
            runtime_available=True,
            container_exists=container.exists,
            container_running=container.running,
            image_exists=image.exists,
            container=container,
            image=image,
            message="Container is rebuilt on every update",
        )

    async def pre_update_check(self) -> None:
        self._require_runtime()
        self._compose_command = await self._detect_compose()
        self._strategy_detected = True
        strategy = "compose" if self._compose_command else "build"
        self.log.success(f"Docker checks passed (strategy: {strategy})")

    async def backup(self) -> Path | None:
        """
        Save the logs of the running container.

        Returns:
            Path of the log file, or None when no container is running.
        """
        container = await self.inspect_container()
        if not container.running:
            self.log.info("No running container, nothing to back up")
            return None

        logs = await self._docker("logs", self.container_name)
        loop = asyncio.get_running_loop()
        ensure_directory(self.logs_dir)
        path = unique_timestamped_path(self.logs_dir, f"{self.container_name}-", ".log")
        await loop.run_in_executor(
            None, path.write_text, logs.stdout + logs.stderr, "utf-8"
        )
        self.log.success(f"Container logs saved to {path}")
        return path

    async def list_backups(self) -> list[str]:
        """Saved log files of the managed container, oldest first."""
        if not self.logs_dir.is_dir():
            return []
        prefix = f"{self.container_name}-"
        return sorted(
            path.name
            for path in self.logs_dir.iterdir()
            if path.name.startswith(prefix) and path.suffix == ".log"
        )

    def _resolve_volume(self, spec: str) -> str:
        host, sep, rest = spec.partition(":")
        if sep and (host == "." or host.startswith(("./", "../"))):
            host = str((self.build_context / host).resolve())
        return f"{host}{sep}{rest}"

    async def update(self, options: UpdateOptions) -> ContainerResult:
        if not self._strategy_detected:
            await self.pre_update_check()

        previous = await self.inspect_container()
        if previous.exists:
            if previous.running:
                self.log.info(f"Stopping container {self.container_name}")
                await self._docker("stop", self.container_name)
            await self._docker("rm", self.container_name)

        if self._compose_command:
            strategy: Literal["compose", "build"] = "compose"
            self.log.info("Building and starting with compose")
            await self.runner.run(
                self._compose_command[0],
                *self._compose_command[1:],
                "-f",
                self.compose_file,
                "up",
                "-d",
                "--build",
                cwd=self.build_context,
                timeout=self.build_timeout,
            )
        else:
            strategy = "build"
            self.log.info(f"Building image {self.image_name}")
            await self._docker(
                "build", "-t", self.image_name, ".", timeout=self.build_timeout
            )

            volumes = previous.mounts if previous.mounts else self.volumes
            volume_args: list[str] = []
            for spec in volumes:
                volume_args += ["-v", self._resolve_volume(spec)]

            self.log.info(f"Starting container {self.container_name}")
            await self._docker(
                "run", "-d", "--name", self.container_name, *volume_args, self.image_name
            )

        current = await self.inspect_container()
        if not current.running:
            raise VerificationError(
                f"Container {self.container_name} failed to start",
                details={"container": self.container_name, "status": current.status},
            )

        health = None
        if self.health_url:
            check = await wait_for_http_healthy(self.health_url, self.health_timeout)
            health = check.to_dict()
            if not check.passed:
                raise VerificationError(
                    f"Container {self.container_name} is running but not healthy",
                    details={"container": self.container_name, "health_check": health},
                )

        result = ContainerResult(
            participant=self.name,
            success=True,
            updated=True,
            strategy=strategy,
            container=current,
            health_check=health,
            message=f"Container {self.container_name} redeployed ({strategy})",
        )
        self.log.success(result.message)
        return result

    async def rollback(self) -> None:
        container = await self.inspect_container()
        if container.exists and not container.running:
            self.log.info(f"Starting stopped container {self.container_name}")
            await self._docker("start", self.container_name)
            self.log.success(f"Container {self.container_name} started")
        elif not container.exists:
            self.log.warning(
                f"Container {self.container_name} does not exist; previous image is not restored"
            )
        else:
            self.log.info(f"Container {self.container_name} is already running")
