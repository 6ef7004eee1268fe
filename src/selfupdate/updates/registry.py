"""
Participant registry.

The registry is a static, ordered collection of participants built once at
construction. Order is the pipeline order; names are unique keys.

- ParticipantRegistry: ordered name -> participant mapping
- build_participants: builds the reference participants from configuration
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from selfupdate.updates.docker_participant import ContainerRedeployParticipant
from selfupdate.updates.git_participant import SourceSyncParticipant
from selfupdate.updates.participant import UpdateParticipant
from selfupdate.updates.snapshot_participant import SnapshotParticipant

if TYPE_CHECKING:
    from selfupdate.config import AppConfig
    from selfupdate.process import ProcessRunner


class ParticipantRegistry:
    """
    Ordered registry of update participants.

    Example:
        >>> registry = ParticipantRegistry([snapshot, git, docker])
        >>> registry.names()
        ['snapshot', 'git', 'docker']
        >>> list(reversed(registry))
        [docker, git, snapshot]
    """

    def __init__(self, participants: Iterable[UpdateParticipant] = ()) -> None:
        """
        Initialize the registry.

        Args:
            participants: Participants in pipeline order.

        Raises:
            ValueError: If two participants share a name.
        """
        self._participants: dict[str, UpdateParticipant] = {}
        for participant in participants:
            if participant.name in self._participants:
                raise ValueError(f"Participant '{participant.name}' is already registered")
            self._participants[participant.name] = participant

    def __iter__(self) -> Iterator[UpdateParticipant]:
        return iter(list(self._participants.values()))

    def __reversed__(self) -> Iterator[UpdateParticipant]:
        return reversed(list(self._participants.values()))

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, name: object) -> bool:
        return name in self._participants

    def get(self, name: str) -> UpdateParticipant | None:
        """Return the participant registered under ``name``, or None."""
        return self._participants.get(name)

    def names(self) -> list[str]:
        """Return participant names in pipeline order."""
        return list(self._participants)


def _build_snapshot(config: AppConfig, runner: ProcessRunner) -> UpdateParticipant:
    return SnapshotParticipant(
        config.snapshot.source_dir,
        config.snapshot.backup_dir,
        space_factor=config.snapshot.space_factor,
        exclude_dirs=config.snapshot.exclude_dirs,
    )


def _build_git(config: AppConfig, runner: ProcessRunner) -> UpdateParticipant:
    return SourceSyncParticipant(
        runner,
        config.git.repo_path,
        remote_name=config.git.remote_name,
        remote_url=config.git.remote_url,
        branch=config.git.branch,
        backup_prefix=config.git.backup_prefix,
        executable_patterns=config.git.executable_patterns,
    )


def _build_docker(config: AppConfig, runner: ProcessRunner) -> UpdateParticipant:
    docker = config.docker
    return ContainerRedeployParticipant(
        runner,
        container_name=docker.container_name,
        image_name=docker.image_name,
        build_context=docker.build_context,
        compose_file=docker.compose_file,
        volumes=docker.volumes,
        logs_dir=Path(docker.logs_dir),
        build_timeout=docker.build_timeout_seconds,
        health_url=docker.health_url,
        health_timeout=docker.health_timeout_seconds,
    )


PARTICIPANT_FACTORIES: dict[str, Callable[[AppConfig, ProcessRunner], UpdateParticipant]] = {
    "snapshot": _build_snapshot,
    "git": _build_git,
    "docker": _build_docker,
}


def build_participants(config: AppConfig, runner: ProcessRunner) -> ParticipantRegistry:
    """
    Build the registry from ``config.orchestrator.order``.

    Raises:
        ValueError: If the order names an unknown participant or repeats one.
    """
    participants = []
    for name in config.orchestrator.order:
        factory = PARTICIPANT_FACTORIES.get(name)
        if factory is None:
            raise ValueError(f"Unknown participant: {name}")
        participants.append(factory(config, runner))
    return ParticipantRegistry(participants)
