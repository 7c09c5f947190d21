from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from enum import Enum

from instructions import FromBuiltImage, Install, Instruction
from os_distribution import Architecture, OSDistribution


class BuilderKind(Enum):
    DAEMON = "daemon"
    DIRECT = "direct"


# The compiler targets the same two strategies that produce results
BackendKind = BuilderKind


@dataclass(frozen=True)
class ImageBuildResult:
    """Identity of a built image, exchanged between chained project builds"""
    tag: str
    image_id: str
    builder: BuilderKind
    created_at: datetime
    archive: Optional[str] = None  # image archive written by the direct backend

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tag': self.tag,
            'image_id': self.image_id,
            'builder': self.builder.value,
            'created_at': self.created_at.isoformat(),
            'archive': self.archive,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImageBuildResult':
        return cls(
            tag=data['tag'],
            image_id=data['image_id'],
            builder=BuilderKind(data['builder']),
            created_at=datetime.fromisoformat(data['created_at']),
            archive=data.get('archive'),
        )


@dataclass(frozen=True)
class EphemeralMount:
    """Build-time only bind mount; never part of the final image"""
    name: str
    target: str
    source: str  # relative to the build working directory
    read_only: bool = True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Settings:
    engine: str = "docker"
    work_root: str = "build/images"
    architecture: Optional[str] = None
    ephemeral_mount: str = "/mnt/ephemeral"
    # Development only: lets the engine reuse its layer cache, which can hide changes in ephemeral mounts
    use_engine_cache: bool = False
    min_engine_major_version: int = 19
    pull_max_attempts: int = 3
    pull_initial_backoff: float = 1.0
    pull_max_backoff: float = 30.0
    stop_timeout: float = 10.0
    cache_file: str = ".build_cache.json"
    extra: Dict[str, Any] = field(default_factory=dict)

    def resolved_architecture(self) -> Architecture:
        if self.architecture:
            return Architecture.parse(self.architecture)
        return Architecture.current()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProjectDeclaration:
    id: str
    tag: str
    distribution: OSDistribution
    instructions: List[Instruction]
    architecture: Optional[Architecture] = None
    lockfile: Optional[str] = None
    isolate_from_external_repos: bool = False
    # Directory mounted read-only at Settings.ephemeral_mount while the image builds
    ephemeral: Optional[str] = None
    # Local package mirror served to isolated installs
    os_packages: Optional[str] = None
    # Copy ordinal -> source directory mirrored into context/layer<ordinal>
    layers: Dict[int, str] = field(default_factory=dict)

    def dependencies(self) -> List[str]:
        return [i.source_project_id for i in self.instructions if isinstance(i, FromBuiltImage)]

    def installed_packages(self) -> List[str]:
        names = set()
        for inst in self.instructions:
            if isinstance(inst, Install):
                names.update(inst.packages)
        return sorted(names)


@dataclass
class BuildDeclaration:
    projects: List[ProjectDeclaration]
    base_dir: str = "."

    def project(self, project_id: str) -> ProjectDeclaration:
        for project in self.projects:
            if project.id == project_id:
                return project
        raise KeyError(project_id)
