"""
Instruction compiler: turns an ordered instruction list into a backend specific build plan.

The same instructions, pins and flags always give the same plan. Copy and Run steps keep
their declared order, which is the order layers are applied in the image.
"""

import hashlib
import json
import os
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

from composition import CompositionResolver
from config import BackendKind, EphemeralMount
from dockerfile_generator import (
    RenderContext,
    render_dockerfile,
    render_ignore_manifest,
    render_instruction,
)
from errors import ConfigurationError, UnresolvedBaseImageError, UnresolvedPackageError
from instructions import (
    Copy,
    CreateUser,
    Env,
    FromBuiltImage,
    HealthCheck,
    Install,
    Instruction,
    RepoConfigRun,
    Run,
    SetUser,
    validate_instructions,
)
from lockfile import META_MARKER, Lockfile, format_pin
from os_distribution import PACKAGES_MOUNT, Architecture, OSDistribution, policy_for

CONTEXT_DIR = "context"
DOCKER_EPHEMERAL_DIR = "ephemeral/docker"
OS_PACKAGES_DIR = "ephemeral/packages"
REPOS_DIR = "ephemeral/repos"


class BuildLayout:
    """Directory layout of one project's build working directory"""

    def __init__(self, working_dir: str):
        self.working_dir = os.path.abspath(working_dir)

    def path(self, relative: str) -> str:
        return os.path.join(self.working_dir, relative)

    @property
    def context_dir(self) -> str:
        return self.path(CONTEXT_DIR)

    @property
    def docker_ephemeral_dir(self) -> str:
        return self.path(DOCKER_EPHEMERAL_DIR)

    @property
    def os_packages_dir(self) -> str:
        return self.path(OS_PACKAGES_DIR)

    @property
    def repos_dir(self) -> str:
        return self.path(REPOS_DIR)

    def layer_dir(self, ordinal: int) -> str:
        return os.path.join(self.context_dir, f"layer{ordinal}")


@dataclass(frozen=True)
class DaemonBuildPlan:
    directives: Tuple[str, ...]
    mounts: Tuple[EphemeralMount, ...]
    working_dir: str
    context_dir: str
    architecture: Architecture
    base_reference: str

    @property
    def dockerfile(self) -> str:
        return render_dockerfile(self.directives)

    @property
    def ignore_manifest(self) -> str:
        return render_ignore_manifest(self.context_dir, [m.source for m in self.mounts])

    @property
    def bind_mounts(self) -> Dict[str, str]:
        return {m.name: os.path.join(self.working_dir, m.source) for m in self.mounts}

    @property
    def cache_key(self) -> str:
        payload = {
            'backend': BackendKind.DAEMON.value,
            'architecture': self.architecture.value,
            'dockerfile': self.dockerfile,
            'mounts': [[m.name, m.target, m.source, m.read_only] for m in self.mounts],
        }
        return _digest(payload)


@dataclass(frozen=True)
class LayerDescriptor:
    source_directory: str
    destination_path: str = "/"
    owner: Optional[str] = None
    # "preserve" copies the POSIX mode of every source file into the layer
    permission_policy: str = "preserve"


@dataclass(frozen=True)
class ImageConfigChanges:
    env: Tuple[Tuple[str, str], ...] = ()
    user: Optional[str] = None
    healthcheck: Optional[HealthCheck] = None


@dataclass(frozen=True)
class DirectBuildPlan:
    base_reference: str
    base_image_id: Optional[str]
    base_archive: Optional[str]
    layers: Tuple[LayerDescriptor, ...]
    config: ImageConfigChanges
    architecture: Architecture

    @property
    def cache_key(self) -> str:
        hc = self.config.healthcheck
        payload = {
            'backend': BackendKind.DIRECT.value,
            'architecture': self.architecture.value,
            'base': [self.base_reference, self.base_image_id],
            'layers': [[l.source_directory, l.destination_path, l.owner, l.permission_policy] for l in self.layers],
            'env': [list(kv) for kv in self.config.env],
            'user': self.config.user,
            'healthcheck': None if hc is None else [hc.cmd, hc.interval, hc.timeout, hc.start_period, hc.retries],
        }
        return _digest(payload)


BuildPlan = Union[DaemonBuildPlan, DirectBuildPlan]


def _digest(payload: Dict) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')).hexdigest()


class InstructionCompiler:
    def __init__(self, layout: BuildLayout, architecture: Architecture,
                 resolver: Optional[CompositionResolver] = None,
                 ephemeral_mount: str = "/mnt/ephemeral"):
        self.layout = layout
        self.architecture = architecture
        self.resolver = resolver
        self.ephemeral_mount = ephemeral_mount

    def compile(self, instructions: Sequence[Instruction], distribution: OSDistribution,
                pins: Optional[Lockfile], isolate_from_external_repos: bool,
                backend: BackendKind, default_user: str = "root") -> BuildPlan:
        validate_instructions(instructions)
        resolved = self.resolve_base(instructions)
        if backend == BackendKind.DAEMON:
            return self._compile_daemon(resolved, distribution, pins, isolate_from_external_repos, default_user)
        if backend == BackendKind.DIRECT:
            return self._compile_direct(resolved, isolate_from_external_repos)
        raise ConfigurationError(f"Unknown backend {backend!r}")

    def resolve_base(self, instructions: Sequence[Instruction]) -> List[Instruction]:
        """Replace a FromBuiltImage with the tag and image id its project produced in this run"""
        first = instructions[0]
        if not isinstance(first, FromBuiltImage):
            return list(instructions)
        if self.resolver is None:
            raise UnresolvedBaseImageError(first.source_project_id)
        result = self.resolver.require(first.source_project_id)
        return [replace(first, tag=result.tag, image_id=result.image_id)] + list(instructions[1:])

    def ephemeral_mounts(self, distribution: OSDistribution, isolated: bool) -> Tuple[EphemeralMount, ...]:
        mounts = [EphemeralMount("docker-ephemeral", self.ephemeral_mount, DOCKER_EPHEMERAL_DIR, read_only=True)]
        if isolated:
            policy = policy_for(distribution)
            if policy.repo_mount_is_directory:
                repo_source = REPOS_DIR
            else:
                repo_source = f"{REPOS_DIR}/{policy.repo_file_name}"
            mounts.append(EphemeralMount("repositories", policy.repo_mount_target, repo_source, read_only=True))
            mounts.append(EphemeralMount("os-packages", PACKAGES_MOUNT, OS_PACKAGES_DIR, read_only=False))
        return tuple(mounts)

    def expand_installs(self, instructions: Sequence[Instruction], distribution: OSDistribution,
                        pins: Optional[Lockfile], isolated: bool, default_user: str) -> List[Instruction]:
        """Install -> USER root, pinned install RUN, USER <user active before the install>"""
        policy = policy_for(distribution)
        missing: List[str] = []
        for inst in instructions:
            if isinstance(inst, Install):
                names = [p for p in inst.packages if META_MARKER not in p]
                if pins is None:
                    missing.extend(names)
                else:
                    missing.extend(n for n in names if pins.lookup(n, distribution, self.architecture) is None)
        if missing:
            raise UnresolvedPackageError(missing, distribution.value, self.architecture.value)

        expanded: List[Instruction] = []
        user = default_user
        for inst in instructions:
            if isinstance(inst, SetUser):
                user = inst.username
                expanded.append(inst)
            elif isinstance(inst, Install):
                names = [p for p in inst.packages if META_MARKER not in p]
                if not names:
                    continue
                pinned = [format_pin(pin, distribution) for pin in pins.require(names, distribution, self.architecture)]
                command = policy.install_cmd(pinned, isolated)
                expanded.append(SetUser("root"))
                expanded.append(Run(policy.wrap_install(command, isolated)))
                expanded.append(SetUser(user))
            else:
                expanded.append(inst)
        return expanded

    def _compile_daemon(self, instructions: Sequence[Instruction], distribution: OSDistribution,
                        pins: Optional[Lockfile], isolated: bool, default_user: str) -> DaemonBuildPlan:
        mounts = self.ephemeral_mounts(distribution, isolated)
        ctx = RenderContext(context_dir=CONTEXT_DIR, mounts=mounts, isolated=isolated)
        directives: List[str] = []
        for inst in self.expand_installs(instructions, distribution, pins, isolated, default_user):
            rendered = render_instruction(inst, ctx)
            if rendered is not None:
                directives.append(rendered)
        return DaemonBuildPlan(
            directives=tuple(directives),
            mounts=mounts,
            working_dir=self.layout.working_dir,
            context_dir=CONTEXT_DIR,
            architecture=self.architecture,
            base_reference=instructions[0].reference,
        )

    def _compile_direct(self, instructions: Sequence[Instruction], isolated: bool) -> DirectBuildPlan:
        base = instructions[0]
        base_archive = None
        if isinstance(base, FromBuiltImage) and self.resolver is not None:
            base_archive = self.resolver.require(base.source_project_id).archive
        layers: List[LayerDescriptor] = []
        env: List[Tuple[str, str]] = []
        user: Optional[str] = None
        healthcheck: Optional[HealthCheck] = None
        unsupported: List[str] = []
        for inst in instructions[1:]:
            if isinstance(inst, Copy):
                layers.append(LayerDescriptor(self.layout.layer_dir(inst.layer_ordinal), "/", inst.owner))
            elif isinstance(inst, Env):
                env.append((inst.key, inst.value))
            elif isinstance(inst, SetUser):
                user = inst.username
            elif isinstance(inst, HealthCheck):
                healthcheck = inst
            elif isinstance(inst, RepoConfigRun) and isolated:
                continue
            elif isinstance(inst, (Run, Install, CreateUser, RepoConfigRun)):
                unsupported.append(type(inst).__name__)
            else:
                raise ConfigurationError(f"Instruction {inst!r} is not supported by the direct backend")
        if unsupported:
            raise ConfigurationError(
                f"The direct backend cannot execute commands; unsupported instruction(s): {', '.join(sorted(set(unsupported)))}",
                hint="Use the daemon backend for images that run commands or install packages",
            )
        return DirectBuildPlan(
            base_reference=base.reference,
            base_image_id=base.image_id if isinstance(base, FromBuiltImage) else base.digest,
            base_archive=base_archive,
            layers=tuple(layers),
            config=ImageConfigChanges(env=tuple(env), user=user, healthcheck=healthcheck),
            architecture=self.architecture,
        )
