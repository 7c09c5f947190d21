"""
Build instructions: the closed set of declarative steps an image is made of.

Pure data. The compiler decides what each step means for a given backend.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional, Sequence, Tuple, Union

from errors import ConfigurationError


@dataclass(frozen=True)
class From:
    image: str
    version: str
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        ref = f"{self.image}:{self.version}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


@dataclass(frozen=True)
class FromBuiltImage:
    """Base image produced by another project earlier in the same run"""
    source_project_id: str
    tag: Optional[str] = None
    image_id: Optional[str] = None

    @property
    def reference(self) -> Optional[str]:
        return self.tag


@dataclass(frozen=True)
class Copy:
    layer_ordinal: int
    owner: Optional[str] = None


@dataclass(frozen=True)
class Run:
    commands: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'commands', tuple(self.commands))


@dataclass(frozen=True)
class Install:
    packages: FrozenSet[str]

    def __post_init__(self):
        object.__setattr__(self, 'packages', frozenset(self.packages))


@dataclass(frozen=True)
class CreateUser:
    username: str
    uid: int
    group: str
    gid: int


@dataclass(frozen=True)
class SetUser:
    username: str


@dataclass(frozen=True)
class Env:
    key: str
    value: str


@dataclass(frozen=True)
class HealthCheck:
    cmd: str
    interval: Optional[str] = None
    timeout: Optional[str] = None
    start_period: Optional[str] = None
    retries: Optional[int] = None


@dataclass(frozen=True)
class RepoConfigRun:
    """Commands that configure package repositories; dropped when builds are isolated"""
    commands: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'commands', tuple(self.commands))


Instruction = Union[From, FromBuiltImage, Copy, Run, Install, CreateUser, SetUser, Env, HealthCheck, RepoConfigRun]

INSTRUCTION_TYPES = (From, FromBuiltImage, Copy, Run, Install, CreateUser, SetUser, Env, HealthCheck, RepoConfigRun)

BASE_INSTRUCTION_TYPES = (From, FromBuiltImage)


def validate_instructions(instructions: Sequence[Instruction]) -> None:
    """Exactly one From/FromBuiltImage, and it comes first."""
    if not instructions:
        raise ConfigurationError("A base image is not configured: the instruction list is empty")
    bases = [i for i, inst in enumerate(instructions) if isinstance(inst, BASE_INSTRUCTION_TYPES)]
    if not bases:
        raise ConfigurationError("A base image is not configured")
    if len(bases) > 1:
        raise ConfigurationError(f"Only one base image instruction is allowed, found {len(bases)}")
    if bases[0] != 0:
        raise ConfigurationError("The base image instruction must be the first instruction")
    for inst in instructions:
        if not isinstance(inst, INSTRUCTION_TYPES):
            raise ConfigurationError(f"Unknown build instruction: {inst!r}")


def base_instruction(instructions: Sequence[Instruction]) -> Union[From, FromBuiltImage]:
    validate_instructions(instructions)
    return instructions[0]
