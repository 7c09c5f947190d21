from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config import EphemeralMount
from errors import UnresolvedBaseImageError
from instructions import (
    INSTRUCTION_TYPES,
    Copy,
    CreateUser,
    Env,
    From,
    FromBuiltImage,
    HealthCheck,
    Install,
    Instruction,
    RepoConfigRun,
    Run,
    SetUser,
)

DOCKERFILE_BANNER = (
    "##########################################################\n"
    "#                                                        #\n"
    "#                Auto generated Dockerfile               #\n"
    "#                                                        #\n"
    "##########################################################\n"
)
SYNTAX_DIRECTIVE = "# syntax = docker/dockerfile:1.3"


@dataclass(frozen=True)
class RenderContext:
    context_dir: str
    mounts: Tuple[EphemeralMount, ...]
    isolated: bool


def render_mount(mount: EphemeralMount) -> str:
    mode = "readonly" if mount.read_only else "readwrite"
    return f"--mount=type=bind,{mode},target={mount.target},source={mount.source}"


def escape_env_value(value: str) -> str:
    value = value.replace('\\', '\\\\')
    value = value.replace('"', '\\"')
    value = value.replace('$', '\\$')
    return value


def _join_commands(commands: Sequence[str]) -> str:
    return " && \\\n\t".join(commands)


def render_from(inst: From, ctx: RenderContext) -> str:
    return f"FROM {inst.reference}"


def render_from_built_image(inst: FromBuiltImage, ctx: RenderContext) -> str:
    if not inst.tag:
        raise UnresolvedBaseImageError(inst.source_project_id)
    return f"# {inst.source_project_id} (a.k.a {inst.tag})\nFROM {inst.tag}"


def render_copy(inst: Copy, ctx: RenderContext) -> str:
    chown = f"--chown={inst.owner} " if inst.owner else ""
    return f"COPY {chown}{ctx.context_dir}/layer{inst.layer_ordinal} /"


def render_run(inst: Run, ctx: RenderContext) -> str:
    if not ctx.mounts:
        return "RUN " + _join_commands(inst.commands)
    mounts = ' '.join(render_mount(m) for m in ctx.mounts)
    return f"RUN {mounts} \\\n\t" + _join_commands(inst.commands)


def render_repo_config_run(inst: RepoConfigRun, ctx: RenderContext) -> Optional[str]:
    # the local mirror replaces every repository when isolated
    if ctx.isolated:
        return None
    return "RUN " + _join_commands(inst.commands)


def render_install(inst: Install, ctx: RenderContext) -> str:
    raise TypeError("Install instructions are expanded by the compiler and never rendered directly")


def render_create_user(inst: CreateUser, ctx: RenderContext) -> str:
    return (
        "RUN if ! command -v busybox &> /dev/null; then \\\n"
        f"       groupadd -g {inst.gid} {inst.group} ; \\\n"
        f"       useradd -r -s /bin/false -g {inst.gid} --uid {inst.uid} {inst.username} ; \\\n"
        "   else \\\n"
        f"       addgroup --gid {inst.gid} {inst.group} ; \\\n"
        f"       adduser -S -s /bin/false --ingroup {inst.group} -H -D -u {inst.uid} {inst.username} ; \\\n"
        "   fi"
    )


def render_set_user(inst: SetUser, ctx: RenderContext) -> str:
    return f"USER {inst.username}"


def render_env(inst: Env, ctx: RenderContext) -> str:
    return f'ENV {inst.key}="{escape_env_value(inst.value)}"'


def render_health_check(inst: HealthCheck, ctx: RenderContext) -> str:
    flags = ""
    if inst.interval is not None:
        flags += f"--interval={inst.interval} "
    if inst.timeout is not None:
        flags += f"--timeout={inst.timeout} "
    if inst.start_period is not None:
        flags += f"--start-period={inst.start_period} "
    if inst.retries is not None:
        flags += f"--retries={inst.retries} "
    return f"HEALTHCHECK {flags}CMD {inst.cmd}"


_RENDERERS: Dict[type, Callable[..., Optional[str]]] = {
    From: render_from,
    FromBuiltImage: render_from_built_image,
    Copy: render_copy,
    Run: render_run,
    Install: render_install,
    CreateUser: render_create_user,
    SetUser: render_set_user,
    Env: render_env,
    HealthCheck: render_health_check,
    RepoConfigRun: render_repo_config_run,
}

_missing = [t.__name__ for t in INSTRUCTION_TYPES if t not in _RENDERERS]
if _missing:
    raise TypeError(f"No Dockerfile renderer for instruction kind(s): {', '.join(_missing)}")


def render_instruction(inst: Instruction, ctx: RenderContext) -> Optional[str]:
    """Render one instruction; None when it contributes nothing to the Dockerfile"""
    return _RENDERERS[type(inst)](inst, ctx)


def render_dockerfile(directives: Sequence[str]) -> str:
    return DOCKERFILE_BANNER + SYNTAX_DIRECTIVE + "\n\n" + "\n".join(directives) + "\n"


def render_ignore_manifest(context_dir: str, mount_sources: Sequence[str]) -> str:
    """Exclude everything, then admit only the build context and ephemeral mount sources"""
    admitted: List[str] = []
    for path in [context_dir, *mount_sources]:
        if path not in admitted:
            admitted.append(path)
    return "**\n" + "\n".join(f"!{p}" for p in admitted) + "\n"
