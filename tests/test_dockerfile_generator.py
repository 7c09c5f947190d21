import pytest

from config import EphemeralMount
from dockerfile_generator import (
    DOCKERFILE_BANNER,
    SYNTAX_DIRECTIVE,
    RenderContext,
    render_dockerfile,
    render_ignore_manifest,
    render_instruction,
)
from errors import UnresolvedBaseImageError
from instructions import Copy, Env, FromBuiltImage, HealthCheck, Install, RepoConfigRun, Run

MOUNT = EphemeralMount("docker-ephemeral", "/mnt/ephemeral", "ephemeral/docker")
CTX = RenderContext(context_dir="context", mounts=(MOUNT,), isolated=False)
ISOLATED = RenderContext(context_dir="context", mounts=(MOUNT,), isolated=True)


def test_dockerfile_starts_with_banner_then_syntax():
    text = render_dockerfile(["FROM ubuntu:20.04"])
    assert text.startswith(DOCKERFILE_BANNER + SYNTAX_DIRECTIVE + "\n")
    assert text.endswith("FROM ubuntu:20.04\n")


def test_healthcheck_renders_only_present_flags():
    assert render_instruction(HealthCheck("curl -f localhost"), CTX) == "HEALTHCHECK CMD curl -f localhost"
    full = HealthCheck("true", interval="30s", timeout="5s", start_period="1m", retries=3)
    assert render_instruction(full, CTX) == (
        "HEALTHCHECK --interval=30s --timeout=5s --start-period=1m --retries=3 CMD true"
    )
    assert render_instruction(HealthCheck("true", retries=2), CTX) == "HEALTHCHECK --retries=2 CMD true"


def test_env_value_is_escaped():
    assert render_instruction(Env("MSG", 'say "hi" $HOME'), CTX) == 'ENV MSG="say \\"hi\\" \\$HOME"'


def test_run_carries_ephemeral_mounts():
    rendered = render_instruction(Run(["apt-get update", "apt-get install -y curl"]), CTX)
    assert rendered == (
        "RUN --mount=type=bind,readonly,target=/mnt/ephemeral,source=ephemeral/docker \\\n"
        "\tapt-get update && \\\n"
        "\tapt-get install -y curl"
    )


def test_copy_with_owner():
    assert render_instruction(Copy(2, owner="1000:1000"), CTX) == "COPY --chown=1000:1000 context/layer2 /"
    assert render_instruction(Copy(0), CTX) == "COPY context/layer0 /"


def test_repo_config_dropped_when_isolated():
    inst = RepoConfigRun(["echo deb http://mirror / > /etc/apt/sources.list"])
    assert render_instruction(inst, ISOLATED) is None
    assert render_instruction(inst, CTX).startswith("RUN echo deb")


def test_from_built_image_needs_resolution():
    with pytest.raises(UnresolvedBaseImageError):
        render_instruction(FromBuiltImage("base"), CTX)
    resolved = FromBuiltImage("base", tag="example/base:1", image_id="sha256:abc")
    assert render_instruction(resolved, CTX) == "# base (a.k.a example/base:1)\nFROM example/base:1"


def test_install_is_never_rendered_directly():
    with pytest.raises(TypeError):
        render_instruction(Install(["curl"]), CTX)


def test_ignore_manifest_admits_context_and_mount_sources():
    manifest = render_ignore_manifest("context", ["ephemeral/docker", "ephemeral/packages", "ephemeral/docker"])
    assert manifest == "**\n!context\n!ephemeral/docker\n!ephemeral/packages\n"
