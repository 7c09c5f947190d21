from datetime import datetime, timezone

import pytest

from composition import CompositionResolver
from config import BackendKind, BuilderKind, ImageBuildResult
from errors import ConfigurationError, UnresolvedBaseImageError, UnresolvedPackageError
from instruction_compiler import DaemonBuildPlan, DirectBuildPlan, InstructionCompiler
from instructions import (
    Copy,
    CreateUser,
    Env,
    From,
    FromBuiltImage,
    HealthCheck,
    Install,
    RepoConfigRun,
    Run,
    SetUser,
)
from lockfile import Lockfile, PackagePin
from os_distribution import PACKAGES_MOUNT, Architecture, OSDistribution

UBUNTU = OSDistribution.UBUNTU
X86 = Architecture.X86_64
UBUNTU_BASE = From("ubuntu", "20.04")


def compiler_for(layout, resolver=None):
    return InstructionCompiler(layout, X86, resolver)


def test_identical_inputs_give_identical_plans(layout, pins):
    instructions = [UBUNTU_BASE, Install(["git", "curl"]), Copy(0), Env("A", "1")]
    first = compiler_for(layout).compile(instructions, UBUNTU, pins, False, BackendKind.DAEMON)
    second = compiler_for(layout).compile(list(instructions), UBUNTU, pins, False, BackendKind.DAEMON)
    assert isinstance(first, DaemonBuildPlan)
    assert first == second
    assert first.dockerfile == second.dockerfile
    assert first.cache_key == second.cache_key


def test_install_renders_sorted_pins(layout, pins):
    plan = compiler_for(layout).compile([UBUNTU_BASE, Install(["git", "curl"])], UBUNTU, pins, False, BackendKind.DAEMON)
    install_run = [d for d in plan.directives if "apt-get install" in d][0]
    assert "apt-get install -y curl=7.68.0-1ubuntu2 git=2.25.1-1ubuntu3" in install_run


def test_install_restores_the_user_active_before_it(layout, pins):
    instructions = [UBUNTU_BASE, SetUser("app"), Install(["curl"])]
    plan = compiler_for(layout).compile(instructions, UBUNTU, pins, False, BackendKind.DAEMON)
    assert plan.directives[0] == "FROM ubuntu:20.04"
    assert plan.directives[1:3] == ("USER app", "USER root")
    assert plan.directives[3].startswith("RUN ")
    assert plan.directives[4] == "USER app"
    assert len(plan.directives) == 5


def test_commands_after_an_install_run_as_the_restored_user(layout, pins):
    instructions = [UBUNTU_BASE, SetUser("alice"), Install(["curl"]), Run(["echo hi"])]
    plan = compiler_for(layout).compile(instructions, UBUNTU, pins, False, BackendKind.DAEMON)
    users = [i for i, d in enumerate(plan.directives) if d.startswith("USER ")]
    echo = [i for i, d in enumerate(plan.directives) if "echo hi" in d][0]
    assert [plan.directives[i] for i in users] == ["USER alice", "USER root", "USER alice"]
    assert users[-1] < echo
    assert echo == len(plan.directives) - 1
    install = [i for i, d in enumerate(plan.directives) if "apt-get install" in d][0]
    assert users[1] < install < users[2]


def test_install_without_prior_user_restores_probed_default(layout, pins):
    plan = compiler_for(layout).compile(
        [UBUNTU_BASE, Install(["curl"])], UBUNTU, pins, False, BackendKind.DAEMON, default_user="ubuntu")
    assert plan.directives[1] == "USER root"
    assert plan.directives[-1] == "USER ubuntu"


def test_missing_pins_fail_naming_exactly_the_missing_packages(layout, pins):
    with pytest.raises(UnresolvedPackageError) as excinfo:
        compiler_for(layout).compile(
            [UBUNTU_BASE, Install(["curl", "zlib"]), Install(["wget"])], UBUNTU, pins, False, BackendKind.DAEMON)
    assert excinfo.value.packages == ["wget", "zlib"]


def test_install_without_lockfile_fails(layout):
    with pytest.raises(UnresolvedPackageError) as excinfo:
        compiler_for(layout).compile([UBUNTU_BASE, Install(["curl"])], UBUNTU, None, False, BackendKind.DAEMON)
    assert excinfo.value.packages == ["curl"]


def test_pins_for_another_architecture_do_not_count(layout):
    lockfile = Lockfile()
    lockfile.add(UBUNTU, Architecture.AARCH64, PackagePin("curl", "7.68.0", "1ubuntu2", "arm64"))
    with pytest.raises(UnresolvedPackageError):
        compiler_for(layout).compile([UBUNTU_BASE, Install(["curl"])], UBUNTU, lockfile, False, BackendKind.DAEMON)


def test_different_pins_change_the_cache_key(layout, pins):
    other = Lockfile()
    other.add(UBUNTU, X86, PackagePin("curl", "7.68.0", "1ubuntu2.7", "amd64"))
    instructions = [UBUNTU_BASE, Install(["curl"])]
    a = compiler_for(layout).compile(instructions, UBUNTU, pins, False, BackendKind.DAEMON)
    b = compiler_for(layout).compile(instructions, UBUNTU, other, False, BackendKind.DAEMON)
    assert a.cache_key != b.cache_key


def test_copy_and_run_order_is_preserved(layout):
    instructions = [UBUNTU_BASE, Copy(0), Run(["make"]), Copy(1), Run(["make install"])]
    plan = compiler_for(layout).compile(instructions, UBUNTU, None, False, BackendKind.DAEMON)
    kinds = [d.split()[0] for d in plan.directives]
    assert kinds == ["FROM", "COPY", "RUN", "COPY", "RUN"]
    assert plan.directives[1] == "COPY context/layer0 /"
    assert plan.directives[3] == "COPY context/layer1 /"


def test_isolation_mounts_local_mirror_and_repo_file(layout, pins):
    instructions = [UBUNTU_BASE, RepoConfigRun(["add-apt-repository ppa:x"]), Install(["curl"])]
    plan = compiler_for(layout).compile(instructions, UBUNTU, pins, True, BackendKind.DAEMON)
    targets = {m.name: (m.target, m.source, m.read_only) for m in plan.mounts}
    assert targets["repositories"] == ("/etc/apt/sources.list", "ephemeral/repos/sources.list", True)
    assert targets["os-packages"] == (PACKAGES_MOUNT, "ephemeral/packages", False)
    assert not any("add-apt-repository" in d for d in plan.directives)
    run = [d for d in plan.directives if "apt-get install" in d][0]
    assert f"readwrite,target={PACKAGES_MOUNT}" in run
    assert "apt-get clean" in run
    assert plan.bind_mounts["os-packages"] == f"{layout.working_dir}/ephemeral/packages"
    assert plan.ignore_manifest.splitlines()[:2] == ["**", "!context"]


def test_yum_isolation_mounts_the_repo_directory(layout, pins):
    centos = OSDistribution.CENTOS
    plan = compiler_for(layout).compile([From("centos", "8"), Install(["curl"])], centos, pins, True, BackendKind.DAEMON)
    repo = [m for m in plan.mounts if m.name == "repositories"][0]
    assert (repo.target, repo.source) == ("/etc/yum.repos.d", "ephemeral/repos")
    assert any("curl-7.61.1-22.el8.x86_64" in d for d in plan.directives)


def test_not_isolated_has_only_the_ephemeral_mount(layout):
    plan = compiler_for(layout).compile([UBUNTU_BASE], UBUNTU, None, False, BackendKind.DAEMON)
    assert [m.name for m in plan.mounts] == ["docker-ephemeral"]


def test_from_built_image_resolves_through_the_resolver(layout):
    resolver = CompositionResolver()
    resolver.register("base", ImageBuildResult(
        "example/base:1", "sha256:abc", BuilderKind.DAEMON, datetime(2024, 1, 1, tzinfo=timezone.utc)))
    plan = compiler_for(layout, resolver).compile(
        [FromBuiltImage("base"), Env("A", "1")], UBUNTU, None, False, BackendKind.DAEMON)
    assert plan.directives[0] == "# base (a.k.a example/base:1)\nFROM example/base:1"
    assert plan.base_reference == "example/base:1"


def test_from_built_image_without_result_fails(layout):
    with pytest.raises(UnresolvedBaseImageError) as excinfo:
        compiler_for(layout, CompositionResolver()).compile(
            [FromBuiltImage("base")], UBUNTU, None, False, BackendKind.DAEMON)
    assert excinfo.value.project_id == "base"


def test_direct_plan_collects_layers_and_config(layout):
    instructions = [
        UBUNTU_BASE,
        Copy(0, owner="1000:1000"),
        Env("A", "1"),
        SetUser("app"),
        HealthCheck("true", interval="30s"),
        Copy(1),
    ]
    plan = compiler_for(layout).compile(instructions, UBUNTU, None, False, BackendKind.DIRECT)
    assert isinstance(plan, DirectBuildPlan)
    assert [l.source_directory for l in plan.layers] == [layout.layer_dir(0), layout.layer_dir(1)]
    assert plan.layers[0].owner == "1000:1000"
    assert plan.config.env == (("A", "1"),)
    assert plan.config.user == "app"
    assert plan.config.healthcheck.interval == "30s"
    assert plan.base_reference == "ubuntu:20.04"


def test_direct_backend_rejects_instructions_that_run_commands(layout, pins):
    for inst in (Run(["true"]), Install(["curl"]), CreateUser("app", 1000, "app", 1000), RepoConfigRun(["x"])):
        with pytest.raises(ConfigurationError, match="cannot execute commands"):
            compiler_for(layout).compile([UBUNTU_BASE, inst], UBUNTU, pins, False, BackendKind.DIRECT)


def test_direct_backend_skips_repo_config_when_isolated(layout):
    plan = compiler_for(layout).compile(
        [UBUNTU_BASE, RepoConfigRun(["x"])], UBUNTU, None, True, BackendKind.DIRECT)
    assert plan.layers == ()


def test_direct_plan_chains_on_upstream_archive(layout):
    resolver = CompositionResolver()
    resolver.register("base", ImageBuildResult(
        "example/base:1", "sha256:abc", BuilderKind.DIRECT, datetime(2024, 1, 1, tzinfo=timezone.utc),
        archive="/tmp/base.tar"))
    plan = compiler_for(layout, resolver).compile([FromBuiltImage("base")], UBUNTU, None, False, BackendKind.DIRECT)
    assert plan.base_archive == "/tmp/base.tar"
    assert plan.base_image_id == "sha256:abc"
