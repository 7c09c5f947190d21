"""Shared test fixtures."""

import hashlib
import io
import json
import subprocess
import tarfile

import pytest

from config import Settings
from instruction_compiler import BuildLayout
from lockfile import Lockfile, PackagePin
from os_distribution import Architecture, OSDistribution


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class FakeRunner:
    """Stands in for subprocess.run; replays scripted results and records every call"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, cmd, env=None, cwd=None, text=True, capture_output=True):
        self.calls.append({'cmd': list(cmd), 'env': env, 'cwd': cwd})
        if self.responses:
            response = self.responses.pop(0)
            return response(cmd) if callable(response) else response
        return completed()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        work_root=str(tmp_path / "work"),
        architecture="x86_64",
        cache_file=str(tmp_path / "cache.json"),
    )


@pytest.fixture
def layout(tmp_path) -> BuildLayout:
    return BuildLayout(str(tmp_path / "work" / "project"))


@pytest.fixture
def pins() -> Lockfile:
    lockfile = Lockfile()
    lockfile.add(OSDistribution.UBUNTU, Architecture.X86_64, PackagePin("curl", "7.68.0", "1ubuntu2", "amd64"))
    lockfile.add(OSDistribution.UBUNTU, Architecture.X86_64, PackagePin("git", "2.25.1", "1ubuntu3", "amd64"))
    lockfile.add(OSDistribution.CENTOS, Architecture.X86_64, PackagePin("curl", "7.61.1", "22.el8", "x86_64"))
    return lockfile


def _add_bytes(tar, name, data, mode=0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


@pytest.fixture
def base_archive(tmp_path) -> str:
    """Minimal `docker save` archive: one layer with etc/base.txt and an `app` user (uid 1000) and `staff` group"""
    layer = io.BytesIO()
    with tarfile.open(fileobj=layer, mode='w') as tar:
        _add_bytes(tar, "etc/base.txt", b"base\n")
        _add_bytes(tar, "etc/passwd", b"root:x:0:0:root:/root:/bin/sh\napp:x:1000:1000::/home/app:/bin/sh\n")
        _add_bytes(tar, "etc/group", b"root:x:0:\napp:x:1000:\nstaff:x:50:app\n")
    layer_bytes = layer.getvalue()
    diff_id = hashlib.sha256(layer_bytes).hexdigest()
    config = {
        'architecture': 'amd64',
        'os': 'linux',
        'config': {'Env': ['PATH=/usr/bin', 'GREETING=old'], 'User': ''},
        'rootfs': {'type': 'layers', 'diff_ids': [f"sha256:{diff_id}"]},
        'history': [{'created_by': 'base'}],
    }
    manifest = [{'Config': 'config.json', 'RepoTags': ['base:1'], 'Layers': [f"{diff_id}/layer.tar"]}]

    path = tmp_path / "base.tar"
    with tarfile.open(path, 'w') as tar:
        _add_bytes(tar, f"{diff_id}/layer.tar", layer_bytes)
        _add_bytes(tar, "config.json", json.dumps(config).encode('utf-8'))
        _add_bytes(tar, "manifest.json", json.dumps(manifest).encode('utf-8'))
    return str(path)
