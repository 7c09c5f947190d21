"""
Daemon backend: materialises a DaemonBuildPlan with the container engine CLI.

Every engine call is one blocking subprocess running with the minimal environment from
EnvironmentManager. A build is invoked exactly once and never retried; only pulls retry.
"""

import logging
import os
import re
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from config import BuilderKind, ImageBuildResult, Settings, utcnow
from env_manager import EnvironmentManager
from errors import ConfigurationError, ImageBuildError, TransientPullError
from instruction_compiler import DaemonBuildPlan
from os_distribution import Architecture
from utils import retry, sudo_prefix

DOCKERFILE_NAME = "Dockerfile"
IGNORE_FILE_NAME = ".dockerignore"
IID_FILE_NAME = "image.iid"


class ExecutionBackend(ABC):
    """Turns a compiled plan into an image"""

    kind: BuilderKind

    @abstractmethod
    def build(self, plan, tag: str) -> ImageBuildResult: ...

    @abstractmethod
    def has_image(self, result: ImageBuildResult) -> bool:
        """Whether a previously built result is still available"""


class DockerDaemonBackend(ExecutionBackend):
    kind = BuilderKind.DAEMON

    def __init__(self, settings: Settings, env_manager: Optional[EnvironmentManager] = None,
                 runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
                 popen: Optional[Callable[..., subprocess.Popen]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 prefix: Optional[List[str]] = None):
        self.settings = settings
        self.env: Dict[str, str] = (env_manager or EnvironmentManager()).engine_env()
        self.runner = runner or subprocess.run
        self.popen = popen or subprocess.Popen
        self.sleep = sleep
        self._prefix = prefix

    def _engine(self) -> List[str]:
        """Absolute engine path, with sudo when the daemon needs it"""
        if self._prefix is None:
            binary = shutil.which(self.settings.engine) or self.settings.engine
            prefix = sudo_prefix(self.settings.engine)
            if prefix:
                prefix = [shutil.which(prefix[0]) or prefix[0]] + prefix[1:]
            self._prefix = prefix + [binary]
        return self._prefix

    def _docker(self, args: List[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = self._engine() + args
        logging.debug(f"Running: {' '.join(cmd)}")
        return self.runner(cmd, env=self.env, cwd=cwd, text=True, capture_output=True)

    def _stream(self, cmd: List[str], cwd: str) -> Tuple[int, str]:
        """Run cmd echoing its output while capturing it; terminate it if we are interrupted"""
        proc = self.popen(cmd, cwd=cwd, env=self.env, stdout=subprocess.PIPE,
                          stderr=subprocess.STDOUT, text=True, bufsize=1)
        captured: List[str] = []
        try:
            for line in proc.stdout:
                captured.append(line)
                sys.stdout.write(line)
            proc.wait()
        except BaseException:
            self._terminate(proc)
            raise
        finally:
            proc.stdout.close()
        return proc.returncode, ''.join(captured)

    def _terminate(self, proc: subprocess.Popen):
        logging.warning(f"Stopping engine process {proc.pid}")
        proc.terminate()
        try:
            proc.wait(timeout=self.settings.stop_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def check_version(self) -> str:
        """Fail unless the engine daemon is reachable and recent enough for BuildKit bind mounts"""
        res = self._docker(['version', '--format', '{{.Server.Version}}'])
        if res.returncode != 0:
            raise ConfigurationError(
                f"Cannot query the container engine version: {(res.stderr or res.stdout).strip()}",
                hint=f"Check that `{self.settings.engine}` is installed and its daemon is running",
            )
        version = res.stdout.strip()
        match = re.match(r'\s*(\d+)', version)
        if not match:
            raise ConfigurationError(f"Unrecognised container engine version '{version}'")
        if int(match.group(1)) < self.settings.min_engine_major_version:
            raise ConfigurationError(
                f"Container engine version {version} is too old, "
                f"version {self.settings.min_engine_major_version} or newer is required",
            )
        print(f"🐳 Container engine version {version}")
        return version

    def run_shell(self, image: str, script: str, architecture: Optional[Architecture] = None) -> str:
        """Run a shell script in a throwaway container of image and return its stdout"""
        args = ['run', '--rm']
        if architecture is not None:
            args += ['--platform', architecture.platform]
        args += ['--entrypoint', '/bin/sh', image, '-c', script]
        res = self._docker(args)
        if res.returncode != 0:
            raise ImageBuildError(f"Command failed in {image} with exit code {res.returncode}", log=res.stderr)
        return res.stdout

    def probe_default_user(self, image: str, architecture: Optional[Architecture] = None) -> str:
        user = self.run_shell(image, 'whoami', architecture).strip().splitlines()
        if not user:
            raise ImageBuildError(f"Could not determine the default user of {image}")
        return user[-1].strip()

    def write_build_files(self, plan: DaemonBuildPlan) -> Tuple[str, str]:
        os.makedirs(plan.working_dir, exist_ok=True)
        dockerfile = os.path.join(plan.working_dir, DOCKERFILE_NAME)
        with open(dockerfile, 'w', encoding='utf-8') as f:
            f.write(plan.dockerfile)
        ignore_file = os.path.join(plan.working_dir, IGNORE_FILE_NAME)
        with open(ignore_file, 'w', encoding='utf-8') as f:
            f.write(plan.ignore_manifest)
        return dockerfile, ignore_file

    def build(self, plan: DaemonBuildPlan, tag: str) -> ImageBuildResult:
        self.write_build_files(plan)
        iid_file = os.path.join(plan.working_dir, IID_FILE_NAME)
        if os.path.exists(iid_file):
            os.remove(iid_file)

        args = ['image', 'build', '--platform', plan.architecture.platform]
        if self.settings.use_engine_cache:
            logging.warning("Engine layer cache is enabled; changes in ephemeral mounts may be ignored")
        else:
            args.append('--no-cache')
        args += ['--progress=plain', f'--iidfile={iid_file}', '-t', tag, '.']

        print(f"🔨 Building {tag} ({plan.architecture.value}) in {plan.working_dir}")
        returncode, log = self._stream(self._engine() + args, cwd=plan.working_dir)
        if returncode != 0:
            raise ImageBuildError(f"Building {tag} failed with exit code {returncode}", log=log)

        try:
            with open(iid_file, 'r', encoding='utf-8') as f:
                image_id = f.read().strip()
        except OSError:
            image_id = ""
        if not image_id:
            raise ImageBuildError(f"Building {tag} did not report an image id", log=log)
        print(f"✅ Built {tag} ({image_id})")
        return ImageBuildResult(tag=tag, image_id=image_id, builder=self.kind, created_at=utcnow())

    def pull(self, reference: str, architecture: Optional[Architecture] = None):
        """Pull with exponential backoff. Every failure is treated as transient."""
        config_dir = os.path.join(os.path.expanduser('~'), '.docker')

        def attempt():
            args = ['--config', config_dir, 'pull']
            if architecture is not None:
                args += ['--platform', architecture.platform]
            res = self._docker(args + [reference])
            if res.returncode != 0:
                raise TransientPullError(reference, output=(res.stderr or res.stdout), returncode=res.returncode)

        print(f"⬇️  Pulling {reference}")
        retry(
            attempt,
            max_attempts=self.settings.pull_max_attempts,
            initial_delay=self.settings.pull_initial_backoff,
            max_delay=self.settings.pull_max_backoff,
            retry_on=(TransientPullError,),
            sleep=self.sleep,
            describe=f"Pull of {reference}",
        )

    def clean(self, tag: str) -> str:
        """Remove tag; a missing image is not an error. Returns the engine's stderr."""
        res = self._docker(['image', 'rm', tag])
        print(f"🧹 Removed {tag}" if res.returncode == 0 else f"🧹 Nothing removed for {tag}")
        return res.stderr or ""

    def image_id(self, reference: str) -> Optional[str]:
        """Local image id of reference, None when the engine does not have it"""
        res = self._docker(['image', 'inspect', '--format', '{{.Id}}', reference])
        if res.returncode != 0:
            return None
        return res.stdout.strip() or None

    def has_image(self, result: ImageBuildResult) -> bool:
        return self.image_id(result.tag) == result.image_id

    def save(self, reference: str, path: str) -> str:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        res = self._docker(['image', 'save', '-o', path, reference])
        if res.returncode != 0:
            raise ImageBuildError(f"Saving {reference} failed", log=res.stderr)
        return path

    def load(self, archive: str) -> str:
        res = self._docker(['image', 'load', '-i', archive])
        if res.returncode != 0:
            raise ImageBuildError(f"Loading {archive} failed", log=res.stderr)
        print(f"📦 {res.stdout.strip()}")
        return res.stdout
