import os
import shutil
import concurrent.futures
import logging
from typing import Dict, List, Optional

from build_tracker import BuildTracker
from composition import BuildRunContext
from config import BackendKind, BuildDeclaration, ImageBuildResult, ProjectDeclaration, Settings
from container_layer_builder import DirectLayerBackend
from daemon_backend import DockerDaemonBackend, ExecutionBackend
from declaration_parser import DeclarationParser
from errors import ConfigurationError
from instruction_compiler import BuildLayout, InstructionCompiler
from instructions import From, FromBuiltImage, Install
from lockfile import EnginePackageIndex, Lockfile, generate_lockfile
from os_distribution import Architecture, policy_for
from utils import slugify


class BuildOrchestrator:
    """Builds declared projects: prepares working directories, compiles, builds and chains results"""

    def __init__(self, settings: Settings = None, daemon: Optional[DockerDaemonBackend] = None,
                 direct: Optional[DirectLayerBackend] = None, tracker: Optional[BuildTracker] = None):
        self.settings = settings or Settings()
        self.parser = DeclarationParser()
        self.daemon = daemon or DockerDaemonBackend(self.settings)
        self.direct = direct or DirectLayerBackend(
            os.path.join(self.settings.work_root, 'archives'), fetch_base=self._fetch_base_archive)
        self.tracker = tracker or BuildTracker(self.settings.cache_file)

    def backend_for(self, kind: BackendKind) -> ExecutionBackend:
        if kind == BackendKind.DAEMON:
            return self.daemon
        if kind == BackendKind.DIRECT:
            return self.direct
        raise ConfigurationError(f"Unknown backend {kind!r}")

    def working_dir(self, project: ProjectDeclaration) -> str:
        return os.path.join(self.settings.work_root, slugify(project.id))

    def architecture_for(self, project: ProjectDeclaration) -> Architecture:
        return project.architecture or self.settings.resolved_architecture()

    def prepare_working_dir(self, project: ProjectDeclaration, layout: BuildLayout):
        """Fresh context/ and ephemeral/ trees; everything the plan mounts or copies exists afterwards"""
        for stale in (layout.context_dir, layout.path('ephemeral')):
            if os.path.exists(stale):
                shutil.rmtree(stale)
        os.makedirs(layout.context_dir)

        for ordinal, source in sorted(project.layers.items()):
            if not os.path.isdir(source):
                raise ConfigurationError(f"Project '{project.id}': copy source {source} is not a directory")
            shutil.copytree(source, layout.layer_dir(ordinal), symlinks=True)

        for directory, source in ((layout.docker_ephemeral_dir, project.ephemeral),
                                  (layout.os_packages_dir, project.os_packages)):
            if source:
                if not os.path.isdir(source):
                    raise ConfigurationError(f"Project '{project.id}': {source} is not a directory")
                shutil.copytree(source, directory, symlinks=True)
            else:
                os.makedirs(directory)

        policy = policy_for(project.distribution)
        os.makedirs(layout.repos_dir)
        with open(os.path.join(layout.repos_dir, policy.repo_file_name), 'w', encoding='utf-8') as f:
            f.write("\n".join(policy.repo_file_lines()) + "\n")

    def _cleanup_ephemeral(self, layout: BuildLayout):
        shutil.rmtree(layout.path('ephemeral'), ignore_errors=True)

    def base_archive_path(self, reference: str, architecture: Architecture) -> str:
        return os.path.join(self.settings.work_root, 'base-archives', f"{slugify(reference)}-{architecture.value}.tar")

    def _fetch_base_archive(self, reference: str, architecture: Architecture) -> str:
        """`docker save` archive of a base image for the direct backend, pulling it when missing.

        A saved archive is reused only while the engine still reports the image id it was saved
        from (kept in `<archive>.id`); a retagged or rebuilt image is saved again.
        """
        path = self.base_archive_path(reference, architecture)
        id_file = path + ".id"
        image_id = self.daemon.image_id(reference)
        if image_id is None:
            self.daemon.pull(reference, architecture)
            image_id = self.daemon.image_id(reference)

        if image_id and os.path.exists(path) and os.path.exists(id_file):
            with open(id_file, 'r', encoding='utf-8') as f:
                if f.read().strip() == image_id:
                    return path

        for stale in (path, id_file):
            if os.path.exists(stale):
                os.remove(stale)
        print(f"💾 Saving {reference} for direct assembly")
        self.daemon.save(reference, path)
        if image_id:
            with open(id_file, 'w', encoding='utf-8') as f:
                f.write(image_id + "\n")
        return path

    def _base_reference(self, project: ProjectDeclaration, run_context: BuildRunContext) -> str:
        base = project.instructions[0]
        if isinstance(base, FromBuiltImage):
            return run_context.resolver.require(base.source_project_id).tag
        return base.reference

    def _prepare_daemon_base(self, project: ProjectDeclaration, run_context: BuildRunContext,
                             architecture: Architecture) -> str:
        """Make the base image available to the engine and return the user it runs as"""
        base = project.instructions[0]
        reference = self._base_reference(project, run_context)
        if isinstance(base, From):
            self.daemon.pull(reference, architecture)
        else:
            upstream = run_context.resolver.require(base.source_project_id)
            if upstream.archive and self.daemon.image_id(upstream.tag) != upstream.image_id:
                self.daemon.load(upstream.archive)
        if any(isinstance(i, Install) for i in project.instructions):
            return self.daemon.probe_default_user(reference, architecture)
        return "root"

    def build_project(self, project: ProjectDeclaration, run_context: BuildRunContext,
                      backend: BackendKind = BackendKind.DAEMON, force_rebuild: bool = False) -> ImageBuildResult:
        architecture = self.architecture_for(project)
        layout = BuildLayout(self.working_dir(project))
        builder = self.backend_for(backend)
        print(f"\n📦 Project {project.id} -> {project.tag} ({backend.value}, {architecture.value})")

        pins = Lockfile.load(project.lockfile) if project.lockfile else None
        default_user = "root"
        if backend == BackendKind.DAEMON:
            run_context.run_once_engine_check(self.daemon.check_version)
            default_user = self._prepare_daemon_base(project, run_context, architecture)

        self.prepare_working_dir(project, layout)
        compiler = InstructionCompiler(layout, architecture, run_context.resolver, self.settings.ephemeral_mount)
        plan = compiler.compile(
            project.instructions,
            project.distribution,
            pins,
            project.isolate_from_external_repos,
            backend,
            default_user=default_user,
        )

        base = project.instructions[0]
        base_id = run_context.resolver.require(base.source_project_id).image_id if isinstance(base, FromBuiltImage) else ""
        key = BuildTracker.cache_key(plan.cache_key + base_id, layout.context_dir)
        if force_rebuild:
            print("🔥 Force rebuild requested - ignoring build cache")
        else:
            cached = self.tracker.lookup(key)
            if cached is not None and cached.tag == project.tag and builder.has_image(cached):
                print(f"♻️  Reusing {cached.tag} ({cached.image_id}), inputs unchanged")
                run_context.resolver.register(project.id, cached)
                self._cleanup_ephemeral(layout)
                return cached
            if cached is not None:
                logging.info(f"Cached result for {project.id} is gone from the {backend.value} backend, rebuilding")
                self.tracker.forget(key)

        result = builder.build(plan, project.tag)
        self.tracker.record_build(key, project.id, result)
        run_context.resolver.register(project.id, result)
        self._cleanup_ephemeral(layout)
        return result

    def build_projects(self, declaration: BuildDeclaration, backend: BackendKind = BackendKind.DAEMON,
                       force_rebuild: bool = False, workers: int = 1,
                       run_context: Optional[BuildRunContext] = None) -> Dict[str, ImageBuildResult]:
        """Build every project in dependency waves; projects inside a wave run concurrently"""
        run_context = run_context or BuildRunContext()
        waves = self.parser.get_build_waves(declaration)
        print(f"🔀 Build order: {' → '.join(' | '.join(w) for w in waves)}")
        results: Dict[str, ImageBuildResult] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            for wave in waves:
                futures = {
                    pool.submit(self.build_project, declaration.project(pid), run_context, backend, force_rebuild): pid
                    for pid in wave
                }
                failures: List[BaseException] = []
                for future in concurrent.futures.as_completed(futures):
                    pid = futures[future]
                    try:
                        results[pid] = future.result()
                    except Exception as e:
                        print(f"❌ Project {pid} failed, its working directory is kept for debugging")
                        failures.append(e)
                if failures:
                    raise failures[0]
        self.tracker.cleanup_old_builds(keep_last=max(10, len(results)))
        print(f"\n✅ Built {len(results)} project(s)")
        return results

    def _root_image(self, declaration: BuildDeclaration, project: ProjectDeclaration) -> str:
        """The external image a chain of FromBuiltImage projects ultimately starts from"""
        seen = set()
        current = project
        while isinstance(current.instructions[0], FromBuiltImage):
            if current.id in seen:
                raise ConfigurationError(f"Circular base image dependency at '{current.id}'")
            seen.add(current.id)
            current = declaration.project(current.instructions[0].source_project_id)
        return current.instructions[0].reference

    def generate_lockfiles(self, declaration: BuildDeclaration) -> Dict[str, Lockfile]:
        """Resolve every installed package against its project's base image and write the lockfiles"""
        lockfiles: Dict[str, Lockfile] = {}
        for project in declaration.projects:
            packages = project.installed_packages()
            if not packages:
                continue
            if not project.lockfile:
                raise ConfigurationError(
                    f"Project '{project.id}' installs packages but declares no lockfile",
                    hint="Add a 'lockfile' path to the project",
                )
            architecture = self.architecture_for(project)
            image = self._root_image(declaration, project)
            self.daemon.pull(image, architecture)
            index = EnginePackageIndex(self.daemon, image)
            generated = generate_lockfile({(project.distribution, architecture): packages}, index)
            lockfiles.setdefault(project.lockfile, Lockfile()).merge(generated)

        for path, lockfile in lockfiles.items():
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            lockfile.save(path)
            print(f"🔒 Wrote {len(lockfile)} pin(s) to {path}")
        if not lockfiles:
            logging.warning("No project installs packages; no lockfile written")
        return lockfiles

    def clean_projects(self, declaration: BuildDeclaration) -> Dict[str, str]:
        """Remove every project's image tag and direct-backend archive; safe to repeat"""
        output: Dict[str, str] = {}
        for project in declaration.projects:
            output[project.id] = self.daemon.clean(project.tag)
            archive = self.direct.archive_path(project.tag)
            if os.path.exists(archive):
                os.remove(archive)
                print(f"🧹 Removed {archive}")
        return output
