import yaml
import json
import os
from typing import Any, Callable, Dict, List, Optional

from config import BuildDeclaration, ProjectDeclaration
from errors import ConfigurationError
from instructions import (
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
    validate_instructions,
)
from os_distribution import Architecture, OSDistribution

PROJECT_KEYS = {
    'id', 'tag', 'distribution', 'architecture', 'lockfile', 'isolate_from_external_repos',
    'ephemeral', 'os_packages', 'instructions',
}


def parse_image_reference(value: str) -> From:
    """`registry:5000/ubuntu:20.04@sha256:...` -> From(image, version, digest)"""
    reference, _, digest = value.partition('@')
    slash = reference.rfind('/')
    colon = reference.rfind(':')
    if colon > slash:
        image, version = reference[:colon], reference[colon + 1:]
    else:
        image, version = reference, 'latest'
    if not image or not version:
        raise ConfigurationError(f"Invalid image reference '{value}'")
    return From(image=image, version=version, digest=digest or None)


def _commands(value: Any, key: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and value and all(isinstance(c, str) for c in value):
        return list(value)
    raise ConfigurationError(f"'{key}' expects a command or a non-empty list of commands")


class DeclarationParser:
    def __init__(self):
        self._instruction_parsers: Dict[str, Callable[[Any, 'ProjectState'], List[Instruction]]] = {
            'from': self._parse_from,
            'from_project': self._parse_from_project,
            'copy': self._parse_copy,
            'run': lambda v, s: [Run(_commands(v, 'run'))],
            'install': self._parse_install,
            'create_user': self._parse_create_user,
            'user': lambda v, s: [SetUser(str(v))],
            'env': self._parse_env,
            'healthcheck': self._parse_healthcheck,
            'repo_config': lambda v, s: [RepoConfigRun(_commands(v, 'repo_config'))],
        }

    def parse_yaml(self, file_path: str) -> BuildDeclaration:
        """Parse YAML configuration file into BuildDeclaration"""
        with open(file_path, 'r') as f:
            data = yaml.safe_load(f)
        return self._parse_dict(data, os.path.dirname(os.path.abspath(file_path)))

    def parse_json(self, file_path: str) -> BuildDeclaration:
        """Parse JSON configuration file into BuildDeclaration"""
        with open(file_path, 'r') as f:
            data = json.load(f)
        return self._parse_dict(data, os.path.dirname(os.path.abspath(file_path)))

    def parse_file(self, file_path: str) -> BuildDeclaration:
        if not os.path.exists(file_path):
            raise ConfigurationError(f"Declaration file {file_path} does not exist")
        if file_path.endswith('.json'):
            return self.parse_json(file_path)
        return self.parse_yaml(file_path)

    def _parse_dict(self, data: Dict[str, Any], base_dir: str = ".") -> BuildDeclaration:
        if not isinstance(data, dict) or not isinstance(data.get('projects'), list) or not data['projects']:
            raise ConfigurationError("Declaration must contain a non-empty 'projects' list")
        projects = [self._parse_project(p, base_dir) for p in data['projects']]
        declaration = BuildDeclaration(projects=projects, base_dir=base_dir)
        self.validate_declaration(declaration)
        return declaration

    def _path(self, value: Optional[str], base_dir: str) -> Optional[str]:
        if value is None:
            return None
        return os.path.normpath(os.path.join(base_dir, str(value)))

    def _parse_project(self, data: Dict[str, Any], base_dir: str) -> ProjectDeclaration:
        if not isinstance(data, dict) or 'id' not in data:
            raise ConfigurationError(f"Every project needs an 'id': {data!r}")
        project_id = str(data['id'])
        unknown = set(data) - PROJECT_KEYS
        if unknown:
            raise ConfigurationError(f"Project '{project_id}' has unknown key(s): {', '.join(sorted(unknown))}")
        for required in ('tag', 'distribution', 'instructions'):
            if required not in data:
                raise ConfigurationError(f"Project '{project_id}' is missing '{required}'")

        state = ProjectState(project_id, base_dir)
        instructions: List[Instruction] = []
        for entry in data['instructions'] or []:
            if not isinstance(entry, dict) or len(entry) != 1:
                raise ConfigurationError(f"Project '{project_id}': each instruction is a single-key mapping, got {entry!r}")
            key, value = next(iter(entry.items()))
            parse = self._instruction_parsers.get(key)
            if parse is None:
                raise ConfigurationError(f"Project '{project_id}': unknown instruction '{key}'")
            instructions.extend(parse(value, state))

        try:
            validate_instructions(instructions)
        except ConfigurationError as e:
            raise ConfigurationError(f"Project '{project_id}': {e}")

        architecture = data.get('architecture')
        return ProjectDeclaration(
            id=project_id,
            tag=str(data['tag']),
            distribution=OSDistribution.parse(str(data['distribution'])),
            instructions=instructions,
            architecture=Architecture.parse(str(architecture)) if architecture else None,
            lockfile=self._path(data.get('lockfile'), base_dir),
            isolate_from_external_repos=bool(data.get('isolate_from_external_repos', False)),
            ephemeral=self._path(data.get('ephemeral'), base_dir),
            os_packages=self._path(data.get('os_packages'), base_dir),
            layers=state.layers,
        )

    def _parse_from(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        if isinstance(value, str):
            return [parse_image_reference(value)]
        if isinstance(value, dict) and 'image' in value:
            return [From(image=str(value['image']), version=str(value.get('version', 'latest')),
                         digest=value.get('digest'))]
        raise ConfigurationError(f"Project '{state.project_id}': invalid 'from' {value!r}")

    def _parse_from_project(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        return [FromBuiltImage(source_project_id=str(value))]

    def _parse_copy(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        if isinstance(value, str):
            source, owner = value, None
        elif isinstance(value, dict) and 'source' in value:
            source, owner = value['source'], value.get('owner')
        else:
            raise ConfigurationError(f"Project '{state.project_id}': invalid 'copy' {value!r}")
        ordinal = len(state.layers)
        state.layers[ordinal] = self._path(source, state.base_dir)
        return [Copy(layer_ordinal=ordinal, owner=str(owner) if owner is not None else None)]

    def _parse_install(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        packages = value.split() if isinstance(value, str) else value
        if not isinstance(packages, list) or not packages:
            raise ConfigurationError(f"Project '{state.project_id}': 'install' expects a list of package names")
        return [Install(packages=[str(p) for p in packages])]

    def _parse_create_user(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        try:
            return [CreateUser(
                username=str(value['username']),
                uid=int(value['uid']),
                group=str(value.get('group', value['username'])),
                gid=int(value.get('gid', value['uid'])),
            )]
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError(f"Project '{state.project_id}': 'create_user' needs username and uid, got {value!r}")

    def _parse_env(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        if not isinstance(value, dict) or not value:
            raise ConfigurationError(f"Project '{state.project_id}': 'env' expects a mapping")
        return [Env(key=str(k), value=str(v)) for k, v in value.items()]

    def _parse_healthcheck(self, value: Any, state: 'ProjectState') -> List[Instruction]:
        if isinstance(value, str):
            return [HealthCheck(cmd=value)]
        if not isinstance(value, dict) or 'cmd' not in value:
            raise ConfigurationError(f"Project '{state.project_id}': 'healthcheck' needs a 'cmd'")
        retries = value.get('retries')
        return [HealthCheck(
            cmd=str(value['cmd']),
            interval=value.get('interval'),
            timeout=value.get('timeout'),
            start_period=value.get('start_period'),
            retries=int(retries) if retries is not None else None,
        )]

    def validate_declaration(self, declaration: BuildDeclaration) -> bool:
        """Unique ids, known base projects, no cycles"""
        ids = [p.id for p in declaration.projects]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate project id(s): {', '.join(duplicates)}")

        for project in declaration.projects:
            for dep in project.dependencies():
                if dep not in ids:
                    raise ConfigurationError(f"Project '{project.id}' builds on unknown project '{dep}'")

        cycle = self._find_cycle(declaration.projects)
        if cycle:
            raise ConfigurationError(f"Circular base image dependencies: {' -> '.join(cycle)}")
        return True

    def _find_cycle(self, projects: List[ProjectDeclaration]) -> Optional[List[str]]:
        """DFS; returns the first cycle found as a path of project ids"""
        graph = {p.id: p.dependencies() for p in projects}
        visited = set()
        stack: List[str] = []

        def dfs(node) -> Optional[List[str]]:
            visited.add(node)
            stack.append(node)
            for neighbor in graph.get(node, []):
                if neighbor in stack:
                    return stack[stack.index(neighbor):] + [neighbor]
                if neighbor not in visited:
                    found = dfs(neighbor)
                    if found:
                        return found
            stack.pop()
            return None

        for project_id in graph:
            if project_id not in visited:
                found = dfs(project_id)
                if found:
                    return found
        return None

    def get_build_waves(self, declaration: BuildDeclaration) -> List[List[str]]:
        """Projects grouped so each wave only depends on earlier waves; declaration order within a wave"""
        remaining = {p.id: set(p.dependencies()) for p in declaration.projects}
        order = [p.id for p in declaration.projects]
        done = set()
        waves: List[List[str]] = []
        while remaining:
            wave = [pid for pid in order if pid in remaining and remaining[pid] <= done]
            if not wave:
                raise ConfigurationError("Circular base image dependencies between: " + ', '.join(sorted(remaining)))
            waves.append(wave)
            for pid in wave:
                del remaining[pid]
            done.update(wave)
        return waves

    def get_build_order(self, declaration: BuildDeclaration) -> List[str]:
        return [pid for wave in self.get_build_waves(declaration) for pid in wave]


class ProjectState:
    """Per-project bookkeeping while its instructions are parsed"""

    def __init__(self, project_id: str, base_dir: str):
        self.project_id = project_id
        self.base_dir = base_dir
        self.layers: Dict[int, str] = {}
