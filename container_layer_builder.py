import hashlib
import json
import logging
import os
import re
import shutil
import tarfile
import tempfile
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from config import BuilderKind, ImageBuildResult, utcnow
from daemon_backend import ExecutionBackend
from errors import ConfigurationError, ImageBuildError
from instruction_compiler import DirectBuildPlan, ImageConfigChanges, LayerDescriptor
from os_distribution import Architecture
from utils import slugify

# Every timestamp written into layers and image config, so identical inputs give identical image ids
EPOCH = "1970-01-01T00:00:00Z"
DEFAULT_FILE_MODE = 0o644
DEFAULT_EXECUTABLE_MODE = 0o755

_DURATION_UNITS = {
    'ns': 1,
    'us': 1_000,
    'µs': 1_000,
    'ms': 1_000_000,
    's': 1_000_000_000,
    'm': 60 * 1_000_000_000,
    'h': 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')


def parse_duration(value: str) -> int:
    """`30s`, `1m30s`, `500ms` -> nanoseconds; a bare number is seconds"""
    text = value.strip()
    if re.fullmatch(r'\d+(?:\.\d+)?', text):
        return int(float(text) * _DURATION_UNITS['s'])
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or not text:
        raise ConfigurationError(f"Invalid duration '{value}'")
    return int(total)


def _apply_owner(info: tarfile.TarInfo, owner: Optional[str]):
    """Numeric `uid[:gid]` only; the engine applies layer ownership by number"""
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if not owner:
        return
    user, _, group = owner.partition(':')
    group = group or user
    if not (user.isdigit() and group.isdigit()):
        raise ConfigurationError(
            f"Layer owner '{owner}' is not numeric",
            hint="Resolve user and group names against the base image first",
        )
    info.uid = int(user)
    info.gid = int(group)


def _apply_mode(info: tarfile.TarInfo, policy: str):
    if policy == "preserve" or info.issym():
        return
    if info.isdir() or info.mode & 0o111:
        info.mode = DEFAULT_EXECUTABLE_MODE
    else:
        info.mode = DEFAULT_FILE_MODE


def write_layer(layer: LayerDescriptor, path: str) -> str:
    """Write the layer tar for one descriptor and return its sha256 (the diff id)"""
    if not os.path.isdir(layer.source_directory):
        raise ConfigurationError(f"Layer source directory {layer.source_directory} does not exist")
    prefix = layer.destination_path.strip('/')
    entries: List[Tuple[str, str]] = []
    for root, dirs, files in os.walk(layer.source_directory):
        dirs.sort()
        for name in dirs + sorted(files):
            full = os.path.join(root, name)
            rel = os.path.relpath(full, layer.source_directory).replace(os.sep, '/')
            entries.append((f"{prefix}/{rel}" if prefix else rel, full))
    entries.sort()

    with tarfile.open(path, 'w', format=tarfile.GNU_FORMAT) as tar:
        for arcname, full in entries:
            info = tar.gettarinfo(full, arcname)
            info.mtime = 0
            _apply_owner(info, layer.owner)
            _apply_mode(info, layer.permission_policy)
            if info.isreg():
                with open(full, 'rb') as f:
                    tar.addfile(info, f)
            else:
                tar.addfile(info)
    return _sha256_file(path)


def _sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            h.update(chunk)
    return h.hexdigest()


def apply_config_changes(config: Dict, changes: ImageConfigChanges) -> Dict:
    """Env, user and healthcheck updates on the `config` section of an image config"""
    runtime = dict(config.get('config') or {})
    if changes.env:
        env: List[str] = list(runtime.get('Env') or [])
        for key, value in changes.env:
            env = [e for e in env if e.split('=', 1)[0] != key]
            env.append(f"{key}={value}")
        runtime['Env'] = env
    if changes.user is not None:
        runtime['User'] = changes.user
    hc = changes.healthcheck
    if hc is not None:
        healthcheck: Dict = {'Test': ['CMD-SHELL', hc.cmd]}
        if hc.interval is not None:
            healthcheck['Interval'] = parse_duration(hc.interval)
        if hc.timeout is not None:
            healthcheck['Timeout'] = parse_duration(hc.timeout)
        if hc.start_period is not None:
            healthcheck['StartPeriod'] = parse_duration(hc.start_period)
        if hc.retries is not None:
            healthcheck['Retries'] = hc.retries
        runtime['Healthcheck'] = healthcheck
    updated = dict(config)
    updated['config'] = runtime
    return updated


class BaseImageArchive:
    """A `docker save` archive opened for reading"""

    def __init__(self, path: str):
        self.path = path
        self._tar = tarfile.open(path, 'r')
        manifest = json.load(self._member('manifest.json'))
        if not manifest:
            raise ImageBuildError(f"Image archive {path} has an empty manifest")
        self.entry = manifest[0]
        self.config = json.load(self._member(self.entry['Config']))
        self.layers: List[str] = list(self.entry.get('Layers') or [])
        self._id_tables: Dict[str, Dict[str, int]] = {}

    def read_file(self, name: str) -> Optional[bytes]:
        """Content of a file in the image filesystem; the topmost layer holding it wins"""
        for layer in reversed(self.layers):
            with tarfile.open(fileobj=self._member(layer)) as tar:
                for candidate in (name, f"./{name}"):
                    try:
                        member = tar.getmember(candidate)
                    except KeyError:
                        continue
                    f = tar.extractfile(member)
                    return f.read() if f is not None else None
        return None

    def _ids(self, database: str) -> Dict[str, int]:
        """name -> numeric id from etc/passwd or etc/group"""
        if database not in self._id_tables:
            table: Dict[str, int] = {}
            content = self.read_file(database) or b""
            for line in content.decode('utf-8', 'replace').splitlines():
                fields = line.split(':')
                if len(fields) > 2 and fields[2].isdigit():
                    table.setdefault(fields[0], int(fields[2]))
            self._id_tables[database] = table
        return self._id_tables[database]

    def resolve_owner(self, owner: str) -> str:
        """`user[:group]` -> `uid:gid` the way `COPY --chown` resolves it in this image.

        Without a group the gid is the same number as the uid.
        """
        user, _, group = owner.partition(':')
        uid = self._numeric_id(user, 'etc/passwd', owner)
        gid = self._numeric_id(group, 'etc/group', owner) if group else uid
        return f"{uid}:{gid}"

    def _numeric_id(self, name: str, database: str, owner: str) -> int:
        if name.isdigit():
            return int(name)
        table = self._ids(database)
        if name not in table:
            raise ConfigurationError(
                f"Owner '{owner}': '{name}' is not in /{database} of the base image",
                hint="Create the user in an upstream project or use numeric ids",
            )
        return table[name]

    def _member(self, name: str):
        try:
            f = self._tar.extractfile(name)
        except KeyError:
            f = None
        if f is None:
            raise ImageBuildError(f"Image archive {self.path} has no member {name}")
        return f

    def copy_layer(self, name: str, out: tarfile.TarFile):
        with tempfile.TemporaryFile() as tmp:
            shutil.copyfileobj(self._member(name), tmp)
            info = tarfile.TarInfo(name)
            info.size = tmp.tell()
            info.mode = DEFAULT_FILE_MODE
            tmp.seek(0)
            out.addfile(info, tmp)

    def close(self):
        self._tar.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _add_bytes(out: tarfile.TarFile, name: str, data: bytes):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = DEFAULT_FILE_MODE
    with tempfile.TemporaryFile() as tmp:
        tmp.write(data)
        tmp.seek(0)
        out.addfile(info, tmp)


def _add_file(out: tarfile.TarFile, name: str, path: str):
    info = tarfile.TarInfo(name)
    info.size = os.path.getsize(path)
    info.mode = DEFAULT_FILE_MODE
    with open(path, 'rb') as f:
        out.addfile(info, f)


class DirectLayerBackend(ExecutionBackend):
    """Assembles images without a daemon: base archive layers plus one tar layer per Copy.

    Output is a `docker save` compatible archive; `docker load` imports it.
    """

    kind = BuilderKind.DIRECT

    def __init__(self, output_dir: str, fetch_base: Optional[Callable[[str, Architecture], str]] = None):
        self.output_dir = output_dir
        self.fetch_base = fetch_base

    def archive_path(self, tag: str) -> str:
        return os.path.join(self.output_dir, f"{slugify(tag)}.tar")

    def _base_archive(self, plan: DirectBuildPlan) -> str:
        if plan.base_archive:
            return plan.base_archive
        if self.fetch_base is None:
            raise ConfigurationError(f"No image archive available for base image {plan.base_reference}")
        return self.fetch_base(plan.base_reference, plan.architecture)

    def build(self, plan: DirectBuildPlan, tag: str) -> ImageBuildResult:
        os.makedirs(self.output_dir, exist_ok=True)
        base_path = self._base_archive(plan)
        print(f"🧱 Assembling {tag} from {plan.base_reference} with {len(plan.layers)} layer(s)")
        archive = self.archive_path(tag)

        with BaseImageArchive(base_path) as base, tempfile.TemporaryDirectory(dir=self.output_dir) as staging:
            base_arch = base.config.get('architecture')
            if base_arch and base_arch != plan.architecture.docker_name:
                logging.warning(f"Base image {plan.base_reference} is {base_arch}, building {plan.architecture.docker_name}")

            new_layers: List[Tuple[str, str]] = []
            for ordinal, layer in enumerate(plan.layers):
                if layer.owner:
                    layer = replace(layer, owner=base.resolve_owner(layer.owner))
                layer_tar = os.path.join(staging, f"layer{ordinal}.tar")
                digest = write_layer(layer, layer_tar)
                new_layers.append((digest, layer_tar))
                print(f"   + layer {digest[:12]} from {layer.source_directory}")

            config = apply_config_changes(base.config, plan.config)
            rootfs = dict(config.get('rootfs') or {'type': 'layers'})
            rootfs['diff_ids'] = list(rootfs.get('diff_ids') or []) + [f"sha256:{d}" for d, _ in new_layers]
            config['rootfs'] = rootfs
            history = list(config.get('history') or [])
            for layer in plan.layers:
                history.append({'created': EPOCH, 'created_by': f"COPY {os.path.basename(layer.source_directory)} {layer.destination_path}"})
            if plan.config != ImageConfigChanges():
                history.append({'created': EPOCH, 'created_by': "CONFIG", 'empty_layer': True})
            config['history'] = history
            config['created'] = EPOCH
            config['architecture'] = plan.architecture.docker_name
            config['os'] = config.get('os') or 'linux'

            config_bytes = json.dumps(config, sort_keys=True, separators=(',', ':')).encode('utf-8')
            image_hex = hashlib.sha256(config_bytes).hexdigest()
            layer_names = list(base.layers) + [f"{d}/layer.tar" for d, _ in new_layers]
            manifest = [{'Config': f"{image_hex}.json", 'RepoTags': [tag], 'Layers': layer_names}]

            partial = archive + ".partial"
            with tarfile.open(partial, 'w', format=tarfile.GNU_FORMAT) as out:
                written = set()
                for name in base.layers:
                    if name not in written:
                        base.copy_layer(name, out)
                        written.add(name)
                for digest, layer_tar in new_layers:
                    name = f"{digest}/layer.tar"
                    if name not in written:
                        _add_file(out, name, layer_tar)
                        written.add(name)
                _add_bytes(out, f"{image_hex}.json", config_bytes)
                _add_bytes(out, 'manifest.json', json.dumps(manifest, separators=(',', ':')).encode('utf-8'))
            os.replace(partial, archive)

        image_id = f"sha256:{image_hex}"
        print(f"✅ Wrote {archive} ({image_id})")
        return ImageBuildResult(tag=tag, image_id=image_id, builder=self.kind, created_at=utcnow(), archive=archive)

    def has_image(self, result: ImageBuildResult) -> bool:
        return bool(result.archive) and os.path.exists(result.archive)
