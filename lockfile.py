"""
Lockfile: exact package pins per distribution and architecture.

Two phases:
  - generation (`resolve` / `generate_lockfile`): queries a package index, network
    dependent and allowed to change from one day to the next
  - build (`Lockfile.load` / `lookup` / `require`): offline and reproducible; a missing
    pin is always an error, never skipped
"""

import os
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import yaml

from errors import ConfigurationError, UnresolvedPackageError
from os_distribution import Architecture, IndexEntry, OSDistribution, policy_for

LOCKFILE_VERSION = 1

# Packages carrying this marker are repository index archives, not installable packages
META_MARKER = "__META__"


@dataclass(frozen=True)
class PackagePin:
    name: str
    version: str
    release: str
    architecture: str


def format_pin(pin: PackagePin, distribution: OSDistribution) -> str:
    """Render a pin the way the distribution's package manager expects it on the command line"""
    return policy_for(distribution).format_pin(pin)


class Lockfile:
    def __init__(self):
        self._pins: Dict[OSDistribution, Dict[Architecture, Dict[str, PackagePin]]] = OrderedDict()

    def add(self, distribution: OSDistribution, architecture: Architecture, pin: PackagePin):
        partition = self._pins.setdefault(distribution, OrderedDict()).setdefault(architecture, OrderedDict())
        existing = partition.get(pin.name)
        if existing is not None and existing != pin:
            raise ConfigurationError(
                f"Conflicting pins for {pin.name} ({distribution.value} {architecture.value}): "
                f"{existing} vs {pin}"
            )
        partition[pin.name] = pin

    def lookup(self, name: str, distribution: OSDistribution, architecture: Architecture) -> Optional[PackagePin]:
        return self._pins.get(distribution, {}).get(architecture, {}).get(name)

    def require(self, names: Iterable[str], distribution: OSDistribution, architecture: Architecture) -> List[PackagePin]:
        """Pins for every name, in sorted name order; fails naming all missing packages at once"""
        pins: List[PackagePin] = []
        missing: List[str] = []
        for name in sorted(set(names)):
            pin = self.lookup(name, distribution, architecture)
            if pin is None:
                missing.append(name)
            else:
                pins.append(pin)
        if missing:
            raise UnresolvedPackageError(missing, distribution.value, architecture.value)
        return pins

    def pins(self, distribution: OSDistribution, architecture: Architecture) -> List[PackagePin]:
        return list(self._pins.get(distribution, {}).get(architecture, {}).values())

    def partitions(self) -> List[Tuple[OSDistribution, Architecture]]:
        return [(d, a) for d, archs in self._pins.items() for a in archs]

    def merge(self, other: 'Lockfile'):
        for distribution, architecture in other.partitions():
            for pin in other.pins(distribution, architecture):
                self.add(distribution, architecture, pin)

    def __len__(self) -> int:
        return sum(len(names) for archs in self._pins.values() for names in archs.values())

    def to_document(self) -> Dict:
        entries = []
        for distribution, architecture in sorted(self.partitions(), key=lambda p: (p[0].value, p[1].value)):
            for pin in sorted(self.pins(distribution, architecture), key=lambda p: p.name):
                entries.append({
                    'distribution': distribution.value,
                    'architecture': architecture.value,
                    'name': pin.name,
                    'version': pin.version,
                    'release': pin.release,
                    'package_architecture': pin.architecture,
                })
        return {'version': LOCKFILE_VERSION, 'packages': entries}

    @classmethod
    def from_document(cls, data: Mapping) -> 'Lockfile':
        if not isinstance(data, Mapping):
            raise ConfigurationError("Lockfile must be a mapping")
        version = data.get('version')
        if version != LOCKFILE_VERSION:
            raise ConfigurationError(f"Unsupported lockfile version {version!r}, expected {LOCKFILE_VERSION}")
        lockfile = cls()
        for entry in data.get('packages') or []:
            try:
                distribution = OSDistribution.parse(entry['distribution'])
                architecture = Architecture.parse(entry['architecture'])
                pin = PackagePin(
                    name=str(entry['name']),
                    version=str(entry['version']),
                    release=str(entry.get('release') or ''),
                    architecture=str(entry.get('package_architecture') or architecture.value),
                )
            except KeyError as e:
                raise ConfigurationError(f"Lockfile entry {entry!r} is missing {e}")
            lockfile.add(distribution, architecture, pin)
        return lockfile

    def dumps(self) -> str:
        return yaml.safe_dump(self.to_document(), sort_keys=False, default_flow_style=False)

    def save(self, path: str):
        with open(path, 'w', encoding='utf-8') as f:
            f.write(self.dumps())

    @classmethod
    def load(cls, path: str) -> 'Lockfile':
        if not os.path.exists(path):
            raise ConfigurationError(
                f"Lockfile {path} does not exist",
                hint="Generate it with the `lockfile` command",
            )
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_document(yaml.safe_load(f) or {})


def resolve(requested: Iterable[str], distribution: OSDistribution, architecture: Architecture, index) -> Set[PackagePin]:
    """Snapshot exact pins for the requested packages with a single index query"""
    names = sorted({p for p in requested if META_MARKER not in p})
    if not names:
        return set()
    found: Dict[str, PackagePin] = {}
    for name, version, release, arch in index.query(distribution, architecture, names):
        if name in names and name not in found:
            found[name] = PackagePin(name=name, version=version, release=release, architecture=arch)
    missing = [n for n in names if n not in found]
    if missing:
        raise UnresolvedPackageError(missing, distribution.value, architecture.value)
    return set(found.values())


def generate_lockfile(requests: Mapping[Tuple[OSDistribution, Architecture], Iterable[str]], index) -> Lockfile:
    """One index query per (distribution, architecture) pair"""
    lockfile = Lockfile()
    for (distribution, architecture), packages in requests.items():
        for pin in sorted(resolve(packages, distribution, architecture, index), key=lambda p: p.name):
            lockfile.add(distribution, architecture, pin)
    return lockfile


class EnginePackageIndex:
    """Package index backed by the base image's own package manager, run through the engine"""

    def __init__(self, engine, image: str):
        self.engine = engine
        self.image = image

    def query(self, distribution: OSDistribution, architecture: Architecture, packages: Sequence[str]) -> List[IndexEntry]:
        policy = policy_for(distribution)
        print(f"🔍 Querying {policy.name} index in {self.image} ({architecture.value}) for {len(packages)} package(s)")
        output = self.engine.run_shell(self.image, policy.index_query(packages), architecture=architecture)
        return policy.parse_index(output, architecture)
