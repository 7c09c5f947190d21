import platform
import shlex
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from errors import ConfigurationError

# Where the local package mirror is mounted inside the image while installing
PACKAGES_MOUNT = "/var/packages-from-build"
LOCAL_REPO_NAME = "build-local"
LOCAL_REPO_URL = f"file://{PACKAGES_MOUNT}"


class OSDistribution(Enum):
    UBUNTU = "ubuntu"
    DEBIAN = "debian"
    CENTOS = "centos"
    ALPINE = "alpine"

    @classmethod
    def parse(cls, value: str) -> 'OSDistribution':
        try:
            return cls(value.strip().lower())
        except ValueError:
            supported = ', '.join(d.value for d in cls)
            raise ConfigurationError(f"Unsupported distribution '{value}' (supported: {supported})")


class Architecture(Enum):
    X86_64 = "x86_64"
    AARCH64 = "aarch64"

    @property
    def docker_name(self) -> str:
        return {Architecture.X86_64: "amd64", Architecture.AARCH64: "arm64"}[self]

    @property
    def platform(self) -> str:
        return f"linux/{self.docker_name}"

    @classmethod
    def parse(cls, value: str) -> 'Architecture':
        aliases = {
            'x86_64': cls.X86_64, 'amd64': cls.X86_64,
            'aarch64': cls.AARCH64, 'arm64': cls.AARCH64,
        }
        arch = aliases.get(value.strip().lower())
        if arch is None:
            raise ConfigurationError(f"Unsupported architecture '{value}'")
        return arch

    @classmethod
    def current(cls) -> 'Architecture':
        return cls.parse(platform.machine())


# (name, version, release, package architecture) as reported by a package index
IndexEntry = Tuple[str, str, str, str]


def split_revision(full_version: str) -> Tuple[str, str]:
    """Split `7.68.0-1ubuntu2` into (`7.68.0`, `1ubuntu2`); native versions have no release."""
    if '-' not in full_version:
        return full_version, ''
    version, release = full_version.rsplit('-', 1)
    return version, release


class PackageManager(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def repo_mount_target(self) -> str:
        """Path in the image that the local repository definition is bind-mounted over"""

    @property
    @abstractmethod
    def repo_file_name(self) -> str: ...

    @property
    def repo_mount_is_directory(self) -> bool:
        return False

    @abstractmethod
    def repo_file_lines(self) -> List[str]: ...

    @abstractmethod
    def install_cmd(self, pinned: Sequence[str], isolated: bool) -> str: ...

    @abstractmethod
    def wrap_install(self, command: str, isolated: bool) -> List[str]: ...

    @abstractmethod
    def format_pin(self, pin) -> str: ...

    @abstractmethod
    def package_arch(self, architecture: Architecture) -> str: ...

    @abstractmethod
    def index_query(self, packages: Sequence[str]) -> str: ...

    @abstractmethod
    def parse_index(self, output: str, architecture: Architecture) -> List[IndexEntry]: ...

    def accepts_arch(self, package_arch: str, architecture: Architecture) -> bool:
        return package_arch in (self.package_arch(architecture), self.noarch)

    noarch = "all"


class AptManager(PackageManager):
    @property
    def name(self) -> str:
        return 'apt'

    @property
    def repo_mount_target(self) -> str:
        return '/etc/apt/sources.list'

    @property
    def repo_file_name(self) -> str:
        return 'sources.list'

    def repo_file_lines(self) -> List[str]:
        return [f"deb [trusted=yes] {LOCAL_REPO_URL} /"]

    def install_cmd(self, pinned: Sequence[str], isolated: bool) -> str:
        return "DEBIAN_FRONTEND=noninteractive apt-get install -y " + ' '.join(pinned)

    def wrap_install(self, command: str, isolated: bool) -> List[str]:
        if isolated:
            return [
                f"cp {PACKAGES_MOUNT}/__META__Packages* {PACKAGES_MOUNT}/Packages.gz",
                "apt-get update",
                command,
                "apt-get clean",
                "rm -rf /var/lib/apt/lists/* /tmp/* /var/tmp/*",
            ]
        return [
            "rm -f /etc/apt/apt.conf.d/docker-clean",
            "echo 'Binary::apt::APT::Keep-Downloaded-Packages \"true\";' > /etc/apt/apt.conf.d/docker-dirty",
            "apt-get update",
            command,
        ]

    def format_pin(self, pin) -> str:
        release = f"-{pin.release}" if pin.release else ""
        return f"{pin.name}={pin.version}{release}"

    def package_arch(self, architecture: Architecture) -> str:
        return architecture.docker_name

    def index_query(self, packages: Sequence[str]) -> str:
        quoted = ' '.join(shlex.quote(p) for p in packages)
        return f"apt-get update -qq >/dev/null && apt-cache show --no-all-versions {quoted}"

    def parse_index(self, output: str, architecture: Architecture) -> List[IndexEntry]:
        entries: List[IndexEntry] = []
        for block in output.split('\n\n'):
            fields: Dict[str, str] = {}
            for line in block.splitlines():
                if ':' in line and not line.startswith(' '):
                    key, value = line.split(':', 1)
                    fields[key.strip()] = value.strip()
            if not {'Package', 'Version', 'Architecture'} <= fields.keys():
                continue
            if not self.accepts_arch(fields['Architecture'], architecture):
                continue
            version, release = split_revision(fields['Version'])
            entries.append((fields['Package'], version, release, fields['Architecture']))
        return entries


class YumManager(PackageManager):
    noarch = "noarch"

    @property
    def name(self) -> str:
        return 'yum'

    @property
    def repo_mount_target(self) -> str:
        return '/etc/yum.repos.d'

    @property
    def repo_file_name(self) -> str:
        return f'{LOCAL_REPO_NAME}.repo'

    @property
    def repo_mount_is_directory(self) -> bool:
        return True

    def repo_file_lines(self) -> List[str]:
        return [
            f"[{LOCAL_REPO_NAME}]",
            f"name={LOCAL_REPO_NAME}",
            f"baseurl={LOCAL_REPO_URL}",
            "enabled=1",
            "gpgcheck=0",
        ]

    def install_cmd(self, pinned: Sequence[str], isolated: bool) -> str:
        return "yum install --setopt=skip_missing_names_on_install=False -y " + ' '.join(pinned)

    def wrap_install(self, command: str, isolated: bool) -> List[str]:
        if isolated:
            return [
                f"cd {PACKAGES_MOUNT}/",
                "tar -xf __META__repodata*",
                command,
                "yum clean all",
                "rm -rf /var/cache/yum /tmp/* /var/tmp/*",
            ]
        return [command]

    def format_pin(self, pin) -> str:
        return f"{pin.name}-{pin.version}-{pin.release}.{pin.architecture}"

    def package_arch(self, architecture: Architecture) -> str:
        return architecture.value

    def index_query(self, packages: Sequence[str]) -> str:
        quoted = ' '.join(shlex.quote(p) for p in packages)
        return f"yum -q info {quoted}"

    def parse_index(self, output: str, architecture: Architecture) -> List[IndexEntry]:
        entries: Dict[Tuple[str, str], IndexEntry] = {}
        fields: Dict[str, str] = {}

        def flush():
            if {'Name', 'Version', 'Release'} <= fields.keys():
                arch = fields.get('Architecture') or fields.get('Arch', '')
                if self.accepts_arch(arch, architecture):
                    # installed packages are listed before available ones; the last one wins
                    entries[(fields['Name'], arch)] = (fields['Name'], fields['Version'], fields['Release'], arch)

        for line in output.splitlines():
            if ':' not in line:
                continue
            key, value = line.split(':', 1)
            key = key.strip()
            if key == 'Name':
                flush()
                fields = {}
            fields[key] = value.strip()
        flush()
        return list(entries.values())


class ApkManager(PackageManager):
    @property
    def name(self) -> str:
        return 'apk'

    @property
    def repo_mount_target(self) -> str:
        return '/etc/apk/repositories'

    @property
    def repo_file_name(self) -> str:
        return 'repositories'

    def repo_file_lines(self) -> List[str]:
        return [PACKAGES_MOUNT]

    def install_cmd(self, pinned: Sequence[str], isolated: bool) -> str:
        flags = "--allow-untrusted " if isolated else ""
        return f"apk add {flags}" + ' '.join(pinned)

    def wrap_install(self, command: str, isolated: bool) -> List[str]:
        if isolated:
            return [
                f"cd {PACKAGES_MOUNT}/",
                "cp __META__APKINDEX* APKINDEX.tar.gz",
                command,
                "rm -rf /var/cache/apk/* /tmp/* /var/tmp/*",
            ]
        return ["apk update", command]

    def format_pin(self, pin) -> str:
        release = f"-{pin.release}" if pin.release else ""
        return f"{pin.name}={pin.version}{release}"

    def package_arch(self, architecture: Architecture) -> str:
        return architecture.value

    def index_query(self, packages: Sequence[str]) -> str:
        quoted = ' '.join(shlex.quote(p) for p in packages)
        return f"apk update -q >/dev/null && apk search -x -v {quoted}"

    def parse_index(self, output: str, architecture: Architecture) -> List[IndexEntry]:
        entries: List[IndexEntry] = []
        for line in output.splitlines():
            token = line.split(' ', 1)[0].strip()
            parts = token.rsplit('-', 2)
            if len(parts) != 3 or not parts[2].startswith('r'):
                continue
            name, version, release = parts
            entries.append((name, version, release, self.package_arch(architecture)))
        return entries


PM_REGISTRY: Dict[str, PackageManager] = {
    'apt': AptManager(),
    'yum': YumManager(),
    'apk': ApkManager(),
}

_DISTRIBUTION_FAMILY: Dict[OSDistribution, str] = {
    OSDistribution.UBUNTU: 'apt',
    OSDistribution.DEBIAN: 'apt',
    OSDistribution.CENTOS: 'yum',
    OSDistribution.ALPINE: 'apk',
}


def policy_for(distribution: OSDistribution) -> PackageManager:
    family: Optional[str] = _DISTRIBUTION_FAMILY.get(distribution)
    if family is None:
        raise ConfigurationError(f"No package manager policy for distribution {distribution}")
    return PM_REGISTRY[family]
