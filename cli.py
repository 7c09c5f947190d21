#!/usr/bin/env python3

import argparse
import dataclasses
import json
import sys
import os
import logging
from typing import Dict, Mapping, Optional

import yaml

from config import BackendKind, Settings
from build_orchestrator import BuildOrchestrator
from declaration_parser import DeclarationParser
from errors import ImageBuildSystemError

ENV_MAPPING = {
    'IMGBUILD_ENGINE': 'engine',
    'IMGBUILD_WORK_ROOT': 'work_root',
    'IMGBUILD_ARCH': 'architecture',
    'IMGBUILD_EPHEMERAL_MOUNT': 'ephemeral_mount',
    'IMGBUILD_UNSAFE_USE_ENGINE_CACHE': 'use_engine_cache',
    'IMGBUILD_PULL_ATTEMPTS': 'pull_max_attempts',
    'IMGBUILD_CACHE_FILE': 'cache_file',
}


def _coerce(settings: Settings, attr: str, value):
    current = getattr(settings, attr)
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def load_settings(config_path: str = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from a JSON/YAML file, then override with IMGBUILD_* environment variables"""
    settings = Settings()
    environ = os.environ if environ is None else environ
    fields = {f.name for f in dataclasses.fields(Settings)}

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                if config_path.endswith('.json'):
                    config_data = json.load(f)
                else:
                    config_data = yaml.safe_load(f) or {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            logging.warning(f"Failed to load settings from {config_path}: {e}")
            config_data = {}

        for key, value in config_data.items():
            if key in fields and key != 'extra':
                setattr(settings, key, _coerce(settings, key, value))
            else:
                settings.extra[key] = value
    elif config_path:
        logging.warning(f"Settings file {config_path} not found, using defaults")

    for env_var, attr in ENV_MAPPING.items():
        if env_var in environ:
            setattr(settings, attr, _coerce(settings, attr, environ[env_var]))

    if settings.use_engine_cache:
        logging.warning("Unsafe: the engine layer cache is enabled, builds may not reflect ephemeral inputs")
    return settings


def _load_declaration(path: str):
    return DeclarationParser().parse_file(path)


def cmd_build(args):
    """Build command handler"""
    print(f"🚀 Starting image build")
    print(f"   Configuration: {args.config}")
    print(f"   Backend: {args.backend}")
    print(f"   Force rebuild: {args.force_rebuild}")

    settings = load_settings(args.settings)
    declaration = _load_declaration(args.config)
    orchestrator = BuildOrchestrator(settings)
    results = orchestrator.build_projects(
        declaration,
        backend=BackendKind(args.backend),
        force_rebuild=args.force_rebuild,
        workers=args.workers,
    )
    print(f"\n🎉 Build completed successfully!")
    for project_id, result in results.items():
        location = f" -> {result.archive}" if result.archive else ""
        print(f"   {project_id}: {result.tag} {result.image_id}{location}")
    return 0


def cmd_lockfile(args):
    """Resolve package pins for every project and write their lockfiles"""
    settings = load_settings(args.settings)
    declaration = _load_declaration(args.config)
    BuildOrchestrator(settings).generate_lockfiles(declaration)
    return 0


def cmd_pull(args):
    settings = load_settings(args.settings)
    orchestrator = BuildOrchestrator(settings)
    orchestrator.daemon.pull(args.reference, settings.resolved_architecture())
    return 0


def cmd_clean(args):
    """Clean command handler"""
    settings = load_settings(args.settings)
    declaration = _load_declaration(args.config)
    output = BuildOrchestrator(settings).clean_projects(declaration)
    for project_id, stderr in output.items():
        if stderr.strip():
            logging.info(f"{project_id}: {stderr.strip()}")
    return 0


EXAMPLE_DECLARATION: Dict = {
    "projects": [
        {
            "id": "base",
            "tag": "example/base:latest",
            "distribution": "ubuntu",
            "lockfile": "packages.lock.yaml",
            "instructions": [
                {"from": "ubuntu:20.04"},
                {"install": ["curl", "ca-certificates"]},
                {"create_user": {"username": "app", "uid": 1000, "group": "app", "gid": 1000}},
                {"user": "app"},
            ],
        },
        {
            "id": "app",
            "tag": "example/app:latest",
            "distribution": "ubuntu",
            "instructions": [
                {"from_project": "base"},
                {"copy": {"source": "app", "owner": "1000:1000"}},
                {"env": {"APP_HOME": "/app"}},
                {"healthcheck": {"cmd": "curl -f http://localhost:8080/ || exit 1", "interval": "30s", "retries": 3}},
            ],
        },
    ]
}


def cmd_init(args):
    """Initialize command handler - create example declaration"""
    config_file = args.output or "build-config.yaml"
    with open(config_file, 'w') as f:
        if config_file.endswith('.json'):
            json.dump(EXAMPLE_DECLARATION, f, indent=2)
        else:
            yaml.safe_dump(EXAMPLE_DECLARATION, f, sort_keys=False)
    print(f"Example configuration created: {config_file}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reproducible container image builds from declarative instructions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s lockfile -c build-config.yaml
  %(prog)s build -c build-config.yaml
  %(prog)s build -c build-config.yaml --backend direct
  %(prog)s clean -c build-config.yaml
  %(prog)s init --output build-config.yaml
        """
    )

    parser.add_argument('--settings', help='Path to settings file (JSON/YAML)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    build = subparsers.add_parser('build', help='Build the declared images')
    build.add_argument('-c', '--config', required=True, help='Path to declaration file (JSON/YAML)')
    build.add_argument('--backend', choices=[k.value for k in BackendKind], default=BackendKind.DAEMON.value,
                       help='daemon: Dockerfile + docker build; direct: assemble layers without a daemon build')
    build.add_argument('--force-rebuild', action='store_true', help='Ignore the build-result cache')
    build.add_argument('--workers', type=int, default=1, help='Projects built concurrently within a wave')
    build.set_defaults(func=cmd_build)

    lock = subparsers.add_parser('lockfile', help='Resolve and write package pins')
    lock.add_argument('-c', '--config', required=True, help='Path to declaration file (JSON/YAML)')
    lock.set_defaults(func=cmd_lockfile)

    pull = subparsers.add_parser('pull', help='Pull an image with retries')
    pull.add_argument('reference', help='Image reference, e.g. ubuntu:20.04')
    pull.set_defaults(func=cmd_pull)

    clean = subparsers.add_parser('clean', help='Remove the images built for a declaration')
    clean.add_argument('-c', '--config', required=True, help='Path to declaration file (JSON/YAML)')
    clean.set_defaults(func=cmd_clean)

    init = subparsers.add_parser('init', help='Create example declaration')
    init.add_argument('--output', '-o', help='Output file path (default: build-config.yaml)')
    init.set_defaults(func=cmd_init)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1
    except ImageBuildSystemError as e:
        print(f"\n💥 {e}")
        return 1
    except Exception as e:
        logging.debug("Unexpected failure", exc_info=True)
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
