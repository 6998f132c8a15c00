"""Configuration loading from .addon-builder.yml and add-on manifests."""

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic_yaml import parse_yaml_file_as
from ruamel.yaml.error import YAMLError as ManifestYAMLError

from builder.errors import ConfigurationError

_config_cache: dict | None = None

CONFIG_FILE = ".addon-builder.yml"
DEFAULT_DOCKER_TIMEOUT = 20
DEFAULT_DIRTY_VERSION = "dirty"
DIRTY_POLICIES = ("sentinel", "fallback", "strict")

# Manifest files in the order they are consulted, earlier files win
MANIFEST_FILES = [
    "config.json",
    "config.yaml",
    "config.yml",
    "build.json",
    "build.yaml",
    "build.yml",
]

# Keys of the 'defaults' section mapped to BuildConfig fields
DEFAULT_KEYS = {
    "from": "base_image_template",
    "image": "output_image_template",
    "vendor": "vendor",
    "maintainer": "maintainer",
    "url": "url",
    "doc_url": "doc_url",
    "type": "build_type",
}


ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def clear_config_cache() -> None:
    """Forget the cached project configuration."""
    global _config_cache
    _config_cache = None


def expand_env_vars(value: str | None) -> str | None:
    """Substitute ${VAR} references with environment values.

    A value referencing an unset variable counts as not configured and
    yields None, e.g. ghcr.io/${ORG}/{arch}-addon without ORG.
    """
    if not value:
        return value

    names = ENV_VAR_PATTERN.findall(value)
    if any(name not in os.environ for name in names):
        return None
    return ENV_VAR_PATTERN.sub(lambda match: os.environ[match.group(1)], value)


def _read_config(path: Path) -> dict:
    if not path.is_file():
        return {}

    try:
        content = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {CONFIG_FILE}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(f"{CONFIG_FILE} must contain a mapping")
    return content


def load_config() -> dict:
    """Project configuration from .addon-builder.yml in the working directory.

    Read once per process, a missing or empty file is an empty mapping.

    Raises:
        ConfigurationError: The file is not valid YAML or not a mapping
    """
    global _config_cache

    if _config_cache is None:
        _config_cache = _read_config(Path.cwd() / CONFIG_FILE)
    return _config_cache


def get_defaults() -> dict[str, str]:
    """Get project-wide metadata defaults, keyed by BuildConfig field.

    Configuration format in .addon-builder.yml:
        defaults:
          from: ghcr.io/hassio-addons/base/{arch}
          image: ghcr.io/${ORG}/{arch}-addon
          vendor: Community Add-ons
          maintainer: Jane Doe <jane@example.com>
    """
    section = load_config().get("defaults") or {}
    defaults = {}
    for key, field_name in DEFAULT_KEYS.items():
        value = expand_env_vars(section.get(key))
        if value:
            defaults[field_name] = value
    return defaults


def get_flag(name: str) -> bool | None:
    """Get a boolean build option (parallel, cache, squash), None if not configured."""
    value = load_config().get(name)
    if value is None:
        return None
    return bool(value)


def get_docker_timeout() -> int:
    """Seconds to wait for the Docker daemon to start or stop."""
    value = load_config().get("docker_timeout", DEFAULT_DOCKER_TIMEOUT)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"docker_timeout must be a number, got '{value}'")


def get_dirty_policy() -> tuple[str, str]:
    """Get (policy, sentinel version) used for dirty working trees with --git.

    Configuration format in .addon-builder.yml:
        dirty:
          policy: sentinel   # sentinel (default), fallback or strict
          version: dirty     # sentinel version, default: dirty
    """
    section = load_config().get("dirty") or {}
    policy = section.get("policy", "sentinel")
    if policy not in DIRTY_POLICIES:
        raise ConfigurationError(
            f"Unknown dirty policy '{policy}'. Supported: {', '.join(DIRTY_POLICIES)}"
        )
    version = expand_env_vars(section.get("version")) or DEFAULT_DIRTY_VERSION
    return policy, version


def get_crosscompile_mode() -> str:
    """Get cross compile mode: 'auto' (default), 'true' or 'false'."""
    value = load_config().get("crosscompile", "auto")
    if isinstance(value, bool):
        return "true" if value else "false"
    if value not in ("auto", "true", "false"):
        raise ConfigurationError(f"crosscompile must be auto, true or false, got '{value}'")
    return value


class ManifestConfig(BaseModel):
    """Build related subset of an add-on config.json / build.json"""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    version: str | None = None
    image: str | None = None
    arch: list[str] = []
    build_from: dict[str, str] = {}
    squash: bool | None = None
    args: dict[str, str] = {}


class ManifestLoader:
    """Loads and validates add-on manifest files"""

    @staticmethod
    def load(path: Path) -> ManifestConfig:
        """Load and validate a single manifest (JSON or YAML)"""
        try:
            if path.suffix == ".json":
                return ManifestConfig.model_validate_json(path.read_text())
            return parse_yaml_file_as(ManifestConfig, path)
        except (ValidationError, ManifestYAMLError) as e:
            raise ConfigurationError(f"Invalid manifest {path}: {e}") from e


def read_manifest(target: Path) -> ManifestConfig:
    """Collect build information from all manifests found in the build target.

    Earlier manifests win for scalar values and per key in mappings,
    supported architectures are combined in order.
    """
    merged = ManifestConfig()

    for filename in MANIFEST_FILES:
        path = target / filename
        if not path.is_file():
            continue

        print(f"Loading information from {path}")
        manifest = ManifestLoader.load(path)

        if merged.version is None:
            merged.version = manifest.version
        if merged.image is None:
            merged.image = manifest.image
        if merged.squash is None:
            merged.squash = manifest.squash
        for arch in manifest.arch:
            if arch not in merged.arch:
                merged.arch.append(arch)
        merged.build_from = {**manifest.build_from, **merged.build_from}
        merged.args = {**manifest.args, **merged.args}

    return merged
