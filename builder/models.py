import sys
from dataclasses import dataclass, field
from pathlib import Path

from builder.config import ManifestConfig
from builder.dockerfile import DockerfileInventory
from builder.errors import (
    InvalidBuildTypeError,
    MissingBaseImageError,
    MissingImageNameError,
    MissingVersionError,
    NoArchitecturesError,
    UnsupportedArchitectureError,
)
from builder.git import GitInfo
from builder.merger import Merger

ARCHITECTURES = ("aarch64", "amd64", "armhf", "i386")
BUILD_TYPES = ("addon", "base", "cluster", "homeassistant", "supervisor")
ARCH_PLACEHOLDER = "{arch}"

# Optional metadata and the notice printed when it is missing
METADATA_NOTICES = {
    "name": "Name not set!",
    "description": "Description is not set!",
    "vendor": "Vendor not set!",
    "maintainer": "Maintainer information is not set!",
    "url": "URL is not set!",
    "doc_url": "Documentation url is not set!",
}


@dataclass
class CliOptions:
    """Command line flags; None means the flag was not given"""
    target: Path = Path(".")
    repository: str | None = None
    branch: str = "master"
    architectures: list[str] = field(default_factory=list)
    build_all: bool = False
    base_image_overrides: dict[str, str] = field(default_factory=dict)
    base_image_template: str | None = None
    output_image_template: str | None = None
    version: str | None = None
    tag_latest: bool = False
    tag_test: bool = False
    push: bool = False
    args: dict[str, str] = field(default_factory=dict)
    cache: bool | None = None
    squash: bool | None = None
    parallel: bool | None = None
    use_git: bool = False
    build_type: str | None = None
    name: str | None = None
    description: str | None = None
    vendor: str | None = None
    maintainer: str | None = None
    url: str | None = None
    doc_url: str | None = None
    git_url: str | None = None
    label_override: bool = False


@dataclass(frozen=True)
class BuildConfig:
    """Fully resolved and validated build configuration"""
    target: Path
    architectures: tuple[str, ...]
    supported_architectures: tuple[str, ...]
    base_image_template: str | None
    base_image_overrides: dict[str, str]
    output_image_template: str
    version: str
    build_ref: str = "Unknown"
    build_type: str = "addon"
    name: str = "Unknown"
    description: str = "No description provided"
    vendor: str = "Unknown"
    maintainer: str = "Unknown"
    url: str = ""
    doc_url: str = ""
    git_url: str = ""
    extra_build_args: dict[str, str] = field(default_factory=dict)
    cache_enabled: bool = True
    squash: bool = False
    parallel: bool = False
    push: bool = False
    tag_latest: bool = False
    tag_test: bool = False
    label_override: bool = False

    def base_image_for(self, arch: str) -> str | None:
        """Base image for an architecture, explicit overrides win over the template"""
        if self.base_image_overrides.get(arch):
            return self.base_image_overrides[arch]
        if self.base_image_template:
            return self.base_image_template.replace(ARCH_PLACEHOLDER, arch)
        return None

    def image_for(self, arch: str) -> str:
        """Output image repository for an architecture"""
        return self.output_image_template.replace(ARCH_PLACEHOLDER, arch)


class ConfigResolver:
    """Merges all configuration sources into a validated BuildConfig"""

    def __init__(self, project_defaults: dict | None = None, project_flags: dict | None = None):
        """
        Args:
            project_defaults: Metadata defaults from the project configuration,
                keyed by BuildConfig field
            project_flags: parallel/cache/squash from the project configuration
        """
        self.project_defaults = project_defaults or {}
        self.project_flags = project_flags or {}

    def resolve(
        self,
        options: CliOptions,
        inventory: DockerfileInventory,
        manifest: ManifestConfig,
        git: GitInfo,
    ) -> BuildConfig:
        """
        Resolve one BuildConfig from all sources.

        Precedence, highest first: command line, Git version and tags (only
        with --git), Dockerfile, manifest, Git, project defaults, built-ins.

        Raises:
            NoArchitecturesError, MissingVersionError, UnsupportedArchitectureError,
            MissingImageNameError, InvalidBuildTypeError, MissingBaseImageError
        """
        print("Resolving build configuration")

        merged = Merger.merge(
            self.project_defaults,
            self.project_flags,
            self._git_layer(git),
            self._manifest_layer(manifest),
            dict(inventory.values),
            self._git_version_layer(git) if options.use_git else None,
            self._cli_layer(options),
        )

        supported = tuple(merged.get("supported_architectures") or ARCHITECTURES)
        if options.build_all:
            architectures = tuple(arch for arch in ARCHITECTURES if arch in supported)
        else:
            architectures = tuple(dict.fromkeys(options.architectures))

        self._validate(merged, options, architectures, supported)

        for key, message in METADATA_NOTICES.items():
            if Merger.is_unset(merged.get(key)):
                print(f"Warning: {message}", file=sys.stderr)

        print("Filling in configuration gaps with defaults")

        squash = bool(merged.get("squash", False))
        cache_enabled = bool(merged.get("cache", True))
        if squash and cache_enabled:
            print("Warning: Disabled Docker cache, since squashing is enabled.", file=sys.stderr)
            cache_enabled = False

        url = merged.get("url") or (options.repository or "")

        return BuildConfig(
            target=options.target,
            architectures=architectures,
            supported_architectures=supported,
            base_image_template=merged.get("base_image_template"),
            base_image_overrides=dict(merged.get("base_image_overrides", {})),
            output_image_template=merged["output_image_template"],
            version=merged["version"],
            build_ref=merged.get("build_ref", "Unknown"),
            build_type=merged.get("build_type", "addon"),
            name=merged.get("name", "Unknown"),
            description=merged.get("description", "No description provided"),
            vendor=merged.get("vendor", "Unknown"),
            maintainer=merged.get("maintainer", "Unknown"),
            url=url,
            doc_url=merged.get("doc_url") or url,
            git_url=merged.get("git_url") or url,
            extra_build_args=dict(merged.get("extra_build_args", {})),
            cache_enabled=cache_enabled,
            squash=squash,
            parallel=bool(merged.get("parallel", False)),
            push=options.push,
            tag_latest=bool(merged.get("tag_latest", False)),
            tag_test=bool(merged.get("tag_test", False)),
            label_override=options.label_override,
        )

    @staticmethod
    def _validate(merged: dict, options: CliOptions, architectures: tuple, supported: tuple) -> None:
        if not architectures and not options.build_all:
            raise NoArchitecturesError("No architectures to build")

        if Merger.is_unset(merged.get("version")):
            raise MissingVersionError("No version found and specified. Please use --version")

        if not options.build_all:
            for arch in architectures:
                if arch not in supported:
                    raise UnsupportedArchitectureError(
                        f"Requested to build for {arch}, but it seems like it is not supported"
                    )

        if not architectures:
            raise NoArchitecturesError("None of the supported architectures can be built")

        if Merger.is_unset(merged.get("output_image_template")):
            raise MissingImageNameError("Missing build image name")

        build_type = merged.get("build_type")
        if build_type and build_type not in BUILD_TYPES:
            raise InvalidBuildTypeError(f"{build_type} is not a valid type.")

        if not merged.get("base_image_template"):
            overrides = merged.get("base_image_overrides", {})
            for arch in architectures:
                if not overrides.get(arch):
                    raise MissingBaseImageError(f"Architecture {arch} is missing an image to build from")

    @staticmethod
    def _git_layer(git: GitInfo) -> dict:
        return {
            "build_ref": git.ref,
            "url": git.remote_url,
            "git_url": git.remote_url,
        }

    @staticmethod
    def _git_version_layer(git: GitInfo) -> dict:
        return {
            "version": git.version,
            "tag_latest": git.tag_latest or None,
            "tag_test": git.tag_test or None,
        }

    @staticmethod
    def _manifest_layer(manifest: ManifestConfig) -> dict:
        return {
            "version": manifest.version,
            "output_image_template": manifest.image,
            "supported_architectures": list(manifest.arch) or None,
            "base_image_overrides": dict(manifest.build_from),
            "squash": manifest.squash,
            "extra_build_args": dict(manifest.args),
        }

    @staticmethod
    def _cli_layer(options: CliOptions) -> dict:
        # Boolean switches that were not given must not hide lower layers
        return {
            "base_image_template": options.base_image_template,
            "base_image_overrides": dict(options.base_image_overrides),
            "output_image_template": options.output_image_template,
            "version": options.version,
            "tag_latest": options.tag_latest or None,
            "tag_test": options.tag_test or None,
            "extra_build_args": dict(options.args),
            "cache": options.cache,
            "squash": options.squash,
            "parallel": options.parallel,
            "build_type": options.build_type,
            "name": options.name,
            "description": options.description,
            "vendor": options.vendor,
            "maintainer": options.maintainer,
            "url": options.url,
            "doc_url": options.doc_url,
            "git_url": options.git_url,
        }
