"""Command line interface of the add-on builder."""

import signal
import sys
from pathlib import Path

from builder.building import BuildOrchestrator
from builder.config import (
    get_crosscompile_mode,
    get_defaults,
    get_dirty_policy,
    get_docker_timeout,
    get_flag,
    read_manifest,
)
from builder.dockerfile import read_dockerfile
from builder.environment import BuildEnvironment
from builder.errors import EX_INTERRUPTED, EX_OK, EX_UNKNOWN, BuildError, Interrupted, UsageError
from builder.git import clone_repository, read_git_info
from builder.models import ARCHITECTURES, CliOptions, ConfigResolver
from builder.rendering import augment_dockerfile

# Flags taking a value, mapped to the CliOptions field they set
VALUE_FLAGS = {
    "-t": "target",
    "--target": "target",
    "-r": "repository",
    "--repository": "repository",
    "-b": "branch",
    "--branch": "branch",
    "-f": "base_image_template",
    "--from": "base_image_template",
    "-i": "output_image_template",
    "--image": "output_image_template",
    "-v": "version",
    "--version": "version",
    "--type": "build_type",
    "-n": "name",
    "--name": "name",
    "-d": "description",
    "--description": "description",
    "--vendor": "vendor",
    "-m": "maintainer",
    "--maintainer": "maintainer",
    "--author": "maintainer",
    "-u": "url",
    "--url": "url",
    "--doc-url": "doc_url",
    "--git-url": "git_url",
}

# Switches, mapped to the CliOptions field and the value they set
SWITCHES = {
    "-a": ("build_all", True),
    "--all": ("build_all", True),
    "-l": ("tag_latest", True),
    "--tag-latest": ("tag_latest", True),
    "--tag-test": ("tag_test", True),
    "-p": ("push", True),
    "--push": ("push", True),
    "-c": ("cache", False),
    "--no-cache": ("cache", False),
    "--squash": ("squash", True),
    "--no-squash": ("squash", False),
    "--parallel": ("parallel", True),
    "--single": ("parallel", False),
    "-g": ("use_git", True),
    "--git": ("use_git", True),
    "-o": ("label_override", True),
    "--override": ("label_override", True),
}


def print_usage() -> None:
    """Print usage information."""
    print("Usage: addon-builder [options]")
    print()
    print("Options:")
    print("  -h, --help                 Display this help and exit")
    print("  -t, --target DIR           Directory containing the Dockerfile (default: .)")
    print("  -r, --repository URL       Build using a remote repository")
    print("  -b, --branch NAME          Branch of the remote repository (default: master)")
    print()
    print("Architectures:")
    print("  --aarch64 --amd64 --armhf --i386")
    print("                             Build for the given architecture(s)")
    print("  -a, --all                  Build all architectures the add-on supports")
    print()
    print("Images:")
    print("  -f, --from IMAGE           Base image, {arch} is replaced by the architecture")
    print("  --aarch64-from IMAGE, --amd64-from IMAGE, --armhf-from IMAGE, --i386-from IMAGE")
    print("                             Base image for one architecture, overrides --from")
    print("  -i, --image IMAGE          Image name, {arch} is replaced by the architecture")
    print("  -v, --version VERSION      Version tag of the image")
    print("  -l, --tag-latest           Also tag the image as latest")
    print("  --tag-test                 Also tag the image as test")
    print("  -p, --push                 Push the images after building")
    print()
    print("Build:")
    print("  --arg KEY VALUE            Pass a build argument (repeatable)")
    print("  -c, --no-cache             Disable the build cache")
    print("  --squash, --no-squash      Squash the image layers (disables the cache)")
    print("  --parallel, --single       Build architectures in parallel or one at a time")
    print("  -g, --git                  Use Git for the version and latest/test tags")
    print("  --type TYPE                Build type: addon, base, cluster, homeassistant, supervisor")
    print()
    print("Labels:")
    print("  -n, --name NAME            Name of the add-on")
    print("  -d, --description TEXT     Description of the add-on")
    print("  --vendor VENDOR            Vendor of the add-on")
    print("  -m, --maintainer, --author MAINTAINER")
    print("                             Maintainer of the add-on")
    print("  -u, --url URL              Homepage URL")
    print("  --doc-url URL              Documentation URL")
    print("  --git-url URL              Source code URL")
    print("  -o, --override             Override labels already in the Dockerfile")
    print()
    print("Examples:")
    print("  addon-builder --all --image 'example/{arch}-addon' --git")
    print("  addon-builder --amd64 --armhf --from 'ghcr.io/hassio-addons/base/{arch}' --version 1.0.0")
    print("  addon-builder -r https://github.com/hassio-addons/addon-ssh -t ssh --all --parallel")


def parse_cli_arguments(args: list[str]) -> CliOptions | None:
    """Parse command line arguments.

    Returns:
        The parsed options, None when help was requested

    Raises:
        UsageError: Unknown argument or missing value
    """
    options = CliOptions()

    i = 0
    while i < len(args):
        arg = args[i]

        if arg in ("-h", "--help"):
            return None
        elif arg in SWITCHES:
            name, value = SWITCHES[arg]
            setattr(options, name, value)
            i += 1
        elif arg.startswith("--") and arg[2:] in ARCHITECTURES:
            options.architectures.append(arg[2:])
            i += 1
        elif arg.startswith("--") and arg.endswith("-from") and arg[2:-5] in ARCHITECTURES:
            options.base_image_overrides[arg[2:-5]] = _value(args, i)
            i += 2
        elif arg == "--arg":
            if i + 2 >= len(args):
                raise UsageError("--arg requires a key and a value")
            options.args[args[i + 1]] = args[i + 2]
            i += 3
        elif arg in VALUE_FLAGS:
            value = _value(args, i)
            if VALUE_FLAGS[arg] == "target":
                options.target = Path(value)
            else:
                setattr(options, VALUE_FLAGS[arg], value)
            i += 2
        else:
            raise UsageError(f"Unknown argument: {arg}")

    return options


def _value(args: list[str], i: int) -> str:
    if i + 1 >= len(args):
        raise UsageError(f"{args[i]} requires a value")
    return args[i + 1]


def build(options: CliOptions) -> None:
    """Gather information, resolve the configuration and build all architectures."""
    if options.repository:
        clone_repository(options.repository, options.branch, Path.cwd())

    inventory = read_dockerfile(options.target)
    manifest = read_manifest(options.target)

    policy, dirty_version = get_dirty_policy()
    git = read_git_info(options.target, options.use_git, policy, dirty_version)

    resolver = ConfigResolver(
        project_defaults=get_defaults(),
        project_flags={name: get_flag(name) for name in ("parallel", "cache", "squash")},
    )
    config = resolver.resolve(options, inventory, manifest, git)
    dockerfile = augment_dockerfile(config, inventory)

    with BuildEnvironment(config.architectures, get_crosscompile_mode(), get_docker_timeout()):
        BuildOrchestrator(config, dockerfile, inventory).run()


def run(args: list[str]) -> int:
    """Run the builder, returning the process exit code."""
    try:
        options = parse_cli_arguments(args)
        if options is None:
            print_usage()
            return EX_OK
        build(options)
    except UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        print_usage()
        return e.exit_code
    except BuildError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("Error: Interrupted", file=sys.stderr)
        return EX_INTERRUPTED
    except (RuntimeError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EX_UNKNOWN

    return EX_OK


def _handle_sigterm(signum, frame):
    raise Interrupted("Terminated")


def main():
    signal.signal(signal.SIGTERM, _handle_sigterm)
    sys.exit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
