"""Collect build information from an existing Dockerfile."""

import shlex
from dataclasses import dataclass, field
from pathlib import Path

from dockerfile_parse import DockerfileParser

from builder.errors import DockerfileNotFoundError, MultistageDockerfileError

# ARG defaults that seed configuration values
RECOGNIZED_ARGS = {
    "BUILD_FROM": "base_image_template",
    "BUILD_NAME": "name",
    "BUILD_DESCRIPTION": "description",
    "BUILD_URL": "url",
    "BUILD_GIT_URL": "git_url",
    "BUILD_VENDOR": "vendor",
    "BUILD_DOC_URL": "doc_url",
    "BUILD_MAINTAINER": "maintainer",
    "BUILD_TYPE": "build_type",
}

# Labels that seed configuration values
RECOGNIZED_LABELS = {
    "org.label-schema.name": "name",
    "org.label-schema.description": "description",
    "org.label-schema.url": "url",
    "org.label-schema.vcs-url": "git_url",
    "org.label-schema.vendor": "vendor",
    "org.label-schema.usage": "doc_url",
    "maintainer": "maintainer",
}


@dataclass(frozen=True)
class DockerfileInventory:
    """What an existing Dockerfile already declares"""
    content: str
    args: frozenset[str]
    labels: frozenset[str]
    values: dict[str, str] = field(default_factory=dict)
    from_count: int = 1

    def has_arg(self, name: str) -> bool:
        return name in self.args

    def has_label(self, key: str) -> bool:
        return key in self.labels


def parse_arg_value(value: str) -> list[tuple[str, str]]:
    """Split the value of an ARG instruction into (name, default) pairs.

    Examples:
        'BUILD_FROM' -> [('BUILD_FROM', '')]
        'BUILD_NAME="My add-on"' -> [('BUILD_NAME', 'My add-on')]
        'A=1 B=2' -> [('A', '1'), ('B', '2')]
    """
    try:
        tokens = shlex.split(value)
    except ValueError:
        tokens = value.split()

    pairs = []
    for token in tokens:
        name, _, default = token.partition("=")
        pairs.append((name, default))
    return pairs


def read_dockerfile(target: Path) -> DockerfileInventory:
    """Read the Dockerfile in the build target.

    Raises:
        DockerfileNotFoundError: There is no Dockerfile in the target
        MultistageDockerfileError: The Dockerfile has more than one FROM
    """
    dockerfile_path = target / "Dockerfile"
    if not dockerfile_path.is_file():
        raise DockerfileNotFoundError(f"Dockerfile not found in {target}")

    print("Collecting information from Dockerfile")

    parser = DockerfileParser(str(dockerfile_path), env_replace=False)
    structure = parser.structure

    from_count = sum(1 for instr in structure if instr["instruction"] == "FROM")
    if from_count > 1:
        raise MultistageDockerfileError("The Dockerfile seems to be multistage!")

    args = set()
    values: dict[str, str] = {}

    # ARG defaults first, then MAINTAINER, then labels; first found wins
    for instr in structure:
        if instr["instruction"] != "ARG":
            continue
        for name, default in parse_arg_value(instr["value"]):
            args.add(name)
            field_name = RECOGNIZED_ARGS.get(name)
            if field_name and default and field_name not in values:
                values[field_name] = default

    for instr in structure:
        if instr["instruction"] == "MAINTAINER" and instr["value"]:
            values.setdefault("maintainer", instr["value"].strip())
            break

    labels = parser.labels
    for key, value in labels.items():
        field_name = RECOGNIZED_LABELS.get(key)
        if field_name and value and field_name not in values:
            values[field_name] = value

    return DockerfileInventory(
        content=dockerfile_path.read_text(),
        args=frozenset(args),
        labels=frozenset(labels),
        values=values,
        from_count=from_count,
    )
