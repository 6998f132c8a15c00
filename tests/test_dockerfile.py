import pytest

from builder.dockerfile import parse_arg_value, read_dockerfile
from builder.errors import DockerfileNotFoundError, MultistageDockerfileError

ADDON_DOCKERFILE = """\
ARG BUILD_FROM=ghcr.io/hassio-addons/base/amd64:14.0.0
# hadolint ignore=DL3006
FROM ${BUILD_FROM}

ARG BUILD_NAME="SSH & Web Terminal"
ARG BUILD_ARCH
ARG TEMPIO_VERSION=2021.09.0

RUN apk add --no-cache openssh

LABEL \\
    org.label-schema.description="SSH access to your host" \\
    org.label-schema.name="Ignored, the ARG wins" \\
    io.hass.type="addon"
"""


def test_missing_dockerfile(tmp_path):
    with pytest.raises(DockerfileNotFoundError):
        read_dockerfile(tmp_path)


def test_multistage_dockerfile(tmp_path):
    """Two FROM lines are always rejected"""
    (tmp_path / "Dockerfile").write_text(
        "FROM golang:1.21 AS build\nRUN go build\n\nFROM alpine:3.18\nCOPY --from=build /app /app\n"
    )

    with pytest.raises(MultistageDockerfileError):
        read_dockerfile(tmp_path)


def test_inventory_records_args_and_labels(tmp_path):
    (tmp_path / "Dockerfile").write_text(ADDON_DOCKERFILE)

    inventory = read_dockerfile(tmp_path)

    assert inventory.args == {"BUILD_FROM", "BUILD_NAME", "BUILD_ARCH", "TEMPIO_VERSION"}
    assert inventory.has_label("io.hass.type")
    assert inventory.has_label("org.label-schema.description")
    assert not inventory.has_label("maintainer")
    assert inventory.from_count == 1
    assert inventory.content == ADDON_DOCKERFILE


def test_recognized_values(tmp_path):
    """ARG defaults win over labels"""
    (tmp_path / "Dockerfile").write_text(ADDON_DOCKERFILE)

    values = read_dockerfile(tmp_path).values

    assert values["base_image_template"] == "ghcr.io/hassio-addons/base/amd64:14.0.0"
    assert values["name"] == "SSH & Web Terminal"
    assert values["description"] == "SSH access to your host"
    # ARGs without default do not supply a value
    assert "TEMPIO_VERSION" not in values


def test_maintainer_instruction(tmp_path):
    (tmp_path / "Dockerfile").write_text(
        'FROM alpine:3.18\nMAINTAINER Jane Doe <jane@example.com>\nLABEL maintainer="Someone Else"\n'
    )

    values = read_dockerfile(tmp_path).values
    assert values["maintainer"] == "Jane Doe <jane@example.com>"


def test_maintainer_label(tmp_path):
    (tmp_path / "Dockerfile").write_text('FROM alpine:3.18\nLABEL maintainer="Jane Doe <jane@example.com>"\n')

    inventory = read_dockerfile(tmp_path)
    assert inventory.values["maintainer"] == "Jane Doe <jane@example.com>"
    assert inventory.has_label("maintainer")


def test_parse_arg_value():
    assert parse_arg_value("BUILD_FROM") == [("BUILD_FROM", "")]
    assert parse_arg_value('BUILD_NAME="My add-on"') == [("BUILD_NAME", "My add-on")]
    assert parse_arg_value("A=1 B=2") == [("A", "1"), ("B", "2")]
