from jinja2 import Environment

from builder.dockerfile import DockerfileInventory
from builder.models import BuildConfig

# Appended after the Dockerfile text
APPEND_TEMPLATE = """\
{% for arg in args %}ARG {{ arg }}
{% endfor %}{% if labels %}LABEL {% for key, value in labels %}{{ key }}={{ value }}{% if not loop.last %} \\
    {% endif %}{% endfor %}
{% endif %}"""

# Labels referencing build args, value is resolved by docker build
BUILD_TIME_LABELS = {
    "org.label-schema.build-date": "BUILD_DATE",
    "io.hass.arch": "BUILD_ARCH",
}


def quote(value: str) -> str:
    """Double quote a literal label value, escaping backslashes and quotes"""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def metadata_labels(config: BuildConfig) -> list[tuple[str, str | None]]:
    """All metadata labels in their fixed order.

    Literal values are returned as is, labels resolved at build time
    (see BUILD_TIME_LABELS) have None as value.
    """
    return [
        ("org.label-schema.schema-version", "1.0"),
        ("org.label-schema.build-date", None),
        ("org.label-schema.name", config.name),
        ("org.label-schema.description", config.description),
        ("org.label-schema.url", config.url),
        ("org.label-schema.vcs-url", config.git_url),
        ("org.label-schema.vcs-ref", config.build_ref),
        ("org.label-schema.vendor", config.vendor),
        ("org.label-schema.usage", config.doc_url),
        ("maintainer", config.maintainer),
        ("io.hass.type", config.build_type),
        ("org.label-schema.version", config.version),
        ("io.hass.version", config.version),
        ("io.hass.arch", None),
    ]


def augment_dockerfile(config: BuildConfig, inventory: DockerfileInventory) -> str:
    """
    Add the metadata labels the Dockerfile does not declare yet.

    With label_override every metadata label is added, replacing labels
    the Dockerfile already has. Labels resolved at build time get their
    ARG declared first when it is missing.

    Returns:
        The augmented Dockerfile text
    """
    args = []
    labels = []

    for key, value in metadata_labels(config):
        if not config.label_override and inventory.has_label(key):
            continue

        if value is None:
            arg = BUILD_TIME_LABELS[key]
            if not inventory.has_arg(arg) and arg not in args:
                args.append(arg)
            labels.append((key, f'"${{{arg}}}"'))
        else:
            labels.append((key, quote(value)))

    content = inventory.content
    if content and not content.endswith("\n"):
        content += "\n"

    env = Environment(keep_trailing_newline=True)
    tpl = env.from_string(APPEND_TEMPLATE)

    return content + tpl.render(args=args, labels=labels)
