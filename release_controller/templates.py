import re
from typing import Dict, Optional

from release_controller.errors import TemplateError
from release_controller.models import (
    Archive,
    BuildSource,
    HTTPSource,
    OCISource,
    S3Source,
    SourceLocation,
    SourceTemplate,
    Version,
)


_PLACEHOLDER = re.compile(r"\{\{\s*(.*?)\s*\}\}")


def render(template: str, version_name: str) -> str:
    """Substitute ``{{.Version}}``; any other placeholder is an error."""
    for match in _PLACEHOLDER.finditer(template):
        if match.group(1) != ".Version":
            raise TemplateError(f"unsupported template placeholder {match.group(0)!r}")
    rendered = _PLACEHOLDER.sub(version_name, template)
    if "{{" in rendered or "}}" in rendered:
        raise TemplateError(f"unbalanced template braces in {template!r}")
    return rendered


def resolve_source(template: SourceTemplate, version_name: str) -> BuildSource:
    if template.type == "s3":
        if template.s3 is None:
            raise TemplateError("source template type s3 requires an s3 block")
        s3 = template.s3
        return BuildSource(
            location=SourceLocation(
                s3=S3Source(
                    bucket=s3.bucket,
                    key=render(s3.key_template, version_name),
                    region=s3.region,
                    endpoint=s3.endpoint,
                    credentials_secret_ref=s3.credentials_secret_ref,
                    use_path_style=s3.use_path_style,
                )
            ),
            archive=Archive(type=s3.archive_type),
        )
    if template.type == "http":
        if template.http is None:
            raise TemplateError("source template type http requires an http block")
        http = template.http
        return BuildSource(
            location=SourceLocation(
                http=HTTPSource(
                    url=render(http.url_template, version_name),
                    headers_secret_ref=http.headers_secret_ref,
                )
            ),
            archive=Archive(type=http.archive_type),
        )
    if template.oci is None:
        raise TemplateError("source template type oci requires an oci block")
    oci = template.oci
    tag = render(oci.tag_template, version_name)
    return BuildSource(
        location=SourceLocation(
            oci=OCISource(image=f"{oci.repository}:{tag}", credentials_secret_ref=oci.credentials_secret_ref)
        )
    )


def resolve_version(
    version_name: str,
    template: Optional[SourceTemplate],
    metadata: Optional[Dict[str, str]] = None,
) -> Version:
    source = resolve_source(template, version_name) if template is not None else None
    return Version(name=version_name, source=source, metadata=dict(metadata or {}))
