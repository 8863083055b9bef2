import pytest

from release_controller.errors import TemplateError
from release_controller.models import (
    HTTPSourceTemplate,
    OCISourceTemplate,
    S3SourceTemplate,
    SourceTemplate,
)
from release_controller.templates import render, resolve_source, resolve_version


def test_render_substitutes_version():
    assert render("builds/{{.Version}}/site-{{ .Version }}.zip", "1.2.3") == "builds/1.2.3/site-1.2.3.zip"


def test_render_rejects_unknown_placeholders():
    with pytest.raises(TemplateError):
        render("{{.Branch}}/{{.Version}}", "v1")


def test_render_rejects_unbalanced_braces():
    with pytest.raises(TemplateError):
        render("builds/{{.Version}", "v1")


def test_s3_template():
    template = SourceTemplate(
        type="s3",
        s3=S3SourceTemplate(bucket="releases", key_template="site/{{.Version}}.zip", archive_type="zip", region="eu-west-1"),
    )
    source = resolve_source(template, "v3")
    assert source.location.s3.bucket == "releases"
    assert source.location.s3.key == "site/v3.zip"
    assert source.location.s3.region == "eu-west-1"
    assert source.archive.type == "zip"


def test_http_template():
    template = SourceTemplate(type="http", http=HTTPSourceTemplate(url_template="https://cdn.example/{{.Version}}.tgz"))
    assert resolve_source(template, "v3").location.http.url == "https://cdn.example/v3.tgz"


def test_oci_template():
    template = SourceTemplate(type="oci", oci=OCISourceTemplate(repository="ghcr.io/acme/site", tag_template="{{.Version}}"))
    assert resolve_source(template, "v3").location.oci.image == "ghcr.io/acme/site:v3"


def test_template_type_without_block_is_an_error():
    with pytest.raises(TemplateError):
        resolve_source(SourceTemplate(type="http"), "v1")


def test_resolve_version_without_template_has_no_source():
    version = resolve_version("v1", None, {"branch": "main"})
    assert version.source is None
    assert version.metadata == {"branch": "main"}
