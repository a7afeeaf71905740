"""Manifest Renderer — substitutes the published artifact into a template.

Rendering is pure.  Templates are plain nested dict/list structures whose
strings may contain ``${field}`` placeholders.  The image is always
substituted by digest (``repository@sha256:...``) so the deployed workload
is pinned to the exact build.

A string that consists of a single placeholder takes the field's native
type, so ``replicas: ${replicas}`` renders as an integer.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from shipyard.core.errors import TemplateError
from shipyard.models.artifacts import Artifact
from shipyard.models.deployment import Manifest

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def load_template(path: Path) -> dict[str, Any]:
    """Load a YAML (or JSON) manifest template from *path*."""
    try:
        with Path(path).open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise TemplateError(f"Cannot load manifest template {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TemplateError(f"Manifest template {path} must be a mapping")
    return data


class ManifestRenderer:
    """Renders manifests for one deployment name."""

    def __init__(self, deployment_name: str) -> None:
        self.deployment_name = deployment_name

    def render(
        self, template: dict[str, Any], artifact: Artifact, desired_replicas: int
    ) -> Manifest:
        """Render *template* for *artifact* at *desired_replicas*.

        Raises ``TemplateError`` if the artifact has no digest or the
        template references a field that is not supplied.
        """
        if not artifact.digest:
            raise TemplateError(
                f"{artifact.reference} has no digest; refusing to render a mutable tag"
            )
        fields: dict[str, Any] = {
            "image": artifact.pinned_reference,
            "repository": artifact.repository,
            "tag": artifact.tag,
            "digest": artifact.digest,
            "replicas": desired_replicas,
            "deployment_name": self.deployment_name,
            "source_ref": artifact.source_ref,
        }
        body = _substitute(template, fields, path="$")
        return Manifest(
            deployment_name=self.deployment_name,
            image=artifact.pinned_reference,
            replicas=desired_replicas,
            body=body,
        )


def _substitute(node: Any, fields: dict[str, Any], path: str) -> Any:
    if isinstance(node, dict):
        return {k: _substitute(v, fields, f"{path}.{k}") for k, v in node.items()}
    if isinstance(node, list):
        return [_substitute(v, fields, f"{path}[{i}]") for i, v in enumerate(node)]
    if not isinstance(node, str):
        return node

    whole = _PLACEHOLDER.fullmatch(node)
    if whole:
        return _lookup(whole.group(1), fields, path)
    return _PLACEHOLDER.sub(lambda m: str(_lookup(m.group(1), fields, path)), node)


def _lookup(name: str, fields: dict[str, Any], path: str) -> Any:
    if name not in fields:
        raise TemplateError(
            f"Template field ${{{name}}} at {path} is not supplied. "
            f"Available: {sorted(fields)}"
        )
    return fields[name]
