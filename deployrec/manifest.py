"""App manifest (``apps.json``) for the image build.

The manifest is a JSON list of ``{"url": ..., "branch": ...}`` entries. It is
validated here and handed to the image build as a base64 blob; the
reconciler itself never reads it.
"""

from __future__ import annotations

import base64
import json
import logging
import os

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import ManifestError

logger = logging.getLogger(__name__)

OUTPUT_NAME = "APPS_JSON_BASE64"


class AppEntry(BaseModel):
    url: str = Field(..., min_length=1, description="Git URL of the app")
    branch: str = Field(..., min_length=1, description="Branch or tag to install")


_apps = TypeAdapter(list[AppEntry])


def load_manifest(path: str) -> tuple[list[AppEntry], bytes]:
    if not os.path.isfile(path):
        raise ManifestError(f"{path} not found")
    with open(path, "rb") as fh:
        raw = fh.read()
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ManifestError(f"{path} is not valid JSON: {e}") from e
    try:
        apps = _apps.validate_python(data)
    except ValidationError as e:
        raise ManifestError(f"{path} is not a list of {{url, branch}} entries: {e}") from e
    return apps, raw


def encode_manifest(path: str) -> str:
    """Validate ``path`` and return its contents base64-encoded (single line)."""
    apps, raw = load_manifest(path)
    logger.info("%s lists %d app(s): %s", path, len(apps), ", ".join(a.url for a in apps))
    return base64.b64encode(raw).decode("ascii")


def write_github_output(value: str, output_path: str | None = None) -> bool:
    target = output_path or os.getenv("GITHUB_OUTPUT")
    if not target:
        return False
    with open(target, "a", encoding="utf-8") as fh:
        fh.write(f"{OUTPUT_NAME}={value}\n")
    return True
