"""Extract information from CustomResourceDefinition manifests."""
import logging
from typing import List, Tuple

from smithery.dtypes import (
    CRD_GROUP, CRD_RESOURCE, CRD_VERSION, ErrCode, Error, ResourceCoordinate,
    WidgetInfo,
)

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

# Location of all CRDs in the cluster.
CRD_COORDINATE = ResourceCoordinate(CRD_GROUP, CRD_VERSION, resource=CRD_RESOURCE)

# Every widget CRD is in this category (in addition to the widgets group).
WIDGETS_CATEGORY = "widgets"


def crd_name(resource: str, group: str) -> str:
    """Return the name of the CRD for `resource`, eg "buttons.widgets.io"."""
    return f"{resource}.{group}"


def openapi_schema(crd: dict, version: str) -> Tuple[dict, Error | None]:
    """Return the OpenAPI v3 schema of `version` in the `crd` manifest."""
    versions = (crd.get("spec", None) or {}).get("versions", None)
    if not isinstance(versions, list):
        return {}, Error(ErrCode.NOT_FOUND, "no versions found in CRD")

    for ver in versions:
        if not isinstance(ver, dict) or ver.get("name", None) != version:
            continue

        schema = (ver.get("schema", None) or {}).get("openAPIV3Schema", None)
        if not isinstance(schema, dict):
            msg = f"schema OpenAPI v3 not found for version: {version}"
            return {}, Error(ErrCode.NOT_FOUND, msg)
        return schema, None

    return {}, Error(ErrCode.NOT_FOUND, f"version [{version}] not found in CRD schema")


def is_widget(crd: dict, group: str) -> bool:
    """Return `True` if `crd` belongs to the widgets `group` or category."""
    spec = crd.get("spec", None)
    if not isinstance(spec, dict):
        return False

    names = spec.get("names", None)
    categories = names.get("categories", None) or [] if isinstance(names, dict) else []
    return spec.get("group", None) == group or WIDGETS_CATEGORY in categories


def widget_info(crd: dict) -> WidgetInfo | None:
    """Return the `WidgetInfo` for `crd` or `None` if `crd` is malformed."""
    name = (crd.get("metadata", None) or {}).get("name", "<unknown>")
    spec = crd.get("spec", None) or {}

    names = spec.get("names", None)
    if not isinstance(names, dict):
        logit.warning(f"spec.names not found in CRD <{name}>")
        return None

    plural, kind = names.get("plural", None), names.get("kind", None)
    if not isinstance(plural, str) or not isinstance(kind, str):
        logit.warning(f"spec.names.plural or spec.names.kind not found in CRD <{name}>")
        return None

    group = spec.get("group", None)
    if not isinstance(group, str):
        logit.warning(f"spec.group not found in CRD <{name}>")
        return None

    versions = spec.get("versions", None)
    if not isinstance(versions, list):
        logit.warning(f"spec.versions not found in CRD <{name}>")
        return None
    version_names = [
        _["name"] for _ in versions
        if isinstance(_, dict) and isinstance(_.get("name", None), str)
    ]

    return WidgetInfo(resource=plural, kind=kind, group=group, versions=version_names)


def list_widgets(crds: List[dict], group: str) -> List[WidgetInfo]:
    """Return the summary of all widget CRDs in `crds`.

    Malformed CRDs are logged and skipped.

    """
    out = []
    for crd in crds:
        if not isinstance(crd, dict) or not is_widget(crd, group):
            continue
        info = widget_info(crd)
        if info is not None:
            out.append(info)
    return out
