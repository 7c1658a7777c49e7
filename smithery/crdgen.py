"""Generate a CustomResourceDefinition from JSON schemas.

Kubernetes only accepts "structural" OpenAPI v3 schemas. This module converts
the JSON schemas for the `spec` and `status` of a custom resource into that
form and wraps them in a CRD manifest.

"""
import json
import logging
import re
from typing import Any, Dict, List, Tuple

import inflect

import smithery.yaml_io as yaml_io
from smithery.dtypes import (
    CRD_GROUP, CRD_KIND, CRD_VERSION, ErrCode, Error, GroupVersionKind,
)

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

_p = inflect.engine()

# JSON schema keywords that Kubernetes understands as-is.
PASSTHROUGH_KEYS = {
    "type", "format", "title", "description", "default", "enum", "example",
    "maximum", "minimum", "maxLength", "minLength", "pattern", "multipleOf",
    "maxItems", "minItems", "uniqueItems", "maxProperties", "minProperties",
    "nullable",
}

# Structural schemas may not be recursive. Stop following `$ref`s this deep.
MAX_DEPTH = 32

KIND_REGEX = re.compile(r"[A-Za-z][A-Za-z0-9]*")
VERSION_REGEX = re.compile(r"[a-z]([-a-z0-9]*[a-z0-9])?")


def plural(kind: str) -> str:
    """Return the plural resource name for `kind`, eg "Policy" -> "policies"."""
    return _p.plural(kind.lower())


def _resolve_ref(ref: str, root: dict) -> dict | None:
    """Return the local definition `ref` points to, eg "#/$defs/Foo"."""
    if not ref.startswith("#/"):
        return None

    node: Any = root
    for key in ref[2:].split("/"):
        key = key.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node if isinstance(node, dict) else None


def _convert_type(src: dict, out: dict) -> None:
    """Translate JSON schema `type` lists like ["string", "null"]."""
    if "type" not in src:
        return

    types = src["type"] if isinstance(src["type"], list) else [src["type"]]
    if "null" in types:
        out["nullable"] = True
    types = [_ for _ in types if _ != "null"]

    if len(types) == 1:
        out["type"] = types[0]
    elif set(types) == {"integer", "string"}:
        out["x-kubernetes-int-or-string"] = True
    elif len(types) > 1:
        out["x-kubernetes-preserve-unknown-fields"] = True


def to_structural(schema: dict, root: dict, depth: int = 0) -> dict:
    """Return `schema` as a structural OpenAPI v3 schema.

    Inputs:
        schema: dict
            JSON schema node to convert.
        root: dict
            The full JSON schema document to resolve local `$ref`s against.

    Returns:
        dict

    """
    if depth > MAX_DEPTH:
        logit.warning("Schema nesting too deep - preserving unknown fields")
        return {"type": "object", "x-kubernetes-preserve-unknown-fields": True}

    # Inline references. Keywords next to the `$ref` (eg a description)
    # take precedence over those of the definition.
    if "$ref" in schema:
        target = _resolve_ref(str(schema["$ref"]), root)
        if target is None:
            logit.warning(f"Cannot resolve {schema['$ref']} - preserving unknown fields")
            target = {"type": "object", "x-kubernetes-preserve-unknown-fields": True}
        schema = {**target, **{k: v for k, v in schema.items() if k != "$ref"}}
        depth += 1

    out: Dict[str, Any] = {k: v for k, v in schema.items() if k in PASSTHROUGH_KEYS}
    out.update({k: v for k, v in schema.items() if k.startswith("x-kubernetes-")})
    _convert_type(schema, out)

    if "const" in schema:
        out["enum"] = [schema["const"]]

    # JSON schema draft 6+ uses numbers, OpenAPI v3 uses booleans.
    for excl, bound in (("exclusiveMinimum", "minimum"), ("exclusiveMaximum", "maximum")):
        value = schema.get(excl, None)
        if isinstance(value, bool):
            out[excl] = value
        elif isinstance(value, (int, float)):
            out[bound] = value
            out[excl] = True

    if isinstance(schema.get("properties", None), dict):
        out["properties"] = {
            name: to_structural(prop if isinstance(prop, dict) else {}, root, depth + 1)
            for name, prop in schema["properties"].items()
        }

    if isinstance(schema.get("required", None), list):
        required = [_ for _ in schema["required"] if isinstance(_, str)]
        if required:
            out["required"] = required

    items = schema.get("items", None)
    if isinstance(items, list):
        items = items[0] if items else None
    if isinstance(items, dict):
        out["items"] = to_structural(items, root, depth + 1)

    # Kubernetes forbids `additionalProperties` next to `properties` and
    # expresses `additionalProperties: true` as preserved unknown fields.
    addprops = schema.get("additionalProperties", None)
    if "properties" not in out:
        if addprops is True:
            out["x-kubernetes-preserve-unknown-fields"] = True
        elif isinstance(addprops, dict):
            out["additionalProperties"] = to_structural(addprops, root, depth + 1)

    for key in ("allOf", "anyOf", "oneOf"):
        if isinstance(schema.get(key, None), list):
            out[key] = [
                to_structural(_, root, depth + 1)
                for _ in schema[key] if isinstance(_, dict)
            ]
    if isinstance(schema.get("not", None), dict):
        out["not"] = to_structural(schema["not"], root, depth + 1)

    # Every node needs a type unless it is an int-or-string.
    if "type" not in out and not out.get("x-kubernetes-int-or-string", False):
        if "properties" in out or "additionalProperties" in out:
            out["type"] = "object"
        elif "items" in out:
            out["type"] = "array"
        elif not any(_ in out for _ in ("allOf", "anyOf", "oneOf", "not")):
            out["type"] = "object"
            out["x-kubernetes-preserve-unknown-fields"] = True
    return out


def _parse(name: str, data: bytes) -> Tuple[dict, Error | None]:
    try:
        schema = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        return {}, Error(ErrCode.GENERATION, f"invalid {name} JSON schema: {err}")
    if not isinstance(schema, dict):
        return {}, Error(ErrCode.GENERATION, f"{name} JSON schema is not an object")
    return schema, None


def crd_manifest(gvk: GroupVersionKind, spec: dict, status: dict,
                 categories: List[str]) -> dict:
    """Return the CRD manifest for the structural `spec` and `status` schemas."""
    name = plural(gvk.kind)
    return {
        "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
        "kind": CRD_KIND,
        "metadata": {"name": f"{name}.{gvk.group}"},
        "spec": {
            "group": gvk.group,
            "names": {
                "kind": gvk.kind,
                "listKind": f"{gvk.kind}List",
                "plural": name,
                "singular": gvk.kind.lower(),
                "categories": list(categories),
            },
            "scope": "Namespaced",
            "versions": [{
                "name": gvk.version,
                "served": True,
                "storage": True,
                "schema": {
                    "openAPIV3Schema": {
                        "type": "object",
                        "properties": {
                            "apiVersion": {"type": "string"},
                            "kind": {"type": "string"},
                            "metadata": {"type": "object"},
                            "spec": spec,
                            "status": status,
                        },
                    },
                },
                "subresources": {"status": {}},
            }],
        },
    }


def generate(gvk: GroupVersionKind,
             spec_schema: bytes,
             status_schema: bytes,
             categories: List[str]) -> Tuple[bytes, Error | None]:
    """Return the YAML manifest of a CRD for `gvk`.

    Inputs:
        gvk: GroupVersionKind
            Group, version and kind of the custom resource.
        spec_schema: bytes
            JSON schema of the `spec` field.
        status_schema: bytes
            JSON schema of the `status` field.
        categories: List[str]
            Categories of the custom resource, eg `["widgets"]`.

    Returns:
        bytes, err

    """
    if KIND_REGEX.fullmatch(gvk.kind) is None:
        return b"", Error(ErrCode.GENERATION, f"invalid kind <{gvk.kind}>")
    if VERSION_REGEX.fullmatch(gvk.version) is None:
        return b"", Error(ErrCode.GENERATION, f"invalid version <{gvk.version}>")
    if not gvk.group:
        return b"", Error(ErrCode.GENERATION, "group must not be empty")

    spec, err = _parse("spec", spec_schema)
    if err:
        return b"", err
    status, err = _parse("status", status_schema)
    if err:
        return b"", err

    manifest = crd_manifest(
        gvk,
        to_structural(spec, spec),
        to_structural(status, status),
        categories,
    )
    logit.debug(f"Generated CRD {manifest['metadata']['name']}")
    return yaml_io.dump(manifest).encode("utf8"), None
