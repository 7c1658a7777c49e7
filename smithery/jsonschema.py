"""Turn a widget JSON Schema into the spec schema of a widget CRD.

A widget schema looks like this (abbreviated):

    {
      "properties": {
        "kind": {"default": "Button"},
        "version": {"default": "v1beta1"},
        "spec": {
          "type": "object",
          "properties": {
            "widgetData": {
              "properties": {
                "allowedResources": {"type": "string", "enum": ["pods"]}
              }
            }
          }
        }
      }
    }

All functions return their result alongside an `Error` (or `None`).

"""
import copy
import importlib.resources
import json
import logging
from typing import Any, Dict, List, Tuple

from smithery.dtypes import DEFAULT_WIDGET_VERSION, ErrCode, Error

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

API_REF_KEY = "apiRef"
WIDGET_DATA_KEY = "widgetData"
WIDGET_DATA_TEMPLATE_KEY = "widgetDataTemplate"
RESOURCES_REFS_KEY = "resourcesRefs"
RESOURCES_REFS_TEMPLATE_KEY = "resourcesRefsTemplate"
ALLOWED_RESOURCES_KEY = "allowedResources"

# Every widget spec receives these properties (see `smithery/resources`).
FRAGMENTS = (
    API_REF_KEY,
    WIDGET_DATA_TEMPLATE_KEY,
    RESOURCES_REFS_KEY,
    RESOURCES_REFS_TEMPLATE_KEY,
)

# Identity fields of every K8s resource. They never belong to the spec.
IDENTITY_FIELDS = ("kind", "apiVersion")

# Where the widget schema declares the resources a widget may reference...
ALLOWED_RESOURCES_PATH = (
    "properties", "spec", "properties", WIDGET_DATA_KEY,
    "properties", ALLOWED_RESOURCES_KEY,
)

# ...and where the spec schema constrains them.
RESOURCE_ENUM_PATH = (
    "properties", RESOURCES_REFS_KEY, "properties", "items",
    "items", "properties", "resource",
)


def nested_map(data: Any, path: Tuple[str, ...]) -> Dict[str, Any] | None:
    """Return the dict at `path` in `data` or `None` if it does not exist."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key, None)
    return data if isinstance(data, dict) else None


def load_fragment(name: str) -> Tuple[dict, Error | None]:
    """Return a fresh copy of the bundled JSON schema fragment `name`."""
    fname = f"{name}.json"
    try:
        text = importlib.resources.files("smithery.resources").joinpath(fname).read_text()
        fragment = json.loads(text)
    except (OSError, json.JSONDecodeError) as err:
        logit.error(f"Cannot load schema fragment <{fname}>: {err}")
        return {}, Error(ErrCode.IO, f"cannot load schema fragment {fname}")

    if not isinstance(fragment, dict):
        logit.error(f"Schema fragment <{fname}> is not a JSON object")
        return {}, Error(ErrCode.IO, f"schema fragment {fname} is not an object")
    return fragment, None


def extract_kind_and_version(schema: dict) -> Tuple[str, str, Error | None]:
    """Return the kind and version a widget `schema` declares.

    The kind is `properties.kind.default`. The version is
    `properties.version.default` or, if that is empty, the last segment of
    `properties.apiVersion.default`, eg "v2" for "foo.com/v2". The version
    defaults to "v1alpha1".

    An empty kind is *not* an error here.

    """
    properties = schema.get("properties", None) if isinstance(schema, dict) else None
    if not isinstance(properties, dict):
        return "", "", Error(ErrCode.INVALID_SCHEMA, "missing 'properties' field")

    def get_default(key: str) -> str:
        prop = properties.get(key, None)
        if not isinstance(prop, dict):
            return ""
        value = prop.get("default", "")
        return value if isinstance(value, str) else ""

    kind = get_default("kind")
    version = get_default("version")
    if version == "":
        api_version = get_default("apiVersion")
        idx = api_version.rfind("/")
        if idx > 0:
            version = api_version[idx + 1:]
    if version == "":
        version = DEFAULT_WIDGET_VERSION

    return kind, version, None


def extract_allowed_resources(schema: dict) -> List[str]:
    """Return the resources the widget may reference (empty list if none)."""
    node = nested_map(schema, ALLOWED_RESOURCES_PATH)
    if node is None or node.get("type", None) != "string":
        return []

    values = node.get("enum", None)
    if not isinstance(values, list):
        return []
    return [_ for _ in values if isinstance(_, str)]


def extract_spec(schema: dict) -> Tuple[dict, Error | None]:
    """Return the `properties.spec` schema with all fixed fragments injected.

    The returned schema is a copy and `schema` remains unmodified. Injected
    fragments replace existing properties of the same name. The identity
    fields are removed from the `required` list.

    """
    spec = nested_map(schema, ("properties", "spec"))
    if spec is None:
        return {}, Error(ErrCode.INVALID_SCHEMA, "properties.spec not found in JSON schema")
    spec = copy.deepcopy(spec)

    properties = spec.setdefault("properties", {})
    if not isinstance(properties, dict):
        return {}, Error(ErrCode.INVALID_SCHEMA, "properties.spec.properties is not an object")

    for name in FRAGMENTS:
        fragment, err = load_fragment(name)
        if err:
            return {}, err
        properties[name] = fragment

    required = spec.get("required", None)
    if isinstance(required, list):
        spec["required"] = [_ for _ in required if _ not in IDENTITY_FIELDS]

    return spec, None


def set_allowed_resources(spec: dict, allowed: List[str]) -> Error | None:
    """Restrict `resourcesRefs` in the `spec` schema to the `allowed` resources.

    Does nothing if `allowed` is empty.

    """
    if len(allowed) == 0:
        return None

    node = nested_map(spec, RESOURCE_ENUM_PATH)
    if node is None:
        path = str.join(".", RESOURCE_ENUM_PATH)
        return Error(ErrCode.FIELD_NOT_FOUND, f"'{path}' field not found")

    node["enum"] = list(allowed)
    return None
