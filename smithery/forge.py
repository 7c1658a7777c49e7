"""Forge a widget CRD from a JSON schema and optionally install it.

The steps run in this order and abort on the first error:

    extract identity -> extract allowed resources -> extract spec
    -> inject allowed resources (if any) -> marshal -> generate
    -> apply (optional)

No CRD is ever applied unless all previous steps succeeded.

"""
import json
import logging
import time
from typing import List, Tuple

import smithery.crdgen as crdgen
import smithery.dynamic as dynamic
import smithery.jsonschema as jsonschema
from smithery.crds import CRD_COORDINATE
from smithery.dtypes import ErrCode, Error, GroupVersionKind

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

# The status of widgets is not validated.
PRESERVE_UNKNOWN_FIELDS = {
    "type": "object",
    "additionalProperties": True,
    "x-kubernetes-preserve-unknown-fields": True,
}


def eta(start: float) -> str:
    """Return the time since `start` as a human readable string, eg "12ms"."""
    elapsed = time.monotonic() - start
    return f"{elapsed * 1000:.0f}ms" if elapsed < 1 else f"{elapsed:.2f}s"


def prepare(schema: dict) -> Tuple[GroupVersionKind, bytes, Error | None]:
    """Return the GVK and the JSON encoded spec schema for a widget `schema`.

    The group of the returned GVK is empty. The caller supplies it.

    """
    err_resp = GroupVersionKind("", "", "")

    kind, version, err = jsonschema.extract_kind_and_version(schema)
    if err:
        msg = f"unable to extract kind and version from JSON Schema: {err.msg}"
        return err_resp, b"", Error(err.code, msg)

    allowed = jsonschema.extract_allowed_resources(schema)

    spec, err = jsonschema.extract_spec(schema)
    if err:
        msg = f"unable to extract spec from JSON Schema: {err.msg}"
        return err_resp, b"", Error(err.code, msg)

    if len(allowed) > 0:
        err = jsonschema.set_allowed_resources(spec, allowed)
        if err:
            msg = f"unable to inject allowed resources into JSON Schema: {err.msg}"
            return err_resp, b"", Error(ErrCode.INTERNAL, msg)

    try:
        data = json.dumps(spec).encode("utf8")
    except (TypeError, ValueError) as e:
        msg = f"unable to convert extracted spec to JSON: {e}"
        return err_resp, b"", Error(ErrCode.INTERNAL, msg)

    return GroupVersionKind("", version, kind), data, None


async def apply_crd(client: dynamic.Client, manifest: bytes) -> Error | None:
    """Install or replace the CRD `manifest` in the cluster."""
    _, err = await client.apply_yaml(CRD_COORDINATE, manifest)
    return err


async def forge(schema: dict,
                group: str,
                categories: List[str],
                client: dynamic.Client | None) -> Tuple[bytes, Error | None]:
    """Return the CRD manifest for the widget `schema`.

    Inputs:
        schema: dict
            The widget JSON schema.
        group: str
            API group of the CRD, eg "widgets.templates.krateo.io".
        categories: List[str]
            Categories of the CRD, eg ["widgets", "krateo"].
        client: dynamic.Client | None
            Install the CRD with this client (use `None` to skip that step).

    Returns:
        bytes, err: the YAML manifest of the CRD.

    """
    gvk, spec, err = prepare(schema)
    if err:
        logit.info(err.msg)
        return b"", err
    gvk = gvk._replace(group=group)

    log_id = f"widget {gvk.kind}/{gvk.version}"
    logit.info(f"Generating CRD for {log_id}")

    start = time.monotonic()
    status = json.dumps(PRESERVE_UNKNOWN_FIELDS).encode("utf8")
    manifest, err = crdgen.generate(gvk, spec, status, categories)
    if err:
        logit.error(f"Unable to generate CRD for {log_id}: {err.msg}")
        return b"", err
    logit.info(f"CRD for {log_id} successfully generated in {eta(start)}")

    if client is not None:
        logit.info(f"Applying CRD for {log_id}")
        start = time.monotonic()
        err = await apply_crd(client, manifest)
        if err:
            logit.error(f"Unable to apply CRD for {log_id}: {err.msg}")
            return b"", err
        logit.info(f"CRD for {log_id} successfully applied in {eta(start)}")

    return manifest, None
