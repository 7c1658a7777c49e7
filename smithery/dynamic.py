"""Generic client for any resource type the cluster serves.

The `Client` has no compiled-in knowledge of resource types. Every call
receives a `ResourceCoordinate` that the `RESTMapper` resolves against the
API discovery of the cluster. All objects are plain dicts.

"""
import logging
import re
from typing import List, Tuple
from urllib.parse import quote

import tenacity as tc
import yaml

import smithery.k8s as k8s
import smithery.yaml_io as yaml_io
from smithery.dtypes import (
    ErrCode, Error, K8sConfig, K8sResource, ResourceCoordinate,
)
from smithery.restmapper import RESTMapper

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

# Namespaces and resource plurals are RFC 1123 labels.
LABEL_REGEX = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?")


def errcode(method: str, code: int) -> ErrCode:
    """Translate the HTTP status `code` of a K8s response into an `ErrCode`."""
    if code == -1:
        return ErrCode.TRANSIENT
    if code in (401, 403):
        return ErrCode.UNAUTHORIZED
    if code == 404:
        return ErrCode.NOT_FOUND
    if code == 409:
        return ErrCode.ALREADY_EXISTS if method == "POST" else ErrCode.CONFLICT
    if code in (400, 422):
        return ErrCode.INVALID
    if code in (429, 500, 503, 504):
        return ErrCode.TRANSIENT
    return ErrCode.INTERNAL


def is_label(value: str) -> bool:
    """Return `True` if `value` is a valid RFC 1123 label, eg "my-namespace"."""
    return len(value) <= 63 and LABEL_REGEX.fullmatch(value) is not None


def resource_url(resource: K8sResource, namespace: str, name: str) -> Tuple[str, Error | None]:
    """Return the full URL for `resource`.

    These are all the possibilities:
      - https://1.2.3.4/api/v1/services
      - https://1.2.3.4/api/v1/namespaces/my-namespace/services
      - https://1.2.3.4/api/v1/namespaces/my-namespace/services/my-service
      - https://1.2.3.4/apis/apiextensions.k8s.io/v1/customresourcedefinitions/foo

    """
    # Cluster resources ignore the namespace.
    if not resource.namespaced:
        namespace = ""

    if namespace and not is_label(namespace):
        return "", Error(ErrCode.INVALID_ARGUMENT, f"invalid namespace <{namespace}>")

    # Names are path segments and must not address anything else.
    if name in (".", "..") or "/" in name:
        return "", Error(ErrCode.INVALID_ARGUMENT, f"invalid name <{name}>")

    # Sanity check: a specific namespaced resource needs a namespace.
    if resource.namespaced and name and not namespace:
        msg = f"namespaced resource {resource.kind}/{name} lacks namespace"
        return "", Error(ErrCode.INVALID_ARGUMENT, msg)

    path = f"namespaces/{namespace}/{resource.name}" if namespace else resource.name
    path = f"{path}/{quote(name, safe='')}" if name else path
    return f"{resource.url}/{path}", None


def matches(resource: K8sResource, term: str) -> bool:
    """Return `True` if any of the names or categories of `resource` is `term`."""
    term = term.lower()
    names = (resource.name, resource.singular) + resource.shortNames + resource.categories
    return term in {_.lower() for _ in names}


def yaml_to_object(data: bytes | str) -> Tuple[dict, Error | None]:
    """Decode exactly one YAML or JSON document into a dict."""
    try:
        docs = yaml_io.load_all(data)
    except yaml.YAMLError as err:
        return {}, Error(ErrCode.DECODE, f"failed to decode YAML: {err}")

    if len(docs) != 1:
        return {}, Error(ErrCode.DECODE, f"expected one document but found {len(docs)}")
    if not isinstance(docs[0], dict):
        return {}, Error(ErrCode.DECODE, "document is not a mapping")
    return docs[0], None


def _is_conflict(ret: Tuple[dict, Error | None]) -> bool:
    err = ret[1]
    return err is not None and err.code == ErrCode.CONFLICT


def _on_conflict(retry_state: tc.RetryCallState):
    attempt = retry_state.attempt_number
    logit.warning(f"Version conflict on apply (attempt {attempt}) - retrying")


class Client:
    """Get, list, create, update, delete and apply arbitrary K8s resources."""

    def __init__(self, k8sconfig: K8sConfig, mapper: RESTMapper, apply_attempts: int = 1):
        self.k8sconfig = k8sconfig
        self.mapper = mapper
        self.apply_attempts = max(1, apply_attempts)

    async def _url(self, coord: ResourceCoordinate, name: str) -> Tuple[str, Error | None]:
        resource, err = await self.mapper.resolve(self.k8sconfig, coord)
        if err:
            return "", err
        return resource_url(resource, coord.namespace, name)

    async def _request(self, method: str, coord: ResourceCoordinate, name: str,
                       payload: dict | None, ok: Tuple[int, ...]) -> Tuple[dict, Error | None]:
        url, err = await self._url(coord, name)
        if err:
            return {}, err

        resp, code, failed = await k8s.request(self.k8sconfig, method, url, payload, None)
        if failed or code not in ok:
            ecode = errcode(method, code)
            msg = resp.get("message", "") if isinstance(resp, dict) else ""
            msg = msg or f"{method} {url} failed with status {code}"
            logit.info(f"{code} - {method} - {url} - {msg}")
            return {}, Error(ecode, msg)
        return resp, None

    async def get(self, coord: ResourceCoordinate, name: str) -> Tuple[dict, Error | None]:
        return await self._request("GET", coord, name, None, (200,))

    async def list(self, coord: ResourceCoordinate) -> Tuple[List[dict], Error | None]:
        """Return all resources of type `coord` in the order K8s provides them."""
        resp, err = await self._request("GET", coord, "", None, (200,))
        if err:
            return [], err
        return list(resp.get("items", None) or []), None

    async def create(self, coord: ResourceCoordinate, obj: dict) -> Tuple[dict, Error | None]:
        return await self._request("POST", coord, "", obj, (200, 201, 202))

    async def update(self, coord: ResourceCoordinate, obj: dict) -> Tuple[dict, Error | None]:
        name = (obj.get("metadata", None) or {}).get("name", "")
        if not name:
            return {}, Error(ErrCode.INVALID_ARGUMENT, "object has no name")
        return await self._request("PUT", coord, name, obj, (200, 201))

    async def delete(self, coord: ResourceCoordinate, name: str) -> Error | None:
        _, err = await self._request("DELETE", coord, name, None, (200, 202))
        return err

    async def _apply_once(self, coord: ResourceCoordinate,
                          obj: dict) -> Tuple[dict, Error | None]:
        name = (obj.get("metadata", None) or {}).get("name", "")

        existing, err = await self.get(coord, name)
        if err and err.code == ErrCode.NOT_FOUND:
            return await self.create(coord, obj)
        if err:
            return {}, Error(err.code, f"failed to get existing resource: {err.msg}")

        version = (existing.get("metadata", None) or {}).get("resourceVersion", "")
        if not version:
            return {}, Error(ErrCode.INTERNAL, f"<{name}> has no resourceVersion")

        # Optimistic concurrency: the update fails with a conflict if someone
        # else modified the resource after our `get`.
        obj["metadata"]["resourceVersion"] = version
        return await self.update(coord, obj)

    async def apply(self, coord: ResourceCoordinate, obj: dict) -> Tuple[dict, Error | None]:
        """Create `obj` or replace the existing resource with the same name.

        This will overwrite the `metadata.resourceVersion` of `obj` with that
        of the resource on the server.

        Version conflicts are retried `self.apply_attempts - 1` times. The
        conflict of the last attempt is returned to the caller.

        """
        if not isinstance(obj.get("metadata", None), dict) or not obj["metadata"].get("name"):
            return {}, Error(ErrCode.INVALID_ARGUMENT, "object has no name")

        retryer = tc.AsyncRetrying(
            stop=tc.stop_after_attempt(self.apply_attempts),
            retry=tc.retry_if_result(_is_conflict),
            before_sleep=_on_conflict,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return await retryer(self._apply_once, coord, obj)

    async def apply_yaml(self, coord: ResourceCoordinate,
                         data: bytes | str) -> Tuple[dict, Error | None]:
        obj, err = yaml_to_object(data)
        if err:
            return {}, err
        return await self.apply(coord, obj)

    async def discover(self, category: str) -> Tuple[List[ResourceCoordinate], Error | None]:
        """Return all resource types whose names or categories match `category`.

        Only consider the preferred version of every API group, eg

            discover("widgets") -> [
                ResourceCoordinate(group="widgets.templates.krateo.io",
                                   version="v1beta1",
                                   kind="Button", resource="buttons"),
                ...
            ]

        """
        if self.mapper.expired():
            err = await self.mapper.refresh(self.k8sconfig)
            if err:
                return [], err

        out = [
            ResourceCoordinate(res.group, res.version, kind=res.kind, resource=res.name)
            for res in self.mapper.preferred_resources() if matches(res, category)
        ]
        return out, None
