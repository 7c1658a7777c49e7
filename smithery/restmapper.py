"""Resolve resource coordinates into REST endpoints.

The `RESTMapper` caches the API discovery of a cluster. The service creates
exactly one instance and hands it to every `dynamic.Client`. The cache expires
after `ttl` seconds and is also rebuilt whenever a lookup misses, which
makes CRDs visible that were installed after the cache was populated.

"""
import logging
import time
from typing import Dict, List, Tuple

import smithery.k8s as k8s
from smithery.dtypes import (
    ErrCode, Error, K8sConfig, K8sResource, ResourceCoordinate,
)

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

# (group, version, kind)
ApiKey = Tuple[str, str, str]


class RESTMapper:
    def __init__(self, ttl: float = 0):
        # Seconds until the cache expires (0 means never).
        self.ttl = ttl

        self.apis: Dict[ApiKey, K8sResource] = {}
        self.preferred: Dict[str, str] = {}
        self.fetched_at: float | None = None

    def expired(self) -> bool:
        """Return `True` if the cache is empty or older than its TTL."""
        if self.fetched_at is None:
            return True
        if self.ttl <= 0:
            return False
        return time.monotonic() - self.fetched_at > self.ttl

    def invalidate(self) -> None:
        self.fetched_at = None

    def populate(self, resources: List[K8sResource], preferred: Dict[str, str]) -> None:
        """Replace the cache content with `resources`."""
        apis = {(_.group, _.version, _.kind): _ for _ in resources}

        # Swap in the new dicts in one go. Concurrent readers will either see
        # the old or the new discovery but never a partial one.
        self.apis, self.preferred = apis, dict(preferred)
        self.fetched_at = time.monotonic()

    async def refresh(self, k8sconfig: K8sConfig) -> Error | None:
        """Download the API discovery and rebuild the cache."""
        resources, preferred, code, err = await k8s.fetch_discovery(k8sconfig)
        if err and code in (401, 403):
            return Error(ErrCode.UNAUTHORIZED, f"K8s rejected the credentials ({code})")
        if err:
            return Error(ErrCode.INTERNAL, "cannot download API discovery")
        self.populate(resources, preferred)
        return None

    def kind_for(self, group: str, version: str, resource: str) -> Tuple[str, Error | None]:
        """Return the Kind of `resource`, eg "deployments" -> "Deployment".

        The `resource` may also be the singular or a short name. An empty
        `version` matches all versions of the group.

        """
        name = resource.lower()
        kinds = {
            res.kind for (grp, ver, _), res in self.apis.items()
            if grp == group and (version == "" or ver == version)
            and (res.name == name or res.singular == name or name in res.shortNames)
        }

        if len(kinds) == 0:
            msg = f"no kind for resource <{resource}> in <{group}/{version}>"
            return "", Error(ErrCode.NOT_FOUND, msg)
        if len(kinds) > 1:
            msg = f"resource <{resource}> matches several kinds: {sorted(kinds)}"
            return "", Error(ErrCode.AMBIGUOUS, msg)
        return kinds.pop(), None

    def mapping(self, group: str, kind: str, version: str) -> Tuple[K8sResource, Error | None]:
        """Return the `K8sResource` for `kind` in `group` and `version`.

        Use the preferred version of the group if `version` is empty. If the
        preferred version does not serve `kind` then there must be exactly one
        other version that does.

        """
        err_resp = K8sResource("", "", "", False, "")

        if version:
            try:
                return self.apis[(group, version, kind)], None
            except KeyError:
                msg = f"no mapping for <{kind}> in <{group}/{version}>"
                return err_resp, Error(ErrCode.NOT_FOUND, msg)

        # Use the preferred version of the group if it serves the resource.
        preferred = self.preferred.get(group, "")
        if (group, preferred, kind) in self.apis:
            return self.apis[(group, preferred, kind)], None

        candidates = [
            res for (grp, _, knd), res in self.apis.items()
            if grp == group and knd == kind
        ]
        if len(candidates) == 0:
            return err_resp, Error(ErrCode.NOT_FOUND, f"no mapping for <{kind}> in <{group}>")
        if len(candidates) > 1:
            versions = sorted(_.version for _ in candidates)
            msg = f"<{kind}> in <{group}> is available in several versions: {versions}"
            return err_resp, Error(ErrCode.AMBIGUOUS, msg)
        return candidates[0], None

    def _lookup(self, coord: ResourceCoordinate) -> Tuple[K8sResource, Error | None]:
        kind = coord.kind
        if not kind:
            kind, err = self.kind_for(coord.group, coord.version, coord.resource)
            if err:
                return K8sResource("", "", "", False, ""), err
        return self.mapping(coord.group, kind, coord.version)

    async def resolve(self, k8sconfig: K8sConfig,
                      coord: ResourceCoordinate) -> Tuple[K8sResource, Error | None]:
        """Return the `K8sResource` for the (partial) `coord`.

        Inputs:
            k8sconfig: K8sConfig
                Used to download the discovery if the cache is stale.
            coord: ResourceCoordinate
                Must specify either `kind` or `resource`.

        Returns:
            K8sResource, err

        """
        err_resp = K8sResource("", "", "", False, "")
        if not (coord.kind or coord.resource):
            msg = "resource coordinate must specify a kind or a resource"
            return err_resp, Error(ErrCode.INVALID_ARGUMENT, msg)

        # Populate the cache on first use.
        if self.expired():
            err = await self.refresh(k8sconfig)
            if err:
                return err_resp, err

        resource, err = self._lookup(coord)
        if not err or err.code != ErrCode.NOT_FOUND:
            return resource, err

        # The resource may have been installed since we populated the cache.
        logit.debug(f"Discovery miss for {coord} - refreshing cache")
        err = await self.refresh(k8sconfig)
        if err:
            return err_resp, err
        resource, err = self._lookup(coord)
        if err:
            logit.warning(err.msg)
        return resource, err

    def preferred_resources(self) -> List[K8sResource]:
        """Return all resources served by the preferred version of their group."""
        return [
            res for (grp, ver, _), res in self.apis.items()
            if self.preferred.get(grp) == ver
        ]
