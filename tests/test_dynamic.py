import pytest

import smithery.dynamic as dynamic
from smithery.crds import CRD_COORDINATE
from smithery.dtypes import ErrCode, K8sResource, ResourceCoordinate
from smithery.restmapper import RESTMapper

from .test_helpers import make_crd


@pytest.fixture
def client(fake_k8sconfig) -> dynamic.Client:
    return dynamic.Client(fake_k8sconfig, RESTMapper())


class TestHelpers:
    def test_errcode(self):
        """Map HTTP status codes from K8s to error classes."""
        assert dynamic.errcode("GET", -1) == ErrCode.TRANSIENT
        assert dynamic.errcode("GET", 401) == ErrCode.UNAUTHORIZED
        assert dynamic.errcode("GET", 403) == ErrCode.UNAUTHORIZED
        assert dynamic.errcode("GET", 404) == ErrCode.NOT_FOUND
        assert dynamic.errcode("POST", 409) == ErrCode.ALREADY_EXISTS
        assert dynamic.errcode("PUT", 409) == ErrCode.CONFLICT
        assert dynamic.errcode("POST", 422) == ErrCode.INVALID
        assert dynamic.errcode("GET", 503) == ErrCode.TRANSIENT
        assert dynamic.errcode("GET", 200) == ErrCode.INTERNAL

    def test_resource_url(self):
        """Compile the URL for namespaced and cluster resources."""
        svc = K8sResource("v1", "Service", "services", True, "https://k8s/api/v1")
        crd = K8sResource(
            "apiextensions.k8s.io/v1", "CustomResourceDefinition",
            "customresourcedefinitions", False, "https://k8s/apis/apiextensions.k8s.io/v1",
        )
        fun = dynamic.resource_url

        assert fun(svc, "", "") == ("https://k8s/api/v1/services", None)
        assert fun(svc, "ns", "") == ("https://k8s/api/v1/namespaces/ns/services", None)
        assert fun(svc, "ns", "foo") == (
            "https://k8s/api/v1/namespaces/ns/services/foo", None)

        # Cluster resources ignore the namespace.
        base = "https://k8s/apis/apiextensions.k8s.io/v1/customresourcedefinitions"
        assert fun(crd, "ns", "") == (base, None)
        assert fun(crd, "", "foo") == (f"{base}/foo", None)

        # Names can never leave their path segment.
        assert fun(crd, "", "x?q=1#frag") == (f"{base}/x%3Fq%3D1%23frag", None)
        assert fun(crd, "", "a b%") == (f"{base}/a%20b%25", None)

        # Invalid namespace, invalid names and named resource without namespace.
        for namespace, name in (("Invalid_NS", ""), ("", "foo"), ("ns", "a/b"),
                                ("", ".."), ("", "."), ("a" * 64, "")):
            url, err = fun(svc, namespace, name)
            assert url == "" and err is not None
            assert err.code == ErrCode.INVALID_ARGUMENT

        for name in ("x/../../../apis/apps/v1/deployments", ".."):
            url, err = fun(crd, "", name)
            assert url == "" and err is not None
            assert err.code == ErrCode.INVALID_ARGUMENT

    def test_is_label(self):
        for value in ("a", "ns", "my-namespace", "0abc", "a" * 63):
            assert dynamic.is_label(value)
        for value in ("", "-a", "a-", "A", "a.b", "a_b", "a/b", "a" * 64, "buttons?"):
            assert not dynamic.is_label(value)

    def test_matches(self):
        res = K8sResource(
            "widgets.io/v1", "Button", "buttons", True, "url",
            singular="button", shortNames=("btn",), categories=("widgets", "krateo"),
        )
        for term in ("buttons", "button", "btn", "widgets", "Krateo"):
            assert dynamic.matches(res, term)
        assert not dynamic.matches(res, "all")

    def test_yaml_to_object(self):
        """Decode exactly one YAML or JSON document."""
        assert dynamic.yaml_to_object("kind: Foo\n") == ({"kind": "Foo"}, None)
        assert dynamic.yaml_to_object(b'{"kind": "Foo"}') == ({"kind": "Foo"}, None)

        for data in ("kind: [", "a: 1\n---\nb: 2\n", "", "- a\n- b\n"):
            obj, err = dynamic.yaml_to_object(data)
            assert obj == {} and err is not None
            assert err.code == ErrCode.DECODE


class TestClient:
    async def test_get_list(self, cluster, client):
        """Get and list CRDs."""
        crd = cluster.install(make_crd("Button", "widgets.io", ["v1"]))

        obj, err = await client.get(CRD_COORDINATE, "buttons.widgets.io")
        assert not err and obj == crd

        items, err = await client.list(CRD_COORDINATE)
        assert not err and items == [crd]

    async def test_get_not_found(self, client):
        obj, err = await client.get(CRD_COORDINATE, "buttons.widgets.io")
        assert obj == {}
        assert err is not None and err.code == ErrCode.NOT_FOUND
        assert "not found" in err.msg

    async def test_get_unknown_resource(self, client):
        """Resources the cluster does not serve cannot be resolved."""
        coord = ResourceCoordinate("widgets.io", "v1", resource="buttons")
        obj, err = await client.get(coord, "foo")
        assert obj == {} and err is not None and err.code == ErrCode.NOT_FOUND

    async def test_create_update_delete(self, cluster, client):
        crd = make_crd("Button", "widgets.io", ["v1"])

        obj, err = await client.create(CRD_COORDINATE, crd)
        assert not err
        assert obj["metadata"]["resourceVersion"] == "1"

        # Creating it again must fail.
        _, err = await client.create(CRD_COORDINATE, crd)
        assert err is not None and err.code == ErrCode.ALREADY_EXISTS

        # Update it.
        obj["spec"]["names"]["categories"] = ["widgets"]
        obj, err = await client.update(CRD_COORDINATE, obj)
        assert not err
        assert obj["spec"]["names"]["categories"] == ["widgets"]
        assert obj["metadata"]["resourceVersion"] == "2"

        # Updates without a name are invalid.
        _, err = await client.update(CRD_COORDINATE, {"metadata": {}})
        assert err is not None and err.code == ErrCode.INVALID_ARGUMENT

        assert await client.delete(CRD_COORDINATE, "buttons.widgets.io") is None
        assert cluster.crds == {}

        err = await client.delete(CRD_COORDINATE, "buttons.widgets.io")
        assert err is not None and err.code == ErrCode.NOT_FOUND

    async def test_apply_create(self, cluster, client):
        """Applying a non-existing resource must create it."""
        crd = make_crd("Button", "widgets.io", ["v1"])
        discovery = len(cluster.calls)

        obj, err = await client.apply(CRD_COORDINATE, crd)
        assert not err
        assert obj["metadata"]["name"] == "buttons.widgets.io"
        assert "buttons.widgets.io" in cluster.crds

        # Exactly one create and no update.
        assert cluster.count("POST") == 1
        assert cluster.count("PUT") == 0
        assert cluster.count("GET", "/apis/apiextensions.k8s.io/v1/customresourcedefinitions/") == 1
        assert len(cluster.calls) > discovery

    async def test_apply_update(self, cluster, client):
        """Applying an existing resource must update it with its resourceVersion."""
        cluster.install(make_crd("Button", "widgets.io", ["v1"]))
        crd = make_crd("Button", "widgets.io", ["v1", "v2"])

        obj, err = await client.apply(CRD_COORDINATE, crd)
        assert not err
        assert [_["name"] for _ in obj["spec"]["versions"]] == ["v1", "v2"]
        assert obj["metadata"]["resourceVersion"] == "2"

        # Must have copied the resource version from the server.
        assert crd["metadata"]["resourceVersion"] == "1"

        # Exactly one get, one update and no create.
        path = "/apis/apiextensions.k8s.io/v1/customresourcedefinitions/"
        assert cluster.count("GET", path) == 1
        assert cluster.count("PUT") == 1
        assert cluster.count("POST") == 0

    async def test_apply_conflict(self, cluster, fake_k8sconfig):
        """Version conflicts are only retried if the client allows it."""
        cluster.install(make_crd("Button", "widgets.io", ["v1"]))
        crd = make_crd("Button", "widgets.io", ["v1", "v2"])

        # A single attempt must report the conflict.
        client = dynamic.Client(fake_k8sconfig, RESTMapper(), apply_attempts=1)
        cluster.conflicts = 1
        _, err = await client.apply(CRD_COORDINATE, crd)
        assert err is not None and err.code == ErrCode.CONFLICT
        assert cluster.count("PUT") == 1

        # Three attempts survive two conflicts.
        client = dynamic.Client(fake_k8sconfig, RESTMapper(), apply_attempts=3)
        cluster.conflicts = 2
        obj, err = await client.apply(CRD_COORDINATE, crd)
        assert not err
        assert [_["name"] for _ in obj["spec"]["versions"]] == ["v1", "v2"]
        assert cluster.count("PUT") == 4

    async def test_apply_invalid(self, cluster, client):
        """Objects without name cannot be applied."""
        for obj in ({}, {"metadata": {}}, {"metadata": {"name": ""}}):
            _, err = await client.apply(CRD_COORDINATE, obj)
            assert err is not None and err.code == ErrCode.INVALID_ARGUMENT
        assert cluster.calls == []

    async def test_apply_yaml(self, cluster, client):
        manifest = (
            "apiVersion: apiextensions.k8s.io/v1\n"
            "kind: CustomResourceDefinition\n"
            "metadata:\n"
            "  name: buttons.widgets.io\n"
            "spec:\n"
            "  group: widgets.io\n"
        )
        _, err = await client.apply_yaml(CRD_COORDINATE, manifest)
        assert not err
        assert cluster.crds["buttons.widgets.io"]["spec"] == {"group": "widgets.io"}

        _, err = await client.apply_yaml(CRD_COORDINATE, "kind: [")
        assert err is not None and err.code == ErrCode.DECODE

    async def test_discover(self, cluster, client):
        """Find all resources in a category."""
        cluster.install(make_crd("Button", "widgets.io", ["v1"], ["widgets", "krateo"]))
        cluster.install(make_crd("Panel", "widgets.io", ["v1"], ["widgets"]))
        cluster.install(make_crd("Other", "other.io", ["v1"]))

        coords, err = await client.discover("widgets")
        assert not err
        assert sorted(coords) == [
            ResourceCoordinate("widgets.io", "v1", kind="Button", resource="buttons"),
            ResourceCoordinate("widgets.io", "v1", kind="Panel", resource="panels"),
        ]

        # Core resources are discoverable too.
        coords, err = await client.discover("all")
        assert not err
        assert {_.kind for _ in coords} == {"Pod", "Deployment"}

        coords, err = await client.discover("unknown")
        assert (coords, err) == ([], None)
