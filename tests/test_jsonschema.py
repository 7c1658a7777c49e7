import copy
import unittest.mock as mock

import pytest

import smithery.jsonschema as jsonschema
from smithery.dtypes import ErrCode, Error

from .test_helpers import widget_schema


class TestIdentity:
    def test_kind_and_version(self):
        schema = {"properties": {
            "kind": {"default": "Foo"},
            "version": {"default": "v2"},
        }}
        assert jsonschema.extract_kind_and_version(schema) == ("Foo", "v2", None)

    def test_version_from_api_version(self):
        """Use the last segment of `apiVersion` if there is no `version`."""
        schema = {"properties": {
            "kind": {"default": "Foo"},
            "apiVersion": {"default": "grp/v3"},
        }}
        assert jsonschema.extract_kind_and_version(schema) == ("Foo", "v3", None)

        # An empty `version` is the same as a missing one.
        schema["properties"]["version"] = {"default": ""}
        assert jsonschema.extract_kind_and_version(schema) == ("Foo", "v3", None)

        # `version` takes precedence.
        schema["properties"]["version"] = {"default": "v9"}
        assert jsonschema.extract_kind_and_version(schema) == ("Foo", "v9", None)

    @pytest.mark.parametrize("properties", [
        {"kind": {"default": "Foo"}},
        {"kind": {"default": "Foo"}, "apiVersion": {"default": "v3"}},
        {"kind": {"default": "Foo"}, "apiVersion": {"default": 3}},
        {"kind": {"default": "Foo"}, "version": {"type": "string"}},
    ])
    def test_default_version(self, properties):
        """Fall back to the default version."""
        schema = {"properties": properties}
        assert jsonschema.extract_kind_and_version(schema) == ("Foo", "v1alpha1", None)

    def test_missing_kind(self):
        """A missing kind is not an error at this stage."""
        schema = {"properties": {"version": {"default": "v1"}}}
        assert jsonschema.extract_kind_and_version(schema) == ("", "v1", None)

    @pytest.mark.parametrize("schema", [{}, {"properties": []}, {"properties": None}])
    def test_missing_properties(self, schema):
        kind, version, err = jsonschema.extract_kind_and_version(schema)
        assert (kind, version) == ("", "")
        assert err is not None and err.code == ErrCode.INVALID_SCHEMA


class TestAllowedResources:
    def test_extract(self):
        schema = widget_schema(allowed=["pods", "configmaps"])
        assert jsonschema.extract_allowed_resources(schema) == ["pods", "configmaps"]

    def test_extract_none(self):
        """Return an empty list if the schema declares no allowed resources."""
        assert jsonschema.extract_allowed_resources(widget_schema()) == []
        assert jsonschema.extract_allowed_resources({}) == []

        # Only string enums count.
        schema = widget_schema(allowed=["pods"])
        node = jsonschema.nested_map(schema, jsonschema.ALLOWED_RESOURCES_PATH)
        assert node is not None
        node["type"] = "array"
        assert jsonschema.extract_allowed_resources(schema) == []

        # Non-string values are ignored.
        node["type"] = "string"
        node["enum"] = ["pods", 1, None]
        assert jsonschema.extract_allowed_resources(schema) == ["pods"]

    def test_set_allowed_resources(self):
        spec, err = jsonschema.extract_spec(widget_schema())
        assert not err

        assert jsonschema.set_allowed_resources(spec, ["A", "B"]) is None
        node = jsonschema.nested_map(spec, jsonschema.RESOURCE_ENUM_PATH)
        assert node == {"type": "string", "enum": ["A", "B"]}

    def test_set_allowed_resources_noop(self):
        """An empty list must not touch the schema, not even an invalid one."""
        for spec in ({}, jsonschema.extract_spec(widget_schema())[0]):
            before = copy.deepcopy(spec)
            assert jsonschema.set_allowed_resources(spec, []) is None
            assert spec == before

    def test_set_allowed_resources_missing_path(self):
        err = jsonschema.set_allowed_resources({"properties": {}}, ["A", "B"])
        assert err is not None and err.code == ErrCode.FIELD_NOT_FOUND


class TestExtractSpec:
    def test_fragments(self):
        """Inject all four fragments and keep the existing properties."""
        schema = widget_schema()
        original = copy.deepcopy(schema)

        spec, err = jsonschema.extract_spec(schema)
        assert not err
        assert set(spec["properties"]) == {"widgetData", *jsonschema.FRAGMENTS}
        assert spec["properties"]["widgetData"] == original["properties"]["spec"]["properties"]["widgetData"]
        for name in jsonschema.FRAGMENTS:
            assert spec["properties"][name] == jsonschema.load_fragment(name)[0]

        # Must remove the identity fields from the required list.
        assert spec["required"] == ["widgetData"]

        # Must not have modified the input.
        assert schema == original

    def test_required(self):
        """Only filter `required` if it exists and keep it if it becomes empty."""
        schema = {"properties": {"spec": {"type": "object", "required": ["kind", "apiVersion"]}}}
        spec, err = jsonschema.extract_spec(schema)
        assert not err and spec["required"] == []

        schema = {"properties": {"spec": {"type": "object"}}}
        spec, err = jsonschema.extract_spec(schema)
        assert not err and "required" not in spec

    def test_overwrite_existing(self):
        """Existing fragment keys are replaced and never duplicated."""
        schema = widget_schema()
        schema["properties"]["spec"]["properties"]["apiRef"] = {"type": "string"}

        spec, err = jsonschema.extract_spec(schema)
        assert not err
        assert spec["properties"]["apiRef"] == jsonschema.load_fragment("apiRef")[0]

        # Running the pipeline on its own output must produce the same result.
        spec2, err = jsonschema.extract_spec({"properties": {"spec": spec}})
        assert not err
        assert spec2 == spec

    def test_fragments_are_copies(self):
        """Modifying one extracted spec must not affect the next one."""
        spec1, _ = jsonschema.extract_spec(widget_schema())
        spec1["properties"]["apiRef"]["properties"].clear()

        spec2, _ = jsonschema.extract_spec(widget_schema())
        assert spec2["properties"]["apiRef"]["properties"] != {}

    @pytest.mark.parametrize("schema", [
        {},
        {"properties": {}},
        {"properties": {"spec": "foo"}},
        {"properties": {"spec": {"properties": ["foo"]}}},
    ])
    def test_invalid(self, schema):
        spec, err = jsonschema.extract_spec(schema)
        assert spec == {}
        assert err is not None and err.code == ErrCode.INVALID_SCHEMA

    def test_fragment_error(self):
        """Abort if a fragment cannot be loaded."""
        with mock.patch.object(jsonschema, "load_fragment") as m_load:
            m_load.return_value = ({}, Error(ErrCode.IO, "boom"))
            spec, err = jsonschema.extract_spec(widget_schema())
        assert spec == {}
        assert err == Error(ErrCode.IO, "boom")

    def test_load_fragment(self):
        for name in jsonschema.FRAGMENTS:
            fragment, err = jsonschema.load_fragment(name)
            assert not err
            assert fragment["type"] in ("object", "array")

        fragment, err = jsonschema.load_fragment("does-not-exist")
        assert fragment == {}
        assert err is not None and err.code == ErrCode.IO

    def test_nested_map(self):
        data = {"a": {"b": {"c": 1}}}
        assert jsonschema.nested_map(data, ("a",)) == {"b": {"c": 1}}
        assert jsonschema.nested_map(data, ("a", "b")) == {"c": 1}
        assert jsonschema.nested_map(data, ("a", "b", "c")) is None
        assert jsonschema.nested_map(data, ("x",)) is None
        assert jsonschema.nested_map([], ("a",)) is None
