"""Tests for the value model, path resolution and XML adaptation."""

import pytest

from ccda_flattener.errors import SourceError
from ccda_flattener.values import (NULL, Array, Scalar, Struct, from_python,
                                   is_null, parse_path, resolve, to_python)
from ccda_flattener.xml_adapter import adapt_xml


class TestParsePath:
    def test_dot_separated(self):
        assert parse_path("a.b.c") == ("a", "b", "c")

    def test_variant_prefix_is_dropped(self):
        assert parse_path("$.component.structuredBody") == ("component", "structuredBody")

    @pytest.mark.parametrize("path", [None, "", "$", "."])
    def test_empty_paths(self, path):
        assert parse_path(path) == ()

    def test_tuple_passes_through(self):
        assert parse_path(("a", "b")) == ("a", "b")


class TestFromPython:
    def test_nested_structure(self):
        value = from_python({"a": [1, {"b": None}], "c": True})
        assert value == Struct(
            {"a": Array((Scalar(1), Struct({"b": NULL}))), "c": Scalar(True)}
        )

    def test_round_trip_to_python(self):
        payload = {"a": [1, 2.5, "x"], "b": {"c": False}, "d": None}
        assert to_python(from_python(payload)) == payload

    def test_unknown_objects_become_strings(self):
        assert from_python(object) == Scalar(str(object))


class TestResolve:
    def test_nested_fields(self):
        doc = from_python({"a": {"b": {"c": "leaf"}}})
        assert resolve(doc, "a.b.c") == Scalar("leaf")

    def test_empty_path_returns_context(self):
        doc = from_python({"a": 1})
        assert resolve(doc, "") is doc

    def test_missing_field_is_null(self):
        doc = from_python({"a": {"b": 1}})
        assert resolve(doc, "a.x.y") is NULL
        assert is_null(resolve(doc, "a.x.y"))
        assert not is_null(resolve(doc, "a.b"))

    def test_through_null_is_null(self):
        doc = from_python({"a": None})
        assert resolve(doc, "a.b") is NULL

    def test_through_scalar_is_null(self):
        doc = from_python({"a": "text"})
        assert resolve(doc, "a.b") is NULL

    def test_segment_on_array_is_null_and_reported(self):
        doc = from_python({"a": [{"b": 1}]})
        seen = []
        assert resolve(doc, "a.b", seen.append) is NULL
        assert len(seen) == 1
        assert "array" in seen[0]

    def test_never_raises_on_any_shape(self):
        values = [
            NULL,
            Scalar(0),
            Scalar(""),
            from_python([]),
            from_python({}),
            from_python([[{"a": [None]}]]),
            from_python({"a": [{"b": {"c": []}}]}),
        ]
        paths = ["", "a", "a.b", "a.b.c.d", "$.a", "...", "x.y.z"]
        for value in values:
            for path in paths:
                result = resolve(value, path)
                assert isinstance(result, (type(NULL), Scalar, Struct, Array))

    def test_resolution_does_not_mutate(self):
        doc = from_python({"a": {"b": [1, 2]}})
        before = to_python(doc)
        resolve(doc, "a.b")
        resolve(doc, "a.b.c")
        assert to_python(doc) == before


class TestAdaptXml:
    def test_attributes_are_prefixed(self, ccda_value):
        assert resolve(ccda_value, "id._root") == Scalar("doc-123")
        assert resolve(ccda_value, "templateId._root") == Scalar(
            "2.16.840.1.113883.10.20.22.1.2"
        )

    def test_text_only_elements_are_scalars(self, ccda_value):
        name = resolve(ccda_value, "recordTarget.patientRole.patient.name")
        assert to_python(name) == {"given": "Ada", "family": "Lovelace"}

    def test_repeated_tags_become_arrays(self, ccda_value):
        components = resolve(ccda_value, "component.structuredBody.component")
        assert isinstance(components, Array)
        assert len(components.items) == 2

    def test_single_tag_stays_struct(self, ccda_value):
        entry = resolve(
            ccda_value, "component.structuredBody.component"
        ).items[0]
        assert isinstance(resolve(entry, "section.entry"), Struct)

    def test_xsi_type(self, ccda_value):
        observation = resolve(ccda_value, "component.structuredBody.component").items[0]
        values = resolve(observation, "section.entry.organizer.component")
        first = resolve(values.items[0], "observation.value")
        assert to_python(first) == {"_type": "PQ", "_value": "98", "_unit": "mg/dL"}

    def test_text_next_to_attributes(self):
        value = adapt_xml('<doc><title lang="en">Summary</title></doc>')
        assert to_python(value) == {"title": {"_lang": "en", "_VALUE": "Summary"}}

    def test_empty_elements_are_null(self):
        value = adapt_xml("<doc><empty/><kept>x</kept></doc>")
        assert resolve(value, "empty") is NULL
        assert resolve(value, "kept") == Scalar("x")

    def test_malformed_xml(self):
        with pytest.raises(SourceError):
            adapt_xml("<doc><unclosed></doc>")

    def test_mixed_content_keeps_text_around_children(self):
        value = adapt_xml("<doc><text>Taken <b>twice</b> daily</text></doc>")
        assert to_python(value) == {"text": {"b": "twice", "_VALUE": "Taken daily"}}

    def test_bytes_follow_the_declared_encoding(self):
        data = '<?xml version="1.0" encoding="ISO-8859-1"?><doc><name>Müller</name></doc>'
        value = adapt_xml(data.encode("latin-1"))
        assert resolve(value, "name") == Scalar("Müller")

    def test_text_ignores_its_encoding_declaration(self):
        value = adapt_xml('<?xml version="1.0" encoding="ISO-8859-1"?><doc><name>Müller</name></doc>')
        assert resolve(value, "name") == Scalar("Müller")
