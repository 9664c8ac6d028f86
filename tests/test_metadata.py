"""Tests for mapping metadata rows, stores and schema loading."""

import asyncio

import pytest
from pydantic import ValidationError

from ccda_flattener.db_connector import DatabaseSession
from ccda_flattener.errors import SchemaError
from ccda_flattener.metadata import (MappingRow, SqlMetadataStore,
                                     YamlMetadataStore, load_schema,
                                     schema_from_rows)
from ccda_flattener.schema import ColumnType, PathContext, SectionKind

from conftest import seed_metadata, sqlite_config


def mapping_section(name, path, kind, level, parent=None, target="Patient", **extra):
    row = {
        "Source_Entity_Name": "CCDA",
        "Target_Entity_Name": target,
        "Element_Type": "Section",
        "Section_Name": name,
        "Section_Path": path,
        "Section_Type": kind,
        "Section_Level": level,
        "Parent_Section_Name": parent,
    }
    row.update(extra)
    return MappingRow.model_validate(row)


def mapping_column(owner, name, path, context="section", target="Patient", **extra):
    row = {
        "Source_Entity_Name": "CCDA",
        "Target_Entity_Name": target,
        "Element_Type": "Column",
        "Section_Name": owner,
        "Column_Name": name,
        "Column_Path": path,
        "Path_Context": context,
    }
    row.update(extra)
    return MappingRow.model_validate(row)


class TestMappingRow:
    def test_normalises_enumerations(self):
        row = mapping_column(
            "Observations", "Value", "value", context=" ROOT ", Column_Type=" Double "
        )
        assert row.element_type == "Column"
        assert row.path_context is PathContext.ROOT
        assert row.column_type is ColumnType.DOUBLE

    def test_blank_column_type_is_string(self):
        assert mapping_column("S", "C", "c", Column_Type="").column_type is ColumnType.STRING
        assert mapping_column("S", "C", "c", Column_Type=None).column_type is ColumnType.STRING

    def test_lowercase_section_type(self):
        row = mapping_section("Items", "items", "array", 1, "Root")
        assert row.section_type is SectionKind.ARRAY

    def test_column_requires_path_context(self):
        with pytest.raises(ValidationError, match="Path_Context"):
            mapping_column("S", "C", "c", context=None)

    def test_section_requires_type_and_level(self):
        with pytest.raises(ValidationError, match="Section_Type"):
            mapping_section("S", "s", None, 0)

    def test_unknown_element_type(self):
        with pytest.raises(ValidationError, match="Element_Type"):
            MappingRow.model_validate(
                {"Source_Entity_Name": "CCDA", "Element_Type": "Table", "Section_Name": "S"}
            )

    def test_unknown_section_type(self):
        with pytest.raises(ValidationError):
            mapping_section("S", "s", "List", 0)

    def test_inactive_indicator(self):
        assert not mapping_column("S", "C", "c", Active_Indicator="n").is_active
        assert mapping_column("S", "C", "c").is_active

    def test_to_section(self):
        section = mapping_section(
            "Observations", "$.organizer.component", "Array", 2, "Organizers",
            Section_keys="Document_ID, Patient_ID",
        ).to_section()
        assert section.path == ("organizer", "component")
        assert section.join_keys == ("Document_ID", "Patient_ID")
        assert section.parent_name == "Organizers"

    def test_to_column_ordinal_falls_back_to_position(self):
        assert mapping_column("S", "C", "c").to_column(5).ordinal == 5
        assert mapping_column("S", "C", "c", Column_Ordinal=1).to_column(5).ordinal == 1

    def test_blank_parent_is_none(self):
        assert mapping_section("S", "s", "Struct", 0, "  ").parent_section_name is None


class TestSchemaFromRows:
    def test_container_found_under_other_target(self):
        rows = [
            mapping_section("Components", "component", "Array", 0, target="Shared"),
            mapping_section("Results", "section", "Struct", 0),
            mapping_column("Results", "Title", "title"),
        ]
        schema = schema_from_rows(rows, "CCDA", "Patient", "Components")
        assert schema.container.name == "Components"
        assert [s.name for s in schema.sections] == ["Results"]

    def test_missing_container(self):
        rows = [mapping_section("Results", "section", "Struct", 0)]
        with pytest.raises(SchemaError, match="Container"):
            schema_from_rows(rows, "CCDA", "Patient", "Components")

    def test_no_container(self):
        rows = [mapping_section("Results", "section", "Struct", 0)]
        assert schema_from_rows(rows, "CCDA", "Patient").container is None

    def test_no_active_sections(self):
        rows = [mapping_section("Results", "section", "Struct", 0, Active_Indicator="N")]
        with pytest.raises(SchemaError, match="No active sections"):
            schema_from_rows(rows, "CCDA", "Patient")

    def test_other_targets_are_ignored(self):
        rows = [
            mapping_section("Results", "section", "Struct", 0),
            mapping_section("Encounters", "section", "Struct", 0, target="Visit"),
        ]
        schema = schema_from_rows(rows, "CCDA", "Patient")
        assert [s.name for s in schema.sections] == ["Results"]


class TestYamlMetadataStore:
    def test_loads_example_mapping(self, yaml_store):
        schema = asyncio.run(load_schema(yaml_store, "CCDA", "Patient", "Components"))
        assert schema.container.path == ("component", "structuredBody", "component")
        assert [s.name for s in schema.sections] == ["Results", "Organizers", "Observations"]
        assert schema.column_names() == (
            "Document_ID",
            "Patient_Last_Name",
            "Result_Code",
            "Result_Value",
            "Result_Unit",
            "Result_Date",
            "Result_Status",
        )

    def test_rules_are_ordered(self, yaml_store):
        rules = asyncio.run(yaml_store.identification_rules("CCDA"))
        assert [rule.document_type for rule in rules] == ["EPIC", "CCD"]
        assert rules[1].path == ("templateId", "_root")

    def test_unknown_source_entity(self, yaml_store):
        assert asyncio.run(yaml_store.mapping_rows("HL7")) == []

    def test_invalid_row_is_schema_error(self, tmp_path):
        path = tmp_path / "mappings.yaml"
        path.write_text(
            "mappings:\n"
            "  - Source_Entity_Name: CCDA\n"
            "    Target_Entity_Name: Patient\n"
            "    Element_Type: Column\n"
            "    Section_Name: Results\n"
            "    Column_Name: Title\n"
            "    Column_Path: title\n",
            encoding="utf-8",
        )
        with pytest.raises(SchemaError, match="Path_Context"):
            asyncio.run(YamlMetadataStore(path).mapping_rows("CCDA"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(SchemaError):
            asyncio.run(YamlMetadataStore(tmp_path / "missing.yaml").mapping_rows("CCDA"))

    def test_file_must_hold_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(SchemaError, match="must contain a mapping"):
            asyncio.run(YamlMetadataStore(path).mapping_rows("CCDA"))


class TestSqlMetadataStore:
    def test_matches_yaml_store(self, tmp_path, yaml_store):
        async def scenario():
            session = DatabaseSession(sqlite_config(tmp_path))
            try:
                engine = await session.open()
                await session.ensure_schema()
                await seed_metadata(engine, session)
                store = SqlMetadataStore(engine, session.mapping_table, session.rule_table)
                schema = await load_schema(store, "CCDA", "Patient", "Components")
                rules = await store.identification_rules("CCDA")
                return schema, rules
            finally:
                await session.dispose()

        schema, rules = asyncio.run(scenario())
        expected = asyncio.run(load_schema(yaml_store, "CCDA", "Patient", "Components"))
        assert schema.sections == expected.sections
        assert schema.all_columns() == expected.all_columns()
        assert schema.container == expected.container
        assert [rule.document_type for rule in rules] == ["EPIC", "CCD"]
