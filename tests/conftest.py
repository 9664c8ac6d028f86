"""Shared fixtures for ccda_flattener tests."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from ccda_flattener.errors import SinkError
from ccda_flattener.metadata import MappingRow, YamlMetadataStore
from ccda_flattener.models import DatabaseConfig
from ccda_flattener.persistence import RawDocument
from ccda_flattener.schema import (ColumnDef, PathContext, SectionDef,
                                   SectionKind, build_schema)
from ccda_flattener.values import from_python
from ccda_flattener.xml_adapter import adapt_xml

MAPPING_FILE = Path(__file__).resolve().parents[1] / "config" / "ccda_mappings.yaml"

CCDA_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ClinicalDocument xmlns="urn:hl7-org:v3" xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">
  <templateId root="2.16.840.1.113883.10.20.22.1.2"/>
  <id root="doc-123"/>
  <recordTarget>
    <patientRole>
      <patient>
        <name><given>Ada</given><family>Lovelace</family></name>
      </patient>
    </patientRole>
  </recordTarget>
  <component>
    <structuredBody>
      <component>
        <section>
          <title>Results</title>
          <entry>
            <organizer classCode="BATTERY">
              <component>
                <observation>
                  <code code="2339-0"/>
                  <statusCode code="completed"/>
                  <effectiveTime value="20240105083000-0500"/>
                  <value xsi:type="PQ" value="98" unit="mg/dL"/>
                </observation>
              </component>
              <component>
                <observation>
                  <code code="2823-3"/>
                  <statusCode code="completed"/>
                  <effectiveTime value="20240105083000-0500"/>
                  <value xsi:type="PQ" value="high" unit="mmol/L"/>
                </observation>
              </component>
            </organizer>
          </entry>
        </section>
      </component>
      <component>
        <section>
          <title>Vitals</title>
        </section>
      </component>
    </structuredBody>
  </component>
</ClinicalDocument>
"""


def section(name, path, kind, level, parent=None):
    return SectionDef(
        name=name,
        path=tuple(path.split(".")) if path else (),
        kind=SectionKind(kind),
        level=level,
        parent_name=parent,
    )


def column(owner, name, path, ordinal=0, context=PathContext.SECTION, **kwargs):
    return ColumnDef(
        section_name=owner,
        column_name=name,
        path=tuple(path.split(".")) if path else (),
        path_context=context,
        ordinal=ordinal,
        **kwargs,
    )


@pytest.fixture
def results_schema():
    """Components container -> Results (Struct) -> Observations (Array)."""
    return build_schema(
        [
            section("Results", "Results", "Struct", 0),
            section("Observations", "Observations", "Array", 1, "Results"),
        ],
        [
            column("Observations", "Code", "Code", 0),
            column("Observations", "Value", "Value", 1),
        ],
        source_entity="CCDA",
        target_entity="Patient",
        container=section("Components", "Components", "Array", 0),
    )


@pytest.fixture
def results_document():
    return from_python(
        {
            "Components": [
                {
                    "Results": {
                        "Observations": [
                            {"Code": "2339-0", "Value": "98"},
                            {"Code": "2823-3", "Value": "4.1"},
                        ]
                    }
                },
                {"Vitals": {"Observations": [{"Code": "8480-6", "Value": "120"}]}},
            ]
        }
    )


@pytest.fixture
def ccda_value():
    return adapt_xml(CCDA_XML)


@pytest.fixture
def yaml_store():
    return YamlMetadataStore(MAPPING_FILE)


class MemoryMetadataStore:
    def __init__(self, rows, rules=()):
        self._rows = [MappingRow.model_validate(row) for row in rows]
        self._rules = list(rules)

    async def mapping_rows(self, source_entity):
        return [row for row in self._rows if row.source_entity == source_entity]

    async def identification_rules(self, source_entity):
        return list(self._rules)


class MemorySource:
    def __init__(self, documents):
        self.documents = list(documents)
        self.cursors = []

    async def read(self, cursor):
        self.cursors.append(cursor)
        return [d for d in self.documents if cursor is None or d.inserted_at > cursor]


class MemorySink:
    def __init__(self, fail=False):
        self.fail = fail
        self.prepared = {}
        self.writes = []

    async def prepare(self, target_table, columns):
        self.prepared[target_table] = [c.column_name for c in columns]

    async def write(self, target_table, rows):
        if self.fail:
            raise SinkError("sink unavailable")
        self.writes.append((target_table, list(rows)))
        return len(rows)


class MemoryWatermarkStore:
    def __init__(self):
        self.values = {}
        self.set_calls = 0

    async def get(self, document_type, target_table):
        return self.values.get((document_type, target_table))

    async def set(self, document_type, target_table, value):
        self.set_calls += 1
        self.values[(document_type, target_table)] = value


def sqlite_config(tmp_path):
    return DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'flattener.db'}")


async def seed_metadata(engine, session, path=MAPPING_FILE):
    """Copy the YAML mapping file into the SQL metadata tables."""
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    async with engine.begin() as conn:
        for row in data["mappings"]:
            await conn.execute(session.mapping_table.insert().values(**row))
        for row in data["document_types"]:
            await conn.execute(session.rule_table.insert().values(**row))


def raw_document(document_id, payload, minute, file_name=None):
    return RawDocument(
        document_id=document_id,
        value=from_python(payload),
        inserted_at=datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc),
        file_name=file_name,
    )


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest.fixture
def memory_watermarks():
    return MemoryWatermarkStore()
