"""Recursive descent that materialises section instances for one document."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from .diagnostics import Diagnostics
from .schema import SchemaTree, SectionDef
from .values import Array, Scalar, Struct, Value, is_null, resolve

LOGGER = logging.getLogger("ccda_flattener.flatten")

InstanceKey = Tuple[int, ...]


class ArrayPolicy(str, Enum):
    """What to do when an Array section finds a single object."""

    NORMALIZE = "normalize"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class SectionInstance:
    document_id: str
    section_name: str
    instance_key: InstanceKey
    value: Value


class _Flattener:
    def __init__(
        self,
        document_id: str,
        schema: SchemaTree,
        diagnostics: Diagnostics,
        array_policy: ArrayPolicy,
    ) -> None:
        self.document_id = document_id
        self.schema = schema
        self.diagnostics = diagnostics
        self.array_policy = array_policy

    def _anomaly(self, section: SectionDef, message: str) -> None:
        LOGGER.debug("%s/%s: %s", self.document_id, section.name, message)
        self.diagnostics.anomaly(self.document_id, section.name, message)

    def resolve_section(self, section: SectionDef, context: Value) -> Value:
        return resolve(
            context, section.path, lambda message: self._anomaly(section, message)
        )

    def elements(self, section: SectionDef, value: Value) -> Optional[Tuple[Value, ...]]:
        """Return the values to emit for ``section``, or ``None`` if absent."""
        if is_null(value):
            return None
        if section.is_array:
            if isinstance(value, Array):
                return value.items
            if isinstance(value, Struct):
                if self.array_policy is ArrayPolicy.NORMALIZE:
                    return (value,)
                self._anomaly(section, "single object at an array position")
                return None
            self._anomaly(section, "scalar found where an array was declared")
            return None

        if isinstance(value, Struct):
            return (value,)
        found = "array" if isinstance(value, Array) else "scalar"
        self._anomaly(section, f"{found} found where a struct was declared")
        return None

    def materialise(
        self, section: SectionDef, value: Value, parent_key: InstanceKey
    ) -> List[SectionInstance]:
        elements = self.elements(section, value)
        if elements is None:
            return []
        if not section.is_array:
            return [
                SectionInstance(self.document_id, section.name, parent_key, elements[0])
            ]
        return [
            SectionInstance(self.document_id, section.name, parent_key + (position,), element)
            for position, element in enumerate(elements)
            if not is_null(element)
        ]

    def expand(
        self, section: SectionDef, context: Value, parent_key: InstanceKey
    ) -> List[SectionInstance]:
        value = self.resolve_section(section, context)
        leaves: List[SectionInstance] = []
        for instance in self.materialise(section, value, parent_key):
            descendants: List[SectionInstance] = []
            for child in self.schema.children(section):
                descendants.extend(
                    self.expand(child, instance.value, instance.instance_key)
                )
            leaves.extend(descendants or [instance])
        return leaves

    def contexts(self, root_value: Value) -> List[Tuple[Value, InstanceKey]]:
        container = self.schema.container
        if container is None:
            return [(root_value, ())]
        value = self.resolve_section(container, root_value)
        return [
            (instance.value, instance.instance_key)
            for instance in self.materialise(container, value, ())
        ]


def flatten(
    document_id: str,
    root_value: Value,
    schema: SchemaTree,
    target_component: str,
    *,
    diagnostics: Optional[Diagnostics] = None,
    array_policy: ArrayPolicy = ArrayPolicy.NORMALIZE,
) -> List[SectionInstance]:
    """Return the leaf section instances of ``target_component`` in ``root_value``.

    Struct sections keep their parent's instance key, Array sections append
    the element position. An instance is a leaf when none of its declared
    children produced an instance. Absent sections yield nothing.
    """
    component = schema.root(target_component)
    flattener = _Flattener(
        document_id, schema, diagnostics if diagnostics is not None else Diagnostics(), array_policy
    )
    if isinstance(root_value, Scalar):
        flattener._anomaly(component, "document root is a scalar")
        return []

    leaves: List[SectionInstance] = []
    for context, key in flattener.contexts(root_value):
        leaves.extend(flattener.expand(component, context, key))
    return leaves
