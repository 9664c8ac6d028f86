"""Adapt CCDA XML documents into the uniform value model.

The conversion follows the convention of XML-to-variant loaders: attributes
become ``_``-prefixed fields, text next to attributes or children lands in
``_VALUE`` (mixed-content text around child elements is joined with single
spaces), and a child tag that repeats becomes an array. A tag that occurs
once stays a single struct, which is why array-declared sections must accept
a lone object.
"""

from __future__ import annotations

from typing import Dict, List, Union

from lxml import etree

from .errors import SourceError
from .values import NULL, Array, Scalar, Struct, Value

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
ATTRIBUTE_PREFIX = "_"
TEXT_FIELD = "_VALUE"


def _local_name(tag: str) -> str:
    return etree.QName(tag).localname


def _attribute_name(name: str) -> str:
    qname = etree.QName(name)
    if qname.namespace == XSI_NS and qname.localname == "type":
        return f"{ATTRIBUTE_PREFIX}type"
    return f"{ATTRIBUTE_PREFIX}{qname.localname}"


def _element_value(element: etree._Element) -> Value:
    fields: Dict[str, Value] = {}
    for name, attr_value in element.attrib.items():
        fields[_attribute_name(name)] = Scalar(attr_value)

    grouped: Dict[str, List[Value]] = {}
    for child in element:
        if not isinstance(child.tag, str):
            continue
        grouped.setdefault(_local_name(child.tag), []).append(_element_value(child))

    for tag, values in grouped.items():
        fields[tag] = values[0] if len(values) == 1 else Array(tuple(values))

    parts = [element.text] + [child.tail for child in element]
    text = " ".join(part.strip() for part in parts if part and part.strip())
    if not fields:
        return Scalar(text) if text else NULL
    if text:
        fields[TEXT_FIELD] = Scalar(text)
    return Struct(fields)


def parse_xml(source: Union[bytes, str]) -> etree._Element:
    """Parse a document and return its root element.

    Bytes are decoded by the document's own encoding declaration. Text is
    already decoded, so any declaration it still carries is ignored.
    """
    if isinstance(source, str):
        data, encoding = source.encode("utf-8"), "utf-8"
    else:
        data, encoding = source, None
    try:
        parser = etree.XMLParser(
            resolve_entities=False, no_network=True, encoding=encoding
        )
        return etree.fromstring(data, parser)
    except etree.XMLSyntaxError as exc:
        raise SourceError(f"Malformed XML document: {exc}") from exc


def xml_text(root: etree._Element) -> str:
    """Serialise a parsed document as text, without an XML declaration."""
    return etree.tostring(root, encoding="unicode")


def adapt_xml(source: Union[bytes, str, etree._Element]) -> Value:
    """Convert an XML document into a :class:`Struct` rooted at its document element."""
    root = source if isinstance(source, etree._Element) else parse_xml(source)
    value = _element_value(root)
    if isinstance(value, Struct):
        return value
    # A document element without attributes or children still yields a struct.
    return Struct({TEXT_FIELD: value} if isinstance(value, Scalar) else {})
