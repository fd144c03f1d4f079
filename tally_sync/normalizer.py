"""
XML normalization for Tally report responses.

Converts the nested Tally element tree into Raw Records:
- attributes become fields with uppercased keys
- ``*.LIST`` children become repeated sub-records under the stripped key,
  accumulated across every occurrence of the tag
- leaf children become scalar string fields (first occurrence wins)
- other structural children also become lists of sub-records, so a section
  that appears once and a section that appears many times look the same;
  a tag already seen as a leaf keeps its scalar value

Values are kept as strings; numeric coercion belongs to the reconciler.
"""
from __future__ import annotations
from typing import Iterable, Optional, Union
from lxml import etree
from loguru import logger

from .entities import EntityType, RawRecord, get_spec
from .errors import ParseError
from .parsing import parse_int, sanitize_xml

LIST_MARKER = ".LIST"

_ERROR_PATHS = tuple(
    f"{prefix}{tag}"
    for tag in ("LINEERROR", "ERRORMSG")
    for prefix in ("./", "./BODY/", "./BODY/DATA/")
)


def _tag(elem: etree._Element) -> Optional[str]:
    # Comments and processing instructions have a non-string tag
    if not isinstance(elem.tag, str):
        return None
    return etree.QName(elem).localname


def _is_leaf(elem: etree._Element) -> bool:
    return not any(_tag(child) for child in elem)


def normalize_elements(elements: Iterable[etree._Element]) -> list[RawRecord]:
    """Normalize each element into one Raw Record, preserving document order."""
    records = []
    for elem in elements:
        record: RawRecord = {}
        for name, value in elem.attrib.items():
            record[etree.QName(name).localname.upper()] = value.strip()

        for child in elem:
            tag = _tag(child)
            if not tag:
                continue
            if tag.upper().endswith(LIST_MARKER):
                key = tag[: -len(LIST_MARKER)].upper()
                bucket = record.setdefault(key, [])
                if not isinstance(bucket, list):
                    bucket = record[key] = []
                # An empty marker only guarantees the key
                if len(child) or child.attrib or (child.text or "").strip():
                    bucket.extend(normalize_elements([child]))
            elif _is_leaf(child):
                key = tag.upper()
                if key not in record:
                    record[key] = (child.text or "").strip()
            else:
                key = tag.upper()
                bucket = record.get(key)
                if isinstance(bucket, str):
                    logger.warning(f"Field {key} is both a value and a section; keeping the value")
                    continue
                if bucket is None:
                    bucket = record[key] = []
                bucket.extend(normalize_elements([child]))
        records.append(record)
    return records


def _tally_error(root: etree._Element) -> Optional[str]:
    """
    Return the Tally error message carried by a response, if any.

    Only envelope-level elements are inspected; records may carry their own
    STATUS field.
    """
    if _tag(root) == "RESPONSE":
        return (root.text or "").strip() or "empty RESPONSE envelope"
    for path in _ERROR_PATHS:
        message = root.findtext(path)
        if message is not None:
            return message.strip() or "empty error element"
    status = root.findtext("./HEADER/STATUS")
    if status is not None and status.strip() == "0":
        return "Tally returned STATUS=0"
    body_response = root.find("./BODY/RESPONSE")
    if body_response is not None and "unknown request" in (body_response.text or "").lower():
        return body_response.text.strip()
    return None


def parse_document(xml_text: Union[str, bytes]) -> etree._Element:
    """Sanitize and parse a Tally response, raising ParseError on malformed XML."""
    if isinstance(xml_text, bytes):
        xml_text = xml_text.decode("utf-8", errors="replace")
    if not xml_text or not xml_text.strip():
        raise ParseError("Empty response from Tally")
    sanitized = sanitize_xml(xml_text)
    parser = etree.XMLParser(recover=False, huge_tree=True, resolve_entities=False)
    try:
        root = etree.fromstring(sanitized.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Malformed XML from Tally: {e}") from e

    error = _tally_error(root)
    if error:
        raise ParseError(f"Tally error: {error}")
    return root


def _outermost(root: etree._Element, tag: str) -> list[etree._Element]:
    found = []
    for elem in root.iter(tag):
        if any(_tag(ancestor) == tag for ancestor in elem.iterancestors()):
            continue
        found.append(elem)
    return found


def normalize(xml_text: Union[str, bytes], entity_type: Union[str, EntityType]) -> list[RawRecord]:
    """
    Parse a report response into Raw Records for one entity type.

    Args:
        xml_text: Raw response body from Tally
        entity_type: Entity whose record tag and list sections apply

    Returns:
        Raw Records in document order; every declared list section is
        present, empty when the source omitted it

    Raises:
        ParseError: Malformed XML or a Tally error envelope
    """
    spec = get_spec(entity_type)
    root = parse_document(xml_text)

    records = normalize_elements(_outermost(root, spec.record_tag))
    for record in records:
        for key in spec.list_sections:
            if not isinstance(record.get(key), list):
                record[key] = []

    logger.debug(f"Normalized {len(records)} {spec.entity_type.value} records from {spec.report}")
    return records


def max_alter_id(xml_text: Union[str, bytes]) -> int:
    """
    Return the highest ALTERID in a collection export, 0 when there is none.

    Raises:
        ParseError: Malformed XML or a Tally error envelope
    """
    root = parse_document(xml_text)
    ids = [parse_int(elem.text, default=None) for elem in root.iter("ALTERID")]
    return max((i for i in ids if i is not None), default=0)
