"""
Basic Outcomes (LTI 1.1) POX envelopes.

Builds ``imsx_POXEnvelopeRequest``/``imsx_POXEnvelopeResponse`` documents
and parses incoming ones into plain dictionaries.  Parsed tag names are
lower-cased local names so callers can ignore namespace prefixes and the
capitalisation differences between LMS vendors.
"""

from __future__ import annotations

import math
from typing import Any

from lxml import etree

from .errors import ValidationError

NAMESPACE = "http://www.imsglobal.org/services/ltiv1p1/xsd/imsoms_v1p0"
VERSION = "V1.0"

_parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


def _el(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    child = etree.SubElement(parent, f"{{{NAMESPACE}}}{tag}")
    if text is not None:
        child.text = text
    return child


def _serialize(root: etree._Element) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


def build_replace_result_request(message_id: str, sourcedid: str, score: float) -> bytes:
    """Build a replaceResultRequest envelope for ``sourcedid``."""
    root = etree.Element(f"{{{NAMESPACE}}}imsx_POXEnvelopeRequest", nsmap={None: NAMESPACE})
    header = _el(_el(root, "imsx_POXHeader"), "imsx_POXRequestHeaderInfo")
    _el(header, "imsx_version", VERSION)
    _el(header, "imsx_messageIdentifier", message_id)

    record = _el(_el(_el(root, "imsx_POXBody"), "replaceResultRequest"), "resultRecord")
    _el(_el(record, "sourcedGUID"), "sourcedId", sourcedid)
    result_score = _el(_el(record, "result"), "resultScore")
    _el(result_score, "language", "en")
    _el(result_score, "textString", str(score))
    return _serialize(root)


def build_response(
    code_major: str,
    severity: str,
    description: str,
    message_id: str,
    message_ref: str | None = None,
    operation: str | None = None,
    body_operation: str | None = None,
) -> bytes:
    """
    Build an ``imsx_POXEnvelopeResponse``.

    Args:
        code_major: ``success``, ``failure`` or ``unsupported``
        severity: ``status``, ``warning`` or ``error``, or a failure code
            such as ``invalididfail``
        description: Human-readable status text
        message_id: Identifier for this response
        message_ref: ``imsx_messageIdentifier`` of the request being answered
        operation: Operation name (e.g. ``replaceResult``)
        body_operation: Element placed in the body, e.g. ``replaceResultResponse``

    Returns:
        UTF-8 encoded XML document
    """
    root = etree.Element(f"{{{NAMESPACE}}}imsx_POXEnvelopeResponse", nsmap={None: NAMESPACE})
    header = _el(_el(root, "imsx_POXHeader"), "imsx_POXResponseHeaderInfo")
    _el(header, "imsx_version", VERSION)
    _el(header, "imsx_messageIdentifier", message_id)

    status = _el(header, "imsx_statusInfo")
    _el(status, "imsx_codeMajor", code_major)
    _el(status, "imsx_severity", severity)
    _el(status, "imsx_description", description)
    _el(status, "imsx_messageRefIdentifier", message_ref or "")
    if operation:
        _el(status, "imsx_operationRefIdentifier", operation)

    body = _el(root, "imsx_POXBody")
    if body_operation:
        _el(body, body_operation)
    return _serialize(root)


def _to_dict(element: etree._Element) -> Any:
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        return (element.text or "").strip()
    return {etree.QName(child).localname.lower(): _to_dict(child) for child in children}


def _dig(content: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(content, dict):
            return None
        content = content.get(key)
    return content


def parse_document(xml: bytes | str) -> tuple[str, dict]:
    """
    Parse a POX document.

    Returns:
        ``(root_name, content)`` with lower-cased local tag names

    Raises:
        ValidationError: If the document is not well-formed XML
    """
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    if not xml or not xml.strip():
        raise ValidationError("Empty XML body")
    try:
        root = etree.fromstring(xml, parser=_parser)
    except etree.XMLSyntaxError as e:
        raise ValidationError(f"Malformed XML body: {e}") from e
    content = _to_dict(root)
    return etree.QName(root).localname.lower(), content if isinstance(content, dict) else {}


def parse_request(xml: bytes | str) -> tuple[str, dict]:
    """
    Parse an incoming Basic Outcomes request.

    Returns:
        ``(message_id, body)`` where ``body`` maps operation names such as
        ``replaceresultrequest`` to their content
    """
    root_name, content = parse_document(xml)
    if root_name != "imsx_poxenveloperequest":
        raise ValidationError(f"Unexpected root element {root_name}")

    message_id = _dig(content, "imsx_poxheader", "imsx_poxrequestheaderinfo", "imsx_messageidentifier")
    if not message_id or not isinstance(message_id, str):
        raise ValidationError("Missing imsx_messageIdentifier")
    body = content.get("imsx_poxbody")
    if not isinstance(body, dict) or not body:
        raise ValidationError("Missing imsx_POXBody")
    return message_id, body


def parse_response(xml: bytes | str) -> tuple[str, str]:
    """
    Parse a Basic Outcomes response.

    Returns:
        ``(code_major, description)``
    """
    root_name, content = parse_document(xml)
    if root_name != "imsx_poxenveloperesponse":
        raise ValidationError(f"Unexpected root element {root_name}")
    status = _dig(content, "imsx_poxheader", "imsx_poxresponseheaderinfo", "imsx_statusinfo")
    if not isinstance(status, dict):
        return "", ""
    return status.get("imsx_codemajor") or "", status.get("imsx_description") or ""


def validate_replace_result(request: Any) -> tuple[float, str]:
    """
    Pull the score and sourcedId out of a parsed replaceResultRequest.

    Raises:
        ValidationError: If either value is missing or the score is not in 0..1
    """
    record = _dig(request, "resultrecord")
    if not isinstance(record, dict):
        raise ValidationError("Missing resultRecord")

    text = _dig(record, "result", "resultscore", "textstring")
    if not text or not isinstance(text, str):
        raise ValidationError("Missing resultScore textString")
    try:
        score = float(text)
    except ValueError as e:
        raise ValidationError(f"Invalid score {text}") from e
    if math.isnan(score) or score < 0 or score > 1:
        raise ValidationError(f"Score {text} must be between 0 and 1")

    sourcedid = _dig(record, "sourcedguid", "sourcedid")
    if not sourcedid or not isinstance(sourcedid, str):
        raise ValidationError("Missing sourcedGUID sourcedId")
    return score, sourcedid


def split_sourcedid(sourcedid: str) -> tuple[str, str, str, str]:
    """
    Split ``context:resource:user:gradebook``.

    Raises:
        ValidationError: With code ``invalididfail`` for any other arity
    """
    parts = sourcedid.split(":")
    if len(parts) != 4:
        raise ValidationError(
            f"Invalid Source ID {sourcedid} - expected 4 parts", code="invalididfail"
        )
    return parts[0], parts[1], parts[2], parts[3]


def operation_name(body: dict) -> tuple[str, str | None]:
    """
    Find the requested operation in a parsed body.

    Returns:
        ``(operation, element)``, e.g. ``("readresult", "readresultrequest")``;
        ``("unknown", None)`` when no ``*request`` element is present
    """
    for name in body:
        if name.endswith("request"):
            return name[: -len("request")], name
    return "unknown", None
