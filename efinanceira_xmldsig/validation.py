"""
XSD validation of e-Financeira documents.

Schemas are compiled with :class:`lxml.etree.XMLSchema` and kept in a process-wide cache keyed by the schema paths and
the hash of their contents, so an edited schema file is recompiled on next use.
"""

import hashlib
import logging
import os
import pathlib
import threading
from typing import Dict, Iterable, List, Sequence, Tuple, Union

from lxml import etree

from .exceptions import XmlValidationError
from .processor import XMLProcessor
from .util import ensure_bytes

logger = logging.getLogger(__name__)

xs_namespace = "http://www.w3.org/2001/XMLSchema"

_SchemaKey = Tuple[Tuple[str, str], ...]

_schema_cache: Dict[_SchemaKey, Tuple[etree.XMLSchema, threading.Lock]] = {}
_schema_cache_lock = threading.Lock()


def clear_schema_cache() -> None:
    with _schema_cache_lock:
        _schema_cache.clear()


def _format_error(entry) -> str:
    return f"Line {entry.line}, column {entry.column}: {entry.message}"


def _schema_key(xsd_paths: Sequence[str]) -> _SchemaKey:
    key = []
    for path in sorted(os.path.abspath(p) for p in xsd_paths):
        try:
            with open(path, "rb") as fh:
                content_hash = hashlib.sha256(fh.read()).hexdigest()
        except OSError as e:
            raise XmlValidationError(f"Schema file not found or unreadable: {path}") from e
        key.append((path, content_hash))
    return tuple(key)


def _wrapper_schema(paths: Iterable[str]) -> etree._Element:
    # A schema that imports or includes every given schema, so they compile into one set
    wrapper = etree.Element(etree.QName(xs_namespace, "schema"), nsmap={"xs": xs_namespace})
    for path in paths:
        target_namespace = etree.parse(path).getroot().get("targetNamespace")
        location = pathlib.Path(path).as_uri()
        if target_namespace:
            etree.SubElement(
                wrapper, etree.QName(xs_namespace, "import"), namespace=target_namespace, schemaLocation=location
            )
        else:
            etree.SubElement(wrapper, etree.QName(xs_namespace, "include"), schemaLocation=location)
    return wrapper


def _compile_schema(key: _SchemaKey) -> etree.XMLSchema:
    paths = [path for path, _ in key]
    try:
        if len(paths) == 1:
            return etree.XMLSchema(etree.parse(paths[0]))
        return etree.XMLSchema(_wrapper_schema(paths))
    except (etree.XMLSchemaParseError, etree.XMLSyntaxError) as e:
        errors = [_format_error(entry) for entry in e.error_log]
        raise XmlValidationError(f"Unable to compile schema {', '.join(paths)}: {e}", errors) from e


def get_schema(xsd_paths: Union[str, Sequence[str]]) -> Tuple[etree.XMLSchema, threading.Lock]:
    if isinstance(xsd_paths, str):
        xsd_paths = [xsd_paths]
    if not xsd_paths:
        raise XmlValidationError("At least one schema path is required")
    key = _schema_key(xsd_paths)
    try:
        return _schema_cache[key]
    except KeyError:
        pass
    with _schema_cache_lock:
        if key not in _schema_cache:
            logger.debug("Schema cache miss, compiling %s", [path for path, _ in key])
            _schema_cache[key] = (_compile_schema(key), threading.Lock())
        return _schema_cache[key]


class XmlValidator(XMLProcessor):
    """
    Validate XML documents against one or more XSD files.

    Example:

    .. code-block:: python

        errors = XmlValidator().validate_and_get_errors(xml, ["evtMovOpFin-v1_2_1.xsd", "xmldsig-core-schema.xsd"])
    """

    def validate_and_get_errors(self, xml, xsd_paths: Union[str, Sequence[str]]) -> List[str]:
        """
        Return the validation errors as ``"Line L, column C: message"`` strings. The list is empty when the document
        is valid. Documents that are not well-formed are reported the same way.

        :raises: :class:`efinanceira_xmldsig.exceptions.XmlValidationError` if a schema is missing or does not compile
        """
        schema, lock = get_schema(xsd_paths)
        try:
            doc = etree.fromstring(ensure_bytes(xml), parser=self.parser)
        except etree.XMLSyntaxError as e:
            return [_format_error(entry) for entry in e.error_log] or [str(e)]
        # The error log belongs to the schema object
        with lock:
            if schema.validate(doc):
                return []
            return [_format_error(entry) for entry in schema.error_log]

    def validate(self, xml, xsd_paths: Union[str, Sequence[str]]) -> None:
        """
        :raises: :class:`efinanceira_xmldsig.exceptions.XmlValidationError` carrying the list of errors
        """
        errors = self.validate_and_get_errors(xml, xsd_paths)
        if errors:
            raise XmlValidationError(f"XML document is not valid: {errors[0]}", errors)
