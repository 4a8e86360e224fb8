import logging
from typing import Optional, Sequence, Tuple, Union
from xml.etree import ElementTree as stdlibElementTree

from cryptography.hazmat.primitives.hashes import Hash
from lxml import etree

from .algorithms import CanonicalizationMethod, DigestAlgorithm, get_digest_implementation
from .exceptions import AmbiguousElementReference, ElementNotFound, InvalidInput, MalformedDocument
from .util import _remove_sig, ds_tag, ensure_bytes, namespaces

logger = logging.getLogger(__name__)


class XMLProcessor:
    _default_parser, _parser = None, None

    @property
    def parser(self):
        if self._parser is None:
            if self._default_parser is None:
                self._default_parser = etree.XMLParser(resolve_entities=False)
            return self._default_parser
        return self._parser

    def _fromstring(self, xml_string, **kwargs):
        try:
            # lxml refuses str input that carries an encoding declaration
            xml_node = etree.fromstring(ensure_bytes(xml_string), parser=self.parser, **kwargs)
        except etree.XMLSyntaxError as e:
            raise MalformedDocument(f"Unable to parse XML document: {e}") from e
        for entity in xml_node.iter(etree.Entity):
            raise InvalidInput("Entities are not supported in XML input")
        return xml_node

    def _tostring(self, xml_node, **kwargs):
        return etree.tostring(xml_node, **kwargs)

    def get_root(self, data):
        if isinstance(data, (str, bytes)):
            if len(data) == 0:
                raise MalformedDocument("XML document is empty")
            return self._fromstring(data)
        elif isinstance(data, stdlibElementTree.Element):
            return self._fromstring(stdlibElementTree.tostring(data, encoding="utf-8"))
        elif isinstance(data, etree._ElementTree):
            return self._fromstring(self._tostring(data))
        else:
            # Create a separate copy of the node so we can modify the tree and avoid any c14n inconsistencies from
            # namespaces propagating from parent nodes. The lxml docs recommend using copy.deepcopy for this, but it
            # doesn't seem to preserve namespaces. The tail belongs to the parent, not to the copy.
            return self._fromstring(self._tostring(data, with_tail=False))


class XMLSignatureProcessor(XMLProcessor):
    """
    Shared canonicalization, digest and reference resolution logic for the signer and the verifier.
    """

    id_attributes: Tuple[str, ...] = ("Id", "ID", "id")

    def canonicalize(
        self, data, algorithm: Union[CanonicalizationMethod, str] = CanonicalizationMethod.CANONICAL_XML_1_0
    ) -> bytes:
        """
        Return the canonical form of **data** (XML text or an element). The input is not modified.
        """
        return self._c14n(self.get_root(data), algorithm=algorithm)

    def digest(self, data: Union[str, bytes], algorithm: Union[DigestAlgorithm, str] = DigestAlgorithm.SHA256) -> bytes:
        return self._get_digest(ensure_bytes(data), algorithm=algorithm)

    def _get_digest(self, data: bytes, algorithm: Union[DigestAlgorithm, str]) -> bytes:
        algorithm_implementation = get_digest_implementation(algorithm)()
        hasher = Hash(algorithm=algorithm_implementation)
        hasher.update(data)
        return hasher.finalize()

    def _find(self, element, query, require=True, xpath=""):
        namespace = "ds"
        if ":" in query:
            namespace, _, query = query.partition(":")
        result = element.find(f"{xpath}{namespace}:{query}", namespaces=namespaces)

        if require and result is None:
            raise InvalidInput(f"Expected to find XML element {query} in {element.tag}")
        return result

    def _findall(self, element, query, xpath=""):
        namespace = "ds"
        if ":" in query:
            namespace, _, query = query.partition(":")
        return element.findall(f"{xpath}{namespace}:{query}", namespaces=namespaces)

    def _c14n(
        self,
        nodes,
        algorithm: Union[CanonicalizationMethod, str],
        inclusive_ns_prefixes: Optional[Sequence[str]] = None,
    ) -> bytes:
        algorithm = CanonicalizationMethod.lookup(algorithm)
        exclusive, with_comments = algorithm.exclusive, algorithm.with_comments

        if not isinstance(nodes, list):
            nodes = [nodes]

        c14n = b""
        for node in nodes:
            try:
                c14n += etree.tostring(
                    node,
                    method="c14n",
                    exclusive=exclusive,
                    with_comments=with_comments,
                    inclusive_ns_prefixes=inclusive_ns_prefixes if exclusive else None,
                )
            except etree.C14NError as e:
                raise MalformedDocument(f"Unable to canonicalize {node.tag}: {e}") from e
        logger.debug("Canonicalized string (exclusive=%s, with_comments=%s): %s", exclusive, with_comments, c14n)
        return c14n

    def _apply_enveloped_transform(self, payload, signature=None):
        """
        Excise the signature being processed, and any other ds:Signature children of the referenced element, from
        the payload. Surrounding text is kept.
        """
        if signature is not None:
            _remove_sig(signature, idempotent=True)
        for sibling_signature in payload.findall(ds_tag("Signature")):
            _remove_sig(sibling_signature)
        return payload

    def _find_by_id(self, doc_root, id_value: str, id_attributes: Optional[Sequence[str]] = None):
        """
        Return every element carrying **id_value** in one of the ID attributes, in document order.
        """
        results = []
        for id_attribute in id_attributes or self.id_attributes:
            xpath_query = "//*[@*[local-name() = $attr] = $value]"
            for node in doc_root.xpath(xpath_query, attr=id_attribute, value=id_value):
                if node not in results:
                    results.append(node)
        return results

    def _resolve_reference(self, doc_root, reference):
        uri = reference.get("URI")
        if uri is None:
            raise InvalidInput("References without URIs are not supported")
        elif uri == "":
            return doc_root
        elif uri.startswith("#xpointer("):
            raise InvalidInput("XPointer references are not supported")
        elif uri.startswith("#"):
            results = self._find_by_id(doc_root, uri[1:])
            if len(results) > 1:
                raise AmbiguousElementReference(f"Ambiguous reference URI {uri} resolved to {len(results)} nodes")
            elif len(results) == 1:
                logger.debug("Resolved reference URI %s to %s", uri, results[0].tag)
                return results[0]
            raise ElementNotFound(f"Unable to resolve reference URI: {uri}")
        else:
            raise InvalidInput(f"External URI dereferencing is not supported: {uri}")
