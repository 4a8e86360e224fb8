import logging
from base64 import b64decode
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptographyInvalidSignature
from cryptography.exceptions import UnsupportedAlgorithm as CryptographyUnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, PSS, AsymmetricPadding, PKCS1v15
from lxml import etree

from .algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
    digest_algorithm_implementations,
    digest_method_uri,
)
from .exceptions import (
    ElementNotFound,
    InvalidDigest,
    InvalidInput,
    InvalidSignature,
    MalformedDocument,
    UnsupportedAlgorithm,
    UnsupportedDigestAlgorithm,
    UnsupportedSignatureAlgorithm,
)
from .processor import XMLSignatureProcessor
from .util import ds_tag, ensure_bytes, namespaces

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureConfiguration:
    """
    A container holding signature settings that will be used to assert properties of the signature.
    """

    signature_methods: FrozenSet[SignatureMethod] = frozenset(sm for sm in SignatureMethod if "SHA1" not in sm.name)
    """
    Set of acceptable signature methods (signature algorithms). Any signature generated using an algorithm not listed
    here will fail verification.
    """

    digest_algorithms: FrozenSet[str] = field(
        default_factory=lambda: frozenset(da.value for da in DigestAlgorithm if "SHA1" not in da.name)
    )
    """
    Set of acceptable DigestMethod URIs. Digest algorithms registered with
    :func:`efinanceira_xmldsig.algorithms.register_digest_algorithm` must be added here to be accepted.
    """

    id_attributes: Tuple[str, ...] = ("Id", "ID", "id")
    "Names of the attributes that reference URIs (``#value``) are matched against, in order of preference."

    x509_cert: Optional[x509.Certificate] = None
    """
    A trusted certificate, pre-shared out-of-band, whose public key is used instead of the certificate carried in the
    signature's ``KeyInfo``.
    """


class VerificationStatus(Enum):
    VALID = "valid"
    SIGNATURE_NOT_FOUND = "signature-not-found"
    ELEMENT_NOT_FOUND = "element-not-found"
    DIGEST_MISMATCH = "digest-mismatch"
    SIGNATURE_MISMATCH = "signature-mismatch"
    UNSUPPORTED_ALGORITHM = "unsupported-algorithm"
    MALFORMED_INPUT = "malformed-input"


@dataclass(frozen=True)
class VerifyResult:
    """
    Outcome of :meth:`XmlVerifier.check`. A result is truthy only when the signature is valid.
    """

    status: VerificationStatus

    message: str = ""
    "A human readable description of the failure, empty when valid"

    signed_data: Optional[bytes] = None
    "The canonical bytes covered by the reference digest, when the signature is valid"

    def __bool__(self):
        return self.status is VerificationStatus.VALID


class XmlVerifier(XMLSignatureProcessor):
    """
    Verify enveloped XML Signatures produced by :class:`efinanceira_xmldsig.XmlSigner` (or by any XML-DSig
    implementation using the same algorithms). The public key is taken from the certificate embedded in
    ``KeyInfo/X509Data`` unless a trusted certificate is configured.

    Three entry points are provided:

    * :meth:`verify` returns ``True`` or ``False`` and never raises;
    * :meth:`check` returns a :class:`VerifyResult` telling why verification failed;
    * :meth:`assert_valid` raises the typed exception for the failure.

    Only the first ``Signature`` element of the document, in document order, is verified.

    :param config: Algorithms and certificate accepted by this verifier.
    :param id_attribute:
        Name of an additional attribute that reference URIs are matched against, tried before those in
        ``config.id_attributes``. Pass the ``id_attribute_name`` the document was signed with when it is not one of
        ``Id``, ``ID`` or ``id``.
    """

    def __init__(self, config: SignatureConfiguration = SignatureConfiguration(), id_attribute: Optional[str] = None):
        self.config = config
        self.id_attributes = config.id_attributes
        if id_attribute is not None and id_attribute not in self.id_attributes:
            self.id_attributes = (id_attribute,) + tuple(self.id_attributes)
        self._parser = None

    def verify(self, signed_xml) -> bool:
        return bool(self.check(signed_xml))

    def check(self, signed_xml) -> VerifyResult:
        try:
            signed_data = self.assert_valid(signed_xml)
        except _SignatureNotFound as e:
            return VerifyResult(VerificationStatus.SIGNATURE_NOT_FOUND, str(e))
        except ElementNotFound as e:
            return VerifyResult(VerificationStatus.ELEMENT_NOT_FOUND, str(e))
        except InvalidDigest as e:
            return VerifyResult(VerificationStatus.DIGEST_MISMATCH, str(e))
        except InvalidSignature as e:
            return VerifyResult(VerificationStatus.SIGNATURE_MISMATCH, str(e))
        except UnsupportedAlgorithm as e:
            return VerifyResult(VerificationStatus.UNSUPPORTED_ALGORITHM, str(e))
        except (InvalidInput, ValueError, TypeError, CryptographyUnsupportedAlgorithm) as e:
            return VerifyResult(VerificationStatus.MALFORMED_INPUT, str(e))
        return VerifyResult(VerificationStatus.VALID, signed_data=signed_data)

    def assert_valid(self, signed_xml) -> bytes:
        """
        Verify the first signature in **signed_xml** and return the canonical bytes it covers.

        :raises:
            :class:`efinanceira_xmldsig.exceptions.MalformedDocument` if the document cannot be parsed or contains
            no signature,
            :class:`efinanceira_xmldsig.exceptions.ElementNotFound` if the reference cannot be resolved,
            :class:`efinanceira_xmldsig.exceptions.InvalidDigest` on digest mismatch,
            :class:`efinanceira_xmldsig.exceptions.InvalidSignature` on signature value mismatch,
            :class:`efinanceira_xmldsig.exceptions.UnsupportedAlgorithm` for unknown or forbidden algorithms.
        """
        if signed_xml is None:
            raise MalformedDocument("XML document is empty")
        root = self.get_root(signed_xml)
        signature = self._get_signature(root)

        signed_info = self._find(signature, "SignedInfo")
        c14n_method = self._find(signed_info, "CanonicalizationMethod")
        c14n_algorithm = CanonicalizationMethod.lookup(c14n_method.get("Algorithm"))
        signature_alg = SignatureMethod.lookup(self._find(signed_info, "SignatureMethod").get("Algorithm"))
        if signature_alg not in self.config.signature_methods:
            raise UnsupportedSignatureAlgorithm(f"Signature method {signature_alg.name} forbidden by configuration")

        references = self._findall(signed_info, "Reference")
        if len(references) == 0:
            raise InvalidInput("Expected to find at least one Reference in SignedInfo")
        signed_data = b""
        for idx, reference in enumerate(references):
            signed_data += self._verify_reference(reference, idx, root)

        # SignedInfo is canonicalized in place so that namespaces inherited from the document are accounted for
        signed_info_c14n = self._c14n(
            signed_info, algorithm=c14n_algorithm, inclusive_ns_prefixes=self._get_inclusive_ns_prefixes(c14n_method)
        )
        signature_value = self._find(signature, "SignatureValue")
        raw_signature = b64decode(ensure_bytes("".join((signature_value.text or "").split())))
        public_key = self._get_public_key(signature)
        self._verify_signature_with_pubkey(signed_info_c14n, raw_signature, public_key, signature_alg)
        return signed_data

    def _get_signature(self, root):
        if root.tag == ds_tag("Signature"):
            return root
        signature = self._find(root, "Signature", require=False, xpath=".//")
        if signature is None:
            raise _SignatureNotFound("Expected to find XML element Signature in data")
        return signature

    def _get_public_key(self, signature):
        if self.config.x509_cert is not None:
            cert = self.config.x509_cert
        else:
            x509_certificate = signature.find("ds:KeyInfo/ds:X509Data/ds:X509Certificate", namespaces=namespaces)
            if x509_certificate is None or not x509_certificate.text:
                raise InvalidSignature("Expected to find an X509Certificate element in the signature KeyInfo")
            cert = x509.load_der_x509_certificate(b64decode("".join(x509_certificate.text.split())))
        key = cert.public_key()
        if not isinstance(key, rsa.RSAPublicKey):
            raise InvalidSignature("Signature certificate does not carry an RSA public key")
        return key

    def _verify_signature_with_pubkey(
        self,
        signed_info_c14n: bytes,
        raw_signature: bytes,
        key: rsa.RSAPublicKey,
        signature_alg: SignatureMethod,
    ) -> None:
        digest_alg_impl = digest_algorithm_implementations[signature_alg]()
        padding: AsymmetricPadding
        if signature_alg.uses_pss:
            padding = PSS(mgf=MGF1(algorithm=digest_alg_impl), salt_length=digest_alg_impl.digest_size)
        else:
            padding = PKCS1v15()
        try:
            key.verify(raw_signature, data=signed_info_c14n, padding=padding, algorithm=digest_alg_impl)
        except (CryptographyInvalidSignature, ValueError, TypeError, CryptographyUnsupportedAlgorithm) as e:
            raise InvalidSignature(f"Signature verification failed: {signature_alg.name}") from e
        logger.debug("Signature value verified with %s", signature_alg.name)

    def _get_inclusive_ns_prefixes(self, transform_node):
        inclusive_namespaces = transform_node.find("./ec:InclusiveNamespaces[@PrefixList]", namespaces=namespaces)
        if inclusive_namespaces is None:
            return None
        else:
            return inclusive_namespaces.get("PrefixList").split(" ")

    def _apply_transforms(self, payload, *, transforms_node: Optional[etree._Element], signature: etree._Element):
        transforms = []
        if transforms_node is not None:
            transforms = self._findall(transforms_node, "Transform")

        c14n_applied = None
        for transform in transforms:
            algorithm = transform.get("Algorithm")
            if algorithm == SignatureConstructionMethod.enveloped.value:
                payload = self._apply_enveloped_transform(payload, signature)
                continue
            c14n_algorithm_from_transform = CanonicalizationMethod.lookup(algorithm)

            # Canonicalize a separate copy, so that the c14n output does not depend on where the payload sits
            payload_copy = self._fromstring(self._tostring(payload, with_tail=False))
            c14n_applied = self._c14n(
                payload_copy,
                algorithm=c14n_algorithm_from_transform,
                inclusive_ns_prefixes=self._get_inclusive_ns_prefixes(transform),
            )

        if c14n_applied is None:
            payload_copy = self._fromstring(self._tostring(payload, with_tail=False))
            c14n_applied = self._c14n(payload_copy, algorithm=CanonicalizationMethod.CANONICAL_XML_1_0)
        return c14n_applied

    def _verify_reference(self, reference, index, root) -> bytes:
        copied_root = self._fromstring(self._tostring(root))
        copied_signature = self._get_signature(copied_root)
        transforms = self._find(reference, "Transforms", require=False)
        digest_method_alg = self._find(reference, "DigestMethod").get("Algorithm")
        digest_value = self._find(reference, "DigestValue")

        digest_uri = digest_method_uri(digest_method_alg)
        if digest_uri not in self.config.digest_algorithms:
            raise UnsupportedDigestAlgorithm(f"Digest algorithm {digest_uri} forbidden by configuration")

        payload = self._resolve_reference(copied_root, reference)
        payload_c14n = self._apply_transforms(payload, transforms_node=transforms, signature=copied_signature)

        expected = b64decode(ensure_bytes("".join((digest_value.text or "").split())))
        if expected != self._get_digest(payload_c14n, digest_uri):
            raise InvalidDigest(f"Digest mismatch for reference {index} ({reference.get('URI')})")
        return payload_c14n


class _SignatureNotFound(MalformedDocument):
    pass
