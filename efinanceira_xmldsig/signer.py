import logging
from base64 import b64encode
from dataclasses import dataclass
from typing import List, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm as CryptographyUnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, PSS, PKCS1v15
from cryptography.hazmat.primitives.serialization import Encoding
from lxml.etree import SubElement, _Element

from .algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
    digest_algorithm_implementations,
    digest_method_uri,
)
from .certificates import CertificateResolver, FileCertificateResolver, InMemoryCertificateResolver, SigningCertificate
from .exceptions import (
    AmbiguousElementReference,
    ElementNotFound,
    InvalidSignOptions,
    SignatureComputationError,
    UnsupportedDigestAlgorithm,
    UnsupportedSignatureAlgorithm,
)
from .processor import XMLSignatureProcessor
from .util import ds_tag, namespaces
from .verifier import XmlVerifier

logger = logging.getLogger(__name__)


@dataclass
class SignOptions:
    """
    Options for signing one element of an e-Financeira document. The element to sign is the one named
    **element_to_sign_name** whose **id_attribute_name** attribute equals **id_value**.

    The signing certificate comes from exactly one of: **certificate**, **certificate_resolver**, or the
    **pfx_path**/**pfx_password** pair.
    """

    element_to_sign_name: str = ""
    "Local name of the element to sign, for example ``evtMovOpFin``."

    id_value: str = ""
    "Value of the ID attribute of the element to sign. The signature reference URI is ``#`` followed by this value."

    id_attribute_name: str = "Id"
    """
    Name of the attribute carrying **id_value**. Signatures made with a name other than ``Id``, ``ID`` or ``id`` are
    verified with ``XmlVerifier(id_attribute=...)``.
    """

    certificate: Optional[SigningCertificate] = None
    "In-memory certificate with private key."

    pfx_path: Optional[str] = None
    "Path to a PKCS#12 (``.pfx``/``.p12``) or PEM file holding the certificate and private key."

    pfx_password: Optional[str] = None

    certificate_resolver: Optional[CertificateResolver] = None
    """
    Any :class:`efinanceira_xmldsig.certificates.CertificateResolver`, for example a
    :class:`efinanceira_xmldsig.certificates.StoreCertificateResolver` looking a certificate up by thumbprint.
    """

    canonicalization_method: Union[CanonicalizationMethod, str] = CanonicalizationMethod.CANONICAL_XML_1_0.value
    signature_method: Union[SignatureMethod, str] = SignatureMethod.RSA_SHA256.value
    digest_method: Union[DigestAlgorithm, str] = DigestAlgorithm.SHA256.value

    include_certificate: bool = True
    "Embed the signer certificate in ``KeyInfo/X509Data``."

    include_certificate_chain: bool = False
    """
    Also embed the issuers of the signer certificate that can be resolved from the certificates bundled with it.
    Issuers that cannot be resolved are left out.
    """

    def validate(self):
        """
        Check that the options are complete.

        :raises: :class:`efinanceira_xmldsig.exceptions.InvalidSignOptions`
        """
        if self.certificate is None and self.certificate_resolver is None and not (self.pfx_path and self.pfx_password):
            raise InvalidSignOptions(
                "A certificate is required: set certificate, certificate_resolver, or pfx_path and pfx_password"
            )
        if not self.element_to_sign_name:
            raise InvalidSignOptions("element_to_sign_name is required")
        if not self.id_value:
            raise InvalidSignOptions("id_value is required")
        if not self.id_attribute_name:
            raise InvalidSignOptions("id_attribute_name must not be empty")

    def get_certificate_resolver(self) -> CertificateResolver:
        if self.certificate is not None:
            return InMemoryCertificateResolver(self.certificate)
        if self.certificate_resolver is not None:
            return self.certificate_resolver
        return FileCertificateResolver(self.pfx_path, self.pfx_password)  # type: ignore

    def resolve_certificate(self) -> SigningCertificate:
        """
        :raises: :class:`efinanceira_xmldsig.exceptions.CertificateLoadError`
        """
        return self.get_certificate_resolver().resolve()


class XmlSigner(XMLSignatureProcessor):
    """
    Create an enveloped XML Signature over one element of an e-Financeira document. A signer holds no state between
    calls and can be shared by threads.

    Example:

    .. code-block:: python

        options = SignOptions(
            element_to_sign_name="evtMovOpFin",
            id_value="ID1234567890",
            pfx_path="certificado.pfx",
            pfx_password="senha",
        )
        signed_xml = XmlSigner().sign(xml, options)
    """

    def __init__(self, namespaces_map=None):
        self.namespaces = namespaces_map if namespaces_map is not None else {None: namespaces.ds}
        self._parser = None

    def check_deprecated_methods(self, sign_alg: SignatureMethod, digest_uri: str):
        msg = "SHA1-based algorithms are not supported in the default configuration because they are not secure"
        if "SHA1" in sign_alg.name:
            raise UnsupportedSignatureAlgorithm(msg)
        if digest_uri == DigestAlgorithm.SHA1.value:
            raise UnsupportedDigestAlgorithm(msg)

    def _resolve_algorithms(self, options: SignOptions):
        c14n_alg = CanonicalizationMethod.lookup(options.canonicalization_method)
        sign_alg = SignatureMethod.lookup(options.signature_method)
        digest_uri = digest_method_uri(options.digest_method)
        self.check_deprecated_methods(sign_alg, digest_uri)
        return c14n_alg, sign_alg, digest_uri

    def sign(self, xml: Union[str, bytes], options: SignOptions) -> str:
        """
        Sign the element described by **options** and return the whole document, with a ``Signature`` element
        appended as the last child of the signed element, as UTF-8 text. The input is not modified.

        :raises:
            :class:`efinanceira_xmldsig.exceptions.InvalidSignOptions`,
            :class:`efinanceira_xmldsig.exceptions.MalformedDocument`,
            :class:`efinanceira_xmldsig.exceptions.ElementNotFound`,
            :class:`efinanceira_xmldsig.exceptions.AmbiguousElementReference`,
            :class:`efinanceira_xmldsig.exceptions.CertificateLoadError`,
            :class:`efinanceira_xmldsig.exceptions.UnsupportedAlgorithm`,
            :class:`efinanceira_xmldsig.exceptions.SignatureComputationError`
        """
        if options is None:
            raise InvalidSignOptions("Sign options are required")
        options.validate()
        c14n_alg, sign_alg, digest_uri = self._resolve_algorithms(options)

        signing_cert = options.resolve_certificate()
        if not signing_cert.has_rsa_private_key:
            raise InvalidSignOptions(f"Certificate {signing_cert.subject} has no RSA private key to sign with")

        doc_root = self.get_root(xml)
        element_to_sign = self._find_element_to_sign(doc_root, options)

        sig_root = SubElement(element_to_sign, ds_tag("Signature"), nsmap=self.namespaces)
        reference_uri = "#" + options.id_value
        payload = self._apply_enveloped_transform(self.get_root(element_to_sign))
        payload_c14n = self._c14n(payload, algorithm=c14n_alg)
        digest = self._get_digest(payload_c14n, algorithm=digest_uri)

        signed_info = self._build_signed_info(sig_root, reference_uri, c14n_alg, sign_alg, digest_uri, digest)
        signature_value = SubElement(sig_root, ds_tag("SignatureValue"))
        signed_info_c14n = self._c14n(signed_info, algorithm=c14n_alg)
        signature_value.text = b64encode(self._compute_signature(signed_info_c14n, signing_cert, sign_alg)).decode()

        if options.include_certificate:
            self._add_key_info(sig_root, signing_cert, include_chain=options.include_certificate_chain)

        logger.debug("Signed %s with reference URI %s", element_to_sign.tag, reference_uri)
        # Comments, processing instructions and the DOCTYPE around the root are part of the document
        return self._tostring(doc_root.getroottree(), xml_declaration=True, encoding="UTF-8").decode("utf-8")

    def verify_signature(self, signed_xml, id_attribute_name: Optional[str] = None) -> bool:
        """
        Convenience wrapper around :meth:`efinanceira_xmldsig.XmlVerifier.verify`. Pass the **id_attribute_name**
        used for signing when it is not one of ``Id``, ``ID`` or ``id``.
        """
        return XmlVerifier(id_attribute=id_attribute_name).verify(signed_xml)

    def _find_element_to_sign(self, doc_root, options: SignOptions) -> _Element:
        id_attributes = [options.id_attribute_name] + [a for a in self.id_attributes if a != options.id_attribute_name]
        with_id = self._find_by_id(doc_root, options.id_value, id_attributes=id_attributes)
        matches = [
            el
            for el in self._find_by_id(doc_root, options.id_value, id_attributes=[options.id_attribute_name])
            if _local_name(el) == options.element_to_sign_name
        ]
        if not matches:
            raise ElementNotFound(
                f"Element {options.element_to_sign_name} with {options.id_attribute_name}='{options.id_value}' "
                "not found"
            )
        if len(with_id) > 1:
            raise AmbiguousElementReference(f"ID value '{options.id_value}' is carried by {len(with_id)} elements")
        return matches[0]

    def _build_signed_info(self, sig_root, reference_uri, c14n_alg, sign_alg, digest_uri, digest) -> _Element:
        signed_info = SubElement(sig_root, ds_tag("SignedInfo"))
        SubElement(signed_info, ds_tag("CanonicalizationMethod"), Algorithm=c14n_alg.value)
        SubElement(signed_info, ds_tag("SignatureMethod"), Algorithm=sign_alg.value)
        reference_node = SubElement(signed_info, ds_tag("Reference"), URI=reference_uri)
        transforms = SubElement(reference_node, ds_tag("Transforms"))
        SubElement(transforms, ds_tag("Transform"), Algorithm=SignatureConstructionMethod.enveloped.value)
        SubElement(transforms, ds_tag("Transform"), Algorithm=c14n_alg.value)
        SubElement(reference_node, ds_tag("DigestMethod"), Algorithm=digest_uri)
        digest_value = SubElement(reference_node, ds_tag("DigestValue"))
        digest_value.text = b64encode(digest).decode()
        return signed_info

    def _compute_signature(self, signed_info_c14n: bytes, signing_cert: SigningCertificate, sign_alg) -> bytes:
        hash_alg = digest_algorithm_implementations[sign_alg]()
        if sign_alg.uses_pss:
            # See https://www.rfc-editor.org/rfc/rfc9231.html#section-2.3.10
            padding = PSS(mgf=MGF1(algorithm=hash_alg), salt_length=hash_alg.digest_size)
        else:
            padding = PKCS1v15()
        try:
            return signing_cert.private_key.sign(signed_info_c14n, padding=padding, algorithm=hash_alg)
        except (ValueError, TypeError, CryptographyUnsupportedAlgorithm) as e:
            raise SignatureComputationError(f"Unable to compute {sign_alg.name} signature: {e}") from e

    def _add_key_info(self, sig_root, signing_cert: SigningCertificate, include_chain: bool = False):
        key_info = SubElement(sig_root, ds_tag("KeyInfo"))
        x509_data = SubElement(key_info, ds_tag("X509Data"))
        cert_chain: List = [signing_cert.certificate]
        if include_chain:
            cert_chain.extend(c for c in signing_cert.chain() if c != signing_cert.certificate)
        for cert in cert_chain:
            x509_certificate = SubElement(x509_data, ds_tag("X509Certificate"))
            x509_certificate.text = b64encode(cert.public_bytes(Encoding.DER)).decode()


def _local_name(element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return tag.rpartition("}")[2]
