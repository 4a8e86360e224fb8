from enum import Enum
from typing import Callable, Dict, Union

from cryptography.hazmat.primitives import hashes

from .exceptions import (
    InvalidInput,
    UnsupportedCanonicalizationMethod,
    UnsupportedDigestAlgorithm,
    UnsupportedSignatureAlgorithm,
)


class SignatureConstructionMethod(Enum):
    """
    Signature construction methods. e-Financeira documents carry enveloped signatures only: the Signature element
    is a child of the element it signs, and is excluded from its own digest by the enveloped-signature transform.
    """

    enveloped = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"


class FragmentLookupMixin:
    @classmethod
    def from_fragment(cls, fragment):
        for i in cls:  # type: ignore
            if i.value.endswith("#" + fragment):
                return i
        else:
            raise _unsupported_error(cls)(f"Unrecognized {cls.__name__} identifier fragment: {fragment}")


class UnsupportedAlgorithmErrorMixin:
    @classmethod
    def _missing_(cls, value):
        raise _unsupported_error(cls)(f"Unrecognized {cls.__name__}: {value}")

    @classmethod
    def lookup(cls, value):
        """
        Resolve a member from a member, a full algorithm URI, or a URI fragment such as ``sha256``.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and "#" not in value and "/" not in value:
            return cls.from_fragment(value)  # type: ignore
        return cls(value)  # type: ignore

    def __repr__(self):
        return f"{self.__class__.__name__}.{self.name}"  # type: ignore


class DigestAlgorithm(FragmentLookupMixin, UnsupportedAlgorithmErrorMixin, Enum):
    """
    Digest algorithms with built-in support. See the `Algorithm Identifiers and Implementation Requirements
    <http://www.w3.org/TR/xmldsig-core1/#sec-AlgID>`_ section of the XML Signature 1.1 standard for details.
    Additional digest algorithms can be plugged in by URI with :func:`register_digest_algorithm`.
    """

    SHA224 = "http://www.w3.org/2001/04/xmldsig-more#sha224"
    SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
    SHA384 = "http://www.w3.org/2001/04/xmldsig-more#sha384"
    SHA512 = "http://www.w3.org/2001/04/xmlenc#sha512"

    SHA1 = "http://www.w3.org/2000/09/xmldsig#sha1"
    "See `SHA1 deprecation`_."


class SignatureMethod(FragmentLookupMixin, UnsupportedAlgorithmErrorMixin, Enum):
    """
    RSA signature methods supported for e-Financeira signatures.
    """

    RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
    """
    The RSASSA-PKCS1-v1_5 algorithm described in RFC 3447. This is the default, and the method expected by the
    e-Financeira receiving system.
    """

    RSA_SHA224 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha224"
    RSA_SHA384 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384"
    RSA_SHA512 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512"
    SHA224_RSA_MGF1 = "http://www.w3.org/2007/05/xmldsig-more#sha224-rsa-MGF1"
    SHA256_RSA_MGF1 = "http://www.w3.org/2007/05/xmldsig-more#sha256-rsa-MGF1"
    SHA384_RSA_MGF1 = "http://www.w3.org/2007/05/xmldsig-more#sha384-rsa-MGF1"
    SHA512_RSA_MGF1 = "http://www.w3.org/2007/05/xmldsig-more#sha512-rsa-MGF1"

    RSA_SHA1 = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
    """
    _`SHA1 deprecation`: SHA1 based algorithms are not secure for use in digital signatures. They are included for
    legacy compatibility only and disabled by default.
    """

    @property
    def uses_pss(self) -> bool:
        return self.name.endswith("_RSA_MGF1")


class CanonicalizationMethod(UnsupportedAlgorithmErrorMixin, Enum):
    """
    XML canonicalization methods. See the `Algorithm Identifiers and Implementation Requirements
    <http://www.w3.org/TR/xmldsig-core1/#sec-AlgID>`_ section of the XML Signature 1.1 standard for details.
    """

    CANONICAL_XML_1_0 = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
    CANONICAL_XML_1_0_WITH_COMMENTS = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315#WithComments"
    CANONICAL_XML_1_1 = "http://www.w3.org/2006/12/xml-c14n11"
    CANONICAL_XML_1_1_WITH_COMMENTS = "http://www.w3.org/2006/12/xml-c14n11#WithComments"
    EXCLUSIVE_XML_CANONICALIZATION_1_0 = "http://www.w3.org/2001/10/xml-exc-c14n#"
    EXCLUSIVE_XML_CANONICALIZATION_1_0_WITH_COMMENTS = "http://www.w3.org/2001/10/xml-exc-c14n#WithComments"

    @classmethod
    def lookup(cls, value):
        if isinstance(value, cls):
            return value
        return cls(value)

    @property
    def exclusive(self) -> bool:
        return self.value.startswith("http://www.w3.org/2001/10/xml-exc-c14n#")

    @property
    def with_comments(self) -> bool:
        return self.value.endswith("#WithComments")


_unsupported_errors = {
    "DigestAlgorithm": UnsupportedDigestAlgorithm,
    "SignatureMethod": UnsupportedSignatureAlgorithm,
    "CanonicalizationMethod": UnsupportedCanonicalizationMethod,
}


def _unsupported_error(cls):
    return _unsupported_errors.get(cls.__name__, InvalidInput)


digest_algorithm_implementations: Dict[Union[DigestAlgorithm, SignatureMethod], Callable[[], hashes.HashAlgorithm]] = {
    DigestAlgorithm.SHA1: hashes.SHA1,
    DigestAlgorithm.SHA224: hashes.SHA224,
    DigestAlgorithm.SHA256: hashes.SHA256,
    DigestAlgorithm.SHA384: hashes.SHA384,
    DigestAlgorithm.SHA512: hashes.SHA512,
    SignatureMethod.RSA_SHA1: hashes.SHA1,
    SignatureMethod.RSA_SHA224: hashes.SHA224,
    SignatureMethod.RSA_SHA256: hashes.SHA256,
    SignatureMethod.RSA_SHA384: hashes.SHA384,
    SignatureMethod.RSA_SHA512: hashes.SHA512,
    SignatureMethod.SHA224_RSA_MGF1: hashes.SHA224,
    SignatureMethod.SHA256_RSA_MGF1: hashes.SHA256,
    SignatureMethod.SHA384_RSA_MGF1: hashes.SHA384,
    SignatureMethod.SHA512_RSA_MGF1: hashes.SHA512,
}

# Digest registry keyed by algorithm URI. Seeded with the built-in digest algorithms.
registered_digest_algorithms: Dict[str, Callable[[], hashes.HashAlgorithm]] = {
    alg.value: digest_algorithm_implementations[alg] for alg in DigestAlgorithm
}


def register_digest_algorithm(uri: str, implementation: Callable[[], hashes.HashAlgorithm]) -> None:
    """
    Make a digest algorithm available to the signer and verifier under the given DigestMethod URI.

    :param uri: The DigestMethod Algorithm identifier that will appear in signatures.
    :param implementation:
        A callable returning a :class:`cryptography.hazmat.primitives.hashes.HashAlgorithm` instance, for example
        ``cryptography.hazmat.primitives.hashes.SHA3_256``.
    """
    if not uri:
        raise InvalidInput("Digest algorithm URI must not be empty")
    registered_digest_algorithms[uri] = implementation


def digest_method_uri(algorithm: Union[DigestAlgorithm, str]) -> str:
    if isinstance(algorithm, DigestAlgorithm):
        return algorithm.value
    if algorithm in registered_digest_algorithms:
        return algorithm
    return DigestAlgorithm.lookup(algorithm).value


def get_digest_implementation(algorithm: Union[DigestAlgorithm, str]) -> Callable[[], hashes.HashAlgorithm]:
    uri = digest_method_uri(algorithm)
    try:
        return registered_digest_algorithms[uri]
    except KeyError:
        raise UnsupportedDigestAlgorithm(f"Unrecognized DigestAlgorithm: {uri}") from None
