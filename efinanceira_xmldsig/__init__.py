"""
Use :class:`efinanceira_xmldsig.XmlSigner` and :class:`efinanceira_xmldsig.XmlVerifier` to sign and verify
e-Financeira XML Signatures, respectively. Signing certificates are supplied through
:class:`efinanceira_xmldsig.SignOptions`.
"""

from .algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
    register_digest_algorithm,
)
from .certificates import (
    CertificateCache,
    CertificateResolver,
    CertificateStore,
    DirectoryCertificateStore,
    FileCertificateResolver,
    InMemoryCertificateResolver,
    SigningCertificate,
    StoreCertificateResolver,
)
from .exceptions import (
    AmbiguousElementReference,
    CertificateLoadError,
    ElementNotFound,
    InvalidDigest,
    InvalidInput,
    InvalidSignature,
    InvalidSignOptions,
    MalformedDocument,
    SignatureComputationError,
    UnsupportedAlgorithm,
    XmlSignatureError,
    XmlValidationError,
)
from .processor import XMLSignatureProcessor
from .signer import SignOptions, XmlSigner
from .util import namespaces
from .validation import XmlValidator, clear_schema_cache
from .verifier import SignatureConfiguration, VerificationStatus, VerifyResult, XmlVerifier
