"""
efinanceira-xmldsig exception types.
"""

import cryptography.exceptions


class XmlSignatureError(Exception):
    pass


class InvalidSignature(cryptography.exceptions.InvalidSignature, XmlSignatureError):
    """
    Raised when signature validation fails.
    """


class InvalidDigest(InvalidSignature):
    """
    Raised when digest validation fails (causing the signature to be untrusted).
    """


class InvalidInput(ValueError, XmlSignatureError):
    pass


class InvalidSignOptions(InvalidInput):
    """
    Raised when sign options are incomplete: no certificate source, or no element name or ID value to sign.
    """


class MalformedDocument(InvalidInput):
    pass


class ElementNotFound(InvalidInput):
    pass


class AmbiguousElementReference(InvalidInput):
    """
    Raised when an ID value is carried by more than one element of the document.
    """


class UnsupportedAlgorithm(InvalidInput):
    pass


class UnsupportedDigestAlgorithm(UnsupportedAlgorithm):
    pass


class UnsupportedSignatureAlgorithm(UnsupportedAlgorithm):
    pass


class UnsupportedCanonicalizationMethod(UnsupportedAlgorithm):
    pass


class CertificateLoadError(XmlSignatureError):
    """
    Raised when a certificate or its private key cannot be loaded (missing file, wrong password, unknown thumbprint).
    """


class SignatureComputationError(XmlSignatureError):
    """
    Wraps failures of the underlying cryptography library while computing a signature value.
    """


class XmlValidationError(XmlSignatureError):
    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])
