"""
Certificate resolution for signing.

A :class:`SigningCertificate` bundles the X.509 certificate that is embedded in ``KeyInfo``, the private key used to
compute the signature value, and any additional certificates that may be part of its chain. Certificates are obtained
from a :class:`CertificateResolver`: :class:`FileCertificateResolver` loads PKCS#12 (``.pfx``/``.p12``) or PEM files,
and :class:`StoreCertificateResolver` looks certificates up by thumbprint in a :class:`CertificateStore`. Loaded
certificates are kept in a process-wide :class:`CertificateCache`.
"""

import glob
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptographyInvalidSignature
from cryptography.exceptions import UnsupportedAlgorithm as CryptographyUnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key, pkcs12

from .exceptions import CertificateLoadError
from .util import ensure_bytes

logger = logging.getLogger(__name__)

private_key_regexp = re.compile(
    rb"-----BEGIN (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----.+?-----END (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----",
    flags=re.S,
)


def normalize_thumbprint(thumbprint: str) -> str:
    return re.sub(r"[^0-9A-Fa-f]", "", thumbprint).upper()


@dataclass(frozen=True)
class SigningCertificate:
    """
    An X.509 certificate, its private key, and the additional certificates that came with it.
    """

    certificate: x509.Certificate
    "The signer (leaf) certificate."

    private_key: Optional[Any] = None
    "The private key matching the certificate. Only required for signing."

    additional_certificates: Tuple[x509.Certificate, ...] = ()
    """
    Candidate members of the certificate chain, in any order. When the chain is embedded in a signature, only the
    certificates that can be linked to the leaf are used.
    """

    @property
    def thumbprint(self) -> str:
        """
        Upper-case hexadecimal SHA-1 fingerprint of the DER encoded certificate.
        """
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    @property
    def has_rsa_private_key(self) -> bool:
        return isinstance(self.private_key, rsa.RSAPrivateKey)

    def chain(self) -> List[x509.Certificate]:
        """
        The non-leaf certificates that link the signer certificate to its issuers, in chain order.
        """
        return build_certificate_chain(self.certificate, self.additional_certificates)

    @classmethod
    def from_pem(
        cls,
        cert: Union[str, bytes],
        key: Optional[Union[str, bytes, Any]] = None,
        passphrase: Optional[Union[str, bytes]] = None,
    ) -> "SigningCertificate":
        """
        Load a certificate from PEM data. The first certificate in **cert** is the signer certificate, the remaining
        ones are kept as chain candidates. **key** may be PEM data or a private key object; when omitted, a private
        key block found in **cert** is used.
        """
        data = ensure_bytes(cert)
        try:
            certs = x509.load_pem_x509_certificates(data)
        except ValueError as e:
            raise CertificateLoadError(f"Unable to load PEM certificate: {e}") from e

        if key is None:
            match = private_key_regexp.search(data)
            key = match.group(0) if match else None
        if isinstance(key, (str, bytes)):
            try:
                key = load_pem_private_key(
                    ensure_bytes(key), password=ensure_bytes(passphrase) if passphrase else None
                )
            except (ValueError, TypeError, CryptographyUnsupportedAlgorithm) as e:
                raise CertificateLoadError(f"Unable to load PEM private key: {e}") from e
        return cls(certificate=certs[0], private_key=key, additional_certificates=tuple(certs[1:]))

    @classmethod
    def from_pkcs12(cls, data: bytes, password: Optional[Union[str, bytes]] = None) -> "SigningCertificate":
        """
        Load a certificate, its private key and the bundled chain from PKCS#12 (PFX) data.
        """
        try:
            key, cert, extra_certs = pkcs12.load_key_and_certificates(
                data, ensure_bytes(password) if password else None
            )
        except (ValueError, TypeError, CryptographyUnsupportedAlgorithm) as e:
            raise CertificateLoadError(f"Unable to load PKCS#12 data (wrong password?): {e}") from e
        if cert is None:
            raise CertificateLoadError("PKCS#12 data contains no certificate")
        return cls(certificate=cert, private_key=key, additional_certificates=tuple(extra_certs or ()))


def load_certificate_file(path: str, password: Optional[Union[str, bytes]] = None) -> SigningCertificate:
    """
    Load a PFX/P12 or PEM file from disk.
    """
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as e:
        raise CertificateLoadError(f"Certificate file not found or unreadable: {path}") from e
    if b"-----BEGIN" in data:
        return SigningCertificate.from_pem(data, passphrase=password)
    return SigningCertificate.from_pkcs12(data, password)


def _is_self_signed(cert: x509.Certificate) -> bool:
    return cert.issuer == cert.subject


def build_certificate_chain(
    leaf: x509.Certificate, candidates: Iterable[x509.Certificate]
) -> List[x509.Certificate]:
    """
    Walk issuer links from **leaf** through **candidates** and return the issuers found, leaf excluded.

    A candidate is accepted as the issuer of the current certificate only if its subject matches the current issuer
    name and it verifiably signed the current certificate. Candidates that cannot be linked are skipped. The walk
    ends at a self-signed certificate or when no issuer can be found.
    """
    pool = [c for c in candidates if c != leaf]
    chain: List[x509.Certificate] = []
    current = leaf
    while pool and not _is_self_signed(current):
        issuer = None
        for candidate in pool:
            if candidate.subject != current.issuer:
                continue
            try:
                current.verify_directly_issued_by(candidate)
            except (ValueError, TypeError, CryptographyInvalidSignature) as e:
                logger.debug("Skipping unresolvable chain certificate %s: %r", candidate.subject.rfc4514_string(), e)
                continue
            issuer = candidate
            break
        if issuer is None:
            logger.debug("No issuer found for %s, ending chain", current.subject.rfc4514_string())
            break
        chain.append(issuer)
        pool.remove(issuer)
        current = issuer
    return chain


class CertificateCache:
    """
    A thread-safe, read-mostly cache of loaded certificates. Each key is loaded at most once until invalidated.
    """

    def __init__(self):
        self._entries: Dict[Hashable, SigningCertificate] = {}
        self._lock = threading.Lock()

    def get_or_load(self, key: Hashable, loader: Callable[[], SigningCertificate]) -> SigningCertificate:
        try:
            return self._entries[key]
        except KeyError:
            pass
        with self._lock:
            if key not in self._entries:
                logger.debug("Certificate cache miss, loading %s", key[0] if isinstance(key, tuple) else key)
                self._entries[key] = loader()
            return self._entries[key]

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __contains__(self, key):
        return key in self._entries

    def __len__(self):
        return len(self._entries)


default_certificate_cache = CertificateCache()


class CertificateResolver(ABC):
    """
    Supplies the certificate and private key used to sign.
    """

    @abstractmethod
    def resolve(self) -> SigningCertificate:
        raise NotImplementedError()


class InMemoryCertificateResolver(CertificateResolver):
    def __init__(self, certificate: SigningCertificate):
        self.certificate = certificate

    def resolve(self) -> SigningCertificate:
        return self.certificate


class FileCertificateResolver(CertificateResolver):
    """
    Load a certificate from a PFX/P12 or PEM file, protected by **password**.
    """

    def __init__(
        self,
        path: str,
        password: Optional[Union[str, bytes]] = None,
        cache: Optional[CertificateCache] = None,
    ):
        self.path = path
        self.password = password
        self.cache = default_certificate_cache if cache is None else cache

    @property
    def cache_key(self):
        return (os.path.abspath(self.path), ensure_bytes(self.password, none_ok=True))

    def resolve(self) -> SigningCertificate:
        return self.cache.get_or_load(self.cache_key, lambda: load_certificate_file(self.path, self.password))


class CertificateStore(ABC):
    """
    A source of certificates indexed by thumbprint. OS or hardware token stores are adapters implementing this
    interface.
    """

    @abstractmethod
    def find_by_thumbprint(self, thumbprint: str) -> Optional[SigningCertificate]:
        raise NotImplementedError()


class DirectoryCertificateStore(CertificateStore):
    """
    A portable certificate store backed by a directory of PFX/P12 and PEM files sharing one password.
    Files that cannot be loaded are skipped.
    """

    patterns: Sequence[str] = ("*.pfx", "*.p12", "*.pem")

    def __init__(self, directory: str, password: Optional[Union[str, bytes]] = None):
        self.directory = directory
        self.password = password
        self._index: Optional[Dict[str, SigningCertificate]] = None
        self._lock = threading.Lock()

    def _build_index(self) -> Dict[str, SigningCertificate]:
        index = {}
        for pattern in self.patterns:
            for path in sorted(glob.glob(os.path.join(self.directory, pattern))):
                try:
                    cert = load_certificate_file(path, self.password)
                except CertificateLoadError as e:
                    logger.debug("Skipping %s in certificate store: %s", path, e)
                    continue
                index.setdefault(cert.thumbprint, cert)
        return index

    def find_by_thumbprint(self, thumbprint: str) -> Optional[SigningCertificate]:
        with self._lock:
            if self._index is None:
                self._index = self._build_index()
            index = self._index
        return index.get(normalize_thumbprint(thumbprint))

    def refresh(self) -> None:
        with self._lock:
            self._index = None


class StoreCertificateResolver(CertificateResolver):
    """
    Look up a certificate by thumbprint in a :class:`CertificateStore`.
    """

    def __init__(self, thumbprint: str, store: CertificateStore, cache: Optional[CertificateCache] = None):
        self.thumbprint = normalize_thumbprint(thumbprint)
        self.store = store
        self.cache = default_certificate_cache if cache is None else cache

    def _load(self) -> SigningCertificate:
        cert = self.store.find_by_thumbprint(self.thumbprint)
        if cert is None:
            raise CertificateLoadError(f"Certificate with thumbprint {self.thumbprint} not found in store")
        return cert

    def resolve(self) -> SigningCertificate:
        return self.cache.get_or_load(("thumbprint", self.thumbprint), self._load)
