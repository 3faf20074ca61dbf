"""
Certificate vault.

Stores a tenant's A1 signing certificate (PKCS#12 blob in MinIO) together with
its passphrase, encrypted with envelope encryption:

- every certificate gets a random 256-bit data key (DEK);
- the passphrase is sealed with AES-256-GCM under the DEK (96-bit nonce);
- the DEK is wrapped with AES-256-GCM under a key-encryption key (KEK)
  derived from a server-held secret, identified by ``key_version``.

Rotating ``FISCAL_CERT_ENCRYPTION_KEY`` means bumping
``FISCAL_CERT_KEY_VERSION`` and moving the old secret into
``FISCAL_CERT_PREVIOUS_KEYS``; rows wrapped under older versions keep
decrypting.
"""
import base64
import hashlib
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple
from uuid import UUID, uuid4

from cryptography import x509
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.validators import only_digits
from app.core.config import settings
from app.modules.fiscal.exceptions import ConfigurationError, PersistenceError, ValidationError, VaultDecryptionError
from app.modules.fiscal.models import FiscalCertificate, CertificateStatus, PROVIDER_FOCUSNFE

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # 96 bits
TAG_SIZE = 16    # AESGCM appends a 128-bit tag to the ciphertext
ACCEPTED_EXTENSIONS = ("pfx", "p12")
DEFAULT_CONTENT_TYPE = "application/x-pkcs12"
ICP_BRASIL_CNPJ_OID = "2.16.76.1.3.3"


class KeyProvider(ABC):
    """Source of versioned key-encryption keys"""

    @abstractmethod
    def current_version(self) -> int:
        ...

    @abstractmethod
    def key_for(self, version: int) -> bytes:
        """32-byte KEK for the given version"""
        ...


class SecretKeyProvider(KeyProvider):
    """KEKs derived as SHA-256 of configured secrets"""

    def __init__(self, secrets: Dict[int, str], current_version: int):
        if not secrets.get(current_version):
            raise ConfigurationError(
                f"Certificate encryption secret for key version {current_version} is not configured"
            )
        self._secrets = secrets
        self._current_version = current_version

    @classmethod
    def from_settings(cls) -> "SecretKeyProvider":
        secrets = dict(settings.FISCAL_CERT_PREVIOUS_KEYS)
        secrets[settings.FISCAL_CERT_KEY_VERSION] = settings.FISCAL_CERT_ENCRYPTION_KEY
        return cls(secrets, settings.FISCAL_CERT_KEY_VERSION)

    def current_version(self) -> int:
        return self._current_version

    def key_for(self, version: int) -> bytes:
        secret = self._secrets.get(version)
        if not secret:
            raise ConfigurationError(f"No encryption secret configured for key version {version}")
        return hashlib.sha256(secret.encode("utf-8")).digest()


@dataclass(frozen=True)
class SealedSecret:
    ciphertext_b64: str
    iv_b64: str
    tag_b64: str
    wrapped_key_b64: str
    key_version: int


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


class PassphraseCipher:
    """Envelope encryption of short secrets"""

    def __init__(self, key_provider: KeyProvider):
        self.key_provider = key_provider

    def encrypt(self, plaintext: str) -> SealedSecret:
        version = self.key_provider.current_version()
        kek = self.key_provider.key_for(version)

        data_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(data_key).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        wrap_nonce = os.urandom(NONCE_SIZE)
        wrapped = AESGCM(kek).encrypt(wrap_nonce, data_key, None)

        return SealedSecret(
            ciphertext_b64=_b64(ciphertext),
            iv_b64=_b64(nonce),
            tag_b64=_b64(tag),
            wrapped_key_b64=_b64(wrap_nonce + wrapped),
            key_version=version,
        )

    def decrypt(self, sealed: SealedSecret) -> str:
        kek = self.key_provider.key_for(sealed.key_version)
        try:
            wrapped = _unb64(sealed.wrapped_key_b64)
            data_key = AESGCM(kek).decrypt(wrapped[:NONCE_SIZE], wrapped[NONCE_SIZE:], None)
            clear = AESGCM(data_key).decrypt(
                _unb64(sealed.iv_b64),
                _unb64(sealed.ciphertext_b64) + _unb64(sealed.tag_b64),
                None,
            )
        except InvalidTag:
            raise VaultDecryptionError(
                f"Could not authenticate sealed secret (key version {sealed.key_version})"
            )
        return clear.decode("utf-8")


@dataclass(frozen=True)
class CertificateInfo:
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    cnpj: Optional[str]


def _extract_cnpj(cert: x509.Certificate) -> Optional[str]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        san = []
    for name in san:
        if isinstance(name, x509.OtherName) and name.type_id.dotted_string == ICP_BRASIL_CNPJ_OID:
            digits = only_digits(name.value.decode("latin-1"))
            if len(digits) >= 14:
                return digits[-14:]

    # e-CNPJ subjects read "RAZAO SOCIAL:11222333000181"
    for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        _, _, tail = str(attr.value).rpartition(":")
        digits = only_digits(tail)
        if len(digits) == 14:
            return digits
    return None


def inspect_pkcs12(data: bytes, passphrase: str) -> Optional[CertificateInfo]:
    """Validity window and CNPJ of a PKCS#12 container, or None if it cannot be opened"""
    try:
        _, cert, _ = pkcs12.load_key_and_certificates(data, passphrase.encode("utf-8"))
    except ValueError as e:
        logger.warning(f"Certificate container could not be opened: {e}")
        return None
    if cert is None:
        return None
    return CertificateInfo(
        valid_from=cert.not_valid_before_utc,
        valid_to=cert.not_valid_after_utc,
        cnpj=_extract_cnpj(cert),
    )


def certificate_extension(filename: str) -> str:
    _, dot, ext = (filename or "").rpartition(".")
    ext = ext.lower() if dot else ""
    if ext not in ACCEPTED_EXTENSIONS:
        raise ValidationError("Certificate must be a .pfx or .p12 file")
    return ext


class CertificateVault:
    """Upload, lookup and unsealing of tenant certificates"""

    def __init__(self, db: Session, blob_store, cipher: PassphraseCipher, bucket: str = None):
        self.db = db
        self.blob_store = blob_store
        self.cipher = cipher
        self.bucket = bucket or settings.MINIO_CERTIFICATE_BUCKET

    def store_certificate(
        self,
        tenant_id: UUID,
        file_bytes: bytes,
        filename: str,
        content_type: Optional[str],
        passphrase: str,
    ) -> FiscalCertificate:
        ext = certificate_extension(filename)
        if not passphrase:
            raise ValidationError("password is required")
        if not file_bytes:
            raise ValidationError("file is empty")
        if len(file_bytes) > settings.MAX_CERTIFICATE_SIZE:
            raise ValidationError(f"Certificate exceeds {settings.MAX_CERTIFICATE_SIZE} bytes")

        # Encrypt first: a missing secret must fail before anything is stored
        sealed = self.cipher.encrypt(passphrase)
        info = inspect_pkcs12(file_bytes, passphrase)

        path = f"{tenant_id}/{int(time.time() * 1000)}-{uuid4()}.{ext}"
        self.blob_store.upload_bytes(
            self.bucket, path, file_bytes, content_type or DEFAULT_CONTENT_TYPE
        )

        certificate = FiscalCertificate(
            tenant_id=tenant_id,
            provider=PROVIDER_FOCUSNFE,
            storage_bucket=self.bucket,
            storage_path=path,
            original_filename=filename,
            content_type=content_type or None,
            size_bytes=len(file_bytes),
            password_ciphertext_b64=sealed.ciphertext_b64,
            password_iv_b64=sealed.iv_b64,
            password_tag_b64=sealed.tag_b64,
            wrapped_key_b64=sealed.wrapped_key_b64,
            key_version=sealed.key_version,
            status=CertificateStatus.VALIDATED.value if info else CertificateStatus.UPLOADED.value,
            valid_from=info.valid_from if info else None,
            valid_to=info.valid_to if info else None,
            cnpj=info.cnpj if info else None,
        )
        try:
            self.db.add(certificate)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not persist certificate for tenant {tenant_id}: {e}")
            self._discard_blob(path)
            raise PersistenceError("Could not persist certificate")
        self.db.refresh(certificate)

        logger.info(
            f"Stored certificate {certificate.id} for tenant {tenant_id} "
            f"({certificate.size_bytes} bytes, status={certificate.status}, key_version={sealed.key_version})"
        )
        return certificate

    def _discard_blob(self, path: str):
        try:
            self.blob_store.remove_object(self.bucket, path)
        except HTTPException:
            logger.error(f"Orphaned certificate object left for cleanup: {self.bucket}/{path}")

    def get_certificate(self, tenant_id: UUID) -> Optional[FiscalCertificate]:
        return self.db.query(FiscalCertificate).filter(
            FiscalCertificate.tenant_id == tenant_id,
            FiscalCertificate.provider == PROVIDER_FOCUSNFE
        ).order_by(FiscalCertificate.created_at.desc()).first()

    def decrypt_passphrase(self, certificate: FiscalCertificate) -> str:
        return self.cipher.decrypt(SealedSecret(
            ciphertext_b64=certificate.password_ciphertext_b64,
            iv_b64=certificate.password_iv_b64,
            tag_b64=certificate.password_tag_b64,
            wrapped_key_b64=certificate.wrapped_key_b64,
            key_version=certificate.key_version,
        ))

    def download_certificate(self, certificate: FiscalCertificate) -> bytes:
        return self.blob_store.download_bytes(certificate.storage_bucket, certificate.storage_path)

    def unseal(self, certificate: FiscalCertificate) -> Tuple[bytes, str]:
        """Blob and clear passphrase, for provisioning only"""
        return self.download_certificate(certificate), self.decrypt_passphrase(certificate)
