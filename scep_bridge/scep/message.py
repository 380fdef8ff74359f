"""SCEP PKIMessage encoding and decoding.

A PKIMessage is a CMS SignedData whose signed attributes carry the SCEP
message type, transaction id and nonces, and whose content is a CMS
EnvelopedData encrypted to the recipient. ASN.1 structures come from
asn1crypto; signing, key transport and content encryption use cryptography.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from enum import IntEnum

from asn1crypto import algos, cms, core
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding

from scep_bridge.crypto.cert import encode_pkcs7_certs
from scep_bridge.exceptions import ScepMessageError

# SCEP signed attribute OIDs (id-VeriSign pki attributes)
OID_MESSAGE_TYPE = "2.16.840.1.113733.1.9.2"
OID_PKI_STATUS = "2.16.840.1.113733.1.9.3"
OID_FAIL_INFO = "2.16.840.1.113733.1.9.4"
OID_SENDER_NONCE = "2.16.840.1.113733.1.9.5"
OID_RECIPIENT_NONCE = "2.16.840.1.113733.1.9.6"
OID_TRANSACTION_ID = "2.16.840.1.113733.1.9.7"

OID_MESSAGE_DIGEST = "1.2.840.113549.1.9.4"

DEFAULT_CIPHER = "aes256_cbc"
DEFAULT_DIGEST = "sha256"
NONCE_SIZE = 16


class MessageType(IntEnum):
    """SCEP messageType values."""

    CERT_REP = 3
    RENEWAL_REQ = 17
    PKCS_REQ = 19
    CERT_POLL = 20
    GET_CERT = 21
    GET_CRL = 22


class PKIStatus(IntEnum):
    """SCEP pkiStatus values."""

    SUCCESS = 0
    FAILURE = 2
    PENDING = 3


class FailInfo(IntEnum):
    """SCEP failInfo values."""

    BAD_ALG = 0
    BAD_MESSAGE_CHECK = 1
    BAD_REQUEST = 2
    BAD_TIME = 3
    BAD_CERT_ID = 4


_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "md5": hashes.MD5,
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# asn1crypto algorithm name -> (cipher, key size in bytes)
_CIPHERS: dict[str, tuple[type[algorithms.AES] | type[TripleDES], int]] = {
    "aes128_cbc": (algorithms.AES, 16),
    "aes192_cbc": (algorithms.AES, 24),
    "aes256_cbc": (algorithms.AES, 32),
    "tripledes_3key": (TripleDES, 24),
    "des": (TripleDES, 8),
}


@dataclass(frozen=True)
class PKIMessage:
    """A decoded SCEP message.

    Attributes:
        message_type: SCEP messageType.
        transaction_id: Client-chosen transaction identifier.
        sender_nonce: Nonce the response must echo as recipientNonce.
        signer_cert: Certificate that signed the message.
        digest_algorithm: Digest used for the signature (asn1crypto name).
        envelope: Encrypted EnvelopedData, empty when the message has no content.
        recipient_nonce: Echoed nonce; set on responses.
        pki_status: Set on CertRep messages.
        fail_info: Set on failed CertRep messages.
        content: Decrypted envelope content, once opened.
        cipher: Content cipher of the envelope, once opened.
    """

    message_type: MessageType
    transaction_id: str
    sender_nonce: bytes
    signer_cert: x509.Certificate
    digest_algorithm: str
    envelope: bytes = b""
    recipient_nonce: bytes = b""
    pki_status: PKIStatus | None = None
    fail_info: FailInfo | None = None
    content: bytes = b""
    cipher: str = ""


def new_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


def _hash_for(name: str) -> type[hashes.HashAlgorithm]:
    try:
        return _HASHES[name]
    except KeyError:
        raise ScepMessageError.malformed(reason=f"unsupported digest algorithm {name}") from None


def _cipher_for(name: str) -> tuple[type[algorithms.AES] | type[TripleDES], int]:
    try:
        return _CIPHERS[name]
    except KeyError:
        raise ScepMessageError.malformed(reason=f"unsupported content cipher {name}") from None


def _digest(algorithm: type[hashes.HashAlgorithm], data: bytes) -> bytes:
    h = hashes.Hash(algorithm())
    h.update(data)
    return h.finalize()


def _asn1_certificate(cert: x509.Certificate) -> asn1_x509.Certificate:
    return asn1_x509.Certificate.load(cert.public_bytes(Encoding.DER))


def _issuer_and_serial(cert: asn1_x509.Certificate) -> cms.IssuerAndSerialNumber:
    return cms.IssuerAndSerialNumber({"issuer": cert.issuer, "serial_number": cert.serial_number})


def _rsa_public_key(cert: x509.Certificate) -> rsa.RSAPublicKey:
    key = cert.public_key()
    if not isinstance(key, rsa.RSAPublicKey):
        raise ScepMessageError.malformed(reason="certificate key is not RSA")
    return key


def _signed_attrs_der(signer_info: cms.SignerInfo) -> bytes:
    # Signatures cover the attributes with an explicit SET OF tag, not [0].
    return b"\x31" + signer_info["signed_attrs"].dump()[1:]


# --- Envelope ---


def seal_envelope(content: bytes, recipient: x509.Certificate, *, cipher: str = DEFAULT_CIPHER) -> bytes:
    """Encrypt content to recipient as a CMS EnvelopedData.

    Args:
        content: Plaintext to encrypt.
        recipient: Certificate whose RSA key receives the content key.
        cipher: asn1crypto name of the content cipher.

    Returns:
        DER-encoded ContentInfo.

    Raises:
        ScepMessageError: If the cipher is unsupported or the key is not RSA.
    """
    algorithm, key_size = _cipher_for(cipher)
    public_key = _rsa_public_key(recipient)

    key = os.urandom(key_size)
    iv = os.urandom(algorithm.block_size // 8)
    padder = padding.PKCS7(algorithm.block_size).padder()
    padded = padder.update(content) + padder.finalize()
    encryptor = Cipher(algorithm(key), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()

    recipient_info = cms.RecipientInfo(
        name="ktri",
        value=cms.KeyTransRecipientInfo(
            {
                "version": "v0",
                "rid": cms.RecipientIdentifier(
                    name="issuer_and_serial_number",
                    value=_issuer_and_serial(_asn1_certificate(recipient)),
                ),
                "key_encryption_algorithm": cms.KeyEncryptionAlgorithm({"algorithm": "rsaes_pkcs1v15"}),
                "encrypted_key": public_key.encrypt(key, PKCS1v15()),
            },
        ),
    )
    enveloped = cms.EnvelopedData(
        {
            "version": "v0",
            "recipient_infos": [recipient_info],
            "encrypted_content_info": {
                "content_type": "data",
                "content_encryption_algorithm": {"algorithm": cipher, "parameters": core.OctetString(iv)},
                "encrypted_content": encrypted,
            },
        },
    )
    return cms.ContentInfo({"content_type": "enveloped_data", "content": enveloped}).dump()


def open_envelope(data: bytes, key: rsa.RSAPrivateKey) -> tuple[bytes, str]:
    """Decrypt a CMS EnvelopedData addressed to key.

    Args:
        data: DER-encoded ContentInfo.
        key: Recipient's RSA private key.

    Returns:
        The plaintext and the asn1crypto name of the content cipher.

    Raises:
        ScepMessageError: If the envelope is malformed, uses an unsupported
            cipher, or has no recipient entry for key.
    """
    try:
        info = cms.ContentInfo.load(data)
        if info["content_type"].native != "enveloped_data":
            raise ScepMessageError.malformed(reason="content is not enveloped data")
        enveloped = info["content"]

        content_key = None
        for recipient_info in enveloped["recipient_infos"]:
            if recipient_info.name != "ktri":
                continue
            try:
                content_key = key.decrypt(recipient_info.chosen["encrypted_key"].native, PKCS1v15())
                break
            except ValueError:
                continue
        if content_key is None:
            raise ScepMessageError.malformed(reason="no recipient entry for this key")

        encrypted_info = enveloped["encrypted_content_info"]
        cipher = encrypted_info["content_encryption_algorithm"]["algorithm"].native
        iv = encrypted_info["content_encryption_algorithm"]["parameters"].native
        encrypted = encrypted_info["encrypted_content"].native
    except ValueError as e:
        raise ScepMessageError.malformed(reason=f"decoding envelope: {e}") from e

    if not encrypted:
        raise ScepMessageError.malformed(reason="envelope has no encrypted content")

    algorithm, _ = _cipher_for(cipher)
    try:
        decryptor = Cipher(algorithm(content_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(encrypted) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithm.block_size).unpadder()
        content = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise ScepMessageError.malformed(reason=f"decrypting envelope: {e}") from e
    return content, cipher


# --- Signed message ---


def _attribute(oid: str, value: core.Asn1Value) -> cms.CMSAttribute:
    return cms.CMSAttribute({"type": cms.CMSAttributeType(oid), "values": [value]})


def sign_pki_message(
    content: bytes | None,
    *,
    signer_cert: x509.Certificate,
    signer_key: rsa.RSAPrivateKey,
    message_type: MessageType,
    transaction_id: str,
    sender_nonce: bytes,
    recipient_nonce: bytes | None = None,
    pki_status: PKIStatus | None = None,
    fail_info: FailInfo | None = None,
    digest: str = DEFAULT_DIGEST,
) -> bytes:
    """Wrap content in a SCEP SignedData.

    Args:
        content: Encapsulated content (usually an envelope), or None.
        signer_cert: Certificate included as the signer.
        signer_key: Private key of signer_cert.
        message_type: SCEP messageType.
        transaction_id: SCEP transactionID.
        sender_nonce: SCEP senderNonce.
        recipient_nonce: SCEP recipientNonce, for responses.
        pki_status: SCEP pkiStatus, for responses.
        fail_info: SCEP failInfo, for failed responses.
        digest: asn1crypto digest algorithm name.

    Returns:
        DER-encoded ContentInfo.
    """
    algorithm = _hash_for(digest)
    signer = _asn1_certificate(signer_cert)

    attributes = [
        cms.CMSAttribute({"type": "content_type", "values": ["data"]}),
        cms.CMSAttribute({"type": "message_digest", "values": [_digest(algorithm, content or b"")]}),
        _attribute(OID_MESSAGE_TYPE, core.PrintableString(str(int(message_type)))),
        _attribute(OID_TRANSACTION_ID, core.PrintableString(transaction_id)),
        _attribute(OID_SENDER_NONCE, core.OctetString(sender_nonce)),
    ]
    if recipient_nonce is not None:
        attributes.append(_attribute(OID_RECIPIENT_NONCE, core.OctetString(recipient_nonce)))
    if pki_status is not None:
        attributes.append(_attribute(OID_PKI_STATUS, core.PrintableString(str(int(pki_status)))))
    if fail_info is not None:
        attributes.append(_attribute(OID_FAIL_INFO, core.PrintableString(str(int(fail_info)))))

    signer_info = cms.SignerInfo(
        {
            "version": "v1",
            "sid": cms.SignerIdentifier(name="issuer_and_serial_number", value=_issuer_and_serial(signer)),
            "digest_algorithm": algos.DigestAlgorithm({"algorithm": digest}),
            "signed_attrs": attributes,
            "signature_algorithm": algos.SignedDigestAlgorithm({"algorithm": "rsassa_pkcs1v15"}),
            "signature": b"",
        },
    )
    signer_info["signature"] = signer_key.sign(_signed_attrs_der(signer_info), PKCS1v15(), algorithm())

    encap: dict[str, object] = {"content_type": "data"}
    if content is not None:
        encap["content"] = content

    signed_data = cms.SignedData(
        {
            "version": "v1",
            "digest_algorithms": [algos.DigestAlgorithm({"algorithm": digest})],
            "encap_content_info": encap,
            "certificates": [signer],
            "signer_infos": [signer_info],
        },
    )
    return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()


def _find_signer(signed_data: cms.SignedData, signer_info: cms.SignerInfo) -> x509.Certificate:
    sid = signer_info["sid"]
    certificates = signed_data["certificates"]
    if isinstance(certificates, core.Void):
        raise ScepMessageError.malformed(reason="message carries no certificates")

    for choice in certificates:
        if choice.name != "certificate":
            continue
        cert = choice.chosen
        if sid.name == "issuer_and_serial_number":
            ias = sid.chosen
            found = cert.issuer == ias["issuer"] and cert.serial_number == ias["serial_number"].native
        else:
            found = cert.key_identifier == sid.chosen.native
        if found:
            return x509.load_der_x509_certificate(cert.dump())
    raise ScepMessageError.malformed(reason="signer certificate not found")


def _read_attributes(signer_info: cms.SignerInfo) -> dict[str, object]:
    values: dict[str, object] = {}
    for attribute in signer_info["signed_attrs"]:
        found = attribute["values"]
        if len(found) != 1:
            continue
        value = found[0]
        if isinstance(value, core.Any):
            value = value.parse()
        values[attribute["type"].dotted] = value.native
    return values


def decode_pki_message(data: bytes) -> PKIMessage:
    """Decode a SCEP message and verify its signature.

    The envelope is kept encrypted; see decrypt_pki_message.

    Args:
        data: DER-encoded ContentInfo holding SignedData.

    Returns:
        PKIMessage with the signed attributes and the raw envelope.

    Raises:
        ScepMessageError: If the message is malformed, lacks a required
            attribute, or its signature or digest does not verify.
    """
    try:
        info = cms.ContentInfo.load(data)
        if info["content_type"].native != "signed_data":
            raise ScepMessageError.malformed(reason="content is not signed data")
        signed_data = info["content"]

        signer_infos = signed_data["signer_infos"]
        if len(signer_infos) != 1:
            raise ScepMessageError.malformed(reason=f"expected one signer, found {len(signer_infos)}")
        signer_info = signer_infos[0]
        if isinstance(signer_info["signed_attrs"], core.Void):
            raise ScepMessageError.malformed(reason="message has no signed attributes")

        signer_cert = _find_signer(signed_data, signer_info)
        content = signed_data["encap_content_info"]["content"].native or b""
        digest = signer_info["digest_algorithm"]["algorithm"].native
        signature = signer_info["signature"].native
        signed_attrs = _signed_attrs_der(signer_info)
        attributes = _read_attributes(signer_info)
    except ValueError as e:
        raise ScepMessageError.malformed(reason=str(e)) from e

    algorithm = _hash_for(digest)
    if attributes.get(OID_MESSAGE_DIGEST) != _digest(algorithm, content):
        raise ScepMessageError.malformed(reason="message digest mismatch")
    try:
        _rsa_public_key(signer_cert).verify(signature, signed_attrs, PKCS1v15(), algorithm())
    except InvalidSignature as e:
        raise ScepMessageError.malformed(reason="signature verification failed") from e

    try:
        message_type = MessageType(int(attributes[OID_MESSAGE_TYPE]))
        transaction_id = str(attributes[OID_TRANSACTION_ID])
        sender_nonce = bytes(attributes[OID_SENDER_NONCE])
        pki_status = PKIStatus(int(attributes[OID_PKI_STATUS])) if OID_PKI_STATUS in attributes else None
        fail_info = FailInfo(int(attributes[OID_FAIL_INFO])) if OID_FAIL_INFO in attributes else None
    except KeyError as e:
        raise ScepMessageError.malformed(reason=f"missing attribute {e.args[0]}") from e
    except (TypeError, ValueError) as e:
        raise ScepMessageError.malformed(reason=f"invalid attribute: {e}") from e

    recipient_nonce = attributes.get(OID_RECIPIENT_NONCE)
    return PKIMessage(
        message_type=message_type,
        transaction_id=transaction_id,
        sender_nonce=sender_nonce,
        signer_cert=signer_cert,
        digest_algorithm=digest,
        envelope=content,
        recipient_nonce=bytes(recipient_nonce) if isinstance(recipient_nonce, bytes) else b"",
        pki_status=pki_status,
        fail_info=fail_info,
    )


def decrypt_pki_message(message: PKIMessage, key: rsa.RSAPrivateKey) -> PKIMessage:
    """Open message's envelope with key, filling content and cipher."""
    content, cipher = open_envelope(message.envelope, key)
    return replace(message, content=content, cipher=cipher)


def encode_cert_rep(
    request: PKIMessage,
    issued: x509.Certificate,
    *,
    ra_cert: x509.Certificate,
    ra_key: rsa.RSAPrivateKey,
) -> bytes:
    """Build a successful CertRep for request.

    The issued certificate travels as a degenerate PKCS#7, encrypted to the
    requester's signing certificate with the request's content cipher.

    Args:
        request: The decrypted request being answered.
        issued: The certificate to return.
        ra_cert: RA certificate signing the response.
        ra_key: RA private key.

    Returns:
        DER-encoded CertRep.
    """
    envelope = seal_envelope(
        encode_pkcs7_certs([issued]),
        request.signer_cert,
        cipher=request.cipher or DEFAULT_CIPHER,
    )
    return sign_pki_message(
        envelope,
        signer_cert=ra_cert,
        signer_key=ra_key,
        message_type=MessageType.CERT_REP,
        transaction_id=request.transaction_id,
        sender_nonce=new_nonce(),
        recipient_nonce=request.sender_nonce,
        pki_status=PKIStatus.SUCCESS,
        digest=_response_digest(request),
    )


def encode_cert_rep_failure(
    request: PKIMessage,
    fail_info: FailInfo,
    *,
    ra_cert: x509.Certificate,
    ra_key: rsa.RSAPrivateKey,
) -> bytes:
    """Build a failed CertRep for request; it carries no content."""
    return sign_pki_message(
        None,
        signer_cert=ra_cert,
        signer_key=ra_key,
        message_type=MessageType.CERT_REP,
        transaction_id=request.transaction_id,
        sender_nonce=new_nonce(),
        recipient_nonce=request.sender_nonce,
        pki_status=PKIStatus.FAILURE,
        fail_info=fail_info,
        digest=_response_digest(request),
    )


def _response_digest(request: PKIMessage) -> str:
    if request.digest_algorithm in ("sha1", "sha256", "sha384", "sha512"):
        return request.digest_algorithm
    return DEFAULT_DIGEST
