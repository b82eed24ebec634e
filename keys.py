# keys.py
# Cryptography helpers for the signed chat protocol
# - Base64 / base64url encode/decode
# - RSA key management (persist or generate, per device)
# - PEM normalization for keys read back from storage
# - SHA-256 content hash
# - RSASSA-PSS (SHA-256, salt 32) signing/verification

import base64
import binascii
import hashlib
from pathlib import Path
from typing import Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    load_pem_public_key,
)

MIN_RSA_BITS = 2048
PSS_SALT_LENGTH = 32  # == SHA-256 digest size

# ----------------------------
# Base64 (standard, on the wire) and base64url (tokens, no padding)
# ----------------------------

def b64encode(data: Union[bytes, bytearray, memoryview]) -> str:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("b64encode expects bytes-like input")
    return base64.b64encode(bytes(data)).decode("ascii")

def b64decode(s: str) -> bytes:
    """Strict standard base64; raises ValueError on anything malformed."""
    if not isinstance(s, str):
        raise ValueError("b64decode expects str input")
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"bad base64: {e}") from e

def b64url_encode(data: Union[bytes, bytearray, memoryview]) -> str:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("b64url_encode expects bytes-like input")
    enc = base64.urlsafe_b64encode(bytes(data))
    return enc.rstrip(b"=").decode("ascii")

def b64url_decode(s: Union[str, bytes]) -> bytes:
    if isinstance(s, bytes):
        s = s.decode("ascii")
    if not isinstance(s, str):
        raise TypeError("b64url_decode expects str/bytes input")
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

# ----------------------------
# RSA key management
# ----------------------------

def generate_rsa(bits: int = 2048) -> Tuple[bytes, bytes]:
    if bits < MIN_RSA_BITS:
        raise ValueError(f"refusing to generate RSA-{bits}; minimum is {MIN_RSA_BITS}")
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    priv_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return priv_pem, pub_pem

def load_or_create_keys(name: str, keydir: str = ".keys") -> Tuple[bytes, bytes]:
    """Persist one RSA keypair per name (user or user:device); create if missing."""
    p = Path(keydir)
    p.mkdir(parents=True, exist_ok=True)
    safe = name.replace("/", "_").replace(":", "_")
    priv_path, pub_path = p / f"{safe}.priv.pem", p / f"{safe}.pub.pem"
    if priv_path.exists() and pub_path.exists():
        return priv_path.read_bytes(), pub_path.read_bytes()
    priv_pem, pub_pem = generate_rsa()
    priv_path.write_bytes(priv_pem)
    pub_path.write_bytes(pub_pem)
    return priv_pem, pub_pem

def load_private_pem(pem: bytes):
    return load_pem_private_key(pem, password=None)

def normalize_pem(material: Union[str, bytes]) -> bytes:
    """
    Undo storage damage on PEM text: literal backslash-n sequences become real
    line breaks, CRLF becomes LF, surrounding whitespace is trimmed.
    """
    if isinstance(material, (bytes, bytearray)):
        material = bytes(material).decode("utf-8", errors="replace")
    text = str(material).replace("\\r\\n", "\n").replace("\\n", "\n")
    text = text.replace("\r\n", "\n").strip()
    return (text + "\n").encode("ascii", errors="replace")

def load_public_key(material: Union[str, bytes]) -> RSAPublicKey:
    """
    Parse (possibly escaped) PEM into an RSA public key.
    Raises ValueError for anything unparsable, non-RSA or too weak.
    """
    try:
        pub = load_pem_public_key(normalize_pem(material))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"unparsable public key: {e}") from e
    if not isinstance(pub, RSAPublicKey):
        raise ValueError("public key is not RSA")
    if pub.key_size < MIN_RSA_BITS:
        raise ValueError(f"Rejected weak RSA key (size={pub.key_size})")
    return pub

def public_key_pem(material: Union[str, bytes]) -> str:
    """Re-serialize key material to clean SubjectPublicKeyInfo PEM text."""
    pub = load_public_key(material)
    return pub.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")

# ----------------------------
# Content hash
# ----------------------------

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()

# ----------------------------
# RSASSA-PSS (SHA-256) signatures over the raw canonical payload
# ----------------------------

def _pss() -> padding.PSS:
    return padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=PSS_SALT_LENGTH)

def rsa_pss_sign(priv_pem: bytes, message: bytes) -> bytes:
    priv = load_private_pem(priv_pem)
    return priv.sign(message, _pss(), hashes.SHA256())

def rsa_pss_verify(public_key_material: Union[str, bytes], message: bytes, signature: bytes) -> bool:
    """
    True only for a valid signature. Malformed key material, wrong key type
    and bad signatures all come back as False.
    """
    try:
        pub = load_public_key(public_key_material)
    except ValueError:
        return False
    try:
        pub.verify(signature, message, _pss(), hashes.SHA256())
        return True
    except InvalidSignature:
        return False
    except (ValueError, TypeError):
        return False
