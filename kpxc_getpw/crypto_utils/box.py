# =============================================================================
# Crypto Utilities for the KeePassXC browser-integration channel
# =============================================================================
"""
Design goals
- Speak exactly what the peer speaks: NaCl crypto_box (X25519 + XSalsa20-Poly1305).
- Small set of functions with no hidden state; the session owns its keys.
- Fixed-length binary keys and nonces, base64 text on the wire.

What you get
1) Key material:
   - generate_keypair(): ephemeral X25519 pair, one per session
   - generate_nonce(): 24 random bytes, one per message
   - increment_nonce(): libsodium little-endian increment (the peer answers
     every request with the request nonce incremented)

2) Boxes for application payloads:
   - encrypt()/decrypt() on raw bytes
   - seal_message()/open_message() on JSON objects, producing/consuming the
     base64 "message" field of an encrypted request

3) At-rest protection for the association store:
   - scrypt + AES-GCM versioned document, atomic write, chmod 600 best-effort

Failure policy
- Any decryption or verification failure raises AuthenticationFailure.
  Callers must treat it as a potential tampering signal and abort.
"""

from __future__ import annotations

import base64
import json
import os
import tempfile
from typing import Any, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from nacl.bindings import sodium_increment
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as nacl_random

from kpxc_getpw.errors import AuthenticationFailure, HandshakeError


# =============================================================================
# Constants and versions
# =============================================================================

NONCE_SIZE = Box.NONCE_SIZE          # 24
KEY_SIZE = PublicKey.SIZE            # 32
CLIENT_ID_SIZE = 24

_DOC_VERSION = "assoc.v1"
_DOC_AAD = b"kpxc-getpw.associations.v1"


# =============================================================================
# Encoding and canonical JSON
# =============================================================================

def b64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def b64_decode(data: str) -> bytes:
    return base64.b64decode(data.encode("utf-8"), validate=True)


def _canon_json_bytes(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


# =============================================================================
# Keys and nonces
# =============================================================================

def generate_keypair() -> Tuple[PublicKey, PrivateKey]:
    priv = PrivateKey.generate()
    return priv.public_key, priv


def generate_nonce() -> bytes:
    return nacl_random(NONCE_SIZE)


def generate_client_id() -> str:
    return b64_encode(nacl_random(CLIENT_ID_SIZE))


def increment_nonce(nonce: Union[bytes, str]) -> bytes:
    """
    Little-endian increment, identical to libsodium's sodium_increment().
    Accepts raw bytes or the base64 text form.
    """
    raw = b64_decode(nonce) if isinstance(nonce, str) else bytes(nonce)
    if len(raw) != NONCE_SIZE:
        raise ValueError("invalid nonce length")
    return sodium_increment(raw)


def serialize_public_key(key: PublicKey) -> str:
    return b64_encode(bytes(key))


def load_public_key(pub_b64: str) -> PublicKey:
    """Parse peer key material. Malformed input is a handshake failure."""
    if not isinstance(pub_b64, str):
        raise HandshakeError("public key must be a base64 string")
    try:
        raw = b64_decode(pub_b64)
    except ValueError as e:
        raise HandshakeError("public key is not valid base64") from e
    if len(raw) != KEY_SIZE:
        raise HandshakeError("invalid X25519 public key length")
    return PublicKey(raw)


# =============================================================================
# Boxes
# =============================================================================

def encrypt(plaintext: bytes, nonce: bytes, peer_public: PublicKey, own_private: PrivateKey) -> bytes:
    if len(nonce) != NONCE_SIZE:
        raise ValueError("nonce must be 24 bytes")
    box = Box(own_private, peer_public)
    return box.encrypt(plaintext, nonce).ciphertext


def decrypt(ciphertext: bytes, nonce: bytes, peer_public: PublicKey, own_private: PrivateKey) -> bytes:
    if len(nonce) != NONCE_SIZE:
        raise AuthenticationFailure("nonce must be 24 bytes")
    box = Box(own_private, peer_public)
    try:
        return box.decrypt(ciphertext, nonce)
    except CryptoError as e:
        raise AuthenticationFailure("message failed authentication") from e


def seal_message(obj: dict, nonce: bytes, peer_public: PublicKey, own_private: PrivateKey) -> str:
    """
    Encrypt a JSON object into the base64 ciphertext carried by the
    "message" field of an encrypted request.
    """
    if not isinstance(obj, dict):
        raise ValueError("obj must be a dict")
    return b64_encode(encrypt(_canon_json_bytes(obj), nonce, peer_public, own_private))


def open_message(message_b64: str, nonce: bytes, peer_public: PublicKey, own_private: PrivateKey) -> dict:
    """
    Decrypt the "message" field of a response into its JSON object.

    Anything that is not a well-formed box holding a JSON object raises
    AuthenticationFailure.
    """
    if not isinstance(message_b64, str):
        raise AuthenticationFailure("encrypted message must be a base64 string")
    try:
        ciphertext = b64_decode(message_b64)
    except ValueError as e:
        raise AuthenticationFailure("encrypted message is not valid base64") from e

    plaintext = decrypt(ciphertext, nonce, peer_public, own_private)
    try:
        obj = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AuthenticationFailure("decrypted payload is not JSON") from e
    if not isinstance(obj, dict):
        raise AuthenticationFailure("decrypted payload is not a dict")
    return obj


# =============================================================================
# At-rest storage
# =============================================================================

def atomic_write_json(path: str, doc: dict, *, mode: int = 0o600) -> None:
    d = os.path.dirname(os.path.abspath(path)) or "."
    os.makedirs(d, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp.", dir=d)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        # best-effort perms
        try:
            os.chmod(tmp, mode)
        except OSError:
            pass
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def _kdf_scrypt(passphrase: bytes, salt: bytes, *, n: int, r: int, p: int) -> bytes:
    kdf = Scrypt(salt=salt, length=32, n=n, r=r, p=p)
    return kdf.derive(passphrase)


def is_encrypted_document(doc: Any) -> bool:
    return isinstance(doc, dict) and doc.get("v") == _DOC_VERSION and "ciphertext" in doc


def encrypt_document(
    obj: dict,
    passphrase: bytes,
    *,
    scrypt_n: int = 2**14,
    scrypt_r: int = 8,
    scrypt_p: int = 1,
) -> dict:
    """
    Wrap a JSON object in a passphrase-protected document.
    Key derived with scrypt, payload sealed with AES-GCM.
    """
    if not isinstance(passphrase, (bytes, bytearray)) or not passphrase:
        raise ValueError("passphrase must be non-empty bytes")

    salt = os.urandom(16)
    key = _kdf_scrypt(bytes(passphrase), salt, n=scrypt_n, r=scrypt_r, p=scrypt_p)
    nonce = os.urandom(12)
    ct = AESGCM(key).encrypt(nonce, _canon_json_bytes(obj), associated_data=_DOC_AAD)

    return {
        "v": _DOC_VERSION,
        "kdf": "scrypt",
        "kdf_params": {"n": scrypt_n, "r": scrypt_r, "p": scrypt_p},
        "salt": b64_encode(salt),
        "nonce": b64_encode(nonce),
        "ciphertext": b64_encode(ct),
    }


def _kdf_param(params: dict, name: str, default: int, upper: int) -> int:
    value = params.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= upper:
        raise ValueError(f"invalid kdf parameter {name!r}")
    return value


def decrypt_document(doc: dict, passphrase: Optional[bytes]) -> dict:
    if not is_encrypted_document(doc) or doc.get("kdf") != "scrypt":
        raise ValueError("unsupported document format")
    if not passphrase:
        raise AuthenticationFailure("document is encrypted and no passphrase was given")

    params = doc.get("kdf_params", {})
    if not isinstance(params, dict):
        raise ValueError("kdf_params must be an object")
    n = _kdf_param(params, "n", 2**14, 2**20)
    r = _kdf_param(params, "r", 8, 32)
    p = _kdf_param(params, "p", 1, 16)
    if n < 2 or n & (n - 1):
        raise ValueError("kdf parameter 'n' must be a power of two")

    fields = {}
    for name in ("salt", "nonce", "ciphertext"):
        value = doc.get(name)
        if not isinstance(value, str):
            raise ValueError(f"document field {name!r} must be a base64 string")
        fields[name] = b64_decode(value)
    if len(fields["nonce"]) != 12:
        raise ValueError("invalid document nonce length")

    key = _kdf_scrypt(bytes(passphrase), fields["salt"], n=n, r=r, p=p)
    try:
        plaintext = AESGCM(key).decrypt(fields["nonce"], fields["ciphertext"], associated_data=_DOC_AAD)
    except InvalidTag as e:
        raise AuthenticationFailure("wrong passphrase or tampered document") from e

    obj = json.loads(plaintext.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("decrypted document is not a dict")
    return obj
