"""Sealing of statement passwords while an import job waits in the queue.

A password supplied with an upload is stored only as ``"<iv hex>:<ciphertext hex>"``: AES-256-CBC
with PKCS7 padding and a key derived from ``Settings.encryption_key`` with scrypt. The worker
unseals it once and clears the column straight away.
"""

import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from statement_importer.core.errors import CredentialError, InvariantError

KEY_SALT = b"salt"
IV_BYTES = 16


def _derive_key(secret: str) -> bytes:
    if not secret:
        msg = "ENCRYPTION_KEY is not configured"
        raise InvariantError(msg)
    kdf = Scrypt(salt=KEY_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def seal_password(password: str, secret: str) -> str:
    """Encrypt ``password`` for temporary storage on the import job."""
    key = _derive_key(secret)
    iv = os.urandom(IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(password.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def unseal_password(sealed: str, secret: str) -> str:
    """Decrypt a value produced by ``seal_password``."""
    key = _derive_key(secret)
    parts = sealed.split(":")
    if len(parts) != 2:  # noqa: PLR2004
        msg = "Stored password has an invalid format"
        raise CredentialError(msg)
    try:
        iv = bytes.fromhex(parts[0])
        ciphertext = bytes.fromhex(parts[1])
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except ValueError as exc:
        msg = f"Failed to decrypt stored password: {exc}"
        raise CredentialError(msg) from exc
