"""Stream cipher helpers.

Payload sections are RC4 ciphertext stored as hex text. The RC4 key is derived
from a key string the way OpenSSL's ``EVP_BytesToKey`` does it for a 128-bit
stream cipher (MD5, no salt, one round), which reduces to ``md5(key)``.
"""

import binascii
import hashlib

from cryptography.hazmat.decrepit.ciphers.algorithms import ARC4
from cryptography.hazmat.primitives.ciphers import Cipher


class CipherInputError(ValueError):
    """Raised when ciphertext is not valid hex text."""


def _rc4_key(key: str) -> bytes:
    """Derive the raw RC4 key bytes for a key string.

    :param key: Key string.
    :returns: 16-byte RC4 key.
    """

    return hashlib.md5(key.encode("utf-8"), usedforsecurity=False).digest()


def _cipher(key: str) -> Cipher:
    return Cipher(ARC4(_rc4_key(key)), mode=None)


def _unhex(cipher_text: str | bytes) -> bytes:
    """Decode hex ciphertext text.

    :param cipher_text: Hex text (str or ASCII bytes).
    :returns: Raw ciphertext bytes.
    :raises CipherInputError: If the input is not hex.
    """

    try:
        if isinstance(cipher_text, str) is True:
            return bytes.fromhex(cipher_text)
        return binascii.unhexlify(bytes(cipher_text).strip())
    except (ValueError, binascii.Error) as e:
        raise CipherInputError(f"Ciphertext is not valid hex text: {e}") from e


def decrypt(cipher_text: str | bytes, key: str) -> bytes:
    """Decrypt hex ciphertext with a key string.

    A wrong key does not raise; it yields unrelated bytes.

    :param cipher_text: Hex-encoded ciphertext.
    :param key: Key string.
    :returns: Plaintext bytes.
    :raises CipherInputError: If ``cipher_text`` is not hex.
    """

    decryptor = _cipher(key).decryptor()
    return decryptor.update(_unhex(cipher_text)) + decryptor.finalize()


def decrypt_text(cipher_text: str | bytes, key: str) -> str:
    """Decrypt hex ciphertext and decode it as UTF-8.

    Undecodable sequences are replaced rather than raising, so a wrong key
    surfaces later where the text is interpreted.

    :param cipher_text: Hex-encoded ciphertext.
    :param key: Key string.
    :returns: Plaintext string.
    """

    return decrypt(cipher_text, key).decode("utf-8", errors="replace")


def encrypt(plain: str | bytes, key: str) -> bytes:
    """Encrypt data into hex ciphertext text.

    :param plain: Plaintext (str is encoded as UTF-8).
    :param key: Key string.
    :returns: ASCII hex ciphertext.
    """

    if isinstance(plain, str) is True:
        plain = plain.encode("utf-8")
    encryptor = _cipher(key).encryptor()
    raw: bytes = encryptor.update(bytes(plain)) + encryptor.finalize()
    return raw.hex().encode("ascii")


def derive_key(public_key: str, encrypted_private_key: str | bytes) -> str:
    """Derive the working key.

    The private key is itself encrypted with the public key; the working key
    is their concatenation.

    :param public_key: Public secret supplied at startup.
    :param encrypted_private_key: Hex ciphertext of the private key.
    :returns: Working key string.
    """

    private_key: str = decrypt_text(encrypted_private_key, public_key)
    return f"{public_key}{private_key}"
