"""
Secret Custody Service
One-time escrow keypairs with private keys encrypted at rest.

Records are stored as "<iv_hex>:<ciphertext_hex>" using AES-256-CBC with a key
derived from the server secret via scrypt and a fresh random IV per record.
"""

import logging
import os
from dataclasses import dataclass
from functools import cached_property

import base58
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from solders.keypair import Keypair

from config import Config
from utils.exceptions import DecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
KEY_LENGTH = 32
SECRET_KEY_LENGTH = 64
# Fixed salt so every process derives the same key from the same secret
KDF_SALT = b"salt"


@dataclass(frozen=True)
class EscrowSecret:
    """Public half exposed freely; the private half only as ciphertext"""
    public_key: str
    encrypted_secret: str

    def __repr__(self):
        return f"EscrowSecret(public_key='{self.public_key}')"


class SecretCustody:
    """Creates escrow keypairs and encrypts/decrypts their secrets"""

    def __init__(self, server_secret: str):
        self._server_secret = Config.validate_encryption_key(server_secret)

    @classmethod
    def from_config(cls, config: Config) -> "SecretCustody":
        return cls(config.ESCROW_ENCRYPTION_KEY)

    @cached_property
    def _key(self) -> bytes:
        kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=2 ** 14, r=8, p=1)
        return kdf.derive(self._server_secret.encode("utf-8"))

    def create(self) -> EscrowSecret:
        """Generate a fresh escrow keypair and return its public key and encrypted secret"""
        keypair = Keypair()
        encoded_secret = base58.b58encode(bytes(keypair)).decode("ascii")
        record = self.encrypt(encoded_secret)
        public_key = str(keypair.pubkey())
        logger.info(f"🔐 ESCROW_KEYPAIR_CREATED: {public_key}")
        return EscrowSecret(public_key=public_key, encrypted_secret=record)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt_text(self, record: str) -> str:
        """Decrypt a stored record back to its plaintext string"""
        if not record or not isinstance(record, str):
            raise DecryptionError("Encrypted record is empty")

        parts = record.split(":")
        if len(parts) != 2:
            raise DecryptionError("Invalid encrypted data format")

        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
        except ValueError as e:
            raise DecryptionError("Encrypted record is not valid hex") from e

        if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % IV_LENGTH:
            raise DecryptionError("Encrypted record has invalid lengths")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            # Wrong key and corrupted ciphertext both surface as bad padding here
            raise DecryptionError("Failed to decrypt escrow secret") from e

    def decrypt(self, record: str) -> bytes:
        """Return the raw 64-byte escrow secret key"""
        encoded = self.decrypt_text(record)
        try:
            secret = base58.b58decode(encoded)
        except ValueError as e:
            raise DecryptionError("Decrypted secret is not valid base58") from e
        if len(secret) != SECRET_KEY_LENGTH:
            raise DecryptionError("Decrypted secret has unexpected length")
        return secret

    def load_keypair(self, record: str) -> Keypair:
        """Decrypt straight into a signer; callers must not keep it beyond one transaction"""
        return Keypair.from_bytes(self.decrypt(record))


def generate_claim_token(length: int = 32) -> str:
    """Random hex token for the claim link (64 hex chars by default)"""
    return os.urandom(length).hex()
