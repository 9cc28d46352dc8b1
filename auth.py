"""
Encryption for Google refresh tokens stored in the database
"""
from cryptography.fernet import Fernet, InvalidToken
import os
import base64

ENCRYPTION_KEY = os.getenv('ENCRYPTION_KEY')
if not ENCRYPTION_KEY:
    # Development only - tokens encrypted with this key are unreadable after a restart
    ENCRYPTION_KEY = Fernet.generate_key().decode()
    print(f"⚠️  Generated encryption key for development. Add to .env: ENCRYPTION_KEY={ENCRYPTION_KEY}")


def get_cipher(key=None):
    """Get Fernet cipher instance"""
    key = key or ENCRYPTION_KEY
    if isinstance(key, str):
        key = key.encode()

    # Fernet wants 32 bytes, urlsafe base64-encoded (44 chars)
    if len(key) != 44:
        key = base64.urlsafe_b64encode(key[:32].ljust(32, b'0'))

    return Fernet(key)


def encrypt_token(token):
    """Encrypt a refresh token for storage"""
    if token is None:
        return None
    if isinstance(token, str):
        token = token.encode()
    return get_cipher().encrypt(token).decode()


def decrypt_token(encrypted_token):
    """
    Decrypt a stored refresh token

    Returns None when the ciphertext cannot be read (key rotated or data
    corrupted) - callers treat that the same as a missing refresh token.
    """
    if not encrypted_token:
        return None
    if isinstance(encrypted_token, str):
        encrypted_token = encrypted_token.encode()
    try:
        return get_cipher().decrypt(encrypted_token).decode()
    except InvalidToken:
        print("❌ Stored refresh token could not be decrypted (ENCRYPTION_KEY changed?)")
        return None
