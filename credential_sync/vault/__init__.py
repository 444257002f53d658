"""Vault Mirror — encrypted secondary copy of hashed credentials.

Security Note (Threat Model):
    The vault holds credential hashes, not plaintext passwords. Secrets are
    encrypted at rest under a versioned master key; decrypted payloads exist
    in process memory only while a secret is read or rotated. Mitigating a
    memory dump of the process requires HSM/secure enclave integration,
    which is out of scope.
"""

from .client import VaultClient, EncryptedVaultClient, SecretNotFoundError
from .config import VaultConfig, load_master_keys, generate_master_key
from .key_rotation import rotate_master_key
from .mirror import VaultMirror, secret_key_for

__all__ = [
    "VaultClient",
    "EncryptedVaultClient",
    "SecretNotFoundError",
    "VaultConfig",
    "load_master_keys",
    "generate_master_key",
    "rotate_master_key",
    "VaultMirror",
    "secret_key_for",
]
