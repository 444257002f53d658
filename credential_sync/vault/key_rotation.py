"""
Vault Key Rotation — batch re-encryption of mirrored secrets when rotating
master keys.

Re-encrypts every secret from one key version to another in configurable
batches. Each batch is written in a single document save. The operation is
idempotent: secrets already at the target key version are not selected.

Security Note:
    Plaintext exists in memory only during re-encryption of each secret.
    Never log plaintext or ciphertext values.
"""
import logging

from .client import EncryptedVaultClient

logger = logging.getLogger("credsync.vault")


async def rotate_master_key(
    client: EncryptedVaultClient,
    old_key_id: int,
    new_key_id: int,
    batch_size: int = 100,
) -> dict:
    """Re-encrypt all secrets from old_key_id to new_key_id in batches.

    Args:
        client: Encrypted vault holding the secrets.
        old_key_id: Source key version to rotate from.
        new_key_id: Target key version to rotate to.
        batch_size: Number of secrets processed per batch.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.

    Raises:
        KeyError: If old_key_id or new_key_id is not loaded in the client.
    """
    master_keys = client.config.master_keys
    if old_key_id not in master_keys:
        raise KeyError(f"Old key version {old_key_id} not found in master_keys")
    if new_key_id not in master_keys:
        raise KeyError(f"New key version {new_key_id} not found in master_keys")

    stats = {
        "total": 0,
        "rotated": 0,
        "errors": 0,
        "skipped": await client.count_at_version(new_key_id),
    }
    if old_key_id == new_key_id:
        return stats

    logger.info(
        "Starting key rotation from v%d to v%d (batch_size=%d)",
        old_key_id, new_key_id, batch_size,
    )

    # rotated rows leave the selection; only failed rows are skipped over
    offset = 0
    batch_num = 0
    while True:
        rows = await client.secrets_at_version(old_key_id, limit=batch_size, offset=offset)
        if not rows:
            break
        batch_num += 1
        logger.info("Processing batch %d (%d secrets)", batch_num, len(rows))

        errors = await client.reencrypt(rows, new_key_id)
        for secret_id, message in errors.items():
            logger.error("Error rotating secret id=%s: %s", secret_id, message)

        stats["total"] += len(rows)
        stats["errors"] += len(errors)
        stats["rotated"] += len(rows) - len(errors)
        offset += len(errors)

    logger.info("Key rotation complete: %s", stats)
    return stats
