"""
Create, extend, update and delete user accounts across backing stores.

``register_user`` hashes the password once and creates a record in every
requested store concurrently under a fresh user id. If any store fails after
retries, or the registry entry cannot be written, the records already created
are deleted again (rollback) and ``ProvisioningError`` is raised. Nothing is
left half-enrolled.

``enroll_in_store`` copies an existing user's record from the authoritative
store into one more store and records the new enrollment.

``update_user_profile`` pushes profile fields to every store the user is
enrolled in and reports one outcome per store.

``delete_user`` optionally archives a snapshot of the registry entry into the
audit log, deletes the user's record from every store (full fan-out), then
removes the registry entry.
"""
import re
import time
import uuid
import asyncio
import logging
from typing import Any, Optional

from .clients import BackingStoreClient, RecordNotFoundError
from .directory import DirectoryStore, record_audit
from .exceptions import (
    PersistenceError,
    ProvisioningError,
    UserNotFoundError,
    ValidationError,
)
from .hasher import ahash_password, validate_secret
from .models import (
    AuditEntry,
    AuditStatus,
    BackingStore,
    Operation,
    StoreOutcome,
    StoreStatus,
    utcnow,
)
from .propagation import PropagationUnit

logger = logging.getLogger("credsync.provisioning")

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+$")
MIN_USERNAME_LENGTH = 3

PROFILE_FIELDS = frozenset({"email", "username", "display_name"})
CREDENTIAL_FIELDS = frozenset({"password", "password_hash", "password_updated_at"})


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def validate_user_data(email: str, password: str, username: Optional[str] = None) -> None:
    """Validate registration input.

    Raises:
        WeakSecretError: The password is too short.
        ValidationError: Email or username are invalid.
    """
    validate_secret(password)
    errors = []
    if not email or not _EMAIL.match(email):
        errors.append("Valid email is required")
    if username is not None and len(username) < MIN_USERNAME_LENGTH:
        errors.append(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
    if errors:
        raise ValidationError(f"Validation failed: {', '.join(errors)}")


class AccountProvisioner:
    """Create and remove user accounts in every backing store.

    Args:
        directory: Registry of users and audit log.
        propagation: Retry policy and clients used for store calls.
        authoritative_store: Store whose record is copied when a user is
            enrolled in an additional store.
    """

    def __init__(
        self,
        directory: DirectoryStore,
        propagation: PropagationUnit,
        authoritative_store: str = "primary",
    ):
        self._directory = directory
        self._propagation = propagation
        self.authoritative_store = authoritative_store

    async def _create(self, store_name: str, data: dict[str, Any]) -> tuple[StoreOutcome, Optional[str]]:
        async def _action(client: BackingStoreClient) -> str:
            return await client.create_record(data)

        outcome, record_id = await self._propagation.call(
            store_name, "", _action, label="user creation",
        )
        if record_id is not None:
            outcome = outcome.model_copy(update={"record_id": record_id})
        return outcome, record_id

    async def _delete(self, store_name: str, record_id: str) -> StoreOutcome:
        async def _action(client: BackingStoreClient) -> None:
            try:
                await client.delete_record(record_id)
            except RecordNotFoundError:
                logger.info(
                    "Record already absent: store=%s record=%s", store_name, record_id,
                )

        outcome, _ = await self._propagation.call(
            store_name, record_id, _action, label="user deletion",
        )
        return outcome

    async def _rollback(self, created: list[StoreOutcome]) -> None:
        for outcome in created:
            result = await self._delete(outcome.store_name, outcome.record_id)
            if result.success:
                logger.info(
                    "User deleted from store (rollback): store=%s record=%s",
                    outcome.store_name, outcome.record_id,
                )
            else:
                logger.error(
                    "Failed to rollback user creation: store=%s record=%s error=%s",
                    outcome.store_name, outcome.record_id, result.error,
                )

    async def register_user(
        self,
        email: str,
        password: str,
        stores: list[str],
        *,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create the account in every store in ``stores``.

        Each registration gets a new uuid4 user id. Repeated store names are
        created once.

        Raises:
            ValidationError: Invalid input (including ``WeakSecretError``).
            ProvisioningError: A store or the registry failed; created
                records were rolled back.
        """
        started = time.monotonic()
        user_id = str(uuid.uuid4())
        stores = list(dict.fromkeys(stores))
        created: list[StoreOutcome] = []
        rollback_performed = False
        try:
            validate_user_data(email, password, username)
            if not stores:
                raise ValidationError("At least one backing store is required")
            logger.info(
                "Starting user registration: user=%s stores=%s", user_id, stores,
            )
            hashed = await ahash_password(password)
            data = {
                "user_id": user_id,
                "email": email,
                "username": username,
                "display_name": display_name,
                "password_hash": hashed,
                "is_active": True,
                "created_at": utcnow().isoformat(),
            }
            results = await asyncio.gather(*(self._create(name, data) for name in stores))
            outcomes = [outcome for outcome, _ in results]
            created = [o for o in outcomes if o.success]
            failed = [o for o in outcomes if not o.success]
            if failed:
                details = "; ".join(f"{o.store_name}: {o.error}" for o in failed)
                logger.error(
                    "User creation failed in some stores: user=%s failures=%s",
                    user_id, details,
                )
                raise ProvisioningError(
                    f"Failed to create user in stores: "
                    f"{', '.join(o.store_name for o in failed)}. Errors: {details}",
                    rollback_performed=bool(created),
                )
            entry = await self._directory.upsert_user(
                user_id,
                email=email,
                username=username,
                display_name=display_name,
                backing_stores=[
                    BackingStore(
                        store_name=o.store_name,
                        record_id=o.record_id,
                        username=username,
                        status=StoreStatus.SYNCED,
                    )
                    for o in outcomes
                ],
            )
        except Exception as err:
            duration = _elapsed_ms(started)
            logger.error(
                "User registration failed: user=%s error=%s duration=%dms",
                user_id, err, duration,
            )
            if created:
                rollback_performed = True
                await self._rollback(created)
            await record_audit(self._directory, AuditEntry(
                user_id=user_id,
                operation=Operation.USER_REGISTRATION,
                status=AuditStatus.ERROR,
                error=str(err),
                duration_ms=duration,
                details={"rollback_performed": rollback_performed, "stores": stores},
            ))
            try:
                await self._directory.delete_user(user_id)
            except PersistenceError as cleanup_err:
                logger.error(
                    "Failed to clean up registry: user=%s error=%s", user_id, cleanup_err,
                )
            if isinstance(err, (ValidationError, ProvisioningError)):
                raise
            raise ProvisioningError(
                f"User registration failed: {err}",
                rollback_performed=rollback_performed,
            ) from err

        duration = _elapsed_ms(started)
        await record_audit(self._directory, AuditEntry(
            user_id=user_id,
            operation=Operation.USER_REGISTRATION,
            status=AuditStatus.SUCCESS,
            per_store_outcomes=outcomes,
            duration_ms=duration,
            details={"stores": stores, "email": email},
        ))
        logger.info("User registered: user=%s duration=%dms", user_id, duration)
        return {
            "success": True,
            "user_id": user_id,
            "email": email,
            "stores": [
                {"store_name": s.store_name, "record_id": s.record_id}
                for s in entry.backing_stores
            ],
            "duration_ms": duration,
        }

    async def enroll_in_store(self, user_id: str, store_name: str) -> dict[str, Any]:
        """Copy the user's record from the authoritative store into ``store_name``.

        Already enrolled users are left untouched. The copied record keeps the
        current credential hash, so the new store accepts the same password.

        Raises:
            UserNotFoundError: Unknown user, or not enrolled in the
                authoritative store.
            ProvisioningError: Reading the source record or creating the new
                one failed.
        """
        started = time.monotonic()
        record: Optional[StoreOutcome] = None
        try:
            user = await self._directory.get_user(user_id)
            if user is None:
                raise UserNotFoundError(user_id, f"User {user_id} not found in registry")
            existing = user.get_store(store_name)
            if existing is not None:
                logger.info("User already enrolled: user=%s store=%s", user_id, store_name)
                return {
                    "success": True,
                    "message": "User already enrolled in this store",
                    "store_name": store_name,
                    "record_id": existing.record_id,
                }
            source = user.get_store(self.authoritative_store)
            if source is None:
                raise UserNotFoundError(
                    user_id, f"User {user_id} not found in {self.authoritative_store} store",
                )
            logger.info(
                "Enrolling user in additional store: user=%s store=%s", user_id, store_name,
            )

            async def _read(client: BackingStoreClient) -> dict[str, Any]:
                return await client.get_record(source.record_id)

            read, data = await self._propagation.call(
                source.store_name, source.record_id, _read, label="record read",
            )
            if not read.success:
                raise ProvisioningError(
                    f"Cannot read user from {source.store_name}: {read.error}",
                )
            outcome, _ = await self._create(store_name, data)
            if not outcome.success:
                raise ProvisioningError(
                    f"Failed to create user in {store_name}: {outcome.error}",
                )
            record = outcome
            await self._directory.add_backing_store(user_id, BackingStore(
                store_name=store_name,
                record_id=outcome.record_id,
                username=user.username,
                status=StoreStatus.SYNCED,
            ))
        except Exception as err:
            duration = _elapsed_ms(started)
            logger.error(
                "Failed to enroll user: user=%s store=%s error=%s",
                user_id, store_name, err,
            )
            if record is not None:
                await self._rollback([record])
            await record_audit(self._directory, AuditEntry(
                user_id=user_id,
                operation=Operation.USER_SYNC,
                status=AuditStatus.ERROR,
                error=str(err),
                duration_ms=duration,
                details={"store_name": store_name},
            ))
            raise

        await record_audit(self._directory, AuditEntry(
            user_id=user_id,
            operation=Operation.USER_SYNC,
            status=AuditStatus.SUCCESS,
            per_store_outcomes=[record],
            duration_ms=_elapsed_ms(started),
            details={"store_name": store_name},
        ))
        logger.info(
            "User enrolled: user=%s store=%s record=%s",
            user_id, store_name, record.record_id,
        )
        return {
            "success": True,
            "message": "User enrolled in store",
            "store_name": store_name,
            "record_id": record.record_id,
        }

    async def update_user_profile(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply profile ``updates`` in every store, then in the registry.

        Every store is attempted. Fields the registry keeps (email, username,
        display name) are merged into the registry entry even when some
        stores failed.

        Raises:
            UserNotFoundError: The user is not in the registry.
            ValidationError: ``updates`` is empty or touches credential fields.
        """
        started = time.monotonic()
        try:
            if not updates:
                raise ValidationError("No profile fields to update")
            credential_fields = CREDENTIAL_FIELDS.intersection(updates)
            if credential_fields:
                raise ValidationError(
                    f"Credential fields cannot be updated here: {sorted(credential_fields)}",
                )
            if "email" in updates and not _EMAIL.match(updates["email"] or ""):
                raise ValidationError("Valid email is required")
            user =await self._directory.get_user(user_id)
            if user is None:
                raise UserNotFoundError(user_id, f"User {user_id} not found in registry")
            logger.info(
                "Updating user in all stores: user=%s fields=%s", user_id, sorted(updates),
            )
            data = {**updates, "updated_at": utcnow().isoformat()}

            async def _update(store: BackingStore) -> StoreOutcome:
                async def _action(client: BackingStoreClient) -> Any:
                    return await client.update_record(store.record_id, data)

                outcome, _ = await self._propagation.call(
                    store.store_name, store.record_id, _action, label="profile update",
                )
                return outcome

            outcomes = list(await asyncio.gather(*(
                _update(store) for store in user.backing_stores
            )))
            profile = {k: v for k, v in updates.items() if k in PROFILE_FIELDS}
            if profile:
                await self._directory.upsert_user(user_id, **profile)
        except Exception as err:
            logger.error("User update failed: user=%s error=%s", user_id, err)
            await record_audit(self._directory, AuditEntry(
                user_id=user_id,
                operation=Operation.USER_UPDATE,
                status=AuditStatus.ERROR,
                error=str(err),
                duration_ms=_elapsed_ms(started),
            ))
            raise

        failed = [o for o in outcomes if not o.success]
        await record_audit(self._directory, AuditEntry(
            user_id=user_id,
            operation=Operation.USER_UPDATE,
            status=AuditStatus.PARTIAL_FAILURE if failed else AuditStatus.SUCCESS,
            per_store_outcomes=outcomes,
            duration_ms=_elapsed_ms(started),
            details={
                "updates": sorted(updates),
                "failed_stores": [o.store_name for o in failed],
            },
        ))
        if failed:
            logger.warning(
                "User update completed with failures: user=%s failed=%s",
                user_id, [o.store_name for o in failed],
            )
        else:
            logger.info("User updated in all stores: user=%s", user_id)
        return {
            "success": not failed,
            "message": (
                "User update completed with failures" if failed
                else "User updated in all stores"
            ),
            "results": outcomes,
            "failed_stores": failed,
        }

    async def delete_user(self, user_id: str, archive: bool = True) -> dict[str, Any]:
        """Delete the account from every store and from the registry.

        Raises:
            UserNotFoundError: The user is not in the registry.
        """
        started = time.monotonic()
        user = await self._directory.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id, f"User {user_id} not found in registry")
        logger.info("Deleting user from all stores: user=%s archive=%s", user_id, archive)

        archived = None
        if archive:
            archived = user.model_dump(mode="json")
            await record_audit(self._directory, AuditEntry(
                user_id=user_id,
                operation=Operation.USER_ARCHIVE,
                status=AuditStatus.SUCCESS,
                details={"snapshot": archived},
            ))

        outcomes = list(await asyncio.gather(*(
            self._delete(store.store_name, store.record_id)
            for store in user.backing_stores
        )))
        failed = [o for o in outcomes if not o.success]

        await self._directory.delete_user(user_id)
        await record_audit(self._directory, AuditEntry(
            user_id=user_id,
            operation=Operation.USER_DELETION,
            status=AuditStatus.PARTIAL_FAILURE if failed else AuditStatus.SUCCESS,
            per_store_outcomes=outcomes,
            duration_ms=_elapsed_ms(started),
            details={"archived": archive},
        ))

        if failed:
            logger.warning(
                "User deletion completed with failures: user=%s failed=%s",
                user_id, [o.store_name for o in failed],
            )
        else:
            logger.info("User deleted from all stores: user=%s", user_id)
        return {
            "success": not failed,
            "message": (
                "User deletion completed with failures" if failed
                else "User deleted from all stores"
            ),
            "results": outcomes,
            "failed_stores": failed,
            "archived_data": archived,
        }
