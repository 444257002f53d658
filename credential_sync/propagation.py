"""
Per-Store Propagation — apply one credential update to one backing store.

Retry policy:
    Up to ``max_attempts`` attempts with linear backoff (``attempt * base_delay``
    seconds before the next attempt). Transient failures (``StoreError``,
    ``StoreAuthError``, timeouts, unexpected client errors) are retried.
    A definitive rejection (``RecordNotFoundError``, or any error whose
    ``retryable`` attribute is False) and missing system credentials fail
    immediately.

``apply`` never raises; it always returns a ``StoreOutcome`` so the caller
can aggregate outcomes across stores.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .clients import BackingStoreClient, StoreClientRegistry
from .conf import SystemCredentials
from .exceptions import MissingSystemCredentialsError
from .models import StoreOutcome, utcnow

logger = logging.getLogger("credsync.propagation")

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY = 1.0  # seconds

StoreAction = Callable[[BackingStoreClient], Awaitable[Any]]


class PropagationUnit:
    """Push a hashed credential into a single backing store with retries.

    Args:
        registry: Source of store clients.
        credentials: System credentials used to authenticate clients.
        max_attempts: Upper bound of attempts per ``apply`` call.
        base_delay: Backoff unit in seconds; attempt N waits ``N * base_delay``.
        attempt_timeout: Optional per-attempt deadline in seconds.
        sleep: Awaitable used for backoff (replaceable in tests).
    """

    def __init__(
        self,
        registry: StoreClientRegistry,
        credentials: SystemCredentials,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        base_delay: float = RETRY_DELAY,
        attempt_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._registry = registry
        self._credentials = credentials
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    @property
    def registry(self) -> StoreClientRegistry:
        return self._registry

    async def ensure_authenticated(self, store_name: str, client: BackingStoreClient) -> None:
        """Authenticate ``client`` with system credentials if needed.

        Raises:
            MissingSystemCredentialsError: No credentials for the store.
        """
        if client.is_authenticated():
            return
        username, password = self._credentials.for_store(store_name)
        await client.authenticate(username, password)

    async def call(
        self,
        store_name: str,
        record_id: str,
        action: StoreAction,
        label: str = "password update",
    ) -> tuple[StoreOutcome, Any]:
        """Run ``action(client)`` against ``store_name`` under the retry policy.

        Every attempt authenticates the client first when its session is not
        live. Never raises.

        Returns:
            The outcome and the value returned by ``action`` (None on failure).
        """
        try:
            client = self._registry.get(store_name)
        except KeyError as err:
            logger.error("Cannot reach store=%s: %s", store_name, err)
            return StoreOutcome(
                store_name=store_name, record_id=record_id, success=False,
                attempts=0, error=f"No client for store '{store_name}'",
                retryable=False,
            ), None

        async def _attempt() -> Any:
            await self.ensure_authenticated(store_name, client)
            return await action(client)

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.attempt_timeout:
                    value = await asyncio.wait_for(_attempt(), timeout=self.attempt_timeout)
                else:
                    value = await _attempt()
            except MissingSystemCredentialsError as err:
                logger.error("Cannot reach store=%s: %s", store_name, err)
                return StoreOutcome(
                    store_name=store_name, record_id=record_id, success=False,
                    attempts=attempt, error=str(err), retryable=False,
                ), None
            except asyncio.TimeoutError:
                last_error = f"Timed out after {self.attempt_timeout}s"
            except Exception as err:  # client errors of any shape are outcomes
                if not getattr(err, "retryable", True):
                    logger.error(
                        "Store rejected %s: store=%s record=%s error=%s",
                        label, store_name, record_id, err,
                    )
                    return StoreOutcome(
                        store_name=store_name, record_id=record_id, success=False,
                        attempts=attempt, error=str(err), retryable=False,
                    ), None
                last_error = str(err) or type(err).__name__
            else:
                logger.info(
                    "Store %s done: store=%s record=%s attempt=%d",
                    label, store_name, record_id, attempt,
                )
                return StoreOutcome(
                    store_name=store_name, record_id=record_id, success=True,
                    attempts=attempt,
                ), value
            if attempt < self.max_attempts:
                logger.warning(
                    "Retrying %s: store=%s record=%s attempt=%d error=%s",
                    label, store_name, record_id, attempt, last_error,
                )
                await self._sleep(self.base_delay * attempt)

        logger.error(
            "Failed %s: store=%s record=%s attempts=%d error=%s",
            label, store_name, record_id, self.max_attempts, last_error,
        )
        return StoreOutcome(
            store_name=store_name, record_id=record_id, success=False,
            attempts=self.max_attempts, error=last_error,
        ), None

    async def apply(self, store_name: str, record_id: str, hashed_value: str) -> StoreOutcome:
        """Update the credential of ``record_id`` in ``store_name``."""
        async def _update(client: BackingStoreClient) -> Any:
            return await client.update_credential(record_id, hashed_value, utcnow())

        outcome, _ = await self.call(store_name, record_id, _update)
        return outcome
