"""Access-token management for room authentication.

Fetches short-lived room credentials from the token endpoint over HTTP,
retries transient failures with jittered exponential backoff, and keeps the
credential fresh with a single self-renewing refresh timer.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field

import aiohttp
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from duplex_client.config import CredentialConfig
from duplex_client.errors import AuthError, NetworkError, SessionError
from duplex_client.scheduler import (
    AsyncioScheduler,
    BackgroundTasks,
    BackoffPolicy,
    Cancellable,
    Scheduler,
)
from duplex_client.utils.logging import mask_identifier

logger = logging.getLogger(__name__)

# expires_at values above this are epoch milliseconds rather than seconds
_MILLISECONDS_THRESHOLD = 1e12


class TokenResponse(BaseModel):
    """Token endpoint response body."""

    model_config = ConfigDict(populate_by_name=True)

    server_url: str = Field(..., alias="serverUrl")
    room_name: str = Field(..., alias="roomName")
    participant_name: str = Field(..., alias="participantName")
    participant_token: str = Field(..., min_length=1, alias="participantToken")
    expires_at: float | None = Field(default=None)


@dataclass(frozen=True)
class Credential:
    """Short-lived room access credential. Never persisted."""

    token: str = field(repr=False)
    expires_at: float | None
    server_url: str
    room_name: str
    participant_name: str

    def is_valid(self, now: float, refresh_buffer_s: float) -> bool:
        """Valid while ``now`` is before the expiry minus the refresh buffer.

        A credential without a known expiry is never treated as valid.
        """
        if self.expires_at is None:
            return False
        return now < self.expires_at - refresh_buffer_s

    @classmethod
    def from_response(cls, response: TokenResponse) -> "Credential":
        expires_at = response.expires_at
        if expires_at is not None and expires_at > _MILLISECONDS_THRESHOLD:
            expires_at = expires_at / 1000.0

        return cls(
            token=response.participant_token,
            expires_at=expires_at,
            server_url=response.server_url,
            room_name=response.room_name,
            participant_name=response.participant_name,
        )


@dataclass(frozen=True)
class CredentialRequestOptions:
    """Per-request overrides for the token query parameters."""

    provider: str | None = None
    voice_id: str | None = None


class CredentialProvider:
    """Fetches and proactively refreshes the room access credential.

    One instance per session. The cached credential and its refresh timer are
    owned here exclusively; :meth:`clear` drops both.
    """

    def __init__(
        self,
        config: CredentialConfig,
        scheduler: Scheduler | None = None,
        http_session: aiohttp.ClientSession | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize credential provider.

        Args:
            config: Token endpoint configuration
            scheduler: Clock and timer source (asyncio-backed by default)
            http_session: Shared aiohttp session; one is created lazily and
                owned by the provider when omitted
            rng: Random source for backoff jitter
        """
        self.config = config
        self._scheduler = scheduler or AsyncioScheduler()
        self._session = http_session
        self._owns_session = http_session is None
        self._policy = BackoffPolicy.from_config(config.retry)
        self._rng = rng or random.Random()

        self._credential: Credential | None = None
        self._refresh_handle: Cancellable | None = None
        self._background = BackgroundTasks()
        self._request_task: asyncio.Task[Credential] | None = None
        self._request_key: tuple[str, CredentialRequestOptions, int] | None = None
        # Bumped by clear(); requests that started earlier don't store results
        self._generation = 0

    @property
    def current_credential(self) -> Credential | None:
        """Cached credential without validation."""
        return self._credential

    @property
    def has_credential(self) -> bool:
        return self._credential is not None

    @property
    def refresh_scheduled(self) -> bool:
        return self._refresh_handle is not None and not self._refresh_handle.cancelled()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def get_valid_credential(
        self, user_id: str, options: CredentialRequestOptions | None = None
    ) -> Credential:
        """Return the cached credential or transparently fetch a new one.

        Args:
            user_id: Local participant identity
            options: Optional query parameter overrides

        Returns:
            A credential valid for at least the refresh buffer

        Raises:
            AuthError: Endpoint rejected the user (401/403)
            NetworkError: Every attempt failed transiently
        """
        credential = self._credential
        if credential is not None and credential.is_valid(
            self._scheduler.time(), self.config.refresh_buffer_s
        ):
            logger.debug("Using cached credential")
            return credential

        logger.info(
            "Credential missing or near expiry, requesting new one",
            extra={"user_id": mask_identifier(user_id)},
        )
        return await self.request_credential(user_id, options)

    async def request_credential(
        self, user_id: str, options: CredentialRequestOptions | None = None
    ) -> Credential:
        """Request a new credential from the token endpoint with retries.

        Calls made while an identical request is in flight await that
        request instead of starting another.

        Args:
            user_id: Local participant identity, sent as ``X-User-Id``
            options: Optional query parameter overrides

        Returns:
            Freshly issued credential

        Raises:
            AuthError: Endpoint rejected the user (401/403), not retried
            NetworkError: Every attempt failed transiently
            SessionError: The provider was closed while the request ran
        """
        options = options or CredentialRequestOptions()
        key = (user_id, options, self._generation)

        # Concurrent callers for the same identity share one request
        task = self._request_task
        if task is None or task.done() or self._request_key != key:
            task = asyncio.create_task(self._request(user_id, options), name="credential-request")
            self._request_task = task
            self._request_key = key

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise SessionError("Credential request aborted by close") from None
            raise

    async def _request(self, user_id: str, options: CredentialRequestOptions) -> Credential:
        generation = self._generation
        params = {
            "provider": options.provider or self.config.provider,
            "voice_id": options.voice_id or self.config.voice_id,
        }
        headers = {
            "Content-Type": "application/json",
            "X-User-Id": user_id,
        }

        credential: Credential | None = None
        last_error: NetworkError | None = None
        max_attempts = self._policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            logger.debug(
                "Token request attempt",
                extra={"attempt": attempt, "max_attempts": max_attempts},
            )
            try:
                credential = await self._fetch_once(params, headers)
                break
            except AuthError as e:
                logger.error(
                    "Token request rejected",
                    extra={"user_id": mask_identifier(user_id), "status": e.status},
                )
                raise
            except NetworkError as e:
                last_error = e

            if attempt < max_attempts:
                delay = self._policy.delay(attempt, self._rng)
                logger.warning(
                    "Token request failed, retrying",
                    extra={
                        "attempt": attempt,
                        "delay_s": round(delay, 3),
                        "error": str(last_error),
                    },
                )
                await self._scheduler.sleep(delay)

        if credential is None:
            logger.error(
                "Token request failed after all attempts",
                extra={"attempts": max_attempts, "error": str(last_error)},
            )
            raise NetworkError(
                f"Token request failed after {max_attempts} attempts: {last_error}",
                status=last_error.status if last_error else None,
            ) from last_error

        if generation == self._generation:
            self._credential = credential
            self._schedule_refresh(user_id, options)

        logger.info(
            "Credential received",
            extra={
                "room": credential.room_name,
                "expires_at": credential.expires_at,
                "token": mask_identifier(credential.token, keep=8),
            },
        )
        return credential

    async def _fetch_once(self, params: dict[str, str], headers: dict[str, str]) -> Credential:
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)

        try:
            async with session.get(
                self.config.token_url, params=params, headers=headers, timeout=timeout
            ) as response:
                if response.status in (401, 403):
                    raise AuthError(
                        f"Token endpoint returned {response.status}", status=response.status
                    )
                if not 200 <= response.status < 300:
                    raise NetworkError(
                        f"Token endpoint returned {response.status}", status=response.status
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise NetworkError(f"Token request error: {type(e).__name__}: {e}") from e

        try:
            return Credential.from_response(TokenResponse.model_validate(data))
        except PydanticValidationError as e:
            raise NetworkError(
                f"Invalid token response ({e.error_count()} validation errors)"
            ) from e

    def _schedule_refresh(self, user_id: str, options: CredentialRequestOptions) -> None:
        self._cancel_refresh()

        credential = self._credential
        if credential is None or credential.expires_at is None:
            return

        delay = credential.expires_at - self.config.refresh_buffer_s - self._scheduler.time()
        if delay <= 0:
            # Already inside the buffer; the next get_valid_credential() refreshes
            logger.warning(
                "Credential expires within refresh buffer, not scheduling refresh",
                extra={"expires_at": credential.expires_at},
            )
            return

        logger.debug("Scheduling credential refresh", extra={"refresh_in_s": round(delay, 3)})
        self._refresh_handle = self._scheduler.call_later(
            delay, self._on_refresh_due, user_id, options, self._generation
        )

    def _on_refresh_due(
        self, user_id: str, options: CredentialRequestOptions, generation: int
    ) -> None:
        self._refresh_handle = None
        if generation != self._generation:
            return
        self._background.spawn(self._background_refresh(user_id, options), name="credential-refresh")

    async def _background_refresh(self, user_id: str, options: CredentialRequestOptions) -> None:
        try:
            logger.info("Auto-refreshing credential")
            await self.request_credential(user_id, options)
        except SessionError as e:
            # Next get_valid_credential() retries synchronously
            logger.error(
                "Background credential refresh failed",
                extra={"category": e.category, "error": str(e)},
            )

    def _cancel_refresh(self) -> None:
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None

    def clear(self) -> None:
        """Cancel the pending refresh and drop the cached credential. Idempotent."""
        if self._credential is not None or self._refresh_handle is not None:
            logger.info("Clearing credential")
        self._generation += 1
        self._cancel_refresh()
        self._credential = None

    async def close(self) -> None:
        """Clear state, stop background refreshes and close an owned HTTP session."""
        self.clear()
        await self._background.cancel_all()
        task = self._request_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._request_task = None
        self._request_key = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
