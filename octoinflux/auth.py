"""Access token management.

This module handles:
- Caching the current Kraken token in memory (never on disk)
- Refreshing it before it comes within a safety margin of expiry
- Serializing refreshes so concurrent workers share one exchange
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from octoinflux.client import InvalidCredentialError, OctopusClient, TransientAuthError
from octoinflux.models import Credential, Token
from octoinflux.retry import RetryError, RetryPolicy

# Configure module logger
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthManager:
    """Hands out tokens that are valid for at least ``margin``.

    Attributes:
        client: Client used for the token exchange
        credential: Credential the tokens are obtained with
        margin: Tokens expiring sooner than this are refreshed
    """

    def __init__(
        self,
        client: OctopusClient,
        credential: Credential,
        margin: timedelta = timedelta(seconds=60),
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.credential = credential
        self.margin = margin
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._token: Optional[Token] = None
        self._lock = threading.Lock()
        self.refresh_count = 0

    def _is_fresh(self, token: Optional[Token]) -> bool:
        return token is not None and token.expires_at - self.margin > self._clock()

    def get_valid_token(self) -> Token:
        """Return a token valid for at least the safety margin.

        Raises:
            InvalidCredentialError: If the provider rejects the credential
            TransientAuthError: If the exchange keeps failing transiently
        """
        token = self._token
        if self._is_fresh(token):
            return token

        with self._lock:
            # Another worker may have refreshed while we waited
            if self._is_fresh(self._token):
                return self._token
            self._token = self._refresh()
            return self._token

    def invalidate(self) -> None:
        """Forget the cached token so the next caller obtains a new one."""
        with self._lock:
            self._token = None

    def _exchange(self) -> Token:
        previous = self._token
        if previous is not None and previous.refresh_token:
            try:
                return self.client.authenticate(self.credential, refresh_token=previous.refresh_token)
            except InvalidCredentialError:
                logger.info("Refresh token rejected, authenticating with credential")
        return self.client.authenticate(self.credential)

    def _refresh(self) -> Token:
        logger.info(f"Refreshing access token for {self.credential!r}")
        try:
            token = self.retry_policy.call(
                self._exchange,
                retry_on=(TransientAuthError,),
                description="token refresh",
                sleep=self._sleep,
            )
        except RetryError as e:
            raise TransientAuthError(f"Token refresh failed after {e.attempts} attempts: {e.last_error}") from e

        self.refresh_count += 1
        logger.info(f"Access token valid until {token.expires_at.isoformat()}")
        return token
