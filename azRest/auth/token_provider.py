"""
Bearer token acquisition and caching for Azure scopes
"""

# Standard library imports
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, Optional

# Third-party imports
from azure.identity import DefaultAzureCredential


# Tokens expiring within this window are refreshed before use
TOKEN_EXPIRY_SKEW = 120

# Upper bound on a credential chain call when the caller gives no deadline
DEFAULT_TOKEN_TIMEOUT = 60.0


class AuthenticationError(Exception):
    """Raised when a token cannot be acquired for a scope.

    The ``kind`` attribute ('permission', 'login' or 'generic') only selects
    the hint shown to the user. Every kind is handled the same way.
    """

    def __init__(self, message: str, scope: str = "", kind: str = "generic"):
        super().__init__(message)
        self.scope = scope
        self.kind = kind


_PERMISSION_MARKERS = ('insufficient', 'permission', 'forbidden', 'unauthorized', 'aadsts50105', 'aadsts65001')
_LOGIN_MARKERS = ('not logged in', 'credentialunavailable', 'credential unavailable', 'login')


def classify_auth_error(err: BaseException, scope: str) -> AuthenticationError:
    """Wrap a credential chain error into a user-facing AuthenticationError.

    Classification is a plain substring check on the error text. It only
    picks the guidance message; callers must not branch on it.

    Parameters:
        err (BaseException): Error raised by the credential chain
        scope (str): Scope the token was requested for

    Returns:
        AuthenticationError: Error carrying the scope, the kind and a hint
    """
    text = f"{type(err).__name__}: {err}".lower()

    if any(marker in text for marker in _PERMISSION_MARKERS):
        message = (
            f"insufficient permissions to acquire a token for scope {scope}: {err}. "
            "Check that your account has access to the target resource, "
            "or pass a different --scope."
        )
        kind = 'permission'
    elif any(marker in text for marker in _LOGIN_MARKERS):
        message = (
            f"not logged in, cannot acquire a token for scope {scope}: {err}. "
            "Run 'azd auth login' or 'az login' and try again."
        )
        kind = 'login'
    else:
        message = (
            f"authentication failed for scope {scope}: {err}. "
            "Verify your Azure login, or use --no-auth for endpoints that do not need a token."
        )
        kind = 'generic'

    return AuthenticationError(message, scope=scope, kind=kind)


@dataclass
class CachedToken:
    """Access token with its absolute expiry (epoch seconds)"""
    token: str
    expires_on: float


class TokenProvider:
    """Interface for anything that can hand out bearer tokens for a scope"""

    def get_token(self, scope: str, timeout: Optional[float] = None) -> str:
        raise NotImplementedError


class AzureTokenProvider(TokenProvider):
    """Token provider backed by an azure-identity credential chain.

    Tokens are cached per scope for the lifetime of the provider. A cached
    token is reused while it stays valid for at least TOKEN_EXPIRY_SKEW
    seconds. The lock only guards the cache dictionary, never the credential
    call, so lookups for different scopes do not wait on each other.
    """

    def __init__(self, credential=None, clock: Callable[[], float] = time.time,
                 default_timeout: float = DEFAULT_TOKEN_TIMEOUT):
        """Initialize the provider.

        Parameters:
            credential: Any object with an azure-identity style
                        ``get_token(scope)`` method. Defaults to
                        DefaultAzureCredential.
            clock (Callable): Returns the current epoch time in seconds
            default_timeout (float): Seconds to wait for the credential chain
                                     when the caller does not pass a timeout
        """
        self.credential = credential if credential is not None else DefaultAzureCredential()
        self.clock = clock
        self.default_timeout = default_timeout
        self._cache: Dict[str, CachedToken] = {}
        self._lock = threading.Lock()

    def _cached(self, scope: str) -> Optional[str]:
        with self._lock:
            entry = self._cache.get(scope)
        if entry and entry.expires_on > self.clock() + TOKEN_EXPIRY_SKEW:
            return entry.token
        return None

    def _start_credential_call(self, scope: str) -> Future:
        """Run the credential call on a daemon thread.

        A call that hangs past its deadline keeps running in the background
        but never holds up interpreter exit or calls for other scopes.
        """
        future = Future()

        def run():
            future.set_running_or_notify_cancel()
            try:
                future.set_result(self.credential.get_token(scope))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=run, name=f"azrest-token-{scope}", daemon=True).start()
        return future

    def get_token(self, scope: str, timeout: Optional[float] = None) -> str:
        """Return a bearer token for the scope, from cache when still valid.

        Raises:
            ValueError: If scope is blank
            AuthenticationError: If the credential chain fails or times out
        """
        if not scope or not scope.strip():
            raise ValueError("scope cannot be empty")

        token = self._cached(scope)
        if token is not None:
            return token

        wait = timeout if timeout is not None else self.default_timeout
        future = self._start_credential_call(scope)
        try:
            access_token = future.result(timeout=wait)
        except FutureTimeoutError as e:
            raise classify_auth_error(
                TimeoutError(f"credential chain did not respond within {wait:g}s"), scope
            ) from e
        except Exception as e:
            raise classify_auth_error(e, scope) from e

        with self._lock:
            self._cache[scope] = CachedToken(token=access_token.token, expires_on=float(access_token.expires_on))

        return access_token.token


class StaticTokenProvider(TokenProvider):
    """Returns a caller-supplied token (e.g. from AZURE_ACCESS_TOKEN) for every scope"""

    def __init__(self, token: str):
        if not token:
            raise ValueError("token cannot be empty")
        self.token = token

    def get_token(self, scope: str, timeout: Optional[float] = None) -> str:
        if not scope or not scope.strip():
            raise ValueError("scope cannot be empty")
        return self.token


class MockTokenProvider(TokenProvider):
    """Test double returning a fixed token or raising a fixed error"""

    def __init__(self, token: str = "", error: Optional[Exception] = None):
        self.token = token
        self.error = error
        self.calls = []

    def get_token(self, scope: str, timeout: Optional[float] = None) -> str:
        self.calls.append(scope)
        if self.error is not None:
            raise self.error
        return self.token
