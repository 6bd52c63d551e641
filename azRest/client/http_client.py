"""
HTTP client that executes REST requests with Azure bearer authentication
"""

# Standard library imports
import io
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlsplit

# Third-party imports
import requests
import urllib3
from requests.structures import CaseInsensitiveDict

from ..auth.token_provider import TokenProvider
from ..version import USER_AGENT
from .errors import (
    PaginationError,
    RedirectLimitError,
    RequestCancelledError,
    ResponseTooLargeError,
    RetriesExhaustedError,
)
from .formatter import FORMAT_AUTO, redact_sensitive_header
from .pagination import PaginationAggregator


DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY = 3
DEFAULT_MAX_REDIRECTS = 10
DEFAULT_MAX_RESPONSE_SIZE = 100 * 1024 * 1024

# Request bodies up to this size are buffered so retries resend identical bytes
MAX_REPLAY_BODY_SIZE = 10 * 1024 * 1024

READ_CHUNK_SIZE = 64 * 1024

RETRYABLE_ERROR_MARKERS = (
    'timeout',
    'timed out',
    'connection refused',
    'connection reset',
    'no such host',
    'name or service not known',
    'temporary failure in name resolution',
    'network is unreachable',
    'context deadline exceeded',
)

BINARY_CONTENT_TYPES = (
    'application/octet-stream',
    'application/pdf',
    'application/zip',
    'application/gzip',
    'application/x-tar',
    'image/',
    'audio/',
    'video/',
    'font/',
)

TEXT_CONTENT_MARKERS = ('text/', 'json', 'xml', 'javascript', 'x-www-form-urlencoded', 'yaml')


@dataclass
class RequestOptions:
    """Everything needed to execute one logical request"""
    method: str = 'GET'
    url: str = ''
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    scope: str = ''
    skip_auth: bool = False
    verbose: bool = False
    timeout: float = DEFAULT_TIMEOUT
    insecure: bool = False
    follow_redirects: bool = True
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    retry: int = DEFAULT_RETRY
    max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE
    paginate: bool = False
    output_file: Optional[str] = None
    format: str = FORMAT_AUTO
    binary: bool = False
    token_provider: Optional[TokenProvider] = None


@dataclass
class Response:
    """Completed HTTP response with a fully read body"""
    status_code: int
    status: str
    headers: CaseInsensitiveDict
    body: bytes
    duration: float


def _warn(message: str) -> None:
    print(f"Warning: {message}", file=sys.stderr)


def should_skip_auth(url: str, headers: Dict[str, str], no_auth: bool, scope: Optional[str] = None) -> bool:
    """Decide whether a bearer token must be left off the request.

    Auth is skipped when explicitly disabled, when the caller already set an
    Authorization header, when the URL is not HTTPS, or when a scope was
    resolved but came back empty.
    """
    if no_auth:
        return True
    if any(key.lower() == 'authorization' for key in headers):
        return True
    if urlsplit(url).scheme.lower() != 'https':
        return True
    if scope is not None and not scope:
        return True
    return False


def is_retryable_error(err: Optional[BaseException]) -> bool:
    """Check whether a transport error is worth retrying.

    TLS and proxy failures are permanent; timeouts, refused/reset connections
    and name resolution failures are transient.
    """
    if err is None:
        return False
    if isinstance(err, (requests.exceptions.SSLError, requests.exceptions.ProxyError)):
        return False
    if isinstance(err, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True

    text = str(err).lower()
    return any(marker in text for marker in RETRYABLE_ERROR_MARKERS)


def detect_content_type(body: bytes, content_type: str) -> bool:
    """Return True when a response should be treated as binary.

    The Content-Type header decides when it is conclusive; otherwise the first
    512 bytes are sniffed for NUL bytes or invalid UTF-8.
    """
    ct = (content_type or '').lower()
    if any(marker in ct for marker in TEXT_CONTENT_MARKERS):
        return False
    if any(ct.startswith(prefix) for prefix in BINARY_CONTENT_TYPES):
        return True

    sample = body[:512]
    if b'\x00' in sample:
        return True
    try:
        sample.decode('utf-8')
    except UnicodeDecodeError as e:
        # A multi-byte character cut at the sample boundary is still text
        return e.start < len(sample) - 3
    return False


def _size_limit(max_size: Optional[int]) -> int:
    return max_size if max_size and max_size > 0 else DEFAULT_MAX_RESPONSE_SIZE


def _wait_for_backoff(delay: float, cancel_event: Optional[threading.Event]) -> None:
    """Sleep for delay seconds, returning early with an error when cancelled"""
    if cancel_event is None:
        time.sleep(delay)
        return
    if cancel_event.wait(delay):
        raise RequestCancelledError("request cancelled during retry backoff")


def _stream_with_prefix(prefix: bytes, stream) -> Iterator[bytes]:
    yield prefix
    while True:
        chunk = stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        yield chunk.encode('utf-8') if isinstance(chunk, str) else chunk


def prepare_body(body: Any) -> Any:
    """Buffer a request body so it can be replayed on retry.

    Strings, bytes and streams up to MAX_REPLAY_BODY_SIZE come back as bytes.
    Larger seekable files are returned as-is and larger non-seekable streams
    as a one-shot iterator; retries of such bodies may not resend them intact.
    """
    if body is None:
        return None
    if isinstance(body, str):
        return body.encode('utf-8')
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if not hasattr(body, 'read'):
        raise ValueError(f"unsupported request body type: {type(body).__name__}")

    seekable = False
    try:
        seekable = body.seekable()
    except (AttributeError, OSError, ValueError):
        pass

    if seekable:
        start = body.tell()
        size = body.seek(0, io.SEEK_END) - start
        body.seek(start)
        if size > MAX_REPLAY_BODY_SIZE:
            return body
        data = body.read()
    else:
        data = body.read(MAX_REPLAY_BODY_SIZE + 1)
        if len(data) > MAX_REPLAY_BODY_SIZE:
            if isinstance(data, str):
                data = data.encode('utf-8')
            return _stream_with_prefix(data, body)

    return data.encode('utf-8') if isinstance(data, str) else data


class HttpClient:
    """Executes requests with retries, bounded redirects and bounded response size.

    Each request applies its own ``max_redirects`` to the shared session, so a
    client must not serve concurrent requests with different redirect limits.
    The CLI and the tool API build one client per request.
    """

    def __init__(self, token_provider: Optional[TokenProvider] = None, insecure: bool = False,
                 timeout: float = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        """Initialize the HTTP client.

        Parameters:
            token_provider (TokenProvider): Source of bearer tokens. Can be None
                                            when every request skips auth.
            insecure (bool): Skip TLS certificate verification
            timeout (float): Default per-attempt timeout in seconds
            session (requests.Session): Session to send requests with
        """
        self.token_provider = token_provider
        self.insecure = insecure
        self.timeout = timeout

        # HTTP Session for connection pooling (reuse TCP connections)
        self.session = session if session is not None else requests.Session()

        if insecure:
            self.session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def execute(self, opts: RequestOptions, cancel_event: Optional[threading.Event] = None) -> Response:
        """Execute a request described by opts.

        Parameters:
            opts (RequestOptions): Request description
            cancel_event (threading.Event): When set, aborts the retry loop

        Returns:
            Response: Final response. 4xx responses, and 5xx responses that
                      survived every retry, are returned rather than raised.

        Raises:
            ValueError: If the URL or options are invalid
            AuthenticationError: If a token cannot be acquired
            RetriesExhaustedError: If a transient network error persisted
            RedirectLimitError: If the redirect chain is too long
            ResponseTooLargeError: If the body exceeds max_response_size
            RequestCancelledError: If cancel_event is set
            requests.RequestException: For non-retryable transport errors
        """
        parts = urlsplit(opts.url)
        if parts.scheme.lower() not in ('http', 'https') or not parts.netloc:
            raise ValueError(f"invalid URL: {opts.url!r} (expected an absolute http or https URL)")

        headers = self._build_headers(opts)
        body = prepare_body(opts.body)

        if opts.verbose:
            self._log_request(opts.method, opts.url, headers)

        response = self._send_with_retry(opts.method, opts.url, headers, body, opts, cancel_event)

        if opts.paginate and 200 <= response.status_code < 300:
            response = self._paginate(response, opts, cancel_event)

        return response

    def _build_headers(self, opts: RequestOptions) -> Dict[str, str]:
        headers = dict(opts.headers)

        if not opts.skip_auth and opts.scope:
            provider = opts.token_provider or self.token_provider
            if provider is None:
                raise ValueError(f"no token provider configured for scope {opts.scope}")
            token = provider.get_token(opts.scope)
            headers['Authorization'] = f"Bearer {token}"

        if not any(key.lower() == 'user-agent' for key in headers):
            headers['User-Agent'] = USER_AGENT

        return headers

    @staticmethod
    def _log_request(method: str, url: str, headers: Dict[str, str]) -> None:
        print(f"> {method} {url}", file=sys.stderr)
        for key, value in headers.items():
            print(f"> {key}: {redact_sensitive_header(key, value)}", file=sys.stderr)
        print(file=sys.stderr)

    def _send_with_retry(self, method: str, url: str, headers: Dict[str, str], body: Any,
                         opts: RequestOptions, cancel_event: Optional[threading.Event]) -> Response:
        retries = max(opts.retry, 0)
        started = time.monotonic()

        for attempt in range(retries + 1):
            if attempt > 0:
                delay = 2 ** (attempt - 1)
                if opts.verbose:
                    _warn(f"retrying in {delay}s (attempt {attempt + 1}/{retries + 1})")
                _wait_for_backoff(delay, cancel_event)
            elif cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError("request cancelled before it was sent")

            try:
                resp = self._send_once(method, url, headers, body, opts)
            except requests.exceptions.TooManyRedirects as e:
                raise RedirectLimitError(opts.max_redirects) from e
            except requests.exceptions.RequestException as e:
                if not is_retryable_error(e):
                    raise
                if attempt < retries:
                    if opts.verbose:
                        _warn(f"request failed: {e}")
                    continue
                raise RetriesExhaustedError(
                    f"request failed after {retries} retries: {e}", retries
                ) from e

            if 500 <= resp.status_code < 600 and attempt < retries:
                resp.close()
                continue

            try:
                return self._read_response(resp, opts.max_response_size, started)
            finally:
                resp.close()

        # Should never reach here: the last attempt either returns or raises
        raise RuntimeError("retry loop exited without a result")

    def _send_once(self, method: str, url: str, headers: Dict[str, str], body: Any,
                   opts: RequestOptions) -> requests.Response:
        self.session.max_redirects = opts.max_redirects
        verify = not (self.insecure or opts.insecure)
        if not verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        return self.session.request(
            method,
            url,
            headers=headers,
            data=body,
            timeout=opts.timeout or self.timeout,
            allow_redirects=opts.follow_redirects,
            verify=verify,
            stream=True,
        )

    @staticmethod
    def _read_response(resp: requests.Response, max_size: int, started: float) -> Response:
        limit = _size_limit(max_size)
        chunks = []
        total = 0

        for chunk in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
            total += len(chunk)
            if total > limit:
                raise ResponseTooLargeError(limit)
            chunks.append(chunk)

        return Response(
            status_code=resp.status_code,
            status=f"{resp.status_code} {resp.reason or ''}".strip(),
            headers=CaseInsensitiveDict(resp.headers),
            body=b''.join(chunks),
            duration=time.monotonic() - started,
        )

    def _paginate(self, first_page: Response, opts: RequestOptions,
                  cancel_event: Optional[threading.Event]) -> Response:
        def fetch_page(page_url: str) -> Response:
            # Fresh headers per page; a long walk can outlive a token
            page_headers = self._build_headers(opts)
            return self._send_with_retry(opts.method, page_url, page_headers, None, opts, cancel_event)

        aggregator = PaginationAggregator(fetch_page, warn=_warn if opts.verbose else None)
        started = time.monotonic()

        try:
            merged = aggregator.aggregate(first_page, opts.url)
        except PaginationError as e:
            if opts.verbose:
                _warn(f"pagination failed, returning the first page only: {e}")
            return first_page

        if merged is None:
            return first_page

        limit = _size_limit(opts.max_response_size)
        if len(merged) > limit:
            if opts.verbose:
                _warn(f"merged pages exceed maximum size of {limit} bytes, returning the first page only")
            return first_page

        headers = CaseInsensitiveDict(first_page.headers)
        headers.pop('Link', None)
        headers.pop('Content-Length', None)
        headers['Content-Type'] = 'application/json'

        return Response(
            status_code=first_page.status_code,
            status=first_page.status,
            headers=headers,
            body=merged,
            duration=first_page.duration + (time.monotonic() - started),
        )
