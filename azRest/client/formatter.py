"""
Response formatting, header redaction and output writing
"""

# Standard library imports
import json
import os
import sys
from typing import Optional


FORMAT_AUTO = 'auto'
FORMAT_JSON = 'json'
FORMAT_RAW = 'raw'
OUTPUT_FORMATS = (FORMAT_AUTO, FORMAT_JSON, FORMAT_RAW)

REDACTED = "***REDACTED***"

# Shorter secrets are fully redacted; longer ones keep REVEAL_CHARS at each end
MIN_PARTIAL_REVEAL_LENGTH = 16
REVEAL_CHARS = 6

SENSITIVE_HEADERS = {
    'x-api-key',
    'api-key',
    'apikey',
    'x-auth-token',
    'auth-token',
    'cookie',
    'set-cookie',
    'x-csrf-token',
    'x-xsrf-token',
    'csrf-token',
    'proxy-authorization',
    'ocp-apim-subscription-key',
}


def redact_token(token: str) -> str:
    """Redact a secret, keeping only its first and last few characters.

    Values shorter than MIN_PARTIAL_REVEAL_LENGTH are fully redacted.
    """
    if len(token) < MIN_PARTIAL_REVEAL_LENGTH:
        return REDACTED
    return f"{token[:REVEAL_CHARS]}...{token[-REVEAL_CHARS:]}"


def redact_sensitive_header(key: str, value: str) -> str:
    """Return a header value that is safe to display.

    Bearer tokens keep their scheme and a short prefix/suffix, any other
    Authorization scheme is fully redacted, and the known secret-bearing
    headers get the same prefix/suffix treatment as bearer tokens.
    Everything else is returned unchanged.
    """
    name = key.lower()

    if name == 'authorization':
        if value[:7].lower() == 'bearer ':
            return f"Bearer {redact_token(value[7:].strip())}"
        return REDACTED

    if name in SENSITIVE_HEADERS:
        return redact_token(value)

    return value


def is_json(data: bytes) -> bool:
    """Check whether data parses as JSON"""
    if not data:
        return False
    try:
        json.loads(data)
    except ValueError:
        return False
    return True


def _decode(data: bytes) -> str:
    return data.decode('utf-8', errors='replace')


class Formatter:
    """Renders responses for terminal or file output"""

    def __init__(self, verbose: bool = False, output_format: str = FORMAT_AUTO):
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"invalid output format: {output_format} (expected one of: {', '.join(OUTPUT_FORMATS)})")
        self.verbose = verbose
        self.output_format = output_format

    def format(self, response) -> str:
        """Format a response body, prefixed with status and headers in verbose mode.

        Parameters:
            response (Response): Completed response

        Returns:
            str: Text ready to be written out
        """
        parts = []

        if self.verbose:
            parts.append(self.format_verbose_prefix(response))

        content_type = response.headers.get('Content-Type', '') if response.headers else ''
        if self.output_format == FORMAT_JSON or (
            self.output_format == FORMAT_AUTO and 'application/json' in content_type.lower()
        ):
            parts.append(self.format_json(response.body))
        else:
            parts.append(_decode(response.body))

        return ''.join(parts)

    def format_verbose_prefix(self, response) -> str:
        lines = [
            f"< {response.status}",
            f"Duration: {response.duration * 1000:.0f}ms",
            "Response Headers:",
        ]
        for key, value in (response.headers or {}).items():
            lines.append(f"  {key}: {redact_sensitive_header(key, value)}")
        return '\n'.join(lines) + '\n\n'

    def format_json(self, body: bytes) -> str:
        """Pretty-print JSON with 2-space indentation, falling back to the raw text"""
        if not body:
            return ''
        try:
            data = json.loads(body)
        except ValueError:
            return _decode(body)
        return json.dumps(data, indent=2, ensure_ascii=False)

    def write_output(self, content: str, output_file: Optional[str] = None) -> None:
        """Write formatted text to a file (mode 0600) or stdout"""
        if output_file:
            _write_private_file(output_file, content.encode('utf-8'))
            return
        print(content)

    def write_raw_output(self, data: bytes, output_file: Optional[str] = None) -> None:
        """Write bytes untouched to a file (mode 0600) or stdout"""
        if output_file:
            _write_private_file(output_file, data)
            return
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()


def _write_private_file(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)
    # O_CREAT only applies the mode to new files
    os.chmod(path, 0o600)
