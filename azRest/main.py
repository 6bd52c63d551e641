"""
Main CLI entry point for azd rest
"""

import argparse
import os
import sys
import threading
import traceback
from typing import Callable, List, Optional

from .auth.scope import detect_scope, is_azure_host
from .auth.token_provider import AuthenticationError, AzureTokenProvider, StaticTokenProvider, TokenProvider
from .client.errors import RestClientError
from .client.formatter import OUTPUT_FORMATS, Formatter
from .client.http_client import (
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_MAX_RESPONSE_SIZE,
    DEFAULT_RETRY,
    DEFAULT_TIMEOUT,
    HttpClient,
    RequestOptions,
    detect_content_type,
    should_skip_auth,
)
from .version import BUILD_DATE, GIT_COMMIT, NAME, VERSION


METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')

# Reused for every request made by this process
_token_provider: Optional[TokenProvider] = None
_token_provider_lock = threading.Lock()


def get_default_token_provider() -> TokenProvider:
    """Return the process-wide token provider, creating it on first use.

    AZURE_ACCESS_TOKEN, when set, is used as a static token for every scope.
    Otherwise tokens come from azure-identity's DefaultAzureCredential.
    """
    global _token_provider
    with _token_provider_lock:
        if _token_provider is None:
            static_token = os.environ.get('AZURE_ACCESS_TOKEN')
            if static_token:
                _token_provider = StaticTokenProvider(static_token)
            else:
                _token_provider = AzureTokenProvider()
        return _token_provider


def parse_header_args(header_args: List[str]) -> dict:
    """Parse repeated ``Key:Value`` header flags.

    Raises:
        ValueError: If a header has no colon or an empty name
    """
    headers = {}
    for header in header_args or []:
        key, sep, value = header.partition(':')
        if not sep or not key.strip():
            raise ValueError(f"invalid header format: {header} (expected Key:Value)")
        headers[key.strip()] = value.strip()
    return headers


def build_request_options(
    method: str,
    url: str,
    args: argparse.Namespace,
    token_provider_factory: Callable[[], TokenProvider] = get_default_token_provider,
) -> RequestOptions:
    """Build RequestOptions from parsed CLI arguments.

    Resolves the scope (explicit --scope wins over detection), decides whether
    auth applies and opens the body file when --data-file is given. The caller
    must close ``opts.body`` when it is a file.

    Raises:
        ValueError: For malformed headers, URLs or unreadable data files
    """
    opts = RequestOptions(
        method=method,
        url=url,
        headers=parse_header_args(args.header),
        scope=args.scope or '',
        skip_auth=args.no_auth,
        verbose=args.verbose,
        timeout=args.timeout,
        insecure=args.insecure,
        follow_redirects=args.follow_redirects,
        max_redirects=args.max_redirects,
        retry=args.retry,
        max_response_size=args.max_response_size,
        paginate=args.paginate,
        output_file=args.output_file,
        format=args.format,
        binary=args.binary,
    )

    if not opts.scope and not opts.skip_auth:
        opts.scope = detect_scope(url)
        if not opts.scope and is_azure_host(url):
            print("Warning: Azure host detected but no scope found. "
                  "Use --scope to provide a scope or --no-auth to skip authentication.", file=sys.stderr)

    opts.skip_auth = should_skip_auth(url, opts.headers, args.no_auth, opts.scope)
    if opts.skip_auth:
        opts.scope = ''
    else:
        opts.token_provider = token_provider_factory()

    if args.data_file:
        # @file shorthand
        path = args.data_file[1:] if args.data_file.startswith('@') else args.data_file
        try:
            opts.body = open(path, 'rb')
        except OSError as e:
            raise ValueError(f"failed to open data file {path}: {e}") from e
    elif args.data:
        opts.body = args.data

    return opts


def execute_request(method: str, url: str, args: argparse.Namespace,
                    client_factory: Callable[..., HttpClient] = HttpClient,
                    token_provider_factory: Callable[[], TokenProvider] = get_default_token_provider) -> int:
    """Execute one request and write the result.

    Returns:
        int: 0 on success, 1 when the server answered with status >= 400
    """
    opts = build_request_options(method, url, args, token_provider_factory)

    try:
        client = client_factory(opts.token_provider, insecure=opts.insecure, timeout=opts.timeout)
        response = client.execute(opts)
    finally:
        if hasattr(opts.body, 'close'):
            opts.body.close()

    formatter = Formatter(opts.verbose, opts.format)

    if opts.binary or detect_content_type(response.body, response.headers.get('Content-Type', '')):
        if opts.verbose:
            print(formatter.format_verbose_prefix(response), file=sys.stderr)
        formatter.write_raw_output(response.body, opts.output_file)
    else:
        formatter.write_output(formatter.format(response), opts.output_file)

    if response.status_code >= 400:
        print(f"Error: request failed with status {response.status}", file=sys.stderr)
        return 1
    return 0


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    # Authentication
    parser.add_argument('-s', '--scope', default='',
                        help='OAuth scope for authentication (auto-detected if not provided)')
    parser.add_argument('--no-auth', action='store_true', help='Skip authentication (no bearer token)')

    # Request
    parser.add_argument('-H', '--header', action='append', default=[], metavar='KEY:VALUE',
                        help='Custom header (repeatable)')
    parser.add_argument('-d', '--data', help='Request body (JSON string)')
    parser.add_argument('--data-file', help='Read request body from file (also accepts @{file} shorthand)')
    parser.add_argument('-t', '--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f'Per-attempt request timeout in seconds (default: {DEFAULT_TIMEOUT:g})')
    parser.add_argument('-k', '--insecure', action='store_true', help='Skip TLS certificate verification')
    parser.add_argument('--follow-redirects', action=argparse.BooleanOptionalAction, default=True,
                        help='Follow HTTP redirects (default: true)')
    parser.add_argument('--max-redirects', type=int, default=DEFAULT_MAX_REDIRECTS,
                        help=f'Maximum redirect hops (default: {DEFAULT_MAX_REDIRECTS})')
    parser.add_argument('--retry', type=int, default=DEFAULT_RETRY,
                        help=f'Retry attempts with exponential backoff for transient errors (default: {DEFAULT_RETRY})')
    parser.add_argument('--max-response-size', type=int, default=DEFAULT_MAX_RESPONSE_SIZE, metavar='BYTES',
                        help='Maximum response body size in bytes (default: 100 MiB)')
    parser.add_argument('--paginate', action='store_true',
                        help='Follow continuation tokens/next links when supported')

    # Output
    parser.add_argument('--output-file', help='Write response to file (raw for binary content)')
    parser.add_argument('-f', '--format', choices=OUTPUT_FORMATS, default='auto',
                        help='Output format (default: auto)')
    parser.add_argument('--binary', action='store_true',
                        help='Write the response body as binary without transformation')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output (show headers, timing)')


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    _add_common_arguments(common)

    parser = argparse.ArgumentParser(
        prog='azd rest',
        description='Execute REST API calls with Azure authentication',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Simple GET (auto-detects Management API scope)
  azd rest get "https://management.azure.com/subscriptions?api-version=2020-01-01"

  # POST with JSON body
  azd rest post "https://management.azure.com/.../storageAccounts/{name}?api-version=2021-04-01" --data '{"location":"eastus"}'

  # Custom scope for non-Azure endpoint
  azd rest get https://api.myservice.com/data --scope https://myservice.com/.default

  # Non-Azure endpoint without auth
  azd rest get https://api.github.com/repos/Azure/azure-dev --no-auth
        """
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    for method in METHODS:
        sub = subparsers.add_parser(method.lower(), parents=[common],
                                    help=f'Execute {method} request')
        sub.add_argument('url', help='Request URL')
        sub.set_defaults(method=method)

    subparsers.add_parser('version', help='Show version information')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for azd rest."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'version':
        print(f"{NAME} version {VERSION} (commit {GIT_COMMIT}, built {BUILD_DATE})")
        return 0

    try:
        return execute_request(args.method, args.url, args)
    except KeyboardInterrupt:
        print("\nRequest interrupted by user", file=sys.stderr)
        return 1
    except (ValueError, AuthenticationError, RestClientError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
