"""
Flask API server exposing azd rest requests as agent tools
"""

# Standard library imports
import os
import sys
import traceback
from pathlib import Path
from typing import Dict

# Third-party imports
from flask import Flask, jsonify, request
from flask_cors import CORS
import requests

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Local application imports
from azRest.auth.scope import detect_scope
from azRest.auth.token_provider import AuthenticationError
from azRest.client.errors import RestClientError
from azRest.client.http_client import HttpClient, RequestOptions, should_skip_auth
from azRest.main import get_default_token_provider
from azRest.security.policy import (
    BlockedRequestError,
    RateLimiter,
    RateLimitExceededError,
    is_blocked_url,
    validate_scope_url_match,
    validate_tool_headers,
)
from azRest.version import VERSION

app = Flask(__name__)
CORS(app)

# Tool requests never follow redirects and read at most 10 MiB
TOOL_TIMEOUT = 30.0
TOOL_RETRY = 3
TOOL_MAX_REDIRECTS = 10
TOOL_MAX_RESPONSE_SIZE = 10 * 1024 * 1024

# 10 burst tokens, refills at 1 token/second (about 60/min)
limiter = RateLimiter(burst=10, rate=1.0)

TOOLS = {
    'rest_get': {
        'method': 'GET',
        'body': False,
        'description': 'Execute an authenticated GET request against an Azure or REST API endpoint',
        'readOnly': True,
    },
    'rest_post': {
        'method': 'POST',
        'body': True,
        'description': 'Execute an authenticated POST request against an Azure or REST API endpoint',
        'readOnly': False,
    },
    'rest_put': {
        'method': 'PUT',
        'body': True,
        'description': 'Execute an authenticated PUT request against an Azure or REST API endpoint',
        'readOnly': False,
    },
    'rest_patch': {
        'method': 'PATCH',
        'body': True,
        'description': 'Execute an authenticated PATCH request against an Azure or REST API endpoint',
        'readOnly': False,
    },
    'rest_delete': {
        'method': 'DELETE',
        'body': False,
        'description': 'Execute an authenticated DELETE request against an Azure or REST API endpoint',
        'readOnly': False,
    },
    'rest_head': {
        'method': 'HEAD',
        'body': False,
        'description': 'Execute an authenticated HEAD request to retrieve response headers without body',
        'readOnly': True,
    },
}

def execute_tool_request(method: str, url: str, body: str, scope_override: str,
                         headers: Dict[str, str]) -> Dict:
    """Run one tool request through the security checks and the HTTP client.

    Returns:
        Dict: statusCode, headers and body

    Raises:
        BlockedRequestError: If the URL targets a blocked address
        RateLimitExceededError: If the rate limit is hit
        ValueError: For scope mismatches or invalid input
    """
    if is_blocked_url(url):
        raise BlockedRequestError("requests to cloud metadata endpoints, loopback or private networks are blocked")

    if not limiter.allow():
        raise RateLimitExceededError("rate limit exceeded (10 burst, 1 request/second sustained)")

    opts = RequestOptions(
        method=method,
        url=url,
        headers=dict(headers),
        timeout=TOOL_TIMEOUT,
        follow_redirects=False,
        max_redirects=TOOL_MAX_REDIRECTS,
        retry=TOOL_RETRY,
        max_response_size=TOOL_MAX_RESPONSE_SIZE,
    )

    if body:
        opts.body = body

    if scope_override:
        validate_scope_url_match(scope_override, url)
        opts.scope = scope_override
    else:
        opts.scope = detect_scope(url)

    opts.skip_auth = should_skip_auth(url, opts.headers, False, opts.scope)
    if not opts.skip_auth:
        opts.token_provider = get_default_token_provider()

    client = HttpClient(opts.token_provider, timeout=opts.timeout)
    resp = client.execute(opts)

    return {
        'statusCode': resp.status_code,
        'headers': dict(resp.headers),
        'body': resp.body.decode('utf-8', errors='replace'),
    }


@app.route('/api/tools', methods=['GET'])
def list_tools():
    """List the available tools"""
    return jsonify({
        'server': 'azd-rest',
        'version': VERSION,
        'tools': [
            {'name': name, 'description': tool['description'], 'readOnly': tool['readOnly'],
             'arguments': ['url', 'scope', 'headers'] + (['body'] if tool['body'] else [])}
            for name, tool in TOOLS.items()
        ],
    })


@app.route('/api/tools/<tool_name>', methods=['POST'])
def call_tool(tool_name):
    """Invoke a tool with a JSON body of url, scope, headers and (for POST/PUT/PATCH) body"""
    tool = TOOLS.get(tool_name)
    if tool is None:
        return jsonify({'error': f'Unknown tool: {tool_name}'}), 404

    data = request.get_json(silent=True) or {}
    url = data.get('url')
    if not url or not isinstance(url, str):
        return jsonify({'error': 'missing required argument: url'}), 400

    body = data.get('body', '') if tool['body'] else ''
    if not isinstance(body, str):
        return jsonify({'error': 'body must be a string'}), 400

    headers = data.get('headers') or {}
    if not isinstance(headers, dict):
        return jsonify({'error': 'headers must be an object'}), 400

    try:
        headers = validate_tool_headers(headers)
        result = execute_tool_request(tool['method'], url, body, data.get('scope') or '', headers)
    except BlockedRequestError as e:
        return jsonify({'error': str(e)}), 403
    except RateLimitExceededError as e:
        return jsonify({'error': str(e)}), 429
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except (AuthenticationError, RestClientError, requests.RequestException) as e:
        return jsonify({'error': f'request failed: {e}'}), 502
    except Exception as e:
        print(f"Error executing {tool_name}: {str(e)}")
        traceback.print_exc()
        return jsonify({'error': str(e)}), 500

    # HEAD responses omit body
    if tool['method'] == 'HEAD':
        result['body'] = ''

    return jsonify(result)


def main():
    """Main entry point for the API server"""
    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    debug = os.environ.get('DEBUG', 'false').lower() == 'true'

    print(f"\n{'='*60}")
    print(f"azd rest Tool API Server")
    print(f"{'='*60}")

    app.run(host=host, port=port, debug=debug)


if __name__ == '__main__':
    main()
