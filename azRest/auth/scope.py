"""
OAuth scope detection for Azure service endpoints
"""

# Standard library imports
from urllib.parse import urlsplit


DEVOPS_SCOPE = "499b84ac-1321-427f-aa17-267ca6975798/.default"
SERVICE_BUS_SCOPE = "https://servicebus.azure.net/.default"
EVENT_HUBS_SCOPE = "https://eventhubs.azure.net/.default"
STORAGE_SCOPE = "https://storage.azure.com/.default"
OSSRDBMS_SCOPE = "https://ossrdbms-aad.database.windows.net/.default"

# Hosts with a fixed scope; checked before any suffix rule
EXACT_MATCHES = {
    'management.azure.com': 'https://management.azure.com/.default',
    'graph.microsoft.com': 'https://graph.microsoft.com/.default',
    'api.loganalytics.io': 'https://api.loganalytics.io/.default',
    'dev.azure.com': DEVOPS_SCOPE,
}

# Ordered so matching is deterministic
SUFFIX_MATCHES = (
    ('.vault.azure.net', 'https://vault.azure.net/.default'),
    ('.blob.core.windows.net', STORAGE_SCOPE),
    ('.queue.core.windows.net', STORAGE_SCOPE),
    ('.table.core.windows.net', STORAGE_SCOPE),
    ('.file.core.windows.net', STORAGE_SCOPE),
    ('.dfs.core.windows.net', STORAGE_SCOPE),
    ('.azurecr.io', 'https://containerregistry.azure.net/.default'),
    ('.documents.azure.com', 'https://cosmos.azure.com/.default'),
    ('.azconfig.io', 'https://azconfig.io/.default'),
    ('.batch.azure.com', 'https://batch.core.windows.net/.default'),
    ('.postgres.database.azure.com', OSSRDBMS_SCOPE),
    ('.mysql.database.azure.com', OSSRDBMS_SCOPE),
    ('.mariadb.database.azure.com', OSSRDBMS_SCOPE),
    ('.database.windows.net', 'https://database.windows.net/.default'),
    ('.dev.azuresynapse.net', 'https://dev.azuresynapse.net/.default'),
    ('.azuredatalakestore.net', 'https://datalake.azure.net/.default'),
    ('.media.azure.net', 'https://rest.media.azure.net/.default'),
)

AZURE_HOST_PATTERNS = (
    '.azure.com',
    '.azure.net',
    '.windows.net',
    '.azurecr.io',
    '.azconfig.io',
    'management.azure.com',
    'graph.microsoft.com',
    'dev.azure.com',
    '.visualstudio.com',
    '.azuredatalakestore.net',
)


def _split_url(url: str):
    """Parse a URL and return its lower-cased hostname and path.

    Accessing ``port`` forces validation of the authority section, so a
    malformed port is reported here rather than ignored.

    Raises:
        ValueError: If the URL cannot be parsed
    """
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError as e:
        raise ValueError(f"failed to parse URL {url!r}: {e}") from e

    host = (parts.hostname or '').lower()
    return host, parts.path


def detect_scope(url: str) -> str:
    """Return the OAuth scope for the Azure service behind a URL.

    Matching uses the hostname only (case-insensitive, port and query ignored),
    except for Service Bus hosts where the path decides between the queue
    service and Event Hubs.

    Parameters:
        url (str): Target request URL

    Returns:
        str: The scope, or an empty string when the host is not a known
             Azure service

    Raises:
        ValueError: If the URL cannot be parsed
    """
    host, path = _split_url(url)
    if not host:
        return ""

    if host in EXACT_MATCHES:
        return EXACT_MATCHES[host]

    if host.endswith('.visualstudio.com'):
        return DEVOPS_SCOPE

    # Data Explorer clusters use a per-cluster audience
    if host.endswith('.kusto.windows.net'):
        return f"https://{host}/.default"

    # Shared by Service Bus and Event Hubs; default to Event Hubs
    if host.endswith('.servicebus.windows.net'):
        # Matches both /queue and /queues
        if '/queue' in path:
            return SERVICE_BUS_SCOPE
        return EVENT_HUBS_SCOPE

    for suffix, scope in SUFFIX_MATCHES:
        if host.endswith(suffix):
            return scope

    return ""


def is_azure_host(url: str) -> bool:
    """Check whether a URL's hostname looks like an Azure service.

    Only used to decide whether to warn when no scope could be detected.
    Never use it for security decisions.
    """
    try:
        host, _ = _split_url(url)
    except ValueError:
        return False

    if not host:
        return False

    for pattern in AZURE_HOST_PATTERNS:
        if pattern in host or host == pattern.lstrip('.'):
            return True
    return False
