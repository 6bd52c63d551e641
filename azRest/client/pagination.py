"""
Follow next-page links and merge paged results into a single response body
"""

# Standard library imports
import json
from typing import Any, Callable, List, Optional
from urllib.parse import urljoin

# Third-party imports
from requests.structures import CaseInsensitiveDict
from requests.utils import parse_header_links

from ..auth.token_provider import AuthenticationError
from .errors import PaginationError, RestClientError


# Hard stop against servers that always return a next link
MAX_PAGES = 1000

NEXT_LINK_FIELDS = ('nextLink', '@odata.nextLink', '@odata.next')


def find_next_link(data: Any, headers: Optional[CaseInsensitiveDict]) -> Optional[str]:
    """Return the next page reference from a page body or its Link header.

    Body fields are checked first (nextLink, @odata.nextLink, @odata.next),
    then a ``Link`` header entry with rel="next".
    """
    if isinstance(data, dict):
        for field in NEXT_LINK_FIELDS:
            link = data.get(field)
            if isinstance(link, str) and link:
                return link

    link_header = headers.get('Link') if headers else None
    if link_header:
        for link in parse_header_links(link_header):
            if 'next' in link.get('rel', '').split() and link.get('url'):
                return link['url']

    return None


def extract_items(data: Any) -> List[Any]:
    """Return the items carried by one page.

    A ``value`` array is the standard Azure shape. A top-level array
    contributes its elements; any other body counts as a single item.
    """
    if isinstance(data, dict) and isinstance(data.get('value'), list):
        return list(data['value'])
    if isinstance(data, list):
        return list(data)
    return [data]


def _parse_page(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError as e:
        raise PaginationError(f"page is not valid JSON: {e}") from e


class PaginationAggregator:
    """Walks next links from a first page and builds the merged body.

    Pages are fetched through a callable supplied by the HTTP client so that
    every page goes through the same headers, auth and retry handling.
    """

    def __init__(self, fetch_page: Callable[[str], Any], max_pages: int = MAX_PAGES,
                 warn: Optional[Callable[[str], None]] = None):
        """Initialize the aggregator.

        Parameters:
            fetch_page (Callable): Takes an absolute URL and returns a Response
            max_pages (int): Maximum number of next links to follow
            warn (Callable): Receives a message when pagination stops early
        """
        self.fetch_page = fetch_page
        self.max_pages = max_pages
        self.warn = warn
        self.pages_fetched = 0

    def _warn(self, message: str) -> None:
        if self.warn is not None:
            self.warn(message)

    def aggregate(self, first_page, request_url: str) -> Optional[bytes]:
        """Collect every page after first_page and return the merged JSON body.

        Parameters:
            first_page (Response): Response to the original request
            request_url (str): Original request URL, used to resolve relative links

        Returns:
            Optional[bytes]: Merged body, or None when the first page has no
                             next link and is not a JSON object

        Raises:
            PaginationError: If the first page carries a next link but cannot
                             be parsed as JSON
        """
        try:
            first_data = json.loads(first_page.body) if first_page.body else None
        except ValueError:
            first_data = None

        next_link = find_next_link(first_data, first_page.headers)
        if next_link is None:
            # Single JSON object page still loses its empty next-link fields
            if isinstance(first_data, dict):
                return json.dumps(self.merge(first_data, extract_items(first_data))).encode('utf-8')
            return None
        if first_data is None:
            raise PaginationError("first page is not valid JSON, cannot merge pages")

        items = extract_items(first_data)

        while next_link and self.pages_fetched < self.max_pages:
            page_url = urljoin(request_url, next_link)
            try:
                page = self.fetch_page(page_url)
                self.pages_fetched += 1
                if not 200 <= page.status_code < 300:
                    raise PaginationError(f"page {page_url} returned status {page.status_code}")
                data = _parse_page(page.body)
            except (RestClientError, AuthenticationError, ValueError, OSError) as e:
                # Keep whatever was collected so far
                self._warn(f"pagination stopped after {self.pages_fetched} page(s): {e}")
                break

            items.extend(extract_items(data))
            next_link = find_next_link(data, page.headers)
        else:
            if next_link:
                self._warn(f"pagination stopped at the limit of {self.max_pages} pages")

        return json.dumps(self.merge(first_data, items)).encode('utf-8')

    @staticmethod
    def merge(first_data: Any, items: List[Any]) -> dict:
        """Build the combined body from the first page's fields and all items"""
        if isinstance(first_data, dict):
            combined = {'value': items} if 'value' not in first_data else {}
            for key, value in first_data.items():
                combined[key] = items if key == 'value' else value
        else:
            combined = {'value': items}

        for field in NEXT_LINK_FIELDS:
            combined.pop(field, None)

        return combined
