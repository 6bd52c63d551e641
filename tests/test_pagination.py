import json

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from azRest.auth.token_provider import AuthenticationError, MockTokenProvider
from azRest.client.errors import PaginationError
from azRest.client.http_client import HttpClient, RequestOptions, Response
from azRest.client.pagination import PaginationAggregator, extract_items, find_next_link

BASE = 'https://management.azure.com/subscriptions?api-version=2020-01-01'


def page(data, status=200, headers=None):
    body = data if isinstance(data, bytes) else json.dumps(data).encode('utf-8')
    return Response(
        status_code=status,
        status=str(status),
        headers=CaseInsensitiveDict(headers or {'Content-Type': 'application/json'}),
        body=body,
        duration=0.0,
    )


class PageServer:
    """Serves pages by URL and records the order they were requested in"""

    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    def __call__(self, url):
        self.requested.append(url)
        result = self.pages[url]
        if isinstance(result, Exception):
            raise result
        return result


def test_find_next_link_body_fields():
    assert find_next_link({'nextLink': 'a'}, None) == 'a'
    assert find_next_link({'@odata.nextLink': 'b'}, None) == 'b'
    assert find_next_link({'@odata.next': 'c'}, None) == 'c'
    assert find_next_link({'nextLink': ''}, None) is None
    assert find_next_link({'value': []}, None) is None


def test_find_next_link_header():
    headers = CaseInsensitiveDict({'link': '<https://x/prev>; rel="prev", <https://x/p2>; rel="next"'})
    assert find_next_link({}, headers) == 'https://x/p2'
    assert find_next_link([1, 2], headers) == 'https://x/p2'


def test_body_field_wins_over_header():
    headers = CaseInsensitiveDict({'Link': '<https://x/header>; rel="next"'})
    assert find_next_link({'nextLink': 'https://x/body'}, headers) == 'https://x/body'


def test_extract_items():
    assert extract_items({'value': [1, 2]}) == [1, 2]
    assert extract_items([3, 4]) == [3, 4]
    assert extract_items({'id': 'x'}) == [{'id': 'x'}]


def test_merges_pages_in_order():
    server = PageServer({
        'https://management.azure.com/p2': page({'value': [3], 'nextLink': 'https://management.azure.com/p3'}),
        'https://management.azure.com/p3': page({'value': [4, 5]}),
    })
    first = page({'value': [1, 2], 'nextLink': 'https://management.azure.com/p2', 'count': 5})

    merged = json.loads(PaginationAggregator(server).aggregate(first, BASE))

    assert merged == {'value': [1, 2, 3, 4, 5], 'count': 5}
    assert list(merged) == ['value', 'count']
    assert server.requested == ['https://management.azure.com/p2', 'https://management.azure.com/p3']


def test_no_next_link_on_array_page_returns_none():
    fetched = []
    assert PaginationAggregator(fetched.append).aggregate(page([1, 2]), BASE) is None
    assert fetched == []


def test_empty_next_link_fields_removed_from_single_page():
    fetched = []
    first = page({'value': [1], 'nextLink': None, '@odata.nextLink': '', 'count': 1})

    merged = json.loads(PaginationAggregator(fetched.append).aggregate(first, BASE))

    assert merged == {'value': [1], 'count': 1}
    assert fetched == []


def test_relative_next_link_resolved_against_request_url():
    server = PageServer({'https://management.azure.com/page/2': page({'value': ['b']})})
    first = page({'value': ['a'], '@odata.nextLink': '/page/2'})

    merged = json.loads(PaginationAggregator(server).aggregate(first, BASE))

    assert merged == {'value': ['a', 'b']}


def test_link_header_pagination():
    server = PageServer({'https://api.example.com/items?page=2': page([3, 4])})
    first = page([1, 2], headers={'Link': '<https://api.example.com/items?page=2>; rel="next"'})

    merged = json.loads(PaginationAggregator(server).aggregate(first, 'https://api.example.com/items'))

    assert merged == {'value': [1, 2, 3, 4]}


def test_non_json_first_page_with_link_header_raises():
    first = page(b'<html/>', headers={'Link': '<https://x/p2>; rel="next"'})
    with pytest.raises(PaginationError):
        PaginationAggregator(lambda url: None).aggregate(first, 'https://x/p1')


@pytest.mark.parametrize('failure', [
    page({'error': 'boom'}, status=500),
    page(b'not json'),
    requests.exceptions.SSLError('bad cert'),
    AuthenticationError('token expired'),
])
def test_failure_keeps_collected_items(failure):
    server = PageServer({
        'https://x/p2': page({'value': [2], 'nextLink': 'https://x/p3'}),
        'https://x/p3': failure,
    })
    warnings = []
    first = page({'value': [1], 'nextLink': 'https://x/p2'})

    merged = json.loads(PaginationAggregator(server, warn=warnings.append).aggregate(first, 'https://x/p1'))

    assert merged == {'value': [1, 2]}
    assert len(warnings) == 1
    assert 'pagination stopped' in warnings[0]


def test_page_limit():
    calls = []

    def endless(url):
        calls.append(url)
        return page({'value': [len(calls)], 'nextLink': f'https://x/p{len(calls) + 2}'})

    warnings = []
    aggregator = PaginationAggregator(endless, warn=warnings.append)
    merged = json.loads(aggregator.aggregate(page({'value': [0], 'nextLink': 'https://x/p2'}), 'https://x/p1'))

    assert len(calls) == 1000
    assert aggregator.pages_fetched == 1000
    assert len(merged['value']) == 1001
    assert 'nextLink' not in merged
    assert warnings == ['pagination stopped at the limit of 1000 pages']


def test_merge_strips_next_fields_and_adds_value():
    merged = PaginationAggregator.merge({'id': 'x', '@odata.nextLink': 'n', '@odata.next': 'm'}, [1])
    assert merged == {'value': [1], 'id': 'x'}


def test_client_paginates(make_response, make_session):
    session = make_session([
        make_response(200, b'{"value":[1],"nextLink":"https://example.com/p2"}',
                      {'Content-Type': 'application/json', 'Content-Length': '48'}),
        make_response(200, b'{"value":[2]}', {'Content-Type': 'application/json'}),
    ])
    client = HttpClient(session=session)

    resp = client.execute(RequestOptions(url='https://example.com/p1', skip_auth=True, paginate=True))

    assert json.loads(resp.body) == {'value': [1, 2]}
    assert 'Content-Length' not in resp.headers
    assert resp.headers['Content-Type'] == 'application/json'
    assert [call.url for call in session.calls] == ['https://example.com/p1', 'https://example.com/p2']
    assert session.calls[1].data is None


def test_client_falls_back_to_first_page_for_non_json(make_response, make_session):
    session = make_session([
        make_response(200, b'plain text', {'Content-Type': 'text/plain', 'Link': '<https://example.com/p2>; rel="next"'}),
    ])

    resp = HttpClient(session=session).execute(
        RequestOptions(url='https://example.com/p1', skip_auth=True, paginate=True))

    assert resp.body == b'plain text'
    assert len(session.calls) == 1


def test_client_skips_pagination_on_error_status(make_response, make_session):
    session = make_session([make_response(404, b'{"nextLink":"https://example.com/p2"}')])

    resp = HttpClient(session=session).execute(
        RequestOptions(url='https://example.com/p1', skip_auth=True, paginate=True))

    assert resp.status_code == 404
    assert len(session.calls) == 1


def test_client_single_page_drops_null_next_link(make_response, make_session):
    session = make_session([
        make_response(200, b'{"value":[1],"nextLink":null,"@odata.nextLink":""}', {'Content-Type': 'application/json'}),
    ])

    resp = HttpClient(session=session).execute(
        RequestOptions(url='https://example.com/p1', skip_auth=True, paginate=True))

    assert json.loads(resp.body) == {'value': [1]}
    assert len(session.calls) == 1


def test_client_fetches_token_for_every_page(make_response, make_session):
    session = make_session([
        make_response(200, b'{"value":[1],"nextLink":"https://management.azure.com/p2"}',
                      {'Content-Type': 'application/json'}),
        make_response(200, b'{"value":[2],"nextLink":"https://management.azure.com/p3"}',
                      {'Content-Type': 'application/json'}),
        make_response(200, b'{"value":[3]}', {'Content-Type': 'application/json'}),
    ])
    provider = MockTokenProvider(token='page-token')
    scope = 'https://management.azure.com/.default'

    resp = HttpClient(provider, session=session).execute(
        RequestOptions(url=BASE, scope=scope, paginate=True))

    assert json.loads(resp.body) == {'value': [1, 2, 3]}
    assert provider.calls == [scope, scope, scope]
    assert [call.headers['Authorization'] for call in session.calls] == ['Bearer page-token'] * 3
