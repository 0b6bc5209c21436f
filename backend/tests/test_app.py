"""
Tests for the Flask cache API.

Run with: python -m pytest tests/test_app.py
From the backend directory.
"""

import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from app import AsyncRunner, create_app
from fincache import CacheConfig, FetchError, FinancialDataCache


def fetch(symbol):
    if symbol == 'BAD':
        raise FetchError(symbol, f"API error for {symbol}: 404")
    return {
        'symbol': symbol,
        'name': f'{symbol} Corp',
        'current_price': 10.0,
        'income_statement': [{'date': '2023-12-31', 'revenue': 100.0}],
    }


@pytest.fixture
def cache(tmp_path):
    return FinancialDataCache(fetch, config=CacheConfig(), db_path=tmp_path / 'cache.db')


@pytest.fixture
def client(cache):
    runner = AsyncRunner()
    app = create_app(cache, runner)
    app.config['TESTING'] = True
    yield app.test_client()
    runner.stop()


def test_get_data_fetches_then_serves_from_cache(client):
    first = client.get('/api/cache/user1/records/aapl')
    second = client.get('/api/cache/user1/records/AAPL')

    assert first.status_code == 200
    assert first.get_json()['from_cache'] is False
    assert first.get_json()['data']['symbol'] == 'AAPL'
    assert second.get_json()['from_cache'] is True


def test_get_data_force_refresh(client):
    client.get('/api/cache/user1/records/AAPL')
    response = client.get('/api/cache/user1/records/AAPL?force_refresh=true')
    assert response.get_json()['from_cache'] is False


def test_get_data_failure_is_502(client):
    response = client.get('/api/cache/user1/records/BAD')
    assert response.status_code == 502
    body = response.get_json()
    assert body['success'] is False
    assert '404' in body['error']


@pytest.mark.parametrize('symbol', ['symbols', 'statistics', 'preload'])
def test_symbols_named_like_routes_are_reachable(client, symbol):
    response = client.get(f'/api/cache/user1/records/{symbol}')
    assert response.status_code == 200
    assert response.get_json()['data']['symbol'] == symbol.upper()

    assert client.delete(f'/api/cache/user1/records/{symbol}').get_json() == {'success': True}


def test_symbols_statistics_and_invalidate(client):
    client.get('/api/cache/user1/records/AAPL')
    client.get('/api/cache/user1/records/MSFT')

    symbols = client.get('/api/cache/user1/symbols').get_json()
    assert symbols == {'user_id': 'user1', 'symbols': ['AAPL', 'MSFT']}

    stats = client.get('/api/cache/user1/statistics').get_json()
    assert stats['total_entries'] == 2
    assert stats['fresh_entries'] == 2

    assert client.delete('/api/cache/user1/records/AAPL').get_json() == {'success': True}
    assert client.get('/api/cache/user1/symbols').get_json()['symbols'] == ['MSFT']

    assert client.delete('/api/cache/user1').status_code == 200
    assert client.get('/api/cache/user1/symbols').get_json()['symbols'] == []


def test_preload(client):
    response = client.post('/api/cache/user1/preload', json={'symbols': ['AAPL', 'BAD']})
    body = response.get_json()

    assert response.status_code == 200
    assert body['total'] == 2
    assert body['succeeded'] == 1
    assert body['failed_keys'] == ['BAD']


@pytest.mark.parametrize('payload', [None, {}, {'symbols': []}, {'symbols': 'AAPL'}])
def test_preload_requires_symbols(client, payload):
    response = client.post('/api/cache/user1/preload', json=payload)
    assert response.status_code == 400


def test_refresh_starts_background_work(client, cache):
    response = client.post('/api/cache/user1/refresh', json={'symbol': 'aapl'})

    assert response.status_code == 202
    assert response.get_json()['status'] in ('started', 'already_running')

    client.application.extensions['fincache_runner'].run(cache.wait_for_background())
    assert client.get('/api/cache/user1/symbols').get_json()['symbols'] == ['AAPL']


def test_refresh_all_stale(client):
    response = client.post('/api/cache/user1/refresh')
    assert response.status_code == 202


def test_refresh_rejects_blank_symbol(client):
    response = client.post('/api/cache/user1/refresh', json={'symbol': '  '})
    assert response.status_code == 400


def test_get_and_update_config(client):
    config = client.get('/api/cache/config').get_json()
    assert config['default_ttl'] == 90 * 24 * 60 * 60 * 1000
    assert config['enable_compression'] is False

    updated = client.patch('/api/cache/config', json={'enable_compression': True, 'default_ttl': 86400000})
    assert updated.status_code == 200
    assert updated.get_json()['enable_compression'] is True
    assert updated.get_json()['default_ttl'] == 86400000

    assert client.get('/api/cache/config').get_json()['enable_compression'] is True


@pytest.mark.parametrize('payload', [{'no_such_option': 1}, {'default_ttl': 'soon'}, {}])
def test_update_config_rejects_bad_options(client, payload):
    response = client.patch('/api/cache/config', json=payload)
    assert response.status_code == 400


def test_health_check(client):
    client.get('/api/cache/user1/records/AAPL')
    body = client.get('/api/health').get_json()
    assert body['status'] == 'healthy'
    assert body['database']['total_documents'] == 1
