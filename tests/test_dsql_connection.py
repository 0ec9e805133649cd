"""
Tests for DSQL token generation, the token cache and the connection pool wrapper.
boto3 and psycopg2 connections are mocked; no cluster is needed.
"""

from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.pool
import pytest
from botocore.exceptions import ClientError

from dsql_config import SetupError
from dsql_connection import (
    AuthTokenProvider,
    DSQLConnectionPool,
    TokenState,
    build_connection_url,
    generate_auth_token,
    is_admin_user,
)

ENDPOINT = "abc123.dsql.us-east-1.on.aws"

DSQL_CONFIG = {
    'host': ENDPOINT,
    'port': 5432,
    'user': 'admin',
    'dbname': 'postgres',
    'region': 'us-east-1',
    'ssl_mode': 'require',
    'token_expires_in': 900,
}

POOL_CONFIG = {'min_connections': 1, 'max_connections': 4}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestGenerateAuthToken:
    def test_admin_token(self):
        client = MagicMock()
        client.generate_db_connect_admin_auth_token.return_value = "admin-token"

        token = generate_auth_token(ENDPOINT, 'us-east-1', admin=True, expires_in=600, client=client)

        assert token == "admin-token"
        client.generate_db_connect_admin_auth_token.assert_called_once_with(
            Hostname=ENDPOINT, Region='us-east-1', ExpiresIn=600
        )
        client.generate_db_connect_auth_token.assert_not_called()

    def test_custom_role_token(self):
        client = MagicMock()
        client.generate_db_connect_auth_token.return_value = "role-token"

        assert generate_auth_token(ENDPOINT, 'us-east-1', admin=False, client=client) == "role-token"
        client.generate_db_connect_admin_auth_token.assert_not_called()

    def test_uses_boto3_dsql_client_by_default(self):
        with patch('dsql_connection.boto3.client') as boto_client:
            boto_client.return_value.generate_db_connect_admin_auth_token.return_value = "tok"
            assert generate_auth_token(ENDPOINT, 'eu-west-1') == "tok"
        boto_client.assert_called_once_with('dsql', region_name='eu-west-1')

    def test_client_error_becomes_setup_error(self):
        client = MagicMock()
        client.generate_db_connect_admin_auth_token.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'GenerateDbConnectAdminAuthToken'
        )

        with pytest.raises(SetupError):
            generate_auth_token(ENDPOINT, 'us-east-1', client=client)


class TestAuthTokenProvider:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def generator(self):
        tokens = iter(f"token-{i}" for i in range(1, 100))
        return MagicMock(side_effect=lambda *args, **kwargs: next(tokens))

    @pytest.fixture
    def provider(self, clock, generator):
        return AuthTokenProvider(ENDPOINT, 'us-east-1', expires_in=900, refresh_margin=60,
                                 generator=generator, clock=clock)

    def test_starts_without_token(self, provider, generator):
        assert provider.state is TokenState.NO_TOKEN
        generator.assert_not_called()

    def test_first_request_generates_token(self, provider, generator):
        assert provider.get_token() == "token-1"
        assert provider.state is TokenState.VALID
        generator.assert_called_once_with(ENDPOINT, 'us-east-1', admin=True, expires_in=900)

    def test_token_is_reused_while_valid(self, provider, clock, generator):
        provider.get_token()
        clock.now += 839
        assert provider.get_token() == "token-1"
        assert generator.call_count == 1

    def test_token_refreshed_before_expiry(self, provider, clock, generator):
        provider.get_token()
        clock.now += 840
        assert provider.state is TokenState.EXPIRED
        assert provider.get_token() == "token-2"
        assert provider.state is TokenState.VALID
        assert generator.call_count == 2

    def test_refresh_margin_must_fit_lifetime(self, generator):
        with pytest.raises(ValueError):
            AuthTokenProvider(ENDPOINT, 'us-east-1', expires_in=60, refresh_margin=60, generator=generator)


class TestDSQLConnectionPool:
    @pytest.fixture
    def token_provider(self):
        provider = MagicMock()
        provider.get_token.return_value = "fresh-token"
        return provider

    @pytest.fixture
    def threaded_pool(self):
        with patch('dsql_connection.pool.ThreadedConnectionPool') as pool_class:
            yield pool_class

    @pytest.fixture
    def dsql_pool(self, threaded_pool, token_provider):
        return DSQLConnectionPool(DSQL_CONFIG, POOL_CONFIG, token_provider=token_provider)

    def _connection(self, closed=0):
        conn = MagicMock()
        conn.closed = closed
        return conn

    def test_pool_created_with_connection_params(self, dsql_pool, threaded_pool):
        kwargs = threaded_pool.call_args.kwargs
        assert kwargs['minconn'] == 1
        assert kwargs['maxconn'] == 4
        assert kwargs['host'] == ENDPOINT
        assert kwargs['user'] == 'admin'
        assert kwargs['sslmode'] == 'require'
        assert 'password' not in kwargs

    def test_default_token_provider_uses_admin_role(self, threaded_pool):
        dsql_pool = DSQLConnectionPool(DSQL_CONFIG, POOL_CONFIG)
        assert dsql_pool.token_provider.admin is True

        custom = dict(DSQL_CONFIG, user='app_user')
        assert DSQLConnectionPool(custom, POOL_CONFIG).token_provider.admin is False

    def test_connection_factory_injects_fresh_token(self, dsql_pool, token_provider):
        with patch('psycopg2.extensions.connection') as connection_class:
            dsql_pool._connection_factory("host=x dbname=postgres", 0)

        dsn = connection_class.call_args.args[0]
        assert "password=fresh-token" in dsn
        assert "host=x" in dsn
        token_provider.get_token.assert_called_once()

    def test_pool_creation_failure_is_setup_error(self, threaded_pool, token_provider):
        threaded_pool.side_effect = psycopg2.OperationalError("could not connect")

        with pytest.raises(SetupError):
            DSQLConnectionPool(DSQL_CONFIG, POOL_CONFIG, token_provider=token_provider)

    def test_acquire_returns_validated_connection(self, dsql_pool, threaded_pool):
        conn = self._connection()
        threaded_pool.return_value.getconn.return_value = conn

        assert dsql_pool.acquire() is conn
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.execute.assert_called_once_with("SELECT 1")

    def test_acquire_replaces_closed_connection(self, dsql_pool, threaded_pool):
        stale, fresh = self._connection(closed=1), self._connection()
        threaded_pool.return_value.getconn.side_effect = [stale, fresh]

        assert dsql_pool.acquire() is fresh
        threaded_pool.return_value.putconn.assert_called_once_with(stale, close=True)

    def test_acquire_failure_is_setup_error(self, dsql_pool, threaded_pool):
        threaded_pool.return_value.getconn.side_effect = psycopg2.pool.PoolError("connection pool exhausted")

        with pytest.raises(SetupError):
            dsql_pool.acquire()

    def test_release_rolls_back_and_returns(self, dsql_pool, threaded_pool):
        conn = self._connection()
        dsql_pool.release(conn)

        conn.rollback.assert_called_once()
        threaded_pool.return_value.putconn.assert_called_once_with(conn)

    def test_release_discards_closed_connection(self, dsql_pool, threaded_pool):
        conn = self._connection(closed=2)
        dsql_pool.release(conn)

        conn.rollback.assert_not_called()
        threaded_pool.return_value.putconn.assert_called_once_with(conn, close=True)

    def test_release_discards_connection_that_cannot_roll_back(self, dsql_pool, threaded_pool):
        conn = self._connection()
        conn.rollback.side_effect = psycopg2.InterfaceError("connection already closed")
        dsql_pool.release(conn)

        threaded_pool.return_value.putconn.assert_called_once_with(conn, close=True)

    def test_close_all(self, dsql_pool, threaded_pool):
        threaded_pool.return_value.closed = False
        dsql_pool.close_all()
        threaded_pool.return_value.closeall.assert_called_once()


def test_is_admin_user():
    assert is_admin_user('admin')
    assert is_admin_user('ADMIN')
    assert not is_admin_user('app_user')


def test_build_connection_url_encodes_token():
    url = build_connection_url(ENDPOINT, 5432, 'admin', 'postgres', 'a/b?c=d&e')
    assert url == f"postgres://admin:a%2Fb%3Fc%3Dd%26e@{ENDPOINT}:5432/postgres?sslmode=require"
