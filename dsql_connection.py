"""
Connection management for Aurora DSQL.

DSQL has no static passwords: every new connection authenticates with a
short-lived IAM token generated by the boto3 'dsql' client. The token only
matters at connect time, so it is cached until shortly before it expires
and a fresh one is generated for connections opened after that.
"""

import enum
import logging
import threading
import time
from typing import Callable, Optional
from urllib.parse import quote

import boto3
import psycopg2
import psycopg2.extensions
from psycopg2 import pool
from botocore.exceptions import BotoCoreError, ClientError

from dsql_config import TOKEN_REFRESH_MARGIN, SetupError

logger = logging.getLogger(__name__)


def is_admin_user(user: str) -> bool:
    return user.lower() == 'admin'


def generate_auth_token(cluster_endpoint: str, region: str, admin: bool = True,
                        expires_in: int = 900, client=None) -> str:
    """
    Generate a DSQL authentication token.

    Args:
        cluster_endpoint: DSQL cluster endpoint (<cluster_id>.dsql.<region>.on.aws)
        region: AWS region
        admin: Generate a token for the admin role instead of a custom role
        expires_in: Token validity in seconds
        client: Optional pre-built boto3 dsql client

    Returns:
        The signed token, used as the connection password
    """
    try:
        dsql_client = client or boto3.client('dsql', region_name=region)
        if admin:
            token = dsql_client.generate_db_connect_admin_auth_token(
                Hostname=cluster_endpoint, Region=region, ExpiresIn=expires_in
            )
        else:
            token = dsql_client.generate_db_connect_auth_token(
                Hostname=cluster_endpoint, Region=region, ExpiresIn=expires_in
            )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"[TOKEN] Failed to generate auth token: {e}")
        raise SetupError(f"Could not generate an authentication token for {cluster_endpoint}: {e}") from e

    logger.debug(f"[TOKEN] Generated auth token for {cluster_endpoint} (admin={admin})")
    return token


def build_connection_url(host: str, port: int, user: str, dbname: str, token: str) -> str:
    """Build a postgres:// URL with the token percent-encoded as password."""
    return f"postgres://{user}:{quote(token, safe='')}@{host}:{port}/{dbname}?sslmode=require"


class TokenState(enum.Enum):
    NO_TOKEN = 'no_token'
    VALID = 'valid'
    EXPIRED = 'expired'


class AuthTokenProvider:
    """
    Caches a DSQL auth token and refreshes it before it expires.

    The token counts as expired refresh_margin seconds before its real
    expiry, so a connection opened with it never races the deadline.
    """

    def __init__(self, cluster_endpoint: str, region: str, admin: bool = True,
                 expires_in: int = 900, refresh_margin: int = TOKEN_REFRESH_MARGIN,
                 generator: Callable[..., str] = generate_auth_token,
                 clock: Callable[[], float] = time.monotonic):
        if refresh_margin >= expires_in:
            raise ValueError("refresh_margin must be shorter than the token lifetime")
        self.cluster_endpoint = cluster_endpoint
        self.region = region
        self.admin = admin
        self.expires_in = expires_in
        self.refresh_margin = refresh_margin
        self._generator = generator
        self._clock = clock
        self._token = None
        self._expires_at = None
        self._lock = threading.Lock()

    @property
    def state(self) -> TokenState:
        if self._token is None:
            return TokenState.NO_TOKEN
        if self._clock() >= self._expires_at - self.refresh_margin:
            return TokenState.EXPIRED
        return TokenState.VALID

    def get_token(self) -> str:
        with self._lock:
            state = self.state
            if state is not TokenState.VALID:
                logger.info(f"[TOKEN] Refreshing auth token (state={state.value})")
                issued_at = self._clock()
                self._token = self._generator(
                    self.cluster_endpoint, self.region,
                    admin=self.admin, expires_in=self.expires_in
                )
                self._expires_at = issued_at + self.expires_in
            return self._token


class DSQLConnectionPool:
    """
    Connection pool for DSQL using psycopg2's ThreadedConnectionPool.

    New physical connections get their password from the AuthTokenProvider,
    so the pool keeps working across token expiry. Safe to use from many
    threads; a connection is only ever handed to one caller at a time.
    """

    def __init__(self, dsql_config: dict, pool_config: dict,
                 token_provider: Optional[AuthTokenProvider] = None):
        self.cluster_endpoint = dsql_config['host']
        self.region = dsql_config['region']
        self.min_connections = pool_config['min_connections']
        self.max_connections = max(pool_config['max_connections'], self.min_connections)
        self.token_provider = token_provider or AuthTokenProvider(
            self.cluster_endpoint, self.region,
            admin=is_admin_user(dsql_config['user']),
            expires_in=dsql_config['token_expires_in'],
        )
        self.conn_params = {
            'dbname': dsql_config['dbname'],
            'user': dsql_config['user'],
            'host': self.cluster_endpoint,
            'port': dsql_config['port'],
            'sslmode': dsql_config['ssl_mode'],
        }
        self.pool = None

        self._create_pool()

        logger.info(f"[POOL] Initialized DSQL connection pool (min={self.min_connections}, max={self.max_connections})")

    def _connection_factory(self, dsn, *args, **kwargs):
        dsn = psycopg2.extensions.make_dsn(dsn, password=self.token_provider.get_token())
        return psycopg2.extensions.connection(dsn, *args, **kwargs)

    def _create_pool(self):
        try:
            self.pool = pool.ThreadedConnectionPool(
                minconn=self.min_connections,
                maxconn=self.max_connections,
                connection_factory=self._connection_factory,
                **self.conn_params
            )
        except psycopg2.Error as e:
            logger.error(f"[POOL] Failed to create connection pool: {e}")
            raise SetupError(f"Could not connect to DSQL cluster {self.cluster_endpoint}: {e}") from e

    def acquire(self):
        """
        Get a validated connection from the pool.

        Raises:
            SetupError: if no usable connection can be obtained
        """
        if not self.pool:
            raise SetupError("Connection pool not initialized")
        try:
            conn = self.pool.getconn()
            if not self._test_connection(conn):
                logger.debug("[POOL] Connection invalid, getting fresh connection")
                self.pool.putconn(conn, close=True)
                conn = self.pool.getconn()
        except psycopg2.Error as e:
            logger.error(f"[POOL] Error getting connection: {e}")
            raise SetupError(f"Could not obtain a connection to {self.cluster_endpoint}: {e}") from e
        logger.debug("[POOL] Retrieved valid connection from pool")
        return conn

    def release(self, conn):
        """Return a connection to the pool, discarding it if it is closed."""
        if conn is None or not self.pool:
            return
        if conn.closed:
            self.pool.putconn(conn, close=True)
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"[POOL] Discarding connection that failed to roll back: {e}")
            self.pool.putconn(conn, close=True)
            return
        self.pool.putconn(conn)
        logger.debug("[POOL] Returned connection to pool")

    def _test_connection(self, conn) -> bool:
        if conn.closed:
            return False
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
            conn.rollback()
            return True
        except psycopg2.Error:
            return False

    def close_all(self):
        if self.pool and not self.pool.closed:
            self.pool.closeall()
            logger.info("[POOL] Closed all connections in pool")
