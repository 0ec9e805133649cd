"""
Configuration for the DSQL users demo.

Values come from the environment, after a local .env file (if any) has been
loaded. Database commands need at least DB_HOST; everything else has a
default suitable for an admin connection to a DSQL cluster.
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Tokens are treated as expired this many seconds before their real expiry
TOKEN_REFRESH_MARGIN = 60


class SetupError(Exception):
    """A failure that prevents a command from running at all (config, auth, connectivity)."""


class ConfigError(SetupError):
    """Raised when required configuration is missing or invalid."""


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def region_from_endpoint(host: Optional[str], default: str = 'us-east-1') -> str:
    """
    Extract the AWS region from a DSQL cluster endpoint.

    Endpoints look like <cluster_id>.dsql.<region>.on.aws; anything else
    falls back to the default region.
    """
    if host:
        parts = host.split('.')
        if len(parts) > 2 and parts[1] == 'dsql':
            return parts[2]
    return default


# (section, key, environment variable, smallest accepted value)
_LOWER_BOUNDS = [
    ('dsql', 'port', 'DB_PORT', 1),
    ('dsql', 'token_expires_in', 'DSQL_TOKEN_EXPIRES_IN', TOKEN_REFRESH_MARGIN + 1),
    ('connection_pool', 'min_connections', 'DSQL_POOL_MIN', 0),
    ('connection_pool', 'max_connections', 'DSQL_POOL_MAX', 1),
    ('stress', 'batch_size', 'STRESS_BATCH_SIZE', 1),
    ('stress', 'max_attempts', 'STRESS_MAX_ATTEMPTS', 1),
    ('stress', 'backoff_ms', 'STRESS_BACKOFF_MS', 0),
    ('stress', 'jitter_ms', 'STRESS_JITTER_MS', 0),
]


def validate_config(config: dict) -> dict:
    """
    Check numeric settings against their allowed ranges.

    Raises:
        ConfigError: naming the first out-of-range setting
    """
    for section, key, env_name, minimum in _LOWER_BOUNDS:
        value = config[section][key]
        if value < minimum:
            raise ConfigError(f"{env_name} must be at least {minimum}, got {value}")
    return config


def load_config() -> dict:
    """Build the CONFIG dictionary from the current environment."""
    host = os.environ.get('DB_HOST')
    return validate_config({
        'dsql': {
            'host': host,
            'port': _int_env('DB_PORT', 5432),
            'user': os.environ.get('DB_USER', 'admin'),
            'dbname': os.environ.get('DB_NAME', 'postgres'),
            'region': os.environ.get('AWS_REGION') or region_from_endpoint(host),
            'ssl_mode': os.environ.get('DSQL_SSL_MODE', 'require'),
            'token_expires_in': _int_env('DSQL_TOKEN_EXPIRES_IN', 900),  # 15 minutes
        },
        'connection_pool': {
            'min_connections': _int_env('DSQL_POOL_MIN', 1),
            'max_connections': _int_env('DSQL_POOL_MAX', 10),
        },
        'stress': {
            'batch_size': _int_env('STRESS_BATCH_SIZE', 10),
            'max_attempts': _int_env('STRESS_MAX_ATTEMPTS', 3),
            'backoff_ms': _int_env('STRESS_BACKOFF_MS', 500),
            'jitter_ms': _int_env('STRESS_JITTER_MS', 100),
        },
    })


def require_host(config: dict) -> str:
    host = config['dsql']['host']
    if not host:
        raise ConfigError("DB_HOST must be set in the environment or .env file")
    return host
