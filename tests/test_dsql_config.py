import pytest

from dsql_config import ConfigError, load_config, region_from_endpoint, require_host, validate_config


@pytest.mark.parametrize("host,expected", [
    ("abc123.dsql.us-west-2.on.aws", "us-west-2"),
    ("abc123.dsql.eu-central-1.on.aws", "eu-central-1"),
    ("localhost", "us-east-1"),
    (None, "us-east-1"),
])
def test_region_from_endpoint(host, expected):
    assert region_from_endpoint(host) == expected


def test_load_config_from_environment(monkeypatch):
    monkeypatch.setenv("DB_HOST", "abc123.dsql.ap-south-1.on.aws")
    monkeypatch.setenv("DB_USER", "app_user")
    monkeypatch.setenv("STRESS_BATCH_SIZE", "25")
    monkeypatch.setenv("STRESS_MAX_ATTEMPTS", "5")
    monkeypatch.delenv("AWS_REGION", raising=False)

    config = load_config()

    assert config['dsql']['host'] == "abc123.dsql.ap-south-1.on.aws"
    assert config['dsql']['region'] == "ap-south-1"
    assert config['dsql']['user'] == "app_user"
    assert config['stress']['batch_size'] == 25
    assert config['stress']['max_attempts'] == 5


def test_explicit_region_wins(monkeypatch):
    monkeypatch.setenv("DB_HOST", "abc123.dsql.ap-south-1.on.aws")
    monkeypatch.setenv("AWS_REGION", "us-east-2")
    assert load_config()['dsql']['region'] == "us-east-2"


def test_invalid_integer_is_config_error(monkeypatch):
    monkeypatch.setenv("DB_PORT", "fifty")
    with pytest.raises(ConfigError):
        load_config()


@pytest.mark.parametrize("name,value", [
    ("STRESS_MAX_ATTEMPTS", "0"),
    ("STRESS_BACKOFF_MS", "-1"),
    ("STRESS_JITTER_MS", "-5"),
    ("STRESS_BATCH_SIZE", "0"),
    ("DSQL_TOKEN_EXPIRES_IN", "60"),
    ("DSQL_POOL_MAX", "0"),
])
def test_out_of_range_value_is_config_error(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError, match=name):
        load_config()


def test_validate_config_accepts_defaults(monkeypatch):
    for name in ("STRESS_MAX_ATTEMPTS", "STRESS_BACKOFF_MS", "STRESS_JITTER_MS", "STRESS_BATCH_SIZE",
                 "DSQL_TOKEN_EXPIRES_IN", "DSQL_POOL_MIN", "DSQL_POOL_MAX", "DB_PORT"):
        monkeypatch.delenv(name, raising=False)
    config = load_config()
    assert validate_config(config) is config
    assert config['dsql']['token_expires_in'] == 900


def test_require_host(monkeypatch):
    monkeypatch.delenv("DB_HOST", raising=False)
    with pytest.raises(ConfigError):
        require_host(load_config())
