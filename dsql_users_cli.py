#!/usr/bin/env python3
"""
Aurora DSQL users demo.

Command line tool that connects to an Aurora DSQL cluster with IAM token
authentication and manages a simple users table:

    repopulate      Drop and recreate the users table with sample data
    list-users      List all users
    add-user        Add a user interactively
    stress-test     Insert many generated users concurrently
    user-stats      Print descriptive statistics about the users table
    generate-token  Generate an authentication token

Connection settings are read from the environment or a .env file
(DB_HOST, DB_PORT, DB_USER, DB_NAME, AWS_REGION).

USAGE:
------
dsql-users stress-test --users 500 --concurrency 20
"""

import argparse
import logging
import sys
import warnings
from typing import List, Optional

# Suppress Python deprecation warnings from boto3
warnings.filterwarnings('ignore', category=DeprecationWarning, module='boto3')

import psycopg2

from dsql_config import SetupError, load_config, region_from_endpoint, require_host, validate_config
from dsql_connection import DSQLConnectionPool, build_connection_url, generate_auth_token
from dsql_retry import RetryPolicy
from dsql_stress import ConcurrentInsertDriver, print_run_summary
import setup_database

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='dsql-users',
        description="Manage and stress test a users table on Amazon Aurora DSQL."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("repopulate", help="Repopulate the database (WARNING: drops existing users table)")
    commands.add_parser("list-users", help="List all users in the database")
    commands.add_parser("add-user", help="Add a new user interactively")

    stress = commands.add_parser("stress-test", help="Stress test the database with parallel inserts")
    stress.add_argument("-u", "--users", type=positive_int, default=100,
                        help="Number of users to insert (default: 100)")
    stress.add_argument("-c", "--concurrency", type=positive_int, default=10,
                        help="Number of concurrent inserts (default: 10)")
    stress.add_argument("-b", "--batch-size", type=positive_int, default=None,
                        help="Users dispatched per batch (default: STRESS_BATCH_SIZE or 10)")

    commands.add_parser("user-stats", help="Display statistics about users in the database")

    token = commands.add_parser("generate-token", help="Generate an authentication token for Aurora DSQL")
    token.add_argument("-r", "--region", help="The AWS region (default: derived from the endpoint)")
    token.add_argument("-e", "--endpoint", help="The cluster endpoint (default: DB_HOST)")
    token.add_argument("--admin", action=argparse.BooleanOptionalAction, default=True,
                       help="Generate a token for the admin user (default: true)")
    token.add_argument("-t", "--token-only", action="store_true",
                       help="Just print the token (don't include connection details)")
    return parser


def create_connection_pool(config: dict, concurrency: int = 1) -> DSQLConnectionPool:
    """Create the DSQL pool, sized so every stress worker can hold a connection."""
    require_host(config)
    pool_config = dict(config['connection_pool'])
    pool_config['max_connections'] = max(pool_config['max_connections'], concurrency)
    print(f"Connecting to database {config['dsql']['host']} as {config['dsql']['user']}...")
    pool = DSQLConnectionPool(config['dsql'], pool_config)
    print("Connected successfully!")
    return pool


def run_stress_test(pool, config: dict, users: int, concurrency: int, batch_size: Optional[int] = None):
    retry = RetryPolicy.from_config(config['stress'])
    setup_database.ensure_users_table(pool, retry)

    driver = ConcurrentInsertDriver(
        pool, setup_database.insert_task,
        retry_policy=retry,
        batch_size=batch_size or config['stress']['batch_size'],
    )
    print(f"Starting stress test with {users} users at concurrency level {concurrency}")
    summary = driver.run(users, concurrency)
    print_run_summary(summary)
    return summary


def generate_token_command(config: dict, region: Optional[str], endpoint: Optional[str],
                           admin: bool, token_only: bool):
    endpoint = endpoint or require_host(config)
    region = region or region_from_endpoint(endpoint)
    token = generate_auth_token(endpoint, region, admin=admin,
                                expires_in=config['dsql']['token_expires_in'])
    if token_only:
        print(token)
        return

    user = config['dsql']['user'] or ('admin' if admin else 'postgres')
    database = config['dsql']['dbname']
    port = config['dsql']['port']

    print("Authentication token generated successfully!")
    print(f"Host:     {endpoint}")
    print(f"Port:     {port}")
    print(f"User:     {user}")
    print(f"Database: {database}")
    print(f"Region:   {region}")
    print(f"Admin:    {'Yes' if admin else 'No'}")
    print(f"\nToken: {token}")
    print(f"\nConnection URL: {build_connection_url(endpoint, port, user, database, token)}")
    print("\nSample connection command:")
    print(f"PGSSLMODE=require psql \"postgresql://{user}@{endpoint}:{port}/{database}\" -W")
    print("When prompted for password, use the token shown above.")


def run_command(args: argparse.Namespace, config: dict) -> int:
    """Run the selected subcommand and return the process exit status."""
    if args.command == "generate-token":
        generate_token_command(config, args.region, args.endpoint, args.admin, args.token_only)
        return 0

    concurrency = getattr(args, 'concurrency', 1)
    pool = create_connection_pool(config, concurrency)
    try:
        retry = RetryPolicy.from_config(config['stress'])
        if args.command == "repopulate":
            setup_database.repopulate_database(pool, retry)
        elif args.command == "list-users":
            setup_database.list_users(pool, retry)
        elif args.command == "add-user":
            if setup_database.add_user_interactive(pool, retry) is None:
                return 1
        elif args.command == "stress-test":
            run_stress_test(pool, config, args.users, args.concurrency, args.batch_size)
        elif args.command == "user-stats":
            setup_database.get_user_statistics(pool, retry)
    finally:
        print("Closing connection pool...")
        pool.close_all()
        print("Connection closed")
    return 0


def main(argv: Optional[List[str]] = None, config: Optional[dict] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = validate_config(config) if config else load_config()
        return run_command(args, config)
    except psycopg2.Error as e:
        logger.error(f"[ERROR] PostgreSQL Error: {e}")
        print(f"\n[ERROR] Database command failed: {e}")
        return 1
    except SetupError as e:
        logger.error(f"[ERROR] {e}")
        print(f"\n[ERROR] {e}")
        print("\n[TROUBLESHOOT] Troubleshooting tips:")
        print("   - Check DB_HOST, DB_USER and AWS_REGION in your environment or .env file")
        print("   - Verify your AWS credentials have dsql:DbConnect / dsql:DbConnectAdmin permissions")
        print("   - Make sure the DSQL cluster endpoint is reachable")
        return 1
    except KeyboardInterrupt:
        print("\n[CANCELLED] Interrupted, no summary produced.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
