"""
Users table management for the DSQL demo.

Schema creation, sample data, single inserts, listing and descriptive
statistics. Every statement runs through a RetryPolicy on a connection
borrowed from the DSQLConnectionPool.
"""

import logging
import uuid
from typing import Callable, List, Optional, Tuple

from dsql_retry import RetryPolicy

logger = logging.getLogger(__name__)

USERS_TABLE = 'users'

CREATE_USERS_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        email VARCHAR(100) UNIQUE NOT NULL,
        role VARCHAR(50) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
"""

INSERT_USER_SQL = """
    INSERT INTO users (id, name, email, role, created_at)
    VALUES (%s, %s, %s, %s, COALESCE(%s, CURRENT_TIMESTAMP))
    ON CONFLICT (email) DO NOTHING
"""

SAMPLE_USERS = [
    ('John Doe', 'john.doe@example.com', 'Admin'),
    ('Jane Smith', 'jane.smith@example.com', 'User'),
    ('Bob Johnson', 'bob.johnson@example.com', 'User'),
    ('Alice Williams', 'alice.williams@example.com', 'Manager'),
    ('Charlie Brown', 'charlie.brown@example.com', 'User'),
]


class DuplicateUserError(Exception):
    """Raised when a user with the same email already exists."""


def with_connection(pool, retry: RetryPolicy, operation: Callable, description: str):
    """Borrow a connection, run operation(conn) under the retry policy, give it back."""
    conn = pool.acquire()
    try:
        return retry.call(operation, conn, description=description)
    finally:
        pool.release(conn)


def insert_user(conn, user_id: uuid.UUID, name: str, email: str, role: str, created_at=None):
    """
    Insert one user in its own transaction.

    Raises:
        DuplicateUserError: if the email is already taken
    """
    with conn, conn.cursor() as cur:
        cur.execute(INSERT_USER_SQL, (str(user_id), name, email, role, created_at))
        inserted = cur.rowcount
    if inserted == 0:
        raise DuplicateUserError(f"User with email '{email}' already exists")


def insert_task(conn, task):
    """Insert a generated stress-test record into its target table."""
    if task.table != USERS_TABLE:
        raise ValueError(f"Unsupported target table '{task.table}', only '{USERS_TABLE}' exists")
    insert_user(conn, task.user_id, task.name, task.email, task.role, task.created_at)


def table_exists(conn, table_name: str = USERS_TABLE) -> bool:
    with conn, conn.cursor() as cur:
        cur.execute("""
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = %s
            )
        """, (table_name,))
        return cur.fetchone()[0]


def create_users_table(conn):
    with conn, conn.cursor() as cur:
        cur.execute(CREATE_USERS_TABLE_SQL)


def drop_users_table(conn):
    with conn, conn.cursor() as cur:
        cur.execute("DROP TABLE IF EXISTS users")


def ensure_users_table(pool, retry: RetryPolicy):
    """Create the users table if it does not exist yet."""
    if with_connection(pool, retry, table_exists, "users table check"):
        return
    print("The users table doesn't exist. Creating it...")
    with_connection(pool, retry, create_users_table, "create users table")
    print("Table 'users' created")


def repopulate_database(pool, retry: RetryPolicy, confirm: Callable[[str], str] = input) -> bool:
    """
    Drop and recreate the users table, then insert the sample users.

    Returns:
        False if the user declined the confirmation prompt, True otherwise
    """
    answer = confirm("WARNING: This will drop the existing users table and all its data. Continue? (y/n): ")
    if answer.strip().lower() not in ('y', 'yes'):
        print("Operation cancelled")
        return False

    print("Dropping existing users table if it exists...")
    with_connection(pool, retry, drop_users_table, "drop users table")
    print("Creating users table with UUID primary key...")
    with_connection(pool, retry, create_users_table, "create users table")
    print("Table 'users' successfully created")

    print("Inserting sample users...")
    for name, email, role in SAMPLE_USERS:
        user_id = uuid.uuid4()
        try:
            with_connection(pool, retry, lambda conn: insert_user(conn, user_id, name, email, role),
                            f"insert of user '{name}'")
            print(f"User '{name}' inserted with ID: {user_id}")
        except Exception as e:
            logger.warning(f"[ERROR] Failed to insert sample user '{name}': {e}")
            print(f"Failed to insert user '{name}': {e}")

    print("Database has been repopulated successfully")
    return True


def fetch_users(conn) -> List[Tuple]:
    with conn, conn.cursor() as cur:
        cur.execute("SELECT id, name, email, role, created_at FROM users")
        return cur.fetchall()


def list_users(pool, retry: RetryPolicy) -> List[Tuple]:
    print("Querying all users...")
    users = with_connection(pool, retry, fetch_users, "list users")
    print(f"Found {len(users)} users in database")

    if not users:
        print("No users found in the database.")
        return users

    print("\nUsers in database:")
    for user_id, name, email, role, created_at in users:
        print(f"ID: {user_id}, Name: {name}, Email: {email}, Role: {role}, Created at: {created_at}")
    return users


def add_user_interactive(pool, retry: RetryPolicy, prompt: Callable[[str], str] = input) -> Optional[uuid.UUID]:
    """
    Prompt for a user's details and insert it.

    Returns:
        The new user's id, or None if the insert failed
    """
    print("Adding a new user. Please provide the following information:")
    name = ''
    while not name:
        name = prompt("Name: ").strip()
    email = ''
    while not email:
        email = prompt("Email: ").strip()
    role = prompt("Role (Admin/User/Manager) [User]: ").strip() or 'User'

    user_id = uuid.uuid4()
    try:
        with_connection(pool, retry, lambda conn: insert_user(conn, user_id, name, email, role),
                        f"insert of user '{name}'")
    except DuplicateUserError as e:
        print(f"Failed to add user: {e}")
        return None

    print("User added successfully!")
    print(f"User ID: {user_id}")
    print(f"Name: {name}")
    print(f"Email: {email}")
    print(f"Role: {role}")
    return user_id


STATS_QUERIES = {
    'total': "SELECT COUNT(*) FROM users",
    'roles': """
        SELECT role, COUNT(*) AS count
        FROM users
        GROUP BY role
        ORDER BY count DESC
    """,
    'newest': "SELECT name, email, created_at FROM users ORDER BY created_at DESC LIMIT 1",
    'oldest': "SELECT name, email, created_at FROM users ORDER BY created_at ASC LIMIT 1",
    'first_names': """
        SELECT LEFT(name, POSITION(' ' IN name) - 1) AS first_name, COUNT(*) AS count
        FROM users
        WHERE POSITION(' ' IN name) > 0
        GROUP BY first_name
        ORDER BY count DESC
        LIMIT 5
    """,
    'trends': """
        SELECT DATE(created_at) AS date, COUNT(*) AS count
        FROM users
        GROUP BY date
        ORDER BY date DESC
        LIMIT 7
    """,
    'hours': """
        SELECT EXTRACT(HOUR FROM created_at)::INT AS hour, COUNT(*) AS count
        FROM users
        GROUP BY hour
        ORDER BY hour
    """,
    'name_lengths': """
        SELECT
            (SELECT name FROM users ORDER BY LENGTH(name) DESC LIMIT 1) AS longest_name,
            (SELECT name FROM users ORDER BY LENGTH(name) ASC LIMIT 1) AS shortest_name,
            (SELECT AVG(LENGTH(name))::FLOAT8 FROM users) AS avg_length
    """,
    'domains': """
        SELECT SUBSTRING(email FROM POSITION('@' IN email) + 1) AS domain, COUNT(*) AS count
        FROM users
        GROUP BY domain
        ORDER BY count DESC
        LIMIT 5
    """,
}


def fetch_user_statistics(conn) -> dict:
    stats = {}
    with conn, conn.cursor() as cur:
        cur.execute(STATS_QUERIES['total'])
        stats['total'] = cur.fetchone()[0]
        for key in ('roles', 'first_names', 'trends', 'hours', 'domains'):
            cur.execute(STATS_QUERIES[key])
            stats[key] = cur.fetchall()
        for key in ('newest', 'oldest', 'name_lengths'):
            cur.execute(STATS_QUERIES[key])
            stats[key] = cur.fetchone()
    return stats


def _percent(count: int, total: int) -> int:
    return round(count / total * 100) if total else 0


def print_user_statistics(stats: dict):
    total = stats['total']
    print("\n----- User Statistics -----")
    print(f"Total users: {total}")
    if not total:
        print("\n---------------------------")
        return

    print("\nDistribution by role:")
    for role, count in stats['roles']:
        print(f"- {role}: {count} users ({_percent(count, total)}%)")

    if stats['newest']:
        name, email, created_at = stats['newest']
        print(f"\nNewest user: {name} ({email}) - Created: {created_at}")
    if stats['oldest']:
        name, email, created_at = stats['oldest']
        print(f"Oldest user: {name} ({email}) - Created: {created_at}")

    print("\nUser creation trends (last 7 days):")
    for date, count in stats['trends']:
        print(f"- {date}: {count} users")

    print("\nCreation time distribution (by hour of day):")
    for hour, count in stats['hours']:
        bar = '█' * int(count / total * 50)
        print(f"- {hour:02d}:00: {count:4d} users {bar}")

    longest, shortest, avg_length = stats['name_lengths']
    print("\nName length statistics:")
    print(f"- Longest name: {longest} ({len(longest)} chars)")
    print(f"- Shortest name: {shortest} ({len(shortest)} chars)")
    print(f"- Average name length: {avg_length:.1f} characters")

    print("\nMost common first names:")
    for first_name, count in stats['first_names']:
        print(f"- {first_name}: {count} users")

    print("\nMost common email domains:")
    for domain, count in stats['domains']:
        print(f"- {domain}: {count} users ({_percent(count, total)}%)")

    print("\n---------------------------")


def get_user_statistics(pool, retry: RetryPolicy) -> dict:
    print("Gathering user statistics...")
    stats = with_connection(pool, retry, fetch_user_statistics, "user statistics")
    print_user_statistics(stats)
    return stats
