"""
Concurrent insert stress test for the users table.

The driver splits the requested number of users into fixed-size batches and
runs each batch on a bounded thread pool. Every insert gets its own pooled
connection and goes through the retry policy, so DSQL's optimistic
concurrency conflicts are retried instead of counted as failures.
"""

import datetime
import logging
import random
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from dsql_config import SetupError
from dsql_retry import ErrorKind, RetryPolicy
from setup_database import USERS_TABLE

logger = logging.getLogger(__name__)

ROLES = ['User', 'Admin', 'Manager', 'Guest', 'Developer']

MEDIEVAL_FIRST_NAMES = [
    'Aelfric', 'Aldwin', 'Baldwin', 'Cedric', 'Edmund', 'Godfrey', 'Harold', 'Leofric',
    'Oswald', 'Wilfrid', 'Adelina', 'Beatrice', 'Cecily', 'Eleanor', 'Guinevere', 'Isolde',
    'Matilda', 'Rohesia', 'Sybil', 'Yvonne', 'William', 'Richard', 'Robert', 'Hugh', 'Roland',
    'Giles', 'Walter', 'Henry', 'Thomas', 'John', 'Agnes', 'Alice', 'Elaine', 'Emma', 'Joan',
    'Margaret', 'Marian', 'Edith', 'Godiva', 'Maud',
]

SHAKESPEAREAN_LAST_NAMES = [
    'Montague', 'Capulet', 'Othello', 'Hamlet', 'Macbeth', 'Lear', 'Prospero', 'Oberon',
    'Puck', 'Lysander', 'Demetrius', 'Titania', 'Portia', 'Shylock', 'Malvolio', 'Orsino',
    'Orlando', 'Rosalind', 'Falstaff', 'Petruchio', 'Ariel', 'Caliban', 'Polonius', 'Laertes',
    'Ophelia', 'Macduff', 'Banquo', 'Desdemona', 'Cordelia', 'Goneril', 'Regan', 'Kent',
    'Gloucester', 'Albany', 'Cornwall', 'Feste', 'Viola', 'Sebastian', 'Antonio', 'Benvolio',
    'Mercutio', 'Tybalt', 'Horatio', 'Fortinbras', 'Bottom',
]


@dataclass(frozen=True)
class InsertTask:
    """One user record to insert."""
    user_id: uuid.UUID
    name: str
    email: str
    role: str
    created_at: datetime.datetime
    table: str = USERS_TABLE


@dataclass
class BatchResult:
    """Outcome of a single InsertTask."""
    task: InsertTask
    succeeded: bool
    attempts: int
    elapsed_seconds: float
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


@dataclass
class RunSummary:
    """Aggregated results of one stress test run. record() is safe to call from any thread."""
    target_count: int
    concurrency: int
    batch_size: int
    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0
    duration_seconds: float = 0.0
    latencies: List[float] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def total_attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def throughput(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.succeeded / self.duration_seconds

    def record_batch(self):
        with self._lock:
            self.batches += 1

    def record(self, result: BatchResult):
        with self._lock:
            if result.succeeded:
                self.succeeded += 1
            else:
                self.failed += 1
            self.retries += result.retries
            self.latencies.append(result.elapsed_seconds)

    def finish(self, duration_seconds: float) -> 'RunSummary':
        with self._lock:
            if self.succeeded + self.failed != self.target_count:
                raise RuntimeError(
                    f"Run incomplete: {self.succeeded} succeeded + {self.failed} failed "
                    f"!= {self.target_count} requested"
                )
            self.duration_seconds = duration_seconds
        return self


class RecordGenerator:
    """
    Produces random users with unique ids and emails.

    Uniqueness comes from a uuid4 per record, so any number of threads can
    call next() without coordinating.
    """

    def __init__(self, table: str = USERS_TABLE, domain: str = 'kingdommail.com'):
        self.table = table
        self.domain = domain
        self._random = random.SystemRandom()

    def next(self) -> InsertTask:
        user_id = uuid.uuid4()
        first_name = self._random.choice(MEDIEVAL_FIRST_NAMES)
        last_name = self._random.choice(SHAKESPEAREAN_LAST_NAMES)
        email = f"{first_name.lower()}.{last_name.lower()}.{user_id.hex}@{self.domain}"
        return InsertTask(
            user_id=user_id,
            name=f"{first_name} {last_name}",
            email=email,
            role=self._random.choice(ROLES),
            created_at=datetime.datetime.now(datetime.timezone.utc),
            table=self.table,
        )


class ConcurrentInsertDriver:
    """
    Inserts target_count generated users using at most `concurrency` threads.

    Args:
        connection_provider: Object with acquire() and release(conn)
        insert: Callable(conn, task) performing one durable insert
        record_generator: Source of InsertTasks
        retry_policy: Retry rules applied to every insert
        batch_size: Number of tasks dispatched per batch
    """

    def __init__(self, connection_provider, insert: Callable[..., None],
                 record_generator: Optional[RecordGenerator] = None,
                 retry_policy: Optional[RetryPolicy] = None, batch_size: int = 10):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.connection_provider = connection_provider
        self.insert = insert
        self.record_generator = record_generator or RecordGenerator()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size

    def run(self, target_count: int, concurrency: int) -> RunSummary:
        """
        Run the stress test and block until every task has finished.

        Raises:
            ValueError: for non-positive target_count or concurrency
            SetupError: if connections cannot be obtained; no summary is produced
        """
        if target_count < 1:
            raise ValueError("target_count must be a positive integer")
        if concurrency < 1:
            raise ValueError("concurrency must be a positive integer")

        logger.info(f"[START] Stress test with {target_count} users at concurrency {concurrency} "
                    f"(batch size {self.batch_size})")
        self._check_connectivity()

        summary = RunSummary(target_count=target_count, concurrency=concurrency,
                             batch_size=self.batch_size)
        start = time.perf_counter()

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix='insert-worker') as executor:
            for batch_no, first in enumerate(range(0, target_count, self.batch_size), start=1):
                last = min(first + self.batch_size, target_count)
                logger.info(f"[BATCH] Processing batch {batch_no}: users {first + 1}-{last}")

                tasks = [self.record_generator.next() for _ in range(first, last)]
                futures = [executor.submit(self._execute, task) for task in tasks]
                summary.record_batch()
                try:
                    for future in as_completed(futures):
                        summary.record(future.result())
                except SetupError:
                    for future in futures:
                        future.cancel()
                    raise

        return summary.finish(time.perf_counter() - start)

    def _check_connectivity(self):
        conn = self.connection_provider.acquire()
        self.connection_provider.release(conn)

    def _execute(self, task: InsertTask) -> BatchResult:
        started = time.perf_counter()
        attempts = 0

        def attempt(conn):
            nonlocal attempts
            attempts += 1
            self.insert(conn, task)

        conn = self.connection_provider.acquire()
        try:
            self.retry_policy.call(attempt, conn, description=f"insert of user {task.user_id}")
        except Exception as e:
            kind = self.retry_policy.classify(e)
            logger.warning(f"[FAILED] Insert of user '{task.name}' ({task.user_id}) failed "
                           f"after {attempts} attempt(s) [{kind.value}]: {e}")
            return BatchResult(task, False, attempts, time.perf_counter() - started,
                               error_kind=kind, error=str(e))
        finally:
            self.connection_provider.release(conn)

        logger.debug(f"[OK] Inserted user '{task.name}' with ID: {task.user_id}")
        return BatchResult(task, True, attempts, time.perf_counter() - started)


def print_run_summary(summary: RunSummary):
    """Print the results of a finished stress test run."""
    print("\nStress Test Results:")
    print("--------------------")
    print(f"Total time: {summary.duration_seconds:.2f} seconds")
    print(f"Successful inserts: {summary.succeeded}")
    print(f"Failed inserts: {summary.failed}")
    print(f"Insert rate: {summary.throughput:.2f} users/second")
    print(f"Batches dispatched: {summary.batches} (size {summary.batch_size}, concurrency {summary.concurrency})")
    print(f"Retries performed: {summary.retries}")
    if summary.latencies:
        avg = sum(summary.latencies) / len(summary.latencies)
        print(f"Insert latency: avg {avg * 1000:.1f}ms | "
              f"min {min(summary.latencies) * 1000:.1f}ms | "
              f"max {max(summary.latencies) * 1000:.1f}ms")
