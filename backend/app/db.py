"""
Connection pools for the API.

The app pool connects as the row-level-security role; scope it per request with
`set_store_context`. The admin pool sees every store and is only used for
lookups that happen before a store is known (device auth, health checks).
Both open on first use so importing the app in tests or CLI tools never
connects.
"""

import os
from contextlib import contextmanager

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import _env_int

DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/possync"
DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/possync"


def _build_pool(conninfo: str, env_prefix: str, min_size: int, max_size: int, name: str) -> ConnectionPool:
    # Sizing overrides: <env_prefix>_MIN_SIZE / <env_prefix>_MAX_SIZE.
    return ConnectionPool(
        conninfo=conninfo,
        min_size=_env_int(f"{env_prefix}_MIN_SIZE", min_size),
        max_size=_env_int(f"{env_prefix}_MAX_SIZE", max_size),
        kwargs={"row_factory": dict_row},
        name=name,
        open=False,
    )


_pool = _build_pool(DATABASE_URL, "DB_POOL", 1, 10, "pos-sync-app")
_admin_pool = _build_pool(DATABASE_URL_ADMIN, "DB_ADMIN_POOL", 1, 5, "pos-sync-admin")


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    if pool.closed:
        pool.open()
    # The pool commits on a clean exit and rolls back when the block raises.
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _pooled_conn(_pool)


def get_admin_conn():
    return _pooled_conn(_admin_pool)


def close_pools() -> None:
    for pool in (_pool, _admin_pool):
        try:
            pool.close()
        except Exception:
            pass


def set_store_context(conn, store_id: str):
    # Transaction-local, so a pooled connection never carries a previous request's store.
    # set_config() because `SET ... = %s` cannot take a bound parameter.
    with conn.cursor() as cur:
        cur.execute(
            "SELECT set_config('app.current_store_id', %s::text, true)",
            (store_id,),
        )
