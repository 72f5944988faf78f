import os
from psycopg.rows import dict_row
from contextlib import contextmanager

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/pos"
DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/pos"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
# - DB_ADMIN_POOL_MIN_SIZE / DB_ADMIN_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)
_ADMIN_POOL_MIN = _env_int("DB_ADMIN_POOL_MIN_SIZE", 1)
_ADMIN_POOL_MAX = _env_int("DB_ADMIN_POOL_MAX_SIZE", 5)

# Pools are opened on first use so importing routers (tests, workers) never dials the DB.
_pools: dict[str, ConnectionPool] = {}


def _get_pool(name: str) -> ConnectionPool:
    pool = _pools.get(name)
    if pool is None:
        if name == "admin":
            conninfo, min_size, max_size = DATABASE_URL_ADMIN, _ADMIN_POOL_MIN, _ADMIN_POOL_MAX
        else:
            conninfo, min_size, max_size = DATABASE_URL, _POOL_MIN, _POOL_MAX
        # Note: we keep row_factory=dict_row; handlers index rows by column name.
        pool = ConnectionPool(
            conninfo=conninfo,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=True,
        )
        _pools[name] = pool
    return pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:`
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool("app"))

def get_admin_conn():
    return _pooled_conn(_get_pool("admin"))


def close_pools() -> None:
    # Shutdown hook (e.g. uvicorn shutdown).
    for name in list(_pools):
        _pools.pop(name).close()


def set_location_context(conn, location_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid when using the extended query protocol (psycopg sends $1).
        # Use set_config() to safely parameterize the value.
        cur.execute(
            "SELECT set_config('app.current_location_id', %s::text, true)",
            (location_id or "",),
        )
