"""
CaseTools — Database Layer
File-based JSON store with PostgreSQL upgrade path.
"""
import os, copy, json, uuid, logging, threading
from contextlib import contextmanager
from datetime import datetime
from casetools.config import DB_PATH, PERSIST_DATA

logger = logging.getLogger(__name__)

# ============================================================
# DATABASE URL (PostgreSQL optional, file-based default)
# ============================================================
DATABASE_URL = os.environ.get("DATABASE_URL")

# ============================================================
# EMPTY DB SCHEMA
# ============================================================
EMPTY_DB = {
    "users": [], "teams": [], "rule_assignments": [], "cases": [],
    "alert_history": [], "notifications": [], "reports": [],
    "activity_log": [],
}


class NotFoundError(LookupError):
    """Raised when a record id does not resolve in its collection."""


def _fresh_db():
    """Return a fresh empty database."""
    return json.loads(json.dumps(EMPTY_DB))

# ============================================================
# FILE BACKEND
# ============================================================
_db_cache = None

def _file_load():
    global _db_cache
    if PERSIST_DATA and DB_PATH.exists():
        try:
            with open(DB_PATH) as f:
                _db_cache = json.load(f)
            for k, v in EMPTY_DB.items():
                if k not in _db_cache:
                    _db_cache[k] = type(v)()
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Could not read %s (%s), starting empty", DB_PATH, e)
            _db_cache = _fresh_db()
    else:
        _db_cache = _fresh_db()
    return _db_cache

def _file_save(db):
    global _db_cache
    _db_cache = db
    if PERSIST_DATA:
        tmp = DB_PATH.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(db, f, indent=2, default=str)
        tmp.replace(DB_PATH)

def _file_get():
    if _db_cache is None:
        return _file_load()
    return _db_cache

# ============================================================
# POSTGRES BACKEND (optional)
# ============================================================
_pg_pool = None

def _pg_connect():
    """Initialize PostgreSQL connection pool."""
    global _pg_pool
    if DATABASE_URL and not _pg_pool:
        import psycopg2
        from psycopg2.pool import SimpleConnectionPool
        try:
            _pg_pool = SimpleConnectionPool(1, 5, DATABASE_URL)
            _pg_init()
            logger.info("Connected to PostgreSQL")
        except psycopg2.Error as e:
            logger.error("PostgreSQL connection failed: %s, falling back to file", e)
            _pg_pool = None

def _pg_init():
    """Create the state table if it does not exist."""
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS casetools_state (
                id TEXT PRIMARY KEY DEFAULT 'main',
                data JSONB NOT NULL DEFAULT '{}',
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cur.execute("INSERT INTO casetools_state (id, data) VALUES ('main', %s) ON CONFLICT DO NOTHING",
                    (json.dumps(EMPTY_DB),))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _pg_pool.putconn(conn)

def _pg_load():
    if not _pg_pool:
        return _file_get()
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("SELECT data FROM casetools_state WHERE id='main'")
        row = cur.fetchone()
        db = row[0] if row else _fresh_db()
        for k, v in EMPTY_DB.items():
            db.setdefault(k, type(v)())
        return db
    finally:
        _pg_pool.putconn(conn)

def _pg_save(db):
    if not _pg_pool:
        return _file_save(db)
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("UPDATE casetools_state SET data=%s, updated_at=NOW() WHERE id='main'",
                    (json.dumps(db, default=str),))
        conn.commit()
    finally:
        _pg_pool.putconn(conn)

# ============================================================
# PUBLIC API
# ============================================================
if DATABASE_URL:
    logger.info("Using PostgreSQL backend")
    _pg_connect()
    save_db = _pg_save
    get_db = _pg_load
else:
    logger.info("Using file backend (%s)", DB_PATH.name)
    save_db = _file_save
    get_db = _file_get

# Serializes read-modify-write cycles across request threads and the SLA sweeper
db_lock = threading.RLock()


@contextmanager
def transaction():
    """Yield the database and save it when the block exits cleanly.

    On error the store is put back in place to its state before the block,
    so a half-applied change is never picked up by a later save.
    """
    with db_lock:
        db = get_db()
        snapshot = copy.deepcopy(db)
        try:
            yield db
        except Exception:
            db.clear()
            db.update(snapshot)
            raise
        save_db(db)


def reset_db() -> dict:
    """Wipe every collection. Used by admin reset and tests."""
    with db_lock:
        db = _fresh_db()
        save_db(db)
        return db

# ============================================================
# UTILITIES
# ============================================================
def new_id(prefix: str) -> str:
    return f"{prefix}-" + str(uuid.uuid4())[:8].upper()


def now_iso() -> str:
    return datetime.now().isoformat()


def parse_ts(value):
    """ISO string / datetime / None -> datetime or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    # Stored timestamps are naive local time
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def find_by_id(db: dict, collection: str, record_id: str) -> dict:
    """Look up a record by id, raising NotFoundError when absent."""
    for rec in db.get(collection, []):
        if rec.get("id") == record_id:
            return rec
    raise NotFoundError(f"{collection} record '{record_id}' not found")


def log_system_event(db: dict, action: str, entity_type: str, entity_id: str = None,
                     by: str = "system", detail: str = "", level: str = "INFO") -> dict:
    """Append a SystemLog entry to the activity log."""
    entry = {
        "id": str(uuid.uuid4())[:8],
        "action": action,
        "entityType": entity_type,
        "entityId": entity_id,
        "by": by,
        "detail": detail,
        "level": level,
        "at": now_iso(),
    }
    db["activity_log"].append(entry)
    if len(db["activity_log"]) > 5000:
        del db["activity_log"][:-5000]
    return entry
