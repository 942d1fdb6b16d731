import logging
from datetime import datetime, timezone
from typing import Generator, Iterable, Optional, Set, Tuple

from sqlalchemy import create_engine, text, func, inspect
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chat_import.config import settings

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def server_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chat_import.models import ChatMessage  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("chat_messages"):
            logger.error("Database schema not applied: 'chat_messages' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Import Pipeline Persistence
# =============================================================================

def select_existing_ids(db: Session, group_id: str) -> Set[str]:
    """Message ids already stored for a group."""
    from chat_import.models import ChatMessage

    rows = db.query(ChatMessage.message_id).filter(ChatMessage.group_id == group_id).all()
    existing = {row.message_id for row in rows}
    logger.info(f"Found {len(existing)} existing messages for group {group_id}")
    return existing


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "sqlite":
        return sqlite.insert
    if name == "postgresql":
        return postgresql.insert
    raise NotImplementedError(f"Conflict-ignoring upsert is not supported for dialect {name}")


def upsert_ignore_conflicts(db: Session, rows: Iterable[dict], conflict_key: str = "message_id") -> None:
    """
    Insert rows, silently skipping any whose conflict_key already exists.

    Raises:
        SQLAlchemyError: on any write failure (the session is rolled back)
    """
    from chat_import.models import ChatMessage

    created_at = server_timestamp()
    values = [{**row, "created_at": created_at} for row in rows]
    if not values:
        return

    insert = _dialect_insert(db)
    statement = insert(ChatMessage).values(values).on_conflict_do_nothing(index_elements=[conflict_key])
    try:
        db.execute(statement)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(db: Session, row: dict) -> Tuple[bool, bool]:
    """
    Create a single message (idempotent on message_id).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message created successfully
        - (True, True): Message already exists
        - (False, False): Error occurred
    """
    from chat_import.models import ChatMessage

    message_id = row["message_id"]
    logger.info(f"Creating message: id={message_id}, group={row.get('group_id')}")

    try:
        db.add(ChatMessage(**row, created_at=server_timestamp()))
        db.commit()
        logger.info(f"Message created successfully: {message_id}")
        return (True, False)

    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate message detected: {message_id}")
        return (True, True)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create message {message_id}: {e}")
        return (False, False)


def message_exists(db: Session, message_id: str) -> bool:
    from chat_import.models import ChatMessage

    return db.query(ChatMessage.message_id).filter(ChatMessage.message_id == message_id).first() is not None


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    group_id: Optional[str] = None,
    sender: Optional[str] = None,
    since: Optional[str] = None,
    q: Optional[str] = None
) -> Tuple[list, int]:
    """
    Retrieve messages with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        group_id: Filter by group (exact match)
        sender: Filter by sender display name (exact match)
        since: Filter messages with timestamp >= since (ISO-8601 UTC)
        q: Free-text search in message body (case-insensitive)

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from chat_import.models import ChatMessage

    logger.info(f"Querying messages: limit={limit}, offset={offset}")
    logger.debug(f"Filters: group={group_id}, sender={sender}, since={since}, q={q}")

    query = db.query(ChatMessage)

    if group_id:
        query = query.filter(ChatMessage.group_id == group_id)
    if sender:
        query = query.filter(ChatMessage.sender_name == sender)
    if since:
        query = query.filter(ChatMessage.timestamp >= since)
    if q:
        query = query.filter(ChatMessage.body.ilike(f"%{q}%"))

    total = query.count()

    # Deterministic ordering: timestamp ASC, message_id ASC
    query = query.order_by(ChatMessage.timestamp.asc(), ChatMessage.message_id.asc())
    messages = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


def get_stats(db: Session, group_id: Optional[str] = None) -> dict:
    """
    Get message statistics for the /stats endpoint.

    Computes, optionally within one group:
    - total_messages, senders_count
    - messages_per_sender: top 10 senders by message count (desc)
    - media_messages, embedded_messages
    - first_message_ts / last_message_ts (null if no messages)
    """
    from chat_import.models import ChatMessage

    logger.info(f"Computing message statistics (group={group_id})")

    def scoped(query):
        return query.filter(ChatMessage.group_id == group_id) if group_id else query

    total_messages = scoped(db.query(func.count(ChatMessage.message_id))).scalar() or 0
    senders_count = scoped(db.query(func.count(func.distinct(ChatMessage.sender_name)))).scalar() or 0

    per_sender = (
        scoped(db.query(ChatMessage.sender_name, func.count(ChatMessage.message_id).label("count")))
        .group_by(ChatMessage.sender_name)
        .order_by(func.count(ChatMessage.message_id).desc(), ChatMessage.sender_name.asc())
        .limit(10)
        .all()
    )
    messages_per_sender = [
        {"sender_name": row.sender_name or "", "count": row.count}
        for row in per_sender
    ]

    media_messages = scoped(
        db.query(func.count(ChatMessage.message_id)).filter(ChatMessage.has_media.is_(True))
    ).scalar() or 0
    embedded_messages = scoped(
        db.query(func.count(ChatMessage.message_id)).filter(ChatMessage.embedding.isnot(None))
    ).scalar() or 0

    first_message_ts = scoped(db.query(func.min(ChatMessage.timestamp))).scalar()
    last_message_ts = scoped(db.query(func.max(ChatMessage.timestamp))).scalar()

    logger.info(f"Stats computed: {total_messages} messages, {senders_count} senders")

    return {
        "group_id": group_id,
        "total_messages": total_messages,
        "senders_count": senders_count,
        "messages_per_sender": messages_per_sender,
        "media_messages": media_messages,
        "embedded_messages": embedded_messages,
        "first_message_ts": first_message_ts,
        "last_message_ts": last_message_ts,
    }
