import logging
from datetime import timedelta
from typing import Generator, List, Optional, Tuple

from sqlalchemy import and_, create_engine, event, func, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from pigeon.config import settings
from pigeon.utils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
    echo=False,
)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if settings.DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from pigeon import models  # noqa: F401

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
        True if DB is healthy and all tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            for table in ("users", "contacts", "messages"):
                found = db.execute(
                    text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
                    {"name": table},
                ).scalar()
                if not found:
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def _pair_filter(user_a: int, user_b: int):
    from pigeon.models import Message

    return or_(
        and_(Message.sender_id == user_a, Message.receiver_id == user_b),
        and_(Message.sender_id == user_b, Message.receiver_id == user_a),
    )


def find_near_duplicate(
    db: Session,
    sender_id: int,
    receiver_id: int,
    content: str,
    timestamp: str,
    client_id: Optional[str],
    window_ms: int,
):
    """
    Find a stored message that is the same logical send as the given one.

    Same sender, receiver and content within window_ms of timestamp. Two rows
    that both carry a client id are distinct sends even if they look alike.
    """
    from pigeon.models import Message

    moment = parse_timestamp(timestamp)
    window = timedelta(milliseconds=window_ms)
    query = db.query(Message).filter(
        Message.sender_id == sender_id,
        Message.receiver_id == receiver_id,
        Message.content == content,
        Message.timestamp >= format_timestamp(moment - window),
        Message.timestamp <= format_timestamp(moment + window),
    )
    if client_id is not None:
        query = query.filter(or_(Message.client_id.is_(None), Message.client_id == client_id))
    return query.order_by(Message.id.asc()).first()


def create_message(
    db: Session,
    sender_id: int,
    receiver_id: int,
    content: str,
    timestamp: str,
    client_id: Optional[str] = None,
    dedup_window_ms: int = 1000,
) -> Tuple[object, bool]:
    """
    Persist one message, idempotently.

    Args:
        db: Database session
        sender_id: Sending user id
        receiver_id: Receiving user id
        content: Message text
        timestamp: Canonical ISO-8601 UTC timestamp
        client_id: Sender's temporary id, if the client supplied one
        dedup_window_ms: Near-duplicate tolerance

    Returns:
        Tuple of (message, is_duplicate)
        - (new row, False): message created
        - (existing row, True): the same logical send was already stored
    """
    from pigeon.models import Message

    logger.info(f"Creating message: from={sender_id}, to={receiver_id}, client_id={client_id}")

    if client_id is not None:
        existing = (
            db.query(Message)
            .filter(Message.sender_id == sender_id, Message.client_id == client_id)
            .first()
        )
        if existing is not None:
            logger.info(f"Duplicate message detected by client id: {client_id}")
            return existing, True

    near = find_near_duplicate(db, sender_id, receiver_id, content, timestamp, client_id, dedup_window_ms)
    if near is not None:
        logger.info(f"Duplicate message detected within {dedup_window_ms}ms window: {near.id}")
        if near.client_id is None and client_id is not None:
            near.client_id = client_id
            db.commit()
        return near, True

    message = Message(
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        timestamp=timestamp,
        is_read=False,
        client_id=client_id,
    )
    try:
        db.add(message)
        db.commit()
    except IntegrityError:
        # Lost a race against the same client id - the winner's row is the message
        db.rollback()
        existing = (
            db.query(Message)
            .filter(Message.sender_id == sender_id, Message.client_id == client_id)
            .first()
        )
        if existing is None:
            raise
        logger.info(f"Duplicate message detected on insert: {client_id}")
        return existing, True

    db.refresh(message)
    logger.info(f"Message created successfully: {message.id}")
    return message, False


def get_message_by_id(db: Session, message_id: int):
    from pigeon.models import Message

    return db.query(Message).filter(Message.id == message_id).first()


def get_conversation(db: Session, user_id: int, other_user_id: int) -> List:
    """
    All messages between two users, oldest first.

    Side effect: every message other_user_id sent to user_id is marked read.
    """
    from pigeon.models import Message

    logger.info(f"Querying conversation: user={user_id}, other={other_user_id}")

    marked = (
        db.query(Message)
        .filter(
            Message.sender_id == other_user_id,
            Message.receiver_id == user_id,
            Message.is_read.is_(False),
        )
        .update({Message.is_read: True}, synchronize_session=False)
    )
    db.commit()
    logger.debug(f"Marked {marked} messages as read")

    messages = (
        db.query(Message)
        .filter(_pair_filter(user_id, other_user_id))
        .order_by(Message.timestamp.asc(), Message.id.asc())
        .all()
    )
    logger.info(f"Retrieved {len(messages)} messages in conversation")
    return messages


def get_last_message(db: Session, user_id: int, other_user_id: Optional[int]):
    from pigeon.models import Message

    if other_user_id is None:
        return None
    return (
        db.query(Message)
        .filter(_pair_filter(user_id, other_user_id))
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .first()
    )


def get_unread_count(db: Session, user_id: int) -> int:
    from pigeon.models import Message

    return (
        db.query(func.count(Message.id))
        .filter(Message.receiver_id == user_id, Message.is_read.is_(False))
        .scalar()
        or 0
    )


def get_unread_messages(db: Session, user_id: int) -> List:
    from pigeon.models import Message

    return (
        db.query(Message)
        .filter(Message.receiver_id == user_id, Message.is_read.is_(False))
        .order_by(Message.timestamp.asc(), Message.id.asc())
        .all()
    )


def delete_conversation(db: Session, user_id: int, other_user_id: int, commit: bool = True) -> int:
    """
    Delete every message between two users.

    Returns:
        Number of deleted rows
    """
    from pigeon.models import Message

    deleted = (
        db.query(Message)
        .filter(_pair_filter(user_id, other_user_id))
        .delete(synchronize_session=False)
    )
    if commit:
        db.commit()
    logger.info(f"Deleted {deleted} messages between {user_id} and {other_user_id}")
    return deleted
