import logging
from contextlib import contextmanager
from typing import Generator, Iterable, Iterator, Optional, Tuple

from fastapi import Request
from sqlalchemy import create_engine, inspect, or_, text
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from wa_inbox.errors import (
    ConflictError,
    PersistenceError,
    SchemaNotReadyError,
    StoreUnavailableError,
)
from wa_inbox.utils import utc_now_ts

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("whatsapp_messages", "whatsapp_contacts")

_MISSING_TABLE_MARKERS = ("no such table", "does not exist", "undefined table", "doesn't exist")


def translate_db_error(exc: SQLAlchemyError) -> PersistenceError:
    """Map a SQLAlchemy error onto the persistence error taxonomy."""
    detail = str(getattr(exc, "orig", None) or exc)
    lowered = detail.lower()

    if isinstance(exc, (OperationalError, ProgrammingError)) and any(
        marker in lowered for marker in _MISSING_TABLE_MARKERS
    ):
        return SchemaNotReadyError(f"Database table not found: {detail}")

    if isinstance(exc, (OperationalError, InterfaceError)) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return StoreUnavailableError(f"Database connection failed: {detail}")

    return PersistenceError(detail)


class Database:
    """
    Owns the engine and session factory for one application instance.

    Constructed by the composition root (main.create_app) and torn down
    in the app lifespan; nothing in the package keeps a global engine.
    """

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            # Sessions are used from the threadpool and ingestion threads
            connect_args["check_same_thread"] = False

        self.url = url
        self.engine = create_engine(url, connect_args=connect_args, echo=echo)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def init_schema(self) -> None:
        """Create all tables. Called during application startup."""
        logger.debug(f"Initializing database with URL: {self.url}")
        try:
            # Import models to register them with Base.metadata
            from wa_inbox.models import Contact, Message  # noqa: F401

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def dispose(self) -> None:
        self.engine.dispose()
        logger.debug("Database engine disposed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Session scope for code running outside a request (ingestion worker).
        SQLAlchemy errors leave as PersistenceError subclasses.
        """
        db = self.SessionLocal()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise translate_db_error(e) from e
        finally:
            db.close()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and all tables exist, False otherwise.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            inspector = inspect(self.engine)
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
            if missing:
                logger.error(f"Database schema not applied: missing tables {missing}")
                return False
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = request.app.state.db.SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    message_id: str,
    from_number: str,
    to_number: str,
    direction: str,
    message_type: str = "TEXT",
    text: Optional[str] = None,
    status: Optional[str] = None,
    media_url: Optional[str] = None,
    timestamp: Optional[str] = None,
):
    """
    Insert a message row (idempotent on message_id).

    Returns:
        Tuple of (message, is_duplicate)
        - (Message, False): Message created
        - (None, True): message_id already stored, nothing written
    Other store errors propagate.
    """
    from wa_inbox.models import Message

    created_at = utc_now_ts()
    message = Message(
        message_id=message_id,
        from_number=from_number,
        to_number=to_number,
        text=text,
        type=message_type,
        direction=direction,
        status=status,
        media_url=media_url,
        timestamp=timestamp or created_at,
        created_at=created_at,
    )

    try:
        db.add(message)
        db.commit()
    except IntegrityError:
        # message_id already exists - provider redelivery
        db.rollback()
        logger.info(f"Duplicate message detected: {message_id}")
        return None, True

    db.refresh(message)
    logger.info(f"Message stored: id={message.id}, message_id={message_id}, direction={direction}")
    return message, False


def update_message_status(db: Session, message_id: str, status: str) -> int:
    """Set status on every row with this provider id. Returns rows updated."""
    from wa_inbox.models import Message

    updated = (
        db.query(Message)
        .filter(Message.message_id == message_id)
        .update({Message.status: status}, synchronize_session=False)
    )
    db.commit()
    return updated


def list_all_messages(db: Session) -> list:
    """All messages, newest first."""
    from wa_inbox.models import Message

    return db.query(Message).order_by(Message.timestamp.desc(), Message.id.desc()).all()


def get_messages_for_phone(db: Session, phone: str) -> list:
    """Messages sent by or to the canonical phone, oldest first."""
    from wa_inbox.models import Message

    return (
        db.query(Message)
        .filter(or_(Message.from_number == phone, Message.to_number == phone))
        .order_by(Message.timestamp.asc(), Message.id.asc())
        .all()
    )


def delete_messages_for_phone(db: Session, phone: str) -> int:
    from wa_inbox.models import Message

    deleted = (
        db.query(Message)
        .filter(or_(Message.from_number == phone, Message.to_number == phone))
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Deleted {deleted} messages for {phone}")
    return deleted


# =============================================================================
# Contact Repository Functions
# =============================================================================

def get_contact(db: Session, phone_number: str):
    from wa_inbox.models import Contact

    return db.query(Contact).filter(Contact.phone_number == phone_number).first()


def get_contacts_by_phones(db: Session, phone_numbers: Iterable[str]) -> list:
    from wa_inbox.models import Contact

    phone_numbers = list(phone_numbers)
    if not phone_numbers:
        return []
    return db.query(Contact).filter(Contact.phone_number.in_(phone_numbers)).all()


def list_contacts(db: Session) -> list:
    from wa_inbox.models import Contact

    return db.query(Contact).order_by(Contact.name.asc(), Contact.phone_number.asc()).all()


def create_contact(
    db: Session,
    phone_number: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    notes: Optional[str] = None,
    is_pinned: bool = False,
    last_read_at: Optional[str] = None,
):
    """Insert a contact. A concurrent insert of the same phone raises ConflictError."""
    from wa_inbox.models import Contact

    now = utc_now_ts()
    contact = Contact(
        phone_number=phone_number,
        name=name,
        email=email,
        notes=notes,
        is_pinned=is_pinned,
        last_read_at=last_read_at,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(contact)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("A contact with this phone number already exists")

    db.refresh(contact)
    logger.info(f"Contact created: {phone_number}")
    return contact


def update_contact(db: Session, contact, **fields):
    """Apply the given column values to an existing contact."""
    for key, value in fields.items():
        setattr(contact, key, value)
    contact.updated_at = utc_now_ts()
    db.commit()
    db.refresh(contact)
    return contact


def delete_contact(db: Session, contact) -> None:
    db.delete(contact)
    db.commit()
    logger.info(f"Contact deleted: {contact.phone_number}")


def upsert_contact(db: Session, phone_number: str, defaults: dict, **fields) -> Tuple[object, bool]:
    """
    Update the contact if it exists, otherwise create it with defaults + fields.

    No lock spans the lookup and the write; two concurrent creates for the
    same phone make the second one fail with ConflictError.

    Returns:
        Tuple of (contact, created)
    """
    contact = get_contact(db, phone_number)
    if contact is not None:
        return update_contact(db, contact, **fields), False
    values = {**defaults, **fields}
    return create_contact(db, phone_number=phone_number, **values), True
