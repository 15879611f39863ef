"""
Database connection and session management
Supports PostgreSQL with SQLite fallback
"""
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from config import settings
import logging
import os

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()

# Database configuration
DATABASE_AVAILABLE = False
engine = None
SessionLocal = None


def _sqlite_url() -> str:
    if settings.DATABASE_URL.startswith("sqlite"):
        return settings.DATABASE_URL
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    return f"sqlite:///{os.path.join(settings.DATA_DIR, 'enrichment.db')}"


def init_database():
    """Initialize database connection"""
    global engine, SessionLocal, DATABASE_AVAILABLE

    try:
        if settings.DATABASE_URL and settings.DATABASE_URL.startswith('postgresql'):
            engine = create_engine(
                settings.DATABASE_URL,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,   # Recycle connections after 1 hour
                pool_size=settings.ROW_UPDATE_PARALLEL_BATCHES,
                max_overflow=10,
                echo=settings.DEBUG,
                connect_args={
                    "connect_timeout": 10,
                    "keepalives": 1,
                    "keepalives_idle": 30,
                    "keepalives_interval": 10,
                    "keepalives_count": 5
                }
            )
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("[OK] PostgreSQL connection established")
        else:
            sqlite_url = _sqlite_url()
            if sqlite_url.startswith("sqlite:///./"):
                os.makedirs(os.path.dirname(sqlite_url[len("sqlite:///"):]), exist_ok=True)
            engine = create_engine(
                sqlite_url,
                echo=settings.DEBUG,
                connect_args={"check_same_thread": False}
            )
            logger.info(f"[OK] Using SQLite: {sqlite_url}")

        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        DATABASE_AVAILABLE = True

    except Exception as e:
        logger.error(f"[WARN] Database connection failed: {e}")
        DATABASE_AVAILABLE = False


# Initialize on module load
init_database()


def get_db():
    """Dependency to get database session"""
    if not DATABASE_AVAILABLE or SessionLocal is None:
        yield None
        return

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables"""
    import models  # noqa: F401  (registers tables on Base.metadata)

    if DATABASE_AVAILABLE and engine is not None:
        Base.metadata.create_all(bind=engine)


def is_local_store(db) -> bool:
    """True when the session is bound to the local SQLite store"""
    return db.get_bind().dialect.name == "sqlite"
