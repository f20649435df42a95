from fintrack.db.session import engine
from fintrack.db.base import Base


def init_db():
    """Create all tables directly from the models (local/dev databases)."""
    import fintrack.db.models  # noqa: F401  registers every model on Base.metadata
    Base.metadata.create_all(bind=engine)
