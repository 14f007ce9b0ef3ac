from app.db.session import engine
from app.db.base import Base
import app.db.models  # noqa: F401  registers every table on Base.metadata


def init_db():
    """Create tables directly. Production deployments run Alembic instead."""
    Base.metadata.create_all(bind=engine)


if __name__ == "__main__":
    init_db()
