import os
from omtii import settings
from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool


# only needed for psycopg 3 - replace postgresql
# with postgresql+psycopg in settings.DATABASE_URL
URL = settings.TEST_DATABASE_URL if os.getenv("TESTING") == "1" else settings.DATABASE_URL
connection_string = str(URL).replace(
    "postgresql", "postgresql+psycopg"
)


def build_engine(url: str):
    """
    Create an engine for the given URL.

    SQLite URLs are opened with a shared connection so an in-memory
    database survives across sessions; anything else recycles connections
    after 5 minutes to correspond with the compute scale down.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    return create_engine(url, connect_args={}, pool_recycle=300)


engine = build_engine(connection_string)


def create_db_and_tables() -> None:
    # the table models register themselves on import
    from omtii import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
