from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from procureflow.config import settings

_url = settings.database_connection_url
_connect_args = {"check_same_thread": False} if _url.startswith("sqlite") else {}

engine = create_engine(_url, connect_args=_connect_args)

# Ensure search_path is set to public schema for PostgreSQL
if _url.startswith("postgresql"):
    @event.listens_for(engine, "connect")
    def set_search_path(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("SET search_path TO public")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
