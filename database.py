from sqlmodel import SQLModel, Session, create_engine

import config

connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(config.DATABASE_URL, connect_args=connect_args)


def create_db_and_tables(db_engine=None):
    """Create all tables registered on the SQLModel metadata"""
    SQLModel.metadata.create_all(db_engine or engine)


def get_session():
    """Yield a database session for a single request"""
    with Session(engine) as session:
        yield session
