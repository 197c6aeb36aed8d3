"""Factory de sessão do SQLAlchemy 2."""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

def create_session_factory(database_url: str, **engine_kwargs):
    """Cria SessionFactory síncrona para SQLAlchemy 2.

    :param database_url: URL completa do banco (psycopg3 em produção, sqlite nos testes).
    :param engine_kwargs: repassados ao create_engine (ex: poolclass, connect_args).
    :return: sessionmaker configurado.
    """
    engine = create_engine(database_url, pool_pre_ping=True, future=True, **engine_kwargs)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
