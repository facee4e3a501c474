from .database import Base, create_db_engine, create_session_factory, init_db
from .models import PipelineRun

__all__ = [
    "Base",
    "PipelineRun",
    "create_db_engine",
    "create_session_factory",
    "init_db",
]
