from backend.app.db.base import Base
from backend.app.db.session import Database, storage_operation

__all__ = ["Base", "Database", "storage_operation"]
