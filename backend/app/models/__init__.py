# Import every model here so Base.metadata knows all tables
from backend.app.models.security_log import SecurityAction, SecurityLog
from backend.app.models.srp_session import SrpSession
from backend.app.models.user import User

__all__ = ["User", "SrpSession", "SecurityLog", "SecurityAction"]
