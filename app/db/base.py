# Import all the models, so that Base has them before being
# imported by Alembic
from app.db.base_class import Base
from app.models.login_activity import LoginActivity

__all__ = ["Base", "LoginActivity"]  # noqa: F401
