"""
User model with ULID primary keys.

Only the attributes the permission engine consumes live here; credentials
and sessions belong to the upstream identity service.
"""
from datetime import datetime
import enum
from sqlalchemy import String, Boolean, Integer, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, TimestampMixin, UTCDateTime


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


class Role(str, enum.Enum):
    """Coarse capability bundles. ADMIN satisfies every permission check."""
    ADMIN = "ADMIN"
    SALES_MANAGER = "SALES_MANAGER"
    FINANCE_MANAGER = "FINANCE_MANAGER"
    OPERATIONS_MANAGER = "OPERATIONS_MANAGER"


class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"


class User(Base, TimestampMixin):
    """
    User model representing people whose access is administered here.

    Uses ULID instead of auto-incrementing integers for better distributed systems support.
    """
    __tablename__ = "users"

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Authorization attributes
    role: Mapped[Role] = mapped_column(SQLEnum(Role), nullable=False, index=True)
    access_level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[UserStatus] = mapped_column(
        SQLEnum(UserStatus),
        default=UserStatus.ACTIVE,
        nullable=False,
        index=True
    )

    # Track last login
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, role={self.role})>"
