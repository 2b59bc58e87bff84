# SQLModel definitions, imported here to ensure metadata is populated for create_all.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .profile import Profile  # noqa: F401
from .subscription import Subscription  # noqa: F401
from .attendance import AttendanceRecord  # noqa: F401
from .notification import NotificationTicket  # noqa: F401
