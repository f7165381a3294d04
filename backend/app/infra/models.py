"""Central registry for SQLAlchemy models with string-based relationships.

Importing this module loads every ORM class so mapper configuration and
``Base.metadata`` are complete no matter which model is imported first.
"""

from app.domain.caregivers import db_models as caregiver_db_models  # noqa: F401
from app.domain.availability import db_models as availability_db_models  # noqa: F401
from app.domain.bookings import db_models as booking_db_models  # noqa: F401
from app.domain.ops import db_models as ops_db_models  # noqa: F401
