from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Import all models so that Base.metadata.create_all picks them up.
from app.models.batch import CsvBatch  # noqa: E402, F401
from app.models.row_job import CsvRowJob  # noqa: E402, F401
from app.models.image import GeneratedImage  # noqa: E402, F401
from app.models.integration import (  # noqa: E402, F401
    Calendar,
    CalendarEvent,
    ExternalIntegration,
)
from app.models.template import CsvTemplate  # noqa: E402, F401
