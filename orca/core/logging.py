import logging
import sys

from orca.core.config import settings
from orca.core.tenant import get_clinic_id

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [clinic=%(clinic_id)s] %(message)s"


class ClinicContextFilter(logging.Filter):
    """Stamp every record with the clinic bound to the current request or task"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.clinic_id = get_clinic_id() or "-"
        return True


def configure_logging(level: str = None) -> None:
    root = logging.getLogger()
    if any(isinstance(f, ClinicContextFilter) for h in root.handlers for f in h.filters):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ClinicContextFilter())

    root.addHandler(handler)
    root.setLevel(level or settings.LOG_LEVEL)
