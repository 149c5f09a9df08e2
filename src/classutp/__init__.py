"""Class UTP schedule extraction service.

Drives a pooled headless browser through the Class UTP student portal and
returns the student's courses and weekly calendar as structured records,
over plain JSON or a Server-Sent-Events progress stream.
"""

from src.classutp.models import ExtractionResult
from src.classutp.navigator import ScheduleNavigator
from src.classutp.pages.portal import PortalPage
from src.classutp.pool import BrowserPool
from src.classutp.service import ScheduleService

__all__ = [
    "BrowserPool",
    "ExtractionResult",
    "PortalPage",
    "ScheduleNavigator",
    "ScheduleService",
]
