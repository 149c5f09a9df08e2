"""PortalPage - extraction strategies for the Class UTP student portal.

Each strategy takes the live page, snapshots its rendered HTML and parses it
with BeautifulSoup. Strategies never click or navigate; the navigator owns
page state. Swapping the portal markup means replacing this module, not the
pipeline.

DOM structure (dashboard + FullCalendar week view):
  header
    p.text-body.font-bold                  -> student name
  dashboard grid
    [data-testid=course-card-container]    -> one per course
      .font-black                          -> course name
      .text-small-02.lg:text-body          -> "<code> - <modality>"
      p.text-small-02 span.capitalize      -> instructor
  calendar header (fixed position)         -> cycle / current week / dates
  .fc-timegrid-col[data-date]
    .fc-timegrid-event-harness > .fc-timegrid-event
      [data-testid=single-day-event-card-container]     -> class
      [data-testid=single-day-activity-card-container]  -> activity
  th.fc-col-header-cell[data-date] .fc-col-header-cell-cushion div -> day label
  .fc-daygrid-event-harness > .fc-daygrid-event
      [data-testid=multiple-day-event-card-container]   -> whole-term course

Where several selectors are listed for one field the first one that yields
text wins. There is no stronger precedence rule than that.
"""

from datetime import date
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup, Tag

from src.classutp.logging import get_logger
from src.classutp.models import (
    ActivityEvent,
    ClassEvent,
    Course,
    CourseSpanEvent,
    WeekInfo,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

    from src.classutp.models import Event

log = get_logger(__name__)

SPANISH_WEEKDAYS = (
    "Lunes",
    "Martes",
    "Miércoles",
    "Jueves",
    "Viernes",
    "Sábado",
    "Domingo",
)

NO_SPECIFIC_TIME = "Sin hora específica"


def _week_header_path(*tail: str) -> str:
    # /html/body/div[1]/div[2]/div[2]/div[2]/div/div/div/div/div[1]/div[1]/...
    head = [
        "body",
        "div:nth-of-type(1)",
        "div:nth-of-type(2)",
        "div:nth-of-type(2)",
        "div:nth-of-type(2)",
        "div",
        "div",
        "div",
        "div",
        "div:nth-of-type(1)",
        "div:nth-of-type(1)",
    ]
    return " > ".join([*head, *tail])


def _clean(text: str | None) -> str | None:
    if text is None:
        return None
    collapsed = " ".join(text.split())
    return collapsed or None


def _text(node: Tag | None) -> str | None:
    return _clean(node.get_text(" ")) if node is not None else None


def _first_text(node: Tag, *selectors: str) -> str | None:
    for selector in selectors:
        value = _text(node.select_one(selector))
        if value:
            return value
    return None


def spanish_weekday(iso_date: str | None) -> str | None:
    """Spanish weekday label for a YYYY-MM-DD string, or None if it won't parse."""
    if not iso_date:
        return None
    try:
        return SPANISH_WEEKDAYS[date.fromisoformat(iso_date).weekday()]
    except ValueError:
        return None


class PortalPage:
    """Class UTP dashboard and calendar.

    Selectors were taken from the rendered portal; every one of them is a
    guess about markup the university controls.
    """

    STUDENT_NAME = ".text-body.font-bold"

    COURSE_GRID = "div.items-center.grid.mt-xxlg"
    COURSE_CARD = '[data-testid="course-card-container"]'
    COURSE_NAME = ".font-black"
    COURSE_DETAIL = r".text-small-02.lg\:text-body.text-neutral-02"
    COURSE_INSTRUCTOR = "p.text-small-02 span.capitalize"

    WEEK_CYCLE = _week_header_path("div:nth-of-type(1)", "p")
    WEEK_CURRENT = _week_header_path("div:nth-of-type(2)", "p:nth-of-type(1)")
    WEEK_DATES = _week_header_path("div:nth-of-type(2)", "p:nth-of-type(2)")

    TIMEGRID_HARNESS = ".fc-timegrid-event-harness"
    TIMEGRID_EVENT = ".fc-timegrid-event"
    TIMEGRID_COLUMN = "fc-timegrid-col"
    ACTIVITY_CARD = '[data-testid="single-day-activity-card-container"]'
    CLASS_CARD = '[data-testid="single-day-event-card-container"]'
    DAYGRID_HARNESS = ".fc-daygrid-event-harness"
    DAYGRID_EVENT = ".fc-daygrid-event"
    MULTI_DAY_CARD = '[data-testid="multiple-day-event-card-container"]'

    ACTIVITY_NAME = ("#activity-name-text", "p.font-black")
    ACTIVITY_TIP = "p[data-tip]"
    ACTIVITY_TIME = "p.mt-xsm.text-neutral-03.text-small-02"
    ACTIVITY_STATUS = '[data-testid="activity-state-tag-container"] span'
    COURSE_NAME_TEXT = "#course-name-text"
    CLASS_COURSE = ("#course-name-text", "p.font-black")
    CLASS_TIME = "p.mt-sm.text-neutral-04.text-small-02"
    MODALITY = "span.font-bold.text-body.rounded-lg"

    def __init__(self, student_name_selector: str | None = None) -> None:
        self.student_name_selector = student_name_selector or self.STUDENT_NAME

    async def snapshot(self, page: "Page") -> BeautifulSoup:
        return BeautifulSoup(await page.content(), "html.parser")

    # Strategies (page -> value)

    async def student_name(self, page: "Page") -> str | None:
        return self.parse_student_name(await self.snapshot(page))

    async def courses(self, page: "Page") -> list[Course]:
        return self.parse_courses(await self.snapshot(page))

    async def week_info(self, page: "Page") -> WeekInfo:
        return self.parse_week_info(await self.snapshot(page))

    async def events(self, page: "Page") -> list["Event"]:
        return self.parse_events(await self.snapshot(page))

    # Parsers (soup -> value)

    def parse_student_name(self, soup: BeautifulSoup) -> str | None:
        return _text(soup.select_one(self.student_name_selector))

    def parse_courses(self, soup: BeautifulSoup) -> list[Course]:
        container = soup.select_one(self.COURSE_GRID) or soup
        courses: list[Course] = []
        for card in container.select(self.COURSE_CARD):
            detail = _text(card.select_one(self.COURSE_DETAIL)) or ""
            if "-" in detail:
                modality = detail.split("-")[1].strip()
            else:
                modality = detail.strip()
            courses.append(
                Course(
                    name=_text(card.select_one(self.COURSE_NAME)),
                    modality=modality or None,
                    instructor=_text(card.select_one(self.COURSE_INSTRUCTOR)),
                )
            )
        log.debug("courses_parsed", count=len(courses))
        return courses

    def parse_week_info(self, soup: BeautifulSoup) -> WeekInfo:
        return WeekInfo(
            cycle=_text(soup.select_one(self.WEEK_CYCLE)),
            current_week=_text(soup.select_one(self.WEEK_CURRENT)),
            date_range=_text(soup.select_one(self.WEEK_DATES)),
        )

    def parse_events(self, soup: BeautifulSoup) -> list["Event"]:
        events: list["Event"] = []
        for harness in soup.select(self.TIMEGRID_HARNESS):
            event = harness.select_one(self.TIMEGRID_EVENT)
            if event is None:
                continue
            day_date, day_name = self._day_of(soup, harness)

            activity = event.select_one(self.ACTIVITY_CARD)
            if activity is not None:
                events.append(self._activity(activity, day_name, day_date))
                continue
            card = event.select_one(self.CLASS_CARD)
            if card is not None:
                events.append(
                    ClassEvent(
                        course=_first_text(card, *self.CLASS_COURSE),
                        time=_text(card.select_one(self.CLASS_TIME)),
                        modality=_text(card.select_one(self.MODALITY)),
                        day=day_name,
                        date=day_date,
                    )
                )

        for harness in soup.select(self.DAYGRID_HARNESS):
            event = harness.select_one(self.DAYGRID_EVENT)
            multi = event.select_one(self.MULTI_DAY_CARD) if event is not None else None
            if multi is None:
                continue
            events.append(
                CourseSpanEvent(
                    course=_text(multi.select_one("span.font-black")),
                    modality=_text(multi.select_one(self.MODALITY)),
                )
            )

        log.debug("events_parsed", count=len(events))
        return events

    def _activity(self, card: Tag, day_name: str | None, day_date: str | None) -> ActivityEvent:
        name = _text(card.select_one(self.ACTIVITY_NAME[0]))
        if not name:
            tip = card.select_one(self.ACTIVITY_TIP)
            name = _clean(tip.get("data-tip")) if tip is not None else None
        if not name:
            name = _text(card.select_one(self.ACTIVITY_NAME[1]))
        return ActivityEvent(
            activity_name=name,
            course=_text(card.select_one(self.COURSE_NAME_TEXT)),
            time=_text(card.select_one(self.ACTIVITY_TIME)) or NO_SPECIFIC_TIME,
            status=_text(card.select_one(self.ACTIVITY_STATUS)),
            day=day_name,
            date=day_date,
        )

    def _day_of(self, soup: BeautifulSoup, harness: Tag) -> tuple[str | None, str | None]:
        column = harness.find_parent(class_=self.TIMEGRID_COLUMN)
        day_date = column.get("data-date") if column is not None else None
        if not day_date:
            return None, None
        day_name = spanish_weekday(day_date)
        if day_name is None:
            header = soup.select_one(
                f'th.fc-col-header-cell[data-date="{day_date}"] .fc-col-header-cell-cushion div'
            )
            day_name = _text(header)
        return day_date, day_name
