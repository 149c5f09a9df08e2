"""Get this week's Class UTP schedule as JSON or a table.

Standalone CLI for a single scrape. Runs one session through the same
service the API uses (pool of one browser, same pipeline and strategies)
and prints the result.

Run with: python scripts/scrape_schedule.py
Debug:    python scripts/scrape_schedule.py --headed
Table:    python scripts/scrape_schedule.py --table
File:     python scripts/scrape_schedule.py --output data/schedule.json

Credentials come from UTP_USERNAME / UTP_PASSWORD (environment or .env).

Exit codes:
  0 = success (JSON or table on stdout, or file written for --output)
  1 = error (message on stderr)
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import SecretStr

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.classutp.config import get_config  # noqa: E402
from src.classutp.errors import ScrapingError  # noqa: E402
from src.classutp.logging import setup_logging  # noqa: E402
from src.classutp.models import Credentials, ExtractionResult  # noqa: E402
from src.classutp.progress import BufferedEmitter  # noqa: E402
from src.classutp.service import ScheduleService  # noqa: E402

UTP_USERNAME = os.getenv("UTP_USERNAME", "")
UTP_PASSWORD = os.getenv("UTP_PASSWORD", "")

_DAY_ORDER = {
    "Lunes": 0,
    "Martes": 1,
    "Miércoles": 2,
    "Jueves": 3,
    "Viernes": 4,
    "Sábado": 5,
    "Domingo": 6,
}


def _log(msg: str) -> None:
    """Write diagnostic messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Get the weekly Class UTP schedule as JSON or table.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Launch browser in headed mode (visible window).",
    )
    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument(
        "--table",
        action="store_true",
        help="Output a human-readable table of this week's events.",
    )
    output_group.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write the JSON result to this file instead of stdout.",
    )
    return parser.parse_args()


def _format_table(result: ExtractionResult) -> str:
    """Format events as a human-readable table.

    Columns: Day | Time | Kind | Course | Detail
    """
    if not result.events:
        return "(no events this week)"

    headers = ["Day", "Time", "Kind", "Course", "Detail"]

    rows = []
    for e in result.events:
        if e.kind == "class":
            detail = e.modality or "-"
        elif e.kind == "activity":
            detail = f"{e.activity_name or '-'} ({e.status or '-'})"
        else:
            detail = e.modality or "-"
        rows.append(
            [
                e.day or "-",
                getattr(e, "time", None) or "-",
                e.kind,
                e.course or "-",
                detail,
            ]
        )
    rows.sort(key=lambda r: (_DAY_ORDER.get(r[0], 99), r[1]))

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)
    row_lines = [
        " | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)) for row in rows
    ]

    title = result.student_name or "(unknown student)"
    week = " · ".join(
        part
        for part in (
            result.week_info.cycle,
            result.week_info.current_week,
            result.week_info.date_range,
        )
        if part
    )
    return "\n".join([title, week, "", header_line, separator, *row_lines])


async def main(args: argparse.Namespace) -> None:
    if not UTP_USERNAME or not UTP_PASSWORD:
        raise ScrapingError("UTP_USERNAME and UTP_PASSWORD must be set (env or .env)")

    config = get_config().model_copy(
        update={
            "browser_headless": not args.headed,
            "gate_mode": "single",
            "pool_prewarm": False,
        }
    )
    setup_logging(json_output=config.log_json, log_level=config.log_level)
    credentials = Credentials(username=UTP_USERNAME, password=SecretStr(UTP_PASSWORD))

    _log("scrape_schedule: starting")
    service = ScheduleService(config)
    await service.start()
    emitter = BufferedEmitter()
    try:
        result = await service.fetch_schedule(credentials, emitter)
    finally:
        await service.shutdown()
    _log(f"  Steps: {', '.join(p['step'] for t, p in emitter.messages if t == 'status')}")
    _log(f"  Extracted {len(result.events)} events, {len(result.courses)} courses")

    if args.table:
        print(_format_table(result))
    elif args.output:
        output_file = Path(args.output)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(
            json.dumps(result.to_payload(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        _log(f"  Wrote {output_file}")
    else:
        print(json.dumps(result.to_payload(), indent=2, ensure_ascii=False))

    _log("scrape_schedule: done")


if __name__ == "__main__":
    args = _parse_args()
    try:
        asyncio.run(main(args))
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
