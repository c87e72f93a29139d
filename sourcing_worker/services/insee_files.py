from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from sourcing_worker.core.http import RateLimitedFetcher
from sourcing_worker.repositories.scraped_files import ScrapedFileLedger

logger = logging.getLogger(__name__)

INSEE_DECEASES_SOURCE = "insee-deceases"
_DECEASES_FILE_RE = re.compile(r"(deces|deceases|mortality|death).*\.(zip|csv|txt)$", re.IGNORECASE)
# "Deces_2024_M09.zip", "deces-2024-m09.txt", "deces-2024-09.zip"; yearly files carry no month.
_YEAR_MONTH_RE = re.compile(r"(\d{4})[-_]m?(\d{2})(?!\d)", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class InseeFile:
    file_name: str
    url: str
    year: int
    month: int


def parse_monthly_files(html: str, *, page_url: str, today: date | None = None) -> list[InseeFile]:
    """Monthly death files linked from the INSEE page, oldest first."""
    current_year = (today or date.today()).year
    soup = BeautifulSoup(html, "html.parser")
    files: dict[str, InseeFile] = {}
    for anchor in soup.find_all("a", href=True):
        url = urljoin(page_url, anchor["href"].strip())
        file_name = urlparse(url).path.rsplit("/", 1)[-1]
        if not _DECEASES_FILE_RE.search(file_name):
            continue
        match = _YEAR_MONTH_RE.search(file_name)
        if match is None:
            continue
        year, month = int(match.group(1)), int(match.group(2))
        if not 2000 <= year <= current_year + 1 or not 1 <= month <= 12:
            logger.warning("insee file name out of range file_name=%s", file_name)
            continue
        files.setdefault(file_name, InseeFile(file_name=file_name, url=url, year=year, month=month))
    return sorted(files.values(), key=lambda item: (item.year, item.month, item.file_name))


def file_name_from_source(source_file: str) -> str:
    return urlparse(source_file).path.rsplit("/", 1)[-1]


class InseeFileDiscovery:
    """Finds monthly INSEE death files not yet recorded in the scraped-files ledger."""

    def __init__(self, *, fetcher: RateLimitedFetcher, page_url: str, ledger: ScrapedFileLedger) -> None:
        self.fetcher = fetcher
        self.page_url = page_url
        self.ledger = ledger

    async def new_files(self) -> list[InseeFile]:
        html = await self.fetcher.get_text(self.page_url)
        available = parse_monthly_files(html, page_url=self.page_url)
        known = await self.ledger.known_files(INSEE_DECEASES_SOURCE)
        fresh = [item for item in available if item.file_name not in known]
        logger.info(
            "insee files discovered page=%s monthly=%s already_scraped=%s new=%s",
            self.page_url,
            len(available),
            len(available) - len(fresh),
            len(fresh),
        )
        return fresh
