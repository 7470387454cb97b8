import asyncio
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import gspread
from google.oauth2.service_account import Credentials
from gspread_dataframe import get_as_dataframe

from transform import CHANNELS, DerivedDataset, encode

SCOPES = ["https://www.googleapis.com/auth/spreadsheets", "https://www.googleapis.com/auth/drive"]
HEADERS = ["key", "value", "updated_at"]


class StateSink(Protocol):
    async def set_state(self, key: str, value: Any) -> None:
        ...


class MemoryStateSink:
    """Keeps the latest value per key and the order writes arrived in."""

    def __init__(self):
        self.states: Dict[str, Any] = {}
        self.writes: List[Tuple[str, Any]] = []

    async def set_state(self, key, value):
        self.states[key] = value
        self.writes.append((key, value))


class SheetStateSink:
    """
    Google Sheets backed state store: one `key | value | updated_at` row per key.

    Values are stored JSON encoded so booleans and numbers survive the sheet.
    """

    def __init__(self, worksheet, logger: Optional[logging.Logger] = None):
        self.worksheet = worksheet
        self.logger = logger or logging.getLogger(__name__)
        self.rows: Dict[str, int] = {}
        self.last_row = 1
        self._index_rows()

    @classmethod
    def open(cls, sheet_name, logger=None):
        if "GCP_SERVICE_ACCOUNT" not in os.environ:
            raise RuntimeError("Missing GCP_SERVICE_ACCOUNT secret.")
        info = json.loads(os.environ["GCP_SERVICE_ACCOUNT"])
        creds = Credentials.from_service_account_info(info, scopes=SCOPES)
        client = gspread.authorize(creds)
        try:
            sh = client.open(sheet_name)
        except gspread.SpreadsheetNotFound:
            sh = client.create(sheet_name)
            sh.share(info["client_email"], perm_type="user", role="owner")
        return cls(sh.sheet1, logger=logger)

    def _index_rows(self):
        frame = get_as_dataframe(self.worksheet, usecols=[0, 1, 2], skip_blank_lines=False)
        existing = frame.dropna(how="all")
        if existing.empty or list(existing.columns[:1]) != HEADERS[:1]:
            self.worksheet.update("A1", [HEADERS])
            return
        # frame index 0 is sheet row 2; dropna keeps the index, blank rows included
        self.last_row = len(frame) + 1
        for idx, key in existing["key"].items():
            if isinstance(key, str) and key:
                self.rows[key] = int(idx) + 2
        self.logger.debug(f"indexed {len(self.rows)} state rows")

    def _appended_row(self, response):
        updated = ""
        if isinstance(response, dict):
            updated = (response.get("updates") or {}).get("updatedRange", "")
        match = re.search(r"![A-Z]+(\d+)", updated)
        if match:
            return int(match.group(1))
        return self.last_row + 1

    def _write(self, key, value):
        row = [key, json.dumps(value), datetime.now(timezone.utc).isoformat(timespec="seconds")]
        if key in self.rows:
            self.worksheet.update(f"A{self.rows[key]}", [row])
            return
        response = self.worksheet.append_rows([row])
        self.rows[key] = self._appended_row(response)
        self.last_row = max(self.last_row, self.rows[key])

    async def set_state(self, key, value):
        # gspread blocks on HTTP; keep it off the event loop
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, key, value)


async def write_caption(sink: StateSink, caption: str) -> None:
    for channel in CHANNELS.values():
        await sink.set_state(f"{channel}.labeltext", caption)


async def write_dataset(sink: StateSink, channel: str, dataset: DerivedDataset) -> None:
    """
    LOAD LAYER:
    Writes one channel's values key by key. Not transactional: a failing write
    leaves the earlier keys in place.
    """
    await sink.set_state(f"{channel}.isRainingNow", dataset.is_raining_now)
    await sink.set_state(f"{channel}.timestamp", dataset.timestamp)
    await sink.set_state(f"{channel}.actualRain", dataset.actual_rain)
    await sink.set_state(f"{channel}.chartRain", encode(dataset.chart_rain))
    await sink.set_state(f"{channel}.echartRain", encode(dataset.echart_rain))
    await sink.set_state(f"{channel}.raindata", encode(dataset.rain_data))
    await sink.set_state(f"{channel}.rainStartsAt", dataset.rain_starts_at)
    await sink.set_state(f"{channel}.startRain", dataset.start_rain_amount)
