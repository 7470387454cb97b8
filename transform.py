import json
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pandas as pd
import pytz

SERIES_TOKEN = "series"
SERIES_END = "}}},"
KEY_RENAMES = (('"2h"', '"data2h"'), ('"24h"', '"data24h"'))

# raw series key -> output channel
CHANNELS = {"data2h": "data_5min", "data24h": "data_1h"}

# two-letter day names, Sunday first
WEEKDAYS = {
    "en": ["Su", "Mo", "Tu", "We", "Th", "Fr", "Sa"],
    "de": ["So", "Mo", "Di", "Mi", "Do", "Fr", "Sa"],
}


class SeriesNotFound(Exception):
    """No usable series data in the page script."""


class ParseError(Exception):
    """The extracted series text is not valid data."""


@dataclass
class Sample:
    time: str
    precipitation_rate: Any
    cumulative_amount: Optional[Any] = None


@dataclass
class DerivedDataset:
    is_raining_now: bool
    timestamp: str
    actual_rain: Any
    chart_rain: List[Dict[str, str]] = field(default_factory=list)
    echart_rain: List[Dict[str, Any]] = field(default_factory=list)
    rain_data: List[Any] = field(default_factory=list)
    rain_starts_at: str = "-1"
    start_rain_amount: Any = 0


def _match_brace(text, start):
    """Index of the brace closing the one at `start`, skipping string literals."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def find_series_literal(lines):
    """
    Locate the object literal assigned to the chart's `series` key.

    Only a line holding both the `series` token and the `}}},` closing marker
    qualifies. Raises SeriesNotFound when no such line exists.
    """
    for line in lines or []:
        if SERIES_TOKEN not in line:
            continue
        tail = line[line.index(SERIES_TOKEN):]
        if SERIES_END not in tail:
            continue
        start = tail.find("{")
        end = _match_brace(tail, start) if start >= 0 else -1
        if end < 0:
            raise ParseError("unbalanced series literal")
        return tail[start:end + 1]
    raise SeriesNotFound("no series data found in page script")


def parse_series(lines) -> Dict[str, List[Sample]]:
    """
    Parse the chart series out of the marker script lines.

    Returns:
        {"data2h": [Sample, ...], "data24h": [Sample, ...]}
    """
    text = find_series_literal(lines)
    for old, new in KEY_RENAMES:
        text = text.replace(old, new, 1)

    try:
        raw = json.loads(text)
        series = {key: raw[key]["data"] for key in CHANNELS}
    except (ValueError, KeyError, TypeError) as e:
        raise ParseError(f"cannot parse series data: {e}") from e

    parsed = {}
    for key, items in series.items():
        if not isinstance(items, list):
            raise ParseError(f"{key}.data is not a list")
        try:
            parsed[key] = [
                Sample(item["time"], to_number(item["precipitationrate"]), to_number(item.get("c")))
                for item in items
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ParseError(f"malformed sample in {key}: {e}") from e
    return parsed


def to_timestamp(value):
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return stamp


def to_number(value):
    """Integral floats become ints so `1.0` reads as `1` everywhere it is written."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def format_rate(rate):
    """Number to text the way a browser's Number#toString renders it."""
    rate = to_number(rate)
    if not isinstance(rate, float):
        return str(rate)
    text = repr(rate)
    if "e" not in text:
        return text
    if 1e-6 <= abs(rate) < 1e21:
        return format(Decimal(text), "f")
    mantissa, exponent = text.split("e")
    exponent = int(exponent)
    return f"{mantissa}e{'+' if exponent > 0 else '-'}{abs(exponent)}"


def format_label(stamp, channel, language="en"):
    clock = stamp.strftime("%H:%M")
    if channel != "data_1h":
        return clock
    day = WEEKDAYS.get(language, WEEKDAYS["en"])[(stamp.dayofweek + 1) % 7]
    return f"{day} {clock}"


def build_dataset(samples, channel, tz="UTC", language="en") -> DerivedDataset:
    """
    Derive the chart and summary values for one resolution channel.

    The first sample with a positive rate anchors rainStartsAt and
    startRainAmount; later rainy samples never move it.
    """
    if not samples:
        raise SeriesNotFound(f"no samples for {channel}")

    zone = pytz.timezone(tz)
    first = samples[0]
    dataset = DerivedDataset(
        is_raining_now=first.precipitation_rate > 0,
        timestamp=first.time,
        actual_rain=first.precipitation_rate,
    )

    for sample in samples:
        stamp = to_timestamp(sample.time)
        local = stamp.tz_convert(zone)
        rate = sample.precipitation_rate

        dataset.rain_data.append(rate)
        dataset.chart_rain.append({"label": format_label(local, channel, language), "value": format_rate(rate)})
        dataset.echart_rain.append({"ts": stamp.value // 10**6, "val": rate})

        if dataset.rain_starts_at == "-1" and rate > 0:
            dataset.rain_starts_at = local.to_pydatetime().isoformat(timespec="seconds")
            if sample.cumulative_amount is not None:
                dataset.start_rain_amount = sample.cumulative_amount

    return dataset


def process_lines(lines, tz="UTC", language="en") -> Dict[str, DerivedDataset]:
    """Parse the marker script lines and build both channel datasets."""
    series = parse_series(lines)
    return {
        channel: build_dataset(series[key], channel, tz, language)
        for key, channel in CHANNELS.items()
    }


def encode(value):
    return json.dumps(value, separators=(",", ":"))


def clean_caption(text):
    """Collapse the whitespace a rendered paragraph carries."""
    return re.sub(r"\s+", " ", text or "").strip()
