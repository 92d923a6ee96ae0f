"""Cursor-on-Target encoding and parsing for HUD position reports."""

from __future__ import annotations

import logging
import math
import uuid
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from hudctl.core.errors import CotParseError, MessageEncodeError
from hudctl.core.model import TelemetryMessage

COT_TYPE = "a-u-G"
COT_HOW = "h-g-i-g-o"
COT_VERSION = "2.0"
UNKNOWN_ERROR = 9999999.0
STALE_AFTER = timedelta(hours=1)
DEFAULT_CALLSIGN = "hudctl"
LOGGER = logging.getLogger(__name__)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a `Z` suffix."""
    utc = moment.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def format_decimal(value: float) -> str:
    """Fixed-point rendering that keeps every digit of the shortest float repr."""
    number = float(value)
    if not math.isfinite(number):
        raise MessageEncodeError(f"Cannot encode non-finite value {value!r}")
    text = repr(number)
    if "e" in text or "E" in text:
        text = format(Decimal(text), "f")
    if "." not in text:
        text += ".0"
    return text


def build_message(
    lat: float,
    lon: float,
    alt: float,
    heading: float,
    callsign: str | None,
    *,
    now: Callable[[], datetime] | None = None,
    uid_factory: Callable[[], str] | None = None,
) -> TelemetryMessage:
    issued = (now or _utc_now)()
    issued = issued.replace(microsecond=(issued.microsecond // 1000) * 1000)
    return TelemetryMessage(
        uid=(uid_factory or _random_uid)(),
        type=COT_TYPE,
        how=COT_HOW,
        lat=float(lat),
        lon=float(lon),
        hae=float(alt),
        ce=UNKNOWN_ERROR,
        le=UNKNOWN_ERROR,
        heading=float(heading),
        callsign=callsign or DEFAULT_CALLSIGN,
        time=issued,
        stale=issued + STALE_AFTER,
    )


def encode_message(message: TelemetryMessage) -> str:
    time_text = format_timestamp(message.time)
    event = ET.Element(
        "event",
        {
            "version": COT_VERSION,
            "uid": message.uid,
            "type": message.type,
            "time": time_text,
            "start": format_timestamp(message.start),
            "stale": format_timestamp(message.stale),
            "how": message.how,
            "access": "Undefined",
        },
    )
    ET.SubElement(
        event,
        "point",
        {
            "lat": format_decimal(message.lat),
            "lon": format_decimal(message.lon),
            "hae": format_decimal(message.hae),
            "ce": format_decimal(message.ce),
            "le": format_decimal(message.le),
        },
    )
    detail = ET.SubElement(event, "detail")
    ET.SubElement(detail, "contact", {"callsign": message.callsign})
    ET.SubElement(detail, "status", {"readiness": "true"})
    ET.SubElement(
        detail,
        "track",
        {"course": format_decimal(message.heading), "speed": "0.0"},
    )
    return "<?xml version='1.0' encoding='UTF-8'?>\n" + ET.tostring(event, encoding="unicode")


def encode_position(
    lat: float,
    lon: float,
    alt: float,
    heading: float,
    callsign: str | None,
    *,
    now: Callable[[], datetime] | None = None,
    uid_factory: Callable[[], str] | None = None,
) -> str:
    """Build and encode a position report in one step."""
    message = build_message(lat, lon, alt, heading, callsign, now=now, uid_factory=uid_factory)
    return encode_message(message)


@dataclass(frozen=True)
class CotData:
    uid: str
    type: str
    how: str
    time: str
    stale: str
    callsign: str
    lat: float = 0.0
    lon: float = 0.0
    hae: float = 0.0
    ce: float = UNKNOWN_ERROR
    le: float = UNKNOWN_ERROR
    course: float = 0.0

    @property
    def is_valid(self) -> bool:
        return bool(self.uid) and bool(self.callsign)


def parse_cot(text: str) -> CotData:
    if not text or not text.strip():
        raise CotParseError("Empty CoT document")

    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise CotParseError(f"Invalid CoT XML: {exc}") from exc

    if root.tag != "event":
        raise CotParseError(f"Not a CoT event: root element is '{root.tag}'")

    point = root.find("point")
    coords: dict[str, float] = {}
    if point is not None:
        coords = {
            "lat": _parse_float(point.get("lat"), 0.0),
            "lon": _parse_float(point.get("lon"), 0.0),
            "hae": _parse_float(point.get("hae"), 0.0),
            "ce": _parse_float(point.get("ce"), UNKNOWN_ERROR),
            "le": _parse_float(point.get("le"), UNKNOWN_ERROR),
        }

    callsign = ""
    course = 0.0
    detail = root.find("detail")
    if detail is not None:
        contact = detail.find("contact")
        if contact is not None:
            callsign = contact.get("callsign", "")
        track = detail.find("track")
        if track is not None:
            course = _parse_float(track.get("course"), 0.0)

    uid = root.get("uid", "")
    data = CotData(
        uid=uid,
        type=root.get("type", ""),
        how=root.get("how", ""),
        time=root.get("time", ""),
        stale=root.get("stale", ""),
        callsign=callsign or uid,
        course=course,
        **coords,
    )
    LOGGER.debug("Parsed CoT %s (%s) at %s, %s", data.callsign, data.type, data.lat, data.lon)
    return data


def affiliation(cot_type: str | None) -> str:
    if not cot_type:
        return "PENDING"
    if cot_type.startswith("a-f"):
        return "FRIENDLY"
    if cot_type.startswith("a-h"):
        return "HOSTILE"
    if cot_type.startswith("a-n"):
        return "NEUTRAL"
    if cot_type.startswith("a-u"):
        return "UNKNOWN"
    return "PENDING"


def format_for_hud(data: CotData | None) -> str:
    """Compact multi-line summary used for HUD previews."""
    if data is None or not data.is_valid:
        return "NO DATA"
    return (
        f"CALLSIGN: {data.callsign}\n"
        f"POS: {data.lat:.6f}, {data.lon:.6f}\n"
        f"ALT: {data.hae:.1f}m\n"
        f"AFFIL: {affiliation(data.type)}"
    )


def _parse_float(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _random_uid() -> str:
    return str(uuid.uuid4())
