"""Utility helpers to convert between ICS payloads and remote events."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar, Event, vCalAddress, vDDDLists, vRecur, vText

from ..models import EventStatus
from ..schemas import Attachment, Attendee, EventData, EventDateTime, RemoteEvent

logger = logging.getLogger(__name__)

PRODID = "-//wolfsync//offline calendar//EN"

_STATUS_FROM_ICS = {
    "CONFIRMED": EventStatus.CONFIRMED,
    "TENTATIVE": EventStatus.TENTATIVE,
    "CANCELLED": EventStatus.CANCELLED,
}
_PARTSTAT_FROM_ICS = {
    "NEEDS-ACTION": "needsAction",
    "ACCEPTED": "accepted",
    "DECLINED": "declined",
    "TENTATIVE": "tentative",
}
_PARTSTAT_TO_ICS = {value: key for key, value in _PARTSTAT_FROM_ICS.items()}
_RULE_PROPERTIES = ("RRULE", "EXRULE")
_DATE_LIST_PROPERTIES = ("RDATE", "EXDATE")


def parse_ics_payload(payload: Union[bytes, str]) -> List[RemoteEvent]:
    """Parse an ICS payload into remote events, one per VEVENT component.

    Modified occurrences of a series (components carrying RECURRENCE-ID) get
    an id derived from the series UID and the original start.
    """
    calendar = Calendar.from_ical(payload)
    events: List[RemoteEvent] = []
    for component in calendar.walk("VEVENT"):
        uid = component.get("UID")
        if not uid:
            logger.warning("Skipping VEVENT without UID")
            continue
        events.append(_event_from_component(str(uid), component))
    logger.debug("Parsed %s events from ICS", len(events))
    return events


def _event_from_component(uid: str, component: Event) -> RemoteEvent:
    start = _read_datetime(component, "DTSTART")
    end = _read_datetime(component, "DTEND")
    if end is None and start is not None:
        end = _derive_end(component, start)

    recurring_event_id = None
    original_start_time = _read_datetime(component, "RECURRENCE-ID")
    event_id = uid
    if original_start_time is not None:
        recurring_event_id = uid
        event_id = f"{uid}_{_compact(original_start_time)}"

    status_raw = str(component.get("STATUS") or "CONFIRMED").upper()
    created = component.get("CREATED")
    updated = component.get("LAST-MODIFIED")
    return RemoteEvent(
        id=event_id,
        summary=_text(component, "SUMMARY"),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start=start,
        end=end,
        recurrence=_read_recurrence(component),
        recurring_event_id=recurring_event_id,
        original_start_time=original_start_time,
        attendees=_read_attendees(component),
        attachments=_read_attachments(component),
        status=_STATUS_FROM_ICS.get(status_raw, EventStatus.CONFIRMED),
        created=created.dt if created else None,
        updated=updated.dt if updated else None,
    )


def _text(component: Event, name: str) -> Optional[str]:
    value = component.get(name)
    return str(value) if value else None


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _read_datetime(component: Event, name: str) -> Optional[EventDateTime]:
    prop = component.get(name)
    if prop is None:
        return None
    value = prop.dt
    if isinstance(value, datetime):
        tzid = prop.params.get("TZID") if hasattr(prop, "params") else None
        return EventDateTime(date_time=value, time_zone=str(tzid) if tzid else None)
    if isinstance(value, date):
        return EventDateTime(date_only=value)
    raise TypeError(f"Unsupported date value: {value!r}")


def _derive_end(component: Event, start: EventDateTime) -> EventDateTime:
    duration = component.get("DURATION")
    if start.date_only is not None:
        delta = duration.dt if duration else timedelta(days=1)
        return EventDateTime(date_only=start.date_only + delta)
    delta = duration.dt if duration else timedelta()
    return EventDateTime(date_time=start.date_time + delta, time_zone=start.time_zone)


def _compact(value: EventDateTime) -> str:
    if value.date_only is not None and value.date_time is None:
        return value.date_only.strftime("%Y%m%d")
    return value.instant().strftime("%Y%m%dT%H%M%SZ")


def _format_list_value(value: Union[date, datetime]) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.strftime("%Y%m%dT%H%M%S")
        return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%d")


def _read_recurrence(component: Event) -> List[str]:
    lines: List[str] = []
    for name in _RULE_PROPERTIES:
        for rule in _as_list(component.get(name)):
            lines.append(f"{name}:{rule.to_ical().decode('utf-8')}")
    for name in _DATE_LIST_PROPERTIES:
        for date_list in _as_list(component.get(name)):
            values = ",".join(_format_list_value(item.dt) for item in date_list.dts)
            lines.append(f"{name}:{values}")
    return lines


def _read_attendees(component: Event) -> List[Attendee]:
    organizer = component.get("ORGANIZER")
    organizer_email = _strip_mailto(str(organizer)) if organizer else None
    attendees: List[Attendee] = []
    for attendee in _as_list(component.get("ATTENDEE")):
        if not attendee:
            continue
        params = getattr(attendee, "params", {}) or {}
        email = _strip_mailto(str(attendee))
        partstat = str(params.get("PARTSTAT", "NEEDS-ACTION")).upper()
        cn = params.get("CN")
        attendees.append(
            Attendee(
                email=email,
                display_name=str(cn) if cn else None,
                response_status=_PARTSTAT_FROM_ICS.get(partstat, "needsAction"),
                organizer=organizer_email is not None and email.lower() == organizer_email.lower(),
            )
        )
    return attendees


def _read_attachments(component: Event) -> List[Attachment]:
    attachments: List[Attachment] = []
    for attach in _as_list(component.get("ATTACH")):
        url = str(attach)
        params = getattr(attach, "params", {}) or {}
        title = params.get("FILENAME") or url.rstrip("/").rsplit("/", 1)[-1]
        attachments.append(Attachment(title=str(title), file_url=url))
    return attachments


def _strip_mailto(value: str) -> str:
    return value[7:] if value.lower().startswith("mailto:") else value


def build_ical(uid: str, data: EventData, *, stamp: Optional[datetime] = None) -> Calendar:
    """Render event content as a VCALENDAR holding a single VEVENT."""
    stamp = stamp or datetime.now(timezone.utc)
    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", stamp)
    event.add("last-modified", stamp)
    if data.summary:
        event.add("summary", data.summary)
    if data.description:
        event.add("description", data.description)
    if data.location:
        event.add("location", data.location)
    if data.start is not None:
        event.add("dtstart", _ical_datetime(data.start))
    if data.end is not None:
        event.add("dtend", _ical_datetime(data.end))
    event.add("status", data.status.value.upper())
    for line in data.recurrence:
        _add_recurrence_line(event, line)

    for attendee in data.attendees:
        address = vCalAddress(f"mailto:{attendee.email}")
        if attendee.display_name:
            address.params["CN"] = vText(attendee.display_name)
        address.params["PARTSTAT"] = vText(_PARTSTAT_TO_ICS.get(attendee.response_status, "NEEDS-ACTION"))
        address.params["ROLE"] = vText("CHAIR" if attendee.organizer else "REQ-PARTICIPANT")
        event.add("attendee", address, encode=0)
        if attendee.organizer:
            event.add("organizer", vCalAddress(f"mailto:{attendee.email}"), encode=0)
    for attachment in data.attachments:
        event.add("attach", attachment.file_url, parameters={"FILENAME": attachment.title})

    calendar.add_component(event)
    return calendar


def _ical_datetime(value: EventDateTime) -> Union[date, datetime]:
    if value.date_time is None:
        return value.date_only
    moment = value.date_time
    zone = _zone(value.time_zone)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=zone or timezone.utc)
    if zone is not None:
        return moment.astimezone(zone)
    return moment


def _zone(name: Optional[str]):
    if not name or name.upper() == "UTC":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %s, writing the instant in UTC", name)
        return None


def _add_recurrence_line(event: Event, line: str) -> None:
    head, _, value = line.partition(":")
    name = head.split(";", 1)[0].upper()
    if not value:
        logger.warning("Ignoring malformed recurrence line %r", line)
        return
    if name in _RULE_PROPERTIES:
        event.add(name.lower(), vRecur.from_ical(value))
    elif name in _DATE_LIST_PROPERTIES:
        event.add(name.lower(), vDDDLists(vDDDLists.from_ical(value)), encode=0)
    else:
        logger.warning("Ignoring unsupported recurrence property %s", name)
