"""Jurisdiction rules and lead-local time resolution.

Calling rules are data, not code: a versioned ``RuleSet`` maps a region
code (US state) to its restrictions and can be swapped at runtime or
loaded from YAML when regulations change.

rules.yaml:
    version: "2025-06"
    default: {sunday_calling: true, start_hour: 8, end_hour: 21}
    rules:
      CA: {sunday_calling: false, max_calls_per_day: 3, start_hour: 8, end_hour: 20}
"""
from __future__ import annotations

from datetime import datetime, time, timedelta
from pathlib import Path
from typing import Any

import phonenumbers
import pytz
import yaml
from pydantic import BaseModel, Field

from campaign_dialer.log import get_logger

log = get_logger(__name__)


class JurisdictionRule(BaseModel):
    """Restrictions for one region."""

    sunday_calling: bool = True
    max_calls_per_day: int | None = None
    start_hour: int = Field(default=8, ge=0, le=24)
    end_hour: int = Field(default=21, ge=0, le=24)
    special_restrictions: list[str] = Field(default_factory=list)


class RuleSet(BaseModel):
    """Versioned jurisdiction table."""

    version: str
    rules: dict[str, JurisdictionRule] = Field(default_factory=dict)
    default: JurisdictionRule = Field(default_factory=JurisdictionRule)

    def rule_for(self, region: str | None) -> JurisdictionRule:
        if region and region.upper() in self.rules:
            return self.rules[region.upper()]
        return self.default

    def has_rule(self, region: str | None) -> bool:
        return bool(region) and region.upper() in self.rules


DEFAULT_RULE_SET = RuleSet(
    version="builtin-2024.1",
    rules={
        "CA": JurisdictionRule(
            sunday_calling=False,
            max_calls_per_day=3,
            start_hour=8,
            end_hour=20,
            special_restrictions=["no_robocalls", "consent_required"],
        ),
        "NY": JurisdictionRule(
            sunday_calling=False,
            max_calls_per_day=3,
            start_hour=8,
            end_hour=21,
            special_restrictions=["written_consent"],
        ),
        "TX": JurisdictionRule(
            sunday_calling=True,
            max_calls_per_day=5,
            start_hour=8,
            end_hour=21,
        ),
        "FL": JurisdictionRule(
            sunday_calling=True,
            max_calls_per_day=3,
            start_hour=8,
            end_hour=20,
            special_restrictions=["no_prerecorded"],
        ),
    },
    default=JurisdictionRule(sunday_calling=True, start_hour=8, end_hour=21),
)

# Advisory text per special restriction
RESTRICTION_RECOMMENDATIONS: dict[str, str] = {
    "no_robocalls": "Ensure human-initiated calls only",
    "consent_required": "Obtain written consent before calling",
    "no_prerecorded": "Use live agents only, no prerecorded messages",
    "written_consent": "Obtain written consent documentation",
}


def load_rule_set(path: str | Path) -> RuleSet:
    """Load a jurisdiction table from YAML.

    Raises:
        FileNotFoundError: path does not exist
        pydantic.ValidationError: file does not describe a RuleSet
    """
    with open(path, encoding="utf-8") as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}
    rule_set = RuleSet.model_validate(data)
    log.info("Jurisdiction rules loaded", path=str(path), version=rule_set.version)
    return rule_set


# =============================================================================
# Region and timezone inference
# =============================================================================

# US area code -> state
AREA_CODE_STATES: dict[str, str] = {
    "201": "NJ", "202": "DC", "203": "CT", "205": "AL", "206": "WA",
    "207": "ME", "208": "ID", "209": "CA", "210": "TX", "212": "NY",
    "213": "CA", "214": "TX", "215": "PA", "216": "OH", "217": "IL",
    "218": "MN", "219": "IN", "224": "IL", "225": "LA", "228": "MS",
    "229": "GA", "231": "MI", "234": "OH", "239": "FL", "240": "MD",
    "248": "MI", "251": "AL", "252": "NC", "253": "WA", "254": "TX",
    "256": "AL", "260": "IN", "262": "WI", "267": "PA", "269": "MI",
    "270": "KY", "281": "TX", "301": "MD", "302": "DE", "303": "CO",
    "304": "WV", "305": "FL", "307": "WY", "308": "NE", "309": "IL",
    "310": "CA", "312": "IL", "313": "MI", "314": "MO", "315": "NY",
    "316": "KS", "317": "IN", "318": "LA", "319": "IA", "320": "MN",
    "321": "FL", "323": "CA", "330": "OH", "334": "AL", "336": "NC",
    "337": "LA", "347": "NY", "352": "FL", "360": "WA", "361": "TX",
    "386": "FL", "401": "RI", "402": "NE", "404": "GA", "405": "OK",
    "406": "MT", "407": "FL", "408": "CA", "409": "TX", "410": "MD",
    "412": "PA", "413": "MA", "414": "WI", "415": "CA", "417": "MO",
    "419": "OH", "423": "TN", "425": "WA", "430": "TX", "432": "TX",
    "434": "VA", "435": "UT", "440": "OH", "443": "MD", "469": "TX",
    "478": "GA", "479": "AR", "480": "AZ", "501": "AR", "502": "KY",
    "503": "OR", "504": "LA", "505": "NM", "507": "MN", "508": "MA",
    "509": "WA", "510": "CA", "512": "TX", "513": "OH", "515": "IA",
    "516": "NY", "517": "MI", "518": "NY", "520": "AZ", "530": "CA",
    "540": "VA", "541": "OR", "559": "CA", "561": "FL", "562": "CA",
    "563": "IA", "570": "PA", "571": "VA", "573": "MO", "580": "OK",
    "585": "NY", "586": "MI", "601": "MS", "602": "AZ", "603": "NH",
    "605": "SD", "606": "KY", "607": "NY", "608": "WI", "609": "NJ",
    "610": "PA", "612": "MN", "614": "OH", "615": "TN", "616": "MI",
    "617": "MA", "618": "IL", "619": "CA", "620": "KS", "623": "AZ",
    "626": "CA", "630": "IL", "631": "NY", "636": "MO", "646": "NY",
    "650": "CA", "651": "MN", "661": "CA", "662": "MS", "678": "GA",
    "682": "TX", "701": "ND", "702": "NV", "703": "VA", "704": "NC",
    "706": "GA", "707": "CA", "708": "IL", "712": "IA", "713": "TX",
    "714": "CA", "715": "WI", "716": "NY", "717": "PA", "718": "NY",
    "719": "CO", "720": "CO", "724": "PA", "727": "FL", "731": "TN",
    "732": "NJ", "734": "MI", "740": "OH", "754": "FL", "757": "VA",
    "760": "CA", "763": "MN", "765": "IN", "770": "GA", "772": "FL",
    "773": "IL", "774": "MA", "775": "NV", "781": "MA", "785": "KS",
    "786": "FL", "801": "UT", "802": "VT", "803": "SC", "804": "VA",
    "805": "CA", "806": "TX", "808": "HI", "810": "MI", "812": "IN",
    "813": "FL", "814": "PA", "815": "IL", "816": "MO", "817": "TX",
    "818": "CA", "828": "NC", "830": "TX", "831": "CA", "832": "TX",
    "843": "SC", "845": "NY", "847": "IL", "848": "NJ", "850": "FL",
    "856": "NJ", "857": "MA", "858": "CA", "859": "KY", "860": "CT",
    "862": "NJ", "863": "FL", "864": "SC", "865": "TN", "870": "AR",
    "901": "TN", "903": "TX", "904": "FL", "907": "AK", "908": "NJ",
    "909": "CA", "910": "NC", "912": "GA", "913": "KS", "914": "NY",
    "915": "TX", "916": "CA", "917": "NY", "918": "OK", "919": "NC",
    "920": "WI", "925": "CA", "928": "AZ", "929": "NY", "931": "TN",
    "936": "TX", "937": "OH", "940": "TX", "941": "FL", "949": "CA",
    "951": "CA", "952": "MN", "954": "FL", "956": "TX", "970": "CO",
    "971": "OR", "972": "TX", "973": "NJ", "978": "MA", "979": "TX",
    "980": "NC", "985": "LA",
}

# Predominant zone per state (split states use their most populous zone)
STATE_TIMEZONES: dict[str, str] = {
    "AK": "America/Anchorage", "AL": "America/Chicago", "AR": "America/Chicago",
    "AZ": "America/Phoenix", "CA": "America/Los_Angeles", "CO": "America/Denver",
    "CT": "America/New_York", "DC": "America/New_York", "DE": "America/New_York",
    "FL": "America/New_York", "GA": "America/New_York", "HI": "Pacific/Honolulu",
    "IA": "America/Chicago", "ID": "America/Boise", "IL": "America/Chicago",
    "IN": "America/Indiana/Indianapolis", "KS": "America/Chicago",
    "KY": "America/New_York", "LA": "America/Chicago", "MA": "America/New_York",
    "MD": "America/New_York", "ME": "America/New_York", "MI": "America/Detroit",
    "MN": "America/Chicago", "MO": "America/Chicago", "MS": "America/Chicago",
    "MT": "America/Denver", "NC": "America/New_York", "ND": "America/Chicago",
    "NE": "America/Chicago", "NH": "America/New_York", "NJ": "America/New_York",
    "NM": "America/Denver", "NV": "America/Los_Angeles", "NY": "America/New_York",
    "OH": "America/New_York", "OK": "America/Chicago", "OR": "America/Los_Angeles",
    "PA": "America/New_York", "RI": "America/New_York", "SC": "America/New_York",
    "SD": "America/Chicago", "TN": "America/Chicago", "TX": "America/Chicago",
    "UT": "America/Denver", "VA": "America/New_York", "VT": "America/New_York",
    "WA": "America/Los_Angeles", "WI": "America/Chicago", "WV": "America/New_York",
    "WY": "America/Denver",
}

COUNTRY_TIMEZONES: dict[str, str] = {
    "US": "America/New_York",
    "CA": "America/Toronto",
    "GB": "Europe/London",
    "AU": "Australia/Sydney",
    "DE": "Europe/Berlin",
    "FR": "Europe/Paris",
    "JP": "Asia/Tokyo",
    "IN": "Asia/Kolkata",
    "BR": "America/Sao_Paulo",
    "MX": "America/Mexico_City",
}

DEFAULT_TIMEZONE = "America/New_York"


def normalize_phone(phone: str, default_region: str = "US") -> str:
    """E.164 form of a phone number; the input unchanged if unparseable."""
    try:
        parsed = phonenumbers.parse(phone, default_region)
    except phonenumbers.NumberParseException:
        return phone
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def infer_region(phone: str) -> tuple[str | None, str | None]:
    """Country and (for US numbers) state of a phone number.

    Returns:
        (ISO country code, US state code) with None where unknown
    """
    try:
        parsed = phonenumbers.parse(phone, "US")
    except phonenumbers.NumberParseException:
        return None, None

    country = phonenumbers.region_code_for_number(parsed)
    if not country:
        # Unassigned NANP ranges still carry a usable area code
        country = "US" if parsed.country_code == 1 else None

    state = None
    if parsed.country_code == 1:
        state = AREA_CODE_STATES.get(str(parsed.national_number)[:3])
    return country, state


def infer_timezone(phone: str, explicit: str | None = None) -> str:
    """Resolve a lead's timezone: explicit zone, then state, then country."""
    if explicit:
        try:
            pytz.timezone(explicit)
            return explicit
        except pytz.exceptions.UnknownTimeZoneError:
            log.warning("Unknown lead timezone, inferring from number", timezone=explicit)

    country, state = infer_region(phone)
    if state and state in STATE_TIMEZONES:
        return STATE_TIMEZONES[state]
    if country and country in COUNTRY_TIMEZONES:
        return COUNTRY_TIMEZONES[country]
    return DEFAULT_TIMEZONE


# =============================================================================
# Calling window arithmetic
# =============================================================================


def effective_window(rule: JurisdictionRule, floor_start: int, floor_end: int) -> tuple[int, int]:
    """Intersection of the legal floor and the jurisdiction's own hours."""
    return max(floor_start, rule.start_hour), min(floor_end, rule.end_hour)


def _local_start(tz: pytz.BaseTzInfo, day: datetime, start_hour: int) -> datetime:
    return tz.localize(datetime.combine(day.date(), time(hour=start_hour)))


def next_allowed_time(
    now: datetime,
    tz_name: str,
    start_hour: int,
    end_hour: int,
    *,
    sunday_calling: bool = True,
) -> datetime | None:
    """When calling next becomes permitted, or None if permitted now.

    The window is ``[start_hour, end_hour)`` in the given zone. Too early
    moves to today's start; too late, or a restricted Sunday, moves to the
    start of the next permitted day.

    Args:
        now: Aware current time
        tz_name: IANA zone of the callee
        start_hour: First permitted hour
        end_hour: First forbidden hour
        sunday_calling: Whether Sunday is a permitted day

    Returns:
        Aware UTC datetime, or None when calling is allowed now
    """
    try:
        tz = pytz.timezone(tz_name)
    except pytz.exceptions.UnknownTimeZoneError:
        tz = pytz.timezone(DEFAULT_TIMEZONE)

    local = now.astimezone(tz)
    is_restricted_day = local.weekday() == 6 and not sunday_calling

    if not is_restricted_day and start_hour <= local.hour < end_hour:
        return None

    if not is_restricted_day and local.hour < start_hour:
        return _local_start(tz, local, start_hour).astimezone(pytz.utc)

    day = local + timedelta(days=1)
    while day.weekday() == 6 and not sunday_calling:
        day += timedelta(days=1)
    return _local_start(tz, day, start_hour).astimezone(pytz.utc)


def is_within_hours(now: datetime, tz_name: str, start_hour: int, end_hour: int) -> bool:
    """Whether ``now`` falls inside ``[start_hour, end_hour)`` in the zone."""
    return next_allowed_time(now, tz_name, start_hour, end_hour) is None
