"""
Access-log line parsing.

Two wire formats are accepted:
  old  positional fields separated by \\x1c, starting with the date; field
       meaning is chosen by the version tag in column 32
  new  url-encoded name=value pairs separated by & or ;

parse_line() returns either an AccessEvent or the skip reason under which
the line is counted.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from urllib.parse import unquote_plus

FIELD_SEPARATOR = "\x1c"

OLD_FORMAT = "old_format"
NEW_FORMAT = "new_format"

VERSIONS = {
    "version=2": [
        "date", "time", "ip_address", None, "service", "url", None,
        "iop_session_id", "username", "page_type", "issn", "volnum", "issnum",
        "artnum", "filename", "http_status", None, None, "license_id", None,
        "referrer", "options", "user_agent", "time_start", "time_trans",
        "time_access", None, "time_content", "identity_id_primary", "userid",
        "collection_id", None, "version", "request_id", "identity_ids",
        "ext_auth_service", "ext_auth_id", None, "ics_session_id", "no_count",
    ],
}
VERSION_COLUMN = 32

OLD_LINE_RE = re.compile(r"\A\d{4}-\d\d-\d\d" + FIELD_SEPARATOR)
NEW_LINE_RE = re.compile(r"\A\w+=[^=]*[&;]")
BAD_ESCAPE_RE = re.compile(r"%(?![a-zA-Z0-9]{2})")
DATE_RE = re.compile(r"\A\d{4}-\d\d-\d\d\Z")
TIME_RE = re.compile(r"\A\d\d:\d\d:\d\d\Z")
IP_RE = re.compile(r"\A\d+(?:\.\d+){3}\Z")
ICS_SESSION_RE = re.compile(r"\A\d{8}-\w+\Z")
NON_ASCII_RE = re.compile(r"[^\x00-\x7f]")

LOCAL_ADDRESS_RE = re.compile(
    r"""\A(?:
        193\.(?:61\.87|128\.223|131\.119)\.\d+
      | 194\.200\.94\.\d+
      | 172\.1[6-9]\.\d+\.\d+ | 172\.2\d\.\d+\.\d+ | 172\.3[01]\.\d+\.\d+
      | 127\.[\d.]+
      | 10\.[\d.]+
    )\Z""",
    re.VERBOSE,
)

EJ_SERVICES = frozenset(
    ["EJ", "Select", "Sold", "Stacks", "Stacks::Data", "Info", "Librarians"]
)
FULLTEXT_EXT_RE = re.compile(r"\.(\w+)(?:\.(?:gz|bz|bz2|Z))?\Z", re.IGNORECASE)
TRAILING_QUERY_RE = re.compile(r"[?&;].*", re.DOTALL)
PAGE_TYPE_RE = re.compile(r"\A([\w\-]+)")


@dataclass
class AccessEvent:
    """One log line: the raw fields plus everything resolved for it so far."""

    fields: Dict[str, Any]
    format: str
    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.values:
            return self.values[name]
        return self.fields.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self.values[name] = value

    @property
    def date(self) -> str:
        return self.fields["date"]

    @property
    def timestamp(self) -> str:
        return f"{self.fields['date']} {self.fields['time']}"


def _parse_old(line: str) -> Union[Dict[str, Any], str]:
    cols = [c if c != "" else None for c in line.split(FIELD_SEPARATOR)]
    version = cols[VERSION_COLUMN] if len(cols) > VERSION_COLUMN else None
    if not version:
        return "invalid_no_version"
    names = VERSIONS.get(version)
    if names is None:
        return "invalid_bad_version"
    if len(cols) < len(names):
        return "invalid_short_line"
    fields = {name: value for name, value in zip(names, cols) if name}

    options = {}
    for pair in (fields.get("options") or "").split("&"):
        if pair:
            key, _, value = pair.partition("=")
            options[key] = value
    fields["alert_profile_id"] = (
        fields.get("alert_profile_id") or options.get("profile") or options.get("alert")
    )
    fields["ref_target"] = fields.get("ref_target") or options.get("target")
    fields["rss_type"] = fields.get("rss_type") or options.get("rss")
    return fields


def _parse_new(line: str) -> Union[Dict[str, Any], str]:
    if BAD_ESCAPE_RE.search(line):
        return "invalid_encoding"
    fields = {}
    for pair in re.split(r"[&;]", line):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        value = unquote_plus(value)
        if value != "":
            fields[unquote_plus(key)] = value
    if not (
        DATE_RE.match(fields.get("date") or "") and TIME_RE.match(fields.get("time") or "")
    ):
        return "invalid_bad_time"
    return fields


def validation_error(fields: Dict[str, Any]) -> Optional[str]:
    page_type = fields.get("page_type")
    if not page_type:
        return "invalid_page_type_missing"
    if not page_type.strip():
        return "invalid_page_type_space"
    if NON_ASCII_RE.search(page_type):
        return "invalid_page_type_not_ascii"
    if not IP_RE.match(fields.get("ip_address") or "0.0.0.0"):
        return "invalid_ip_address"
    if len(fields.get("iop_session_id") or "") not in (0, 22, 36):
        return "invalid_ics_session_id_length"
    if not ICS_SESSION_RE.match(fields.get("ics_session_id") or "20070101-x"):
        return "invalid_ics_session_id_format"
    if not fields.get("service"):
        return "invalid_missing_service"
    return None


def service_generic(service: str) -> str:
    if service == "IOPscience":
        return "IOPscience"
    if service in EJ_SERVICES:
        return "EJ"
    return "unknown"


def expand_page_type(fields: Dict[str, Any]) -> None:
    """
    Set page_type_exp: full-text article hits on the EJ services are split by
    file type (article/pdf, article/html); other EJ page types lose any
    trailing query junk and page_type is cut back to its leading word.
    """
    page_type_exp = fields["page_type"]
    if fields["service_generic"] == "EJ":
        if page_type_exp == "article":
            m = FULLTEXT_EXT_RE.search(fields.get("filename") or "")
            if m:
                page_type_exp = f"{page_type_exp}/{m.group(1).lower()}"
        else:
            page_type_exp = TRAILING_QUERY_RE.sub("", page_type_exp)
            if not page_type_exp.strip():
                page_type_exp = "-"
            m = PAGE_TYPE_RE.match(page_type_exp)
            fields["page_type"] = m.group(1) if m else "-"
    fields["page_type_exp"] = page_type_exp


def detect_format(line: str) -> Optional[str]:
    if OLD_LINE_RE.match(line) and "\0" not in line:
        return OLD_FORMAT
    if NEW_LINE_RE.match(line):
        return NEW_FORMAT
    return None


def parse_line(line: str, exclude_local: bool = False) -> Union[AccessEvent, str]:
    line = line.rstrip("\r\n")
    fmt = detect_format(line)
    if fmt == OLD_FORMAT:
        parsed = _parse_old(line)
    elif fmt == NEW_FORMAT:
        parsed = _parse_new(line)
    else:
        return "invalid_bad_format"
    if isinstance(parsed, str):
        return parsed

    error = validation_error(parsed)
    if error:
        return error
    if exclude_local and LOCAL_ADDRESS_RE.match(parsed.get("ip_address") or ""):
        return "local"

    parsed["service_generic"] = service_generic(parsed["service"])
    expand_page_type(parsed)
    return AccessEvent(fields=parsed, format=fmt)
