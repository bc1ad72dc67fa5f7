"""
Ivanti API Plugin (aiohttp)

Tool Gateway for the request-creation flow:
- list_offerings: request offering catalog
- get_field_schema: offering parameters, normalized into an OfferingSchema
- create_record: submit a service request

Each method makes at most one HTTP attempt; retry and backoff belong
to the orchestrator. Catalog and fieldset reads are cached for a few
hours and the cache is dropped when the session ends. Creates are never
cached. Failures are raised as ToolUnavailable (retryable or not),
AuthorizationFailed, or RecordRejected.

Payload note:
- Every value is converted to a plain Python string before the JSON
  payload is built (see _to_plain_str).
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Mapping, Protocol, Sequence

import aiohttp

from sr_assistant.agents.models import CreatedRecord, FieldOption, FieldSpec, Offering, OfferingSchema
from sr_assistant.core.client import AUTH_FAILURE_STATUSES, TRANSIENT_STATUSES
from sr_assistant.core.errors import AuthorizationFailed, RecordRejected, ToolUnavailable
from sr_assistant.session.models import Identity

logger = logging.getLogger(__name__)

OFFERINGS_PATH = "/HEAT/api/rest/Template/{template_id}/_All_"
PACKAGE_DATA_PATH = "/HEAT/api/rest/ServiceRequest/PackageData"
CREATE_PATH = "/HEAT/api/rest/ServiceRequest/new"
FORM_NAME = "ServiceReq.ResponsiveAnalyst.DefaultLayout"

LAYOUT_TYPES = {"rowaligner", "spacer", "separator", "label"}
ENUM_TYPES = {"combo", "dropdown", "picklist"}
FALSE_EXPRESSIONS = {"", "$(false)", "false", "0"}

# Statuses where the server says it did not process the request, so a
# create may be sent again. A 500/502/504 on create may still have created
# the record upstream.
CREATE_RETRYABLE_STATUSES = {408, 429, 503}

DEFAULT_CACHE_TTL = 4 * 60 * 60


class ToolGateway(Protocol):
    async def list_offerings(self) -> list[Offering]: ...

    async def get_field_schema(self, offering_id: str) -> OfferingSchema: ...

    async def create_record(
        self,
        offering_id: str,
        values: Mapping[str, Any],
        schema: OfferingSchema | None = None,
        requester: Identity | None = None,
    ) -> CreatedRecord: ...


def _to_plain_str(value: Any) -> str:
    """Convert *any* value to a plain Python str for the JSON payload."""
    if value is None:
        return ""
    # Already a plain str → fast path
    if type(value) is str:
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_to_plain_str(v) for v in value)
    return str(value)


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------
def normalize_offering(raw: Mapping[str, Any]) -> Offering | None:
    """Catalog entry → Offering, or None when it has no subscription id."""
    offering_id = _first(raw, "strSubscriptionId", "SubscriptionId", "subscriptionId")
    name = _first(raw, "strName", "Name", "name")
    if not offering_id or not name:
        return None
    category = ""
    top_level = raw.get("TopLevelCategories")
    if isinstance(top_level, list) and top_level and isinstance(top_level[0], list) and top_level[0]:
        category = str(top_level[0][0])
    category = category or _first(raw, "strCategory", "Category") or ""
    return Offering(
        offering_id=str(offering_id),
        name=str(name).strip(),
        description=str(_first(raw, "strDescription", "Description") or "").strip(),
        category=str(category),
    )


def rank_offerings(query: str, offerings: Sequence[Offering], max_results: int = 5) -> list[Offering]:
    """
    Rank offerings by keyword overlap with ``query``.

    +2 when a keyword appears anywhere in name/description/category, +1 more
    when it starts a word. Offerings that do not score are dropped.
    """
    keywords = [w for w in re.split(r"\s+", query.lower()) if len(w) > 2]
    scored: list[tuple[int, int, Offering]] = []
    for index, offering in enumerate(offerings):
        haystack = " ".join(p for p in (offering.name, offering.description, offering.category) if p).lower()
        score = 0
        for keyword in keywords:
            if keyword in haystack:
                score += 2
            if haystack.startswith(keyword) or f" {keyword}" in haystack:
                score += 1
        if score > 0:
            scored.append((score, index, offering))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [offering for _, _, offering in scored[:max_results]]


def _humanize(name: str) -> str:
    text = re.sub(r"([a-z])([A-Z])", r"\1 \2", name.replace("_", " ")).strip()
    return text[:1].upper() + text[1:]


def _field_label(raw: Mapping[str, Any], name: str) -> str:
    titles = raw.get("localizedTitles") or raw.get("LocalizedTitles")
    if isinstance(titles, dict):
        for key in ("en_US", "en-US", "en"):
            if isinstance(titles.get(key), str) and titles[key].strip():
                return titles[key].strip()
    label = _first(raw, "strLabel", "Label", "DisplayName", "strDisplayName", "FieldLabel")
    if isinstance(label, str) and label.strip():
        return label.strip()
    return _humanize(name) or name


def _is_required(raw: Mapping[str, Any]) -> bool:
    if raw.get("bIsRequired") is True or raw.get("Required") is True or raw.get("required") is True:
        return True
    expression = str(_first(raw, "strRequiredExpression", "requiredExpression") or "").strip().lower()
    return expression not in FALSE_EXPRESSIONS


def _is_visible(raw: Mapping[str, Any]) -> bool:
    if raw.get("bIsHidden") is True:
        return False
    expression = raw.get("strVisibilityExpression") or ""
    if isinstance(raw.get("visibilityExpression"), dict):
        expression = expression or raw["visibilityExpression"].get("Source") or ""
    expression = str(expression).strip().lower()
    if expression == "false" or "$(false)" in expression:
        return False
    return str(_first(raw, "strType", "Type", "type") or "").lower() not in LAYOUT_TYPES


def _raw_fields(raw: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    fields: list[Mapping[str, Any]] = []
    for category in raw.get("lstParamCategories") or []:
        fields.extend((category or {}).get("lstParameters") or [])
    if fields:
        return fields
    if raw.get("lstParameters"):
        return list(raw["lstParameters"])
    packages = raw.get("lstPackages") or []
    if packages:
        first = packages[0] or {}
        return list(first.get("Fields") or first.get("lstParameters") or first.get("Parameters") or [])
    return list(raw.get("Fields") or [])


def normalize_field(raw: Mapping[str, Any]) -> FieldSpec | None:
    name = _first(raw, "strName", "Name", "name")
    if not name:
        return None
    raw_options = _first(raw, "Options", "options", "lstOptions", "lstValidValues", "ValidationList") or []
    options = []
    for opt in raw_options:
        if not isinstance(opt, dict):
            options.append(FieldOption(value=str(opt)))
            continue
        value = _first(opt, "Value", "value", "strValue")
        if value is None:
            continue
        options.append(
            FieldOption(
                value=str(value),
                record_id=_first(opt, "RecId", "recId", "strRecId"),
                label=_first(opt, "Label", "label", "strLabel", "strDisplayName"),
            )
        )
    default = _first(raw, "strDefaultValue", "DefaultValue", "defaultValue")
    return FieldSpec(
        name=str(name),
        label=_field_label(raw, str(name)),
        required=_is_required(raw),
        type=str(_first(raw, "strType", "Type", "type") or "text").lower(),
        options=tuple(options),
        default_value=str(default) if default is not None else None,
        record_id=_first(raw, "RecId", "recId", "strRecId"),
    )


def normalize_fieldset(raw: Mapping[str, Any], offering_id: str, name: str = "") -> OfferingSchema:
    """Ivanti PackageData → OfferingSchema with hidden and layout fields removed."""
    fields = []
    seen: set[str] = set()
    for item in _raw_fields(raw):
        if not isinstance(item, dict) or not _is_visible(item):
            continue
        spec = normalize_field(item)
        if spec is None or spec.name in seen:
            continue
        seen.add(spec.name)
        fields.append(spec)
    return OfferingSchema(offering_id=offering_id, fields=tuple(fields), name=name)


# ---------------------------------------------------------------------------
# Create payload
# ---------------------------------------------------------------------------
def _local_offset_minutes() -> int:
    # Minutes to add to local time to get UTC, as the Ivanti web client sends it
    offset = datetime.now().astimezone().utcoffset()
    return -int(offset.total_seconds() // 60) if offset else 0


def build_create_payload(
    offering_id: str,
    values: Mapping[str, Any],
    schema: OfferingSchema | None,
    requester: Identity | None,
) -> dict[str, Any]:
    parameters: dict[str, str] = {}
    service_req_data: dict[str, str] = {}
    specs = {spec.name: spec for spec in schema.fields} if schema else {}

    for name, value in values.items():
        spec = specs.get(name)
        text = _to_plain_str(value)
        if spec is None or not spec.record_id:
            service_req_data[name] = text
            continue
        key = f"par-{spec.record_id}"
        parameters[key] = text
        if spec.is_enumerated or spec.type in ENUM_TYPES:
            option = spec.match_option(text)
            if option and option.record_id:
                parameters[f"{key}-recId"] = option.record_id

    if requester and "ProfileLink" not in service_req_data:
        service_req_data["ProfileLink"] = requester.subject_id

    return {
        "attachmentsToDelete": [],
        "attachmentsToUpload": [],
        "parameters": parameters,
        "delayedFulfill": False,
        "formName": FORM_NAME,
        "saveReqState": False,
        "serviceReqData": service_req_data,
        "strCustomerLocation": (requester.location if requester and requester.location else "Default"),
        "strUserId": requester.subject_id if requester else "",
        "subscriptionId": offering_id,
        "localOffset": _local_offset_minutes(),
    }


def parse_create_response(data: Any) -> CreatedRecord:
    if not isinstance(data, dict):
        # A 2xx without a readable body may still have created the record
        raise ToolUnavailable("Ivanti returned an unreadable create response", retryable=False, outcome_unknown=True)
    if data.get("IsSuccess") is False:
        raise RecordRejected(str(_first(data, "ErrorText", "ErrorMessage") or "Unknown error from Ivanti"))

    requests = data.get("ServiceRequests")
    if isinstance(requests, list) and requests:
        first = requests[0] or {}
        number = _first(first, "strRequestNum", "RequestNum", "ServiceReqNumber")
        record_id = _first(first, "strRequestRecId", "RequestRecId", "RecId")
    else:
        nested = data.get("value") if isinstance(data.get("value"), dict) else {}
        number = _first(data, "ServiceReqNumber", "RequestNumber", "strServiceReqNumber", "strRequestNum") or _first(
            nested, "ServiceReqNumber", "RequestNumber"
        )
        record_id = _first(data, "RecId", "strRecId", "strRequestRecId") or _first(nested, "RecId", "recId")

    if not number:
        logger.warning(f"Create response had no request number; keys={list(data.keys())}")
    return CreatedRecord(record_id=str(record_id or ""), record_number=str(number or ""))


# ---------------------------------------------------------------------------
# Plugin
# ---------------------------------------------------------------------------
class IvantiPlugin:
    """Ivanti Tool Gateway over the REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        offerings_template_id: str,
        timeout: float = 8,
        connect_timeout: float = 10,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"rest_api_key={api_key}", "Content-Type": "application/json"}
        self._offerings_path = OFFERINGS_PATH.format(template_id=offerings_template_id)
        self._timeout = aiohttp.ClientTimeout(total=timeout, sock_connect=connect_timeout)
        # A dispatched create is never abandoned: no total timeout
        self._create_timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout)
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, tuple[float, Any]] = {}

    # ------------------------------------------------------------------
    # Read cache
    # ------------------------------------------------------------------
    def _cache_get(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        logger.debug(f"Cache hit: {key}")
        return value

    def _cache_put(self, key: str, value: Any) -> None:
        if self._cache_ttl > 0:
            self._cache[key] = (self._clock() + self._cache_ttl, value)

    def clear_cache(self) -> None:
        if self._cache:
            logger.info(f"Clearing {len(self._cache)} cached catalog entries")
        self._cache.clear()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        logger.info("Ivanti request: %s %s", method, path)
        try:
            async with aiohttp.ClientSession(timeout=timeout or self._timeout, headers=self._headers) as session:
                async with session.request(method, url, params=params, json=payload) as response:
                    text = await response.text()
                    status = response.status
        except aiohttp.ClientConnectorError as e:
            raise ToolUnavailable(f"Cannot connect to Ivanti: {e}") from e
        except asyncio.TimeoutError as e:
            raise ToolUnavailable(f"Ivanti {method} {path} timed out") from e
        except aiohttp.ClientError as e:
            # The request may have reached the server; only reads are safe to repeat
            raise ToolUnavailable(
                f"Ivanti {method} {path} failed: {e}", retryable=method == "GET", outcome_unknown=method == "POST"
            ) from e

        if status in AUTH_FAILURE_STATUSES:
            raise AuthorizationFailed(f"Ivanti rejected credentials (HTTP {status})", status_code=status)
        if status >= 400:
            logger.error("Ivanti HTTP %s: %s", status, text[:500])
            if method == "POST":
                if status in CREATE_RETRYABLE_STATUSES:
                    raise ToolUnavailable(f"Ivanti HTTP {status}", retryable=True, status_code=status)
                if status in TRANSIENT_STATUSES:
                    raise ToolUnavailable(
                        f"Ivanti HTTP {status}; the request may have been created",
                        retryable=False,
                        status_code=status,
                        outcome_unknown=True,
                    )
                raise RecordRejected(f"Ivanti HTTP {status}: {text[:300]}")
            if status in TRANSIENT_STATUSES:
                raise ToolUnavailable(f"Ivanti HTTP {status}", retryable=True, status_code=status)
            raise ToolUnavailable(f"Ivanti HTTP {status}", retryable=False, status_code=status)

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise ToolUnavailable(
                f"Non-JSON response from {path}", retryable=False, status_code=status, outcome_unknown=method == "POST"
            ) from e

    async def list_offerings(self) -> list[Offering]:
        cached = self._cache_get("offerings")
        if cached is not None:
            return list(cached)
        data = await self._request("GET", self._offerings_path)
        if isinstance(data, dict):
            data = data.get("value") or data.get("Templates") or []
        offerings = [o for o in (normalize_offering(raw) for raw in data or [] if isinstance(raw, dict)) if o]
        logger.info(f"Retrieved {len(offerings)} request offerings")
        if offerings:
            self._cache_put("offerings", tuple(offerings))
        return offerings

    async def get_field_schema(self, offering_id: str) -> OfferingSchema:
        key = f"fieldset:{offering_id}"
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        data = await self._request("GET", PACKAGE_DATA_PATH, params={"subscriptionid": offering_id})
        if not isinstance(data, dict):
            raise ToolUnavailable(f"No fieldset returned for offering {offering_id}", retryable=False)
        schema = normalize_fieldset(data, offering_id)
        logger.info(f"Fieldset for {offering_id}: {len(schema.fields)} fields")
        self._cache_put(key, schema)
        return schema

    async def create_record(
        self,
        offering_id: str,
        values: Mapping[str, Any],
        schema: OfferingSchema | None = None,
        requester: Identity | None = None,
    ) -> CreatedRecord:
        payload = build_create_payload(offering_id, values, schema, requester)
        logger.info(
            "Creating service request: subscription=%s parameter_keys=%s",
            offering_id,
            list(payload["parameters"].keys()),
        )
        data = await self._request("POST", CREATE_PATH, payload=payload, timeout=self._create_timeout)
        record = parse_create_response(data)
        logger.info(f"Service request {record.record_number or '(no number returned)'} created")
        return record
