from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import urlsplit

from lantern.errors import GraphCycleError, MalformedRecordError


class ResourceType:
    DOCUMENT = "Document"
    SCRIPT = "Script"
    STYLESHEET = "Stylesheet"
    IMAGE = "Image"
    MEDIA = "Media"
    FONT = "Font"
    XHR = "XHR"
    FETCH = "Fetch"
    EVENT_SOURCE = "EventSource"
    WEBSOCKET = "WebSocket"
    MANIFEST = "Manifest"
    TEXT_TRACK = "TextTrack"
    SIGNED_EXCHANGE = "SignedExchange"
    PING = "Ping"
    PREFLIGHT = "Preflight"
    CSP_VIOLATION_REPORT = "CSPViolationReport"
    PREFETCH = "Prefetch"
    OTHER = "Other"

    ALL = (
        DOCUMENT,
        SCRIPT,
        STYLESHEET,
        IMAGE,
        MEDIA,
        FONT,
        XHR,
        FETCH,
        EVENT_SOURCE,
        WEBSOCKET,
        MANIFEST,
        TEXT_TRACK,
        SIGNED_EXCHANGE,
        PING,
        PREFLIGHT,
        CSP_VIOLATION_REPORT,
        PREFETCH,
        OTHER,
    )


class TaskCategory:
    PARSE_HTML = "ParseHTML"
    EVALUATE_SCRIPT = "EvaluateScript"
    FUNCTION_CALL = "FunctionCall"
    LAYOUT = "Layout"
    RECALCULATE_STYLE = "RecalculateStyle"
    PAINT = "Paint"
    TIMER_FIRE = "TimerFire"
    XHR_READY_STATE_CHANGE = "XHRReadyStateChange"
    OTHER = "Other"


NON_NETWORK_SCHEMES = frozenset({"data", "blob", "about", "chrome-extension", "file"})
_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}
_SECURE_SCHEMES = frozenset({"https", "wss"})


def _pick(obj: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in obj and obj[key] is not None:
            return obj[key]
    return None


def _flag(obj: dict[str, Any], *keys: str) -> bool:
    value = _pick(obj, *keys)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise TypeError(f"{keys[-1]} must be true or false (got {value!r})")
    return value


def parse_origin(url: str) -> str:
    """Scheme, host and any non-default port of `url`."""

    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme in NON_NETWORK_SCHEMES:
        return f"{scheme}:"
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        raise ValueError(f"not an absolute URL: {url!r}")
    port = parts.port
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


@dataclass(frozen=True)
class RecordTiming:
    dns_ms: float | None = None
    connect_ms: float | None = None
    ssl_ms: float | None = None

    @staticmethod
    def from_json(obj: dict[str, Any] | None) -> "RecordTiming | None":
        if not obj:
            return None

        def _opt(*keys: str) -> float | None:
            v = _pick(obj, *keys)
            return float(v) if v is not None and float(v) >= 0 else None

        return RecordTiming(
            dns_ms=_opt("dns_ms", "dnsMs"),
            connect_ms=_opt("connect_ms", "connectMs"),
            ssl_ms=_opt("ssl_ms", "sslMs"),
        )


@dataclass(frozen=True)
class NetworkRecord:
    request_id: str
    url: str
    start_time_ms: float
    end_time_ms: float
    headers_end_time_ms: float
    transfer_size: int = 0
    resource_size: int = 0
    resource_type: str = ResourceType.OTHER
    connection_id: str | None = None
    connection_reused: bool = False
    from_cache: bool = False
    initiator_url: str | None = None
    redirect_destination_id: str | None = None
    protocol: str = "http/1.1"
    priority: str = "Medium"
    timing: RecordTiming | None = None

    def __post_init__(self) -> None:
        if self.end_time_ms < self.start_time_ms:
            raise MalformedRecordError(
                f"end_time_ms ({self.end_time_ms}) precedes start_time_ms "
                f"({self.start_time_ms})",
                record_id=self.request_id,
                field="end_time_ms",
            )
        if not (self.start_time_ms <= self.headers_end_time_ms <= self.end_time_ms):
            raise MalformedRecordError(
                "headers_end_time_ms must lie between start and end",
                record_id=self.request_id,
                field="headers_end_time_ms",
            )
        if self.transfer_size < 0 or self.resource_size < 0:
            raise MalformedRecordError(
                "sizes must be >= 0", record_id=self.request_id, field="transfer_size"
            )
        try:
            parse_origin(self.url)
        except ValueError as exc:
            raise MalformedRecordError(
                str(exc), record_id=self.request_id, field="url"
            ) from exc

    @property
    def origin(self) -> str:
        return parse_origin(self.url)

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme.lower()

    @property
    def host(self) -> str:
        return (urlsplit(self.url).hostname or "").lower()

    @property
    def is_secure(self) -> bool:
        return self.scheme in _SECURE_SCHEMES

    @property
    def is_non_network(self) -> bool:
        return self.scheme in NON_NETWORK_SCHEMES

    @property
    def is_redirect(self) -> bool:
        return self.redirect_destination_id is not None

    @property
    def is_connectionless(self) -> bool:
        return self.from_cache or self.is_non_network

    @property
    def is_h2(self) -> bool:
        return self.protocol.lower() in ("h2", "h3", "http/2", "http/3", "quic")

    @property
    def size_on_network(self) -> int:
        # Cached records report a zero transfer size.
        if not self.resource_size:
            return self.transfer_size
        if not self.transfer_size:
            return self.resource_size
        return min(self.resource_size, self.transfer_size)

    @property
    def ttfb_ms(self) -> float:
        return self.headers_end_time_ms - self.start_time_ms

    @property
    def download_ms(self) -> float:
        return self.end_time_ms - self.headers_end_time_ms

    @staticmethod
    def from_json(obj: dict[str, Any]) -> "NetworkRecord":
        request_id = _pick(obj, "request_id", "requestId", "id")
        if request_id is None:
            raise MalformedRecordError("missing request id", field="request_id")
        request_id = str(request_id)

        url = _pick(obj, "url")
        if url is None:
            raise MalformedRecordError("missing url", record_id=request_id, field="url")

        start = _pick(obj, "start_time_ms", "startTime")
        if start is None:
            raise MalformedRecordError(
                "missing start time", record_id=request_id, field="start_time_ms"
            )
        end = _pick(obj, "end_time_ms", "endTime")
        headers_end = _pick(obj, "headers_end_time_ms", "headersEndTime")
        if end is None:
            # A response whose headers arrived but whose body timing was lost
            # is treated as having no body download.
            if headers_end is None:
                raise MalformedRecordError(
                    "missing end time", record_id=request_id, field="end_time_ms"
                )
            end = headers_end
        if headers_end is None:
            headers_end = end

        resource_size = _pick(obj, "resource_size", "resourceSize")
        resource_type = str(_pick(obj, "resource_type", "resourceType") or "Other")
        if resource_type not in ResourceType.ALL:
            resource_type = ResourceType.OTHER

        connection_id = _pick(obj, "connection_id", "connectionId")
        redirect_to = _pick(obj, "redirect_destination_id", "redirectDestinationId")
        protocol = _pick(obj, "protocol")

        try:
            transfer_size = int(_pick(obj, "transfer_size", "transferSize") or 0)
            return NetworkRecord(
                request_id=request_id,
                url=str(url),
                start_time_ms=float(start),
                end_time_ms=float(end),
                headers_end_time_ms=float(headers_end),
                transfer_size=transfer_size,
                resource_size=(
                    int(resource_size) if resource_size is not None else transfer_size
                ),
                resource_type=resource_type,
                connection_id=str(connection_id) if connection_id is not None else None,
                connection_reused=_flag(obj, "connection_reused", "connectionReused"),
                from_cache=_flag(obj, "from_cache", "fromCache"),
                initiator_url=_pick(
                    obj, "initiator_url", "initiatorURL", "initiatorUrl"
                ),
                redirect_destination_id=(
                    str(redirect_to) if redirect_to is not None else None
                ),
                protocol=str(protocol) if protocol is not None else "http/1.1",
                priority=str(_pick(obj, "priority") or "Medium"),
                timing=RecordTiming.from_json(_pick(obj, "timing")),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedRecordError(str(exc), record_id=request_id) from exc


@dataclass(frozen=True)
class TraceTask:
    task_id: str
    start_time_ms: float
    duration_ms: float
    category: str = TaskCategory.OTHER
    initiator_url: str | None = None
    initiator_node_id: str | None = None
    marker: str | None = None

    def __post_init__(self) -> None:
        if self.marker is not None and not isinstance(self.marker, str):
            raise MalformedRecordError(
                "marker must be a string", record_id=self.task_id, field="marker"
            )

    @property
    def end_time_ms(self) -> float:
        return self.start_time_ms + self.duration_ms

    @staticmethod
    def from_json(obj: dict[str, Any], index: int) -> "TraceTask":
        task_id = str(_pick(obj, "task_id", "taskId", "id") or f"cpu-{index}")
        start = _pick(obj, "start_time_ms", "startTime")
        duration = _pick(obj, "duration_ms", "duration")
        if start is None:
            raise MalformedRecordError(
                "missing start time", record_id=task_id, field="start_time_ms"
            )
        if duration is None:
            raise MalformedRecordError(
                "missing duration", record_id=task_id, field="duration_ms"
            )
        try:
            start_f = float(start)
            duration_f = float(duration)
        except (TypeError, ValueError) as exc:
            raise MalformedRecordError(str(exc), record_id=task_id) from exc
        if duration_f < 0:
            raise MalformedRecordError(
                "duration must be >= 0", record_id=task_id, field="duration_ms"
            )

        initiator_url = _pick(obj, "initiator_url", "initiatorURL")
        initiator_node_id = _pick(obj, "initiator_node_id", "initiatorNodeId")
        # The gatherer folds both into a single field; URLs contain a scheme.
        either = _pick(obj, "initiatingURLOrNodeId", "initiating_url_or_node_id")
        if either is not None:
            if "://" in str(either) or str(either).startswith("data:"):
                initiator_url = initiator_url or str(either)
            else:
                initiator_node_id = initiator_node_id or str(either)

        return TraceTask(
            task_id=task_id,
            start_time_ms=start_f,
            duration_ms=duration_f,
            category=str(_pick(obj, "category") or TaskCategory.OTHER),
            initiator_url=str(initiator_url) if initiator_url is not None else None,
            initiator_node_id=(
                str(initiator_node_id) if initiator_node_id is not None else None
            ),
            marker=_pick(obj, "marker"),
        )


def load_records(raw: Iterable[dict[str, Any]]) -> list[NetworkRecord]:
    records = [NetworkRecord.from_json(obj) for obj in raw]
    seen: set[str] = set()
    for r in records:
        if r.request_id in seen:
            raise MalformedRecordError(
                "duplicate request id", record_id=r.request_id, field="request_id"
            )
        seen.add(r.request_id)
    return records


def load_trace(raw: Iterable[dict[str, Any]]) -> list[TraceTask]:
    tasks = [TraceTask.from_json(obj, i) for i, obj in enumerate(raw)]
    seen: set[str] = set()
    for t in tasks:
        if t.task_id in seen:
            raise MalformedRecordError(
                "duplicate task id", record_id=t.task_id, field="task_id"
            )
        seen.add(t.task_id)
    return tasks


def resolve_redirects(records: Iterable[NetworkRecord]) -> dict[str, str]:
    """Map every request id to the URL its redirect chain finally lands on."""

    by_id = {r.request_id: r for r in records}
    final: dict[str, str] = {}
    for request_id in by_id:
        chain = [request_id]
        cur = by_id[request_id]
        while cur.redirect_destination_id is not None:
            nxt = cur.redirect_destination_id
            if nxt not in by_id:
                raise MalformedRecordError(
                    f"redirect destination '{nxt}' not found",
                    record_id=cur.request_id,
                    field="redirect_destination_id",
                )
            if nxt in chain:
                raise GraphCycleError(tuple(chain + [nxt]))
            if nxt in final:
                cur = by_id[nxt]
                break
            chain.append(nxt)
            cur = by_id[nxt]
        url = final.get(cur.request_id, cur.url)
        for rid in chain:
            final[rid] = url
    return final
