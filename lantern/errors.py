from __future__ import annotations


class LanternError(Exception):
    pass


class MalformedRecordError(LanternError):
    def __init__(
        self, message: str, *, record_id: str | None = None, field: str | None = None
    ) -> None:
        if record_id is not None:
            message = f"record '{record_id}': {message}"
        super().__init__(message)
        self.record_id = record_id
        self.field = field


class GraphCycleError(LanternError):
    def __init__(self, node_ids: tuple[str, ...]) -> None:
        super().__init__(f"dependency cycle detected: {' -> '.join(node_ids)}")
        self.node_ids = node_ids


class UnreachableNodeError(LanternError):
    def __init__(self, node_ids: tuple[str, ...], time_ms: float) -> None:
        shown = ", ".join(node_ids[:10])
        more = f" (+{len(node_ids) - 10} more)" if len(node_ids) > 10 else ""
        super().__init__(
            f"{len(node_ids)} node(s) can never be scheduled at t={time_ms}ms: "
            f"{shown}{more}"
        )
        self.node_ids = node_ids
        self.node_id = node_ids[0] if node_ids else None
        self.time_ms = time_ms


class MetricNotComputableError(LanternError):
    def __init__(self, metric_name: str, reason: str) -> None:
        super().__init__(f"metric '{metric_name}' not computable: {reason}")
        self.metric_name = metric_name
        self.reason = reason
