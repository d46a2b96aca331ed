"""Stage timing for the generation pipeline.

``@timed_node`` wraps a stage function (sync or async) and, while a
``collect_metrics()`` block is active, appends a ``NodeMetrics`` entry with
its duration, the size of its result and whether it raised.

    with collect_metrics() as metrics:
        chunks = chunker.chunk_text(text, 4000)
        result = await run_pipeline(chunks, generate)
"""

from __future__ import annotations

import contextvars
import functools
import inspect
import logging
import time
from typing import Any

from .models import NodeMetrics

log = logging.getLogger(__name__)

_current_metrics: contextvars.ContextVar[list[NodeMetrics] | None] = (
    contextvars.ContextVar("_current_metrics", default=None)
)


class collect_metrics:
    """Activate metric collection for ``@timed_node`` within the block.

    Each block yields only the stages recorded inside it.  On exit a nested
    block's entries are appended to the enclosing block, so a document run
    still sees every stage.
    """

    def __enter__(self) -> list[NodeMetrics]:
        self._outer = _current_metrics.get(None)
        self._metrics: list[NodeMetrics] = []
        self._token = _current_metrics.set(self._metrics)
        return self._metrics

    def __exit__(self, *exc) -> None:
        _current_metrics.reset(self._token)
        if self._outer is not None:
            self._outer.extend(self._metrics)


def timed_node(name: str, node_type: str = "programmatic"):
    """Record the duration of a stage. No-op outside ``collect_metrics``."""

    def decorator(fn):
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def wrapper(*args, **kwargs):
                t0 = time.monotonic_ns()
                try:
                    result = await fn(*args, **kwargs)
                except Exception:
                    _record(name, node_type, t0, None, failed=True)
                    raise
                _record(name, node_type, t0, result)
                return result

        else:

            @functools.wraps(fn)
            def wrapper(*args, **kwargs):
                t0 = time.monotonic_ns()
                try:
                    result = fn(*args, **kwargs)
                except Exception:
                    _record(name, node_type, t0, None, failed=True)
                    raise
                _record(name, node_type, t0, result)
                return result

        return wrapper

    return decorator


def build_report(metrics: list[NodeMetrics]) -> dict:
    """Summarise collected metrics per stage type."""
    return {
        "total_duration_ms": sum(m.duration_ms for m in metrics),
        "programmatic_duration_ms": sum(
            m.duration_ms for m in metrics if m.node_type == "programmatic"
        ),
        "provider_duration_ms": sum(
            m.duration_ms for m in metrics if m.node_type == "provider"
        ),
        "nodes": [
            {
                "node": m.node_name,
                "type": m.node_type,
                "duration_ms": m.duration_ms,
                "items": m.items,
                "failed": m.failed,
            }
            for m in metrics
        ],
    }


def _record(
    name: str,
    node_type: str,
    t0: int,
    result: Any,
    failed: bool = False,
) -> None:
    duration_ms = (time.monotonic_ns() - t0) // 1_000_000
    items = len(result) if isinstance(result, (list, tuple)) else None
    if failed:
        log.warning("%s: failed after %d ms", name, duration_ms)
    else:
        log.info("%s: %d ms", name, duration_ms)
    metrics = _current_metrics.get(None)
    if metrics is not None:
        metrics.append(NodeMetrics(name, node_type, duration_ms, items, failed))
