"""Tool invocation auditing and result caching.

Every agent call can be routed through ``ToolAuditSystem``:

- ``before_tool`` screens the input for dangerous patterns and serves a
  cached result when the same tool saw the same input recently.
- ``after_tool`` records the outcome, caches successful results and flags
  slow calls.

``audited`` wraps an agent callable with both hooks so the audit is
transparent to the RecoveryCoordinator. A blocked input raises
``ToolBlockedError``, which is not retried: the same input would be blocked
again. Content screening can be switched off per wrapper for callables whose
input is free text written by the user (analysis prompts), where a mention
of ``eval()`` is subject matter rather than an injection.
"""

import hashlib
import json
import re
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog
from pydantic import BaseModel

from config import settings

logger = structlog.get_logger(__name__)

# Patterns that block a call when found in any string of the input
DANGEROUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("eval(", re.compile(r"\beval\s*\(", re.IGNORECASE)),
    ("exec(", re.compile(r"\bexec\s*\(", re.IGNORECASE)),
    ("<script", re.compile(r"<script", re.IGNORECASE)),
    ("javascript:", re.compile(r"javascript:", re.IGNORECASE)),
]

# Input keys treated as filesystem paths
PATH_KEYS = frozenset({"path", "file", "filename", "filepath"})

MAX_EVENT_HISTORY = 10_000


class ToolBlockedError(Exception):
    """Raised by ``audited`` when ``before_tool`` refuses an input."""

    retryable = False

    def __init__(self, tool_name: str, issues: list[str]) -> None:
        self.tool_name = tool_name
        self.issues = issues
        super().__init__(f"Tool {tool_name} blocked: {'; '.join(issues)}")


@dataclass
class AuditDecision:
    """Result of the before-tool hook.

    Attributes:
        proceed: Whether the tool should be executed.
        modified_input: Sanitized input to use instead of the original.
        cached_result: Result to return without executing the tool.
        issues: Problems found in the input.
    """

    proceed: bool
    modified_input: Any = None
    cached_result: Any = None
    issues: list[str] = field(default_factory=list)

    @property
    def cache_hit(self) -> bool:
        return not self.proceed and self.cached_result is not None


@dataclass
class AuditEvent:
    agent_name: str
    tool_name: str
    event_type: Literal["before_tool", "after_tool", "tool_error"]
    session_id: str | None = None
    error: str | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)


@dataclass
class CacheEntry:
    tool_name: str
    agent_name: str
    output: Any
    created_at: float
    hit_count: int = 0


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def hash_input(value: Any) -> str:
    """Stable digest of a tool input, independent of key order."""
    serialized = json.dumps(_to_jsonable(value), sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()[:16]


def _iter_strings(value: Any, key: str | None = None):
    """Yield ``(key, string)`` for every string nested in ``value``."""
    if isinstance(value, str):
        yield key, value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield from _iter_strings(v, str(k))
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item, key)


def validate_tool_input(value: Any) -> list[str]:
    """Return the issues found in a tool input; empty means safe."""
    if value is None:
        return ["Tool input is null"]

    issues: list[str] = []
    for key, text in _iter_strings(_to_jsonable(value)):
        for label, pattern in DANGEROUS_PATTERNS:
            if pattern.search(text):
                issues.append(f"Potentially dangerous pattern detected: {label}")
        if key in PATH_KEYS and (".." in text or text.startswith("~")):
            issues.append(f"Potential path traversal detected in '{key}'")
    # Keep first occurrence only
    return list(dict.fromkeys(issues))


class ToolAuditSystem:
    """Audit trail and result cache for agent tool calls.

    Attributes:
        max_cache_size: Cached results kept before eviction.
        cache_ttl_seconds: Lifetime of a cached result.
        slow_call_ms: Duration above which a call is logged as slow.
        enable_caching: Whether results are cached and served.
    """

    def __init__(
        self,
        max_cache_size: int | None = None,
        cache_ttl_seconds: float | None = None,
        slow_call_ms: int | None = None,
        *,
        enable_caching: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_cache_size = max_cache_size or settings.audit_cache_size
        self.cache_ttl_seconds = (
            cache_ttl_seconds
            if cache_ttl_seconds is not None
            else settings.audit_cache_ttl_seconds
        )
        self.slow_call_ms = slow_call_ms or settings.audit_slow_call_ms
        self.enable_caching = enable_caching
        self._clock = clock
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._events: deque[AuditEvent] = deque(maxlen=MAX_EVENT_HISTORY)
        self._cache_hits = 0
        self._blocked = 0

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def before_tool(
        self,
        agent_name: str,
        tool_name: str,
        tool_input: Any,
        session_id: str | None = None,
        *,
        screen_input: bool = True,
    ) -> AuditDecision:
        """Screen a tool call before it runs.

        With ``screen_input=False`` the dangerous-pattern check is skipped;
        the call is still recorded and cache lookups still apply.
        """
        cached = self._get_cached(tool_name, tool_input)
        if cached is not None:
            self._cache_hits += 1
            self._record(
                agent_name,
                tool_name,
                "before_tool",
                session_id,
                metadata={"cached": True, "hit_count": cached.hit_count},
            )
            logger.info(
                "tool_cache_hit",
                agent=agent_name,
                tool=tool_name,
                hit_count=cached.hit_count,
            )
            return AuditDecision(proceed=False, cached_result=cached.output)

        issues = validate_tool_input(tool_input) if screen_input else []
        self._record(
            agent_name,
            tool_name,
            "before_tool",
            session_id,
            metadata={"validation_issues": issues},
        )
        if issues:
            self._blocked += 1
            logger.warning(
                "tool_input_blocked",
                agent=agent_name,
                tool=tool_name,
                issues=issues,
            )
            return AuditDecision(proceed=False, issues=issues)

        return AuditDecision(proceed=True, modified_input=tool_input)

    def after_tool(
        self,
        agent_name: str,
        tool_name: str,
        tool_input: Any,
        output: Any,
        error: str | None = None,
        duration_ms: int | None = None,
        session_id: str | None = None,
    ) -> None:
        """Record a finished tool call and cache it when it succeeded."""
        if error is None and output is not None:
            self._store(tool_name, agent_name, tool_input, output)

        self._record(
            agent_name,
            tool_name,
            "tool_error" if error else "after_tool",
            session_id,
            error=error,
            duration_ms=duration_ms,
        )

        if error:
            logger.error("tool_error_recorded", agent=agent_name, tool=tool_name, error=error)
        if duration_ms is not None and duration_ms > self.slow_call_ms:
            logger.warning(
                "tool_slow_execution",
                agent=agent_name,
                tool=tool_name,
                duration_ms=duration_ms,
            )

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_audit_stats(self) -> dict[str, Any]:
        """Summarize the audit trail and cache."""
        completed = [e for e in self._events if e.event_type != "before_tool"]
        errors = [e for e in completed if e.event_type == "tool_error"]
        durations = [e.duration_ms for e in completed if e.duration_ms is not None]

        by_tool: dict[str, dict[str, int]] = {}
        for event in completed:
            stats = by_tool.setdefault(event.tool_name, {"calls": 0, "errors": 0})
            stats["calls"] += 1
            if event.event_type == "tool_error":
                stats["errors"] += 1

        return {
            "total_calls": len(completed),
            "total_errors": len(errors),
            "error_rate": len(errors) / len(completed) if completed else 0.0,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "blocked_calls": self._blocked,
            "cache_size": len(self._cache),
            "cache_hits": self._cache_hits,
            "tools": by_tool,
        }

    def get_events(self, session_id: str | None = None) -> list[AuditEvent]:
        if session_id is None:
            return list(self._events)
        return [e for e in self._events if e.session_id == session_id]

    def clear_cache(self) -> None:
        self._cache.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record(
        self,
        agent_name: str,
        tool_name: str,
        event_type: Literal["before_tool", "after_tool", "tool_error"],
        session_id: str | None,
        **kwargs: Any,
    ) -> None:
        self._events.append(
            AuditEvent(
                agent_name=agent_name,
                tool_name=tool_name,
                event_type=event_type,
                session_id=session_id,
                **kwargs,
            )
        )

    def _get_cached(self, tool_name: str, tool_input: Any) -> CacheEntry | None:
        if not self.enable_caching:
            return None
        key = f"{tool_name}:{hash_input(tool_input)}"
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry.created_at > self.cache_ttl_seconds:
            del self._cache[key]
            return None
        entry.hit_count += 1
        return entry

    def _store(self, tool_name: str, agent_name: str, tool_input: Any, output: Any) -> None:
        if not self.enable_caching:
            return
        if len(self._cache) >= self.max_cache_size:
            # Drop the oldest tenth
            for _ in range(max(1, self.max_cache_size // 10)):
                self._cache.popitem(last=False)
        key = f"{tool_name}:{hash_input(tool_input)}"
        self._cache.pop(key, None)
        self._cache[key] = CacheEntry(
            tool_name=tool_name,
            agent_name=agent_name,
            output=output,
            created_at=self._clock(),
        )


def audited(
    audit: ToolAuditSystem,
    agent_name: str,
    fn: Callable[[Any], Awaitable[Any]],
    *,
    tool_name: str | None = None,
    session_id: str | None = None,
    screen_input: bool = True,
) -> Callable[[Any], Awaitable[Any]]:
    """Wrap an agent callable with the before/after audit hooks."""
    tool = tool_name or agent_name

    async def wrapper(tool_input: Any) -> Any:
        decision = audit.before_tool(
            agent_name, tool, tool_input, session_id, screen_input=screen_input
        )
        if decision.cache_hit:
            return decision.cached_result
        if not decision.proceed:
            raise ToolBlockedError(tool, decision.issues)

        started = time.monotonic()
        try:
            output = await fn(decision.modified_input)
        except Exception as e:
            audit.after_tool(
                agent_name,
                tool,
                tool_input,
                None,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
                session_id=session_id,
            )
            raise
        audit.after_tool(
            agent_name,
            tool,
            tool_input,
            output,
            duration_ms=int((time.monotonic() - started) * 1000),
            session_id=session_id,
        )
        return output

    return wrapper
