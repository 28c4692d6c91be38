import threading
import time
from typing import Dict, Optional

from pydantic import BaseModel


class ToolStats(BaseModel):
    """Execution counters for one tool. Observability only."""

    total_calls: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_execution_time_ms: float = 0.0
    last_executed_at: Optional[float] = None

    @property
    def avg_execution_time_ms(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.total_execution_time_ms / self.total_calls

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.success_count / self.total_calls

    def to_dict(self) -> Dict[str, float]:
        return {
            "total_calls": self.total_calls,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_execution_time_ms": round(self.avg_execution_time_ms, 3),
            "success_rate": round(self.success_rate, 3),
            "last_executed_at": self.last_executed_at,
        }


class ExecutionStatsTable:
    """Lock-protected statistics keyed by tool id."""

    def __init__(self):
        self._stats: Dict[str, ToolStats] = {}
        self._lock = threading.Lock()

    def record(self, tool_id: str, success: bool, elapsed_ms: float) -> None:
        with self._lock:
            stats = self._stats.setdefault(tool_id, ToolStats())
            stats.total_calls += 1
            if success:
                stats.success_count += 1
            else:
                stats.failure_count += 1
            stats.total_execution_time_ms += elapsed_ms
            stats.last_executed_at = time.time()

    def get(self, tool_id: str) -> Optional[ToolStats]:
        with self._lock:
            stats = self._stats.get(tool_id)
            return stats.model_copy() if stats else None

    def all(self) -> Dict[str, ToolStats]:
        with self._lock:
            return {tool_id: stats.model_copy() for tool_id, stats in self._stats.items()}

    def clear(self, tool_id: Optional[str] = None) -> None:
        with self._lock:
            if tool_id is None:
                self._stats.clear()
            else:
                self._stats.pop(tool_id, None)
