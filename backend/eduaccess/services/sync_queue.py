"""
Best-effort retry queue for replaying offline operations.

Operations are drained serially. A failure listed in retry_on goes back to
the tail until it has used max_attempts; a failure listed in fail_on is
final. Anything else propagates. Ordering is not guaranteed once retries
happen, so handlers must be idempotent.
"""
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Type


@dataclass
class SyncOperation:
    payload: Any
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class SyncReport:
    succeeded: List[SyncOperation] = field(default_factory=list)
    failed: List[SyncOperation] = field(default_factory=list)


class SyncQueue:
    def __init__(self, max_attempts: int = 3):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._pending = deque()

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, payload: Any) -> SyncOperation:
        op = SyncOperation(payload=payload)
        self._pending.append(op)
        return op

    def drain(
        self,
        handler: Callable[[Any], Any],
        retry_on: Tuple[Type[BaseException], ...] = (),
        fail_on: Tuple[Type[BaseException], ...] = (),
    ) -> SyncReport:
        report = SyncReport()
        while self._pending:
            op = self._pending.popleft()
            op.attempts += 1
            try:
                handler(op.payload)
            except fail_on as e:
                op.last_error = getattr(e, "message", None) or str(e)
                report.failed.append(op)
                continue
            except retry_on as e:
                op.last_error = str(e)
                if op.attempts < self.max_attempts:
                    self._pending.append(op)
                else:
                    report.failed.append(op)
                continue
            report.succeeded.append(op)
        return report
