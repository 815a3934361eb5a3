"""
Transaction-scoped context handed to every sub-manager call.

The facade builds one WorkflowContext per public operation. Sub-managers
read and write through ``ctx.tx`` and queue events with ``ctx.emit``; the
facade publishes queued events only after the transaction commits.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .gateway import Transaction


@dataclass
class WorkflowContext:
    tx: Transaction
    caller: Optional[str] = None
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    def emit(self, event_type: str, **payload: Any) -> None:
        self.events.append((event_type, payload))
