"""Per-call context handed to reconcilers and dependent resources."""

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from resources import Resource, ResourceID
from store import ResourceStore


@dataclass
class Context:
    """
    Call-scoped state for one reconcile pass.

    Nothing here outlives the pass; a retried pass gets a fresh Context.
    ``trigger_reason`` is one of ``event``, ``resync`` or ``manual``.
    ``secondaries`` holds what each dependent reconciled during this pass,
    keyed by (dependent, primary id), and backs get_resource().
    """

    store: ResourceStore
    trigger_reason: str = "event"
    secondaries: Dict[Tuple[Any, ResourceID], Resource] = field(default_factory=dict)
