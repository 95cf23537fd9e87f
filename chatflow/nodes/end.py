"""End node implementation.

The end node marks a termination point of a flow. It has no outgoing edges;
reaching it completes the execution.
"""

from chatflow.core.effects import Effect, Terminate
from chatflow.nodes.base import NodeInput, NodeSpec


def build_end(step: NodeInput) -> Effect:
    return Terminate(outcome="completed")


END = NodeSpec(
    type="end",
    builder=build_end,
    edges=frozenset(),
    terminal=True,
    primary_edges=frozenset(),
)
