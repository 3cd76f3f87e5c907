"""
Reverse-mode automatic differentiation for wgpu_gradcheck arrays.

The computation graph is an arena owned by a ComputationGraph:

  - ArrayNode: one per tracked array; holds the gradient slot and the index
    of the op that produced the array (None for leaves)
  - OpNode: one per recorded operation; lists the edges it owns
  - Edge: directed producer -> consumer record carrying the backward rule
    that maps the gradient of the op's output node to a contribution for
    one input node

Nodes refer to each other only by integer index, so the graph holds no
reference cycles. Arrays point into the arena via (graph, node_id).

Backward pass uses topological sort over op nodes. An op may have several
outputs (see gradient_check.identity); when backward reaches it through any
one of them, the gradients seeded on all of its outputs are propagated.
"""

from typing import Callable, List, Optional
import contextlib
import itertools
import logging
import threading

from wgpu_gradcheck.errors import GraphError
from wgpu_gradcheck.wgpu_array import (
    Array,
    add as tensor_add, sub as tensor_sub, mul as tensor_mul, div as tensor_div,
    neg as tensor_neg, scalar_mul as tensor_scalar_mul, tanh as tensor_tanh,
    sigmoid as tensor_sigmoid, exp as tensor_exp,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Graph Arena
# ============================================================================

class ArrayNode:
    """Gradient slot and producer link for one tracked array."""

    __slots__ = ("index", "grad", "producer")

    def __init__(self, index: int, producer: Optional[int] = None):
        self.index = index
        self.grad = None  # Will be an Array once backprop reaches this node
        self.producer = producer

    def __repr__(self):
        grad_shape = self.grad.shape if self.grad is not None else None
        return f"ArrayNode({self.index}, producer={self.producer}, grad_shape={grad_shape})"


class OpNode:
    """A recorded operation."""

    __slots__ = ("index", "name", "edge_ids")

    def __init__(self, index: int, name: str):
        self.index = index
        self.name = name
        self.edge_ids: List[int] = []

    def __repr__(self):
        return f"OpNode({self.index}, {self.name!r}, edges={self.edge_ids})"


class Edge:
    """Backward rule from one output node of an op to one of its input nodes."""

    __slots__ = ("op", "input_node", "output_node", "backward_fn")

    def __init__(self, op: int, input_node: int, output_node: int, backward_fn: Callable):
        self.op = op
        self.input_node = input_node
        self.output_node = output_node
        self.backward_fn = backward_fn


class ComputationGraph:
    """Arena owning every node and edge of one computation."""

    _generations = itertools.count()

    def __init__(self):
        self.array_nodes: List[ArrayNode] = []
        self.op_nodes: List[OpNode] = []
        self.edges: List[Edge] = []
        # Orders graphs by creation; stale leaves move to the newest one
        self.generation = next(ComputationGraph._generations)

    def add_array_node(self, producer: Optional[int] = None) -> int:
        """Create an array node and return its index."""
        node = ArrayNode(len(self.array_nodes), producer)
        self.array_nodes.append(node)
        return node.index

    def add_op_node(self, name: str) -> int:
        """Create a named op node and return its index."""
        op = OpNode(len(self.op_nodes), name)
        self.op_nodes.append(op)
        return op.index

    def add_edge(self, op: int, input_node: int, output_node: int, backward_fn: Callable) -> int:
        """Register ``input_node`` as an input of ``op`` feeding ``output_node``."""
        edge = Edge(op, input_node, output_node, backward_fn)
        self.edges.append(edge)
        self.op_nodes[op].edge_ids.append(len(self.edges) - 1)
        return len(self.edges) - 1

    def track(self, *arrays: Array):
        """Attach arrays to this graph as fresh leaves with empty gradient slots.

        Any previous graph linkage of the arrays is dropped.
        """
        for a in arrays:
            a.attach(self, self.add_array_node())
        return arrays

    def __repr__(self):
        return (f"ComputationGraph(arrays={len(self.array_nodes)}, "
                f"ops={len(self.op_nodes)}, edges={len(self.edges)})")


# ============================================================================
# Grad Mode
# ============================================================================

_grad_mode = threading.local()


def is_grad_enabled() -> bool:
    """Return True if ops record graph edges in this thread."""
    return getattr(_grad_mode, "enabled", True)


@contextlib.contextmanager
def no_grad():
    """Disable graph recording in this thread for the duration.

    The previous mode is restored on exit, even if the body raises.
    """
    prev = is_grad_enabled()
    _grad_mode.enabled = False
    try:
        yield
    finally:
        _grad_mode.enabled = prev


def _is_leaf(a: Array) -> bool:
    return a.graph is None or a.node.producer is None


def resolve_graph(arrays: List[Array]) -> Optional[ComputationGraph]:
    """Return the graph the tracked arrays should be recorded into.

    Non-leaf arrays pin the graph. When only leaves are involved, the most
    recently created graph among them is used, or a new one if none has a
    graph yet. Returns None when no array requires grad or recording is
    disabled by no_grad().

    Raises:
        GraphError: if non-leaf arrays belong to different graphs
    """
    if not is_grad_enabled():
        return None
    tracked = [a for a in arrays if a.requires_grad]
    if not tracked:
        return None

    graph = None
    for a in tracked:
        if _is_leaf(a):
            continue
        if graph is None:
            graph = a.graph
        elif a.graph is not graph:
            raise GraphError("Arrays from different computation graphs cannot be combined")
    if graph is not None:
        return graph

    leaf_graphs = [a.graph for a in tracked if a.graph is not None]
    if leaf_graphs:
        return max(leaf_graphs, key=lambda g: g.generation)
    return ComputationGraph()


def ensure_node(x: Array, graph: ComputationGraph) -> int:
    """Give a tracked leaf a node in ``graph``.

    A leaf still bound to another graph is rebound; its old gradient slot
    stays behind in that graph.
    """
    if x.graph is None:
        x.attach(graph, graph.add_array_node())
    elif x.graph is not graph:
        if not _is_leaf(x):
            raise GraphError("Arrays from different computation graphs cannot be combined")
        logger.debug(f"Rebinding leaf from {x.graph} to {graph}")
        x.attach(graph, graph.add_array_node())
    return x.node_id


def _record(name: str, inputs: List[Array], out: Array, backward_fns: List[Callable]) -> Array:
    """Attach ``out`` to a new op node with one edge per tracked input."""
    graph = resolve_graph(inputs)
    if graph is None:
        return out

    op = graph.add_op_node(name)
    out.attach(graph, graph.add_array_node(producer=op))
    for x, backward_fn in zip(inputs, backward_fns):
        if x.requires_grad:
            graph.add_edge(op, ensure_node(x, graph), out.node_id, backward_fn)
    return out


# ============================================================================
# Autograd Operations
# ============================================================================

def add(a: Array, b: Array) -> Array:
    """
    Element-wise addition.

    Forward: out = a + b
    Backward: da = upstream, db = upstream
    """
    out = tensor_add(a, b)
    return _record("add", [a, b], out, [lambda g: g, lambda g: g])


def sub(a: Array, b: Array) -> Array:
    """
    Subtraction.

    Backward: da = upstream, db = -upstream
    """
    out = tensor_sub(a, b)
    return _record("sub", [a, b], out, [lambda g: g, tensor_neg])


def mul(a: Array, b: Array) -> Array:
    """
    Element-wise multiplication.

    Forward: out = a * b
    Backward: da = upstream * b, db = upstream * a
    """
    out = tensor_mul(a, b)

    def backward_mul_a(upstream_grad):
        return tensor_mul(upstream_grad, b)

    def backward_mul_b(upstream_grad):
        return tensor_mul(upstream_grad, a)

    return _record("mul", [a, b], out, [backward_mul_a, backward_mul_b])


def div(a: Array, b: Array) -> Array:
    """
    Element-wise division.

    Backward: da = upstream / b, db = -upstream * a / b^2
    """
    out = tensor_div(a, b)

    def backward_div_a(upstream_grad):
        return tensor_div(upstream_grad, b)

    def backward_div_b(upstream_grad):
        # -g * out / b == -g * a / b^2
        return tensor_neg(tensor_div(tensor_mul(upstream_grad, out), b))

    return _record("div", [a, b], out, [backward_div_a, backward_div_b])


def neg(x: Array) -> Array:
    """
    Negation.

    Backward: da = -upstream
    """
    out = tensor_neg(x)
    return _record("neg", [x], out, [tensor_neg])


def scalar_mul(x: Array, scalar: float) -> Array:
    """
    Scalar multiplication.

    Backward: da = upstream * scalar
    """
    out = tensor_scalar_mul(x, scalar)

    def backward_scalar_mul(upstream_grad):
        return tensor_scalar_mul(upstream_grad, scalar)

    return _record("scalar_mul", [x], out, [backward_scalar_mul])


def tanh(x: Array) -> Array:
    """
    Tanh activation.

    Backward: da = upstream * (1 - tanh(x)^2)
    """
    out = tensor_tanh(x)

    def backward_tanh(upstream_grad):
        one = Array.ones_like(out)
        return tensor_mul(upstream_grad, tensor_sub(one, tensor_mul(out, out)))

    return _record("tanh", [x], out, [backward_tanh])


def sigmoid(x: Array) -> Array:
    """
    Sigmoid activation: 1 / (1 + exp(-x)).

    Backward: da = upstream * sigmoid(x) * (1 - sigmoid(x))
    """
    out = tensor_sigmoid(x)

    def backward_sigmoid(upstream_grad):
        one = Array.ones_like(out)
        return tensor_mul(upstream_grad, tensor_mul(out, tensor_sub(one, out)))

    return _record("sigmoid", [x], out, [backward_sigmoid])


def exp(x: Array) -> Array:
    """
    Exponential.

    Backward: da = upstream * exp(x)
    """
    out = tensor_exp(x)

    def backward_exp(upstream_grad):
        return tensor_mul(upstream_grad, out)

    return _record("exp", [x], out, [backward_exp])


# ============================================================================
# Backward Pass and Gradient Computation
# ============================================================================

def _accumulate(node: ArrayNode, grad: Array) -> None:
    if node.grad is None:
        node.grad = grad
    else:
        node.grad = tensor_add(node.grad, grad)


def backward(root: Array) -> None:
    """
    Perform reverse-mode autodifferentiation (backpropagation).

    Computes gradients for every node reachable from ``root`` by performing
    a topological sort of op nodes followed by a backward pass in reverse
    order. If the root's gradient slot is empty it is seeded with ones.

    For an op with several outputs, every output node holding a gradient
    contributes, not only the one backward entered through.

    Args:
        root: Array from which to backpropagate.

    Raises:
        GraphError: if ``root`` is not part of a computation graph.
    """
    if not isinstance(root, Array):
        raise TypeError("root must be an Array instance")
    if root.graph is None:
        raise GraphError("backward: array is not part of a computation graph")

    graph = root.graph
    root_node = graph.array_nodes[root.node_id]

    # Step 1: Topological sort of op nodes using DFS
    topo_order = []
    visited = set()

    def _topo_dfs(op_index: int):
        """Depth-first search for topological ordering."""
        if op_index in visited:
            return
        visited.add(op_index)

        # Visit producers of all inputs first
        for edge_id in graph.op_nodes[op_index].edge_ids:
            producer = graph.array_nodes[graph.edges[edge_id].input_node].producer
            if producer is not None:
                _topo_dfs(producer)

        topo_order.append(op_index)

    if root_node.producer is not None:
        _topo_dfs(root_node.producer)

    # Step 2: Initialize root gradient
    if root_node.grad is None:
        root_node.grad = Array.ones_like(root)

    logger.debug(f"backward: {len(topo_order)} ops reachable in {graph}")

    # Step 3: Backward pass in reverse topological order
    for op_index in reversed(topo_order):
        for edge_id in graph.op_nodes[op_index].edge_ids:
            edge = graph.edges[edge_id]
            upstream_grad = graph.array_nodes[edge.output_node].grad
            if upstream_grad is None:
                continue
            input_grad = edge.backward_fn(upstream_grad)
            if input_grad is not None:
                _accumulate(graph.array_nodes[edge.input_node], input_grad)


def zero_grad(arrays) -> None:
    """
    Clear gradient slots for an array or list of arrays.

    Args:
        arrays: Single Array or list of Arrays.
    """
    if isinstance(arrays, Array):
        arrays = [arrays]

    for a in arrays:
        a.cleargrad()


def get_leaves(root: Array) -> List[int]:
    """
    Indices of the leaf array nodes reachable from ``root``.

    Args:
        root: Array to search from.

    Returns:
        Sorted list of ArrayNode indices with no producer.
    """
    if root.graph is None:
        return []

    graph = root.graph
    leaves = set()
    visited = set()

    def _dfs(node_index: int):
        if node_index in visited:
            return
        visited.add(node_index)
        producer = graph.array_nodes[node_index].producer
        if producer is None:
            leaves.add(node_index)
            return
        for edge_id in graph.op_nodes[producer].edge_ids:
            _dfs(graph.edges[edge_id].input_node)

    _dfs(root.node_id)
    return sorted(leaves)
