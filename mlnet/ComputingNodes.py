import bisect

import numpy as np


class MLError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(MLError, ValueError):
    """Invalid construction, hyperparameters, or use of an unbuilt node."""


class ShapeError(MLError, IndexError):
    """Input shape does not match what a node was built for."""


class ParamMultiIdx:
    """
    Cumulative offset table of a composite node.

    ``offsets[0]`` is the start offset of the composite in the global parameter
    space and ``offsets[k+1]`` is the exclusive upper bound of child ``k``.
    The table is immutable once created.
    """

    __slots__ = ("_offsets",)

    def __init__(self, offsets):
        offsets = tuple(int(o) for o in offsets)
        if not offsets:
            raise ConfigurationError("Parameter index needs at least a start offset")
        for prev, cur in zip(offsets, offsets[1:]):
            if cur < prev:
                raise ConfigurationError(f"Parameter index offsets must be non-decreasing: {offsets}")
        self._offsets = offsets

    @property
    def offsets(self):
        return self._offsets

    @property
    def start(self):
        return self._offsets[0]

    @property
    def end(self):
        return self._offsets[-1]

    def check_end(self, idx):
        """True if ``idx`` belongs to the range covered by the whole table."""
        return self._offsets[0] <= idx < self._offsets[-1]

    def check_idx(self, idx, pos):
        """True if ``idx`` belongs to the range of child ``pos``."""
        return self._offsets[pos] <= idx < self._offsets[pos + 1]

    def find(self, idx):
        """
        Locate the child that owns a global index.

        Returns:
            Child position, or -1 if ``idx`` is outside the table
        """
        if not self.check_end(idx):
            return -1
        # zero-width children share their offset with the next child
        return bisect.bisect_right(self._offsets, idx) - 1

    def __len__(self):
        return len(self._offsets) - 1

    def __eq__(self, other):
        return isinstance(other, ParamMultiIdx) and self._offsets == other._offsets

    def __hash__(self):
        return hash(self._offsets)

    def __repr__(self):
        return f"ParamMultiIdx({list(self._offsets)})"


class ComputingNode:
    """
    Base class for all computing nodes.

    A node maps an input object to an output object and exposes its trainable
    numbers through a flat index. Leaf nodes own parameter storage and
    implement ``_do_get_param``, ``_do_set_param`` and ``_do_update_params`` on
    local 0-based indices; composite nodes only route.
    """

    def __init__(self):
        self._is_built = False
        self._start_idx = 0

    @property
    def param_count(self):
        """Total number of addressable parameters of this node and its subtree."""
        raise NotImplementedError("Subclasses must implement param_count")

    @property
    def is_built(self):
        return self._is_built

    @property
    def start_idx(self):
        """Offset of this node's first parameter in the root's address space."""
        return self._start_idx

    def build(self):
        """
        Finalize the node tree before use.

        First fixes every lazily determined shape in predecessor-to-successor
        order, then assigns each node a contiguous range of the global
        parameter index starting at 0. Call once, on the root.
        """
        self._build_shape()
        self.build_index(0)
        return self

    def _build_shape(self):
        """Fix lazily determined dimensions. Composite nodes recurse into children."""
        self._is_built = True

    def build_index(self, start_idx):
        """
        Assign the global parameter range of this node.

        Args:
            start_idx: First global index owned by this node

        Returns:
            Exclusive end of the range
        """
        self._start_idx = start_idx
        return start_idx + self.param_count

    def _check_built(self):
        if not self._is_built:
            raise ConfigurationError(f"{self.__class__.__name__} must be built before use")

    def calculate(self, input):
        """
        Evaluate the node.

        Args:
            input: Input object (vector or (depth, height, width) array)

        Returns:
            Output object
        """
        raise NotImplementedError("Subclasses must implement calculate method")

    def try_get_param(self, idx):
        """
        Read a parameter by global index.

        Returns:
            (found, value) pair; value is 0.0 when not found
        """
        self._check_built()
        local = idx - self._start_idx
        if local < 0 or local >= self.param_count:
            return False, 0.0
        return True, self._do_get_param(local)

    def try_set_param(self, idx, value, is_delta):
        """
        Write a parameter by global index.

        Args:
            idx: Global parameter index
            value: New value, or an increment when ``is_delta`` is True
            is_delta: Add to the current value instead of replacing it

        Returns:
            True if the index exists
        """
        self._check_built()
        local = idx - self._start_idx
        if local < 0 or local >= self.param_count:
            return False
        self._do_set_param(local, value, is_delta)
        return True

    def try_update_params(self, pars, is_delta, cursor=0):
        """
        Bulk write of this node's parameters from a flat vector.

        Consumes exactly ``param_count`` entries starting at ``cursor``.

        Returns:
            (success, cursor) where cursor is advanced past the consumed
            entries, or left at the failing position
        """
        self._check_built()
        count = self.param_count
        if pars is None or cursor < 0 or len(pars) < cursor + count:
            return False, cursor
        if count:
            self._do_update_params(pars, is_delta, cursor)
        return True, cursor + count

    def get_params(self):
        """Return the flat parameter vector of this node in index order."""
        self._check_built()
        return np.array([self._do_get_param(i) for i in range(self.param_count)], dtype=float)

    def randomize_params(self, seed=None, scale=0.1):
        """Replace all parameters by values drawn uniformly from [-scale, scale]."""
        self._check_built()
        rng = np.random.default_rng(seed)
        pars = rng.uniform(-scale, scale, self.param_count)
        success, _ = self.try_update_params(pars, False)
        return success

    def _do_get_param(self, idx):
        raise NotImplementedError("Leaf nodes must implement _do_get_param")

    def _do_set_param(self, idx, value, is_delta):
        raise NotImplementedError("Leaf nodes must implement _do_set_param")

    def _do_update_params(self, pars, is_delta, cursor):
        raise NotImplementedError("Leaf nodes must implement _do_update_params")

    def describe(self):
        return f"{self.__class__.__name__} ({self.param_count} parameters)"

    def serialize(self):
        raise NotImplementedError("Subclasses must implement serialize method")


class CompositeNode(ComputingNode):
    """
    Node joined from an ordered set of sub-nodes.

    Owns no parameters itself; all parameter access is routed to the sub-node
    whose range contains the requested global index.
    """

    def __init__(self, sub_nodes=None):
        super().__init__()
        self._sub_nodes = []
        self._par_idx = None
        for node in sub_nodes or []:
            self.add_sub_node(node)

    @property
    def sub_nodes(self):
        return tuple(self._sub_nodes)

    @property
    def param_idx(self):
        return self._par_idx

    @property
    def param_count(self):
        return sum(node.param_count for node in self.sub_nodes)

    def add_sub_node(self, node):
        if node is None:
            raise ConfigurationError("Node can not be None")
        if self._is_built:
            raise ConfigurationError("Can not add nodes to a built node")
        self._sub_nodes.append(node)
        return node

    def _build_shape(self):
        for node in self.sub_nodes:
            node._build_shape()
        self._is_built = True

    def build_index(self, start_idx):
        self._start_idx = start_idx
        offsets = [start_idx]
        for node in self.sub_nodes:
            offsets.append(node.build_index(offsets[-1]))
        self._par_idx = ParamMultiIdx(offsets)
        return self._par_idx.end

    def _check_built(self):
        super()._check_built()
        if self._par_idx is None:
            raise ConfigurationError(f"{self.__class__.__name__} has no parameter index, call build() on the root")

    def try_get_param(self, idx):
        self._check_built()
        pos = self._par_idx.find(idx)
        if pos < 0:
            return False, 0.0
        return self.sub_nodes[pos].try_get_param(idx)

    def try_set_param(self, idx, value, is_delta):
        self._check_built()
        pos = self._par_idx.find(idx)
        if pos < 0:
            return False
        return self.sub_nodes[pos].try_set_param(idx, value, is_delta)

    def try_update_params(self, pars, is_delta, cursor=0):
        self._check_built()
        if pars is None or cursor < 0 or len(pars) < cursor:
            return False, cursor

        for node in self.sub_nodes:
            success, cursor = node.try_update_params(pars, is_delta, cursor)
            if not success:
                return False, cursor

        return True, cursor

    def get_params(self):
        self._check_built()
        parts = [node.get_params() for node in self.sub_nodes]
        if not parts:
            return np.zeros(0, dtype=float)
        return np.concatenate(parts)

    def describe(self):
        description = f"{self.__class__.__name__} ({self.param_count} parameters):\n"
        for i, node in enumerate(self.sub_nodes):
            sub = node.describe().replace("\n", "\n  ").rstrip()
            description += f"  {i+1}. {sub}\n"
        return description


class AggregateNode(CompositeNode):
    """
    Node that evaluates all sub-nodes on the same input and concatenates
    their outputs in sub-node order.
    """

    def calculate(self, input):
        self._check_built()
        outputs = [np.atleast_1d(node.calculate(input)) for node in self.sub_nodes]
        if not outputs:
            return np.zeros(0, dtype=float)
        return np.concatenate(outputs)

    def serialize(self):
        return {
            "type": self.__class__.__name__,
            "nodes": [node.serialize() for node in self.sub_nodes],
        }


class SequenceNode(CompositeNode):
    """
    Node that sequentially tunnels input through its sub-nodes:
    output = f_n(...f_2(f_1(x))...)
    """

    def calculate(self, input):
        self._check_built()
        result = input
        for node in self.sub_nodes:
            result = node.calculate(result)
        return result

    def serialize(self):
        return {
            "type": self.__class__.__name__,
            "nodes": [node.serialize() for node in self.sub_nodes],
        }
