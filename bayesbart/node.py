"""Node class for bayesbart.

This module defines the Node class used to represent nodes in a tree.
It extends the Node implementation from treelib.
"""

import numpy as np
from treelib import Node as TreelibNode
from typing import Sequence, Any
from copy import deepcopy
from collections import defaultdict
from .mytyping import NDArrayInt, T
from .exceptions import InvalidTreeError
from .node_data import NodeData


class Node(TreelibNode):
    """
    Extended node class for BART trees. Provides functionalities for splitting and updating leaf parameters.

    This class is mostly a wrapper around the NodeData object, which handles the rows and parameters associated with the node.

    Attributes
    ----------
    is_l : bool
        Flag indicating if this node is a left child.
    _data : NodeData
        The node data (parameters and associated rows).
    _rng : np.random.Generator
        The random number generator.
    debug : bool
        If True, enable debug checks.
    _depth : int
        The depth of the node.
    """
    def __init__(self, id: int, is_l: bool, data: NodeData, rng: np.random.Generator, debug: bool):
        super().__init__(identifier=id)
        self.is_l: bool = is_l
        self._data: NodeData = data
        self._rng = rng
        self.debug = debug
        self._depth = -1

    @property
    def id(self):
        return self.identifier

    @property
    def depth(self):
        return self._depth

    @depth.setter
    def depth(self, val: int):
        if val < 0:
            raise ValueError('Node depth must be non-negative')
        self._depth = val

    def __deepcopy__(self, memo):
        return self.copy(light=False, memo=memo)

    def copy(self, light: bool = False, no_data: bool = False, memo: dict | None = None) -> 'Node':
        """
        Copy the node.

        A light copy only duplicates what the sampler modifies: the node
        bookkeeping and the NodeData (which itself shares the row positions).
        """
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        if not light:
            for k, v in self.__dict__.items():
                if k == '_data':
                    setattr(result, k, v.copy(light=light, no_data=no_data, memo=memo))
                elif k == '_rng':
                    setattr(result, k, v)
                else:
                    setattr(result, k, deepcopy(v, memo))
            return result

        # _predecessor maps tree ids to the parent id, _successors to the children ids.
        # A node is only ever attached to one tree here.
        for k, v in self.__dict__.items():
            if k == '_data':
                setattr(result, k, v.copy(light=light, no_data=no_data, memo=memo))
            elif k == '_predecessor':
                setattr(result, k, dict(v))
            elif k == '_successors':
                successors = defaultdict(list)
                for tree_id, children in v.items():
                    successors[tree_id] = list(children)
                setattr(result, k, successors)
            else:
                setattr(result, k, v)
        return result

    def has_data(self) -> bool:
        return self._data.has_data()

    def _gen_tags(self):
        """
        Generate a string tag for the node for printing purposes.
        """
        left_or_right = 'L' if self.is_l else 'R'
        if self.is_leaf():
            self.tag = f"{left_or_right}_{self.identifier}_{self._data.get_nobs()}_{self._data.get_params(print=True)}"
        else:
            self.tag = f'{left_or_right}_{self.identifier}_{self._data.get_split_var(print=True)} {self._data.get_split_set(print=True)}'

    def get_nobs(self) -> int:
        return self._data.get_nobs()

    def get_idx(self) -> NDArrayInt:
        return self._data.idx

    def get_available_splits(self, *args, **kw) -> tuple[dict[str, Sequence[T]], dict[str, bool]]:
        """
        Get available splits from the underlying NodeData.

        Returns
        -------
        tuple
            (avail_vars, is_cat)
        """
        return self._data.get_available_splits(*args, **kw)

    def get_var_probs(self, var_probs: dict[str, float] | None) -> dict[str, float]:
        """
        Probabilities of choosing each variable as split variable at this node.

        Only the variables with at least one available split are eligible, and
        the weights are renormalized over them.

        Parameters
        ----------
        var_probs : dict[str, float] or None
            Prior weight of each variable. If None, eligible variables are equally likely.

        Returns
        -------
        dict
            Mapping from eligible variable to its probability.
        """
        avail_vars, _ = self._data.get_available_splits()
        if var_probs is None:
            weights = {k: 1. for k in avail_vars}
        else:
            weights = {k: var_probs.get(k, 0.) for k in avail_vars}
            weights = {k: w for k, w in weights.items() if w > 0}
        tot = sum(weights.values())
        if len(weights) == 0 or tot <= 0:
            raise InvalidTreeError('No available variable to split')
        return {k: w / tot for k, w in weights.items()}

    def get_new_split(self, var_probs: dict[str, float] | None = None) -> tuple[str, Sequence[T] | T]:
        """
        Sample a new split for the node.

        Parameters
        ----------
        var_probs : dict[str, float] or None, optional
            Prior weight of each variable (default None, uniform).

        Returns
        -------
        tuple
            (split_var, split_val)
        """
        # Whether the variable is categorical is only known by NodeData
        avail_vars, _ = self._data.get_available_splits()
        probs = self.get_var_probs(var_probs)

        names = list(probs.keys())
        p = np.array([probs[k] for k in names])
        split_var = names[self._rng.choice(len(names), p=p)]
        avail_vals = avail_vars[split_var]

        # sample a split value
        is_cat, split_val = self._data.sample_split(split_var, avail_vals)

        return split_var, split_val

    def get_split_info(self) -> tuple[str, Sequence[T] | T, bool]:
        """
        Retrieve the current split rule: split variable (str), split value (array if cat, float else), whether the split is categorical.

        Returns
        -------
        tuple
            (split_var, split_val, is_cat)
        """
        split_var, split_val = self._data.get_split_var(), self._data.get_split_set()
        is_cat = self._data.is_cat_split
        return split_var, split_val, is_cat

    def update_split_info(self, split_var: str, split_val: Sequence[T] | T):
        self._data.update_split_info(split_var, split_val)

    def update_split_data(self, idx: NDArrayInt):
        self._data.update_split_data(idx)

    def get_split_data(self, split_var: str, split_val: Sequence[T] | T, left_params: Any, right_params: Any) -> tuple[NodeData, NodeData]:
        """
        Split the rows at this node into two parts. Returns the children data.

        Parameters
        ----------
        split_var : str
            The feature to split on.
        split_val : Sequence[T] or T
            The split rule.
        left_params : Any
            Leaf parameter for the left child.
        right_params : Any
            Leaf parameter for the right child.

        Returns
        -------
        tuple
            (left_node_data, right_node_data)
        """
        return self._data.get_split_data(split_var, split_val, left_params, right_params)

    def get_data_split(self, split_var: str | None = None, split_val: Sequence[T] | T | None = None) -> tuple[NDArrayInt, NDArrayInt]:
        """
        Split the node rows using the current (or provided) split rule.

        Returns
        -------
        tuple
            (left_idx, right_idx)
        """
        if split_var is None:
            split_var = self._data.get_split_var()
        if split_val is None:
            split_val = self._data.get_split_set()
        return self._data.get_data_split(split_var, split_val)

    def is_split_rule_empty(self) -> bool:
        return self._data.is_split_rule_empty()

    def update_node_params(self, params: Any):
        self._data.update_node_params(params)

    def get_params(self, print: bool = False) -> Any:
        return self._data.get_params(print)

    def get_leaf_value(self) -> float:
        return self._data.get_leaf_value()

    def calc_n_splits(self, split_var: str | None = None) -> int:
        return self._data.calc_n_splits(split_var)

    def reset_split_info(self):
        self._data.reset_split_info()
