"""Tree class for bayesbart.

This module defines the Tree class that extends treelib's Tree to support operations
needed by the BART sampler such as applying splits, re-routing rows through
changed subtrees, evaluating the tree fit and predicting on new rows.
"""

import numpy as np
import pandas as pd
from treelib import Tree as TreelibTree
from typing import Sequence, Self, Any
from copy import deepcopy
from .node import Node
from .node_data import NodeData
from .mytyping import T, NDArrayFloat, NDArrayInt
from .exceptions import InvalidTreeError
from .utils import my_choice


class Tree(TreelibTree):
    """
    Extended tree class for BART that builds on the treelib Tree.

    This class maintains a counter for node IDs and provides additional methods for
    sampling leaves, copying trees, applying splits and evaluating the tree.

    Attributes
    ----------
    id_counter : int
        Counter for unique node identifiers.
    rng : np.random.Generator
        Random generator used for sampling.
    node_min_size : int
        Minimum number of observations per node.
    debug : bool
        If True, enables additional assertions.
    """
    node_class = Node

    def __init__(self, root_node_data: NodeData, rng: np.random.Generator,
                 node_min_size: int, debug: bool):
        super().__init__(node_class=self.node_class)
        self.id_counter: int = 0
        self.rng = rng
        self.node_min_size = node_min_size
        self.debug = debug

        self.add_node(root_node_data, is_l=False)

    def add_node(self, data: NodeData, is_l: bool, parent: Node | None = None) -> Node:
        node = self.node_class(self.id_counter, is_l=is_l, data=data, rng=self.rng, debug=self.debug)
        node.depth = 0 if parent is None else parent.depth + 1
        super().add_node(node, parent)
        self.id_counter += 1
        return node

    def sample_leaf(self, node_min_size: int) -> Node:
        """
        Sample a leaf node at random from the tree that has at least node_min_size observations.

        Parameters
        ----------
        node_min_size : int
            Minimum required observations.

        Returns
        -------
        Node
            A randomly chosen leaf node.

        Raises
        ------
        InvalidTreeError
            If no leaf with sufficient observations is found.
        """
        leaves = self.get_leaves()
        leaves_sizes = np.array([node.get_nobs() for node in leaves], dtype=np.int_)

        p = np.where(leaves_sizes >= node_min_size, 1, 0)
        if p.sum() == 0:
            raise InvalidTreeError('No valid leaf to split due to min node size constraint')
        return my_choice(self.rng, leaves, p=p/np.sum(p))

    def get_leaves(self) -> list[Node]:
        return self.leaves()

    def get_n_leaves(self) -> int:
        return len(self.get_leaves())

    def __deepcopy__(self, memo):
        return self.copy(light=False, memo=memo)

    def copy(self, light: bool = False, no_data: bool = False, memo: dict | None = None) -> Self:
        '''Copy the tree with all node info. If light, the row positions of each node are shared, not duplicated.'''
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k == '_nodes':
                setattr(result, k, {nid: node.copy(light=light, no_data=no_data, memo=memo) for nid, node in v.items()})
            elif k == 'rng' or light:
                setattr(result, k, v)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    def is_valid(self) -> bool:
        """
        Check whether the tree is valid.

        The function checks each node for logical consistency of splits,
        row assignments, and node properties.

        Returns
        -------
        bool
            True if the tree passes all validity checks.
        """
        def is_valid_node(node: Node) -> bool:
            try:
                return _is_valid_node(node)
            except Exception as e:
                node._gen_tags()
                raise InvalidTreeError(f'Error in node {node.tag}, {type(e).__name__}: {e}') from e

        def _is_valid_node(node: Node) -> bool:
            children = self.get_children(node)
            if not node.is_leaf():
                # if not leaf must have two children
                assert len(children) == 2

                # first child is left, second is right
                l_child, r_child = children
                assert l_child.is_l and not r_child.is_l

                # children rows follow the split rule and partition the parent rows
                left_idx, right_idx = node.get_data_split()
                assert np.array_equal(left_idx, l_child.get_idx())
                assert np.array_equal(right_idx, r_child.get_idx())
                assert len(left_idx) + len(right_idx) == node.get_nobs()
            else:
                assert len(children) == 0
                assert node.is_split_rule_empty()

            assert node.get_nobs() >= self.node_min_size

            if node.is_root():
                assert node.depth == 0
            else:
                parent = self.get_parent(node)
                assert node.get_nobs() < parent.get_nobs()
                assert node.depth == 1 + parent.depth
                assert self.level(node.id) == node.depth

            return True

        res = list(filter(is_valid_node, self.all_nodes_itr()))
        return len(self.nodes) == len(res)

    def apply_split(self, node: Node, split_var: str, split_val: Sequence[T] | T, l_leaf_params: Any, r_leaf_params: Any):
        """
        Apply a split to a leaf node by generating two children nodes.

        Parameters
        ----------
        node : Node
            The leaf node to be split.
        split_var : str
            The feature to split on.
        split_val : Sequence[T] or T
            The split value(s).
        l_leaf_params : Any
            Leaf parameter for the left child.
        r_leaf_params : Any
            Leaf parameter for the right child.

        Raises
        ------
        InvalidTreeError
            If any of the resulting children have fewer observations than the minimum.
        """
        if self.debug:
            assert node.is_leaf()

        # NodeData raises when a child is too small
        node_data_l, node_data_r = node.get_split_data(split_var, split_val, l_leaf_params, r_leaf_params)
        node.update_split_info(split_var, split_val)

        self.add_node(data=node_data_l, is_l=True, parent=node)
        self.add_node(data=node_data_r, is_l=False, parent=node)

    def get_node(self, node_id: int) -> Node:
        if (node := super().get_node(node_id)) is None:
            raise ValueError(f'Node {node_id} does not exist')
        return node

    def get_root(self) -> Node:
        root = self.get_node(self.root)
        if self.debug:
            if not root.is_root():
                raise ValueError('Root node is not actually root')
        return root

    def is_stump(self) -> bool:
        c1 = self.get_root().is_leaf()
        if self.debug:
            assert c1 == (len(self.nodes) == 1)
        return c1

    def get_children(self, node: Node | int) -> list[Node]:
        """
        Get the children of the specified node, ordered as left then right.

        Parameters
        ----------
        node : Node or int
            The node or its identifier.

        Returns
        -------
        list
            A list of child nodes, empty for a leaf.
        """
        if isinstance(node, Node):
            res = self.children(node.id)
        else:
            res = self.children(node)
        if len(res) == 0:
            return []
        if self.debug:
            assert len(res) == 2
        if not res[0].is_l:
            res[0], res[1] = res[1], res[0]
        return res

    def remove_node(self, node: Node | int) -> int:
        if isinstance(node, Node):
            return super().remove_node(node.id)
        return super().remove_node(node)

    def get_parent(self, node: Node | int) -> Node:
        if isinstance(node, Node):
            res = self.parent(node.id)
        else:
            res = self.parent(node)
        if res is None:
            raise ValueError('Node has no parent')
        return res

    def get_sibling(self, node: Node | int) -> Node:
        if isinstance(node, Node):
            res = self.siblings(node.id)
        else:
            res = self.siblings(node)
        if len(res) != 1:
            raise ValueError(f'Wrong number of siblings for Node {str(node)}: {len(res)}')
        return res[0]

    def get_parents_with_two_leaves(self) -> list[Node]:
        """
        Get all internal nodes that have exactly two leaves as children.

        Returns
        -------
        list
            List of nodes satisfying the condition.
        """
        def filter_f(node: Node) -> bool:
            children = self.get_children(node)
            if len(children) == 0:
                return False
            return children[0].is_leaf() and children[1].is_leaf()

        return list(self.filter_nodes(filter_f))

    def get_nonleaf_nodes(self, filter_root: bool = False) -> list[Node]:
        def filter_f(node: Node) -> bool:
            if filter_root and node.is_root():
                return False
            return not node.is_leaf()
        return list(self.filter_nodes(filter_f))

    def get_split_vars(self) -> list[str]:
        """Split variables of all the internal nodes."""
        return [node.get_split_info()[0] for node in self.get_nonleaf_nodes()]

    def check_split_struct(self, node: Node):
        """
        Check that the splitting rules along the subtree starting at a given node
        do not produce empty splits.

        While this function does not guarantee that the split is valid, it is fast
        to execute and can filter some obvious incompatibilities.

        Parameters
        ----------
        node : Node
            The root of the subtree to check.

        Raises
        ------
        InvalidTreeError
            If an empty split is encountered.
        """
        def _check_struct_rec(node: Node, d: dict[str, tuple[float, float] | set[Any]],
                              global_d: dict[str, tuple[float, float] | set[Any]]):
            '''d contains the admissible region of each variable along the path.
            if not categorical, [min, max) range of the data. Initialized to (-inf, max].
            If categorical, the set of possible values. Initialized to the available ones.'''
            if node.is_leaf():
                return
            split_var, split_val, is_cat = node.get_split_info()

            if split_var not in d:
                if split_var not in global_d:
                    raise InvalidTreeError('Split variable is not available')
                d[split_var] = global_d[split_var]

            val = d[split_var]
            if is_cat:
                split_val = set(split_val)
                l_split = val.intersection(split_val)  # type: ignore
                if len(l_split) == 0:
                    raise InvalidTreeError('Empty split')
                r_split = val.difference(split_val)  # type: ignore
                if len(r_split) == 0:
                    raise InvalidTreeError('Empty split')
            else:
                l_split = (val[0], min(val[1], split_val))  # type: ignore
                if l_split[0] >= l_split[1]:
                    raise InvalidTreeError('Empty split')
                r_split = (max(val[0], split_val), val[1])  # type: ignore
                if r_split[0] >= r_split[1]:
                    raise InvalidTreeError('Empty split')
            d_l = dict(d)
            d_l[split_var] = l_split
            d_r = dict(d)
            d_r[split_var] = r_split

            l_child, r_child = self.get_children(node)
            _check_struct_rec(l_child, d_l, global_d)
            _check_struct_rec(r_child, d_r, global_d)

        aval_splits, is_cat = node.get_available_splits()
        global_d = {k: set(v) if is_cat[k] else (-np.inf, v[-1]+1) for k, v in aval_splits.items()}

        _check_struct_rec(node, {}, global_d)

    def update_subtree_data(self, node: Node):
        """
        Re-route the rows of all descendants of a given node through the current split rules.

        A fast logical check is run first, then rows are reassigned. If the rules
        have not been changed from the outside, this has no effect.

        Parameters
        ----------
        node : Node
            The node whose subtree rows will be updated.

        Raises
        ------
        InvalidTreeError
            If a node of the subtree would end up with too few rows.
        """
        self.check_split_struct(node)

        def _update_split_rec(node: Node):
            if node.is_leaf():
                return

            left_idx, right_idx = node.get_data_split()

            l_child, r_child = self.get_children(node)
            l_child.update_split_data(left_idx)
            r_child.update_split_data(right_idx)

            _update_split_rec(l_child)
            _update_split_rec(r_child)

        _update_split_rec(node)

    def update_split(self, node: Node, split_var: str, split_val: Sequence[T] | T):
        """
        Change the splitting rule for the current node. Update the rows of all the descendants recursively.

        Parameters
        ----------
        node : Node
            The node to update.
        split_var : str
            The new splitting variable.
        split_val : Sequence[T] or T
            The new splitting value(s).
        """
        node.update_split_info(split_var, split_val)
        self.update_subtree_data(node)

    def get_fit(self, n: int) -> NDArrayFloat:
        """
        Leaf value of each training row.

        Parameters
        ----------
        n : int
            Number of training rows.

        Returns
        -------
        NDArrayFloat
            Array of length n.
        """
        out = np.zeros(n)
        for leaf in self.get_leaves():
            out[leaf.get_idx()] = leaf.get_leaf_value()
        return out

    def predict(self, X: pd.DataFrame) -> NDArrayFloat:
        """
        Route rows through the splitting rules and return their leaf values.

        Works on trees stored without data.

        Parameters
        ----------
        X : pd.DataFrame
            Rows to evaluate, with the training columns.

        Returns
        -------
        NDArrayFloat
            Leaf value of each row.
        """
        out = np.empty(X.shape[0])
        cols = {}

        def _route(node: Node, rows: NDArrayInt):
            if len(rows) == 0:
                return
            if node.is_leaf():
                out[rows] = node.get_leaf_value()
                return
            split_var, split_val, is_cat = node.get_split_info()
            if split_var not in cols:
                cols[split_var] = X[split_var].to_numpy()
            col = cols[split_var][rows]
            if is_cat:
                mask = np.isin(col, np.asarray(split_val))
            else:
                mask = col < split_val
            l_child, r_child = self.get_children(node)
            _route(l_child, rows[mask])
            _route(r_child, rows[~mask])

        _route(self.get_root(), np.arange(X.shape[0]))
        return out

    def show(self):
        """
        Print the tree. Update all the tags first. Tags are not automatically updated for performance speed.

        Returns
        -------
        str
            The string representation of the tree.
        """
        for node in self.all_nodes_itr():
            node._gen_tags()
        res = str(self)
        print(res)
        return res

    def is_equal(self, other: Self, hard: int = 0) -> bool:
        """
        Check if two trees are equal in structure and (optionally) in parameters.

        Hard = 0 checks they have the same structure and same splitting variables.
        Hard = 1 additionally checks the splitting values. Hard = 2 expects the same
        rows in the nodes. Hard = 3 expects equality also for leaf parameters.

        Parameters
        ----------
        other : Tree
            The tree to compare with.
        hard : int, optional
            Level of strictness (default 0).

        Returns
        -------
        bool
            True if the trees are equal under the chosen criteria.
        """
        def _check_nodes(node1: Node, node2: Node) -> bool:
            c1 = self.get_children(node1)
            c2 = other.get_children(node2)
            assert len(c1) == len(c2)

            if node1.is_leaf():
                if hard >= 2:
                    assert np.array_equal(node1.get_idx(), node2.get_idx())
                if hard >= 3:
                    assert np.isclose(node1.get_params(), node2.get_params())
            else:
                svar1, sval1, is_cat1 = node1.get_split_info()
                svar2, sval2, is_cat2 = node2.get_split_info()
                assert svar1 == svar2
                assert is_cat1 == is_cat2
                if hard >= 1:
                    if is_cat1:
                        assert set(sval1) == set(sval2)
                    else:
                        assert np.isclose(sval1, sval2)
            return all(map(_check_nodes, c1, c2))

        if len(self.nodes) != len(other.nodes):
            return False
        try:
            return _check_nodes(self.get_root(), other.get_root())
        except AssertionError:
            return False
