"""Node data classes for bayesbart.

This module defines classes that encapsulate the data associated with
a tree node. It provides a base class NodeData along with subclasses for
additive Gaussian leaves (NodeDataGaussian) and multiplicative leaves of
log-linear count models (NodeDataLogLinear).

Trees in a sum-of-trees model are fitted to partial residuals that change at
every sweep, so a node never stores the response. It stores the positions of
the training rows falling into it, together with a reference to the shared
feature matrix.
"""

import numpy as np
import pandas as pd
from typing import Sequence, Self, Any
import math
from copy import deepcopy
from .mytyping import T, NDArrayInt
from .exceptions import AbstractMethodError, InvalidTreeError


class NodeData():
    """
    Abstract base class for data associated with a node of a BART tree.

    Attributes
    ----------
    X : pd.DataFrame
        The full training feature matrix, shared by all nodes of all trees.
    idx : NDArrayInt
        Positions (0-based, as for ``iloc``) of the training rows in this node.
    rng : np.random.Generator
        Random number generator for sampling.
    debug : bool
        If True, enables additional debugging checks.
    node_min_size : int
        Minimum number of observations required in the node.
    split_var : str
        The variable used for splitting (if any).
    split_set : Sequence[T] or T
        The value(s) used in the splitting rule.
    is_cat_split : bool
        Indicator whether the split is categorical.
    avail_splits : Any
        Cached available splits (initially None).
    """
    def __init__(self, X: pd.DataFrame, idx: NDArrayInt,
                 rng: np.random.Generator,
                 debug: bool,
                 node_min_size: int,
                 split_var: str | None = None,
                 split_set: Sequence[T] | T | None = None,
                 is_cat_split: bool | None = None):
        self.node_min_size = node_min_size
        self.X = X
        self.idx = idx
        self.rng = rng
        if (_tot := (is_cat_split is None) + (split_var is None) + (split_set is None)) != 0 and _tot != 3:
            raise ValueError('Either all or none of the split parameters must be None')
        self.split_var = split_var if split_var is not None else ''
        self.is_cat_split = is_cat_split if is_cat_split is not None else False
        self.split_set = split_set if split_set is not None else ""
        self.debug = debug
        self.avail_splits = None

    @property
    def X(self) -> pd.DataFrame:
        return self._X

    @X.setter
    def X(self, val: pd.DataFrame):
        if not isinstance(val, pd.DataFrame):
            raise TypeError('X must be a pandas DataFrame')
        self._X = val

    @property
    def idx(self) -> NDArrayInt:
        return self._idx

    @idx.setter
    def idx(self, val: NDArrayInt):
        val = np.asarray(val, dtype=np.int_)
        if val.ndim != 1:
            raise TypeError('idx must be a one-dimensional array of row positions')
        if val.shape[0] < self.node_min_size:
            raise InvalidTreeError('Node has less than min node size observations')
        self._idx = val

    def has_data(self) -> bool:
        return (hasattr(self, '_X')) and (hasattr(self, '_idx'))

    def __deepcopy__(self, memo):
        return self.copy(light=False, memo=memo)

    def copy(self, light: bool = False, no_data: bool = False, memo: dict | None = None) -> Self:
        """
        Copy the node data.

        The feature matrix is never duplicated. With ``light`` the row positions
        are shared with the original, with ``no_data`` they are dropped and only
        their number is kept (this is what stored forests use).
        """
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k == '_X':
                if not no_data:
                    setattr(result, k, v)
            elif k == '_idx':
                if no_data:
                    result.nobs = self.get_nobs()  # type: ignore
                elif light:
                    setattr(result, k, v)
                else:
                    setattr(result, k, v.copy())
            elif k == 'rng':
                setattr(result, k, v)
            elif k == 'avail_splits':
                setattr(result, k, None if no_data else v)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    @staticmethod
    def _is_categorical(x) -> bool:
        return hasattr(x, 'cat')

    def get_nobs(self) -> int:
        if not self.has_data():
            return self.nobs  # type: ignore
        return self.idx.shape[0]

    def get_X(self) -> pd.DataFrame:
        """Rows of the feature matrix belonging to this node."""
        return self.X.iloc[self.idx]

    def _get_col(self, col_name: str) -> np.ndarray:
        return self.X[col_name].to_numpy()[self.idx]

    @staticmethod
    def _print(x) -> float:
        return np.round(x, 2)

    def get_split_var(self, print: bool = False) -> str:
        return self.split_var

    def get_split_set(self, print: bool = False) -> Sequence[T] | T:
        """
        Get the splitting value(s) for this node.

        Parameters
        ----------
        print : bool, optional
            If True, return a formatted string description (default is False).

        Returns
        -------
        Sequence[T] or T
            The splitting value(s) or a description thereof.
        """
        if not print:
            return self.split_set  # type: ignore
        else:
            if self.is_cat_split:
                return f'in {list(self.split_set)}'  # type: ignore
            else:
                return f'< {self._print(self.split_set)}'  # type: ignore

    def get_available_splits(self, force_eval=False) -> tuple[dict[str, Sequence[T]], dict[str, bool]]:
        """
        For each feature, return the split values available among the node rows.

        Parameters
        ----------
        force_eval : bool, optional
            If True, force re-evaluation of available splits (default is False).

        Returns
        -------
        tuple
            A tuple containing:
              - A dictionary mapping feature names to sorted unique available split values.
              - A dictionary mapping feature names to booleans indicating if the feature is categorical.
        """
        if self.avail_splits is not None and not force_eval:
            return self.avail_splits
        is_cat = {}
        avail_vars = {}
        for col_name in self.X.columns:
            avail_splits = np.unique(self._get_col(col_name))
            if len(avail_splits) >= 2:
                if self._is_categorical(self.X[col_name]):
                    avail_vars[col_name] = avail_splits
                    is_cat[col_name] = True
                else:
                    # rule is x < value, the smallest value would leave the left child empty
                    avail_vars[col_name] = avail_splits[1:]
                    is_cat[col_name] = False
        self.avail_splits = avail_vars, is_cat
        return avail_vars, is_cat

    def reset_avail_splits(self):
        """
        Reset the cached available splits. Necessary whenever the node rows change.
        """
        self.avail_splits = None

    def sample_split(self, split_var: str, avail_vals: Sequence[T]) -> tuple[bool, Sequence[T] | T]:
        if (is_cat := self._is_categorical(self.X[split_var])):
            split_vals = self._sample_cat_split_subset(avail_vals)
        else:
            split_vals = self.rng.choice(avail_vals)
        return is_cat, split_vals

    def _sample_cat_split_subset(self, split_vals: Sequence[T]) -> Sequence[T]:
        """
        Sample a random subset of the available split values for a categorical variable.

        Parameters
        ----------
        split_vals : Sequence[T]
            The available split values.

        Returns
        -------
        Sequence[T]
            A sorted array of sampled split values.
        """
        # Pick the subset size with probability proportional to the number of
        # subsets of that size, then the subset itself uniformly. The full set
        # is excluded since it does not split anything.
        if len(split_vals) == 1:
            return split_vals
        n = len(split_vals) - 1
        cases = np.array([math.comb(n+1, x) for x in range(1, n+1)], dtype=float)
        k = self.rng.choice(np.arange(1, n+1), p=cases/np.sum(cases))
        idx = self.rng.choice(len(split_vals), size=k, replace=False)
        split_vals = np.asarray(split_vals)

        if self.debug:
            assert len(split_vals[idx]) > 0 and (len(split_vals) - len(split_vals[idx])) > 0

        return np.sort(split_vals[idx])  # type: ignore

    def calc_n_splits(self, split_var: str | None = None) -> int:
        """
        Compute the number of admissible rules on a variable at this node.

        Parameters
        ----------
        split_var : str or None, optional
            The variable. If None, the current split variable is used.

        Returns
        -------
        int
            Number of split values (numeric) or non-trivial subsets (categorical).
        """
        avail_vars, is_cat = self.get_available_splits()
        if split_var is None:
            split_var = self.get_split_var()
        if split_var not in avail_vars:
            raise InvalidTreeError(f'Variable {split_var} has no available split at this node')
        split_vals = avail_vars[split_var]
        if is_cat[split_var]:
            n = len(split_vals) - 1
            return int(sum(math.comb(n+1, x) for x in range(1, n+1)))
        return len(split_vals)

    def get_data_split(self, split_var: str, split_val: Sequence[T] | T) -> tuple[NDArrayInt, NDArrayInt]:
        """
        Split the node rows into left and right subsets based on the split rule.

        Parameters
        ----------
        split_var : str
            The feature on which to split.
        split_val : Sequence[T] or T
            The split value(s).

        Returns
        -------
        tuple
            A tuple (left_idx, right_idx) of row positions.
        """
        col = self._get_col(split_var)
        if self._is_categorical(self.X[split_var]):
            mask = np.isin(col, np.asarray(split_val))
        else:
            mask = col < split_val
        return self.idx[mask], self.idx[~mask]

    def get_split_data(self, split_var: str, split_val: Sequence[T] | T, left_params: Any, right_params: Any) -> tuple[Self, Self]:
        """
        Split the current node's rows based on a split rule and generate the
        NodeData objects of the two children.

        Parameters
        ----------
        split_var : str
            The feature on which to split.
        split_val : Sequence[T] or T
            The split value(s).
        left_params : Any
            Leaf parameter for the left child.
        right_params : Any
            Leaf parameter for the right child.

        Returns
        -------
        tuple
            A tuple (l_node_data, r_node_data).
        """
        left_idx, right_idx = self.get_data_split(split_var, split_val)
        # With this construction it behaves properly with subclasses
        l_node_data = self._make_child(left_idx, left_params)
        r_node_data = self._make_child(right_idx, right_params)
        return l_node_data, r_node_data

    def _make_child(self, idx: NDArrayInt, params: Any) -> Self:
        raise AbstractMethodError()

    def update_split_info(self, split_var: str, split_val: Sequence[T] | T):
        self.split_var = split_var
        self.split_set = split_val
        self.is_cat_split = self._is_categorical(self.X[split_var])

    def reset_split_info(self):
        self.split_var = ''
        self.split_set = ''
        self.is_cat_split = False

    def update_split_data(self, idx: NDArrayInt):
        self.idx = idx
        self.reset_avail_splits()

    def is_split_rule_empty(self) -> bool:
        return (self.split_var == '') and (isinstance(self.split_set, str) and self.split_set == '') and (self.is_cat_split == False)

    def get_params(self, print: bool = False) -> Any:
        """
        Retrieve the leaf parameter.

        Raises
        ------
        AbstractMethodError
            Always raised; should be implemented in a subclass.
        """
        raise AbstractMethodError()

    def update_node_params(self, params: Any):
        raise AbstractMethodError()

    def get_leaf_value(self) -> float:
        """
        The contribution of the leaf to the additive predictor.

        Raises
        ------
        AbstractMethodError
            Always raised; should be implemented in a subclass.
        """
        raise AbstractMethodError()


class NodeDataGaussian(NodeData):
    """
    Node data for additive Gaussian leaves.

    Attributes
    ----------
    mu : float
        The leaf value added to the fit of the rows in the leaf.
    """
    def __init__(self, mu: float, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.mu = mu

    def get_params(self, print: bool = False) -> float | str:
        if not print:
            return self.mu
        return f'{self._print(self.mu)}'

    def _make_child(self, idx: NDArrayInt, params: float) -> Self:
        return self.__class__(X=self.X, idx=idx, mu=params, rng=self.rng, debug=self.debug, node_min_size=self.node_min_size)

    def update_node_params(self, params: float):
        self.mu = float(params)

    def get_leaf_value(self) -> float:
        return self.mu


class NodeDataLogLinear(NodeData):
    """
    Node data for multiplicative leaves of a log-linear model.

    Attributes
    ----------
    lam : float
        Positive leaf value; the rows in the leaf have their mean multiplied by it.
    """
    def __init__(self, lam: float, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lam = lam

    @property
    def lam(self) -> float:
        return self._lam

    @lam.setter
    def lam(self, val: float):
        if not val > 0:
            raise ValueError('Leaf value of a log-linear tree must be positive')
        self._lam = float(val)

    def get_params(self, print: bool = False) -> float | str:
        if not print:
            return self.lam
        return f'{self._print(self.lam)}'

    def _make_child(self, idx: NDArrayInt, params: float) -> Self:
        return self.__class__(X=self.X, idx=idx, lam=params, rng=self.rng, debug=self.debug, node_min_size=self.node_min_size)

    def update_node_params(self, params: float):
        self.lam = params

    def get_leaf_value(self) -> float:
        return float(np.log(self.lam))
